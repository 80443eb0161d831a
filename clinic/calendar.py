"""Calendar view over a doctor's appointments.

Appointments are projected into calendar events coloured by status. Dragging
an event to a new slot either commits immediately or opens a confirmation
that the doctor accepts or dismisses; until it is accepted nothing is sent to
the backend.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from clinic.appointments import (
    AppointmentBook,
    AppointmentStatus,
    AppointmentWorkflow,
    can_transition,
    is_terminal,
    status_style,
)
from clinic.models import DATE_FORMAT, TIME_FORMAT, Appointment, Prescription, validate_date, validate_time
from clinic.notifications import Notifier
from clinic.prescriptions import PrescriptionService, match_for_appointment
from connector.api_client import ShedulaClientError

logger = logging.getLogger(__name__)

SLOT_MIN_TIME = "08:00"
SLOT_MAX_TIME = "20:00"
DEFAULT_EVENT_MINUTES = 30
HOVER_DELAY_SECONDS = 0.5


@dataclass(frozen=True)
class CalendarEvent:
    id: str
    title: str
    start: datetime
    end: datetime
    background_color: str
    border_color: str
    text_color: str
    appointment: Appointment

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "backgroundColor": self.background_color,
            "borderColor": self.border_color,
            "textColor": self.text_color,
            "extendedProps": {
                "appointment": self.appointment.to_payload(),
                "patientName": self.appointment.patient_name,
                "status": self.appointment.status,
                "date": self.appointment.date,
                "time": self.appointment.time,
                "specialty": self.appointment.specialty,
            },
        }


def build_event(appointment: Appointment) -> CalendarEvent:
    style = status_style(appointment.status)
    start = appointment.start
    return CalendarEvent(
        id=appointment.id,
        title=appointment.patient_name or f"Patient {appointment.patient_id}",
        start=start,
        end=start + timedelta(minutes=DEFAULT_EVENT_MINUTES),
        background_color=style.background_color,
        border_color=style.border_color,
        text_color=style.text_color,
        appointment=appointment,
    )


def build_events(appointments: Sequence[Appointment]) -> List[CalendarEvent]:
    events: List[CalendarEvent] = []
    for appointment in appointments:
        try:
            events.append(build_event(appointment))
        except ValueError:
            logger.warning(
                "Appointment %s has an unreadable slot (%r %r); not shown on the calendar",
                appointment.id,
                appointment.date,
                appointment.time,
            )
    return events


def split_drop_target(moment: datetime | str) -> tuple[str, str]:
    """Return the ``(date, time)`` strings for a drop target."""

    if isinstance(moment, str):
        try:
            moment = datetime.fromisoformat(moment.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValueError("start must be an ISO formatted datetime") from exc
    return moment.strftime(DATE_FORMAT), moment.strftime(TIME_FORMAT)


class RescheduleState(str, Enum):
    IDLE = "idle"
    PENDING_CONFIRMATION = "pending_confirmation"


class RescheduleStateError(RuntimeError):
    """Raised when confirming or cancelling a reschedule that is not pending."""


@dataclass(frozen=True)
class RescheduleProposal:
    appointment: Appointment
    new_date: str
    new_time: str

    @property
    def key(self) -> str:
        return self.appointment.id

    @property
    def old_slot(self) -> str:
        return self.appointment.slot_label

    @property
    def new_slot(self) -> str:
        return f"{self.new_date} at {self.new_time}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "appointmentId": self.appointment.id,
            "patientName": self.appointment.patient_name,
            "oldDateTime": self.old_slot,
            "newDateTime": self.new_slot,
            "newDate": self.new_date,
            "newTime": self.new_time,
        }


class RescheduleFlow:
    """Reschedules awaiting the doctor's confirmation, keyed by appointment id.

    Each pending proposal is confirmed or dismissed by its own key, so
    several open views of one calendar never act on each other's drops.
    """

    def __init__(self, workflow: AppointmentWorkflow, book: AppointmentBook) -> None:
        self._workflow = workflow
        self._book = book
        self._pending: Dict[str, RescheduleProposal] = {}
        self._lock = threading.Lock()

    @property
    def state(self) -> RescheduleState:
        with self._lock:
            return RescheduleState.PENDING_CONFIRMATION if self._pending else RescheduleState.IDLE

    def state_of(self, appointment_id: str) -> RescheduleState:
        with self._lock:
            pending = appointment_id in self._pending
        return RescheduleState.PENDING_CONFIRMATION if pending else RescheduleState.IDLE

    def pending(self) -> List[RescheduleProposal]:
        with self._lock:
            return list(self._pending.values())

    def propose(self, appointment: Appointment, new_date: object, new_time: object) -> RescheduleProposal:
        proposal = RescheduleProposal(
            appointment=appointment,
            new_date=validate_date(new_date),
            new_time=validate_time(new_time),
        )
        self._workflow.ensure_reschedulable(appointment)
        with self._lock:
            previous = self._pending.get(proposal.key)
            self._pending[proposal.key] = proposal
        if previous is not None:
            logger.info(
                "Replacing pending reschedule of %s (%s) with %s",
                appointment.id,
                previous.new_slot,
                proposal.new_slot,
            )
        logger.debug("Reschedule of %s proposed: %s -> %s", appointment.id, proposal.old_slot, proposal.new_slot)
        return proposal

    def _take(self, appointment_id: str) -> RescheduleProposal:
        with self._lock:
            proposal = self._pending.pop(str(appointment_id), None)
        if proposal is None:
            raise RescheduleStateError(f"No reschedule of appointment {appointment_id} is awaiting confirmation")
        return proposal

    def confirm(self, appointment_id: str) -> Appointment:
        proposal = self._take(appointment_id)
        try:
            return self._workflow.reschedule(proposal.appointment.id, proposal.new_date, proposal.new_time)
        except ShedulaClientError:
            logger.warning("Reschedule of %s rejected; reloading appointments", proposal.appointment.id)
            self._book.refresh()
            raise

    def cancel(self, appointment_id: str) -> RescheduleProposal:
        proposal = self._take(appointment_id)
        logger.info("Reschedule of %s to %s dismissed", proposal.appointment.id, proposal.new_slot)
        return proposal


@dataclass(frozen=True)
class Tooltip:
    appointment: Appointment
    x: float
    y: float

    def to_dict(self) -> Dict[str, Any]:
        return {"appointment": self.appointment.to_payload(), "x": self.x, "y": self.y}


class HoverTracker:
    """Shows an event tooltip once the pointer has rested on it long enough."""

    def __init__(
        self,
        book: AppointmentBook,
        *,
        delay: float = HOVER_DELAY_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._book = book
        self._delay = delay
        self._clock = clock
        self._event_id: Optional[str] = None
        self._position = (0.0, 0.0)
        self._entered_at = 0.0

    def enter(self, event_id: str, x: float, y: float, at: Optional[float] = None) -> None:
        self._event_id = event_id
        self._position = (x, y)
        self._entered_at = self._clock() if at is None else at

    def leave(self) -> None:
        self._event_id = None

    def tooltip(self, now: Optional[float] = None) -> Optional[Tooltip]:
        if self._event_id is None:
            return None
        now = self._clock() if now is None else now
        if now - self._entered_at < self._delay:
            return None
        appointment = self._book.find(self._event_id)
        if appointment is None:
            return None
        x, y = self._position
        return Tooltip(appointment=appointment, x=x, y=y)


@dataclass(frozen=True)
class StatusAction:
    status: str
    label: str
    enabled: bool


@dataclass(frozen=True)
class ActionSheet:
    """What the doctor may do with the clicked appointment."""

    appointment: Appointment
    actions: List[StatusAction] = field(default_factory=list)
    can_reschedule: bool = True
    can_cancel: bool = True
    can_delete: bool = True
    prescription: Optional[Prescription] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "appointment": self.appointment.to_payload(),
            "statusActions": [
                {"status": action.status, "label": action.label, "enabled": action.enabled}
                for action in self.actions
            ],
            "canReschedule": self.can_reschedule,
            "canCancel": self.can_cancel,
            "canDelete": self.can_delete,
            "prescription": self.prescription.to_payload() if self.prescription else None,
        }


class AppointmentCalendar:
    """Calendar gestures for one doctor's appointments."""

    def __init__(
        self,
        book: AppointmentBook,
        workflow: AppointmentWorkflow,
        *,
        prescriptions: Optional[PrescriptionService] = None,
        confirm_reschedule: bool = True,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.book = book
        self.workflow = workflow
        self.notifier = notifier or workflow.notifier
        self.confirm_reschedule_enabled = confirm_reschedule
        self.flow = RescheduleFlow(workflow, book)
        self.hover = HoverTracker(book)
        self._prescription_service = prescriptions
        self._prescriptions: List[Prescription] = []

    def load(self) -> List[CalendarEvent]:
        self.book.load()
        self._load_prescriptions()
        return self.events()

    def _load_prescriptions(self) -> None:
        if self._prescription_service is None or not self.book.doctor_id:
            return
        try:
            self._prescriptions = self._prescription_service.list_for_doctor(self.book.doctor_id)
        except ShedulaClientError as exc:
            logger.warning("Prescriptions for doctor %s unavailable: %s", self.book.doctor_id, exc)
            self._prescriptions = []

    def events(self, **filters: Any) -> List[CalendarEvent]:
        return build_events(self.book.filter(**filters))

    def click(self, event_id: str) -> ActionSheet:
        appointment = self.book.get(event_id)
        enforce = self.workflow.enforce_transitions
        actions = [
            StatusAction(
                status=status.value,
                label=status.value.capitalize(),
                enabled=status.value != appointment.status
                and (not enforce or can_transition(appointment.status, status)),
            )
            for status in AppointmentStatus
        ]
        return ActionSheet(
            appointment=appointment,
            actions=actions,
            can_reschedule=not (enforce and is_terminal(appointment.status)),
            can_cancel=not is_terminal(appointment.status),
            can_delete=True,
            prescription=match_for_appointment(self._prescriptions, appointment),
        )

    def drop(self, event_id: str, new_start: datetime | str) -> Appointment | RescheduleProposal:
        """Handle an event dropped on ``new_start``.

        Returns the committed appointment, or the proposal awaiting
        confirmation when confirmation is enabled.
        """

        appointment = self.book.get(event_id)
        new_date, new_time = split_drop_target(new_start)
        if self.confirm_reschedule_enabled:
            return self.flow.propose(appointment, new_date, new_time)

        try:
            updated = self.workflow.reschedule(appointment.id, new_date, new_time, notify=False)
        except (ShedulaClientError, ValueError):
            logger.warning("Drop of %s onto %s %s rejected; reloading", appointment.id, new_date, new_time)
            self.book.refresh()
            raise
        self.notifier.success(f"Appointment moved to {new_date} at {new_time}")
        return updated

    def request_reschedule(self, event_id: str, new_date: object, new_time: object) -> RescheduleProposal:
        return self.flow.propose(self.book.get(event_id), new_date, new_time)

    def confirm_reschedule(self, appointment_id: str) -> Appointment:
        return self.flow.confirm(appointment_id)

    def cancel_reschedule(self, appointment_id: str) -> RescheduleProposal:
        return self.flow.cancel(appointment_id)


__all__ = [
    "ActionSheet",
    "AppointmentCalendar",
    "CalendarEvent",
    "DEFAULT_EVENT_MINUTES",
    "HOVER_DELAY_SECONDS",
    "HoverTracker",
    "RescheduleFlow",
    "RescheduleProposal",
    "RescheduleState",
    "RescheduleStateError",
    "SLOT_MAX_TIME",
    "SLOT_MIN_TIME",
    "StatusAction",
    "Tooltip",
    "build_event",
    "build_events",
    "split_drop_target",
]

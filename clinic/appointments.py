"""Appointment lifecycle: status transitions, local cache and dispatcher.

An appointment moves ``pending -> confirmed -> completed``; it can be
cancelled while pending or confirmed. Completed and cancelled appointments
are terminal. Re-sending the current status is accepted and only costs a
redundant PATCH.

``AppointmentBook`` is the client-side copy of the appointment list.
``AppointmentWorkflow`` issues the backend calls, keeps the book in step
with the server's answers and posts a notice for every outcome.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import date as Date, datetime
from enum import Enum
from typing import Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple, Union
from urllib.parse import quote, urlencode

from clinic.models import (
    Appointment,
    format_timestamp,
    parse_timestamp,
    utc_now,
    validate_date,
    validate_time,
)
from clinic.notifications import Notifier
from clinic.schedule import ScheduleService
from connector.api_client import ApiResponseError, AppointmentsAPI, ShedulaClientError

logger = logging.getLogger(__name__)

PRESCRIPTION_FORM_PATH = "/doctor/prescriptions"
COMPLETE_WITHOUT_PRESCRIPTION = "Complete Without Prescription"
COMPLETE_WITH_PRESCRIPTION = "Complete & Create Prescription"


class AppointmentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @classmethod
    def parse(cls, value: object) -> "AppointmentStatus":
        if isinstance(value, cls):
            return value
        normalized = str(value or "").strip().lower()
        for status in cls:
            if status.value == normalized:
                return status
        raise ValueError(f"Unknown appointment status: {value!r}")


ALLOWED_TRANSITIONS: Dict[AppointmentStatus, FrozenSet[AppointmentStatus]] = {
    AppointmentStatus.PENDING: frozenset({AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED}),
    AppointmentStatus.CONFIRMED: frozenset({AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED}),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
}
TERMINAL_STATUSES = frozenset({AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED})


class InvalidTransitionError(ValueError):
    """Raised when an appointment cannot move to the requested status."""


class AppointmentNotFoundError(LookupError):
    """Raised when an appointment id is unknown to the cache and the backend."""


def _status_or_none(value: object) -> Optional[AppointmentStatus]:
    try:
        return AppointmentStatus.parse(value)
    except ValueError:
        return None


def can_transition(current: object, target: object) -> bool:
    """Return whether ``current -> target`` is part of the lifecycle.

    A record carrying a status outside the lifecycle may move anywhere, so
    bad data can still be corrected.
    """

    target_status = AppointmentStatus.parse(target)
    current_status = _status_or_none(current)
    if current_status is None or current_status == target_status:
        return True
    return target_status in ALLOWED_TRANSITIONS[current_status]


def is_terminal(status: object) -> bool:
    return _status_or_none(status) in TERMINAL_STATUSES


def available_actions(appointment: Appointment, *, enforce: bool = True) -> List[AppointmentStatus]:
    """Statuses offered in the action sheet for ``appointment``."""

    actions: List[AppointmentStatus] = []
    for status in AppointmentStatus:
        if status.value == appointment.status:
            continue
        if enforce and not can_transition(appointment.status, status):
            continue
        actions.append(status)
    return actions


@dataclass(frozen=True)
class StatusStyle:
    background_color: str
    border_color: str
    text_color: str
    label: str


STATUS_STYLES: Dict[AppointmentStatus, StatusStyle] = {
    AppointmentStatus.CONFIRMED: StatusStyle("#10b981", "#059669", "#ffffff", "Confirmed"),
    AppointmentStatus.PENDING: StatusStyle("#f59e0b", "#d97706", "#ffffff", "Pending"),
    AppointmentStatus.COMPLETED: StatusStyle("#6366f1", "#4f46e5", "#ffffff", "Completed"),
    AppointmentStatus.CANCELLED: StatusStyle("#ef4444", "#dc2626", "#ffffff", "Cancelled"),
}
UNKNOWN_STATUS_STYLE = StatusStyle("#6b7280", "#4b5563", "#ffffff", "Unknown")


def status_style(status: object) -> StatusStyle:
    parsed = _status_or_none(status)
    if parsed is None:
        return UNKNOWN_STATUS_STYLE
    return STATUS_STYLES[parsed]


class AppointmentBook:
    """Client-side copy of one doctor's or one patient's appointments."""

    def __init__(
        self,
        api: AppointmentsAPI,
        *,
        doctor_id: Optional[str] = None,
        patient_id: Optional[str] = None,
    ) -> None:
        if bool(doctor_id) == bool(patient_id):
            raise ValueError("exactly one of doctor_id or patient_id must be provided")
        self._api = api
        self.doctor_id = doctor_id
        self.patient_id = patient_id
        self._records: Dict[str, Appointment] = {}
        self._lock = threading.RLock()
        self.loaded = False

    def load(self) -> List[Appointment]:
        """Fetch the full list from the backend, replacing the cache."""

        if self.doctor_id:
            payload = self._api.get_by_doctor_id(self.doctor_id)
        else:
            payload = self._api.get_by_patient_id(self.patient_id or "")

        records: Dict[str, Appointment] = {}
        for entry in payload:
            try:
                appointment = Appointment.from_payload(entry)
            except ValueError as exc:
                logger.warning("Skipping invalid appointment payload %s: %s", entry, exc)
                continue
            records[appointment.id] = appointment

        with self._lock:
            self._records = records
            self.loaded = True
        logger.debug("Loaded %d appointments", len(records))
        return self.all()

    def refresh(self) -> List[Appointment]:
        return self.load()

    def all(self) -> List[Appointment]:
        with self._lock:
            records = list(self._records.values())
        return sorted(records, key=lambda record: (record.date, record.time, record.id))

    def find(self, appointment_id: str) -> Optional[Appointment]:
        with self._lock:
            return self._records.get(appointment_id)

    def get(self, appointment_id: str) -> Appointment:
        appointment = self.find(appointment_id)
        if appointment is None:
            raise AppointmentNotFoundError(f"Appointment '{appointment_id}' does not exist")
        return appointment

    def apply(self, appointment: Appointment) -> Appointment:
        """Merge a record returned by the backend, ignoring stale copies."""

        with self._lock:
            cached = self._records.get(appointment.id)
            if cached is not None and self._is_stale(appointment, cached):
                logger.debug(
                    "Ignoring stale copy of appointment %s (%s older than %s)",
                    appointment.id,
                    appointment.updated_at,
                    cached.updated_at,
                )
                return cached
            self._records[appointment.id] = appointment
            return appointment

    @staticmethod
    def _is_stale(incoming: Appointment, cached: Appointment) -> bool:
        incoming_stamp = parse_timestamp(incoming.updated_at)
        cached_stamp = parse_timestamp(cached.updated_at)
        if incoming_stamp is None or cached_stamp is None:
            return False
        return incoming_stamp < cached_stamp

    def remove(self, appointment_id: str) -> None:
        with self._lock:
            self._records.pop(appointment_id, None)

    def filter(
        self,
        *,
        status: Optional[str] = None,
        patient: Optional[str] = None,
        date_from: Optional[Union[str, Date]] = None,
        date_to: Optional[Union[str, Date]] = None,
    ) -> List[Appointment]:
        records = self.all()
        if status and status != "all":
            records = [record for record in records if record.status == status]
        if patient and patient.strip():
            needle = patient.strip().lower()
            records = [record for record in records if needle in record.patient_name.lower()]
        if date_from:
            lower = validate_date(date_from)
            upper = validate_date(date_to) if date_to else lower
            records = [record for record in records if lower <= record.date <= upper]
        return records

    def counts_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in AppointmentStatus}
        for record in self.all():
            counts[record.status] = counts.get(record.status, 0) + 1
        return counts

    def patients(self) -> List[str]:
        return sorted({record.patient_name for record in self.all() if record.patient_name})


@dataclass(frozen=True)
class CompletionPrompt:
    """Second step shown before an appointment is marked completed."""

    appointment: Appointment
    options: Tuple[str, str] = (COMPLETE_WITHOUT_PRESCRIPTION, COMPLETE_WITH_PRESCRIPTION)

    def to_dict(self) -> Dict[str, object]:
        return {
            "appointment": self.appointment.to_payload(),
            "options": list(self.options),
        }


@dataclass(frozen=True)
class CompletionOutcome:
    appointment: Appointment
    redirect_url: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "appointment": self.appointment.to_payload(),
            "redirect": self.redirect_url,
        }


def prescription_redirect_url(appointment: Appointment) -> str:
    query = urlencode(
        {
            "appointmentId": appointment.id,
            "patientId": appointment.patient_id,
            "patientName": appointment.patient_name,
        },
        quote_via=quote,
    )
    return f"{PRESCRIPTION_FORM_PATH}?{query}"


@dataclass(frozen=True)
class PrescriptionPrefill:
    """Form defaults carried from a completed appointment."""

    appointment_id: Optional[str] = None
    patient_id: Optional[str] = None
    patient_name: Optional[str] = None

    @classmethod
    def from_query(cls, args: Mapping[str, str]) -> "PrescriptionPrefill":
        def _value(key: str) -> Optional[str]:
            raw = args.get(key)
            return raw.strip() if raw and raw.strip() else None

        return cls(
            appointment_id=_value("appointmentId"),
            patient_id=_value("patientId"),
            patient_name=_value("patientName"),
        )

    @property
    def is_linked(self) -> bool:
        return self.appointment_id is not None


class AppointmentWorkflow:
    """Dispatches appointment mutations to the backend."""

    def __init__(
        self,
        api: AppointmentsAPI,
        *,
        book: Optional[AppointmentBook] = None,
        notifier: Optional[Notifier] = None,
        enforce_transitions: bool = True,
        clock: Callable[[], datetime] = utc_now,
        schedule: Optional[ScheduleService] = None,
    ) -> None:
        self._api = api
        self.schedule = schedule
        self.book = book
        self.notifier = notifier or Notifier()
        self.enforce_transitions = enforce_transitions
        self._clock = clock

    def _stamp(self) -> str:
        return format_timestamp(self._clock())

    def current(self, appointment_id: str) -> Appointment:
        if self.book is not None:
            cached = self.book.find(appointment_id)
            if cached is not None:
                return cached
        try:
            payload = self._api.get_by_id(appointment_id)
        except ApiResponseError as exc:
            if exc.status_code == 404:
                raise AppointmentNotFoundError(f"Appointment '{appointment_id}' does not exist") from exc
            raise
        return Appointment.from_payload(payload)

    def _remember(self, appointment: Appointment) -> Appointment:
        if self.book is not None:
            return self.book.apply(appointment)
        return appointment

    def _check_transition(self, appointment: Appointment, target: AppointmentStatus) -> None:
        if not self.enforce_transitions:
            return
        if not can_transition(appointment.status, target):
            raise InvalidTransitionError(
                f"Cannot move appointment {appointment.id} from {appointment.status} to {target.value}"
            )

    def ensure_reschedulable(self, appointment: Appointment) -> None:
        if self.enforce_transitions and is_terminal(appointment.status):
            raise InvalidTransitionError(
                f"Appointment {appointment.id} is already {appointment.status} and cannot be rescheduled"
            )

    def _set_status(
        self,
        appointment: Appointment,
        target: AppointmentStatus,
        *,
        failure_message: str,
    ) -> Appointment:
        self._check_transition(appointment, target)
        try:
            payload = self._api.update_status(appointment.id, target.value, updated_at=self._stamp())
        except ShedulaClientError:
            self.notifier.error(failure_message)
            raise
        if payload:
            updated = Appointment.from_payload(payload)
        else:
            updated = replace(appointment, status=target.value)
        logger.info("Appointment %s moved from %s to %s", appointment.id, appointment.status, target.value)
        return self._remember(updated)

    def update_status(self, appointment_id: str, new_status: object) -> Appointment:
        """PATCH the status of an appointment and return the server's record."""

        target = AppointmentStatus.parse(new_status)
        appointment = self.current(appointment_id)
        updated = self._set_status(
            appointment, target, failure_message="Failed to update appointment status"
        )
        self.notifier.success(f"Appointment marked as {target.value}")
        return updated

    def request_status_change(
        self, appointment_id: str, new_status: object
    ) -> Union[Appointment, CompletionPrompt]:
        """Entry point for status buttons; completion needs a second choice."""

        target = AppointmentStatus.parse(new_status)
        if target is AppointmentStatus.COMPLETED:
            appointment = self.current(appointment_id)
            self._check_transition(appointment, target)
            return CompletionPrompt(appointment=appointment)
        return self.update_status(appointment_id, target)

    def cancel(self, appointment_id: str) -> Appointment:
        appointment = self.current(appointment_id)
        updated = self._set_status(
            appointment, AppointmentStatus.CANCELLED, failure_message="Failed to cancel appointment"
        )
        self.notifier.success("The appointment has been cancelled successfully", title="Appointment Cancelled")
        return updated

    def complete(self, appointment_id: str, *, create_prescription: bool = False) -> CompletionOutcome:
        appointment = self.current(appointment_id)
        updated = self._set_status(
            appointment, AppointmentStatus.COMPLETED, failure_message="Failed to complete appointment"
        )
        self.notifier.success("Appointment marked as completed")
        redirect_url = prescription_redirect_url(updated) if create_prescription else None
        return CompletionOutcome(appointment=updated, redirect_url=redirect_url)

    def reschedule(
        self, appointment_id: str, new_date: object, new_time: object, *, notify: bool = True
    ) -> Appointment:
        """Move an appointment to a new slot. The status is left as it is.

        With ``notify=False`` the caller posts its own success notice.
        """

        date_value = validate_date(new_date)
        time_value = validate_time(new_time)
        appointment = self.current(appointment_id)
        self.ensure_reschedulable(appointment)
        try:
            payload = self._api.update_date_time(
                appointment.id, date_value, time_value, updated_at=self._stamp()
            )
        except ShedulaClientError:
            self.notifier.error("Failed to reschedule appointment")
            raise
        if payload:
            updated = Appointment.from_payload(payload)
        else:
            updated = replace(appointment, date=date_value, time=time_value)
        logger.info(
            "Appointment %s moved from %s to %s", appointment.id, appointment.slot_label, updated.slot_label
        )
        if notify:
            self.notifier.success(f"Appointment rescheduled to {date_value} at {time_value}")
        return self._remember(updated)

    def delete(self, appointment_id: str) -> None:
        """Remove an appointment record entirely. Cancelling uses ``cancel``."""

        try:
            self._api.delete(appointment_id)
        except ShedulaClientError:
            self.notifier.error("Failed to delete appointment")
            raise
        if self.book is not None:
            self.book.remove(appointment_id)
        logger.info("Appointment %s deleted", appointment_id)
        self.notifier.success("Appointment deleted successfully")

    def book_appointment(
        self,
        *,
        doctor_id: str,
        patient_id: str,
        date: object,
        time: object,
        doctor_name: str = "",
        patient_name: str = "",
        specialty: str = "",
    ) -> Appointment:
        """Create a pending appointment if the doctor's slot is free.

        When a schedule is attached the slot must also be one of the doctor's
        working slots on a date that is not blocked.
        """

        if not doctor_id or not patient_id:
            raise ValueError("doctor_id and patient_id must be provided")
        date_value = validate_date(date)
        time_value = validate_time(time)

        if self.schedule is not None:
            self.schedule.ensure_bookable(doctor_id, date_value, time_value)
        existing = self._api.get_by_doctor_id(doctor_id)
        if _slot_taken(existing, date_value, time_value):
            raise ValueError("Requested time slot is unavailable")

        payload = {
            "doctorId": doctor_id,
            "patientId": patient_id,
            "date": date_value,
            "time": time_value,
            "status": AppointmentStatus.PENDING.value,
            "doctorName": doctor_name,
            "patientName": patient_name,
            "specialty": specialty,
            "updatedAt": self._stamp(),
        }
        try:
            created = Appointment.from_payload(self._api.create(payload))
        except ShedulaClientError:
            self.notifier.error("Failed to book appointment")
            raise
        self.notifier.success(f"Appointment booked for {date_value} at {time_value}")
        return self._remember(created)


def _slot_taken(existing: Iterable[Mapping[str, object]], date_value: str, time_value: str) -> bool:
    for record in existing:
        if record.get("date") != date_value or record.get("time") != time_value:
            continue
        if record.get("status") != AppointmentStatus.CANCELLED.value:
            return True
    return False


__all__ = [
    "ALLOWED_TRANSITIONS",
    "AppointmentBook",
    "AppointmentNotFoundError",
    "AppointmentStatus",
    "AppointmentWorkflow",
    "CompletionOutcome",
    "CompletionPrompt",
    "InvalidTransitionError",
    "PrescriptionPrefill",
    "STATUS_STYLES",
    "StatusStyle",
    "available_actions",
    "can_transition",
    "is_terminal",
    "prescription_redirect_url",
    "status_style",
]

"""Doctors' weekly availability and blocked dates.

Each doctor has working hours per weekday, an optional break and a slot
length, plus a list of dates on which no bookings are taken. Slots are
generated from the working hours, skipping any slot that starts inside the
break or ends inside it. Like reviews, the schedule lives either in a local
JSON file or in the backend, as chosen by settings.
"""
from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol

from clinic.models import DATE_FORMAT, TIME_FORMAT, validate_date, validate_time
from clinic.notifications import Notifier
from connector.api_client import ApiResponseError, SchedulesAPI, ShedulaClientError
from connector.settings import STORE_LOCAL, ApiSettings

logger = logging.getLogger(__name__)

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
DEFAULT_SLOT_MINUTES = 30
DEFAULT_BLOCK_REASON = "Unavailable"


class ScheduleValidationError(ValueError):
    """Raised when working hours or slot settings are inconsistent."""


class SlotUnavailableError(ValueError):
    """Raised when a booking falls outside the doctor's schedule."""


class BlockedDateNotFoundError(LookupError):
    """Raised when removing a blocked date that does not exist."""


def _minutes(value: str) -> datetime:
    return datetime.strptime(value, TIME_FORMAT)


@dataclass(frozen=True)
class TimeSlot:
    start: str
    end: str

    def to_dict(self) -> Dict[str, str]:
        return {"start": self.start, "end": self.end}


@dataclass
class DaySchedule:
    enabled: bool = True
    start_time: str = "09:00"
    end_time: str = "17:00"
    break_start: Optional[str] = "12:00"
    break_end: Optional[str] = "13:00"
    slot_duration: int = DEFAULT_SLOT_MINUTES

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "DaySchedule":
        return cls(
            enabled=bool(payload.get("enabled", True)),
            start_time=str(payload.get("startTime") or "09:00"),
            end_time=str(payload.get("endTime") or "17:00"),
            break_start=payload.get("breakStart") or None,
            break_end=payload.get("breakEnd") or None,
            slot_duration=int(payload.get("slotDuration") or DEFAULT_SLOT_MINUTES),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "breakStart": self.break_start or "",
            "breakEnd": self.break_end or "",
            "slotDuration": self.slot_duration,
        }

    def validate(self, day: str) -> None:
        try:
            start, end = validate_time(self.start_time), validate_time(self.end_time)
            breaks = [validate_time(value) for value in (self.break_start, self.break_end) if value]
        except ValueError as exc:
            raise ScheduleValidationError(f"{day.capitalize()}: {exc}") from exc
        if start >= end:
            raise ScheduleValidationError(f"{day.capitalize()}: start time must be before end time")
        if len(breaks) == 1:
            raise ScheduleValidationError(f"{day.capitalize()}: a break needs both a start and an end")
        if breaks and breaks[0] >= breaks[1]:
            raise ScheduleValidationError(f"{day.capitalize()}: break start must be before break end")
        if isinstance(self.slot_duration, bool) or not isinstance(self.slot_duration, int) or self.slot_duration < 5:
            raise ScheduleValidationError(f"{day.capitalize()}: slot duration must be at least 5 minutes")


def default_week() -> Dict[str, DaySchedule]:
    week = {day: DaySchedule() for day in WEEKDAYS[:5]}
    for day in WEEKDAYS[5:]:
        week[day] = DaySchedule(enabled=False, start_time="10:00", end_time="14:00", break_start=None, break_end=None)
    return week


def generate_time_slots(day: DaySchedule) -> List[TimeSlot]:
    """Bookable slots of one day, in order."""

    if not day.enabled:
        return []
    step = timedelta(minutes=day.slot_duration)
    current, end = _minutes(day.start_time), _minutes(day.end_time)
    break_start = _minutes(day.break_start) if day.break_start else None
    break_end = _minutes(day.break_end) if day.break_end else None

    slots: List[TimeSlot] = []
    while current < end:
        slot_end = current + step
        if break_start and break_end and (
            break_start <= current < break_end or break_start < slot_end <= break_end
        ):
            current = slot_end
            continue
        slots.append(TimeSlot(current.strftime(TIME_FORMAT), slot_end.strftime(TIME_FORMAT)))
        current = slot_end
    return slots


@dataclass(frozen=True)
class BlockedDate:
    id: str
    date: str
    reason: str = DEFAULT_BLOCK_REASON

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "BlockedDate":
        return cls(
            id=str(payload.get("id") or uuid.uuid4().hex),
            date=validate_date(payload.get("date")),
            reason=str(payload.get("reason") or DEFAULT_BLOCK_REASON),
        )

    def to_payload(self) -> Dict[str, str]:
        return {"id": self.id, "date": self.date, "reason": self.reason}


@dataclass
class WeeklySchedule:
    doctor_id: str
    days: Dict[str, DaySchedule] = field(default_factory=default_week)
    blocked_dates: List[BlockedDate] = field(default_factory=list)

    @classmethod
    def from_payload(cls, doctor_id: str, payload: Mapping[str, Any]) -> "WeeklySchedule":
        week = default_week()
        for day, values in (payload.get("days") or {}).items():
            if day in week and isinstance(values, Mapping):
                week[day] = DaySchedule.from_payload(values)
        blocked = []
        for item in payload.get("blockedDates") or []:
            try:
                blocked.append(BlockedDate.from_payload(item))
            except (TypeError, ValueError, AttributeError):
                logger.warning("Skipping unreadable blocked date %r for doctor %s", item, doctor_id)
        return cls(doctor_id=doctor_id, days=week, blocked_dates=blocked)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "doctorId": self.doctor_id,
            "days": {day: self.days[day].to_payload() for day in WEEKDAYS},
            "blockedDates": [blocked.to_payload() for blocked in self.blocked_dates],
        }

    def validate(self) -> None:
        for day in WEEKDAYS:
            self.days[day].validate(day)

    def day_for(self, date_value: str) -> DaySchedule:
        weekday = datetime.strptime(validate_date(date_value), DATE_FORMAT).weekday()
        return self.days[WEEKDAYS[weekday]]

    def blocked_on(self, date_value: str) -> Optional[BlockedDate]:
        for blocked in self.blocked_dates:
            if blocked.date == date_value:
                return blocked
        return None

    def slots_for(self, date_value: str) -> List[TimeSlot]:
        if self.blocked_on(date_value) is not None:
            return []
        return generate_time_slots(self.day_for(date_value))


class ScheduleStore(Protocol):
    def load(self, doctor_id: str) -> Optional[Dict[str, Any]]: ...

    def save(self, doctor_id: str, payload: Dict[str, Any]) -> Dict[str, Any]: ...


class ApiScheduleStore:
    """Schedules kept in the backend's ``/schedules`` collection."""

    def __init__(self, api: SchedulesAPI) -> None:
        self._api = api

    def load(self, doctor_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self._api.get_by_doctor_id(doctor_id)
        except ApiResponseError as exc:
            if exc.status_code == 404:
                return None
            raise

    def save(self, doctor_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return self._api.update(doctor_id, payload)
        except ApiResponseError as exc:
            if exc.status_code != 404:
                raise
        return self._api.create({**payload, "id": doctor_id})


class LocalScheduleStore:
    """Schedules kept in a JSON file, one ``schedule_<doctor>`` and one
    ``blocked_dates_<doctor>`` entry per doctor."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        with self.path.open("r", encoding="utf-8") as handle:
            try:
                data = json.load(handle)
            except json.JSONDecodeError:
                logger.warning("Schedule store %s is corrupted; using default schedules", self.path)
                return {}
        return data if isinstance(data, dict) else {}

    def load(self, doctor_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            data = self._read()
        days = data.get(f"schedule_{doctor_id}")
        blocked = data.get(f"blocked_dates_{doctor_id}")
        if days is None and blocked is None:
            return None
        return {"doctorId": doctor_id, "days": days or {}, "blockedDates": blocked or []}

    def save(self, doctor_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            data = self._read()
            data[f"schedule_{doctor_id}"] = payload.get("days", {})
            data[f"blocked_dates_{doctor_id}"] = payload.get("blockedDates", [])
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2)
        return payload


def build_schedule_store(settings: ApiSettings, api: SchedulesAPI) -> ScheduleStore:
    if settings.schedule_store == STORE_LOCAL:
        return LocalScheduleStore(settings.schedule_store_path)
    logger.info("Schedules are stored in the backend")
    return ApiScheduleStore(api)


class ScheduleService:
    def __init__(self, store: ScheduleStore, *, notifier: Optional[Notifier] = None) -> None:
        self.store = store
        self.notifier = notifier or Notifier()

    def get(self, doctor_id: str) -> WeeklySchedule:
        if not doctor_id:
            raise ValueError("doctor_id must be provided")
        payload = self.store.load(doctor_id)
        if payload is None:
            return WeeklySchedule(doctor_id=doctor_id)
        return WeeklySchedule.from_payload(doctor_id, payload)

    def _store(self, schedule: WeeklySchedule, failure_message: str) -> WeeklySchedule:
        schedule.validate()
        try:
            self.store.save(schedule.doctor_id, schedule.to_payload())
        except (ShedulaClientError, OSError):
            self.notifier.error(failure_message)
            raise
        logger.info("Schedule saved for doctor %s", schedule.doctor_id)
        return schedule

    def save(self, schedule: WeeklySchedule) -> WeeklySchedule:
        self._store(schedule, "Failed to save schedule")
        self.notifier.success("Schedule saved successfully!")
        return schedule

    def update_day(self, doctor_id: str, day: str, changes: Mapping[str, Any]) -> WeeklySchedule:
        """Merge camelCase ``changes`` into one weekday and save the week."""

        day = day.strip().lower()
        if day not in WEEKDAYS:
            raise ScheduleValidationError(f"Unknown day {day!r}")
        schedule = self.get(doctor_id)
        try:
            schedule.days[day] = DaySchedule.from_payload({**schedule.days[day].to_payload(), **changes})
        except (TypeError, ValueError) as exc:
            raise ScheduleValidationError(f"{day.capitalize()}: {exc}") from exc
        return self.save(schedule)

    def block_date(self, doctor_id: str, date_value: object, reason: str = "") -> BlockedDate:
        schedule = self.get(doctor_id)
        blocked = BlockedDate(
            id=uuid.uuid4().hex,
            date=validate_date(date_value),
            reason=reason.strip() or DEFAULT_BLOCK_REASON,
        )
        schedule.blocked_dates.append(blocked)
        self._store(schedule, "Failed to block date")
        self.notifier.success("Date blocked successfully!")
        return blocked

    def unblock_date(self, doctor_id: str, blocked_id: str) -> None:
        schedule = self.get(doctor_id)
        remaining = [blocked for blocked in schedule.blocked_dates if blocked.id != blocked_id]
        if len(remaining) == len(schedule.blocked_dates):
            raise BlockedDateNotFoundError(f"Blocked date '{blocked_id}' does not exist")
        schedule.blocked_dates = remaining
        self._store(schedule, "Failed to remove blocked date")
        self.notifier.success("Blocked date removed!")

    def slots_for(self, doctor_id: str, date_value: object) -> List[TimeSlot]:
        return self.get(doctor_id).slots_for(validate_date(date_value))

    def ensure_bookable(self, doctor_id: str, date_value: str, time_value: str) -> None:
        schedule = self.get(doctor_id)
        blocked = schedule.blocked_on(date_value)
        if blocked is not None:
            raise SlotUnavailableError(f"The doctor is not available on {date_value} ({blocked.reason})")
        if time_value not in {slot.start for slot in schedule.slots_for(date_value)}:
            raise SlotUnavailableError(f"{time_value} on {date_value} is outside the doctor's working hours")


__all__ = [
    "ApiScheduleStore",
    "BlockedDate",
    "BlockedDateNotFoundError",
    "DaySchedule",
    "LocalScheduleStore",
    "ScheduleService",
    "ScheduleStore",
    "ScheduleValidationError",
    "SlotUnavailableError",
    "TimeSlot",
    "WEEKDAYS",
    "WeeklySchedule",
    "build_schedule_store",
    "generate_time_slots",
]

"""Record types exchanged with the backend.

Every record is parsed from the camelCase JSON the backend stores and can be
serialised back with ``to_payload``. Unknown keys are ignored on the way in.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time
from typing import Any, Dict, List, Mapping, Optional, Sequence

DATE_FORMAT = "%Y-%m-%d"
TIME_FORMAT = "%H:%M"
_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def utc_now() -> datetime:
    return datetime.now(UTC)


def format_timestamp(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: object) -> Optional[datetime]:
    """Parse an ISO timestamp, returning an aware UTC datetime or ``None``."""

    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, str) and value.strip():
        try:
            moment = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def validate_date(value: object) -> str:
    if isinstance(value, datetime):
        return value.date().strftime(DATE_FORMAT)
    if isinstance(value, date):
        return value.strftime(DATE_FORMAT)
    if not isinstance(value, str):
        raise ValueError("date must be an ISO formatted string (YYYY-MM-DD)")
    try:
        return datetime.strptime(value.strip(), DATE_FORMAT).strftime(DATE_FORMAT)
    except ValueError as exc:
        raise ValueError("date must be an ISO formatted string (YYYY-MM-DD)") from exc


def validate_time(value: object) -> str:
    if isinstance(value, time):
        return value.strftime(TIME_FORMAT)
    if not isinstance(value, str) or not _TIME_PATTERN.match(value.strip()):
        raise ValueError("time must be a 24h HH:MM string")
    return value.strip()


def _text(payload: Mapping[str, Any], key: str, default: str = "") -> str:
    value = payload.get(key)
    if value is None:
        return default
    return str(value)


def _optional_text(payload: Mapping[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None or value == "":
        return None
    return str(value)


def _require_id(payload: Mapping[str, Any], kind: str) -> str:
    value = payload.get("id")
    if value is None or str(value) == "":
        raise ValueError(f"{kind} payload is missing an id")
    return str(value)


def _drop_none(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in payload.items() if value is not None}


@dataclass
class Appointment:
    id: str
    doctor_id: str
    patient_id: str
    date: str
    time: str
    status: str
    doctor_name: str = ""
    patient_name: str = ""
    specialty: str = ""
    updated_at: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Appointment":
        if not isinstance(payload, Mapping):
            raise ValueError("Each appointment entry must be a dictionary.")
        return cls(
            id=_require_id(payload, "Appointment"),
            doctor_id=_text(payload, "doctorId"),
            patient_id=_text(payload, "patientId"),
            date=_text(payload, "date"),
            time=_text(payload, "time"),
            status=_text(payload, "status", "pending"),
            doctor_name=_text(payload, "doctorName"),
            patient_name=_text(payload, "patientName"),
            specialty=_text(payload, "specialty"),
            updated_at=_optional_text(payload, "updatedAt"),
        )

    def to_payload(self) -> Dict[str, Any]:
        return _drop_none(
            {
                "id": self.id,
                "doctorId": self.doctor_id,
                "patientId": self.patient_id,
                "date": self.date,
                "time": self.time,
                "status": self.status,
                "doctorName": self.doctor_name,
                "patientName": self.patient_name,
                "specialty": self.specialty,
                "updatedAt": self.updated_at,
            }
        )

    @property
    def start(self) -> datetime:
        return datetime.strptime(f"{self.date} {self.time}", f"{DATE_FORMAT} {TIME_FORMAT}")

    @property
    def slot_label(self) -> str:
        return f"{self.date} at {self.time}"


@dataclass
class Medicine:
    name: str
    dosage: str
    duration: str
    instructions: Optional[str] = None
    id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Medicine":
        return cls(
            name=_text(payload, "name").strip(),
            dosage=_text(payload, "dosage").strip(),
            duration=_text(payload, "duration").strip(),
            instructions=_optional_text(payload, "instructions"),
            id=_optional_text(payload, "id"),
        )

    def to_payload(self) -> Dict[str, Any]:
        return _drop_none(
            {
                "id": self.id,
                "name": self.name,
                "dosage": self.dosage,
                "duration": self.duration,
                "instructions": self.instructions,
            }
        )


@dataclass
class Prescription:
    id: str
    doctor_id: str
    patient_id: str
    patient_name: str
    doctor_name: str
    medicines: List[Medicine] = field(default_factory=list)
    appointment_id: Optional[str] = None
    notes: Optional[str] = None
    date_created: str = ""
    date_updated: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Prescription":
        medicines_raw = payload.get("medicines") or []
        return cls(
            id=_require_id(payload, "Prescription"),
            doctor_id=_text(payload, "doctorId"),
            patient_id=_text(payload, "patientId"),
            patient_name=_text(payload, "patientName"),
            doctor_name=_text(payload, "doctorName"),
            medicines=[Medicine.from_payload(item) for item in medicines_raw if isinstance(item, Mapping)],
            appointment_id=_optional_text(payload, "appointmentId"),
            notes=_optional_text(payload, "notes"),
            date_created=_text(payload, "dateCreated"),
            date_updated=_optional_text(payload, "dateUpdated"),
        )

    def to_payload(self) -> Dict[str, Any]:
        return _drop_none(
            {
                "id": self.id,
                "doctorId": self.doctor_id,
                "patientId": self.patient_id,
                "appointmentId": self.appointment_id,
                "patientName": self.patient_name,
                "doctorName": self.doctor_name,
                "medicines": [medicine.to_payload() for medicine in self.medicines],
                "notes": self.notes,
                "dateCreated": self.date_created,
                "dateUpdated": self.date_updated,
            }
        )

    @property
    def created_at(self) -> Optional[datetime]:
        return parse_timestamp(self.date_created)


@dataclass
class Review:
    id: str
    appointment_id: str
    doctor_id: str
    patient_id: str
    rating: int
    review_text: str
    date_created: str
    doctor_name: str = ""
    patient_name: str = ""
    date_updated: Optional[str] = None
    is_editable: bool = False

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Review":
        try:
            rating = int(payload.get("rating", 0))
        except (TypeError, ValueError) as exc:
            raise ValueError("Review rating must be an integer") from exc
        return cls(
            id=_require_id(payload, "Review"),
            appointment_id=_text(payload, "appointmentId"),
            doctor_id=_text(payload, "doctorId"),
            patient_id=_text(payload, "patientId"),
            rating=rating,
            review_text=_text(payload, "reviewText"),
            date_created=_text(payload, "dateCreated"),
            doctor_name=_text(payload, "doctorName"),
            patient_name=_text(payload, "patientName"),
            date_updated=_optional_text(payload, "dateUpdated"),
            is_editable=bool(payload.get("isEditable", False)),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "appointmentId": self.appointment_id,
            "doctorId": self.doctor_id,
            "patientId": self.patient_id,
            "doctorName": self.doctor_name,
            "patientName": self.patient_name,
            "rating": self.rating,
            "reviewText": self.review_text,
            "dateCreated": self.date_created,
            "dateUpdated": self.date_updated,
            "isEditable": self.is_editable,
        }


@dataclass
class Diagnosis:
    id: str
    patient_id: str
    doctor_id: str
    diagnosis: str
    status: str
    date_of_diagnosis: str
    appointment_id: Optional[str] = None
    icd_code: Optional[str] = None
    severity: Optional[str] = None
    notes: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Diagnosis":
        return cls(
            id=_require_id(payload, "Diagnosis"),
            patient_id=_text(payload, "patientId"),
            doctor_id=_text(payload, "doctorId"),
            diagnosis=_text(payload, "diagnosis"),
            status=_text(payload, "status", "Active"),
            date_of_diagnosis=_text(payload, "dateOfDiagnosis"),
            appointment_id=_optional_text(payload, "appointmentId"),
            icd_code=_optional_text(payload, "icdCode"),
            severity=_optional_text(payload, "severity"),
            notes=_optional_text(payload, "notes"),
        )

    def to_payload(self) -> Dict[str, Any]:
        return _drop_none(
            {
                "id": self.id,
                "patientId": self.patient_id,
                "doctorId": self.doctor_id,
                "appointmentId": self.appointment_id,
                "diagnosis": self.diagnosis,
                "icdCode": self.icd_code,
                "severity": self.severity,
                "status": self.status,
                "dateOfDiagnosis": self.date_of_diagnosis,
                "notes": self.notes,
            }
        )


@dataclass
class Doctor:
    id: str
    name: str
    email: str = ""
    phone: str = ""
    specialty: str = ""
    qualifications: str = ""
    experience: str = ""
    clinic_address: str = ""
    registration_number: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Doctor":
        return cls(
            id=_require_id(payload, "Doctor"),
            name=_text(payload, "name"),
            email=_text(payload, "email"),
            phone=_text(payload, "phone"),
            specialty=_text(payload, "specialty"),
            qualifications=_text(payload, "qualifications"),
            experience=_text(payload, "experience"),
            clinic_address=_text(payload, "clinicAddress"),
            registration_number=_optional_text(payload, "registrationNumber"),
        )

    @property
    def display_name(self) -> str:
        if self.name.startswith("Dr."):
            return self.name
        return f"Dr. {self.name}"


@dataclass
class Patient:
    id: str
    name: str
    email: str = ""
    phone: str = ""

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Patient":
        return cls(
            id=_require_id(payload, "Patient"),
            name=_text(payload, "name"),
            email=_text(payload, "email"),
            phone=_text(payload, "phone"),
        )


def parse_many(factory: Any, payloads: Sequence[Mapping[str, Any]]) -> List[Any]:
    return [factory.from_payload(payload) for payload in payloads]


__all__ = [
    "Appointment",
    "DATE_FORMAT",
    "Diagnosis",
    "Doctor",
    "Medicine",
    "Patient",
    "Prescription",
    "Review",
    "TIME_FORMAT",
    "format_timestamp",
    "parse_many",
    "parse_timestamp",
    "utc_now",
    "validate_date",
    "validate_time",
]

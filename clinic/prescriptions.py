"""Prescription authoring: validation, CRUD, merging and appointment matching."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from clinic.models import Appointment, Medicine, Prescription, format_timestamp, utc_now
from connector.api_client import PrescriptionsAPI

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=UTC)


class PrescriptionValidationError(ValueError):
    """Raised when a prescription draft is incomplete."""

    def __init__(self, errors: Sequence[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = list(errors)


@dataclass
class PrescriptionDraft:
    """Form data for a new or edited prescription."""

    doctor_id: str
    doctor_name: str
    patient_id: str
    patient_name: str
    medicines: List[Medicine] = field(default_factory=list)
    appointment_id: Optional[str] = None
    notes: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "PrescriptionDraft":
        medicines = [
            Medicine.from_payload(item) for item in payload.get("medicines") or [] if isinstance(item, Mapping)
        ]
        return cls(
            doctor_id=str(payload.get("doctorId") or ""),
            doctor_name=str(payload.get("doctorName") or ""),
            patient_id=str(payload.get("patientId") or ""),
            patient_name=str(payload.get("patientName") or ""),
            medicines=medicines,
            appointment_id=str(payload["appointmentId"]) if payload.get("appointmentId") else None,
            notes=str(payload["notes"]) if payload.get("notes") else None,
        )

    def validate(self) -> None:
        errors: List[str] = []
        if not self.doctor_id.strip():
            errors.append("Doctor is required")
        if not self.patient_id.strip():
            errors.append("Patient is required")
        if not self.patient_name.strip():
            errors.append("Patient name is required")
        if not self.medicines:
            errors.append("At least one medicine is required")
        for index, medicine in enumerate(self.medicines, start=1):
            if not medicine.name.strip():
                errors.append(f"Medicine {index}: name is required")
            if not medicine.dosage.strip():
                errors.append(f"Medicine {index}: dosage is required")
            if not medicine.duration.strip():
                errors.append(f"Medicine {index}: duration is required")
        if errors:
            raise PrescriptionValidationError(errors)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "doctorId": self.doctor_id,
            "doctorName": self.doctor_name,
            "patientId": self.patient_id,
            "patientName": self.patient_name,
            "medicines": [medicine.to_payload() for medicine in self.medicines],
        }
        if self.appointment_id:
            payload["appointmentId"] = self.appointment_id
        if self.notes:
            payload["notes"] = self.notes
        return payload


def _created_at(prescription: Prescription) -> datetime:
    return prescription.created_at or _EPOCH


def most_recent(prescriptions: Iterable[Prescription]) -> Optional[Prescription]:
    ordered = sorted(prescriptions, key=_created_at, reverse=True)
    return ordered[0] if ordered else None


def match_for_appointment(
    prescriptions: Sequence[Prescription], appointment: Appointment
) -> Optional[Prescription]:
    """Find the prescription written for ``appointment``.

    An exact ``appointmentId`` link wins. Without one, a completed
    appointment falls back to the latest prescription from the same doctor
    for the same patient, which can attribute a prescription to the wrong
    visit when a patient was seen several times.
    """

    for prescription in prescriptions:
        if prescription.appointment_id and prescription.appointment_id == appointment.id:
            return prescription
    if appointment.status != "completed":
        return None
    candidates = [
        prescription
        for prescription in prescriptions
        if prescription.patient_id == appointment.patient_id
        and prescription.doctor_id == appointment.doctor_id
    ]
    return most_recent(candidates)


def merge_medicines(existing: Sequence[Medicine], new: Iterable[Medicine]) -> List[Medicine]:
    """Append medicines whose names are not already present (case-insensitive)."""

    seen = {medicine.name.strip().lower() for medicine in existing}
    merged = list(existing)
    for medicine in new:
        key = medicine.name.strip().lower()
        if key in seen:
            continue
        seen.add(key)
        merged.append(medicine)
    return merged


class PrescriptionService:
    def __init__(self, api: PrescriptionsAPI, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._api = api
        self._clock = clock

    def _stamp(self) -> str:
        return format_timestamp(self._clock())

    @staticmethod
    def _parse(payloads: Iterable[Mapping[str, Any]]) -> List[Prescription]:
        records: List[Prescription] = []
        for payload in payloads:
            try:
                records.append(Prescription.from_payload(payload))
            except ValueError as exc:
                logger.warning("Skipping invalid prescription payload %s: %s", payload, exc)
        return records

    def create(self, draft: PrescriptionDraft) -> Prescription:
        draft.validate()
        payload = draft.to_payload()
        payload["dateCreated"] = self._stamp()
        created = Prescription.from_payload(self._api.create(payload))
        logger.info("Prescription %s created for patient %s", created.id, created.patient_id)
        return created

    def update(self, prescription_id: str, changes: Mapping[str, Any]) -> Prescription:
        if not changes:
            raise ValueError("changes must not be empty")
        payload = dict(changes)
        if "medicines" in payload:
            payload["medicines"] = [
                item.to_payload() if isinstance(item, Medicine) else dict(item) for item in payload["medicines"]
            ]
        payload["dateUpdated"] = self._stamp()
        return Prescription.from_payload(self._api.update(prescription_id, payload))

    def delete(self, prescription_id: str) -> None:
        self._api.delete(prescription_id)
        logger.info("Prescription %s deleted", prescription_id)

    def get(self, prescription_id: str) -> Prescription:
        return Prescription.from_payload(self._api.get_by_id(prescription_id))

    def list_all(self) -> List[Prescription]:
        return self._parse(self._api.get_all())

    def list_for_doctor(self, doctor_id: str) -> List[Prescription]:
        return self._parse(self._api.get_by_doctor_id(doctor_id))

    def list_for_patient(self, patient_id: str) -> List[Prescription]:
        return self._parse(self._api.get_by_patient_id(patient_id))

    def find_existing_for_patient(self, doctor_id: str, patient_id: str) -> Optional[Prescription]:
        return most_recent(self._parse(self._api.get_by_doctor_and_patient(doctor_id, patient_id)))

    def add_medicines(self, prescription_id: str, medicines: Iterable[Medicine]) -> Prescription:
        existing = self.get(prescription_id)
        merged = merge_medicines(existing.medicines, medicines)
        return self.update(prescription_id, {"medicines": merged})

    def create_or_merge(self, draft: PrescriptionDraft) -> Tuple[Prescription, bool]:
        """Add the draft's medicines to the patient's latest prescription, or create one.

        Returns the stored prescription and whether an existing one was updated.
        """

        draft.validate()
        existing = self.find_existing_for_patient(draft.doctor_id, draft.patient_id)
        if existing is None:
            return self.create(draft), False
        logger.info("Merging %d medicines into prescription %s", len(draft.medicines), existing.id)
        return self.add_medicines(existing.id, draft.medicines), True


__all__ = [
    "PrescriptionDraft",
    "PrescriptionService",
    "PrescriptionValidationError",
    "match_for_appointment",
    "merge_medicines",
    "most_recent",
]

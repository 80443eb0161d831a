"""Wiring of settings, connector clients and clinic services."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

import requests

from clinic.analytics import DEFAULT_RANGE_DAYS, DoctorAnalytics, compute_analytics
from clinic.appointments import AppointmentBook, AppointmentWorkflow
from clinic.calendar import AppointmentCalendar
from clinic.models import Appointment, Doctor, parse_many, utc_now
from clinic.notifications import Notifier
from clinic.prescriptions import PrescriptionService
from clinic.reviews import ReviewService, build_review_store
from clinic.schedule import ScheduleService, build_schedule_store
from connector.api_client import (
    AppointmentsAPI,
    AuthAPI,
    DiagnosesAPI,
    DoctorsAPI,
    PatientsAPI,
    PrescriptionsAPI,
    ReviewsAPI,
    SchedulesAPI,
    ShedulaApiClient,
    resolve_api_base,
)
from connector.settings import ApiSettings

logger = logging.getLogger(__name__)


@dataclass
class ClinicContext:
    """Everything a front end needs, built once from settings."""

    settings: ApiSettings
    client: ShedulaApiClient
    notifier: Notifier = field(default_factory=Notifier)
    clock: Callable[[], datetime] = utc_now

    def __post_init__(self) -> None:
        self.doctors = DoctorsAPI(self.client)
        self.patients = PatientsAPI(self.client)
        self.appointments = AppointmentsAPI(self.client)
        self.prescriptions_api = PrescriptionsAPI(self.client)
        self.reviews_api = ReviewsAPI(self.client)
        self.schedules_api = SchedulesAPI(self.client)
        self.diagnoses = DiagnosesAPI(self.client)
        self.auth = AuthAPI(self.client)
        self.prescriptions = PrescriptionService(self.prescriptions_api)
        self.reviews = ReviewService(build_review_store(self.settings, self.reviews_api))
        self.schedules = ScheduleService(
            build_schedule_store(self.settings, self.schedules_api), notifier=self.notifier
        )

    def workflow(self, book: Optional[AppointmentBook] = None) -> AppointmentWorkflow:
        return AppointmentWorkflow(
            self.appointments,
            book=book,
            notifier=self.notifier,
            enforce_transitions=self.settings.enforce_transitions,
            clock=self.clock,
            schedule=self.schedules,
        )

    def doctor_book(self, doctor_id: str) -> AppointmentBook:
        return AppointmentBook(self.appointments, doctor_id=doctor_id)

    def patient_book(self, patient_id: str) -> AppointmentBook:
        return AppointmentBook(self.appointments, patient_id=patient_id)

    def calendar(self, doctor_id: str) -> AppointmentCalendar:
        book = self.doctor_book(doctor_id)
        return AppointmentCalendar(
            book,
            self.workflow(book),
            prescriptions=self.prescriptions,
            confirm_reschedule=self.settings.confirm_reschedule,
            notifier=self.notifier,
        )

    def doctor(self, doctor_id: str) -> Doctor:
        return Doctor.from_payload(self.doctors.get_by_id(doctor_id))

    def analytics(self, doctor_id: str, range_days: int = DEFAULT_RANGE_DAYS) -> DoctorAnalytics:
        appointments = parse_many(Appointment, self.appointments.get_by_doctor_id(doctor_id))
        return compute_analytics(appointments, today=self.clock().date(), range_days=range_days)


def build_context(
    settings: Optional[ApiSettings] = None,
    *,
    session: Optional[requests.Session] = None,
) -> ClinicContext:
    """Create a ``ClinicContext``.

    When a local backend is configured it is checked once here; the winner is
    fixed into the settings for the lifetime of the context.
    """

    settings = settings or ApiSettings.from_env()
    if settings.local_api_base:
        chosen = resolve_api_base(
            [settings.local_api_base, settings.api_base],
            health_timeout=settings.health_timeout,
            session=session,
        )
        settings = settings.with_api_base(chosen)
    client = ShedulaApiClient.from_settings(settings, session=session)
    logger.info(
        "Clinic context ready (API %s, reviews in %s store, schedules in %s store)",
        client.base_url,
        settings.review_store,
        settings.schedule_store,
    )
    return ClinicContext(settings=settings, client=client)

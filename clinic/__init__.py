"""Appointment, prescription, review and schedule workflows for Shedula."""

from clinic.analytics import DoctorAnalytics, compute_analytics
from clinic.appointments import (
    AppointmentBook,
    AppointmentNotFoundError,
    AppointmentStatus,
    AppointmentWorkflow,
    InvalidTransitionError,
)
from clinic.calendar import AppointmentCalendar, RescheduleFlow, RescheduleStateError
from clinic.context import ClinicContext, build_context
from clinic.notifications import Notice, Notifier
from clinic.prescriptions import PrescriptionDraft, PrescriptionService, PrescriptionValidationError
from clinic.reviews import (
    ReviewNotEditableError,
    ReviewNotFoundError,
    ReviewService,
    ReviewValidationError,
)
from clinic.schedule import (
    ScheduleService,
    ScheduleValidationError,
    SlotUnavailableError,
    WeeklySchedule,
    generate_time_slots,
)

__all__ = [
    "AppointmentBook",
    "AppointmentCalendar",
    "AppointmentNotFoundError",
    "AppointmentStatus",
    "AppointmentWorkflow",
    "ClinicContext",
    "DoctorAnalytics",
    "InvalidTransitionError",
    "Notice",
    "Notifier",
    "PrescriptionDraft",
    "PrescriptionService",
    "PrescriptionValidationError",
    "RescheduleFlow",
    "RescheduleStateError",
    "ReviewNotEditableError",
    "ReviewNotFoundError",
    "ReviewService",
    "ReviewValidationError",
    "ScheduleService",
    "ScheduleValidationError",
    "SlotUnavailableError",
    "WeeklySchedule",
    "build_context",
    "compute_analytics",
    "generate_time_slots",
]

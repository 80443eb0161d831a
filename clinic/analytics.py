"""Practice figures for a doctor over a recent window of days."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date as Date, datetime, timedelta
from typing import Dict, Iterable, List, Optional

from clinic.appointments import AppointmentStatus
from clinic.models import DATE_FORMAT, Appointment

logger = logging.getLogger(__name__)

DEFAULT_RANGE_DAYS = 30
RANGE_CHOICES = (30, 90, 365)
MONTHS_SHOWN = 6
_MONTH_LABELS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


@dataclass(frozen=True)
class MonthlyCount:
    month: str
    year: int
    appointments: int
    completed: int

    def to_dict(self) -> Dict[str, object]:
        return {
            "month": self.month,
            "year": self.year,
            "appointments": self.appointments,
            "completed": self.completed,
        }


@dataclass
class DoctorAnalytics:
    range_days: int
    total_patients: int = 0
    total_appointments: int = 0
    completed: int = 0
    cancelled: int = 0
    success_rate: int = 0
    status_distribution: Dict[str, int] = field(default_factory=dict)
    monthly: List[MonthlyCount] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "rangeDays": self.range_days,
            "totalPatients": self.total_patients,
            "totalAppointments": self.total_appointments,
            "completedAppointments": self.completed,
            "cancelledAppointments": self.cancelled,
            "successRate": self.success_rate,
            "statusDistribution": dict(self.status_distribution),
            "monthlyData": [month.to_dict() for month in self.monthly],
        }


def _appointment_day(appointment: Appointment) -> Optional[Date]:
    try:
        return datetime.strptime(appointment.date, DATE_FORMAT).date()
    except ValueError:
        logger.warning(
            "Appointment %s has an unreadable date %r; left out of analytics", appointment.id, appointment.date
        )
        return None


def success_rate(completed: int, total: int) -> int:
    """Completed share of ``total`` as a whole percentage, halves rounded up."""

    if total <= 0:
        return 0
    return math.floor(completed / total * 100 + 0.5)


def _recent_months(today: Date, count: int) -> List[tuple[int, int]]:
    months = []
    year, month = today.year, today.month
    for _ in range(count):
        months.append((year, month))
        year, month = (year - 1, 12) if month == 1 else (year, month - 1)
    return list(reversed(months))


def monthly_counts(
    dated: Iterable[tuple[Date, Appointment]], today: Date, months: int = MONTHS_SHOWN
) -> List[MonthlyCount]:
    totals: Dict[tuple[int, int], List[int]] = {key: [0, 0] for key in _recent_months(today, months)}
    for day, appointment in dated:
        bucket = totals.get((day.year, day.month))
        if bucket is None:
            continue
        bucket[0] += 1
        if appointment.status == AppointmentStatus.COMPLETED.value:
            bucket[1] += 1
    return [
        MonthlyCount(month=_MONTH_LABELS[month - 1], year=year, appointments=counts[0], completed=counts[1])
        for (year, month), counts in totals.items()
    ]


def compute_analytics(
    appointments: Iterable[Appointment], *, today: Date, range_days: int = DEFAULT_RANGE_DAYS
) -> DoctorAnalytics:
    """Summarise the appointments dated on or after ``today - range_days``.

    Later appointments count too, so booked future visits show up in the
    totals. The monthly series covers the last six calendar months whatever
    the range.
    """

    if isinstance(range_days, bool) or not isinstance(range_days, int) or range_days < 1:
        raise ValueError("range must be a positive number of days")
    cutoff = today - timedelta(days=range_days)

    dated: List[tuple[Date, Appointment]] = []
    for appointment in appointments:
        day = _appointment_day(appointment)
        if day is not None:
            dated.append((day, appointment))
    in_range = [appointment for day, appointment in dated if day >= cutoff]

    distribution = {status.value: 0 for status in AppointmentStatus}
    for appointment in in_range:
        if appointment.status in distribution:
            distribution[appointment.status] += 1
    total = len(in_range)
    completed = distribution[AppointmentStatus.COMPLETED.value]

    return DoctorAnalytics(
        range_days=range_days,
        total_patients=len({appointment.patient_id for appointment in in_range}),
        total_appointments=total,
        completed=completed,
        cancelled=distribution[AppointmentStatus.CANCELLED.value],
        success_rate=success_rate(completed, total),
        status_distribution=distribution,
        monthly=monthly_counts(dated, today),
    )


__all__ = [
    "DEFAULT_RANGE_DAYS",
    "DoctorAnalytics",
    "MONTHS_SHOWN",
    "MonthlyCount",
    "RANGE_CHOICES",
    "compute_analytics",
    "monthly_counts",
    "success_rate",
]

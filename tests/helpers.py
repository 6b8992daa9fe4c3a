"""Shared constants and small helpers for the scheduling tests."""

import datetime as dt

from himsog.domain.models import Appointment, AppointmentStatus

PROVIDER_ID = "prov-1"
PROVIDER_USER_ID = "doc-1"
PATIENT_USER_ID = "patient-1"

# Monday; the provider works Monday to Friday, 09:00-17:00 at UTC+08:00.
MONDAY = dt.date(2025, 3, 10)
SATURDAY = dt.date(2025, 3, 15)

PROVIDER_TZ = dt.timezone(dt.timedelta(hours=8))

# Sunday 2025-03-09 08:00 at the provider.
DEFAULT_NOW = dt.datetime(2025, 3, 9, 0, 0, tzinfo=dt.timezone.utc)


def local(date: dt.date, hhmm: str) -> dt.datetime:
    """An instant given as provider-local (+08:00) date and time."""
    hours, minutes = (int(part) for part in hhmm.split(":"))
    return dt.datetime(date.year, date.month, date.day, hours, minutes, tzinfo=PROVIDER_TZ)


def appointment(
    start: dt.datetime,
    minutes: int = 30,
    status: AppointmentStatus = AppointmentStatus.PENDING,
    appointment_id: str = "appt-1",
    provider_id: str = PROVIDER_ID,
) -> Appointment:
    return Appointment(
        appointment_id=appointment_id,
        appointment_number=f"APT-{appointment_id}",
        user_id=PATIENT_USER_ID,
        provider_id=provider_id,
        start_time=start,
        end_time=start + dt.timedelta(minutes=minutes),
        status=status,
        patient_name="Juan Dela Cruz",
        patient_email="juan@example.com",
    )


class FrozenClock:
    def __init__(self, now: dt.datetime) -> None:
        self.now = now

    def __call__(self) -> dt.datetime:
        return self.now

    def set(self, now: dt.datetime) -> None:
        self.now = now

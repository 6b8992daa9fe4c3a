import datetime as dt
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class AppointmentStatus(str, Enum):
    """Possible states of an appointment."""

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_blocking(self) -> bool:
        return self in BLOCKING_STATUSES


TERMINAL_STATUSES: frozenset[AppointmentStatus] = frozenset(
    {AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED, AppointmentStatus.NO_SHOW}
)

# Statuses that occupy the provider's time and therefore conflict with new bookings.
BLOCKING_STATUSES: frozenset[AppointmentStatus] = frozenset(
    {AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED, AppointmentStatus.COMPLETED}
)


class ProviderStatus(str, Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    SUSPENDED = "SUSPENDED"
    REJECTED = "REJECTED"


class Role(str, Enum):
    USER = "USER"
    PROVIDER = "PROVIDER"
    ADMIN = "ADMIN"


class SlotState(str, Enum):
    OPEN = "OPEN"
    BREAK = "BREAK"
    BOOKED = "BOOKED"
    PAST = "PAST"


class Principal(BaseModel):
    """A verified identity handed over by the auth layer."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    role: Role


class Provider(BaseModel):
    """A healthcare provider that accepts bookings."""

    model_config = ConfigDict(frozen=True)

    provider_id: str
    user_id: str
    name: str
    slot_duration_minutes: int = Field(default=30, gt=0)
    status: ProviderStatus = ProviderStatus.VERIFIED

    @property
    def accepts_bookings(self) -> bool:
        return self.status is ProviderStatus.VERIFIED


class TimeRange(BaseModel):
    """A wall-clock window within a single day, half-open ``[start, end)``."""

    model_config = ConfigDict(frozen=True)

    start: dt.time
    end: dt.time
    name: str | None = None

    @model_validator(mode="after")
    def _check_order(self) -> "TimeRange":
        if self.end <= self.start:
            raise ValueError("End time must be after start time")
        return self

    def overlaps(self, other: "TimeRange") -> bool:
        return self.start < other.end and self.end > other.start

    def contains(self, other: "TimeRange") -> bool:
        return self.start <= other.start and other.end <= self.end


class OperatingHours(BaseModel):
    """Weekly operating-hours template row for one weekday (Monday = 0)."""

    model_config = ConfigDict(frozen=True)

    provider_id: str
    day_of_week: int = Field(ge=0, le=6)
    start_time: dt.time | None = None
    end_time: dt.time | None = None
    is_closed: bool = False

    @model_validator(mode="after")
    def _check_order(self) -> "OperatingHours":
        if self.is_closed or self.start_time is None or self.end_time is None:
            return self
        if self.end_time <= self.start_time:
            raise ValueError("End time must be after start time")
        return self

    @property
    def is_open(self) -> bool:
        return not self.is_closed and self.start_time is not None and self.end_time is not None

    @property
    def window(self) -> TimeRange | None:
        if not self.is_open:
            return None
        return TimeRange(start=self.start_time, end=self.end_time)  # type: ignore[arg-type]


class BreakTime(BaseModel):
    """An unbookable sub-interval, recurring on a weekday or pinned to one date."""

    model_config = ConfigDict(frozen=True)

    break_id: str
    provider_id: str
    name: str = "Lunch Break"
    day_of_week: int | None = Field(default=None, ge=0, le=6)
    on_date: dt.date | None = None
    start_time: dt.time
    end_time: dt.time

    @model_validator(mode="after")
    def _check_shape(self) -> "BreakTime":
        if (self.day_of_week is None) == (self.on_date is None):
            raise ValueError("Exactly one of 'day_of_week' or 'on_date' must be set")
        if self.end_time <= self.start_time:
            raise ValueError("End time must be after start time")
        return self

    @property
    def window(self) -> TimeRange:
        return TimeRange(start=self.start_time, end=self.end_time, name=self.name)

    def applies_to(self, date: dt.date) -> bool:
        if self.on_date is not None:
            return self.on_date == date
        return self.day_of_week == date.weekday()


class Service(BaseModel):
    """A service from a provider's catalog."""

    model_config = ConfigDict(frozen=True)

    service_id: str
    provider_id: str
    name: str
    price: Decimal = Field(ge=0)
    duration_minutes: int | None = None
    is_active: bool = True


class BookedService(BaseModel):
    """A service line item on an appointment, priced as it was at booking time."""

    model_config = ConfigDict(frozen=True)

    service_id: str
    name: str
    price_at_booking: Decimal
    duration_minutes: int | None = None


class Appointment(BaseModel):
    """A booked appointment.

    Instances are immutable; the lifecycle produces updated copies and the
    store persists them.
    """

    model_config = ConfigDict(frozen=True)

    appointment_id: str
    appointment_number: str
    user_id: str
    provider_id: str
    start_time: dt.datetime
    end_time: dt.datetime
    status: AppointmentStatus = AppointmentStatus.PENDING
    services: list[BookedService] = Field(default_factory=list)
    total_price: Decimal = Decimal("0")
    patient_name: str
    patient_email: str
    patient_phone: str | None = None
    notes: str | None = None
    cancellation_reason: str | None = None
    cancelled_by: str | None = None
    cancelled_at: dt.datetime | None = None
    activity_notes: str | None = None
    review_id: str | None = None
    created_at: dt.datetime | None = None
    updated_at: dt.datetime | None = None

    @model_validator(mode="after")
    def _check_times(self) -> "Appointment":
        if self.start_time >= self.end_time:
            raise ValueError("Appointment start must be before its end")
        return self

    @property
    def duration(self) -> dt.timedelta:
        return self.end_time - self.start_time

    def overlaps(self, start: dt.datetime, end: dt.datetime) -> bool:
        return start < self.end_time and end > self.start_time


class BookingRequest(BaseModel):
    """A request to book an appointment, as submitted by the booking user."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    provider_id: str = Field(min_length=1)
    service_ids: list[str] = Field(default_factory=list)
    date: dt.date
    time: dt.time
    patient_name: str = Field(min_length=2, max_length=100)
    patient_email: str = Field(max_length=100, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    patient_phone: str | None = Field(default=None, min_length=10)
    notes: str | None = None


class AvailableWindow(BaseModel):
    """A provider's bookable window for one calendar date."""

    model_config = ConfigDict(frozen=True)

    provider_id: str
    date: dt.date
    utc_offset: dt.timedelta
    is_open: bool
    open_time: dt.time | None = None
    close_time: dt.time | None = None
    breaks: list[TimeRange] = Field(default_factory=list)

    @property
    def day_of_week(self) -> int:
        return self.date.weekday()


class Slot(BaseModel):
    """A fixed-duration candidate appointment window."""

    model_config = ConfigDict(frozen=True)

    start: dt.datetime
    end: dt.datetime
    label: str
    state: SlotState

    @property
    def is_open(self) -> bool:
        return self.state is SlotState.OPEN


class BulkUpdateResult(BaseModel):
    """Outcome of applying one status change to many appointments."""

    model_config = ConfigDict(frozen=True)

    succeeded: list[str] = Field(default_factory=list)
    failed: int = 0
    errors: list[str] = Field(default_factory=list)

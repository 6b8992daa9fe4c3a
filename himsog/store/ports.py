import datetime as dt
from abc import ABC, abstractmethod
from collections.abc import Collection

from himsog.domain.models import (
    BLOCKING_STATUSES,
    Appointment,
    AppointmentStatus,
    BreakTime,
    OperatingHours,
    Provider,
    Service,
)


class AbstractSchedulingStore(ABC):
    """Abstract base class for the relational store behind scheduling.

    Adapters raise ``StoreUnavailableError`` for unexpected backend failures.
    """

    # -- provider configuration -------------------------------------------------

    @abstractmethod
    async def get_provider(self, provider_id: str) -> Provider | None:
        """Fetch a provider by ID, or None if it does not exist."""

    @abstractmethod
    async def save_provider(self, provider: Provider) -> Provider:
        """Insert or replace a provider."""

    @abstractmethod
    async def list_operating_hours(self, provider_id: str) -> list[OperatingHours]:
        """Return every configured weekday row for a provider, ordered by weekday."""

    @abstractmethod
    async def save_operating_hours(self, hours: OperatingHours) -> OperatingHours:
        """Insert or replace the row for ``(hours.provider_id, hours.day_of_week)``."""

    @abstractmethod
    async def list_break_times(self, provider_id: str) -> list[BreakTime]:
        """Return every break (recurring and one-off) for a provider."""

    @abstractmethod
    async def save_break_time(self, break_time: BreakTime) -> BreakTime:
        """Insert or replace a break."""

    @abstractmethod
    async def delete_break_time(self, provider_id: str, break_id: str) -> bool:
        """Delete a provider's break.

        Returns:
            True if a row was deleted, False if it did not exist.
        """

    @abstractmethod
    async def get_services(self, provider_id: str, service_ids: Collection[str]) -> list[Service]:
        """Return the provider's catalog entries among ``service_ids``.

        IDs that are unknown or belong to another provider are silently omitted.
        """

    @abstractmethod
    async def save_service(self, service: Service) -> Service:
        """Insert or replace a catalog service."""

    # -- appointments --------------------------------------------------------

    @abstractmethod
    async def get_appointment(self, appointment_id: str) -> Appointment | None:
        """Fetch an appointment with its booked services, or None."""

    @abstractmethod
    async def list_appointments(
        self,
        provider_id: str,
        start: dt.datetime,
        end: dt.datetime,
        statuses: Collection[AppointmentStatus] = BLOCKING_STATUSES,
        *,
        exclude_id: str | None = None,
    ) -> list[Appointment]:
        """Return the provider's appointments overlapping ``[start, end)``, by start time."""

    @abstractmethod
    async def insert_appointment(self, appointment: Appointment) -> Appointment:
        """Insert a new appointment if its range is still free.

        The overlap check and the insert happen in one atomic unit, so of two
        concurrent inserts for overlapping ranges exactly one succeeds.

        Raises:
            SlotUnavailableError: If a blocking appointment overlaps the range.
        """

    @abstractmethod
    async def move_appointment(
        self,
        appointment_id: str,
        start: dt.datetime,
        end: dt.datetime,
        *,
        expected_status: AppointmentStatus,
        updated_at: dt.datetime,
    ) -> Appointment | None:
        """Move an appointment to a new range if that range is free.

        Returns:
            The moved appointment, or None if its status is no longer
            ``expected_status``.

        Raises:
            SlotUnavailableError: If another blocking appointment overlaps the range.
        """

    @abstractmethod
    async def update_appointment(
        self, appointment: Appointment, *, expected_status: AppointmentStatus
    ) -> Appointment | None:
        """Persist lifecycle fields of ``appointment`` with a compare-and-set on status.

        Only status, cancellation and completion fields are written; reviews
        go through ``set_review``.

        Returns:
            The stored appointment, or None if the stored status is no longer
            ``expected_status``.
        """

    @abstractmethod
    async def set_review(
        self, appointment_id: str, review_id: str, *, updated_at: dt.datetime
    ) -> Appointment | None:
        """Link ``review_id`` to a completed appointment that has no review yet.

        Returns:
            The stored appointment, or None if it is missing, not
            ``COMPLETED``, or already reviewed.
        """

    @abstractmethod
    async def list_overdue(self, cutoff: dt.datetime) -> list[Appointment]:
        """Return PENDING/CONFIRMED appointments that ended at or before ``cutoff``."""

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the store is reachable.

        Returns:
            True if the store is healthy, False otherwise.
        """

    @abstractmethod
    async def close(self) -> None:
        """Release resources held by this store."""

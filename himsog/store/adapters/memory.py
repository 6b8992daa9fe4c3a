import asyncio
import datetime as dt
from collections import defaultdict
from collections.abc import Collection

from loguru import logger

from himsog.domain.exceptions import (
    AppointmentNumberTakenError,
    SlotUnavailableError,
    StoreUnavailableError,
)
from himsog.domain.models import (
    BLOCKING_STATUSES,
    Appointment,
    AppointmentStatus,
    BreakTime,
    OperatingHours,
    Provider,
    Service,
)
from himsog.store.ports import AbstractSchedulingStore

_OVERDUE_STATUSES = frozenset({AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED})


class InMemorySchedulingStore(AbstractSchedulingStore):
    """In-process store, used for tests and single-process deployments.

    Check-then-write operations for a provider are serialized by a
    per-provider ``asyncio.Lock``.  Every call yields to the event loop once,
    so concurrent callers interleave the way they would against a real
    database.

    Set ``fail_with`` to make every subsequent call raise
    ``StoreUnavailableError`` wrapping that exception.
    """

    def __init__(self) -> None:
        self.providers: dict[str, Provider] = {}
        self.operating_hours: dict[tuple[str, int], OperatingHours] = {}
        self.break_times: dict[str, BreakTime] = {}
        self.services: dict[str, Service] = {}
        self.appointments: dict[str, Appointment] = {}
        self.closed: bool = False

        self.fail_with: Exception | None = None

        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def _io(self) -> None:
        if self.fail_with:
            message = f"In-memory store failure: {self.fail_with}"
            raise StoreUnavailableError(message) from self.fail_with
        await asyncio.sleep(0)

    # -- provider configuration -------------------------------------------------

    async def get_provider(self, provider_id: str) -> Provider | None:
        await self._io()
        return self.providers.get(provider_id)

    async def save_provider(self, provider: Provider) -> Provider:
        await self._io()
        self.providers[provider.provider_id] = provider
        return provider

    async def list_operating_hours(self, provider_id: str) -> list[OperatingHours]:
        await self._io()
        rows = [h for (pid, _), h in self.operating_hours.items() if pid == provider_id]
        return sorted(rows, key=lambda h: h.day_of_week)

    async def save_operating_hours(self, hours: OperatingHours) -> OperatingHours:
        await self._io()
        self.operating_hours[(hours.provider_id, hours.day_of_week)] = hours
        return hours

    async def list_break_times(self, provider_id: str) -> list[BreakTime]:
        await self._io()
        return [b for b in self.break_times.values() if b.provider_id == provider_id]

    async def save_break_time(self, break_time: BreakTime) -> BreakTime:
        await self._io()
        self.break_times[break_time.break_id] = break_time
        return break_time

    async def delete_break_time(self, provider_id: str, break_id: str) -> bool:
        await self._io()
        existing = self.break_times.get(break_id)
        if existing is None or existing.provider_id != provider_id:
            return False
        del self.break_times[break_id]
        return True

    async def get_services(self, provider_id: str, service_ids: Collection[str]) -> list[Service]:
        await self._io()
        wanted = set(service_ids)
        return [
            s for s in self.services.values() if s.service_id in wanted and s.provider_id == provider_id
        ]

    async def save_service(self, service: Service) -> Service:
        await self._io()
        self.services[service.service_id] = service
        return service

    # -- appointments --------------------------------------------------------

    async def get_appointment(self, appointment_id: str) -> Appointment | None:
        await self._io()
        return self.appointments.get(appointment_id)

    async def list_appointments(
        self,
        provider_id: str,
        start: dt.datetime,
        end: dt.datetime,
        statuses: Collection[AppointmentStatus] = BLOCKING_STATUSES,
        *,
        exclude_id: str | None = None,
    ) -> list[Appointment]:
        await self._io()
        return self._overlapping(provider_id, start, end, statuses, exclude_id)

    async def insert_appointment(self, appointment: Appointment) -> Appointment:
        await self._io()
        async with self._locks[appointment.provider_id]:
            if self._overlapping(
                appointment.provider_id, appointment.start_time, appointment.end_time
            ):
                logger.warning(
                    "Insert rejected: range {} - {} overlaps an existing booking",
                    appointment.start_time.isoformat(),
                    appointment.end_time.isoformat(),
                )
                raise SlotUnavailableError(
                    "This time slot is no longer available. Please select another time.",
                    provider_id=appointment.provider_id,
                )
            if any(
                a.appointment_number == appointment.appointment_number
                for a in self.appointments.values()
            ):
                raise AppointmentNumberTakenError(appointment.appointment_number)
            self.appointments[appointment.appointment_id] = appointment
        return appointment

    async def move_appointment(
        self,
        appointment_id: str,
        start: dt.datetime,
        end: dt.datetime,
        *,
        expected_status: AppointmentStatus,
        updated_at: dt.datetime,
    ) -> Appointment | None:
        await self._io()
        current = self.appointments.get(appointment_id)
        if current is None:
            return None
        async with self._locks[current.provider_id]:
            current = self.appointments[appointment_id]
            if current.status is not expected_status:
                return None
            if self._overlapping(current.provider_id, start, end, exclude_id=appointment_id):
                raise SlotUnavailableError(
                    "There is a scheduling conflict with another appointment",
                    provider_id=current.provider_id,
                )
            moved = current.model_copy(
                update={"start_time": start, "end_time": end, "updated_at": updated_at}
            )
            self.appointments[appointment_id] = moved
        return moved

    async def update_appointment(
        self, appointment: Appointment, *, expected_status: AppointmentStatus
    ) -> Appointment | None:
        await self._io()
        current = self.appointments.get(appointment.appointment_id)
        if current is None or current.status is not expected_status:
            return None
        updated = current.model_copy(
            update={
                "status": appointment.status,
                "cancellation_reason": appointment.cancellation_reason,
                "cancelled_by": appointment.cancelled_by,
                "cancelled_at": appointment.cancelled_at,
                "activity_notes": appointment.activity_notes,
                "updated_at": appointment.updated_at,
            }
        )
        self.appointments[appointment.appointment_id] = updated
        return updated

    async def set_review(
        self, appointment_id: str, review_id: str, *, updated_at: dt.datetime
    ) -> Appointment | None:
        await self._io()
        current = self.appointments.get(appointment_id)
        if (
            current is None
            or current.status is not AppointmentStatus.COMPLETED
            or current.review_id is not None
        ):
            return None
        reviewed = current.model_copy(update={"review_id": review_id, "updated_at": updated_at})
        self.appointments[appointment_id] = reviewed
        return reviewed

    async def list_overdue(self, cutoff: dt.datetime) -> list[Appointment]:
        await self._io()
        overdue = [
            a
            for a in self.appointments.values()
            if a.status in _OVERDUE_STATUSES and a.end_time <= cutoff
        ]
        return sorted(overdue, key=lambda a: a.start_time)

    async def health_check(self) -> bool:
        return self.fail_with is None

    async def close(self) -> None:
        self.closed = True

    def _overlapping(
        self,
        provider_id: str,
        start: dt.datetime,
        end: dt.datetime,
        statuses: Collection[AppointmentStatus] = BLOCKING_STATUSES,
        exclude_id: str | None = None,
    ) -> list[Appointment]:
        matches = [
            a
            for a in self.appointments.values()
            if a.provider_id == provider_id
            and a.status in statuses
            and a.appointment_id != exclude_id
            and a.overlaps(start, end)
        ]
        return sorted(matches, key=lambda a: a.start_time)

import datetime as dt

from loguru import logger

from himsog.domain.exceptions import NotFoundError
from himsog.domain.models import AvailableWindow, Slot
from himsog.scheduling.calendar import AvailabilityCalendar
from himsog.scheduling.conflicts import ConflictChecker
from himsog.scheduling.lifecycle import AppointmentLifecycle, Clock, utc_now
from himsog.scheduling.settings import ScheduleSettings
from himsog.scheduling.slots import generate_slots, window_bounds
from himsog.scheduling.timezone import OffsetLike
from himsog.store.ports import AbstractSchedulingStore


class SchedulingService:
    """Entry point wiring the calendar, slot generator, conflict checker,
    appointment lifecycle and schedule settings over one store."""

    def __init__(
        self,
        store: AbstractSchedulingStore,
        *,
        utc_offset: OffsetLike = "+08:00",
        default_slot_duration_minutes: int = 30,
        no_show_grace: dt.timedelta = dt.timedelta(minutes=15),
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.clock = clock
        self.calendar = AvailabilityCalendar(store, utc_offset)
        self.conflicts = ConflictChecker(store)
        self.lifecycle = AppointmentLifecycle(
            store,
            self.calendar,
            self.conflicts,
            clock=clock,
            no_show_grace=no_show_grace,
        )
        self.settings = ScheduleSettings(
            store, default_slot_duration_minutes, utc_offset=utc_offset, clock=clock
        )

    async def get_day_availability(
        self, provider_id: str, date: dt.date
    ) -> tuple[AvailableWindow, list[Slot]]:
        """The provider's window for ``date`` and every slot in it, tagged with its state.

        Raises:
            NotFoundError: If the provider does not exist.
            ConfigurationMissingError: If the provider has no operating hours.
        """
        provider = await self.store.get_provider(provider_id)
        if provider is None:
            raise NotFoundError("Provider not found")

        window = await self.calendar.get_available_window(provider_id, date)
        bounds = window_bounds(window)
        if bounds is None:
            return window, []

        existing = await self.store.list_appointments(provider_id, *bounds)
        slots = list(
            generate_slots(window, provider.slot_duration_minutes, existing, self.clock())
        )
        logger.debug(
            "Generated {} slot(s) for provider {} on {} ({} open)",
            len(slots),
            provider_id,
            date.isoformat(),
            sum(1 for s in slots if s.is_open),
        )
        return window, slots

    async def list_slots(self, provider_id: str, date: dt.date) -> list[Slot]:
        _, slots = await self.get_day_availability(provider_id, date)
        return slots

    async def is_valid_booking_date(self, provider_id: str, date: dt.date) -> bool:
        return await self.calendar.is_valid_booking_date(provider_id, date, self.clock())

    async def health_check(self) -> bool:
        return await self.store.health_check()

    async def close(self) -> None:
        await self.store.close()

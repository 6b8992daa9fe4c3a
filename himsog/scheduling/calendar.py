import datetime as dt

from loguru import logger

from himsog.domain.exceptions import ConfigurationMissingError, NotFoundError
from himsog.domain.models import AvailableWindow, OperatingHours
from himsog.scheduling.timezone import OffsetLike, local_today, parse_offset
from himsog.store.ports import AbstractSchedulingStore


class AvailabilityCalendar:
    """Derives a provider's bookable window for a date from their weekly template."""

    def __init__(self, store: AbstractSchedulingStore, utc_offset: OffsetLike) -> None:
        self._store = store
        self._tz = parse_offset(utc_offset)

    @property
    def utc_offset(self) -> dt.timedelta:
        return self._tz.utcoffset(None)

    async def get_available_window(self, provider_id: str, date: dt.date) -> AvailableWindow:
        """Return the operating window and breaks for ``date``.

        Raises:
            NotFoundError: If the provider does not exist.
            ConfigurationMissingError: If the provider has no operating hours at all.
        """
        hours = await self._weekly_hours(provider_id)
        today = next((h for h in hours if h.day_of_week == date.weekday()), None)

        if today is None or not today.is_open:
            logger.debug("Provider closed on {} (weekday {})", date, date.weekday())
            return AvailableWindow(
                provider_id=provider_id,
                date=date,
                utc_offset=self.utc_offset,
                is_open=False,
            )

        breaks = [b for b in await self._store.list_break_times(provider_id) if b.applies_to(date)]
        breaks.sort(key=lambda b: b.start_time)

        return AvailableWindow(
            provider_id=provider_id,
            date=date,
            utc_offset=self.utc_offset,
            is_open=True,
            open_time=today.start_time,
            close_time=today.end_time,
            breaks=[b.window for b in breaks],
        )

    async def get_operating_days(self, provider_id: str) -> list[int]:
        """Weekdays (Monday = 0) the provider is open, ascending."""
        hours = await self._weekly_hours(provider_id)
        return [h.day_of_week for h in hours if h.is_open]

    async def is_valid_booking_date(
        self, provider_id: str, date: dt.date, now: dt.datetime
    ) -> bool:
        """Whether ``date`` is today-or-later at the provider and an operating day."""
        if date < local_today(self._tz, now):
            return False
        try:
            return date.weekday() in await self.get_operating_days(provider_id)
        except (NotFoundError, ConfigurationMissingError):
            return False

    async def _weekly_hours(self, provider_id: str) -> list[OperatingHours]:
        if await self._store.get_provider(provider_id) is None:
            raise NotFoundError(f"Provider {provider_id} not found")
        hours = await self._store.list_operating_hours(provider_id)
        if not hours:
            raise ConfigurationMissingError(
                f"Provider {provider_id} has no operating hours configured"
            )
        return hours

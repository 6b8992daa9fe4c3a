import datetime as dt
import uuid
from collections.abc import Sequence
from decimal import Decimal

from loguru import logger
from pydantic import ValidationError

from himsog.domain.exceptions import InvalidRequestError, NotFoundError
from himsog.domain.models import (
    BreakTime,
    OperatingHours,
    Provider,
    ProviderStatus,
    Service,
)
from himsog.scheduling.lifecycle import Clock, utc_now
from himsog.scheduling.timezone import OffsetLike, local_today, parse_wall_clock
from himsog.store.ports import AbstractSchedulingStore


def _invalid(exc: ValidationError) -> InvalidRequestError:
    first = exc.errors()[0]
    return InvalidRequestError(first.get("msg", "Invalid value"))


def _wall_clock(value: dt.time | str) -> dt.time:
    try:
        return parse_wall_clock(value)
    except ValueError as exc:
        raise InvalidRequestError(str(exc)) from exc


class ScheduleSettings:
    """Provider-facing configuration: weekly hours, breaks, slot length and services."""

    def __init__(
        self,
        store: AbstractSchedulingStore,
        default_slot_duration_minutes: int = 30,
        *,
        utc_offset: OffsetLike = "+08:00",
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._default_slot_duration = default_slot_duration_minutes
        self._utc_offset = utc_offset
        self._clock = clock

    async def register_provider(
        self,
        user_id: str,
        name: str,
        *,
        provider_id: str | None = None,
        slot_duration_minutes: int | None = None,
        status: ProviderStatus = ProviderStatus.VERIFIED,
    ) -> Provider:
        try:
            provider = Provider(
                provider_id=provider_id or str(uuid.uuid4()),
                user_id=user_id,
                name=name,
                slot_duration_minutes=slot_duration_minutes or self._default_slot_duration,
                status=status,
            )
        except ValidationError as exc:
            raise _invalid(exc) from exc
        saved = await self._store.save_provider(provider)
        logger.info("Provider registered: id={}, status={}", saved.provider_id, saved.status.value)
        return saved

    async def set_slot_duration(self, provider_id: str, minutes: int) -> Provider:
        if minutes <= 0:
            raise InvalidRequestError("Slot duration must be a positive number of minutes")
        provider = await self._provider(provider_id)
        return await self._store.save_provider(
            provider.model_copy(update={"slot_duration_minutes": minutes})
        )

    async def set_operating_hours(
        self,
        provider_id: str,
        day_of_week: int,
        start_time: dt.time | str | None = None,
        end_time: dt.time | str | None = None,
        *,
        is_closed: bool = False,
    ) -> OperatingHours:
        """Set one weekday (Monday = 0) of the weekly template.

        Raises:
            InvalidRequestError: If an open day lacks times, ``start >= end``,
                or an existing break for that weekday would fall outside the
                new hours.
        """
        await self._provider(provider_id)
        if not is_closed and (start_time is None or end_time is None):
            raise InvalidRequestError("Start and end time are required for an operating day")
        try:
            hours = OperatingHours(
                provider_id=provider_id,
                day_of_week=day_of_week,
                start_time=None if start_time is None else _wall_clock(start_time),
                end_time=None if end_time is None else _wall_clock(end_time),
                is_closed=is_closed,
            )
        except ValidationError as exc:
            raise _invalid(exc) from exc
        await self._ensure_breaks_fit(provider_id, [hours])
        return await self._store.save_operating_hours(hours)

    async def set_weekly_hours(
        self, provider_id: str, week: Sequence[OperatingHours]
    ) -> list[OperatingHours]:
        """Replace the whole weekly template; ``week`` must cover each weekday exactly once."""
        days = sorted(h.day_of_week for h in week)
        if days != list(range(7)):
            raise InvalidRequestError("Operating hours must cover each day of the week exactly once")
        if any(h.provider_id != provider_id for h in week):
            raise InvalidRequestError("Operating hours belong to a different provider")
        await self._provider(provider_id)
        await self._ensure_breaks_fit(provider_id, week)

        saved = [await self._store.save_operating_hours(h) for h in week]
        logger.info(
            "Weekly hours updated for provider {}: open on {}",
            provider_id,
            [h.day_of_week for h in saved if h.is_open],
        )
        return sorted(saved, key=lambda h: h.day_of_week)

    async def add_break_time(
        self,
        provider_id: str,
        start_time: dt.time | str,
        end_time: dt.time | str,
        *,
        day_of_week: int | None = None,
        on_date: dt.date | None = None,
        name: str = "Lunch Break",
    ) -> BreakTime:
        """Add a recurring (``day_of_week``) or one-off (``on_date``) break.

        Raises:
            InvalidRequestError: If the break is outside the day's operating
                window, the day is closed, or it overlaps another break.
        """
        await self._provider(provider_id)
        try:
            candidate = BreakTime(
                break_id=str(uuid.uuid4()),
                provider_id=provider_id,
                name=name,
                day_of_week=day_of_week,
                on_date=on_date,
                start_time=_wall_clock(start_time),
                end_time=_wall_clock(end_time),
            )
        except ValidationError as exc:
            raise _invalid(exc) from exc

        weekday = on_date.weekday() if on_date is not None else day_of_week
        hours = {h.day_of_week: h for h in await self._store.list_operating_hours(provider_id)}
        window = hours[weekday].window if weekday in hours else None
        if window is None:
            raise InvalidRequestError("Breaks can only be added on an operating day")
        if not window.contains(candidate.window):
            raise InvalidRequestError("Break time must be within operating hours")

        for existing in await self._store.list_break_times(provider_id):
            if self._same_day(existing, candidate) and existing.window.overlaps(candidate.window):
                raise InvalidRequestError(f"Break time overlaps with '{existing.name}'")

        saved = await self._store.save_break_time(candidate)
        logger.info(
            "Break added for provider {}: {}-{}",
            provider_id,
            saved.start_time.isoformat("minutes"),
            saved.end_time.isoformat("minutes"),
        )
        return saved

    async def remove_break_time(self, provider_id: str, break_id: str) -> None:
        if not await self._store.delete_break_time(provider_id, break_id):
            raise NotFoundError("Break time not found")

    async def add_service(
        self,
        provider_id: str,
        name: str,
        price: Decimal | str | int,
        duration_minutes: int | None = None,
        *,
        service_id: str | None = None,
        is_active: bool = True,
    ) -> Service:
        await self._provider(provider_id)
        if duration_minutes is not None and duration_minutes <= 0:
            raise InvalidRequestError("Service duration must be a positive number of minutes")
        try:
            service = Service(
                service_id=service_id or str(uuid.uuid4()),
                provider_id=provider_id,
                name=name,
                price=price,
                duration_minutes=duration_minutes,
                is_active=is_active,
            )
        except ValidationError as exc:
            raise _invalid(exc) from exc
        return await self._store.save_service(service)

    async def _ensure_breaks_fit(
        self, provider_id: str, hours: Sequence[OperatingHours]
    ) -> None:
        """Reject new hours that would leave a recurring or upcoming one-off break outside them."""
        by_day = {h.day_of_week: h for h in hours}
        today = local_today(self._utc_offset, self._clock())
        for existing in await self._store.list_break_times(provider_id):
            if existing.on_date is not None:
                if existing.on_date < today:
                    continue
                weekday = existing.on_date.weekday()
            else:
                weekday = existing.day_of_week
            if weekday not in by_day:
                continue
            window = by_day[weekday].window
            if window is None or not window.contains(existing.window):
                raise InvalidRequestError(
                    f"Break '{existing.name}' falls outside the new operating hours; "
                    "remove it first"
                )

    async def _provider(self, provider_id: str) -> Provider:
        provider = await self._store.get_provider(provider_id)
        if provider is None:
            raise NotFoundError("Provider not found")
        return provider

    @staticmethod
    def _same_day(existing: BreakTime, candidate: BreakTime) -> bool:
        if candidate.on_date is not None:
            return existing.applies_to(candidate.on_date)
        if existing.day_of_week is not None:
            return existing.day_of_week == candidate.day_of_week
        return existing.on_date is not None and existing.on_date.weekday() == candidate.day_of_week


import datetime as dt
from collections.abc import Iterable, Iterator

from loguru import logger

from himsog.domain.models import Appointment, AvailableWindow, Slot, SlotState
from himsog.scheduling.timezone import assemble_instant, time_to_24h, to_local

Interval = tuple[dt.datetime, dt.datetime]


def window_bounds(window: AvailableWindow) -> Interval | None:
    """Absolute ``(open, close)`` instants of an open window, or None when closed."""
    if not window.is_open or window.open_time is None or window.close_time is None:
        return None
    return (
        assemble_instant(window.date, window.open_time, window.utc_offset),
        assemble_instant(window.date, window.close_time, window.utc_offset),
    )


def break_intervals(window: AvailableWindow) -> list[Interval]:
    return [
        (
            assemble_instant(window.date, b.start, window.utc_offset),
            assemble_instant(window.date, b.end, window.utc_offset),
        )
        for b in window.breaks
    ]


def _overlaps(start: dt.datetime, end: dt.datetime, other: Interval) -> bool:
    return start < other[1] and end > other[0]


def _classify(
    start: dt.datetime,
    end: dt.datetime,
    breaks: list[Interval],
    existing: list[Appointment],
    now: dt.datetime,
) -> SlotState:
    if any(_overlaps(start, end, b) for b in breaks):
        return SlotState.BREAK
    if any(a.overlaps(start, end) for a in existing):
        return SlotState.BOOKED
    if start < now:
        return SlotState.PAST
    return SlotState.OPEN


def generate_slots(
    window: AvailableWindow,
    slot_duration_minutes: int,
    existing_appointments: Iterable[Appointment],
    now: dt.datetime,
) -> Iterator[Slot]:
    """Expand an operating window into fixed-duration slots, earliest first.

    Each slot is tagged, first match winning: ``BREAK`` if it touches a
    break, ``BOOKED`` if it overlaps a blocking appointment, ``PAST`` if it
    starts before ``now``, otherwise ``OPEN``.  A trailing slot that would
    run past closing time is dropped.

    The generator is lazy; call it again to recompute against fresh bookings.

    Raises:
        ValueError: If ``slot_duration_minutes`` is not positive.
    """
    if slot_duration_minutes <= 0:
        raise ValueError(f"Slot duration must be positive, got {slot_duration_minutes}")

    bounds = window_bounds(window)
    if bounds is None:
        return
    open_at, close_at = bounds

    step = dt.timedelta(minutes=slot_duration_minutes)
    breaks = break_intervals(window)
    blocking = [a for a in existing_appointments if a.status.is_blocking]

    current = open_at
    while current < close_at:
        slot_end = current + step
        if slot_end > close_at:
            logger.debug(
                "Dropping partial tail slot at {} for provider {}",
                current.isoformat(),
                window.provider_id,
            )
            break
        yield Slot(
            start=current,
            end=slot_end,
            label=time_to_24h(to_local(current, window.utc_offset).time()),
            state=_classify(current, slot_end, breaks, blocking, now),
        )
        current = slot_end


def bookable(slots: Iterable[Slot]) -> list[Slot]:
    """The ``OPEN`` slots, in order."""
    return [s for s in slots if s.is_open]


def is_on_grid(window: AvailableWindow, start: dt.datetime, slot_duration_minutes: int) -> bool:
    """Whether ``start`` falls on a slot boundary of the window."""
    bounds = window_bounds(window)
    if bounds is None:
        return False
    offset = start - bounds[0]
    step = dt.timedelta(minutes=slot_duration_minutes)
    return offset >= dt.timedelta(0) and not offset % step


def within_window(window: AvailableWindow, start: dt.datetime, end: dt.datetime) -> bool:
    bounds = window_bounds(window)
    return bounds is not None and bounds[0] <= start and end <= bounds[1]


def classify_range(
    window: AvailableWindow,
    start: dt.datetime,
    end: dt.datetime,
    existing_appointments: Iterable[Appointment],
    now: dt.datetime,
) -> SlotState:
    """Tag an arbitrary range (possibly spanning several slots) like a single slot.

    The caller is responsible for checking ``within_window`` first.
    """
    blocking = [a for a in existing_appointments if a.status.is_blocking]
    return _classify(start, end, break_intervals(window), blocking, now)

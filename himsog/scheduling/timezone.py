import datetime as dt
import re

from loguru import logger

_OFFSET_RE = re.compile(r"^(?:UTC)?([+-])(\d{1,2}):?(\d{2})$")

OffsetLike = dt.timedelta | dt.tzinfo | str


def parse_offset(value: OffsetLike) -> dt.timezone:
    """Resolve ``+08:00``, ``UTC+0800``, a ``timedelta`` or a fixed ``tzinfo`` to a ``timezone``.

    Raises:
        ValueError: If the value is not a fixed offset.
    """
    if isinstance(value, dt.timezone):
        return value
    if isinstance(value, dt.timedelta):
        return dt.timezone(value)
    if isinstance(value, dt.tzinfo):
        # Fixed-offset zones only.
        offset = value.utcoffset(None)
        if offset is None:
            raise ValueError(f"Timezone {value!r} has no fixed UTC offset")
        return dt.timezone(offset)

    text = value.strip().upper()
    if text in {"Z", "UTC"}:
        return dt.timezone.utc
    match = _OFFSET_RE.match(text)
    if not match:
        raise ValueError(f"Invalid UTC offset '{value}'. Expected +HH:MM.")
    sign, hours, minutes = match.groups()
    delta = dt.timedelta(hours=int(hours), minutes=int(minutes))
    return dt.timezone(-delta if sign == "-" else delta)


def parse_wall_clock(value: dt.time | str) -> dt.time:
    """Parse an ``HH:MM`` 24-hour wall-clock time.

    Raises:
        ValueError: If the value is not a valid ``HH:MM`` time.
    """
    if isinstance(value, dt.time):
        return value.replace(second=0, microsecond=0, tzinfo=None)
    try:
        hours, minutes = value.strip().split(":")
        return dt.time(int(hours), int(minutes))
    except (ValueError, TypeError) as exc:
        raise ValueError(f"Invalid time '{value}'. Expected HH:MM.") from exc


def assemble_instant(
    calendar_date: dt.date, wall_clock_time: dt.time | str, provider_offset: OffsetLike
) -> dt.datetime:
    """Combine a provider-local date and wall-clock time into an absolute UTC instant.

    The host machine's timezone never takes part: ``(2025-03-10, "09:00", +08:00)``
    is always ``2025-03-10T01:00:00+00:00``.
    """
    tz = parse_offset(provider_offset)
    wall = parse_wall_clock(wall_clock_time)
    local = dt.datetime(
        calendar_date.year,
        calendar_date.month,
        calendar_date.day,
        wall.hour,
        wall.minute,
        tzinfo=tz,
    )
    return local.astimezone(dt.timezone.utc)


def to_local(instant: dt.datetime, provider_offset: OffsetLike) -> dt.datetime:
    """Express an aware instant in the provider's fixed offset."""
    if instant.tzinfo is None:
        logger.warning("Naive datetime {} treated as UTC", instant.isoformat())
        instant = instant.replace(tzinfo=dt.timezone.utc)
    return instant.astimezone(parse_offset(provider_offset))


def local_today(provider_offset: OffsetLike, now: dt.datetime) -> dt.date:
    """The calendar date it currently is at the provider."""
    return to_local(now, provider_offset).date()


def time_to_24h(time: dt.time) -> str:
    """Convert ``time(9, 0)`` → ``09:00``."""
    return time.strftime("%H:%M")


def time_to_12h(time: dt.time) -> str:
    """Convert ``time(14, 30)`` → ``2:30 PM`` for display.

    No leading zero on the hour (``9:00 AM`` not ``09:00 AM``).
    """
    hour = time.hour % 12 or 12
    period = "AM" if time.hour < 12 else "PM"
    return f"{hour}:{time.strftime('%M')} {period}"

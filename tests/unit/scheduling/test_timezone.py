import datetime as dt
import time

import pytest

from himsog.scheduling.timezone import (
    assemble_instant,
    local_today,
    parse_offset,
    parse_wall_clock,
    time_to_12h,
    time_to_24h,
    to_local,
)

UTC = dt.timezone.utc


class TestAssembleInstant:
    def test_provider_offset_applied(self) -> None:
        instant = assemble_instant(dt.date(2025, 3, 10), "09:00", "+08:00")

        assert instant == dt.datetime(2025, 3, 10, 1, 0, tzinfo=UTC)
        assert instant.utcoffset() == dt.timedelta(0)

    @pytest.mark.skipif(not hasattr(time, "tzset"), reason="time.tzset is POSIX-only")
    @pytest.mark.parametrize(
        "host_tz",
        ["UTC", "America/New_York", "Asia/Manila", "Pacific/Kiritimati"],
        ids=["utc", "new-york", "manila", "utc+14"],
    )
    def test_independent_of_host_timezone(
        self, host_tz: str, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("TZ", host_tz)
        time.tzset()
        try:
            instant = assemble_instant(dt.date(2025, 3, 10), "09:00", "+08:00")
        finally:
            monkeypatch.undo()
            time.tzset()

        assert instant.isoformat() == "2025-03-10T01:00:00+00:00"

    def test_crosses_into_previous_utc_day(self) -> None:
        instant = assemble_instant(dt.date(2025, 3, 10), dt.time(6, 30), dt.timedelta(hours=8))

        assert instant == dt.datetime(2025, 3, 9, 22, 30, tzinfo=UTC)

    def test_negative_offset(self) -> None:
        instant = assemble_instant(dt.date(2025, 3, 10), "20:00", "-05:00")

        assert instant == dt.datetime(2025, 3, 11, 1, 0, tzinfo=UTC)

    def test_invalid_time_raises(self) -> None:
        with pytest.raises(ValueError, match="Expected HH:MM"):
            assemble_instant(dt.date(2025, 3, 10), "9am", "+08:00")


class TestParseOffset:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("+08:00", dt.timedelta(hours=8)),
            ("UTC+0800", dt.timedelta(hours=8)),
            ("-05:30", dt.timedelta(hours=-5, minutes=-30)),
            ("+0545", dt.timedelta(hours=5, minutes=45)),
            ("Z", dt.timedelta(0)),
            ("utc", dt.timedelta(0)),
            (dt.timedelta(hours=8), dt.timedelta(hours=8)),
            (dt.timezone(dt.timedelta(hours=-3)), dt.timedelta(hours=-3)),
        ],
        ids=["iso", "utc-prefix", "negative-half-hour", "no-colon", "zulu", "utc", "timedelta", "tzinfo"],
    )
    def test_resolves(self, value: object, expected: dt.timedelta) -> None:
        assert parse_offset(value).utcoffset(None) == expected  # type: ignore[arg-type]

    @pytest.mark.parametrize("value", ["Asia/Manila", "8", "+8", "+08:00:00", ""])
    def test_rejects_non_offsets(self, value: str) -> None:
        with pytest.raises(ValueError, match="Invalid UTC offset"):
            parse_offset(value)


class TestParseWallClock:
    def test_parses_hhmm(self) -> None:
        assert parse_wall_clock("14:30") == dt.time(14, 30)

    def test_drops_seconds_and_tzinfo(self) -> None:
        value = dt.time(9, 15, 42, tzinfo=UTC)

        assert parse_wall_clock(value) == dt.time(9, 15)

    @pytest.mark.parametrize("value", ["25:00", "9", "noon", "12:60"])
    def test_rejects_invalid(self, value: str) -> None:
        with pytest.raises(ValueError):
            parse_wall_clock(value)


class TestLocalConversion:
    def test_to_local(self) -> None:
        local = to_local(dt.datetime(2025, 3, 10, 1, 0, tzinfo=UTC), "+08:00")

        assert local.time() == dt.time(9, 0)
        assert local.utcoffset() == dt.timedelta(hours=8)

    def test_naive_treated_as_utc(self) -> None:
        local = to_local(dt.datetime(2025, 3, 10, 1, 0), "+08:00")

        assert local.hour == 9

    def test_local_today_ahead_of_utc(self) -> None:
        # 17:00 UTC on Sunday is already 01:00 Monday at +08:00.
        now = dt.datetime(2025, 3, 9, 17, 0, tzinfo=UTC)

        assert local_today("+08:00", now) == dt.date(2025, 3, 10)


class TestFormatting:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (dt.time(14, 30), "2:30 PM"),
            (dt.time(9, 0), "9:00 AM"),
            (dt.time(12, 0), "12:00 PM"),
            (dt.time(0, 30), "12:30 AM"),
        ],
        ids=["afternoon", "morning", "noon", "after-midnight"],
    )
    def test_time_to_12h(self, value: dt.time, expected: str) -> None:
        assert time_to_12h(value) == expected

    def test_time_to_24h_zero_pads(self) -> None:
        assert time_to_24h(dt.time(9, 5)) == "09:05"

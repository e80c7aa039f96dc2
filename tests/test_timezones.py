"""Tests for fieldsync.timezones.

Covers:
- Rule-table offsets and DST flags for northern and southern hemisphere zones
- nth/last weekday arithmetic and transition instants
- Wall clock to UTC resolution across spring-forward gaps and fall-back overlaps
- Unknown zone fallback to UTC
- VTIMEZONE rendering with RRULEs matching the computed transitions
"""

from __future__ import annotations

from datetime import UTC, date, datetime, time

import pytest

from fieldsync import timezones
from fieldsync.timezones import LAST_WEEK, TransitionRule

pytestmark = pytest.mark.unit


class TestZoneLookup:
    def test_rule_table_zones_are_valid(self):
        assert timezones.is_valid_timezone("America/New_York")
        assert timezones.is_valid_timezone("UTC")

    @pytest.mark.parametrize("zone", ["", None, "Mars/Olympus_Mons", "Not A Zone"])
    def test_invalid_zones(self, zone):
        assert not timezones.is_valid_timezone(zone)

    def test_unknown_zone_resolves_to_utc(self):
        info = timezones.get_timezone_info("Mars/Olympus_Mons")
        assert info.zone == "UTC"
        assert info.offset_minutes == 0
        assert info.is_dst is False


class TestOffsets:
    def test_new_york_summer_and_winter(self):
        summer = datetime(2025, 7, 1, 12, tzinfo=UTC)
        winter = datetime(2025, 1, 15, 12, tzinfo=UTC)
        assert timezones.get_offset_minutes("America/New_York", summer) == -240
        assert timezones.get_offset_minutes("America/New_York", winter) == -300
        assert timezones.is_dst_active("America/New_York", summer)
        assert not timezones.is_dst_active("America/New_York", winter)

    def test_sydney_dst_spans_year_boundary(self):
        january = datetime(2025, 1, 15, tzinfo=UTC)
        july = datetime(2025, 7, 15, tzinfo=UTC)
        assert timezones.get_offset_minutes("Australia/Sydney", january) == 660
        assert timezones.get_offset_minutes("Australia/Sydney", july) == 600

    def test_zones_without_dst(self):
        july = datetime(2025, 7, 1, tzinfo=UTC)
        assert timezones.get_offset_minutes("America/Phoenix", july) == -420
        assert not timezones.is_dst_active("Pacific/Honolulu", july)

    def test_zoneinfo_fallback(self):
        if not timezones.is_valid_timezone("Asia/Kolkata"):
            pytest.skip("system tz database unavailable")
        assert timezones.get_offset_minutes("Asia/Kolkata", datetime(2025, 1, 1, tzinfo=UTC)) == 330

    def test_info_abbreviations(self):
        info = timezones.get_timezone_info("Europe/London", datetime(2025, 7, 1, tzinfo=UTC))
        assert info.abbreviation == "BST"
        assert info.is_dst is True
        info = timezones.get_timezone_info("Europe/London", datetime(2025, 12, 1, tzinfo=UTC))
        assert info.abbreviation == "GMT"

    @pytest.mark.parametrize(
        ("minutes", "expected"),
        [(0, "+0000"), (-300, "-0500"), (330, "+0530"), (-570, "-0930")],
    )
    def test_format_offset(self, minutes, expected):
        assert timezones.format_offset(minutes) == expected


class TestRuleArithmetic:
    def test_nth_weekday(self):
        assert timezones.nth_weekday_of_month(2025, 3, 0, 2) == date(2025, 3, 9)
        assert timezones.nth_weekday_of_month(2025, 11, 0, 1) == date(2025, 11, 2)

    def test_last_weekday(self):
        assert timezones.nth_weekday_of_month(2025, 3, 0, LAST_WEEK) == date(2025, 3, 30)
        assert timezones.nth_weekday_of_month(2025, 10, 0, LAST_WEEK) == date(2025, 10, 26)

    def test_nonexistent_fifth_week_raises(self):
        with pytest.raises(ValueError):
            timezones.nth_weekday_of_month(2025, 2, 0, 5)

    def test_us_transitions_2025(self):
        start, end = timezones.get_dst_transitions("America/New_York", 2025)
        assert start.kind == "start"
        assert start.at == datetime(2025, 3, 9, 7, 0, tzinfo=UTC)
        assert (start.offset_before, start.offset_after) == (-300, -240)
        assert end.kind == "end"
        assert end.at == datetime(2025, 11, 2, 6, 0, tzinfo=UTC)

    def test_southern_transitions_are_chronological(self):
        first, second = timezones.get_dst_transitions("Australia/Sydney", 2025)
        assert first.kind == "end"
        assert first.at == datetime(2025, 4, 5, 16, 0, tzinfo=UTC)
        assert second.kind == "start"
        assert second.at == datetime(2025, 10, 4, 16, 0, tzinfo=UTC)

    def test_no_transitions_without_dst(self):
        assert timezones.get_dst_transitions("America/Phoenix", 2025) == []

    def test_upcoming_transitions_window(self):
        upcoming = timezones.get_upcoming_transitions(
            "America/New_York", datetime(2025, 6, 1, tzinfo=UTC), months=12
        )
        assert [t.kind for t in upcoming] == ["end", "start"]
        assert upcoming[1].at.year == 2026


class TestWallClock:
    def test_plain_conversion(self):
        instant = timezones.wall_clock_to_utc("America/New_York", date(2025, 7, 4), time(18, 0))
        assert instant == datetime(2025, 7, 4, 22, 0, tzinfo=UTC)

    def test_spring_forward_gap_uses_pre_transition_offset(self):
        instant = timezones.wall_clock_to_utc("America/New_York", date(2025, 3, 9), time(2, 30))
        assert instant == datetime(2025, 3, 9, 7, 30, tzinfo=UTC)

    def test_fall_back_overlap_resolves_to_first_occurrence(self):
        instant = timezones.wall_clock_to_utc("America/New_York", date(2025, 11, 2), time(1, 30))
        assert instant == datetime(2025, 11, 2, 5, 30, tzinfo=UTC)

    def test_unknown_zone_reads_wall_clock_as_utc(self):
        instant = timezones.wall_clock_to_utc("Nowhere/Land", date(2025, 1, 1), time(9, 0))
        assert instant == datetime(2025, 1, 1, 9, 0, tzinfo=UTC)

    def test_round_trip_through_wall_clock(self):
        instant = datetime(2025, 1, 10, 15, 0, tzinfo=UTC)
        local = timezones.utc_to_wall_clock("Europe/Paris", instant)
        assert (local.hour, local.tzname()) == (16, "CET")

    @pytest.mark.parametrize(
        "instant",
        [
            datetime(2025, 3, 9, 6, 30, tzinfo=UTC),
            datetime(2025, 3, 9, 7, 30, tzinfo=UTC),
            datetime(2025, 11, 2, 5, 30, tzinfo=UTC),
            datetime(2025, 11, 2, 6, 30, tzinfo=UTC),
        ],
    )
    def test_round_trip_across_dst_boundary(self, instant):
        in_london = timezones.convert_timezone(instant, "America/New_York", "Europe/London")
        back = timezones.convert_timezone(in_london, "Europe/London", "America/New_York")

        assert back == instant
        assert back.utcoffset() == timezones.utc_to_wall_clock(
            "America/New_York", instant
        ).utcoffset()

    def test_naive_round_trip_after_spring_forward(self):
        new_york = datetime(2025, 3, 9, 3, 30)

        in_london = timezones.convert_timezone(new_york, "America/New_York", "Europe/London")
        back = timezones.convert_timezone(
            in_london.replace(tzinfo=None), "Europe/London", "America/New_York"
        )

        assert (in_london.hour, in_london.tzname()) == (7, "GMT")
        assert back.replace(tzinfo=None) == new_york
        assert back.tzname() == "EDT"

    def test_convert_naive_value(self):
        converted = timezones.convert_timezone(
            datetime(2025, 7, 1, 9, 0), "America/Los_Angeles", "America/New_York"
        )
        assert (converted.hour, converted.minute) == (12, 0)

    def test_format_in_timezone(self):
        rendered = timezones.format_in_timezone(
            datetime(2025, 7, 1, 16, 0, tzinfo=UTC), "America/Chicago", "%H:%M %Z"
        )
        assert rendered == "11:00 CDT"


class TestVTimezone:
    def test_rrule_rendering(self):
        rule = TransitionRule(month=3, week=2, weekday=0, local_time=time(2, 0))
        assert timezones.render_recurrence_rule(rule) == "FREQ=YEARLY;BYMONTH=3;BYDAY=2SU"
        last = TransitionRule(month=10, week=LAST_WEEK, weekday=0, local_time=time(3, 0))
        assert timezones.render_recurrence_rule(last) == "FREQ=YEARLY;BYMONTH=10;BYDAY=-1SU"

    def test_rule_zone_block(self):
        lines = timezones.render_vtimezone("America/New_York", 2025)
        assert lines[0] == "BEGIN:VTIMEZONE"
        assert lines[-1] == "END:VTIMEZONE"
        assert "TZID:America/New_York" in lines
        assert "RRULE:FREQ=YEARLY;BYMONTH=11;BYDAY=1SU" in lines
        assert "RRULE:FREQ=YEARLY;BYMONTH=3;BYDAY=2SU" in lines
        assert "DTSTART:20250309T020000" in lines
        assert "TZNAME:EDT" in lines

    def test_utc_and_unknown_need_no_block(self):
        assert timezones.render_vtimezone("UTC") == []
        assert timezones.render_vtimezone("Nowhere/Land") == []

    def test_fixed_offset_zone_has_single_standard_block(self):
        lines = timezones.render_vtimezone("America/Phoenix", 2025)
        assert lines.count("BEGIN:STANDARD") == 1
        assert "BEGIN:DAYLIGHT" not in lines
        assert "TZOFFSETTO:-0700" in lines

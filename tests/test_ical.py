"""Tests for the .ics reservation export and feed tokens."""

from __future__ import annotations

from datetime import UTC, date, datetime

import pytest
import vobject

from fieldsync.ical import build_reservation_calendar, feed_token, verify_feed_token
from fieldsync.models import ReservationStatus, TeamRef
from tests.conftest import USER_ID, make_reservation

pytestmark = pytest.mark.unit

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)


def _on(day: date, reservation_id: str = "res-1", **kwargs):
    return make_reservation(reservation_id, **kwargs).model_copy(
        update={"reservation_date": day}
    )


class TestFeedToken:
    def test_token_is_stable_per_user(self):
        assert feed_token("s3cret", USER_ID) == feed_token("s3cret", USER_ID)
        assert feed_token("s3cret", USER_ID) != feed_token("s3cret", "user-2")

    def test_verify(self):
        token = feed_token("s3cret", USER_ID)

        assert verify_feed_token("s3cret", USER_ID, token)
        assert not verify_feed_token("other", USER_ID, token)
        assert not verify_feed_token("s3cret", USER_ID, "forged")

    def test_missing_secret_rejects_everything(self):
        assert not verify_feed_token(None, USER_ID, feed_token("", USER_ID))


class TestBuildCalendar:
    def test_utc_export_uses_zulu_times(self):
        text = build_reservation_calendar([_on(date(2025, 7, 1))], now=NOW)

        assert "DTSTART:20250701T140000Z" in text
        assert "DTEND:20250701T160000Z" in text
        assert "BEGIN:VTIMEZONE" not in text
        assert "X-WR-TIMEZONE:UTC" in text

    @pytest.mark.parametrize(
        ("day", "local"),
        [
            (date(2025, 1, 15), "20250115T090000"),
            (date(2025, 7, 1), "20250701T100000"),
        ],
    )
    def test_display_zone_follows_dst(self, day, local):
        text = build_reservation_calendar(
            [_on(day)], zone="America/New_York", now=NOW
        )

        assert f"DTSTART;TZID=America/New_York:{local}" in text
        assert text.count("BEGIN:VTIMEZONE") == 1
        assert "RRULE:FREQ=YEARLY;BYMONTH=3;BYDAY=2SU" in text
        assert "RRULE:FREQ=YEARLY;BYMONTH=11;BYDAY=1SU" in text

    def test_unknown_zone_falls_back_to_utc(self):
        text = build_reservation_calendar([_on(date(2025, 7, 1))], zone="Mars/Base", now=NOW)

        assert "DTSTART:20250701T140000Z" in text
        assert "BEGIN:VTIMEZONE" not in text

    def test_event_fields(self):
        reservation = _on(
            date(2025, 7, 1), team=TeamRef(id="team-1", name="Rovers")
        )

        calendar = vobject.readOne(
            build_reservation_calendar([reservation], alarm_offsets=[60], now=NOW)
        )

        event = calendar.vevent
        assert event.uid.value == "reservation-res-1@fieldsync"
        assert event.summary.value == "North Pitch - Practice"
        assert event.location.value == "1 Park Road"
        assert event.status.value == "CONFIRMED"
        assert event.x_team_name.value == "Rovers"
        assert "Expected Attendees: 12" in event.description.value
        assert len(event.valarm_list) == 1

    def test_pending_reservation_is_tentative_without_alarms(self):
        text = build_reservation_calendar(
            [_on(date(2025, 7, 1), status=ReservationStatus.PENDING)],
            alarm_offsets=[1440, 60],
            now=NOW,
        )

        assert "STATUS:TENTATIVE" in text
        assert "BEGIN:VALARM" not in text

    def test_empty_calendar_is_still_valid(self):
        calendar = vobject.readOne(build_reservation_calendar([], now=NOW))

        assert calendar.prodid.value == "-//FieldSync//Reservation Calendar//EN"
        assert not hasattr(calendar, "vevent")

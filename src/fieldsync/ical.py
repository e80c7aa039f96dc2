"""iCalendar (.ics) export of a user's reservations.

Events are written in one display zone: ``DTSTART``/``DTEND`` carry a
``TZID`` backed by the VTIMEZONE from ``timezones.render_vtimezone``, so
subscribers see the same DST handling as the rest of the engine. UTC (or an
unknown zone) exports plain ``Z`` times with no VTIMEZONE.

Subscription URLs are authorised with a per-user feed token derived from
the service secret, since calendar clients cannot send bearer headers.
"""

from __future__ import annotations

import hashlib
import hmac
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime, timedelta

import vobject

from fieldsync.models import ReservationSnapshot, ReservationStatus
from fieldsync.providers.base import event_detail_lines, event_location, event_title
from fieldsync.timezones import UTC_ZONE, is_valid_timezone, render_vtimezone, utc_to_wall_clock

PRODID = "-//FieldSync//Reservation Calendar//EN"
UID_DOMAIN = "fieldsync"
REFRESH_INTERVAL_MINUTES = 60

_STATUS = {
    ReservationStatus.CONFIRMED: "CONFIRMED",
    ReservationStatus.PENDING: "TENTATIVE",
    ReservationStatus.CANCELLED: "CANCELLED",
}


def feed_token(secret: str, user_id: str) -> str:
    """Stable token for *user_id*'s calendar feed URL."""
    message = f"calendar-feed:{user_id}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_feed_token(secret: str | None, user_id: str, token: str) -> bool:
    if not secret:
        return False
    return hmac.compare_digest(feed_token(secret, user_id), token)


def _event_time(component, name: str, instant: datetime, zone: str) -> None:
    line = component.add(name)
    if zone == UTC_ZONE:
        line.value = instant
        return
    line.value = utc_to_wall_clock(zone, instant).replace(tzinfo=None)
    line.tzid_param = zone


def _add_event(
    calendar,
    reservation: ReservationSnapshot,
    zone: str,
    alarm_offsets: Sequence[int],
    stamp: datetime,
) -> None:
    event = calendar.add("vevent")
    event.add("uid").value = f"reservation-{reservation.id}@{UID_DOMAIN}"
    event.add("dtstamp").value = stamp
    _event_time(event, "dtstart", reservation.start_instant(), zone)
    _event_time(event, "dtend", reservation.end_instant(), zone)
    event.add("summary").value = event_title(reservation)
    event.add("description").value = "\n".join(
        f"{label}: {value}" for label, value in event_detail_lines(reservation)
    )
    event.add("location").value = event_location(reservation)
    event.add("status").value = _STATUS[reservation.status]
    event.add("x-reservation-id").value = reservation.id
    event.add("x-field-attendees").value = str(reservation.attendees)
    if reservation.team is not None:
        event.add("x-team-name").value = reservation.team.name

    if reservation.status != ReservationStatus.CONFIRMED:
        return
    for minutes in alarm_offsets:
        alarm = event.add("valarm")
        alarm.add("action").value = "DISPLAY"
        alarm.add("trigger").value = timedelta(minutes=-minutes)
        alarm.add("description").value = f"{event_title(reservation)} starts soon"


def build_reservation_calendar(
    reservations: Iterable[ReservationSnapshot],
    *,
    zone: str = UTC_ZONE,
    name: str = "Field Reservations",
    alarm_offsets: Sequence[int] = (),
    now: datetime | None = None,
) -> str:
    """Serialize *reservations* as a VCALENDAR document.

    Confirmed reservations get one display alarm per entry in
    *alarm_offsets* (minutes before start).
    """
    display_zone = zone if is_valid_timezone(zone) else UTC_ZONE
    stamp = (now or datetime.now(UTC)).astimezone(UTC)

    calendar = vobject.iCalendar()
    calendar.add("prodid").value = PRODID
    calendar.add("calscale").value = "GREGORIAN"
    calendar.add("method").value = "PUBLISH"
    calendar.add("x-wr-calname").value = name
    calendar.add("x-wr-timezone").value = display_zone
    calendar.add("x-published-ttl").value = f"PT{REFRESH_INTERVAL_MINUTES}M"

    vtimezone = render_vtimezone(display_zone, stamp.year)
    if vtimezone:
        calendar.add(vobject.readOne("\r\n".join(vtimezone) + "\r\n"))

    for reservation in reservations:
        _add_event(calendar, reservation, display_zone, alarm_offsets, stamp)
    return calendar.serialize()

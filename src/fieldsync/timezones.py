"""Timezone and DST resolution for reservation scheduling.

Offsets for the zones reservations are commonly booked in come from a
declarative rule table (month, nth-or-last weekday, local transition time)
so that computed transitions always agree with the RRULEs rendered into
exported VTIMEZONE blocks. Any other valid IANA zone falls back to
``zoneinfo``. Unknown zones resolve to UTC with no daylight adjustment;
callers decide whether that deserves a warning.

All functions are pure: no I/O, no logging.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

UTC_ZONE = "UTC"

# Weekday numbering used by the rule table: 0 = Sunday ... 6 = Saturday.
_ICAL_DAY_CODES = ("SU", "MO", "TU", "WE", "TH", "FR", "SA")
LAST_WEEK = -1


@dataclass(frozen=True)
class TransitionRule:
    """One yearly DST transition: ``week`` is 1-5 or ``LAST_WEEK``."""

    month: int
    week: int
    weekday: int
    local_time: time


@dataclass(frozen=True)
class ZoneRule:
    std_offset: int
    dst_offset: int | None = None
    dst_start: TransitionRule | None = None
    dst_end: TransitionRule | None = None

    @property
    def has_dst(self) -> bool:
        return (
            self.dst_offset is not None
            and self.dst_start is not None
            and self.dst_end is not None
        )


@dataclass(frozen=True)
class TimezoneInfo:
    zone: str
    offset_minutes: int
    abbreviation: str
    is_dst: bool


@dataclass(frozen=True)
class DstTransition:
    """A UTC instant at which a zone's offset changes."""

    at: datetime
    kind: str  # "start" or "end"
    offset_before: int
    offset_after: int


_US_START = TransitionRule(month=3, week=2, weekday=0, local_time=time(2, 0))
_US_END = TransitionRule(month=11, week=1, weekday=0, local_time=time(2, 0))

ZONE_RULES: dict[str, ZoneRule] = {
    "UTC": ZoneRule(std_offset=0),
    "America/New_York": ZoneRule(-300, -240, _US_START, _US_END),
    "America/Chicago": ZoneRule(-360, -300, _US_START, _US_END),
    "America/Denver": ZoneRule(-420, -360, _US_START, _US_END),
    "America/Los_Angeles": ZoneRule(-480, -420, _US_START, _US_END),
    "America/Anchorage": ZoneRule(-540, -480, _US_START, _US_END),
    "America/Phoenix": ZoneRule(std_offset=-420),
    "Pacific/Honolulu": ZoneRule(std_offset=-600),
    "Europe/London": ZoneRule(
        0,
        60,
        TransitionRule(month=3, week=LAST_WEEK, weekday=0, local_time=time(1, 0)),
        TransitionRule(month=10, week=LAST_WEEK, weekday=0, local_time=time(2, 0)),
    ),
    "Europe/Paris": ZoneRule(
        60,
        120,
        TransitionRule(month=3, week=LAST_WEEK, weekday=0, local_time=time(2, 0)),
        TransitionRule(month=10, week=LAST_WEEK, weekday=0, local_time=time(3, 0)),
    ),
    # Southern hemisphere: DST spans the year boundary.
    "Australia/Sydney": ZoneRule(
        600,
        660,
        TransitionRule(month=10, week=1, weekday=0, local_time=time(2, 0)),
        TransitionRule(month=4, week=1, weekday=0, local_time=time(3, 0)),
    ),
}

# zone -> (standard, daylight)
_ABBREVIATIONS: dict[str, tuple[str, str]] = {
    "UTC": ("UTC", "UTC"),
    "America/New_York": ("EST", "EDT"),
    "America/Chicago": ("CST", "CDT"),
    "America/Denver": ("MST", "MDT"),
    "America/Phoenix": ("MST", "MST"),
    "America/Los_Angeles": ("PST", "PDT"),
    "America/Anchorage": ("AKST", "AKDT"),
    "Pacific/Honolulu": ("HST", "HST"),
    "Europe/London": ("GMT", "BST"),
    "Europe/Paris": ("CET", "CEST"),
    "Australia/Sydney": ("AEST", "AEDT"),
}

COMMON_TIMEZONES: tuple[tuple[str, str], ...] = (
    ("America/New_York", "Eastern Time (US & Canada)"),
    ("America/Chicago", "Central Time (US & Canada)"),
    ("America/Denver", "Mountain Time (US & Canada)"),
    ("America/Phoenix", "Arizona"),
    ("America/Los_Angeles", "Pacific Time (US & Canada)"),
    ("America/Anchorage", "Alaska"),
    ("Pacific/Honolulu", "Hawaii"),
    ("Europe/London", "London"),
    ("Europe/Paris", "Paris"),
    ("Australia/Sydney", "Sydney"),
    ("UTC", "Coordinated Universal Time"),
)


# ---------------------------------------------------------------------------
# Zone lookup
# ---------------------------------------------------------------------------


def _load_zoneinfo(zone: str) -> ZoneInfo | None:
    try:
        return ZoneInfo(zone)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def is_valid_timezone(zone: str | None) -> bool:
    """Return True when *zone* is in the rule table or a loadable IANA zone."""
    if not zone or not isinstance(zone, str):
        return False
    if zone in ZONE_RULES:
        return True
    return _load_zoneinfo(zone) is not None


def get_zone_rule(zone: str) -> ZoneRule | None:
    return ZONE_RULES.get(zone)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# ---------------------------------------------------------------------------
# Rule arithmetic
# ---------------------------------------------------------------------------


def nth_weekday_of_month(year: int, month: int, weekday: int, n: int) -> date:
    """Return the ``n``-th ``weekday`` (0 = Sunday) of a month.

    ``n == LAST_WEEK`` walks backward from the month's last day to the first
    matching weekday; otherwise walks forward from day 1 and adds ``n - 1``
    weeks.
    """
    py_weekday = (weekday - 1) % 7
    if n == LAST_WEEK:
        day = date(year, month, calendar.monthrange(year, month)[1])
        while day.weekday() != py_weekday:
            day -= timedelta(days=1)
        return day
    if n < 1:
        raise ValueError(f"week must be >= 1 or {LAST_WEEK}, got {n}")
    day = date(year, month, 1)
    while day.weekday() != py_weekday:
        day += timedelta(days=1)
    day += timedelta(weeks=n - 1)
    if day.month != month:
        raise ValueError(f"month {year}-{month:02d} has no week {n} for weekday {weekday}")
    return day


def transition_instant(rule: TransitionRule, year: int, offset_before: int) -> datetime:
    """UTC instant of a rule's local transition time in *year*."""
    local = datetime.combine(
        nth_weekday_of_month(year, rule.month, rule.weekday, rule.week), rule.local_time
    )
    return (local - timedelta(minutes=offset_before)).replace(tzinfo=UTC)


def _rule_dst_bounds(rule: ZoneRule, year: int) -> tuple[datetime, datetime]:
    assert rule.dst_start is not None and rule.dst_end is not None
    assert rule.dst_offset is not None
    start = transition_instant(rule.dst_start, year, rule.std_offset)
    end = transition_instant(rule.dst_end, year, rule.dst_offset)
    return start, end


def _rule_is_dst(rule: ZoneRule, at: datetime) -> bool:
    if not rule.has_dst:
        return False
    instant = _as_utc(at)
    start, end = _rule_dst_bounds(rule, instant.year)
    if start > end:
        return instant >= start or instant < end
    return start <= instant < end


# ---------------------------------------------------------------------------
# Offsets and info
# ---------------------------------------------------------------------------


def is_dst_active(zone: str, at: datetime | None = None) -> bool:
    instant = _as_utc(at or datetime.now(UTC))
    rule = ZONE_RULES.get(zone)
    if rule is not None:
        return _rule_is_dst(rule, instant)
    tz = _load_zoneinfo(zone)
    if tz is None:
        return False
    dst = instant.astimezone(tz).dst()
    return bool(dst)


def get_offset_minutes(zone: str, at: datetime | None = None) -> int:
    """UTC offset of *zone* at *at*, in minutes east of UTC."""
    instant = _as_utc(at or datetime.now(UTC))
    rule = ZONE_RULES.get(zone)
    if rule is not None:
        if _rule_is_dst(rule, instant):
            assert rule.dst_offset is not None
            return rule.dst_offset
        return rule.std_offset
    tz = _load_zoneinfo(zone)
    if tz is None:
        return 0
    offset = instant.astimezone(tz).utcoffset()
    return int(offset.total_seconds() // 60) if offset is not None else 0


def get_abbreviation(zone: str, is_dst: bool = False) -> str:
    pair = _ABBREVIATIONS.get(zone)
    if pair is not None:
        return pair[1] if is_dst else pair[0]
    return zone.rsplit("/", 1)[-1].upper()


def get_timezone_info(zone: str, at: datetime | None = None) -> TimezoneInfo:
    """Resolve offset, abbreviation and DST flag; unknown zones resolve to UTC."""
    if not is_valid_timezone(zone):
        return TimezoneInfo(zone=UTC_ZONE, offset_minutes=0, abbreviation="UTC", is_dst=False)

    instant = _as_utc(at or datetime.now(UTC))
    dst = is_dst_active(zone, instant)
    abbreviation = get_abbreviation(zone, dst)
    if zone not in _ABBREVIATIONS and zone not in ZONE_RULES:
        tz = _load_zoneinfo(zone)
        name = instant.astimezone(tz).tzname() if tz is not None else None
        if name and name.isalpha():
            abbreviation = name
    return TimezoneInfo(
        zone=zone,
        offset_minutes=get_offset_minutes(zone, instant),
        abbreviation=abbreviation,
        is_dst=dst,
    )


def format_offset(minutes: int) -> str:
    """Render an offset as ``+HHMM`` / ``-HHMM``."""
    sign = "+" if minutes >= 0 else "-"
    hours, mins = divmod(abs(minutes), 60)
    return f"{sign}{hours:02d}{mins:02d}"


# ---------------------------------------------------------------------------
# Wall clock <-> UTC
# ---------------------------------------------------------------------------


def wall_clock_to_utc(zone: str, day: date, wall_time: time) -> datetime:
    """Resolve a local wall-clock time in *zone* to a UTC instant.

    Follows ``fold=0`` semantics: a time inside a spring-forward gap uses
    the pre-transition (standard) offset, and a repeated fall-back time
    resolves to its first occurrence.
    """
    local = datetime.combine(day, wall_time.replace(tzinfo=None))
    rule = ZONE_RULES.get(zone)
    if rule is not None:
        if not rule.has_dst:
            return (local - timedelta(minutes=rule.std_offset)).replace(tzinfo=UTC)
        assert rule.dst_offset is not None
        candidates = (rule.std_offset, rule.dst_offset)
        valid = [
            offset
            for offset in candidates
            if get_offset_minutes(zone, (local - timedelta(minutes=offset)).replace(tzinfo=UTC))
            == offset
        ]
        if len(valid) == 1:
            chosen = valid[0]
        elif valid:
            # Overlap: first occurrence is on the larger (pre-transition) offset.
            chosen = max(valid)
        else:
            # Gap: clocks jumped forward from the smaller offset.
            chosen = min(candidates)
        return (local - timedelta(minutes=chosen)).replace(tzinfo=UTC)

    tz = _load_zoneinfo(zone)
    if tz is None:
        return local.replace(tzinfo=UTC)
    return local.replace(tzinfo=tz, fold=0).astimezone(UTC)


def utc_to_wall_clock(zone: str, instant: datetime) -> datetime:
    """Return *instant* as an aware datetime carrying *zone*'s fixed offset."""
    utc_instant = _as_utc(instant)
    info = get_timezone_info(zone, utc_instant)
    tz = timezone(timedelta(minutes=info.offset_minutes), info.abbreviation)
    return utc_instant.astimezone(tz)


def convert_timezone(value: datetime, from_zone: str, to_zone: str) -> datetime:
    """Convert between zones; naive input is read as wall clock in *from_zone*."""
    if value.tzinfo is None:
        instant = wall_clock_to_utc(from_zone, value.date(), value.time())
    else:
        instant = _as_utc(value)
    return utc_to_wall_clock(to_zone, instant)


def format_in_timezone(
    value: datetime,
    zone: str,
    fmt: str = "%Y-%m-%d %H:%M %Z",
) -> str:
    return utc_to_wall_clock(zone, value).strftime(fmt)


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def _scan_zoneinfo_transitions(zone: str, year: int) -> list[DstTransition]:
    tz = _load_zoneinfo(zone)
    if tz is None:
        return []

    def offset_at(instant: datetime) -> int:
        offset = instant.astimezone(tz).utcoffset()
        return int(offset.total_seconds() // 60) if offset is not None else 0

    transitions: list[DstTransition] = []
    cursor = datetime(year, 1, 1, tzinfo=UTC)
    stop = datetime(year + 1, 1, 1, tzinfo=UTC)
    previous = offset_at(cursor)
    while cursor < stop:
        step = cursor + timedelta(days=1)
        current = offset_at(step)
        if current != previous:
            low, high = cursor, step
            while high - low > timedelta(minutes=1):
                mid = low + (high - low) / 2
                if offset_at(mid) == previous:
                    low = mid
                else:
                    high = mid
            at = high.replace(second=0, microsecond=0)
            kind = "start" if high.astimezone(tz).dst() else "end"
            transitions.append(
                DstTransition(at=at, kind=kind, offset_before=previous, offset_after=current)
            )
            previous = current
        cursor = step
    return transitions


def get_dst_transitions(zone: str, year: int) -> list[DstTransition]:
    """All DST transitions of *zone* within calendar *year*, chronologically."""
    rule = ZONE_RULES.get(zone)
    if rule is None:
        return _scan_zoneinfo_transitions(zone, year)
    if not rule.has_dst:
        return []
    assert rule.dst_offset is not None
    start, end = _rule_dst_bounds(rule, year)
    transitions = [
        DstTransition(
            at=start, kind="start", offset_before=rule.std_offset, offset_after=rule.dst_offset
        ),
        DstTransition(
            at=end, kind="end", offset_before=rule.dst_offset, offset_after=rule.std_offset
        ),
    ]
    return sorted(transitions, key=lambda t: t.at)


def get_upcoming_transitions(
    zone: str,
    start: datetime | None = None,
    months: int = 12,
) -> list[DstTransition]:
    """Transitions between *start* and ``start + months`` (30-day months)."""
    begin = _as_utc(start or datetime.now(UTC))
    finish = begin + timedelta(days=30 * months)
    upcoming: list[DstTransition] = []
    for year in range(begin.year, finish.year + 1):
        upcoming.extend(t for t in get_dst_transitions(zone, year) if begin <= t.at <= finish)
    return upcoming


# ---------------------------------------------------------------------------
# Calendar export
# ---------------------------------------------------------------------------


def render_recurrence_rule(rule: TransitionRule) -> str:
    """Render a transition rule as an iCalendar yearly RRULE."""
    return f"FREQ=YEARLY;BYMONTH={rule.month};BYDAY={rule.week}{_ICAL_DAY_CODES[rule.weekday]}"


def _vtimezone_block(
    component: str,
    *,
    dtstart: datetime,
    offset_from: int,
    offset_to: int,
    name: str,
    rrule: str | None,
) -> list[str]:
    lines = [
        f"BEGIN:{component}",
        f"DTSTART:{dtstart.strftime('%Y%m%dT%H%M%S')}",
        f"TZOFFSETFROM:{format_offset(offset_from)}",
        f"TZOFFSETTO:{format_offset(offset_to)}",
        f"TZNAME:{name}",
    ]
    if rrule:
        lines.append(f"RRULE:{rrule}")
    lines.append(f"END:{component}")
    return lines


def render_vtimezone(zone: str, year: int | None = None) -> list[str]:
    """Render a VTIMEZONE component for *zone* as a list of content lines.

    Returns an empty list for UTC and for unknown zones, which need no
    VTIMEZONE definition.
    """
    if zone == UTC_ZONE or not is_valid_timezone(zone):
        return []
    ref_year = year or datetime.now(UTC).year
    lines = ["BEGIN:VTIMEZONE", f"TZID:{zone}"]

    rule = ZONE_RULES.get(zone)
    if rule is not None and rule.has_dst:
        assert rule.dst_start is not None and rule.dst_end is not None
        assert rule.dst_offset is not None
        std_start = datetime.combine(
            nth_weekday_of_month(
                ref_year, rule.dst_end.month, rule.dst_end.weekday, rule.dst_end.week
            ),
            rule.dst_end.local_time,
        )
        dst_start = datetime.combine(
            nth_weekday_of_month(
                ref_year, rule.dst_start.month, rule.dst_start.weekday, rule.dst_start.week
            ),
            rule.dst_start.local_time,
        )
        lines += _vtimezone_block(
            "STANDARD",
            dtstart=std_start,
            offset_from=rule.dst_offset,
            offset_to=rule.std_offset,
            name=get_abbreviation(zone, False),
            rrule=render_recurrence_rule(rule.dst_end),
        )
        lines += _vtimezone_block(
            "DAYLIGHT",
            dtstart=dst_start,
            offset_from=rule.std_offset,
            offset_to=rule.dst_offset,
            name=get_abbreviation(zone, True),
            rrule=render_recurrence_rule(rule.dst_start),
        )
    else:
        transitions = get_dst_transitions(zone, ref_year)
        if not transitions:
            offset = get_offset_minutes(zone, datetime(ref_year, 1, 1, tzinfo=UTC))
            lines += _vtimezone_block(
                "STANDARD",
                dtstart=datetime(1970, 1, 1),
                offset_from=offset,
                offset_to=offset,
                name=get_timezone_info(zone, datetime(ref_year, 1, 1, tzinfo=UTC)).abbreviation,
                rrule=None,
            )
        for transition in transitions:
            local_start = (transition.at + timedelta(minutes=transition.offset_before)).replace(
                tzinfo=None
            )
            after = transition.at + timedelta(minutes=1)
            lines += _vtimezone_block(
                "DAYLIGHT" if transition.kind == "start" else "STANDARD",
                dtstart=local_start,
                offset_from=transition.offset_before,
                offset_to=transition.offset_after,
                name=get_timezone_info(zone, after).abbreviation,
                rrule=None,
            )

    lines.append("END:VTIMEZONE")
    return lines

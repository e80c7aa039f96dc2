"""Calendar helpers for the reservation UI: calendars, timezones, reminder
preferences and the subscribable .ics feed.

The timezone list is public. The .ics feed is authorised by its per-user
``token`` query parameter; everything else needs the service token.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from fieldsync.api.deps import get_services, require_service_token
from fieldsync.api.models import (
    ApiResponse,
    CalendarFeed,
    TimezoneDetail,
    TimezoneEntry,
    TransitionEntry,
)
from fieldsync.ical import build_reservation_calendar, feed_token, verify_feed_token
from fieldsync.models import ReminderSettings
from fieldsync.providers.base import CalendarInfo
from fieldsync.services import Services
from fieldsync.sync import SYNCABLE_STATUSES
from fieldsync.timezones import (
    COMMON_TIMEZONES,
    format_offset,
    get_timezone_info,
    get_upcoming_transitions,
    is_valid_timezone,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["calendars"])

ICS_MEDIA_TYPE = "text/calendar; charset=utf-8"


def _timezone_entry(zone: str, label: str, at: datetime) -> TimezoneEntry:
    info = get_timezone_info(zone, at)
    return TimezoneEntry(
        zone=zone,
        label=label,
        offset=format_offset(info.offset_minutes),
        offset_minutes=info.offset_minutes,
        abbreviation=info.abbreviation,
        is_dst=info.is_dst,
    )


@router.get("/timezones", response_model=ApiResponse[list[TimezoneEntry]])
async def list_timezones() -> ApiResponse[list[TimezoneEntry]]:
    now = datetime.now(UTC)
    return ApiResponse[list[TimezoneEntry]](
        data=[_timezone_entry(zone, label, now) for zone, label in COMMON_TIMEZONES]
    )


@router.get("/timezones/{zone:path}", response_model=ApiResponse[TimezoneDetail])
async def timezone_detail(
    zone: str,
    months: int = Query(default=12, ge=1, le=36),
) -> ApiResponse[TimezoneDetail]:
    if not is_valid_timezone(zone):
        raise LookupError(f"Unknown timezone {zone}")
    now = datetime.now(UTC)
    label = dict(COMMON_TIMEZONES).get(zone, zone)
    entry = _timezone_entry(zone, label, now)
    transitions = [
        TransitionEntry(
            at=t.at, kind=t.kind, offset_before=t.offset_before, offset_after=t.offset_after
        )
        for t in get_upcoming_transitions(zone, now, months)
    ]
    return ApiResponse[TimezoneDetail](
        data=TimezoneDetail(**entry.model_dump(), upcoming_transitions=transitions)
    )


@router.get(
    "/integrations/{integration_id}/calendars",
    response_model=ApiResponse[list[CalendarInfo]],
    dependencies=[Depends(require_service_token)],
)
async def list_integration_calendars(
    integration_id: str,
    services: Services = Depends(get_services),
) -> ApiResponse[list[CalendarInfo]]:
    integration = await services.store.get_integration(integration_id)
    if integration is None:
        raise LookupError(f"Integration {integration_id} not found")
    adapter = services.providers.get(integration.provider)
    calendars = await adapter.list_calendars(integration)
    return ApiResponse[list[CalendarInfo]](data=calendars)


@router.get(
    "/users/{user_id}/reminder-settings",
    response_model=ApiResponse[ReminderSettings],
    dependencies=[Depends(require_service_token)],
)
async def get_reminder_settings(
    user_id: str,
    services: Services = Depends(get_services),
) -> ApiResponse[ReminderSettings]:
    return ApiResponse[ReminderSettings](data=await services.reminders.get_settings(user_id))


@router.put(
    "/users/{user_id}/reminder-settings",
    response_model=ApiResponse[ReminderSettings],
    dependencies=[Depends(require_service_token)],
)
async def put_reminder_settings(
    user_id: str,
    settings: ReminderSettings,
    services: Services = Depends(get_services),
) -> ApiResponse[ReminderSettings]:
    saved = await services.reminders.update_settings(user_id, settings)
    return ApiResponse[ReminderSettings](data=saved)


@router.get(
    "/users/{user_id}/calendar-feed",
    response_model=ApiResponse[CalendarFeed],
    dependencies=[Depends(require_service_token)],
)
async def calendar_feed(
    user_id: str,
    request: Request,
    timezone: str | None = Query(default=None),
    services: Services = Depends(get_services),
) -> ApiResponse[CalendarFeed]:
    """Subscription URL for the user's .ics feed."""
    zone = timezone or services.config.sync.default_timezone
    if not is_valid_timezone(zone):
        raise ValueError(f"Unknown timezone {zone}")
    secret = services.config.api.cron_secret
    assert secret is not None
    url = request.url_for("export_ics", user_id=user_id).include_query_params(
        token=feed_token(secret, user_id), timezone=zone
    )
    return ApiResponse[CalendarFeed](data=CalendarFeed(url=str(url), timezone=zone))


@router.get("/users/{user_id}/calendar.ics", name="export_ics")
async def export_ics(
    user_id: str,
    token: str = Query(...),
    timezone: str | None = Query(default=None),
    services: Services = Depends(get_services),
) -> Response:
    if not verify_feed_token(services.config.api.cron_secret, user_id, token):
        raise HTTPException(status_code=403, detail="Invalid feed token")

    zone = timezone or services.config.sync.default_timezone
    reservations = await services.store.list_user_reservations(
        user_id,
        statuses=SYNCABLE_STATUSES,
        start_date=datetime.now(UTC).date(),
    )
    settings = await services.reminders.get_settings(user_id)
    body = build_reservation_calendar(
        reservations,
        zone=zone,
        alarm_offsets=settings.enabled_offsets() if settings.enabled else (),
    )
    logger.info("Exported %d reservation(s) for user %s", len(reservations), user_id)
    return Response(
        content=body,
        media_type=ICS_MEDIA_TYPE,
        headers={"Content-Disposition": 'inline; filename="reservations.ics"'},
    )

"""Google Calendar adapter."""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote

from fieldsync.models import (
    CalendarIntegration,
    Provider,
    ReservationSnapshot,
    ReservationStatus,
    WebhookSubscription,
)
from fieldsync.providers.base import (
    CalendarInfo,
    CalendarProvider,
    ProviderDataError,
    ProviderError,
    PushSubscription,
    TokenGrant,
    event_detail_lines,
    event_location,
    event_title,
    local_datetime_string,
)

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_DEFAULT_CALENDAR_ID = "primary"

# Private extended-property keys; inbound notifications are correlated on these.
RESERVATION_ID_PROPERTY = "field-reservation-id"
FIELD_ID_PROPERTY = "field-id"
USER_ID_PROPERTY = "user-id"
TEAM_ID_PROPERTY = "team-id"
TEAM_NAME_PROPERTY = "team-name"

_EVENT_STATUS = {
    ReservationStatus.CONFIRMED: "confirmed",
    ReservationStatus.PENDING: "tentative",
    ReservationStatus.CANCELLED: "cancelled",
}
_EVENT_COLOR = {
    ReservationStatus.CONFIRMED: "10",
    ReservationStatus.PENDING: "5",
    ReservationStatus.CANCELLED: "4",
}
DEFAULT_COLOR_ID = "1"
POPUP_REMINDER_MINUTES = 60
EMAIL_REMINDER_MINUTES = 1440


def build_google_event_body(reservation: ReservationSnapshot) -> dict[str, Any]:
    """Translate a reservation into a Google Calendar event resource."""
    private: dict[str, str] = {
        RESERVATION_ID_PROPERTY: reservation.id,
        FIELD_ID_PROPERTY: reservation.field.id,
        USER_ID_PROPERTY: reservation.user_id,
    }
    if reservation.team is not None:
        private[TEAM_ID_PROPERTY] = reservation.team.id
        private[TEAM_NAME_PROPERTY] = reservation.team.name

    timezone = reservation.resolved_timezone()
    return {
        "summary": event_title(reservation),
        "description": "\n".join(
            f"{label}: {value}" for label, value in event_detail_lines(reservation)
        ),
        "location": event_location(reservation),
        "start": {"dateTime": local_datetime_string(reservation), "timeZone": timezone},
        "end": {"dateTime": local_datetime_string(reservation, end=True), "timeZone": timezone},
        "status": _EVENT_STATUS.get(reservation.status, "tentative"),
        "colorId": _EVENT_COLOR.get(reservation.status, DEFAULT_COLOR_ID),
        "reminders": {
            "useDefault": False,
            "overrides": [
                {"method": "popup", "minutes": POPUP_REMINDER_MINUTES},
                {"method": "email", "minutes": EMAIL_REMINDER_MINUTES},
            ],
        },
        "extendedProperties": {"private": private},
    }


def _parse_expiration_millis(value: Any, fallback: datetime) -> datetime:
    try:
        millis = int(str(value))
    except (TypeError, ValueError):
        return fallback
    return datetime.fromtimestamp(millis / 1000, tz=UTC)


class GoogleCalendarProvider(CalendarProvider):
    """Google Calendar v3 adapter with refresh-token auth and push channels."""

    token_url = GOOGLE_OAUTH_TOKEN_URL

    @property
    def name(self) -> Provider:
        return Provider.GOOGLE

    @staticmethod
    def _calendar_id(integration: CalendarIntegration) -> str:
        return (integration.calendar_id or "").strip() or GOOGLE_DEFAULT_CALENDAR_ID

    def _events_url(self, integration: CalendarIntegration, event_id: str | None = None) -> str:
        url = (
            f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/"
            f"{quote(self._calendar_id(integration), safe='')}/events"
        )
        if event_id is not None:
            normalized = event_id.strip()
            if not normalized:
                raise ValueError("event_id must be a non-empty string")
            url = f"{url}/{quote(normalized, safe='')}"
        return url

    async def create_event(
        self, integration: CalendarIntegration, reservation: ReservationSnapshot
    ) -> str:
        payload = await self._request_json(
            integration,
            "POST",
            self._events_url(integration),
            json_body=build_google_event_body(reservation),
        )
        event_id = payload.get("id")
        if not isinstance(event_id, str) or not event_id.strip():
            raise ProviderDataError("Google Calendar create response is missing an event id")
        return event_id

    async def update_event(
        self,
        integration: CalendarIntegration,
        external_event_id: str,
        reservation: ReservationSnapshot,
    ) -> None:
        await self._request_json(
            integration,
            "PUT",
            self._events_url(integration, external_event_id),
            json_body=build_google_event_body(reservation),
        )

    async def delete_event(self, integration: CalendarIntegration, external_event_id: str) -> None:
        # 404 and 410 (already deleted) are success.
        await self._delete_tolerating_missing(
            integration, self._events_url(integration, external_event_id)
        )

    async def list_calendars(self, integration: CalendarIntegration) -> list[CalendarInfo]:
        payload = await self._request_json(
            integration, "GET", f"{GOOGLE_CALENDAR_API_BASE_URL}/users/me/calendarList"
        )
        calendars: list[CalendarInfo] = []
        for item in payload.get("items") or []:
            if not isinstance(item, dict) or not item.get("id"):
                continue
            calendars.append(
                CalendarInfo(
                    id=str(item["id"]),
                    name=str(item.get("summaryOverride") or item.get("summary") or item["id"]),
                    description=item.get("description"),
                    primary=bool(item.get("primary", False)),
                    access_role=item.get("accessRole"),
                )
            )
        return calendars

    async def refresh_token(self, integration: CalendarIntegration) -> TokenGrant:
        return await self._exchange_refresh_token(integration)

    def default_resource_uri(self, integration: CalendarIntegration) -> str:
        return f"/calendars/{quote(self._calendar_id(integration), safe='')}/events"

    async def subscribe(
        self,
        integration: CalendarIntegration,
        *,
        resource_uri: str,
        callback_url: str,
        client_state: str,
        ttl_seconds: int,
    ) -> PushSubscription:
        channel_id = str(uuid.uuid4())
        path = resource_uri if resource_uri.startswith("/") else f"/{resource_uri}"
        payload = await self._request_json(
            integration,
            "POST",
            f"{GOOGLE_CALENDAR_API_BASE_URL}{path}/watch",
            json_body={
                "id": channel_id,
                "type": "web_hook",
                "address": callback_url,
                "token": client_state,
                "params": {"ttl": str(ttl_seconds)},
            },
        )
        fallback = datetime.now(UTC) + timedelta(seconds=ttl_seconds)
        return PushSubscription(
            subscription_id=str(payload.get("id") or channel_id),
            resource_id=payload.get("resourceId"),
            expiration=_parse_expiration_millis(payload.get("expiration"), fallback),
        )

    async def renew_subscription(
        self,
        integration: CalendarIntegration,
        subscription: WebhookSubscription,
        *,
        ttl_seconds: int,
    ) -> PushSubscription:
        # Channels cannot be extended; open a replacement, then stop the old one.
        renewed = await self.subscribe(
            integration,
            resource_uri=subscription.resource_uri,
            callback_url=subscription.callback_url,
            client_state=subscription.client_state or "",
            ttl_seconds=ttl_seconds,
        )
        try:
            await self.unsubscribe(integration, subscription)
        except ProviderError as exc:
            logger.warning(
                "Failed to stop superseded Google channel %s: %s", subscription.webhook_id, exc
            )
        return renewed

    async def unsubscribe(
        self, integration: CalendarIntegration, subscription: WebhookSubscription
    ) -> None:
        body: dict[str, Any] = {"id": subscription.webhook_id}
        if subscription.resource_id:
            body["resourceId"] = subscription.resource_id
        await self._delete_tolerating_missing(
            integration,
            f"{GOOGLE_CALENDAR_API_BASE_URL}/channels/stop",
            method="POST",
            json_body=body,
        )

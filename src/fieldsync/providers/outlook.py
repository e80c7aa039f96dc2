"""Microsoft Outlook (Graph) calendar adapter."""

from __future__ import annotations

import html
import logging
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
    PushSubscription,
    TokenGrant,
    event_detail_lines,
    event_location,
    event_title,
    local_datetime_string,
)

logger = logging.getLogger(__name__)

MICROSOFT_OAUTH_TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
GRAPH_API_BASE_URL = "https://graph.microsoft.com/v1.0"
GRAPH_SCOPES = (
    "https://graph.microsoft.com/Calendars.ReadWrite "
    "https://graph.microsoft.com/User.Read offline_access"
)
OUTLOOK_DEFAULT_CALENDAR_ID = "calendar"
METADATA_EXTENSION_NAME = "com.fieldreservations.metadata"
GRAPH_SUBSCRIPTION_CHANGE_TYPES = "created,updated,deleted"
# Graph caps calendar event subscriptions at 4230 minutes.
GRAPH_MAX_SUBSCRIPTION_MINUTES = 4230
REMINDER_MINUTES_BEFORE_START = 60

_SHOW_AS = {
    ReservationStatus.CONFIRMED: "busy",
    ReservationStatus.PENDING: "tentative",
    ReservationStatus.CANCELLED: "free",
}


def _categories(reservation: ReservationSnapshot) -> list[str]:
    categories = ["Sports"]
    if reservation.field.type:
        categories.append(reservation.field.type)
    if reservation.team is not None:
        categories.append("Team Event")
    purpose = reservation.purpose.lower()
    if "tournament" in purpose:
        categories.append("Tournament")
    if "practice" in purpose:
        categories.append("Practice")
    return categories


def _importance(reservation: ReservationSnapshot) -> str:
    purpose = reservation.purpose.lower()
    if "championship" in purpose or "tournament" in purpose:
        return "high"
    if "practice" in purpose:
        return "low"
    return "normal"


def _html_body(reservation: ReservationSnapshot) -> str:
    return "".join(
        f"<p><strong>{html.escape(label)}:</strong> {html.escape(value)}</p>"
        for label, value in event_detail_lines(reservation)
    )


def metadata_extension(reservation: ReservationSnapshot) -> dict[str, Any]:
    return {
        "@odata.type": "microsoft.graph.openTypeExtension",
        "extensionName": METADATA_EXTENSION_NAME,
        "reservationId": reservation.id,
        "fieldId": reservation.field.id,
        "userId": reservation.user_id,
        "teamId": reservation.team.id if reservation.team is not None else None,
    }


def build_outlook_event_body(
    reservation: ReservationSnapshot, *, include_extension: bool = True
) -> dict[str, Any]:
    """Translate a reservation into a Graph event resource.

    Open extensions can only be attached on create; updates must omit them.
    """
    timezone = reservation.resolved_timezone()
    body: dict[str, Any] = {
        "subject": event_title(reservation),
        "body": {"contentType": "HTML", "content": _html_body(reservation)},
        "start": {"dateTime": local_datetime_string(reservation), "timeZone": timezone},
        "end": {"dateTime": local_datetime_string(reservation, end=True), "timeZone": timezone},
        "location": {"displayName": event_location(reservation)},
        "showAs": _SHOW_AS.get(reservation.status, "tentative"),
        "categories": _categories(reservation),
        "importance": _importance(reservation),
        "isReminderOn": reservation.status != ReservationStatus.CANCELLED,
        "reminderMinutesBeforeStart": REMINDER_MINUTES_BEFORE_START,
    }
    if include_extension:
        body["extensions"] = [metadata_extension(reservation)]
    return body


def _graph_datetime(value: datetime) -> str:
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.0000000Z")


def _parse_graph_datetime(value: Any, fallback: datetime) -> datetime:
    if not isinstance(value, str) or not value.strip():
        return fallback
    normalized = value.strip().replace("Z", "+00:00")
    # Graph emits seven fractional digits; fromisoformat accepts at most six.
    if "." in normalized:
        head, _, tail = normalized.partition(".")
        digits = "".join(ch for ch in tail if ch.isdigit())
        suffix = tail[len(digits) :]
        normalized = f"{head}.{digits[:6]}{suffix}"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return fallback
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


class OutlookCalendarProvider(CalendarProvider):
    """Microsoft Graph calendar adapter with refresh-token auth and subscriptions."""

    token_url = MICROSOFT_OAUTH_TOKEN_URL

    @property
    def name(self) -> Provider:
        return Provider.OUTLOOK

    @staticmethod
    def _calendar_id(integration: CalendarIntegration) -> str:
        return (integration.calendar_id or "").strip() or OUTLOOK_DEFAULT_CALENDAR_ID

    def _events_path(self, integration: CalendarIntegration) -> str:
        calendar_id = self._calendar_id(integration)
        if calendar_id == OUTLOOK_DEFAULT_CALENDAR_ID:
            return "/me/calendar/events"
        return f"/me/calendars/{quote(calendar_id, safe='')}/events"

    @staticmethod
    def _event_url(event_id: str) -> str:
        normalized = event_id.strip()
        if not normalized:
            raise ValueError("event_id must be a non-empty string")
        return f"{GRAPH_API_BASE_URL}/me/events/{quote(normalized, safe='')}"

    async def create_event(
        self, integration: CalendarIntegration, reservation: ReservationSnapshot
    ) -> str:
        payload = await self._request_json(
            integration,
            "POST",
            f"{GRAPH_API_BASE_URL}{self._events_path(integration)}",
            json_body=build_outlook_event_body(reservation),
        )
        event_id = payload.get("id")
        if not isinstance(event_id, str) or not event_id.strip():
            raise ProviderDataError("Graph create-event response is missing an event id")
        return event_id

    async def update_event(
        self,
        integration: CalendarIntegration,
        external_event_id: str,
        reservation: ReservationSnapshot,
    ) -> None:
        await self._request_json(
            integration,
            "PATCH",
            self._event_url(external_event_id),
            json_body=build_outlook_event_body(reservation, include_extension=False),
        )

    async def delete_event(self, integration: CalendarIntegration, external_event_id: str) -> None:
        # ErrorItemNotFound (404) means the event is already gone.
        await self._delete_tolerating_missing(integration, self._event_url(external_event_id))

    async def list_calendars(self, integration: CalendarIntegration) -> list[CalendarInfo]:
        payload = await self._request_json(
            integration, "GET", f"{GRAPH_API_BASE_URL}/me/calendars"
        )
        calendars: list[CalendarInfo] = []
        for item in payload.get("value") or []:
            if not isinstance(item, dict) or not item.get("id"):
                continue
            calendars.append(
                CalendarInfo(
                    id=str(item["id"]),
                    name=str(item.get("name") or item["id"]),
                    primary=bool(item.get("isDefaultCalendar", False)),
                    access_role="owner" if item.get("canEdit") else "reader",
                )
            )
        return calendars

    async def refresh_token(self, integration: CalendarIntegration) -> TokenGrant:
        return await self._exchange_refresh_token(integration, extra={"scope": GRAPH_SCOPES})

    def default_resource_uri(self, integration: CalendarIntegration) -> str:
        return self._events_path(integration).lstrip("/")

    @staticmethod
    def _expiration_for(ttl_seconds: int) -> datetime:
        capped = min(
            timedelta(seconds=ttl_seconds),
            timedelta(minutes=GRAPH_MAX_SUBSCRIPTION_MINUTES),
        )
        return datetime.now(UTC) + capped

    async def subscribe(
        self,
        integration: CalendarIntegration,
        *,
        resource_uri: str,
        callback_url: str,
        client_state: str,
        ttl_seconds: int,
    ) -> PushSubscription:
        expiration = self._expiration_for(ttl_seconds)
        payload = await self._request_json(
            integration,
            "POST",
            f"{GRAPH_API_BASE_URL}/subscriptions",
            json_body={
                "changeType": GRAPH_SUBSCRIPTION_CHANGE_TYPES,
                "notificationUrl": callback_url,
                "resource": resource_uri,
                "expirationDateTime": _graph_datetime(expiration),
                "clientState": client_state,
            },
        )
        subscription_id = payload.get("id")
        if not isinstance(subscription_id, str) or not subscription_id.strip():
            raise ProviderDataError("Graph subscription response is missing an id")
        return PushSubscription(
            subscription_id=subscription_id,
            expiration=_parse_graph_datetime(payload.get("expirationDateTime"), expiration),
        )

    async def renew_subscription(
        self,
        integration: CalendarIntegration,
        subscription: WebhookSubscription,
        *,
        ttl_seconds: int,
    ) -> PushSubscription:
        expiration = self._expiration_for(ttl_seconds)
        payload = await self._request_json(
            integration,
            "PATCH",
            f"{GRAPH_API_BASE_URL}/subscriptions/{quote(subscription.webhook_id, safe='')}",
            json_body={"expirationDateTime": _graph_datetime(expiration)},
        )
        return PushSubscription(
            subscription_id=subscription.webhook_id,
            expiration=_parse_graph_datetime(payload.get("expirationDateTime"), expiration),
        )

    async def unsubscribe(
        self, integration: CalendarIntegration, subscription: WebhookSubscription
    ) -> None:
        await self._delete_tolerating_missing(
            integration,
            f"{GRAPH_API_BASE_URL}/subscriptions/{quote(subscription.webhook_id, safe='')}",
        )

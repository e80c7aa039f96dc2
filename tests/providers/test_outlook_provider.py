"""Unit tests for the Microsoft Graph calendar adapter."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import httpx
import pytest

from fieldsync.models import Provider, ReservationStatus, WebhookSubscription
from fieldsync.providers.base import ProviderDataError, ProviderRequestError
from fieldsync.providers.outlook import (
    GRAPH_API_BASE_URL,
    GRAPH_MAX_SUBSCRIPTION_MINUTES,
    GRAPH_SCOPES,
    METADATA_EXTENSION_NAME,
    MICROSOFT_OAUTH_TOKEN_URL,
    OutlookCalendarProvider,
    build_outlook_event_body,
)
from tests.conftest import make_integration, make_reservation

pytestmark = pytest.mark.unit

EVENTS_URL = f"{GRAPH_API_BASE_URL}/me/calendar/events"


def _mock_response(
    *,
    status_code: int,
    url: str,
    method: str = "GET",
    json_body: dict | None = None,
    text: str = "",
) -> httpx.Response:
    request = httpx.Request(method, url)
    if json_body is not None:
        return httpx.Response(status_code=status_code, json=json_body, request=request)
    return httpx.Response(status_code=status_code, text=text, request=request)


@pytest.fixture
def mock_client() -> AsyncMock:
    client = AsyncMock(spec=httpx.AsyncClient)
    client.post.return_value = _mock_response(
        status_code=200,
        url=MICROSOFT_OAUTH_TOKEN_URL,
        method="POST",
        json_body={"access_token": "fresh-token", "expires_in": "3600"},
    )
    return client


@pytest.fixture
def provider(mock_client: AsyncMock) -> OutlookCalendarProvider:
    return OutlookCalendarProvider(
        client_id="client-id", client_secret="client-secret", http_client=mock_client
    )


@pytest.fixture
def integration():
    # "calendar" selects the account's default calendar.
    return make_integration(Provider.OUTLOOK, calendar_id="calendar")


class TestBuildOutlookEventBody:
    def test_create_body_carries_metadata_extension(self):
        body = build_outlook_event_body(make_reservation(timezone="Europe/London"))

        assert body["subject"] == "North Pitch - Practice"
        assert body["start"]["timeZone"] == "Europe/London"
        assert body["location"] == {"displayName": "1 Park Road"}
        (extension,) = body["extensions"]
        assert extension["extensionName"] == METADATA_EXTENSION_NAME
        assert extension["reservationId"] == "res-1"

    def test_update_body_omits_extensions(self):
        body = build_outlook_event_body(make_reservation(), include_extension=False)
        assert "extensions" not in body

    def test_html_body_escapes_values(self):
        body = build_outlook_event_body(make_reservation(notes="<b>bring bibs</b>"))
        assert "&lt;b&gt;bring bibs&lt;/b&gt;" in body["body"]["content"]
        assert body["body"]["contentType"] == "HTML"

    @pytest.mark.parametrize(
        ("status", "show_as", "reminder_on"),
        [
            (ReservationStatus.CONFIRMED, "busy", True),
            (ReservationStatus.PENDING, "tentative", True),
            (ReservationStatus.CANCELLED, "free", False),
        ],
    )
    def test_status_mapping(self, status, show_as, reminder_on):
        body = build_outlook_event_body(make_reservation(status=status))
        assert body["showAs"] == show_as
        assert body["isReminderOn"] is reminder_on

    def test_practice_is_low_importance(self):
        body = build_outlook_event_body(make_reservation())
        assert body["importance"] == "low"
        assert body["categories"] == ["Sports", "Practice"]


class TestEvents:
    async def test_create_posts_to_default_calendar(self, provider, mock_client, integration):
        mock_client.request.return_value = _mock_response(
            status_code=201, url=EVENTS_URL, method="POST", json_body={"id": "AAMk"}
        )

        assert await provider.create_event(integration, make_reservation()) == "AAMk"
        assert mock_client.request.call_args.args == ("POST", EVENTS_URL)

    async def test_create_on_named_calendar(self, provider, mock_client):
        integration = make_integration(Provider.OUTLOOK, calendar_id="cal-2")
        mock_client.request.return_value = _mock_response(
            status_code=201, url=EVENTS_URL, method="POST", json_body={"id": "AAMk"}
        )

        await provider.create_event(integration, make_reservation())

        assert mock_client.request.call_args.args[1] == (
            f"{GRAPH_API_BASE_URL}/me/calendars/cal-2/events"
        )

    async def test_update_patches_without_extensions(self, provider, mock_client, integration):
        mock_client.request.return_value = _mock_response(
            status_code=200, url=f"{GRAPH_API_BASE_URL}/me/events/AAMk", json_body={"id": "AAMk"}
        )

        await provider.update_event(integration, "AAMk", make_reservation())

        call = mock_client.request.call_args
        assert call.args == ("PATCH", f"{GRAPH_API_BASE_URL}/me/events/AAMk")
        assert "extensions" not in call.kwargs["json"]

    async def test_delete_missing_event_is_success(self, provider, mock_client, integration):
        mock_client.request.return_value = _mock_response(
            status_code=404,
            url=f"{GRAPH_API_BASE_URL}/me/events/AAMk",
            json_body={"error": {"code": "ErrorItemNotFound", "message": ""}},
        )

        await provider.delete_event(integration, "AAMk")

    async def test_server_error(self, provider, mock_client, integration):
        mock_client.request.return_value = _mock_response(
            status_code=503,
            url=EVENTS_URL,
            json_body={"error": {"code": "ServiceUnavailable", "message": "Try later"}},
        )
        with pytest.raises(ProviderRequestError, match="503"):
            await provider.create_event(integration, make_reservation())

    async def test_refresh_requests_graph_scopes(self, provider, mock_client, integration):
        mock_client.request.side_effect = [
            _mock_response(status_code=401, url=EVENTS_URL),
            _mock_response(status_code=201, url=EVENTS_URL, json_body={"id": "AAMk"}),
        ]

        await provider.create_event(integration, make_reservation())

        data = mock_client.post.call_args.kwargs["data"]
        assert mock_client.post.call_args.args == (MICROSOFT_OAUTH_TOKEN_URL,)
        assert data["scope"] == GRAPH_SCOPES

    async def test_list_calendars(self, provider, mock_client, integration):
        mock_client.request.return_value = _mock_response(
            status_code=200,
            url=f"{GRAPH_API_BASE_URL}/me/calendars",
            json_body={
                "value": [
                    {"id": "c1", "name": "Calendar", "isDefaultCalendar": True, "canEdit": True},
                    {"id": "c2", "name": "Holidays", "canEdit": False},
                ]
            },
        )

        calendars = await provider.list_calendars(integration)

        assert [(c.id, c.primary, c.access_role) for c in calendars] == [
            ("c1", True, "owner"),
            ("c2", False, "reader"),
        ]


class TestSubscriptions:
    async def test_subscribe_caps_ttl(self, provider, mock_client, integration):
        mock_client.request.return_value = _mock_response(
            status_code=201,
            url=f"{GRAPH_API_BASE_URL}/subscriptions",
            method="POST",
            json_body={"id": "sub-1", "expirationDateTime": "2030-01-03T10:00:00.1234567Z"},
        )

        push = await provider.subscribe(
            integration,
            resource_uri=provider.default_resource_uri(integration),
            callback_url="https://sync.example.com/api/webhooks/outlook",
            client_state="state",
            ttl_seconds=7 * 24 * 3600,
        )

        assert push.subscription_id == "sub-1"
        assert push.expiration == datetime(2030, 1, 3, 10, 0, 0, 123456, tzinfo=UTC)
        body = mock_client.request.call_args.kwargs["json"]
        assert body["resource"] == "me/calendar/events"
        assert body["changeType"] == "created,updated,deleted"
        assert body["clientState"] == "state"
        requested = datetime.strptime(body["expirationDateTime"], "%Y-%m-%dT%H:%M:%S.0000000Z")
        cap = datetime.now(UTC) + timedelta(minutes=GRAPH_MAX_SUBSCRIPTION_MINUTES)
        assert requested.replace(tzinfo=UTC) <= cap

    async def test_subscribe_without_id_raises(self, provider, mock_client, integration):
        mock_client.request.return_value = _mock_response(
            status_code=201, url=f"{GRAPH_API_BASE_URL}/subscriptions", json_body={}
        )
        with pytest.raises(ProviderDataError):
            await provider.subscribe(
                integration,
                resource_uri="me/calendar/events",
                callback_url="https://sync.example.com/api/webhooks/outlook",
                client_state="state",
                ttl_seconds=3600,
            )

    async def test_renew_patches_in_place(self, provider, mock_client, integration):
        subscription = WebhookSubscription(
            id="wh-1",
            integration_id="int-outlook",
            provider=Provider.OUTLOOK,
            webhook_id="sub-1",
            resource_uri="me/calendar/events",
            callback_url="https://sync.example.com/api/webhooks/outlook",
            expiration_time=datetime.now(UTC) + timedelta(minutes=5),
        )
        mock_client.request.return_value = _mock_response(
            status_code=200,
            url=f"{GRAPH_API_BASE_URL}/subscriptions/sub-1",
            json_body={"id": "sub-1", "expirationDateTime": "not a date"},
        )

        push = await provider.renew_subscription(integration, subscription, ttl_seconds=3600)

        assert push.subscription_id == "sub-1"
        assert push.expiration > datetime.now(UTC) + timedelta(minutes=55)
        assert mock_client.request.call_args.args == (
            "PATCH",
            f"{GRAPH_API_BASE_URL}/subscriptions/sub-1",
        )

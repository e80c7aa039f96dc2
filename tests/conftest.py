"""Shared fixtures for the fieldsync test suite.

``FakeCalendarProvider`` records every adapter call and can be told to fail
specific operations; ``InMemorySyncStore`` stands in for PostgreSQL.
"""

from __future__ import annotations

import itertools
from datetime import UTC, date, datetime, time, timedelta
from typing import Any
from unittest.mock import MagicMock

import httpx
import pytest

from fieldsync.config import FieldSyncConfig
from fieldsync.models import (
    CalendarIntegration,
    FieldRef,
    Provider,
    ReminderChannel,
    ReservationSnapshot,
    ReservationStatus,
    UserContact,
    WebhookSubscription,
)
from fieldsync.providers.base import (
    CalendarInfo,
    CalendarProvider,
    ProviderRequestError,
    PushSubscription,
    TokenGrant,
)
from fieldsync.providers.registry import ProviderRegistry
from fieldsync.reminders import ReminderScheduler
from fieldsync.services import Services, assemble_services
from fieldsync.sync import SyncOrchestrator
from fieldsync.testing import InMemorySyncStore
from fieldsync.webhooks import WebhookSubscriptionManager

USER_ID = "user-1"


class RecordingSender:
    """NotificationSender that keeps every message it was asked to send."""

    def __init__(self, error: Exception | None = None) -> None:
        self.sent: list[dict[str, Any]] = []
        self.error = error

    async def send(self, recipient: str, title: str, body: str, metadata: dict[str, Any]) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append({"recipient": recipient, "title": title, "body": body, **metadata})


class FakeCalendarProvider(CalendarProvider):
    """In-memory calendar adapter.

    ``fail_on`` maps an operation name (``create_event``, ``update_event``,
    ``delete_event``, ``subscribe``, ``renew_subscription``) to the exception
    it should raise.
    """

    token_url = "https://example.invalid/token"

    def __init__(self, provider: Provider) -> None:
        super().__init__(
            client_id="client",
            client_secret="secret",
            http_client=MagicMock(spec=httpx.AsyncClient),
        )
        self._provider = provider
        self._ids = itertools.count(1)
        self.events: dict[str, ReservationSnapshot] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_on: dict[str, Exception] = {}
        self.unsubscribed: list[str] = []

    @property
    def name(self) -> Provider:
        return self._provider

    def _maybe_fail(self, operation: str) -> None:
        error = self.fail_on.get(operation)
        if error is not None:
            raise error

    async def create_event(
        self, integration: CalendarIntegration, reservation: ReservationSnapshot
    ) -> str:
        self.calls.append(("create_event", reservation.id))
        self._maybe_fail("create_event")
        event_id = f"{self._provider.value}-evt-{next(self._ids)}"
        self.events[event_id] = reservation
        return event_id

    async def update_event(
        self,
        integration: CalendarIntegration,
        external_event_id: str,
        reservation: ReservationSnapshot,
    ) -> None:
        self.calls.append(("update_event", external_event_id))
        self._maybe_fail("update_event")
        self.events[external_event_id] = reservation

    async def delete_event(self, integration: CalendarIntegration, external_event_id: str) -> None:
        self.calls.append(("delete_event", external_event_id))
        self._maybe_fail("delete_event")
        self.events.pop(external_event_id, None)

    async def list_calendars(self, integration: CalendarIntegration) -> list[CalendarInfo]:
        return [CalendarInfo(id="primary", name="Primary", primary=True)]

    async def refresh_token(self, integration: CalendarIntegration) -> TokenGrant:
        expires_at = datetime.now(UTC) + timedelta(hours=1)
        return TokenGrant(access_token="refreshed", expires_at=expires_at)

    def default_resource_uri(self, integration: CalendarIntegration) -> str:
        return f"/calendars/{integration.calendar_id or 'primary'}/events"

    async def subscribe(
        self,
        integration: CalendarIntegration,
        *,
        resource_uri: str,
        callback_url: str,
        client_state: str,
        ttl_seconds: int,
    ) -> PushSubscription:
        self.calls.append(("subscribe", resource_uri))
        self._maybe_fail("subscribe")
        return PushSubscription(
            subscription_id=f"{self._provider.value}-sub-{next(self._ids)}",
            expiration=datetime.now(UTC) + timedelta(seconds=ttl_seconds),
            resource_id="res-1",
        )

    async def renew_subscription(
        self,
        integration: CalendarIntegration,
        subscription: WebhookSubscription,
        *,
        ttl_seconds: int,
    ) -> PushSubscription:
        self.calls.append(("renew_subscription", subscription.webhook_id))
        self._maybe_fail("renew_subscription")
        return PushSubscription(
            subscription_id=f"{self._provider.value}-sub-{next(self._ids)}",
            expiration=datetime.now(UTC) + timedelta(seconds=ttl_seconds),
        )

    async def unsubscribe(
        self, integration: CalendarIntegration, subscription: WebhookSubscription
    ) -> None:
        self.calls.append(("unsubscribe", subscription.webhook_id))
        self._maybe_fail("unsubscribe")
        self.unsubscribed.append(subscription.webhook_id)


def server_error(provider: str = "google") -> ProviderRequestError:
    return ProviderRequestError(status_code=500, message="backend error", provider=provider)


def make_reservation(
    reservation_id: str = "res-1",
    *,
    user_id: str = USER_ID,
    days_ahead: int = 3,
    start: time = time(14, 0),
    end: time = time(16, 0),
    status: ReservationStatus = ReservationStatus.CONFIRMED,
    timezone: str = "UTC",
    **extra: Any,
) -> ReservationSnapshot:
    return ReservationSnapshot(
        id=reservation_id,
        user_id=user_id,
        field=FieldRef(id="field-1", name="North Pitch", address="1 Park Road"),
        reservation_date=date.today() + timedelta(days=days_ahead),
        start_time=start,
        end_time=end,
        timezone=timezone,
        status=status,
        purpose="Practice",
        attendees=12,
        **extra,
    )


def make_integration(
    provider: Provider,
    *,
    integration_id: str | None = None,
    user_id: str = USER_ID,
    **extra: Any,
) -> CalendarIntegration:
    values: dict[str, Any] = {
        "access_token": "token",
        "refresh_token": "refresh",
        "token_expires_at": datetime.now(UTC) + timedelta(hours=1),
        "calendar_id": "primary",
    }
    values.update(extra)
    return CalendarIntegration(
        id=integration_id or f"int-{provider.value}", user_id=user_id, provider=provider, **values
    )


@pytest.fixture
def store() -> InMemorySyncStore:
    store = InMemorySyncStore()
    store.contacts[USER_ID] = UserContact(
        user_id=USER_ID, name="Sam", email="sam@example.com", phone="+15550100"
    )
    return store


@pytest.fixture
def google() -> FakeCalendarProvider:
    return FakeCalendarProvider(Provider.GOOGLE)


@pytest.fixture
def outlook() -> FakeCalendarProvider:
    return FakeCalendarProvider(Provider.OUTLOOK)


@pytest.fixture
def registry(google: FakeCalendarProvider, outlook: FakeCalendarProvider) -> ProviderRegistry:
    return ProviderRegistry([google, outlook])


@pytest.fixture
def email_sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def reminders(store: InMemorySyncStore, email_sender: RecordingSender) -> ReminderScheduler:
    return ReminderScheduler(store, {ReminderChannel.EMAIL: email_sender})


@pytest.fixture
def orchestrator(
    store: InMemorySyncStore, registry: ProviderRegistry, reminders: ReminderScheduler
) -> SyncOrchestrator:
    return SyncOrchestrator(store, registry, reminders)


@pytest.fixture
def config() -> FieldSyncConfig:
    config = FieldSyncConfig()
    config.webhooks.callback_url = "https://sync.example.com"
    config.api.cron_secret = "s3cret"
    return config


@pytest.fixture
def webhook_manager(
    store: InMemorySyncStore, registry: ProviderRegistry, config: FieldSyncConfig
) -> WebhookSubscriptionManager:
    return WebhookSubscriptionManager(store, registry, config.webhooks)


@pytest.fixture
def services(
    config: FieldSyncConfig,
    store: InMemorySyncStore,
    registry: ProviderRegistry,
    email_sender: RecordingSender,
) -> Services:
    return assemble_services(
        config,
        store,
        registry,
        senders={ReminderChannel.EMAIL: email_sender, ReminderChannel.WEBHOOK: RecordingSender()},
    )

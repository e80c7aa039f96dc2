"""Push-notification subscription lifecycle and inbound event routing.

A subscription moves through ``registered -> (renewed)* -> expired |
unregistered``. Google channels cannot be extended in place, so renewal may
change the provider-side id; the local row id stays stable. Renewal failure
deactivates the subscription and leaves it for ``cleanup_expired``.
"""

from __future__ import annotations

import hmac
import logging
import secrets
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from opentelemetry import trace
from pydantic import BaseModel, Field

from fieldsync.config import WebhookConfig
from fieldsync.core import metrics
from fieldsync.models import (
    ErrorKind,
    Provider,
    SyncDirection,
    SyncLogEntry,
    SyncOperation,
    SyncOutcome,
    SyncStatus,
    WebhookEvent,
    WebhookSubscription,
)
from fieldsync.providers.base import classify_error, sanitize_error
from fieldsync.providers.google import RESERVATION_ID_PROPERTY
from fieldsync.providers.outlook import METADATA_EXTENSION_NAME
from fieldsync.providers.registry import ProviderRegistry
from fieldsync.storage.base import SyncStore

logger = logging.getLogger(__name__)

INBOUND_CHANGE_TYPES = frozenset({"created", "updated", "deleted"})

# X-Goog-Resource-State values mapped onto neutral change types.
_GOOGLE_RESOURCE_STATES = {"exists": "updated", "not_exists": "deleted", "sync": "sync"}


class WebhookError(RuntimeError):
    """Base error for subscription management and inbound notifications."""


class WebhookAuthError(WebhookError):
    """Inbound notification did not carry the subscription's client state."""


class InboundEventHandler(Protocol):
    async def __call__(
        self, event: WebhookEvent, subscription: WebhookSubscription, reservation_id: str
    ) -> None: ...


class InboundEventResult(BaseModel):
    processed: bool
    reason: str
    reservation_id: str | None = None


class WebhookStats(BaseModel):
    total: int = 0
    active: int = 0
    expired: int = 0
    by_provider: dict[str, int] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Notification parsing
# ---------------------------------------------------------------------------


def parse_google_notification(
    headers: Mapping[str, str], body: dict[str, Any] | None = None
) -> WebhookEvent:
    """Build an event from Google's ``X-Goog-*`` channel headers.

    A ``sync`` resource state is the channel handshake; callers acknowledge
    it without processing.
    """
    lowered = {key.lower(): value for key, value in headers.items()}
    channel_id = lowered.get("x-goog-channel-id")
    if not channel_id:
        raise ValueError("Missing X-Goog-Channel-ID header")
    state = (lowered.get("x-goog-resource-state") or "").lower()
    change_type = _GOOGLE_RESOURCE_STATES.get(state)
    if change_type is None:
        raise ValueError(f"Unsupported X-Goog-Resource-State {state!r}")
    data = dict(body or {})
    if lowered.get("x-goog-resource-id"):
        data.setdefault("resourceId", lowered["x-goog-resource-id"])
    return WebhookEvent(
        subscription_id=channel_id,
        resource_uri=lowered.get("x-goog-resource-uri", ""),
        change_type=change_type,
        data=data,
        client_state=lowered.get("x-goog-channel-token"),
        provider=Provider.GOOGLE,
    )


def parse_graph_notifications(payload: Mapping[str, Any]) -> list[WebhookEvent]:
    """Split a Microsoft Graph ``{"value": [...]}`` batch into events."""
    items = payload.get("value")
    if not isinstance(items, list):
        raise ValueError("Graph notification payload must contain a 'value' list")
    events: list[WebhookEvent] = []
    for item in items:
        if not isinstance(item, dict) or not item.get("subscriptionId"):
            logger.warning("Skipping malformed Graph notification entry")
            continue
        data = item.get("resourceData")
        events.append(
            WebhookEvent(
                subscription_id=str(item["subscriptionId"]),
                resource_uri=str(item.get("resource") or ""),
                change_type=str(item.get("changeType") or "").lower(),
                data=data if isinstance(data, dict) else {},
                client_state=item.get("clientState"),
                provider=Provider.OUTLOOK,
            )
        )
    return events


def extract_reservation_id(data: Mapping[str, Any]) -> str | None:
    """Return the reservation id tagged on a provider event payload, if any."""
    private = (data.get("extendedProperties") or {}).get("private") or {}
    if isinstance(private, dict) and private.get(RESERVATION_ID_PROPERTY):
        return str(private[RESERVATION_ID_PROPERTY])

    extensions = data.get("extensions") or []
    if isinstance(extensions, list):
        for extension in extensions:
            if not isinstance(extension, dict):
                continue
            name = extension.get("extensionName") or extension.get("id", "")
            if METADATA_EXTENSION_NAME in str(name) and extension.get("reservationId"):
                return str(extension["reservationId"])

    direct = data.get(METADATA_EXTENSION_NAME)
    if isinstance(direct, dict) and direct.get("reservationId"):
        return str(direct["reservationId"])
    return None


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class WebhookSubscriptionManager:
    def __init__(
        self,
        store: SyncStore,
        providers: ProviderRegistry,
        config: WebhookConfig | None = None,
        *,
        inbound_handler: InboundEventHandler | None = None,
    ) -> None:
        self._store = store
        self._providers = providers
        self._config = config or WebhookConfig()
        self._inbound_handler = inbound_handler

    def set_inbound_handler(self, handler: InboundEventHandler) -> None:
        self._inbound_handler = handler

    def callback_url_for(self, provider: Provider) -> str:
        if not self._config.callback_url:
            raise ValueError("webhooks.callback_url is not configured")
        return f"{self._config.callback_url.rstrip('/')}/api/webhooks/{provider.value}"

    async def _audit(self, entry: SyncLogEntry) -> None:
        try:
            await self._store.append_sync_log(entry)
        except Exception:
            logger.warning("Failed to write webhook sync log entry", exc_info=True)

    async def register(
        self,
        integration_id: str,
        provider: Provider | str,
        resource_uri: str | None = None,
        callback_url: str | None = None,
    ) -> WebhookSubscription:
        """Create a provider push subscription and persist it."""
        provider = Provider(provider)
        integration = await self._store.get_integration(integration_id)
        if integration is None:
            raise LookupError(f"Calendar integration {integration_id} not found")
        if integration.provider != provider:
            raise ValueError(
                f"Integration {integration_id} is a {integration.provider} integration, "
                f"not {provider}"
            )

        adapter = self._providers.get(provider)
        resource = resource_uri or adapter.default_resource_uri(integration)
        callback = callback_url or self.callback_url_for(provider)
        client_state = secrets.token_urlsafe(32)

        push = await adapter.subscribe(
            integration,
            resource_uri=resource,
            callback_url=callback,
            client_state=client_state,
            ttl_seconds=self._config.ttl_seconds,
        )
        subscription = WebhookSubscription(
            id=str(uuid.uuid4()),
            integration_id=integration.id,
            provider=provider,
            webhook_id=push.subscription_id,
            resource_uri=resource,
            callback_url=callback,
            resource_id=push.resource_id,
            client_state=client_state,
            expiration_time=push.expiration,
            is_active=True,
            created_at=datetime.now(UTC),
        )
        await self._store.save_webhook(subscription)
        logger.info(
            "Registered %s webhook %s for integration %s (expires %s)",
            provider,
            subscription.webhook_id,
            integration.id,
            subscription.expiration_time.isoformat(),
        )
        return subscription

    async def renew(self, webhook_id: str) -> SyncOutcome:
        """Extend a subscription; failure deactivates it without retrying."""
        subscription = await self._store.get_webhook(webhook_id)
        if subscription is None:
            return SyncOutcome.failure(ErrorKind.NOT_FOUND, f"Webhook {webhook_id} not found")

        try:
            integration = await self._store.get_integration(subscription.integration_id)
            if integration is None:
                raise LookupError(f"Calendar integration {subscription.integration_id} not found")
            adapter = self._providers.get(subscription.provider)
            push = await adapter.renew_subscription(
                integration, subscription, ttl_seconds=self._config.ttl_seconds
            )
        except Exception as exc:
            detail = sanitize_error(exc)
            logger.warning("Failed to renew webhook %s: %s", webhook_id, detail)
            await self._store.save_webhook(subscription.model_copy(update={"is_active": False}))
            await self._audit(
                SyncLogEntry(
                    operation=SyncOperation.WEBHOOK,
                    direction=SyncDirection.OUTBOUND,
                    status=SyncStatus.FAILED,
                    integration_id=subscription.integration_id,
                    provider=subscription.provider,
                    error_kind=ErrorKind.RENEWAL,
                    error_message=detail,
                    details={"webhook_id": subscription.webhook_id, "cause": classify_error(exc)},
                )
            )
            return SyncOutcome.failure(ErrorKind.RENEWAL, detail)

        renewed = subscription.model_copy(
            update={
                "webhook_id": push.subscription_id,
                "resource_id": push.resource_id or subscription.resource_id,
                "expiration_time": push.expiration,
                "is_active": True,
            }
        )
        await self._store.save_webhook(renewed)
        logger.info(
            "Renewed %s webhook %s until %s",
            renewed.provider,
            renewed.webhook_id,
            renewed.expiration_time.isoformat(),
        )
        return SyncOutcome.success(detail=renewed.expiration_time.isoformat())

    async def unregister(self, webhook_id: str) -> None:
        """Cancel provider-side (best effort) and always drop the local record."""
        subscription = await self._store.get_webhook(webhook_id)
        if subscription is None:
            return
        try:
            integration = await self._store.get_integration(subscription.integration_id)
            if integration is not None:
                adapter = self._providers.get(subscription.provider)
                await adapter.unsubscribe(integration, subscription)
        except Exception as exc:
            logger.warning(
                "Failed to cancel %s webhook %s provider-side: %s",
                subscription.provider,
                subscription.webhook_id,
                sanitize_error(exc),
            )
        await self._store.delete_webhook(subscription.id)
        logger.info("Unregistered webhook %s", subscription.webhook_id)

    async def verify_client_state(self, event: WebhookEvent) -> WebhookSubscription | None:
        """Check an event's client state against its subscription.

        Returns the subscription (None when unknown) and raises
        ``WebhookAuthError`` on a mismatch.
        """
        subscription = await self._store.find_webhook_by_subscription(event.subscription_id)
        if subscription is None:
            return None
        if subscription.client_state and not hmac.compare_digest(
            subscription.client_state, event.client_state or ""
        ):
            raise WebhookAuthError(
                f"Client state mismatch for subscription {event.subscription_id}"
            )
        return subscription

    async def process_inbound_event(self, event: WebhookEvent) -> InboundEventResult:
        """Route one inbound notification; unknown or unauthenticated events are discarded."""
        result = await self._route_inbound_event(event)
        provider = event.provider.value if event.provider else "unknown"
        metrics.record_webhook_event(provider, "processed" if result.processed else result.reason)
        return result

    async def _route_inbound_event(self, event: WebhookEvent) -> InboundEventResult:
        try:
            subscription = await self.verify_client_state(event)
        except WebhookAuthError:
            logger.warning("Discarding webhook event with mismatched client state")
            return InboundEventResult(processed=False, reason="client_state_mismatch")
        if subscription is None:
            logger.warning("Discarding event for unknown subscription %s", event.subscription_id)
            return InboundEventResult(processed=False, reason="unknown_subscription")
        if not subscription.is_active:
            logger.info("Discarding event for inactive subscription %s", event.subscription_id)
            return InboundEventResult(processed=False, reason="inactive_subscription")

        change_type = event.change_type.lower()
        if change_type not in INBOUND_CHANGE_TYPES:
            logger.debug("Ignoring %r notification on %s", change_type, event.subscription_id)
            return InboundEventResult(processed=False, reason="unsupported_change_type")

        reservation_id = extract_reservation_id(event.data)
        if reservation_id is None:
            return InboundEventResult(processed=False, reason="not_reservation_event")

        status = SyncStatus.SUCCESS
        error: str | None = None
        if self._inbound_handler is not None:
            try:
                await self._inbound_handler(event, subscription, reservation_id)
            except Exception as exc:
                logger.exception("Inbound handler failed for reservation %s", reservation_id)
                status = SyncStatus.FAILED
                error = sanitize_error(exc)

        await self._audit(
            SyncLogEntry(
                operation=SyncOperation.WEBHOOK,
                direction=SyncDirection.INBOUND,
                status=status,
                integration_id=subscription.integration_id,
                reservation_id=reservation_id,
                provider=subscription.provider,
                error_kind=ErrorKind.INTERNAL if error else None,
                error_message=error,
                details={"change_type": change_type, "subscription_id": event.subscription_id},
            )
        )
        return InboundEventResult(
            processed=status == SyncStatus.SUCCESS,
            reason=change_type if error is None else "handler_failed",
            reservation_id=reservation_id,
        )

    async def cleanup_expired(self, now: datetime | None = None) -> int:
        """Unregister every subscription whose expiration has passed."""
        current = now or datetime.now(UTC)
        tracer = trace.get_tracer("fieldsync")
        with tracer.start_as_current_span("fieldsync.webhooks.cleanup") as span:
            expired = [
                sub for sub in await self._store.list_webhooks() if sub.expiration_time < current
            ]
            span.set_attribute("webhooks_expired", len(expired))
            cleaned = 0
            for subscription in expired:
                try:
                    await self.unregister(subscription.id)
                    cleaned += 1
                except Exception:
                    logger.exception("Failed to remove expired webhook %s", subscription.id)
        if cleaned:
            logger.info("Cleaned up %d expired webhook(s)", cleaned)
        return cleaned

    async def renew_expiring(
        self, within: timedelta | None = None, now: datetime | None = None
    ) -> int:
        """Renew active subscriptions expiring inside the renewal window."""
        current = now or datetime.now(UTC)
        window = within or timedelta(minutes=self._config.renew_before_minutes)
        renewed = 0
        for subscription in await self._store.list_webhooks_expiring_before(current + window):
            if subscription.expiration_time < current:
                continue
            outcome = await self.renew(subscription.id)
            if outcome.ok:
                renewed += 1
        return renewed

    async def get_stats(self, now: datetime | None = None) -> WebhookStats:
        current = now or datetime.now(UTC)
        stats = WebhookStats()
        for subscription in await self._store.list_webhooks():
            stats.total += 1
            if subscription.expiration_time < current:
                stats.expired += 1
            elif subscription.is_active:
                stats.active += 1
            key = subscription.provider.value
            stats.by_provider[key] = stats.by_provider.get(key, 0) + 1
        return stats

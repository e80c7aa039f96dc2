"""Wiring for the long-lived service objects shared by the API, jobs and CLI."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from fieldsync.config import FieldSyncConfig
from fieldsync.db import Database
from fieldsync.models import ReminderChannel
from fieldsync.providers import GoogleCalendarProvider, OutlookCalendarProvider, ProviderRegistry
from fieldsync.reminders import NotificationSender, ReminderScheduler, WebhookNotificationSender
from fieldsync.storage.base import SyncStore
from fieldsync.storage.postgres import PostgresSyncStore
from fieldsync.sync import SyncOrchestrator
from fieldsync.webhooks import WebhookSubscriptionManager

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: FieldSyncConfig
    store: SyncStore
    providers: ProviderRegistry
    reminders: ReminderScheduler
    webhooks: WebhookSubscriptionManager
    orchestrator: SyncOrchestrator
    database: Database | None = None
    webhook_sender: WebhookNotificationSender | None = None

    async def aclose(self) -> None:
        await self.providers.shutdown()
        if self.webhook_sender is not None:
            await self.webhook_sender.aclose()
        if self.database is not None:
            await self.database.close()


def build_providers(
    config: FieldSyncConfig, http_client: httpx.AsyncClient | None = None
) -> ProviderRegistry:
    """Adapters for every provider whose OAuth client is configured."""
    registry = ProviderRegistry()
    if config.google.configured:
        registry.register(
            GoogleCalendarProvider(
                client_id=config.google.client_id,
                client_secret=config.google.client_secret,
                http_client=http_client,
                timeout_s=config.http.timeout_s,
            )
        )
    else:
        logger.warning("Google OAuth client not configured; Google sync disabled")
    if config.outlook.configured:
        registry.register(
            OutlookCalendarProvider(
                client_id=config.outlook.client_id,
                client_secret=config.outlook.client_secret,
                http_client=http_client,
                timeout_s=config.http.timeout_s,
            )
        )
    else:
        logger.warning("Microsoft OAuth client not configured; Outlook sync disabled")
    return registry


def assemble_services(
    config: FieldSyncConfig,
    store: SyncStore,
    providers: ProviderRegistry,
    *,
    senders: dict[ReminderChannel, NotificationSender] | None = None,
    database: Database | None = None,
) -> Services:
    """Connect already-built components; refreshed tokens are persisted via *store*."""
    providers.bind_token_store(store)

    webhook_sender: WebhookNotificationSender | None = None
    channel_senders: dict[ReminderChannel, NotificationSender] = dict(senders or {})
    if ReminderChannel.WEBHOOK not in channel_senders:
        webhook_sender = WebhookNotificationSender(timeout_s=config.reminders.webhook_timeout_s)
        channel_senders[ReminderChannel.WEBHOOK] = webhook_sender

    reminders = ReminderScheduler(
        store,
        channel_senders,
        buffer_minutes=config.reminders.buffer_minutes,
        batch_limit=config.reminders.batch_limit,
    )
    orchestrator = SyncOrchestrator(store, providers, reminders, config.sync)
    webhooks = WebhookSubscriptionManager(
        store, providers, config.webhooks, inbound_handler=orchestrator.handle_inbound_event
    )
    return Services(
        config=config,
        store=store,
        providers=providers,
        reminders=reminders,
        webhooks=webhooks,
        orchestrator=orchestrator,
        database=database,
        webhook_sender=webhook_sender,
    )


async def build_services(config: FieldSyncConfig) -> Services:
    """Open the database pool and build the production service graph."""
    database = Database.from_env(
        config.database.name,
        min_pool_size=config.database.min_pool_size,
        max_pool_size=config.database.max_pool_size,
    )
    pool = await database.connect()
    store = PostgresSyncStore(pool, default_timezone=config.sync.default_timezone)
    return assemble_services(config, store, build_providers(config), database=database)

"""Persistence contract for the sync engine.

The engine treats storage as a keyed read/write service. ``SyncStore`` lists
every read and write it performs; ``PostgresSyncStore`` is the production
implementation.
"""

from __future__ import annotations

import abc
from collections.abc import Sequence
from datetime import date, datetime

from fieldsync.models import (
    CalendarIntegration,
    ExternalEventMapping,
    Provider,
    ReminderRecord,
    ReminderSettings,
    ReminderStatus,
    ReservationSnapshot,
    ReservationStatus,
    SyncLogEntry,
    UserContact,
    WebhookSubscription,
)
from fieldsync.providers.base import TokenGrant


class SyncStore(abc.ABC):
    # -- Integrations ------------------------------------------------------

    @abc.abstractmethod
    async def get_integration(self, integration_id: str) -> CalendarIntegration | None: ...

    @abc.abstractmethod
    async def list_enabled_integrations(self, user_id: str) -> list[CalendarIntegration]: ...

    @abc.abstractmethod
    async def list_sync_users(self) -> list[tuple[str, datetime | None]]:
        """Users with enabled integrations as ``(user_id, last_sync_at)``.

        Ordered least-recently synced first, never-synced users leading.
        """

    @abc.abstractmethod
    async def save_tokens(self, integration_id: str, grant: TokenGrant) -> None: ...

    @abc.abstractmethod
    async def mark_integration_synced(self, integration_id: str, synced_at: datetime) -> None: ...

    @abc.abstractmethod
    async def disable_stale_integrations(self, expired_before: datetime) -> int:
        """Set ``sync_enabled = false`` where the token expired before *expired_before*."""

    # -- Event mappings ------------------------------------------------------

    @abc.abstractmethod
    async def get_mapping(
        self, reservation_id: str, provider: Provider
    ) -> ExternalEventMapping | None: ...

    @abc.abstractmethod
    async def save_mapping(self, mapping: ExternalEventMapping) -> None:
        """Insert a mapping; an existing (reservation, provider) row is kept."""

    @abc.abstractmethod
    async def delete_mapping(self, reservation_id: str, provider: Provider) -> None: ...

    @abc.abstractmethod
    async def list_orphaned_mappings(
        self, user_id: str | None = None
    ) -> list[ExternalEventMapping]:
        """Mappings whose reservation is cancelled or no longer exists."""

    @abc.abstractmethod
    async def count_mappings(self, user_id: str) -> int: ...

    # -- Reservations and users (read-only) -----------------------------------

    @abc.abstractmethod
    async def get_reservation(self, reservation_id: str) -> ReservationSnapshot | None: ...

    @abc.abstractmethod
    async def list_user_reservations(
        self,
        user_id: str,
        *,
        statuses: Sequence[ReservationStatus],
        start_date: date,
        end_date: date | None = None,
    ) -> list[ReservationSnapshot]: ...

    @abc.abstractmethod
    async def get_user_contact(self, user_id: str) -> UserContact | None: ...

    @abc.abstractmethod
    async def get_reminder_settings(self, user_id: str) -> ReminderSettings | None: ...

    @abc.abstractmethod
    async def save_reminder_settings(self, user_id: str, settings: ReminderSettings) -> None:
        """Insert or replace the user's reminder preferences."""

    # -- Webhook subscriptions ----------------------------------------------

    @abc.abstractmethod
    async def save_webhook(self, subscription: WebhookSubscription) -> None:
        """Insert or replace a subscription row keyed by ``subscription.id``."""

    @abc.abstractmethod
    async def get_webhook(self, webhook_row_id: str) -> WebhookSubscription | None: ...

    @abc.abstractmethod
    async def find_webhook_by_subscription(
        self, subscription_id: str
    ) -> WebhookSubscription | None: ...

    @abc.abstractmethod
    async def delete_webhook(self, webhook_row_id: str) -> None: ...

    @abc.abstractmethod
    async def list_webhooks(self, *, active_only: bool = False) -> list[WebhookSubscription]: ...

    @abc.abstractmethod
    async def list_webhooks_expiring_before(
        self, cutoff: datetime
    ) -> list[WebhookSubscription]:
        """Active subscriptions whose expiration is earlier than *cutoff*."""

    # -- Reminders -------------------------------------------------------------

    @abc.abstractmethod
    async def insert_reminders(self, reminders: Sequence[ReminderRecord]) -> list[ReminderRecord]:
        """Insert reminders, skipping any (reservation, user, channel, minutes) already pending.

        Returns the records actually inserted.
        """

    @abc.abstractmethod
    async def list_pending_reminders(self, reservation_id: str) -> list[ReminderRecord]: ...

    @abc.abstractmethod
    async def list_due_reminders(
        self, due_before: datetime, limit: int
    ) -> list[ReminderRecord]: ...

    @abc.abstractmethod
    async def reschedule_reminder(self, reminder_id: str, fire_at: datetime) -> bool:
        """Move a pending reminder; returns False if it is no longer pending."""

    @abc.abstractmethod
    async def transition_reminder(
        self,
        reminder_id: str,
        status: ReminderStatus,
        *,
        sent_at: datetime | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Move a pending reminder to a terminal status; no-op unless pending."""

    @abc.abstractmethod
    async def cancel_pending_reminders(self, reservation_id: str) -> int: ...

    @abc.abstractmethod
    async def reminder_status_counts(self, user_id: str | None = None) -> dict[str, int]: ...

    # -- Audit log --------------------------------------------------------------

    @abc.abstractmethod
    async def append_sync_log(self, entry: SyncLogEntry) -> None: ...

    @abc.abstractmethod
    async def count_sync_failures(self, user_id: str, since: datetime) -> int: ...

"""asyncpg-backed ``SyncStore``.

Engine-owned tables (``calendar_*`` and ``external_event_mappings``) use text
identifiers. The reservation system's own tables (``reservations``,
``fields``, ``teams``, ``user_profiles``) are read-only here and joined on
``id::text``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from datetime import date, datetime
from typing import Any

import asyncpg

from fieldsync.models import (
    CalendarIntegration,
    ExternalEventMapping,
    FieldRef,
    Provider,
    ReminderRecord,
    ReminderSettings,
    ReminderStatus,
    ReservationSnapshot,
    ReservationStatus,
    SyncLogEntry,
    TeamRef,
    UserContact,
    WebhookSubscription,
)
from fieldsync.providers.base import TokenGrant
from fieldsync.storage.base import SyncStore

logger = logging.getLogger(__name__)

_RESERVATION_SELECT = """
    SELECT r.id::text AS id, r.user_id::text AS user_id, r.date, r.start_time, r.end_time,
           r.status, r.purpose, r.attendees, r.notes,
           f.id::text AS field_id, f.name AS field_name, f.address AS field_address,
           f.type AS field_type,
           t.id::text AS team_id, t.name AS team_name
    FROM reservations r
    JOIN fields f ON f.id = r.field_id
    LEFT JOIN teams t ON t.id = r.team_id
"""

_REMINDER_COLUMNS = """
    id, reservation_id, user_id, reminder_type, trigger_minutes, scheduled_for,
    status, sent_at, error_message, metadata
"""


def _json_load(value: Any) -> dict[str, Any]:
    """Decode a JSONB column, which asyncpg returns as text by default."""
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    try:
        decoded = json.loads(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring undecodable JSON column value")
        return {}
    return decoded if isinstance(decoded, dict) else {}


def _integration_from_row(row: asyncpg.Record) -> CalendarIntegration:
    return CalendarIntegration(
        id=row["id"],
        user_id=row["user_id"],
        provider=Provider(row["provider"]),
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        token_expires_at=row["token_expires_at"],
        calendar_id=row["calendar_id"],
        sync_enabled=row["sync_enabled"],
        last_sync_at=row["last_sync_at"],
        sync_settings=_json_load(row["sync_settings"]),
    )


def _mapping_from_row(row: asyncpg.Record) -> ExternalEventMapping:
    return ExternalEventMapping(
        reservation_id=row["reservation_id"],
        provider=Provider(row["provider"]),
        integration_id=row["integration_id"],
        external_event_id=row["external_event_id"],
        created_at=row["created_at"],
    )


def _webhook_from_row(row: asyncpg.Record) -> WebhookSubscription:
    return WebhookSubscription(
        id=row["id"],
        integration_id=row["integration_id"],
        provider=Provider(row["provider"]),
        webhook_id=row["webhook_id"],
        resource_uri=row["resource_uri"],
        callback_url=row["callback_url"],
        resource_id=row["resource_id"],
        client_state=row["client_state"],
        expiration_time=row["expiration_time"],
        is_active=row["is_active"],
        created_at=row["created_at"],
    )


def _reminder_from_row(row: asyncpg.Record) -> ReminderRecord:
    return ReminderRecord(
        id=row["id"],
        reservation_id=row["reservation_id"],
        user_id=row["user_id"],
        channel=row["reminder_type"],
        minutes_before=row["trigger_minutes"],
        fire_at=row["scheduled_for"],
        status=ReminderStatus(row["status"]),
        sent_at=row["sent_at"],
        error_message=row["error_message"],
        metadata=_json_load(row["metadata"]),
    )


class PostgresSyncStore(SyncStore):
    """Raw-SQL store over an asyncpg pool.

    Reservations carry no timezone column; ``default_timezone`` supplies the
    IANA zone their wall-clock times are interpreted in.
    """

    def __init__(self, pool: asyncpg.Pool, *, default_timezone: str = "UTC") -> None:
        self._pool = pool
        self._default_timezone = default_timezone

    def _reservation_from_row(self, row: asyncpg.Record) -> ReservationSnapshot:
        team = None
        if row["team_id"] is not None:
            team = TeamRef(id=row["team_id"], name=row["team_name"] or "")
        try:
            status = ReservationStatus(row["status"])
        except ValueError:
            logger.warning(
                "Unrecognised status %r on reservation %s; treating as confirmed",
                row["status"],
                row["id"],
            )
            status = ReservationStatus.CONFIRMED
        return ReservationSnapshot(
            id=row["id"],
            user_id=row["user_id"],
            field=FieldRef(
                id=row["field_id"],
                name=row["field_name"],
                address=row["field_address"],
                type=row["field_type"],
            ),
            reservation_date=row["date"],
            start_time=row["start_time"],
            end_time=row["end_time"],
            timezone=self._default_timezone,
            status=status,
            purpose=row["purpose"] or "",
            attendees=row["attendees"] or 0,
            team=team,
            notes=row["notes"],
        )

    # -- Integrations ------------------------------------------------------

    async def get_integration(self, integration_id: str) -> CalendarIntegration | None:
        row = await self._pool.fetchrow(
            "SELECT * FROM calendar_integrations WHERE id = $1", integration_id
        )
        return _integration_from_row(row) if row else None

    async def list_enabled_integrations(self, user_id: str) -> list[CalendarIntegration]:
        rows = await self._pool.fetch(
            """
            SELECT * FROM calendar_integrations
            WHERE user_id = $1 AND sync_enabled = true
            ORDER BY provider
            """,
            user_id,
        )
        return [_integration_from_row(row) for row in rows]

    async def list_sync_users(self) -> list[tuple[str, datetime | None]]:
        rows = await self._pool.fetch(
            """
            SELECT user_id,
                   CASE WHEN bool_or(last_sync_at IS NULL) THEN NULL
                        ELSE min(last_sync_at) END AS last_sync_at
            FROM calendar_integrations
            WHERE sync_enabled = true
            GROUP BY user_id
            ORDER BY 2 ASC NULLS FIRST, user_id
            """
        )
        return [(row["user_id"], row["last_sync_at"]) for row in rows]

    async def save_tokens(self, integration_id: str, grant: TokenGrant) -> None:
        await self._pool.execute(
            """
            UPDATE calendar_integrations
            SET access_token = $2,
                refresh_token = COALESCE($3, refresh_token),
                token_expires_at = $4,
                updated_at = now()
            WHERE id = $1
            """,
            integration_id,
            grant.access_token,
            grant.refresh_token,
            grant.expires_at,
        )

    async def mark_integration_synced(self, integration_id: str, synced_at: datetime) -> None:
        await self._pool.execute(
            "UPDATE calendar_integrations SET last_sync_at = $2, updated_at = now() WHERE id = $1",
            integration_id,
            synced_at,
        )

    async def disable_stale_integrations(self, expired_before: datetime) -> int:
        result = await self._pool.execute(
            """
            UPDATE calendar_integrations
            SET sync_enabled = false, updated_at = now()
            WHERE sync_enabled = true AND token_expires_at < $1
            """,
            expired_before,
        )
        return _affected(result)

    # -- Event mappings ------------------------------------------------------

    async def get_mapping(
        self, reservation_id: str, provider: Provider
    ) -> ExternalEventMapping | None:
        row = await self._pool.fetchrow(
            """
            SELECT * FROM external_event_mappings
            WHERE reservation_id = $1 AND provider = $2
            """,
            reservation_id,
            provider.value,
        )
        return _mapping_from_row(row) if row else None

    async def save_mapping(self, mapping: ExternalEventMapping) -> None:
        await self._pool.execute(
            """
            INSERT INTO external_event_mappings
                (reservation_id, provider, integration_id, external_event_id)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (reservation_id, provider) DO NOTHING
            """,
            mapping.reservation_id,
            mapping.provider.value,
            mapping.integration_id,
            mapping.external_event_id,
        )

    async def delete_mapping(self, reservation_id: str, provider: Provider) -> None:
        await self._pool.execute(
            "DELETE FROM external_event_mappings WHERE reservation_id = $1 AND provider = $2",
            reservation_id,
            provider.value,
        )

    async def list_orphaned_mappings(
        self, user_id: str | None = None
    ) -> list[ExternalEventMapping]:
        rows = await self._pool.fetch(
            """
            SELECT m.*
            FROM external_event_mappings m
            JOIN calendar_integrations i ON i.id = m.integration_id
            LEFT JOIN reservations r ON r.id::text = m.reservation_id
            WHERE (r.id IS NULL OR r.status = 'cancelled')
              AND ($1::text IS NULL OR i.user_id = $1)
            ORDER BY m.created_at
            """,
            user_id,
        )
        return [_mapping_from_row(row) for row in rows]

    async def count_mappings(self, user_id: str) -> int:
        return await self._pool.fetchval(
            """
            SELECT count(*)
            FROM external_event_mappings m
            JOIN calendar_integrations i ON i.id = m.integration_id
            WHERE i.user_id = $1
            """,
            user_id,
        )

    # -- Reservations and users ------------------------------------------------

    async def get_reservation(self, reservation_id: str) -> ReservationSnapshot | None:
        row = await self._pool.fetchrow(
            _RESERVATION_SELECT + " WHERE r.id::text = $1", reservation_id
        )
        return self._reservation_from_row(row) if row else None

    async def list_user_reservations(
        self,
        user_id: str,
        *,
        statuses: Sequence[ReservationStatus],
        start_date: date,
        end_date: date | None = None,
    ) -> list[ReservationSnapshot]:
        rows = await self._pool.fetch(
            _RESERVATION_SELECT
            + """
            WHERE r.user_id::text = $1
              AND r.status = ANY($2::text[])
              AND r.date >= $3
              AND ($4::date IS NULL OR r.date <= $4)
            ORDER BY r.date, r.start_time
            """,
            user_id,
            [status.value for status in statuses],
            start_date,
            end_date,
        )
        return [self._reservation_from_row(row) for row in rows]

    async def get_user_contact(self, user_id: str) -> UserContact | None:
        row = await self._pool.fetchrow(
            "SELECT id::text AS id, full_name, email, phone FROM user_profiles WHERE id::text = $1",
            user_id,
        )
        if row is None:
            return None
        return UserContact(
            user_id=row["id"], name=row["full_name"], email=row["email"], phone=row["phone"]
        )

    async def get_reminder_settings(self, user_id: str) -> ReminderSettings | None:
        value = await self._pool.fetchval(
            "SELECT settings FROM calendar_reminder_settings WHERE user_id = $1", user_id
        )
        if value is None:
            return None
        return ReminderSettings.model_validate(_json_load(value))

    async def save_reminder_settings(self, user_id: str, settings: ReminderSettings) -> None:
        await self._pool.execute(
            """
            INSERT INTO calendar_reminder_settings (user_id, settings)
            VALUES ($1, $2::jsonb)
            ON CONFLICT (user_id) DO UPDATE SET
                settings = EXCLUDED.settings,
                updated_at = now()
            """,
            user_id,
            settings.model_dump_json(),
        )

    # -- Webhook subscriptions ----------------------------------------------

    async def save_webhook(self, subscription: WebhookSubscription) -> None:
        await self._pool.execute(
            """
            INSERT INTO calendar_webhooks
                (id, integration_id, provider, webhook_id, resource_uri, callback_url,
                 resource_id, client_state, expiration_time, is_active)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            ON CONFLICT (id) DO UPDATE SET
                webhook_id = EXCLUDED.webhook_id,
                resource_uri = EXCLUDED.resource_uri,
                callback_url = EXCLUDED.callback_url,
                resource_id = EXCLUDED.resource_id,
                client_state = EXCLUDED.client_state,
                expiration_time = EXCLUDED.expiration_time,
                is_active = EXCLUDED.is_active,
                updated_at = now()
            """,
            subscription.id,
            subscription.integration_id,
            subscription.provider.value,
            subscription.webhook_id,
            subscription.resource_uri,
            subscription.callback_url,
            subscription.resource_id,
            subscription.client_state,
            subscription.expiration_time,
            subscription.is_active,
        )

    async def get_webhook(self, webhook_row_id: str) -> WebhookSubscription | None:
        row = await self._pool.fetchrow(
            "SELECT * FROM calendar_webhooks WHERE id = $1", webhook_row_id
        )
        return _webhook_from_row(row) if row else None

    async def find_webhook_by_subscription(
        self, subscription_id: str
    ) -> WebhookSubscription | None:
        row = await self._pool.fetchrow(
            "SELECT * FROM calendar_webhooks WHERE webhook_id = $1", subscription_id
        )
        return _webhook_from_row(row) if row else None

    async def delete_webhook(self, webhook_row_id: str) -> None:
        await self._pool.execute("DELETE FROM calendar_webhooks WHERE id = $1", webhook_row_id)

    async def list_webhooks(self, *, active_only: bool = False) -> list[WebhookSubscription]:
        rows = await self._pool.fetch(
            """
            SELECT * FROM calendar_webhooks
            WHERE ($1::boolean = false OR is_active = true)
            ORDER BY expiration_time
            """,
            active_only,
        )
        return [_webhook_from_row(row) for row in rows]

    async def list_webhooks_expiring_before(
        self, cutoff: datetime
    ) -> list[WebhookSubscription]:
        rows = await self._pool.fetch(
            """
            SELECT * FROM calendar_webhooks
            WHERE is_active = true AND expiration_time < $1
            ORDER BY expiration_time
            """,
            cutoff,
        )
        return [_webhook_from_row(row) for row in rows]

    # -- Reminders -------------------------------------------------------------

    async def insert_reminders(self, reminders: Sequence[ReminderRecord]) -> list[ReminderRecord]:
        inserted: list[ReminderRecord] = []
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                for reminder in reminders:
                    row_id = await conn.fetchval(
                        """
                        INSERT INTO calendar_reminders
                            (id, reservation_id, user_id, reminder_type, trigger_minutes,
                             scheduled_for, status, metadata)
                        VALUES ($1, $2, $3, $4, $5, $6, 'pending', $7::jsonb)
                        ON CONFLICT (reservation_id, user_id, reminder_type, trigger_minutes)
                            WHERE status = 'pending'
                            DO NOTHING
                        RETURNING id
                        """,
                        reminder.id,
                        reminder.reservation_id,
                        reminder.user_id,
                        reminder.channel.value,
                        reminder.minutes_before,
                        reminder.fire_at,
                        json.dumps(reminder.metadata),
                    )
                    if row_id is not None:
                        inserted.append(reminder)
        return inserted

    async def list_pending_reminders(self, reservation_id: str) -> list[ReminderRecord]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_REMINDER_COLUMNS} FROM calendar_reminders
            WHERE reservation_id = $1 AND status = 'pending'
            ORDER BY scheduled_for
            """,
            reservation_id,
        )
        return [_reminder_from_row(row) for row in rows]

    async def list_due_reminders(
        self, due_before: datetime, limit: int
    ) -> list[ReminderRecord]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_REMINDER_COLUMNS} FROM calendar_reminders
            WHERE status = 'pending' AND scheduled_for <= $1
            ORDER BY scheduled_for
            LIMIT $2
            """,
            due_before,
            limit,
        )
        return [_reminder_from_row(row) for row in rows]

    async def reschedule_reminder(self, reminder_id: str, fire_at: datetime) -> bool:
        result = await self._pool.execute(
            """
            UPDATE calendar_reminders SET scheduled_for = $2, updated_at = now()
            WHERE id = $1 AND status = 'pending'
            """,
            reminder_id,
            fire_at,
        )
        return _affected(result) > 0

    async def transition_reminder(
        self,
        reminder_id: str,
        status: ReminderStatus,
        *,
        sent_at: datetime | None = None,
        error_message: str | None = None,
    ) -> bool:
        result = await self._pool.execute(
            """
            UPDATE calendar_reminders
            SET status = $2, sent_at = $3, error_message = $4, updated_at = now()
            WHERE id = $1 AND status = 'pending'
            """,
            reminder_id,
            status.value,
            sent_at,
            error_message,
        )
        return _affected(result) > 0

    async def cancel_pending_reminders(self, reservation_id: str) -> int:
        result = await self._pool.execute(
            """
            UPDATE calendar_reminders SET status = 'cancelled', updated_at = now()
            WHERE reservation_id = $1 AND status = 'pending'
            """,
            reservation_id,
        )
        return _affected(result)

    async def reminder_status_counts(self, user_id: str | None = None) -> dict[str, int]:
        rows = await self._pool.fetch(
            """
            SELECT status, count(*) AS n FROM calendar_reminders
            WHERE ($1::text IS NULL OR user_id = $1)
            GROUP BY status
            """,
            user_id,
        )
        return {row["status"]: row["n"] for row in rows}

    # -- Audit log --------------------------------------------------------------

    async def append_sync_log(self, entry: SyncLogEntry) -> None:
        await self._pool.execute(
            """
            INSERT INTO calendar_sync_log
                (integration_id, reservation_id, user_id, provider, operation, direction,
                 status, error_kind, error_message, details, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb, $11)
            """,
            entry.integration_id,
            entry.reservation_id,
            entry.user_id,
            entry.provider.value if entry.provider else None,
            entry.operation.value,
            entry.direction.value,
            entry.status.value,
            entry.error_kind.value if entry.error_kind else None,
            entry.error_message,
            json.dumps(entry.details, default=str),
            entry.created_at,
        )

    async def count_sync_failures(self, user_id: str, since: datetime) -> int:
        return await self._pool.fetchval(
            """
            SELECT count(*) FROM calendar_sync_log
            WHERE user_id = $1 AND status = 'failed' AND created_at >= $2
            """,
            user_id,
            since,
        )


def _affected(status: str) -> int:
    """Row count from an asyncpg command tag such as ``"UPDATE 3"``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0

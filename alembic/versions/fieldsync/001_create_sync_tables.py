"""create_sync_tables

Revision ID: fieldsync_001
Revises:
Create Date: 2026-01-01 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "fieldsync_001"
down_revision = None
branch_labels = ("fieldsync",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_integrations (
            id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
            user_id TEXT NOT NULL,
            provider TEXT NOT NULL CHECK (provider IN ('google', 'outlook')),
            access_token TEXT NOT NULL,
            refresh_token TEXT,
            token_expires_at TIMESTAMPTZ,
            calendar_id TEXT,
            sync_enabled BOOLEAN NOT NULL DEFAULT true,
            last_sync_at TIMESTAMPTZ,
            sync_settings JSONB NOT NULL DEFAULT '{}',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            UNIQUE (user_id, provider)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_calendar_integrations_sync
        ON calendar_integrations (user_id) WHERE sync_enabled
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS external_event_mappings (
            reservation_id TEXT NOT NULL,
            provider TEXT NOT NULL,
            integration_id TEXT NOT NULL
                REFERENCES calendar_integrations (id) ON DELETE CASCADE,
            external_event_id TEXT NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            PRIMARY KEY (reservation_id, provider)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_external_event_mappings_integration
        ON external_event_mappings (integration_id)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_webhooks (
            id TEXT PRIMARY KEY,
            integration_id TEXT NOT NULL
                REFERENCES calendar_integrations (id) ON DELETE CASCADE,
            provider TEXT NOT NULL,
            webhook_id TEXT NOT NULL UNIQUE,
            resource_uri TEXT NOT NULL,
            callback_url TEXT NOT NULL,
            resource_id TEXT,
            client_state TEXT,
            expiration_time TIMESTAMPTZ NOT NULL,
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_calendar_webhooks_expiration
        ON calendar_webhooks (expiration_time) WHERE is_active
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_reminders (
            id TEXT PRIMARY KEY,
            reservation_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            reminder_type TEXT NOT NULL
                CHECK (reminder_type IN ('email', 'sms', 'push', 'webhook')),
            trigger_minutes INTEGER NOT NULL CHECK (trigger_minutes > 0),
            scheduled_for TIMESTAMPTZ NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'sent', 'failed', 'cancelled')),
            sent_at TIMESTAMPTZ,
            error_message TEXT,
            metadata JSONB NOT NULL DEFAULT '{}',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    # At most one pending reminder per (reservation, user, channel, offset).
    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_calendar_reminders_pending
        ON calendar_reminders (reservation_id, user_id, reminder_type, trigger_minutes)
        WHERE status = 'pending'
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_calendar_reminders_due
        ON calendar_reminders (scheduled_for) WHERE status = 'pending'
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_reminder_settings (
            user_id TEXT PRIMARY KEY,
            settings JSONB NOT NULL DEFAULT '{}',
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_sync_log (
            id BIGSERIAL PRIMARY KEY,
            integration_id TEXT,
            reservation_id TEXT,
            user_id TEXT,
            provider TEXT,
            operation TEXT NOT NULL,
            direction TEXT NOT NULL,
            status TEXT NOT NULL,
            error_kind TEXT,
            error_message TEXT,
            details JSONB NOT NULL DEFAULT '{}',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_calendar_sync_log_user_created
        ON calendar_sync_log (user_id, created_at DESC)
    """)

    op.execute("""
        CREATE OR REPLACE FUNCTION cleanup_expired_calendar_integrations()
        RETURNS integer AS $$
        DECLARE
            affected integer;
        BEGIN
            UPDATE calendar_integrations
            SET sync_enabled = false, updated_at = now()
            WHERE sync_enabled = true
              AND token_expires_at < now() - interval '7 days';
            GET DIAGNOSTICS affected = ROW_COUNT;
            RETURN affected;
        END;
        $$ LANGUAGE plpgsql
    """)

    op.execute("""
        CREATE OR REPLACE FUNCTION notify_reservation_change()
        RETURNS trigger AS $$
        BEGIN
            PERFORM pg_notify(
                'reservation_changes',
                json_build_object(
                    'operation', TG_OP,
                    'table', TG_TABLE_NAME,
                    'record', CASE WHEN TG_OP = 'DELETE' THEN NULL ELSE row_to_json(NEW) END,
                    'old_record', CASE WHEN TG_OP = 'INSERT' THEN NULL ELSE row_to_json(OLD) END
                )::text
            );
            RETURN COALESCE(NEW, OLD);
        END;
        $$ LANGUAGE plpgsql
    """)

    # The reservations table belongs to the reservation system and may not
    # exist yet in a fresh database.
    op.execute("""
        DO $$
        BEGIN
            IF to_regclass('reservations') IS NOT NULL THEN
                DROP TRIGGER IF EXISTS reservation_change_notify ON reservations;
                CREATE TRIGGER reservation_change_notify
                    AFTER INSERT OR UPDATE OR DELETE ON reservations
                    FOR EACH ROW EXECUTE FUNCTION notify_reservation_change();
            END IF;
        END;
        $$
    """)


def downgrade() -> None:
    op.execute("""
        DO $$
        BEGIN
            IF to_regclass('reservations') IS NOT NULL THEN
                DROP TRIGGER IF EXISTS reservation_change_notify ON reservations;
            END IF;
        END;
        $$
    """)
    op.execute("DROP FUNCTION IF EXISTS notify_reservation_change()")
    op.execute("DROP FUNCTION IF EXISTS cleanup_expired_calendar_integrations()")
    op.execute("DROP TABLE IF EXISTS calendar_sync_log")
    op.execute("DROP TABLE IF EXISTS calendar_reminder_settings")
    op.execute("DROP TABLE IF EXISTS calendar_reminders")
    op.execute("DROP TABLE IF EXISTS calendar_webhooks")
    op.execute("DROP TABLE IF EXISTS external_event_mappings")
    op.execute("DROP TABLE IF EXISTS calendar_integrations")

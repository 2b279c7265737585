"""create_calendar_tables

Revision ID: core_001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_events (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            tenant_id TEXT NOT NULL,
            title TEXT NOT NULL,
            description TEXT,
            start_time TIMESTAMPTZ NOT NULL,
            end_time TIMESTAMPTZ,
            all_day BOOLEAN NOT NULL DEFAULT false,
            location TEXT,
            category TEXT NOT NULL DEFAULT 'other',
            color TEXT DEFAULT 'blue',
            vendor_id TEXT,
            task_id TEXT,
            provider_event_id TEXT,
            etag TEXT,
            sync_status TEXT NOT NULL DEFAULT 'local',
            version INTEGER NOT NULL DEFAULT 1,
            last_synced_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT calendar_events_title_check CHECK (length(btrim(title)) > 0),
            CONSTRAINT calendar_events_category_check
                CHECK (category IN (
                    'vendor', 'deadline', 'appointment', 'milestone', 'personal', 'other'
                )),
            CONSTRAINT calendar_events_sync_status_check
                CHECK (sync_status IN ('local', 'synced', 'pending', 'conflict')),
            CONSTRAINT calendar_events_provider_link_check
                CHECK (sync_status IN ('local', 'pending') OR provider_event_id IS NOT NULL)
        )
    """)
    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_calendar_events_tenant_provider_event
            ON calendar_events (tenant_id, provider_event_id)
            WHERE provider_event_id IS NOT NULL
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_calendar_events_tenant_start
            ON calendar_events (tenant_id, start_time DESC)
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_connections (
            tenant_id TEXT PRIMARY KEY,
            calendar_id TEXT NOT NULL,
            calendar_name TEXT NOT NULL,
            sync_enabled BOOLEAN NOT NULL DEFAULT true,
            sync_token TEXT,
            last_sync_at TIMESTAMPTZ,
            google_email TEXT,
            refresh_token TEXT NOT NULL,
            access_token TEXT,
            token_expires_at TIMESTAMPTZ,
            connected_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            connected_by TEXT
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_sync_log (
            id BIGSERIAL PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            success BOOLEAN NOT NULL,
            pushed INTEGER NOT NULL DEFAULT 0,
            pulled INTEGER NOT NULL DEFAULT 0,
            updated INTEGER NOT NULL DEFAULT 0,
            deleted INTEGER NOT NULL DEFAULT 0,
            failed INTEGER NOT NULL DEFAULT 0,
            conflicts INTEGER NOT NULL DEFAULT 0,
            full_resync BOOLEAN NOT NULL DEFAULT false,
            error TEXT
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS idx_calendar_sync_log_tenant_created
            ON calendar_sync_log (tenant_id, created_at DESC)
    """)

    # Rows may be pruned by retention, never rewritten.
    op.execute("""
        CREATE OR REPLACE FUNCTION prevent_calendar_sync_log_update()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            RAISE EXCEPTION 'calendar_sync_log is append-only: % is not allowed', TG_OP;
        END;
        $$;
    """)
    op.execute("""
        DROP TRIGGER IF EXISTS trg_calendar_sync_log_immutable ON calendar_sync_log
    """)
    op.execute("""
        CREATE TRIGGER trg_calendar_sync_log_immutable
        BEFORE UPDATE ON calendar_sync_log
        FOR EACH ROW
        EXECUTE FUNCTION prevent_calendar_sync_log_update()
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS calendar_sync_leases (
            tenant_id TEXT PRIMARY KEY,
            holder TEXT NOT NULL,
            acquired_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS calendar_sync_leases")
    op.execute("""
        DROP TRIGGER IF EXISTS trg_calendar_sync_log_immutable ON calendar_sync_log
    """)
    op.execute("DROP FUNCTION IF EXISTS prevent_calendar_sync_log_update")
    op.execute("DROP TABLE IF EXISTS calendar_sync_log")
    op.execute("DROP TABLE IF EXISTS calendar_connections")
    op.execute("DROP TABLE IF EXISTS calendar_events")

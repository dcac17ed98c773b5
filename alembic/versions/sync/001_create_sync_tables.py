"""create_sync_tables

Revision ID: sync_001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "sync_001"
down_revision = None
branch_labels = ("sync",)
depends_on = None


def upgrade() -> None:
    op.execute("""
        CREATE TABLE IF NOT EXISTS sync_config (
            id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
            user_id TEXT NOT NULL,
            provider_id TEXT NOT NULL,
            provider_type TEXT NOT NULL,
            direction TEXT NOT NULL
                CHECK (direction IN ('pull', 'push', 'bidirectional')),
            enabled BOOLEAN NOT NULL DEFAULT true,
            credentials JSONB NOT NULL DEFAULT '{}'::jsonb,
            settings JSONB NOT NULL DEFAULT '{}'::jsonb,
            last_sync_at TIMESTAMPTZ,
            next_sync_at TIMESTAMPTZ,
            sync_token TEXT,
            webhook_id TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute("CREATE INDEX IF NOT EXISTS idx_sync_config_user ON sync_config (user_id)")
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_sync_config_due ON sync_config (next_sync_at) "
        "WHERE enabled"
    )

    op.execute("""
        CREATE TABLE IF NOT EXISTS sync_operation (
            id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
            sync_config_id TEXT NOT NULL REFERENCES sync_config (id) ON DELETE CASCADE,
            operation TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'completed', 'failed')),
            entity_type TEXT NOT NULL DEFAULT 'event',
            entity_id TEXT,
            external_id TEXT,
            error JSONB,
            started_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            completed_at TIMESTAMPTZ,
            retry_count INTEGER NOT NULL DEFAULT 0
        )
    """)
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_sync_operation_config_started "
        "ON sync_operation (sync_config_id, started_at DESC)"
    )

    op.execute("""
        CREATE TABLE IF NOT EXISTS sync_mapping (
            id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
            sync_config_id TEXT NOT NULL REFERENCES sync_config (id) ON DELETE CASCADE,
            event_id TEXT,
            announcement_id TEXT,
            location_id TEXT,
            contact_id TEXT,
            tag_id TEXT,
            external_id TEXT NOT NULL,
            provider_id TEXT NOT NULL,
            last_synced_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            etag TEXT,
            metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
            CONSTRAINT sync_mapping_one_entity CHECK (
                num_nonnulls(event_id, announcement_id, location_id, contact_id, tag_id) = 1
            )
        )
    """)
    op.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS uq_sync_mapping_config_external "
        "ON sync_mapping (sync_config_id, external_id)"
    )
    op.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS uq_sync_mapping_config_event "
        "ON sync_mapping (sync_config_id, event_id) WHERE event_id IS NOT NULL"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_sync_mapping_event ON sync_mapping (event_id) "
        "WHERE event_id IS NOT NULL"
    )

    op.execute("""
        CREATE TABLE IF NOT EXISTS webhook_subscription (
            id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text,
            sync_config_id TEXT NOT NULL REFERENCES sync_config (id) ON DELETE CASCADE,
            provider_id TEXT NOT NULL,
            resource_id TEXT NOT NULL,
            channel_id TEXT,
            expires_at TIMESTAMPTZ NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_webhook_subscription_expires "
        "ON webhook_subscription (expires_at)"
    )

    op.execute("""
        CREATE TABLE IF NOT EXISTS email_delivery_event (
            id BIGSERIAL PRIMARY KEY,
            sync_config_id TEXT NOT NULL REFERENCES sync_config (id) ON DELETE CASCADE,
            campaign_id TEXT NOT NULL,
            event TEXT NOT NULL,
            email TEXT,
            occurred_at TIMESTAMPTZ,
            payload JSONB NOT NULL DEFAULT '{}'::jsonb,
            received_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS uq_email_delivery_event "
        "ON email_delivery_event (sync_config_id, campaign_id, event, "
        "COALESCE(email, ''), COALESCE(occurred_at, 'epoch'::timestamptz))"
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS email_delivery_event")
    op.execute("DROP TABLE IF EXISTS webhook_subscription")
    op.execute("DROP TABLE IF EXISTS sync_mapping")
    op.execute("DROP TABLE IF EXISTS sync_operation")
    op.execute("DROP TABLE IF EXISTS sync_config")

"""asyncpg-backed ``SyncStore`` over the sync bookkeeping tables.

Mapping writes are upserts keyed on (config, external id); a second mapping
of the same event under a different external id is replaced in the same
transaction, so overlapping passes cannot leave duplicate links.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from typing import Any

from eventsync.db import Database
from eventsync.sync.types import (
    DeliveryChange,
    OperationStatus,
    ProviderType,
    SyncConfiguration,
    SyncMapping,
    SyncOperation,
    WebhookSubscription,
)

logger = logging.getLogger(__name__)

_CONFIG_COLUMNS = (
    "id, user_id, provider_id, provider_type, direction, enabled, credentials, settings, "
    "last_sync_at, next_sync_at, sync_token, webhook_id, created_at, updated_at"
)
_MAPPING_COLUMNS = (
    "id, sync_config_id, external_id, provider_id, event_id, announcement_id, location_id, "
    "contact_id, tag_id, last_synced_at, etag, metadata"
)
_SUBSCRIPTION_COLUMNS = (
    "id, sync_config_id, provider_id, resource_id, channel_id, expires_at, created_at"
)
_INSERT_SUBSCRIPTION = """
    INSERT INTO webhook_subscription (
        id, sync_config_id, provider_id, resource_id, channel_id, expires_at, created_at
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7)
"""


def _subscription_args(subscription: WebhookSubscription) -> tuple:
    return (
        subscription.id,
        subscription.sync_config_id,
        subscription.provider_id,
        subscription.resource_id,
        subscription.channel_id,
        subscription.expires_at,
        subscription.created_at,
    )


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB column returned as text by asyncpg."""
    if not isinstance(val, str):
        return val
    return json.loads(val)


def _encode_jsonb(val: Any) -> str | None:
    if val is None:
        return None
    return json.dumps(val, default=str)


def _config_from_row(row: Any) -> SyncConfiguration:
    data = dict(row)
    data["credentials"] = decode_jsonb(data.get("credentials")) or {}
    data["settings"] = decode_jsonb(data.get("settings")) or {}
    return SyncConfiguration.model_validate(data)


def _mapping_from_row(row: Any) -> SyncMapping:
    data = dict(row)
    data["metadata"] = decode_jsonb(data.get("metadata")) or {}
    return SyncMapping.model_validate(data)


def _subscription_from_row(row: Any) -> WebhookSubscription:
    return WebhookSubscription.model_validate(dict(row))


class PostgresSyncStore:
    def __init__(self, db: Database) -> None:
        self._db = db

    # -- configurations ------------------------------------------------------

    async def create_config(self, config: SyncConfiguration) -> SyncConfiguration:
        row = await self._db.fetchrow(
            f"""
            INSERT INTO sync_config (
                id, user_id, provider_id, provider_type, direction, enabled,
                credentials, settings, next_sync_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8::jsonb, $9)
            RETURNING {_CONFIG_COLUMNS}
            """,
            config.id,
            config.user_id,
            config.provider_id,
            str(config.provider_type),
            str(config.direction),
            config.enabled,
            _encode_jsonb(config.credentials),
            _encode_jsonb(config.settings),
            config.next_sync_at,
        )
        return _config_from_row(row)

    async def get_config(self, config_id: str) -> SyncConfiguration | None:
        row = await self._db.fetchrow(
            f"SELECT {_CONFIG_COLUMNS} FROM sync_config WHERE id = $1", config_id
        )
        return _config_from_row(row) if row is not None else None

    async def list_configs(
        self,
        *,
        user_id: str | None = None,
        provider_type: ProviderType | None = None,
        enabled: bool | None = None,
    ) -> list[SyncConfiguration]:
        clauses: list[str] = []
        args: list[Any] = []
        if user_id is not None:
            args.append(user_id)
            clauses.append(f"user_id = ${len(args)}")
        if provider_type is not None:
            args.append(str(provider_type))
            clauses.append(f"provider_type = ${len(args)}")
        if enabled is not None:
            args.append(enabled)
            clauses.append(f"enabled = ${len(args)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._db.fetch(
            f"SELECT {_CONFIG_COLUMNS} FROM sync_config {where} ORDER BY created_at", *args
        )
        return [_config_from_row(row) for row in rows]

    async def list_due_configs(self, now: datetime) -> list[SyncConfiguration]:
        rows = await self._db.fetch(
            f"""
            SELECT {_CONFIG_COLUMNS} FROM sync_config
            WHERE enabled AND (next_sync_at IS NULL OR next_sync_at <= $1)
            ORDER BY next_sync_at NULLS FIRST
            """,
            now,
        )
        return [_config_from_row(row) for row in rows]

    async def record_sync_times(
        self, config_id: str, *, last_sync_at: datetime, next_sync_at: datetime
    ) -> None:
        await self._db.execute(
            """
            UPDATE sync_config
            SET last_sync_at = $2, next_sync_at = $3, updated_at = now()
            WHERE id = $1
            """,
            config_id,
            last_sync_at,
            next_sync_at,
        )

    async def set_sync_token(self, config_id: str, sync_token: str | None) -> None:
        await self._db.execute(
            "UPDATE sync_config SET sync_token = $2, updated_at = now() WHERE id = $1",
            config_id,
            sync_token,
        )

    async def set_webhook_id(self, config_id: str, webhook_id: str | None) -> None:
        await self._db.execute(
            "UPDATE sync_config SET webhook_id = $2, updated_at = now() WHERE id = $1",
            config_id,
            webhook_id,
        )

    async def update_credentials(self, config_id: str, credentials: dict[str, Any]) -> None:
        await self._db.execute(
            "UPDATE sync_config SET credentials = $2::jsonb, updated_at = now() WHERE id = $1",
            config_id,
            _encode_jsonb(credentials),
        )

    async def delete_config(self, config_id: str) -> None:
        """Hard delete; operations, mappings and subscriptions cascade."""
        await self._db.execute("DELETE FROM sync_config WHERE id = $1", config_id)

    # -- operations ----------------------------------------------------------

    async def create_operation(self, operation: SyncOperation) -> SyncOperation:
        await self._db.execute(
            """
            INSERT INTO sync_operation (
                id, sync_config_id, operation, status, entity_type, entity_id,
                external_id, started_at, retry_count
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            """,
            operation.id,
            operation.sync_config_id,
            str(operation.operation),
            str(operation.status),
            str(operation.entity_type),
            operation.entity_id,
            operation.external_id,
            operation.started_at,
            operation.retry_count,
        )
        return operation

    async def finish_operation(
        self,
        operation_id: str,
        *,
        status: OperationStatus,
        error: list[dict[str, Any]] | None,
        completed_at: datetime,
    ) -> None:
        await self._db.execute(
            """
            UPDATE sync_operation
            SET status = $2, error = $3::jsonb, completed_at = $4
            WHERE id = $1
            """,
            operation_id,
            str(status),
            _encode_jsonb(error),
            completed_at,
        )

    # -- mappings ------------------------------------------------------------

    async def get_mapping_by_external_id(
        self, config_id: str, external_id: str
    ) -> SyncMapping | None:
        row = await self._db.fetchrow(
            f"""
            SELECT {_MAPPING_COLUMNS} FROM sync_mapping
            WHERE sync_config_id = $1 AND external_id = $2
            """,
            config_id,
            external_id,
        )
        return _mapping_from_row(row) if row is not None else None

    async def get_mapping_for_event(self, config_id: str, event_id: str) -> SyncMapping | None:
        row = await self._db.fetchrow(
            f"""
            SELECT {_MAPPING_COLUMNS} FROM sync_mapping
            WHERE sync_config_id = $1 AND event_id = $2
            """,
            config_id,
            event_id,
        )
        return _mapping_from_row(row) if row is not None else None

    async def list_mappings(self, config_id: str) -> list[SyncMapping]:
        rows = await self._db.fetch(
            f"SELECT {_MAPPING_COLUMNS} FROM sync_mapping WHERE sync_config_id = $1",
            config_id,
        )
        return [_mapping_from_row(row) for row in rows]

    async def list_event_mappings(self, event_id: str) -> list[SyncMapping]:
        rows = await self._db.fetch(
            f"SELECT {_MAPPING_COLUMNS} FROM sync_mapping WHERE event_id = $1", event_id
        )
        return [_mapping_from_row(row) for row in rows]

    async def upsert_event_mapping(
        self,
        *,
        config_id: str,
        event_id: str,
        external_id: str,
        provider_id: str,
        etag: str | None,
        last_synced_at: datetime,
        metadata: dict[str, Any] | None = None,
    ) -> SyncMapping:
        async with self._db.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    DELETE FROM sync_mapping
                    WHERE sync_config_id = $1 AND event_id = $2 AND external_id <> $3
                    """,
                    config_id,
                    event_id,
                    external_id,
                )
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO sync_mapping (
                        id, sync_config_id, event_id, external_id, provider_id,
                        etag, last_synced_at, metadata
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb)
                    ON CONFLICT (sync_config_id, external_id) DO UPDATE SET
                        event_id = EXCLUDED.event_id,
                        announcement_id = NULL,
                        location_id = NULL,
                        contact_id = NULL,
                        tag_id = NULL,
                        provider_id = EXCLUDED.provider_id,
                        etag = EXCLUDED.etag,
                        last_synced_at = EXCLUDED.last_synced_at,
                        metadata = EXCLUDED.metadata
                    RETURNING {_MAPPING_COLUMNS}
                    """,
                    str(uuid.uuid4()),
                    config_id,
                    event_id,
                    external_id,
                    provider_id,
                    etag,
                    last_synced_at,
                    _encode_jsonb(metadata or {}),
                )
        return _mapping_from_row(row)

    async def touch_mapping(
        self, mapping_id: str, *, etag: str | None, last_synced_at: datetime
    ) -> None:
        await self._db.execute(
            "UPDATE sync_mapping SET etag = $2, last_synced_at = $3 WHERE id = $1",
            mapping_id,
            etag,
            last_synced_at,
        )

    async def delete_mapping(self, mapping_id: str) -> None:
        await self._db.execute("DELETE FROM sync_mapping WHERE id = $1", mapping_id)

    async def delete_event_mappings(self, event_id: str) -> int:
        status = await self._db.execute("DELETE FROM sync_mapping WHERE event_id = $1", event_id)
        # asyncpg returns the command tag, e.g. "DELETE 3"
        return int(status.split()[-1])

    # -- webhook subscriptions -------------------------------------------------

    async def list_webhook_subscriptions(self, config_id: str) -> list[WebhookSubscription]:
        rows = await self._db.fetch(
            f"""
            SELECT {_SUBSCRIPTION_COLUMNS} FROM webhook_subscription
            WHERE sync_config_id = $1 ORDER BY created_at DESC
            """,
            config_id,
        )
        return [_subscription_from_row(row) for row in rows]

    async def list_expiring_subscriptions(self, before: datetime) -> list[WebhookSubscription]:
        rows = await self._db.fetch(
            f"""
            SELECT {_SUBSCRIPTION_COLUMNS} FROM webhook_subscription
            WHERE expires_at < $1 ORDER BY expires_at
            """,
            before,
        )
        return [_subscription_from_row(row) for row in rows]

    async def create_webhook_subscription(
        self, subscription: WebhookSubscription
    ) -> WebhookSubscription:
        await self._db.execute(_INSERT_SUBSCRIPTION, *_subscription_args(subscription))
        return subscription

    async def delete_webhook_subscription(self, subscription_id: str) -> None:
        await self._db.execute("DELETE FROM webhook_subscription WHERE id = $1", subscription_id)

    async def replace_webhook_subscription(
        self, old_id: str, subscription: WebhookSubscription
    ) -> WebhookSubscription:
        async with self._db.acquire() as conn:
            async with conn.transaction():
                await conn.execute("DELETE FROM webhook_subscription WHERE id = $1", old_id)
                await conn.execute(_INSERT_SUBSCRIPTION, *_subscription_args(subscription))
                await conn.execute(
                    "UPDATE sync_config SET webhook_id = $2, updated_at = now() WHERE id = $1",
                    subscription.sync_config_id,
                    subscription.id,
                )
        return subscription

    # -- delivery tracking -----------------------------------------------------

    async def record_delivery_changes(
        self, config_id: str, changes: list[DeliveryChange]
    ) -> int:
        inserted = 0
        async with self._db.acquire() as conn:
            async with conn.transaction():
                for change in changes:
                    row_id = await conn.fetchval(
                        """
                        INSERT INTO email_delivery_event (
                            sync_config_id, campaign_id, event, email, occurred_at, payload
                        )
                        VALUES ($1, $2, $3, $4, $5, $6::jsonb)
                        ON CONFLICT DO NOTHING
                        RETURNING id
                        """,
                        config_id,
                        change.campaign_id,
                        change.event,
                        change.email,
                        change.occurred_at,
                        _encode_jsonb(change.payload),
                    )
                    if row_id is not None:
                        inserted += 1
        return inserted

"""PostgreSQL webhook repository (asyncpg).

Claims and write-backs are single ``UPDATE ... WHERE id = $1 AND status = $2``
statements, so the database's row-level atomicity is the compare-and-set
that keeps concurrent dispatchers from claiming the same row.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any
from uuid import UUID

import asyncpg  # type: ignore[import-untyped]

from courier.config import settings
from courier.exceptions import ConfigurationError, NotFoundError, StorageError
from courier.models import (
    CLAIMABLE_STATUSES,
    EventStatus,
    WebhookEvent,
    WebhookSubscription,
)

from .base import WebhookRepository
from .retry import storage_retry

logger = logging.getLogger(__name__)

_DRIVER_ERRORS: tuple[type[BaseException], ...] = (
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    OSError,
)


async def create_pool(database_url: str | None = None, max_size: int = 10) -> asyncpg.Pool:
    """Create an asyncpg pool for the webhook tables.

    Args:
        database_url: DSN. Defaults to ``settings.database_url``.
        max_size: Maximum pool connections.

    Raises:
        ConfigurationError: If no DSN is configured.
    """
    dsn = database_url or settings.database_url
    if not dsn:
        raise ConfigurationError("COURIER_DATABASE_URL is not set")
    return await asyncpg.create_pool(dsn=dsn, max_size=max_size)


def _rows_affected(status: str) -> int:
    # asyncpg returns command tags such as "UPDATE 1"
    return int(status.split()[-1])


def _load_json(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        loaded: dict[str, Any] = json.loads(value)
        return loaded
    return dict(value)


class PostgresWebhookRepository(WebhookRepository):
    """Webhook storage on PostgreSQL through an asyncpg pool."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    # -- Query helpers ------------------------------------------------------

    @storage_retry
    async def _read_rows(self, query: str, *args: Any) -> Iterable[asyncpg.Record]:
        async with self._pool.acquire() as conn:
            return await conn.fetch(query, *args)

    @storage_retry
    async def _read_row(self, query: str, *args: Any) -> asyncpg.Record | None:
        async with self._pool.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def _fetch(self, query: str, *args: Any) -> Iterable[asyncpg.Record]:
        try:
            return await self._read_rows(query, *args)
        except _DRIVER_ERRORS as exc:
            raise StorageError(f"query failed: {exc}") from exc

    async def _fetchrow(self, query: str, *args: Any) -> asyncpg.Record | None:
        try:
            return await self._read_row(query, *args)
        except _DRIVER_ERRORS as exc:
            raise StorageError(f"query failed: {exc}") from exc

    async def _write_row(self, query: str, *args: Any) -> asyncpg.Record | None:
        try:
            async with self._pool.acquire() as conn:
                return await conn.fetchrow(query, *args)
        except _DRIVER_ERRORS as exc:
            raise StorageError(f"write failed: {exc}") from exc

    async def _execute(self, query: str, *args: Any) -> str:
        try:
            async with self._pool.acquire() as conn:
                return await conn.execute(query, *args)
        except _DRIVER_ERRORS as exc:
            raise StorageError(f"write failed: {exc}") from exc

    # -- Row mapping --------------------------------------------------------

    @staticmethod
    def _to_event(record: asyncpg.Record) -> WebhookEvent:
        payload = dict(record)
        payload["payload"] = bytes(payload["payload"])
        payload["metadata"] = _load_json(payload.get("metadata"))
        return WebhookEvent.model_validate(payload)

    @staticmethod
    def _to_subscription(record: asyncpg.Record) -> WebhookSubscription:
        payload = dict(record)
        payload["event_types"] = set(payload.get("event_types") or [])
        payload["metadata"] = _load_json(payload.get("metadata"))
        return WebhookSubscription.model_validate(payload)

    # -- Events -------------------------------------------------------------

    async def create_event(self, event: WebhookEvent) -> WebhookEvent:
        record = await self._write_row(
            """
            INSERT INTO webhook_events (
                id, event_type, event_version, event_source, user_id, payload,
                payload_hash, webhook_url, webhook_secret, retry_backoff_multiplier,
                metadata, status, delivery_attempts, max_attempts, scheduled_at,
                created_at, updated_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11::jsonb, $12, $13, $14,
                    $15, $16, $17)
            RETURNING *
            """,
            event.id,
            event.event_type,
            event.event_version,
            event.event_source,
            event.user_id,
            event.payload,
            event.payload_hash,
            event.webhook_url,
            event.webhook_secret,
            event.retry_backoff_multiplier,
            json.dumps(event.metadata),
            event.status.value,
            event.delivery_attempts,
            event.max_attempts,
            event.scheduled_at,
            event.created_at,
            event.updated_at,
        )
        if record is None:
            raise StorageError(f"insert returned no row for webhook event {event.id}")
        return self._to_event(record)

    async def get_event(self, event_id: UUID) -> WebhookEvent | None:
        record = await self._fetchrow("SELECT * FROM webhook_events WHERE id = $1", event_id)
        return self._to_event(record) if record else None

    async def get_pending_events(self, limit: int, now: datetime) -> list[WebhookEvent]:
        records = await self._fetch(
            """
            SELECT *
            FROM webhook_events
            WHERE status IN ('pending', 'retrying')
              AND (next_retry_at IS NULL OR next_retry_at <= $2)
            ORDER BY scheduled_at ASC
            LIMIT $1
            """,
            limit,
            now,
        )
        return [self._to_event(r) for r in records]

    async def claim_event(
        self,
        event_id: UUID,
        expected_status: EventStatus,
        now: datetime,
    ) -> WebhookEvent | None:
        if expected_status not in CLAIMABLE_STATUSES:
            return None
        record = await self._write_row(
            """
            UPDATE webhook_events
            SET status = 'processing',
                processed_at = $3,
                next_retry_at = NULL,
                updated_at = $3
            WHERE id = $1 AND status = $2
              AND (next_retry_at IS NULL OR next_retry_at <= $3)
            RETURNING *
            """,
            event_id,
            expected_status.value,
            now,
        )
        return self._to_event(record) if record else None

    async def update_event(
        self,
        event: WebhookEvent,
        expected_status: EventStatus,
    ) -> bool:
        result = await self._execute(
            """
            UPDATE webhook_events
            SET status = $3,
                delivery_attempts = $4,
                processed_at = $5,
                delivered_at = $6,
                next_retry_at = $7,
                last_response_status = $8,
                last_response_body = $9,
                last_error_message = $10,
                updated_at = $11
            WHERE id = $1
              AND status = $2
              AND status NOT IN ('delivered', 'failed')
            """,
            event.id,
            expected_status.value,
            event.status.value,
            event.delivery_attempts,
            event.processed_at,
            event.delivered_at,
            event.next_retry_at,
            event.last_response_status,
            event.last_response_body,
            event.last_error_message,
            event.updated_at,
        )
        return _rows_affected(result) == 1

    async def release_event(
        self,
        event_id: UUID,
        status: EventStatus,
        now: datetime,
    ) -> bool:
        if status not in CLAIMABLE_STATUSES:
            return False
        next_retry_at = now if status == EventStatus.RETRYING else None
        result = await self._execute(
            """
            UPDATE webhook_events
            SET status = $2,
                next_retry_at = $3,
                updated_at = $4
            WHERE id = $1 AND status = 'processing'
            """,
            event_id,
            status.value,
            next_retry_at,
            now,
        )
        return _rows_affected(result) == 1

    async def reclaim_stuck_events(self, processed_before: datetime, now: datetime) -> int:
        result = await self._execute(
            """
            UPDATE webhook_events
            SET status = 'pending',
                next_retry_at = NULL,
                updated_at = $2
            WHERE status = 'processing'
              AND processed_at < $1
            """,
            processed_before,
            now,
        )
        return _rows_affected(result)

    # -- Subscriptions ------------------------------------------------------

    async def get_active_subscriptions(self, event_type: str) -> list[WebhookSubscription]:
        records = await self._fetch(
            """
            SELECT *
            FROM webhook_subscriptions
            WHERE is_active = true
              AND $1 = ANY(event_types)
            ORDER BY created_at ASC
            """,
            event_type,
        )
        return [self._to_subscription(r) for r in records]

    async def get_subscription_by_url(self, url: str) -> WebhookSubscription | None:
        record = await self._fetchrow(
            """
            SELECT *
            FROM webhook_subscriptions
            WHERE webhook_url = $1 AND is_active = true
            ORDER BY created_at ASC
            LIMIT 1
            """,
            url,
        )
        return self._to_subscription(record) if record else None

    async def create_subscription(
        self, subscription: WebhookSubscription
    ) -> WebhookSubscription:
        record = await self._write_row(
            """
            INSERT INTO webhook_subscriptions (
                id, user_id, subscription_name, webhook_url, webhook_secret,
                event_types, is_active, is_verified, rate_limit_per_minute,
                max_retries, retry_backoff_multiplier, description, metadata,
                created_at, updated_at
            )
            VALUES ($1, $2, $3, $4, $5, $6::text[], $7, $8, $9, $10, $11, $12, $13::jsonb,
                    $14, $15)
            RETURNING *
            """,
            *self._subscription_args(subscription),
            subscription.created_at,
            subscription.updated_at,
        )
        if record is None:
            raise StorageError(
                f"insert returned no row for webhook subscription {subscription.id}"
            )
        return self._to_subscription(record)

    async def update_subscription(
        self, subscription: WebhookSubscription
    ) -> WebhookSubscription:
        record = await self._write_row(
            """
            UPDATE webhook_subscriptions
            SET user_id = $2,
                subscription_name = $3,
                webhook_url = $4,
                webhook_secret = $5,
                event_types = $6::text[],
                is_active = $7,
                is_verified = $8,
                rate_limit_per_minute = $9,
                max_retries = $10,
                retry_backoff_multiplier = $11,
                description = $12,
                metadata = $13::jsonb,
                updated_at = now()
            WHERE id = $1
            RETURNING *
            """,
            *self._subscription_args(subscription),
        )
        if record is None:
            raise NotFoundError("webhook_subscription", subscription.id)
        return self._to_subscription(record)

    async def delete_subscription(self, subscription_id: UUID) -> bool:
        record = await self._write_row(
            "DELETE FROM webhook_subscriptions WHERE id = $1 RETURNING id",
            subscription_id,
        )
        return record is not None

    @staticmethod
    def _subscription_args(subscription: WebhookSubscription) -> tuple[Any, ...]:
        return (
            subscription.id,
            subscription.user_id,
            subscription.subscription_name,
            subscription.webhook_url,
            subscription.webhook_secret,
            sorted(subscription.event_types),
            subscription.is_active,
            subscription.is_verified,
            subscription.rate_limit_per_minute,
            subscription.max_retries,
            subscription.retry_backoff_multiplier,
            subscription.description,
            json.dumps(subscription.metadata),
        )

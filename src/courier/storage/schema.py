"""PostgreSQL schema for the webhook tables."""

from __future__ import annotations

import logging

import asyncpg  # type: ignore[import-untyped]

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS webhook_subscriptions (
    id UUID PRIMARY KEY,
    user_id UUID NULL,
    subscription_name TEXT NOT NULL DEFAULT '',
    webhook_url TEXT NOT NULL,
    webhook_secret TEXT NOT NULL DEFAULT '',
    event_types TEXT[] NOT NULL DEFAULT '{}',
    is_active BOOLEAN NOT NULL DEFAULT true,
    is_verified BOOLEAN NOT NULL DEFAULT false,
    rate_limit_per_minute INTEGER NOT NULL DEFAULT 60,
    max_retries INTEGER NOT NULL DEFAULT 3,
    retry_backoff_multiplier DOUBLE PRECISION NOT NULL DEFAULT 2.0,
    description TEXT NULL,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS webhook_subscriptions_event_types_idx
    ON webhook_subscriptions USING GIN (event_types);
CREATE INDEX IF NOT EXISTS webhook_subscriptions_url_idx
    ON webhook_subscriptions (webhook_url);

CREATE TABLE IF NOT EXISTS webhook_events (
    id UUID PRIMARY KEY,
    event_type TEXT NOT NULL,
    event_version TEXT NOT NULL,
    event_source TEXT NOT NULL,
    user_id UUID NOT NULL,
    payload BYTEA NOT NULL,
    payload_hash TEXT NOT NULL,
    webhook_url TEXT NOT NULL,
    webhook_secret TEXT NOT NULL DEFAULT '',
    retry_backoff_multiplier DOUBLE PRECISION NULL,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'processing', 'delivered', 'retrying', 'failed')),
    delivery_attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    scheduled_at TIMESTAMPTZ NOT NULL,
    processed_at TIMESTAMPTZ NULL,
    delivered_at TIMESTAMPTZ NULL,
    next_retry_at TIMESTAMPTZ NULL,
    last_response_status INTEGER NULL,
    last_response_body TEXT NULL,
    last_error_message TEXT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    CHECK (delivery_attempts <= max_attempts),
    CHECK ((next_retry_at IS NOT NULL) = (status = 'retrying'))
);

CREATE INDEX IF NOT EXISTS webhook_events_due_idx
    ON webhook_events (scheduled_at)
    WHERE status IN ('pending', 'retrying');
CREATE INDEX IF NOT EXISTS webhook_events_processing_idx
    ON webhook_events (processed_at)
    WHERE status = 'processing';
"""


async def ensure_schema(pool: asyncpg.Pool) -> None:
    """Create the webhook tables and indexes if they do not exist."""
    async with pool.acquire() as conn:
        await conn.execute(SCHEMA_SQL)
    logger.info("Webhook schema ensured")

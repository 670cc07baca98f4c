"""In-memory webhook repository.

Dict-backed implementation of :class:`WebhookRepository` for tests and
single-process deployments. All reads hand out deep copies, so callers
mutate their own snapshot exactly as they would a row fetched from a
database, and every status change goes through the same
compare-and-set guard as the PostgreSQL backend.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from uuid import UUID

from courier.exceptions import NotFoundError, StorageError
from courier.models import (
    CLAIMABLE_STATUSES,
    EventStatus,
    WebhookEvent,
    WebhookSubscription,
)

from .base import WebhookRepository

logger = logging.getLogger(__name__)


class InMemoryWebhookRepository(WebhookRepository):
    """Webhook storage held in process memory, guarded by an asyncio lock."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._events: dict[UUID, WebhookEvent] = {}
        self._subscriptions: dict[UUID, WebhookSubscription] = {}

    # -- Events -------------------------------------------------------------

    async def create_event(self, event: WebhookEvent) -> WebhookEvent:
        async with self._lock:
            if event.id in self._events:
                raise StorageError(f"webhook event already exists: {event.id}")
            self._events[event.id] = event.model_copy(deep=True)
        return event.model_copy(deep=True)

    async def get_event(self, event_id: UUID) -> WebhookEvent | None:
        async with self._lock:
            stored = self._events.get(event_id)
            return stored.model_copy(deep=True) if stored else None

    async def get_pending_events(self, limit: int, now: datetime) -> list[WebhookEvent]:
        async with self._lock:
            due = [e for e in self._events.values() if e.is_due(now)]
        due.sort(key=lambda e: e.scheduled_at)
        return [e.model_copy(deep=True) for e in due[:limit]]

    async def claim_event(
        self,
        event_id: UUID,
        expected_status: EventStatus,
        now: datetime,
    ) -> WebhookEvent | None:
        if expected_status not in CLAIMABLE_STATUSES:
            return None
        async with self._lock:
            stored = self._events.get(event_id)
            if stored is None or stored.status != expected_status or not stored.is_due(now):
                return None
            stored.mark_processing(now)
            return stored.model_copy(deep=True)

    async def update_event(
        self,
        event: WebhookEvent,
        expected_status: EventStatus,
    ) -> bool:
        async with self._lock:
            stored = self._events.get(event.id)
            if stored is None or stored.status != expected_status or stored.is_terminal:
                return False
            self._events[event.id] = event.model_copy(deep=True)
            return True

    async def release_event(
        self,
        event_id: UUID,
        status: EventStatus,
        now: datetime,
    ) -> bool:
        async with self._lock:
            stored = self._events.get(event_id)
            if stored is None or stored.status != EventStatus.PROCESSING:
                return False
            stored.release(now, status)
            return True

    async def reclaim_stuck_events(self, processed_before: datetime, now: datetime) -> int:
        reclaimed = 0
        async with self._lock:
            for stored in self._events.values():
                if (
                    stored.status == EventStatus.PROCESSING
                    and stored.processed_at is not None
                    and stored.processed_at < processed_before
                ):
                    stored.release(now, EventStatus.PENDING)
                    reclaimed += 1
        return reclaimed

    # -- Subscriptions ------------------------------------------------------

    async def get_active_subscriptions(self, event_type: str) -> list[WebhookSubscription]:
        async with self._lock:
            matching = [s for s in self._subscriptions.values() if s.subscribes_to(event_type)]
        matching.sort(key=lambda s: s.created_at)
        return [s.model_copy(deep=True) for s in matching]

    async def get_subscription_by_url(self, url: str) -> WebhookSubscription | None:
        async with self._lock:
            for sub in sorted(self._subscriptions.values(), key=lambda s: s.created_at):
                if sub.webhook_url == url and sub.is_active:
                    return sub.model_copy(deep=True)
        return None

    async def create_subscription(
        self, subscription: WebhookSubscription
    ) -> WebhookSubscription:
        async with self._lock:
            if subscription.id in self._subscriptions:
                raise StorageError(f"webhook subscription already exists: {subscription.id}")
            self._subscriptions[subscription.id] = subscription.model_copy(deep=True)
        return subscription.model_copy(deep=True)

    async def update_subscription(
        self, subscription: WebhookSubscription
    ) -> WebhookSubscription:
        async with self._lock:
            if subscription.id not in self._subscriptions:
                raise NotFoundError("webhook_subscription", subscription.id)
            self._subscriptions[subscription.id] = subscription.model_copy(deep=True)
        return subscription.model_copy(deep=True)

    async def delete_subscription(self, subscription_id: UUID) -> bool:
        async with self._lock:
            removed = self._subscriptions.pop(subscription_id, None)
        if removed is not None:
            logger.debug("Deleted webhook subscription %s", subscription_id)
        return removed is not None

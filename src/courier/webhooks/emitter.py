"""Fan-out of domain events into queued webhook event rows.

``emit`` only writes rows; it never talks to a receiver. Delivery happens
later, when the scheduler runs the dispatcher, so a slow or unreachable
subscriber cannot add latency to (or fail) the operation that emitted
the event.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from pydantic import BaseModel
from pydantic_core import PydanticSerializationError

from courier.config import settings
from courier.exceptions import MarshalError, PersistenceError
from courier.models import DomainEvent, EventStatus, WebhookEvent, utc_now

if TYPE_CHECKING:
    from courier.models import WebhookSubscription
    from courier.storage import WebhookRepository

logger = logging.getLogger(__name__)


def serialize_payload(payload: Any) -> bytes:
    """Serialize a domain payload to compact, key-sorted JSON bytes.

    Key sorting makes the bytes (and therefore ``payload_hash``) depend only
    on the payload's content, not on dict insertion order.

    Raises:
        MarshalError: If the payload cannot be represented as JSON.
    """
    try:
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(mode="json")
        text = json.dumps(
            payload,
            separators=(",", ":"),
            sort_keys=True,
            ensure_ascii=False,
            allow_nan=False,
        )
    except (PydanticSerializationError, TypeError, ValueError) as e:
        raise MarshalError(f"payload is not JSON serializable: {e}") from e
    return text.encode("utf-8")


def hash_payload(payload: bytes) -> str:
    """Hex SHA-256 of serialized payload bytes."""
    return hashlib.sha256(payload).hexdigest()


class WebhookEmitter:
    """Turns one domain event into one pending row per matching subscription.

    Example:
        ```python
        emitter = WebhookEmitter(repository)
        rows = await emitter.emit(
            DomainEvent(event_type="user.created", user_id=user.id, payload={"email": email})
        )
        ```
    """

    def __init__(
        self,
        repository: WebhookRepository,
        event_source: str | None = None,
        default_max_attempts: int | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the emitter.

        Args:
            repository: Storage for subscriptions and event rows.
            event_source: Source stamped on events that don't name one.
                Defaults to settings.event_source.
            default_max_attempts: Attempts for subscriptions without a policy.
                Defaults to settings.webhook_max_retries.
            clock: Returns the current UTC time.
        """
        self._repository = repository
        self._event_source = event_source or settings.event_source
        self._default_max_attempts = default_max_attempts or settings.webhook_max_retries
        self._clock = clock

    async def emit(self, event: DomainEvent) -> list[WebhookEvent]:
        """Persist one pending row per active subscription to ``event.event_type``.

        A row that fails to write is logged and skipped; the other
        subscribers still get theirs.

        Args:
            event: The domain event to fan out.

        Returns:
            The rows that were persisted.

        Raises:
            MarshalError: If the payload cannot be serialized. No rows are
                written in that case.
        """
        payload = serialize_payload(event.payload)
        payload_hash = hash_payload(payload)

        try:
            subscriptions = await self._repository.get_active_subscriptions(event.event_type)
        except Exception:
            logger.exception(
                "Failed to resolve webhook subscriptions for %s", event.event_type
            )
            return []

        if not subscriptions:
            logger.debug("No webhook subscriptions for event %s", event.event_type)
            return []

        now = self._clock()
        created: list[WebhookEvent] = []
        for subscription in subscriptions:
            row = self._build_row(event, subscription, payload, payload_hash, now)
            try:
                created.append(await self._persist(subscription, row))
            except PersistenceError as e:
                logger.error(
                    "Failed to queue webhook event: %s",
                    e.message,
                    extra={"event_type": event.event_type, "webhook_url": subscription.webhook_url},
                )

        logger.info(
            "Webhook event emitted: %s (%d/%d subscriptions queued)",
            event.event_type,
            len(created),
            len(subscriptions),
        )
        return created

    def _build_row(
        self,
        event: DomainEvent,
        subscription: WebhookSubscription,
        payload: bytes,
        payload_hash: str,
        now: datetime,
    ) -> WebhookEvent:
        return WebhookEvent(
            event_type=event.event_type,
            event_version=event.event_version,
            event_source=event.event_source or self._event_source,
            user_id=event.user_id,
            payload=payload,
            payload_hash=payload_hash,
            webhook_url=subscription.webhook_url,
            webhook_secret=subscription.webhook_secret,
            retry_backoff_multiplier=subscription.retry_backoff_multiplier,
            metadata=dict(event.metadata),
            status=EventStatus.PENDING,
            max_attempts=subscription.max_retries or self._default_max_attempts,
            scheduled_at=now,
            created_at=now,
            updated_at=now,
        )

    async def _persist(
        self, subscription: WebhookSubscription, row: WebhookEvent
    ) -> WebhookEvent:
        try:
            return await self._repository.create_event(row)
        except Exception as e:
            raise PersistenceError(subscription.id, str(e)) from e


async def emit_event(
    emitter: WebhookEmitter,
    event_type: str,
    user_id: UUID,
    payload: Any = None,
    event_version: str = "1.0",
    event_source: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> list[WebhookEvent]:
    """Convenience function to emit a domain event from keyword arguments.

    Example:
        ```python
        await emit_event(
            emitter,
            event_type="request.approved",
            user_id=user.id,
            payload={"request_id": str(request.id)},
        )
        ```
    """
    event = DomainEvent(
        event_type=event_type,
        event_version=event_version,
        event_source=event_source,
        user_id=user_id,
        payload=payload,
        metadata=metadata or {},
    )
    return await emitter.emit(event)

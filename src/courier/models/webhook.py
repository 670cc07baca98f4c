"""Webhook records: subscriptions, queued events, and the emitter's input.

A ``WebhookEvent`` is one row per subscription per emitted domain event.
It carries everything needed to deliver it (URL, secret, retry policy)
by value, so later changes to the subscription never rewrite rows that
are already queued.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import Field, model_validator

from courier.exceptions import InvalidTransitionError

from .base import CourierModel, utc_now


class EventStatus(str, Enum):
    """Delivery state of a webhook event row."""

    PENDING = "pending"  # Queued by the emitter, never attempted
    PROCESSING = "processing"  # Claimed by a dispatcher
    DELIVERED = "delivered"  # Receiver answered 2xx (terminal)
    RETRYING = "retrying"  # Failed attempt, waiting for next_retry_at
    FAILED = "failed"  # Attempts exhausted (terminal)


TERMINAL_STATUSES = frozenset({EventStatus.DELIVERED, EventStatus.FAILED})

# Statuses the dispatcher may claim from
CLAIMABLE_STATUSES = frozenset({EventStatus.PENDING, EventStatus.RETRYING})

_TRANSITIONS: dict[EventStatus, frozenset[EventStatus]] = {
    EventStatus.PENDING: frozenset({EventStatus.PROCESSING}),
    EventStatus.RETRYING: frozenset({EventStatus.PROCESSING}),
    EventStatus.PROCESSING: frozenset(
        {
            EventStatus.DELIVERED,
            EventStatus.RETRYING,
            EventStatus.FAILED,
            EventStatus.PENDING,
        }
    ),
    EventStatus.DELIVERED: frozenset(),
    EventStatus.FAILED: frozenset(),
}


def can_transition(current: EventStatus, target: EventStatus) -> bool:
    """Check whether the state machine allows ``current -> target``."""
    return target in _TRANSITIONS[current]


class WebhookSubscription(CourierModel):
    """An external endpoint registered to receive some event types.

    Attributes:
        id: Unique identifier.
        user_id: Owner, or None for a system-wide subscription.
        subscription_name: Human-readable name.
        webhook_url: Endpoint that receives POSTs.
        webhook_secret: Shared HMAC secret (never serialized).
        event_types: Event types this subscription wants.
        is_active: Inactive subscriptions receive nothing.
        is_verified: Whether the endpoint has been verified by its owner.
        rate_limit_per_minute: Advisory delivery rate for this endpoint.
        max_retries: Delivery attempts before an event is marked failed.
        retry_backoff_multiplier: Growth factor between retry delays.
        description: Optional free text.
        metadata: Arbitrary owner-supplied data.
    """

    id: UUID = Field(default_factory=uuid4)
    user_id: UUID | None = Field(default=None, description="None for global subscriptions")
    subscription_name: str = Field(default="", description="Human-readable name")
    webhook_url: str = Field(description="Endpoint that receives event POSTs")
    webhook_secret: str = Field(default="", exclude=True, repr=False)
    event_types: set[str] = Field(default_factory=set, description="Subscribed event types")
    is_active: bool = Field(default=True)
    is_verified: bool = Field(default=False)
    rate_limit_per_minute: int = Field(default=60, ge=0)
    max_retries: int = Field(default=3, ge=1, le=50)
    retry_backoff_multiplier: float = Field(default=2.0, ge=1.0, le=10.0)
    description: str | None = Field(default=None)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def subscribes_to(self, event_type: str) -> bool:
        """Check if this subscription is active and wants the given event type."""
        return self.is_active and event_type in self.event_types


class WebhookEvent(CourierModel):
    """One queued delivery of a domain event to one subscription.

    Invariants:
        - ``delivery_attempts <= max_attempts``
        - ``next_retry_at`` is set exactly when ``status == retrying``
        - ``delivered`` and ``failed`` rows are never mutated again
    """

    id: UUID = Field(default_factory=uuid4)
    event_type: str
    event_version: str = Field(default="1.0")
    event_source: str
    user_id: UUID
    payload: bytes = Field(description="Serialized JSON domain payload")
    payload_hash: str = Field(description="Hex SHA-256 of payload")
    webhook_url: str
    webhook_secret: str = Field(default="", exclude=True, repr=False)
    retry_backoff_multiplier: float | None = Field(default=None, ge=1.0)
    metadata: dict[str, Any] = Field(default_factory=dict)
    status: EventStatus = Field(default=EventStatus.PENDING)
    delivery_attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    scheduled_at: datetime = Field(default_factory=utc_now)
    processed_at: datetime | None = None
    delivered_at: datetime | None = None
    next_retry_at: datetime | None = None
    last_response_status: int | None = None
    last_response_body: str | None = None
    last_error_message: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _check_invariants(self) -> WebhookEvent:
        if self.delivery_attempts > self.max_attempts:
            raise ValueError(
                f"delivery_attempts ({self.delivery_attempts}) exceeds "
                f"max_attempts ({self.max_attempts})"
            )
        if (self.next_retry_at is not None) != (self.status == EventStatus.RETRYING):
            raise ValueError("next_retry_at must be set if and only if status is retrying")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_due(self, now: datetime) -> bool:
        """Claimable status and no retry delay left to wait out."""
        if self.status not in CLAIMABLE_STATUSES:
            return False
        return self.next_retry_at is None or self.next_retry_at <= now

    def _move(self, target: EventStatus, now: datetime) -> None:
        if not can_transition(self.status, target):
            raise InvalidTransitionError(self.status.value, target.value)
        self.status = target
        self.updated_at = now

    def mark_processing(self, now: datetime) -> WebhookEvent:
        """Claim the row for a delivery attempt."""
        self._move(EventStatus.PROCESSING, now)
        self.processed_at = now
        self.next_retry_at = None
        return self

    def mark_delivered(
        self,
        now: datetime,
        response_status: int,
        response_body: str | None = None,
    ) -> WebhookEvent:
        """Record a 2xx response. Attempts are left unchanged."""
        self._move(EventStatus.DELIVERED, now)
        self.delivered_at = now
        self.last_response_status = response_status
        self.last_response_body = response_body
        return self

    def record_failed_attempt(
        self,
        error: str,
        response_status: int | None = None,
        response_body: str | None = None,
    ) -> WebhookEvent:
        """Count one failed attempt and keep its outcome for observability."""
        if self.status != EventStatus.PROCESSING:
            raise InvalidTransitionError(self.status.value, "failed attempt")
        self.delivery_attempts = min(self.delivery_attempts + 1, self.max_attempts)
        self.last_error_message = error
        self.last_response_status = response_status
        self.last_response_body = response_body
        return self

    @property
    def attempts_exhausted(self) -> bool:
        return self.delivery_attempts >= self.max_attempts

    def mark_retrying(self, now: datetime, next_retry_at: datetime) -> WebhookEvent:
        """Schedule the next attempt."""
        self._move(EventStatus.RETRYING, now)
        self.next_retry_at = next_retry_at
        return self

    def mark_failed(self, now: datetime) -> WebhookEvent:
        """Give up on the row (terminal)."""
        self._move(EventStatus.FAILED, now)
        self.next_retry_at = None
        return self

    def release(self, now: datetime, status: EventStatus) -> WebhookEvent:
        """Hand a claimed row back without recording an attempt.

        Used when a delivery is cancelled or a claim goes stale. A row
        released to ``retrying`` becomes due immediately.
        """
        if status not in CLAIMABLE_STATUSES:
            raise InvalidTransitionError(self.status.value, status.value)
        self._move(status, now)
        self.next_retry_at = now if status == EventStatus.RETRYING else None
        return self


class DomainEvent(CourierModel):
    """A domain event handed to the emitter.

    Attributes:
        event_type: Classification such as "user.created".
        event_version: Schema version of the payload.
        event_source: Service that produced the event.
        user_id: Subject of the event.
        payload: Any JSON-serializable value or pydantic model.
        metadata: Optional caller data stored with each row (never sent).
    """

    event_type: str = Field(min_length=1)
    event_version: str = Field(default="1.0")
    event_source: str | None = Field(default=None)
    user_id: UUID
    payload: Any = None
    metadata: dict[str, Any] = Field(default_factory=dict)


__all__ = [
    "CLAIMABLE_STATUSES",
    "DomainEvent",
    "EventStatus",
    "TERMINAL_STATUSES",
    "WebhookEvent",
    "WebhookSubscription",
    "can_transition",
]

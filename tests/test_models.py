"""Tests for Courier webhook records and the delivery state machine."""

from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import pytest
from pydantic import ValidationError

from conftest import FIXED_NOW
from courier.exceptions import InvalidTransitionError
from courier.models import (
    CLAIMABLE_STATUSES,
    TERMINAL_STATUSES,
    DomainEvent,
    EventStatus,
    WebhookEvent,
    WebhookSubscription,
    can_transition,
)


def make_event(**overrides) -> WebhookEvent:
    fields = {
        "event_type": "user.created",
        "event_source": "accounts",
        "user_id": uuid4(),
        "payload": b'{"id":"42"}',
        "payload_hash": "abc123",
        "webhook_url": "https://receiver.example.com/hooks",
        "scheduled_at": FIXED_NOW,
        "created_at": FIXED_NOW,
        "updated_at": FIXED_NOW,
    }
    fields.update(overrides)
    return WebhookEvent(**fields)


class TestEventStatus:
    """Tests for the status enum and transition table."""

    def test_terminal_statuses(self):
        """Only delivered and failed are terminal."""
        assert TERMINAL_STATUSES == {EventStatus.DELIVERED, EventStatus.FAILED}

    def test_claimable_statuses(self):
        """Only pending and retrying rows can be claimed."""
        assert CLAIMABLE_STATUSES == {EventStatus.PENDING, EventStatus.RETRYING}

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (EventStatus.PENDING, EventStatus.PROCESSING),
            (EventStatus.RETRYING, EventStatus.PROCESSING),
            (EventStatus.PROCESSING, EventStatus.DELIVERED),
            (EventStatus.PROCESSING, EventStatus.RETRYING),
            (EventStatus.PROCESSING, EventStatus.FAILED),
            (EventStatus.PROCESSING, EventStatus.PENDING),
        ],
    )
    def test_allowed_transitions(self, current, target):
        """The state machine allows the documented edges."""
        assert can_transition(current, target)

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (EventStatus.PENDING, EventStatus.DELIVERED),
            (EventStatus.RETRYING, EventStatus.FAILED),
            (EventStatus.DELIVERED, EventStatus.PROCESSING),
            (EventStatus.FAILED, EventStatus.RETRYING),
            (EventStatus.DELIVERED, EventStatus.FAILED),
        ],
    )
    def test_forbidden_transitions(self, current, target):
        """Rows must pass through processing and never leave a terminal state."""
        assert not can_transition(current, target)

    def test_values_are_lowercase_strings(self):
        """Status values are stored as plain strings."""
        assert EventStatus.PENDING.value == "pending"
        assert EventStatus("retrying") is EventStatus.RETRYING


class TestWebhookSubscription:
    """Tests for WebhookSubscription."""

    def test_defaults(self):
        """A subscription is active and retries three times by default."""
        sub = WebhookSubscription(webhook_url="https://example.com/hook")
        assert sub.is_active is True
        assert sub.is_verified is False
        assert sub.max_retries == 3
        assert sub.retry_backoff_multiplier == 2.0
        assert sub.rate_limit_per_minute == 60
        assert sub.user_id is None

    def test_subscribes_to(self):
        """subscribes_to requires both activity and a matching event type."""
        sub = WebhookSubscription(webhook_url="https://example.com/hook", event_types={"a.b"})
        assert sub.subscribes_to("a.b")
        assert not sub.subscribes_to("a.c")
        sub.is_active = False
        assert not sub.subscribes_to("a.b")

    def test_secret_not_serialized(self):
        """The secret never appears in dumps or repr."""
        sub = WebhookSubscription(webhook_url="https://example.com/hook", webhook_secret="s3cret")
        assert "webhook_secret" not in sub.model_dump()
        assert "s3cret" not in repr(sub)
        assert sub.webhook_secret == "s3cret"

    def test_multiplier_lower_bound(self):
        """A multiplier below 1 would shrink delays and is rejected."""
        with pytest.raises(ValidationError):
            WebhookSubscription(webhook_url="https://example.com/hook", retry_backoff_multiplier=0.5)

    def test_max_retries_lower_bound(self):
        """At least one attempt is always made."""
        with pytest.raises(ValidationError):
            WebhookSubscription(webhook_url="https://example.com/hook", max_retries=0)

    def test_extra_fields_forbidden(self):
        """Unknown fields are rejected."""
        with pytest.raises(ValidationError):
            WebhookSubscription(webhook_url="https://example.com/hook", url="oops")


class TestWebhookEventInvariants:
    """Tests for the invariants validated on construction."""

    def test_new_event_is_pending(self):
        """A fresh row is pending with no attempts and no retry time."""
        event = make_event()
        assert event.status == EventStatus.PENDING
        assert event.delivery_attempts == 0
        assert event.next_retry_at is None
        assert not event.is_terminal

    def test_attempts_cannot_exceed_max(self):
        """delivery_attempts above max_attempts is invalid."""
        with pytest.raises(ValidationError, match="exceeds"):
            make_event(delivery_attempts=4, max_attempts=3)

    def test_retrying_requires_next_retry_at(self):
        """A retrying row must know when it becomes due."""
        with pytest.raises(ValidationError, match="next_retry_at"):
            make_event(status=EventStatus.RETRYING)

    def test_next_retry_at_only_when_retrying(self):
        """Other statuses must not carry a retry time."""
        with pytest.raises(ValidationError, match="next_retry_at"):
            make_event(status=EventStatus.PENDING, next_retry_at=FIXED_NOW)

    def test_valid_retrying_row(self):
        """Retrying plus a retry time is accepted."""
        event = make_event(
            status=EventStatus.RETRYING,
            delivery_attempts=1,
            next_retry_at=FIXED_NOW + timedelta(minutes=2),
        )
        assert event.status == EventStatus.RETRYING


class TestWebhookEventTransitions:
    """Tests for the mutators that drive a row through its lifecycle."""

    def test_is_due(self):
        """Pending rows are due; retrying rows only once next_retry_at has passed."""
        assert make_event().is_due(FIXED_NOW)
        retrying = make_event(
            status=EventStatus.RETRYING,
            delivery_attempts=1,
            next_retry_at=FIXED_NOW + timedelta(minutes=2),
        )
        assert not retrying.is_due(FIXED_NOW)
        assert retrying.is_due(FIXED_NOW + timedelta(minutes=2))

    def test_processing_is_not_due(self):
        """A claimed row is never listed again."""
        event = make_event().mark_processing(FIXED_NOW)
        assert not event.is_due(FIXED_NOW + timedelta(days=1))

    def test_mark_processing_clears_retry_time(self):
        """Claiming a retrying row clears next_retry_at and stamps processed_at."""
        event = make_event(
            status=EventStatus.RETRYING,
            delivery_attempts=1,
            next_retry_at=FIXED_NOW,
        )
        later = FIXED_NOW + timedelta(seconds=5)
        event.mark_processing(later)
        assert event.status == EventStatus.PROCESSING
        assert event.next_retry_at is None
        assert event.processed_at == later
        assert event.updated_at == later

    def test_mark_delivered(self):
        """Delivery records the response and does not count an attempt."""
        event = make_event().mark_processing(FIXED_NOW)
        event.mark_delivered(FIXED_NOW, 204, "")
        assert event.status == EventStatus.DELIVERED
        assert event.delivered_at == FIXED_NOW
        assert event.last_response_status == 204
        assert event.delivery_attempts == 0
        assert event.is_terminal

    def test_mark_delivered_requires_claim(self):
        """A pending row cannot jump straight to delivered."""
        with pytest.raises(InvalidTransitionError):
            make_event().mark_delivered(FIXED_NOW, 200)

    def test_record_failed_attempt(self):
        """A failed attempt increments the counter and keeps the outcome."""
        event = make_event().mark_processing(FIXED_NOW)
        event.record_failed_attempt("unexpected status code: 500", 500, "boom")
        assert event.delivery_attempts == 1
        assert event.last_error_message == "unexpected status code: 500"
        assert event.last_response_status == 500
        assert event.last_response_body == "boom"

    def test_record_failed_attempt_never_exceeds_max(self):
        """The counter is capped at max_attempts."""
        event = make_event(delivery_attempts=1, max_attempts=1).mark_processing(FIXED_NOW)
        event.record_failed_attempt("again")
        assert event.delivery_attempts == 1
        assert event.attempts_exhausted

    def test_record_failed_attempt_requires_claim(self):
        """Attempts are only counted on claimed rows."""
        with pytest.raises(InvalidTransitionError):
            make_event().record_failed_attempt("nope")

    def test_mark_retrying(self):
        """Retrying rows carry their next due time."""
        event = make_event().mark_processing(FIXED_NOW)
        event.record_failed_attempt("timeout")
        next_retry = FIXED_NOW + timedelta(minutes=2)
        event.mark_retrying(FIXED_NOW, next_retry)
        assert event.status == EventStatus.RETRYING
        assert event.next_retry_at == next_retry

    def test_mark_failed(self):
        """Failing a row clears any retry time."""
        event = make_event(max_attempts=1).mark_processing(FIXED_NOW)
        event.record_failed_attempt("refused")
        event.mark_failed(FIXED_NOW)
        assert event.status == EventStatus.FAILED
        assert event.next_retry_at is None
        assert event.is_terminal

    def test_terminal_rows_are_immutable(self):
        """No transition leaves delivered or failed."""
        event = make_event().mark_processing(FIXED_NOW)
        event.mark_delivered(FIXED_NOW, 200)
        with pytest.raises(InvalidTransitionError):
            event.mark_processing(FIXED_NOW)
        with pytest.raises(InvalidTransitionError):
            event.mark_failed(FIXED_NOW)

    def test_release_to_pending(self):
        """Releasing hands the row back without counting an attempt."""
        event = make_event().mark_processing(FIXED_NOW)
        event.release(FIXED_NOW, EventStatus.PENDING)
        assert event.status == EventStatus.PENDING
        assert event.next_retry_at is None
        assert event.delivery_attempts == 0

    def test_release_to_retrying_is_due_immediately(self):
        """A row released as retrying keeps the invariant and is due now."""
        event = make_event(
            status=EventStatus.RETRYING,
            delivery_attempts=1,
            next_retry_at=FIXED_NOW,
        ).mark_processing(FIXED_NOW)
        event.release(FIXED_NOW, EventStatus.RETRYING)
        assert event.next_retry_at == FIXED_NOW
        assert event.is_due(FIXED_NOW)

    def test_release_to_terminal_rejected(self):
        """Release cannot be used to finish a row."""
        event = make_event().mark_processing(FIXED_NOW)
        with pytest.raises(InvalidTransitionError):
            event.release(FIXED_NOW, EventStatus.DELIVERED)

    def test_secret_not_serialized(self):
        """The copied secret stays out of dumps."""
        event = make_event(webhook_secret="row_secret")
        assert "webhook_secret" not in event.model_dump()
        assert "row_secret" not in repr(event)


class TestDomainEvent:
    """Tests for the emitter's input."""

    def test_defaults(self):
        """Version defaults to 1.0 and source to None."""
        event = DomainEvent(event_type="user.created", user_id=uuid4())
        assert event.event_version == "1.0"
        assert event.event_source is None
        assert event.payload is None
        assert event.metadata == {}

    def test_event_type_required(self):
        """An empty event type is rejected."""
        with pytest.raises(ValidationError):
            DomainEvent(event_type="", user_id=uuid4())

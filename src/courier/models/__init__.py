"""Record models for Courier.

Records:
    - WebhookSubscription: A registered endpoint and its delivery policy
    - WebhookEvent: One queued delivery of one domain event to one subscription
    - DomainEvent: The emitter's input

Supporting Types:
    - EventStatus: Row state machine (pending, processing, delivered, retrying, failed)
"""

from .base import CourierModel, utc_now
from .webhook import (
    CLAIMABLE_STATUSES,
    TERMINAL_STATUSES,
    DomainEvent,
    EventStatus,
    WebhookEvent,
    WebhookSubscription,
    can_transition,
)

__all__ = [
    # Base types
    "CourierModel",
    "utc_now",
    # Records
    "DomainEvent",
    "WebhookEvent",
    "WebhookSubscription",
    # State machine
    "CLAIMABLE_STATUSES",
    "EventStatus",
    "TERMINAL_STATUSES",
    "can_transition",
]

"""Courier: reliable outbound webhooks for domain events.

Courier persists one delivery row per subscription when a domain event is
emitted, and delivers those rows later with signed HTTP POSTs, retrying
with exponential backoff until a receiver answers 2xx or attempts run out.

Quick Start:
    from courier import (
        DomainEvent,
        InMemoryWebhookRepository,
        WebhookDispatcher,
        WebhookEmitter,
    )

    repository = InMemoryWebhookRepository()
    emitter = WebhookEmitter(repository)
    await emitter.emit(
        DomainEvent(event_type="user.created", user_id=user_id, payload={"id": "42"})
    )

    async with WebhookDispatcher(repository) as dispatcher:
        summary = await dispatcher.process_pending_events()

Records:
    - WebhookSubscription: A registered receiver and its retry policy
    - WebhookEvent: One queued delivery to one receiver
    - DomainEvent: What producers hand to the emitter
"""

__version__ = "0.1.0"

# Configuration
from .config import Settings, settings

# Exceptions
from .exceptions import (
    ConfigurationError,
    CourierError,
    DeliveryError,
    InvalidTransitionError,
    MarshalError,
    MaxRetriesExceededError,
    NotFoundError,
    PersistenceError,
    StorageError,
)

# Logging
from .logging import (
    bind_context,
    clear_context,
    configure_logging,
    delivery_context,
    get_logger,
    unbind_context,
)

# Models
from .models import (
    DomainEvent,
    EventStatus,
    WebhookEvent,
    WebhookSubscription,
)

# Storage
from .storage import (
    InMemoryWebhookRepository,
    PostgresWebhookRepository,
    WebhookRepository,
)

# Webhooks
from .webhooks import (
    DispatchSummary,
    WebhookDispatcher,
    WebhookEmitter,
    emit_event,
    verify_signature,
)

__all__ = [
    # Version
    "__version__",
    # Configuration
    "Settings",
    "settings",
    # Exceptions
    "ConfigurationError",
    "CourierError",
    "DeliveryError",
    "InvalidTransitionError",
    "MarshalError",
    "MaxRetriesExceededError",
    "NotFoundError",
    "PersistenceError",
    "StorageError",
    # Logging
    "bind_context",
    "clear_context",
    "configure_logging",
    "delivery_context",
    "get_logger",
    "unbind_context",
    # Models
    "DomainEvent",
    "EventStatus",
    "WebhookEvent",
    "WebhookSubscription",
    # Storage
    "InMemoryWebhookRepository",
    "PostgresWebhookRepository",
    "WebhookRepository",
    # Webhooks
    "DispatchSummary",
    "WebhookDispatcher",
    "WebhookEmitter",
    "emit_event",
    "verify_signature",
]

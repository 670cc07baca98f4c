"""Webhook emission and delivery for Courier.

Domain events are fanned out into one queued row per subscription by the
emitter, then delivered with HMAC signatures and exponential backoff by
the dispatcher.

Example:
    ```python
    from courier.webhooks import WebhookDispatcher, WebhookEmitter, emit_event

    emitter = WebhookEmitter(repository)
    await emit_event(
        emitter,
        event_type="user.created",
        user_id=user.id,
        payload={"email": user.email},
    )

    # Later, from a scheduler
    async with WebhookDispatcher(repository) as dispatcher:
        await dispatcher.process_pending_events()
    ```
"""

from .dispatcher import DispatchSummary, WebhookDispatcher, compute_backoff
from .emitter import WebhookEmitter, emit_event, hash_payload, serialize_payload
from .signing import Signer, compute_signature, signature_header, verify_signature

__all__ = [
    "DispatchSummary",
    "Signer",
    "WebhookDispatcher",
    "WebhookEmitter",
    "compute_backoff",
    "compute_signature",
    "emit_event",
    "hash_payload",
    "serialize_payload",
    "signature_header",
    "verify_signature",
]

"""Courier exception hierarchy.

Provides structured exceptions for error handling throughout the codebase.
All exceptions inherit from CourierError for easy catching.

Only MarshalError is ever surfaced to a domain caller of ``emit``. The
remaining errors describe per-row failures that the emitter and dispatcher
log and absorb, so webhook delivery can never destabilize the operation
that produced the event.
"""

from __future__ import annotations


class CourierError(Exception):
    """Base exception for all Courier errors.

    Attributes:
        message: Human-readable error description.
        code: Machine-readable error code.
    """

    code: str = "courier_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        """Convert exception to a log/API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }


class MarshalError(CourierError):
    """Event payload could not be serialized.

    Raised by the emitter before any row is written, so a failed
    serialization never leaves a partial fan-out behind.
    """

    code: str = "marshal_error"


class PersistenceError(CourierError):
    """A single webhook event row failed to write.

    Attributes:
        subscription_id: Subscription whose row could not be persisted.
    """

    code: str = "persistence_error"

    def __init__(self, subscription_id: object, message: str) -> None:
        self.subscription_id = subscription_id
        super().__init__(f"subscription {subscription_id}: {message}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to a log/API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "subscription_id": str(self.subscription_id),
                "message": self.message,
            }
        }


class DeliveryError(CourierError):
    """An HTTP delivery attempt failed and may be retried.

    Covers non-2xx responses, network errors and timeouts alike.

    Attributes:
        status_code: HTTP status if a response was received.
        response_body: Truncated response body if one was read.
    """

    code: str = "delivery_error"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        """Convert exception to a log/API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "status_code": self.status_code,
                "message": self.message,
            }
        }


class MaxRetriesExceededError(CourierError):
    """A webhook event exhausted its delivery attempts.

    Terminal. Callers only ever observe this as the row's ``failed`` status.

    Attributes:
        event_id: ID of the failed webhook event.
        attempts: Number of attempts made.
    """

    code: str = "max_retries_exceeded"

    def __init__(self, event_id: object, attempts: int, last_error: str) -> None:
        self.event_id = event_id
        self.attempts = attempts
        super().__init__(f"max retries exceeded after {attempts} attempts: {last_error}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to a log/API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "event_id": str(self.event_id),
                "attempts": self.attempts,
                "message": self.message,
            }
        }


class StorageError(CourierError):
    """Storage operation failed.

    Raised when a repository operation fails at the driver level.
    """

    code: str = "storage_error"


class NotFoundError(CourierError):
    """Resource not found.

    Attributes:
        resource_type: Type of resource (e.g., "webhook_event").
        resource_id: ID of the missing resource.
    """

    code: str = "not_found"

    def __init__(self, resource_type: str, resource_id: object) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} not found: {resource_id}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to a log/API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "resource_type": self.resource_type,
                "resource_id": str(self.resource_id),
                "message": self.message,
            }
        }


class ConfigurationError(CourierError):
    """Configuration error.

    Raised when required configuration is missing or invalid.
    """

    code: str = "configuration_error"


class InvalidTransitionError(CourierError):
    """A webhook event was asked to make a state change it cannot make.

    Raised when mutating a row that is already ``delivered`` or ``failed``,
    or when skipping the ``processing`` claim.

    Attributes:
        current: Status the row is in.
        target: Status that was requested.
    """

    code: str = "invalid_transition"

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"cannot transition webhook event from {current} to {target}")

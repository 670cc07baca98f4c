"""HMAC-SHA256 signing for outbound webhook requests.

The signed message is the Unix timestamp, a dot, and the raw JSON body:

    X-Webhook-Signature: sha256=<hex(HMAC-SHA256(secret, "<unix_ts>.<raw_json_body>"))>
    X-Webhook-Timestamp: <unix_ts>

Receivers verify by recomputing the HMAC over the exact bytes they
received with the shared secret, e.g. with :func:`verify_signature`.
"""

from __future__ import annotations

import hashlib
import hmac
import time

from courier.exceptions import ConfigurationError

SIGNATURE_PREFIX = "sha256="


def _message(timestamp: int, payload: bytes) -> bytes:
    return f"{timestamp}.".encode() + payload


def compute_signature(timestamp: int, payload: bytes, secret: str) -> str:
    """Compute the hex HMAC-SHA256 of ``"<timestamp>.<payload>"``.

    Args:
        timestamp: Unix timestamp in seconds.
        payload: Raw request body bytes.
        secret: Shared secret for HMAC.

    Returns:
        Lowercase hex digest.
    """
    return hmac.new(
        key=secret.encode("utf-8"),
        msg=_message(timestamp, payload),
        digestmod=hashlib.sha256,
    ).hexdigest()


def signature_header(timestamp: int, payload: bytes, secret: str) -> str:
    """Signature in the ``X-Webhook-Signature`` header format ("sha256=<hex>")."""
    return f"{SIGNATURE_PREFIX}{compute_signature(timestamp, payload, secret)}"


def verify_signature(
    timestamp: int | str,
    payload: bytes,
    secret: str,
    signature: str,
    tolerance_seconds: float | None = None,
    now: float | None = None,
) -> bool:
    """Verify a received webhook signature.

    No replay window is applied unless ``tolerance_seconds`` is given; how
    old a signed request may be is the receiver's decision.

    Args:
        timestamp: Value of the ``X-Webhook-Timestamp`` header.
        payload: Raw request body exactly as received.
        secret: Shared secret for HMAC.
        signature: Value of the ``X-Webhook-Signature`` header.
        tolerance_seconds: Reject timestamps further than this from ``now``.
        now: Unix time to compare against. Defaults to ``time.time()``.

    Returns:
        True if the signature is valid (and fresh, when a tolerance is set).
    """
    try:
        ts = int(timestamp)
    except (TypeError, ValueError):
        return False

    if tolerance_seconds is not None:
        current = time.time() if now is None else now
        if abs(current - ts) > tolerance_seconds:
            return False

    expected = signature_header(ts, payload, secret)
    # Bytes compare: compare_digest rejects non-ASCII str
    return hmac.compare_digest(expected.encode(), signature.encode("utf-8", "surrogateescape"))


class Signer:
    """Signs payloads with a subscription secret or an injected default.

    Example:
        ```python
        signer = Signer(default_secret=settings.effective_webhook_secret)
        header = signer.header(int(time.time()), body, secret=row.webhook_secret)
        ```
    """

    def __init__(self, default_secret: str) -> None:
        if not default_secret:
            raise ConfigurationError("Signer requires a non-empty default secret")
        self._default_secret = default_secret

    def resolve_secret(self, secret: str | None = None) -> str:
        """Subscription secret if non-empty, else the default."""
        return secret if secret else self._default_secret

    def sign(self, timestamp: int, payload: bytes, secret: str | None = None) -> str:
        """Hex signature of ``payload`` at ``timestamp``."""
        return compute_signature(timestamp, payload, self.resolve_secret(secret))

    def header(self, timestamp: int, payload: bytes, secret: str | None = None) -> str:
        """``X-Webhook-Signature`` header value for ``payload``."""
        return f"{SIGNATURE_PREFIX}{self.sign(timestamp, payload, secret)}"

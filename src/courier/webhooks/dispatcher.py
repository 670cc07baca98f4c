"""Batch delivery of queued webhook events.

Each ``process_pending_events`` call lists due rows, claims each one with
a compare-and-set, POSTs a signed envelope to the row's URL and writes
the outcome back:

    pending ──► processing ──► delivered          (2xx, terminal)
    retrying ─┘            ├──► retrying          (attempts left)
                           └──► failed            (attempts exhausted, terminal)

Delivery is at-least-once. A receiver can see the same event twice, for
example when its 2xx response is lost to a timeout, so receivers must
deduplicate on ``event_id`` (the ``X-Webhook-Event-ID`` header) or on the
payload hash.

The dispatcher keeps no state between calls and runs no loop of its own;
an external scheduler decides how often to call it.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import httpx

from courier.config import settings
from courier.exceptions import DeliveryError, MaxRetriesExceededError
from courier.logging import delivery_context
from courier.models import EventStatus, WebhookEvent, utc_now

from .signing import Signer

if TYPE_CHECKING:
    from courier.storage import WebhookRepository

logger = logging.getLogger(__name__)

DEFAULT_BASE_BACKOFF_SECONDS = 60.0

HEADER_SIGNATURE = "X-Webhook-Signature"
HEADER_TIMESTAMP = "X-Webhook-Timestamp"
HEADER_EVENT_ID = "X-Webhook-Event-ID"
HEADER_EVENT_TYPE = "X-Webhook-Event-Type"


def compute_backoff(
    attempts: int,
    multiplier: float,
    base_seconds: float = DEFAULT_BASE_BACKOFF_SECONDS,
) -> timedelta:
    """Delay before the next attempt: ``base * multiplier ** attempts``.

    Args:
        attempts: Failed attempts so far (after incrementing).
        multiplier: Subscription's backoff multiplier (>= 1).
        base_seconds: Base delay unit.
    """
    return timedelta(seconds=base_seconds * multiplier**attempts)


def _rfc3339(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


@dataclass
class DispatchSummary:
    """Counters for one ``process_pending_events`` call."""

    claimed: int = 0
    delivered: int = 0
    retrying: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0

    @property
    def processed(self) -> int:
        return self.delivered + self.retrying + self.failed


class WebhookDispatcher:
    """Claims due webhook events and delivers them over HTTP.

    Example:
        ```python
        async with WebhookDispatcher(repository, default_secret=secret) as dispatcher:
            summary = await dispatcher.process_pending_events(limit=100)
        ```
    """

    def __init__(
        self,
        repository: WebhookRepository,
        default_secret: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float | None = None,
        max_concurrent: int | None = None,
        base_backoff_seconds: float | None = None,
        default_backoff_multiplier: float | None = None,
        response_body_limit: int | None = None,
        stuck_after: timedelta | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the webhook dispatcher.

        Unset values fall back to the ``COURIER_WEBHOOK_*`` settings.

        Args:
            repository: Storage for event rows and subscriptions.
            default_secret: Signing secret for rows and subscriptions without one.
            client: Shared HTTP client. One is created (and owned) if omitted.
            timeout_seconds: Per-attempt HTTP timeout.
            max_concurrent: Maximum deliveries in flight within one batch.
            base_backoff_seconds: Base retry delay.
            default_backoff_multiplier: Multiplier when neither row nor
                subscription carries one.
            response_body_limit: Bytes of response body kept on the row.
                Longer bodies are truncated on purpose.
            stuck_after: Age of a processing claim considered abandoned.
            clock: Returns the current UTC time.
        """
        self._repository = repository
        self._signer = Signer(
            settings.effective_webhook_secret if default_secret is None else default_secret
        )
        self._timeout = (
            settings.webhook_request_timeout_seconds if timeout_seconds is None else timeout_seconds
        )
        self._max_concurrent = (
            settings.webhook_max_concurrent if max_concurrent is None else max_concurrent
        )
        self._semaphore = asyncio.Semaphore(self._max_concurrent)
        self._base_backoff = (
            settings.webhook_base_backoff_seconds
            if base_backoff_seconds is None
            else base_backoff_seconds
        )
        self._default_multiplier = (
            settings.webhook_retry_backoff_multiplier
            if default_backoff_multiplier is None
            else default_backoff_multiplier
        )
        self._body_limit = (
            settings.webhook_response_body_limit
            if response_body_limit is None
            else response_body_limit
        )
        self._stuck_after = (
            timedelta(minutes=settings.webhook_stuck_minutes) if stuck_after is None else stuck_after
        )
        self._clock = clock
        self._owns_client = client is None
        self._client = (
            client if client is not None else httpx.AsyncClient(timeout=httpx.Timeout(self._timeout))
        )

    async def aclose(self) -> None:
        """Close the HTTP client if this dispatcher created it."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> WebhookDispatcher:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # -- Batch entry points -------------------------------------------------

    async def process_pending_events(self, limit: int | None = None) -> DispatchSummary:
        """Claim and deliver up to ``limit`` due webhook events.

        Safe to call repeatedly and from several processes at once: a row
        claimed by another dispatcher is skipped. Per-row failures are
        logged and recorded on the row, never raised.

        Args:
            limit: Maximum rows to take. Defaults to settings.webhook_batch_size.

        Returns:
            Counters describing what happened to each listed row.

        Raises:
            StorageError: If the due rows cannot be listed.
        """
        batch = settings.webhook_batch_size if limit is None else limit
        if batch <= 0:
            return DispatchSummary()
        due = await self._repository.get_pending_events(batch, self._clock())

        summary = DispatchSummary()
        if not due:
            logger.debug("No webhook events due")
            return summary

        results = await asyncio.gather(
            *(self._process(event, summary) for event in due),
            return_exceptions=True,
        )
        for event, result in zip(due, results):
            if isinstance(result, BaseException):
                summary.errors += 1
                logger.error(
                    "Unhandled error processing webhook event %s", event.id, exc_info=result
                )

        logger.info(
            "Webhook batch processed: %d delivered, %d retrying, %d failed, %d skipped",
            summary.delivered,
            summary.retrying,
            summary.failed,
            summary.skipped,
            extra={"claimed": summary.claimed, "errors": summary.errors},
        )
        return summary

    async def reclaim_stuck_events(self) -> int:
        """Return abandoned ``processing`` rows to ``pending``.

        A dispatcher that crashes mid-delivery leaves its claim behind; this
        makes such rows claimable again once they are older than
        ``stuck_after``.

        Returns:
            Number of rows reclaimed.
        """
        now = self._clock()
        reclaimed = await self._repository.reclaim_stuck_events(now - self._stuck_after, now)
        if reclaimed:
            logger.warning("Reclaimed %d stuck webhook events", reclaimed)
        return reclaimed

    # -- Per-row processing -------------------------------------------------

    async def _process(self, event: WebhookEvent, summary: DispatchSummary) -> None:
        async with self._semaphore:
            listed_status = event.status
            try:
                claimed = await self._repository.claim_event(
                    event.id, listed_status, self._clock()
                )
            except Exception:
                summary.errors += 1
                logger.exception("Failed to claim webhook event %s", event.id)
                return
            if claimed is None:
                # Another dispatcher owns it, or it changed since listing
                summary.skipped += 1
                return
            summary.claimed += 1

            try:
                outcome = await self._deliver(claimed)
            except asyncio.CancelledError:
                await asyncio.shield(self._release(claimed, listed_status))
                raise
            except MaxRetriesExceededError as e:
                summary.failed += 1
                logger.warning("Webhook event failed permanently: %s", e.message, extra=e.to_dict())
                return
            except Exception:
                summary.errors += 1
                logger.exception("Unexpected error delivering webhook event %s", claimed.id)
                return

            if outcome == EventStatus.DELIVERED:
                summary.delivered += 1
            else:
                summary.retrying += 1

    async def _deliver(self, event: WebhookEvent) -> EventStatus:
        with delivery_context(event.id, event.event_type, event.webhook_url):
            secret, multiplier = await self._resolve_policy(event)
            try:
                body = self.build_envelope(event)
                timestamp = int(self._clock().timestamp())
                headers = {
                    "Content-Type": "application/json",
                    HEADER_SIGNATURE: self._signer.header(timestamp, body, secret),
                    HEADER_TIMESTAMP: str(timestamp),
                    HEADER_EVENT_ID: str(event.id),
                    HEADER_EVENT_TYPE: event.event_type,
                }
                status_code, response_body = await self._send(event.webhook_url, body, headers)
            except DeliveryError as e:
                return await self._handle_delivery_error(event, e, multiplier)

            event.mark_delivered(self._clock(), status_code, response_body)
            await self._write_back(event)
            logger.info("Webhook delivered (status %d)", status_code)
            return EventStatus.DELIVERED

    async def _handle_delivery_error(
        self,
        event: WebhookEvent,
        error: DeliveryError,
        multiplier: float,
    ) -> EventStatus:
        now = self._clock()
        event.record_failed_attempt(error.message, error.status_code, error.response_body)

        if event.attempts_exhausted:
            event.mark_failed(now)
            await self._write_back(event)
            raise MaxRetriesExceededError(event.id, event.delivery_attempts, error.message) from error

        next_retry = now + compute_backoff(event.delivery_attempts, multiplier, self._base_backoff)
        event.mark_retrying(now, next_retry)
        await self._write_back(event)
        logger.info(
            "Webhook delivery failed, retry %d/%d scheduled at %s: %s",
            event.delivery_attempts,
            event.max_attempts,
            next_retry.isoformat(),
            error.message,
        )
        return EventStatus.RETRYING

    async def _write_back(self, event: WebhookEvent) -> None:
        written = await self._repository.update_event(event, EventStatus.PROCESSING)
        if not written:
            logger.warning(
                "Webhook event %s left processing before its outcome was saved", event.id
            )

    async def _release(self, event: WebhookEvent, status: EventStatus) -> None:
        released = await self._repository.release_event(event.id, status, self._clock())
        logger.info(
            "Webhook delivery cancelled, event %s %s",
            event.id,
            f"released as {status.value}" if released else "not released",
        )

    async def _resolve_policy(self, event: WebhookEvent) -> tuple[str, float]:
        """Signing secret and backoff multiplier for a row.

        Values copied onto the row at fan-out win; the live subscription
        for the URL fills gaps, then the dispatcher defaults.
        """
        secret = event.webhook_secret
        multiplier = event.retry_backoff_multiplier
        if not secret or multiplier is None:
            try:
                subscription = await self._repository.get_subscription_by_url(event.webhook_url)
            except Exception:
                logger.warning("Subscription lookup failed, using defaults", exc_info=True)
                subscription = None
            if subscription is not None:
                secret = secret or subscription.webhook_secret
                if multiplier is None:
                    multiplier = subscription.retry_backoff_multiplier
        return self._signer.resolve_secret(secret), multiplier or self._default_multiplier

    @staticmethod
    def build_envelope(event: WebhookEvent) -> bytes:
        """Serialize the JSON body POSTed to the receiver.

        Raises:
            DeliveryError: If the stored payload is not valid JSON.
        """
        try:
            payload = json.loads(event.payload)
        except ValueError as e:
            raise DeliveryError(f"stored payload is not valid JSON: {e}") from e
        envelope = {
            "event_id": str(event.id),
            "event_type": event.event_type,
            "event_version": event.event_version,
            "event_source": event.event_source,
            "timestamp": _rfc3339(event.created_at),
            "user_id": str(event.user_id),
            "payload": payload,
        }
        return json.dumps(envelope, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    async def _send(
        self,
        url: str,
        body: bytes,
        headers: dict[str, str],
    ) -> tuple[int, str]:
        """POST ``body`` and return (status, truncated body) for a 2xx response.

        Raises:
            DeliveryError: On non-2xx status, timeout, or transport failure.
        """
        try:
            async with self._client.stream(
                "POST",
                url,
                content=body,
                headers=headers,
                timeout=self._timeout,
            ) as response:
                response_body = await self._read_body(response)
                status_code = response.status_code
        except httpx.TimeoutException as e:
            raise DeliveryError(f"request timeout: {e!r}") from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise DeliveryError(f"request failed: {e!r}") from e

        if not 200 <= status_code < 300:
            raise DeliveryError(
                f"unexpected status code: {status_code}",
                status_code=status_code,
                response_body=response_body,
            )
        return status_code, response_body

    async def _read_body(self, response: httpx.Response) -> str:
        # Only the first response_body_limit bytes are kept
        if self._body_limit <= 0:
            return ""
        buffer = bytearray()
        async for chunk in response.aiter_bytes():
            buffer.extend(chunk)
            if len(buffer) >= self._body_limit:
                break
        return bytes(buffer[: self._body_limit]).decode("utf-8", errors="replace")

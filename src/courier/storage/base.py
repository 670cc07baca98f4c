"""The storage contract the emitter and dispatcher depend on.

Implementations must make ``claim_event`` and ``update_event`` atomic
compare-and-set operations on the row's status. That single guarantee is
what lets several dispatchers run ``process_pending_events`` against the
same table without delivering a row twice in one cycle.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

if TYPE_CHECKING:
    from courier.models import EventStatus, WebhookEvent, WebhookSubscription


class WebhookRepository(ABC):
    """Abstract base class for webhook storage backends.

    Example:
        ```python
        repo = InMemoryWebhookRepository()
        await repo.create_subscription(subscription)
        due = await repo.get_pending_events(limit=50, now=utc_now())
        claimed = await repo.claim_event(due[0].id, due[0].status, utc_now())
        ```
    """

    # -- Events -------------------------------------------------------------

    @abstractmethod
    async def create_event(self, event: WebhookEvent) -> WebhookEvent:
        """Persist a new webhook event row.

        Args:
            event: The row to insert.

        Returns:
            The stored row.
        """
        ...

    @abstractmethod
    async def get_event(self, event_id: UUID) -> WebhookEvent | None:
        """Get a webhook event by ID, or None if it does not exist."""
        ...

    @abstractmethod
    async def get_pending_events(self, limit: int, now: datetime) -> list[WebhookEvent]:
        """List due rows, oldest ``scheduled_at`` first.

        A row is due when its status is pending or retrying and its
        ``next_retry_at`` is null or not after ``now``.

        Args:
            limit: Maximum rows to return.
            now: Reference time for due-ness.

        Returns:
            Due rows ordered by ``scheduled_at`` ascending.
        """
        ...

    @abstractmethod
    async def claim_event(
        self,
        event_id: UUID,
        expected_status: EventStatus,
        now: datetime,
    ) -> WebhookEvent | None:
        """Atomically move a due row from ``expected_status`` to processing.

        The row must still be due at ``now``: a retrying row whose
        ``next_retry_at`` moved into the future since it was listed is not
        claimed.

        Args:
            event_id: Row to claim.
            expected_status: Status the caller observed when listing.
            now: Claim time, written to ``processed_at``.

        Returns:
            The claimed row, or None if another dispatcher got there first
            (or the row changed since it was listed).
        """
        ...

    @abstractmethod
    async def update_event(
        self,
        event: WebhookEvent,
        expected_status: EventStatus,
    ) -> bool:
        """Write back a row's outcome if its stored status still matches.

        Args:
            event: Row carrying the new status and outcome fields.
            expected_status: Status the stored row must currently have.

        Returns:
            True if the row was written, False if the guard failed.
        """
        ...

    @abstractmethod
    async def release_event(
        self,
        event_id: UUID,
        status: EventStatus,
        now: datetime,
    ) -> bool:
        """Hand a processing row back as ``status`` without counting an attempt.

        Returns:
            True if the row was still processing and has been released.
        """
        ...

    @abstractmethod
    async def reclaim_stuck_events(self, processed_before: datetime, now: datetime) -> int:
        """Release rows left in processing since before ``processed_before``.

        Returns:
            Number of reclaimed rows.
        """
        ...

    # -- Subscriptions ------------------------------------------------------

    @abstractmethod
    async def get_active_subscriptions(self, event_type: str) -> list[WebhookSubscription]:
        """Active subscriptions whose ``event_types`` contain ``event_type``."""
        ...

    @abstractmethod
    async def get_subscription_by_url(self, url: str) -> WebhookSubscription | None:
        """First active subscription registered for ``url``, if any."""
        ...

    @abstractmethod
    async def create_subscription(
        self, subscription: WebhookSubscription
    ) -> WebhookSubscription:
        """Persist a new subscription."""
        ...

    @abstractmethod
    async def update_subscription(
        self, subscription: WebhookSubscription
    ) -> WebhookSubscription:
        """Replace a stored subscription.

        Raises:
            NotFoundError: If the subscription does not exist.
        """
        ...

    @abstractmethod
    async def delete_subscription(self, subscription_id: UUID) -> bool:
        """Delete a subscription. Queued rows keep their copied URL and secret.

        Returns:
            True if deleted, False if not found.
        """
        ...

"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import sys
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from uuid import UUID, uuid4

import httpx
import pytest

from courier.models import WebhookSubscription
from courier.storage import InMemoryWebhookRepository

# Add tests directory to path so tests can import these helpers
tests_dir = Path(__file__).parent
if str(tests_dir) not in sys.path:
    sys.path.insert(0, str(tests_dir))

FIXED_NOW = datetime(2025, 1, 15, 12, 0, 0, tzinfo=UTC)

DEFAULT_SECRET = "default_secret_for_tests"

Handler = Callable[[httpx.Request], httpx.Response | Awaitable[httpx.Response]]


class FakeClock:
    """Settable clock passed to the emitter and dispatcher."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        """Move time forward by a timedelta(**kwargs)."""
        self.now += timedelta(**kwargs)
        return self.now


class RecordingHandler:
    """MockTransport handler that records requests and replays scripted responses.

    Each entry in ``responses`` is either an ``httpx.Response`` or an
    exception instance to raise. The last entry repeats once the script
    runs out.
    """

    def __init__(self, *responses: httpx.Response | Exception) -> None:
        self.responses = list(responses) or [httpx.Response(200, text="ok")]
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        index = min(len(self.requests) - 1, len(self.responses) - 1)
        outcome = self.responses[index]
        if isinstance(outcome, Exception):
            raise outcome
        return httpx.Response(outcome.status_code, headers=outcome.headers, content=outcome.content)

    @property
    def calls(self) -> int:
        return len(self.requests)


def make_client(handler: Handler) -> httpx.AsyncClient:
    """An AsyncClient whose requests never leave the process."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def clock() -> FakeClock:
    """A clock frozen at FIXED_NOW."""
    return FakeClock()


@pytest.fixture
def repository() -> InMemoryWebhookRepository:
    """An empty in-memory repository."""
    return InMemoryWebhookRepository()


@pytest.fixture
def user_id() -> UUID:
    """Subject of emitted events."""
    return uuid4()


@pytest.fixture
def subscription() -> WebhookSubscription:
    """An active subscription to user.created with its own secret."""
    return WebhookSubscription(
        subscription_name="crm",
        webhook_url="https://receiver.example.com/hooks",
        webhook_secret="subscription_secret_abc",
        event_types={"user.created", "user.deleted"},
        max_retries=3,
        retry_backoff_multiplier=2.0,
        created_at=FIXED_NOW - timedelta(days=1),
        updated_at=FIXED_NOW - timedelta(days=1),
    )

"""Retry utilities for storage reads.

Retries read-only PostgreSQL queries on transient connection failures.
Writes are never retried here: a compare-and-set whose acknowledgement is
lost would otherwise be replayed against a row it already changed.
"""

from __future__ import annotations

import logging

import asyncpg  # type: ignore[import-untyped]
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncpg.exceptions.CannotConnectNowError,
    ConnectionError,
    TimeoutError,
)


def _log_retry(retry_state: RetryCallState) -> None:
    if retry_state.attempt_number > 0:
        logger.warning(
            "Retrying storage read",
            extra={
                "attempt": retry_state.attempt_number,
                "fn_name": retry_state.fn.__name__ if retry_state.fn else "unknown",
                "exception": str(retry_state.outcome.exception()) if retry_state.outcome else None,
            },
        )


storage_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
    retry=retry_if_exception_type(TRANSIENT_ERRORS),
    before_sleep=_log_retry,
    reraise=True,
)

"""Base model and shared helpers for Courier records."""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


class CourierModel(BaseModel):
    """Base class for persisted Courier records."""

    model_config = ConfigDict(extra="forbid")

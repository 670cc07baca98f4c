"""Structured logging configuration for Courier.

Courier modules log through ``logging.getLogger(__name__)``. This module
routes those stdlib records through a structlog processor chain so they
come out as JSON (production) or colored console lines (development),
carrying any context bound with :func:`bind_context` or
:func:`delivery_context`.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from structlog.typing import Processor

    from courier.config import Settings

# Loggers below this name are owned by Courier; the host's root logger is left alone.
ROOT_LOGGER_NAME = "courier"

_configured = False


def _shared_processors() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.ExtraAdder(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]


def configure_logging(
    level: str = "INFO",
    format: str = "json",
) -> None:
    """Configure structured logging for the ``courier`` logger tree.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        format: Output format - "json" for production, "text" for development.

    Example:
        ```python
        from courier.logging import configure_logging

        configure_logging(level="DEBUG", format="text")
        ```
    """
    global _configured

    log_level = getattr(logging, level.upper(), logging.INFO)
    shared = _shared_processors()

    renderer: Processor
    if format.lower() == "json":
        renderer = structlog.processors.JSONRenderer()
        final: list[Processor] = [
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ]
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)
        final = [structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer]

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=final,
        )
    )

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.handlers = [handler]
    root.setLevel(log_level)
    root.propagate = False

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    _configured = True


def configure_from_settings(settings: Settings) -> None:
    """Configure logging from a Settings instance (log_level / log_format)."""
    configure_logging(level=settings.log_level, format=settings.log_format)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name. Defaults to the ``courier`` root logger.

    Returns:
        A bound structlog logger.
    """
    if not _configured:
        configure_logging()

    return structlog.get_logger(name or ROOT_LOGGER_NAME)  # type: ignore[no-any-return]


def bind_context(**kwargs: object) -> None:
    """Bind context variables to all subsequent log messages in this context."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    """Clear all bound context variables."""
    structlog.contextvars.clear_contextvars()


def unbind_context(*keys: str) -> None:
    """Remove specific keys from the logging context."""
    structlog.contextvars.unbind_contextvars(*keys)


@contextmanager
def delivery_context(event_id: object, event_type: str, webhook_url: str) -> Iterator[None]:
    """Bind the identity of one webhook event for the duration of a delivery.

    Every record logged inside the block, including those from the storage
    layer, carries ``event_id``, ``event_type`` and ``webhook_url``.

    Example:
        ```python
        with delivery_context(event.id, event.event_type, event.webhook_url):
            await dispatcher.deliver(event)
        ```
    """
    with structlog.contextvars.bound_contextvars(
        event_id=str(event_id),
        event_type=event_type,
        webhook_url=webhook_url,
    ):
        yield

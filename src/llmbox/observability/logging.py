"""Structured logging: structlog configuration, Sentry bridge, correlation scope.

Provides:
- ``configure_logging(...)``: JSON rendering (production) or colored console
  (development), level filtering, and ERROR/CRITICAL forwarding to Sentry.
- ``init_sentry(dsn)``: Initialize Sentry SDK.  No-op when *dsn* is empty.
- ``correlation_scope(message_id)``: Bind the inbound message id as
  ``correlation_id`` on every log event emitted inside the block.
- ``body_preview(text)``: Truncate message bodies before they reach a log line.

Every module obtains its logger via ``structlog.get_logger()``; this module owns
how those events are enriched, filtered, and rendered.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

import sentry_sdk
import structlog
from sentry_sdk.integrations.logging import LoggingIntegration
from structlog_sentry import SentryProcessor

SERVICE_NAME = "llmbox-email-webhook"

_LEVELS: dict[str, int] = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def resolve_log_level(name: str) -> int:
    """Map a configured level name to a ``logging`` level (INFO if unknown)."""
    return _LEVELS.get(name.strip().upper(), logging.INFO)


def init_sentry(dsn: str) -> None:
    """Initialize Sentry SDK with the given *dsn*.

    When *dsn* is empty the function returns immediately -- no network calls,
    no SDK initialization.  Safe to call unconditionally at startup.

    Args:
        dsn: Sentry DSN string.  Empty string disables Sentry.
    """
    if not dsn:
        return

    sentry_sdk.init(
        dsn=dsn,
        traces_sample_rate=0.1,
        send_default_pii=False,
        integrations=[
            # structlog-sentry does the capturing; the stdlib integration would
            # report every event twice.
            LoggingIntegration(event_level=None, level=None),
        ],
    )


def configure_logging(
    production: bool = False,
    log_level: str = "INFO",
    sentry_dsn: str = "",
) -> None:
    """Configure structlog for production (JSON) or development (console).

    Args:
        production: Render JSON lines if ``True``, colored console otherwise.
        log_level: Minimum level name (DEBUG, INFO, WARN, ERROR, CRITICAL).
        sentry_dsn: When set, ERROR and CRITICAL events are sent to Sentry.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
    ]

    if sentry_dsn:
        init_sentry(sentry_dsn)
        processors.append(SentryProcessor(event_level=logging.ERROR))

    processors.extend(
        [
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
        ]
    )

    renderer: structlog.types.Processor
    if production:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[*processors, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(resolve_log_level(log_level)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(service=SERVICE_NAME)


@contextmanager
def correlation_scope(message_id: str) -> Iterator[None]:
    """Bind *message_id* as ``correlation_id`` for the duration of the block.

    structlog contextvars are task-local, so concurrent pipeline runs on the
    same event loop never see each other's correlation id.
    """
    with structlog.contextvars.bound_contextvars(correlation_id=message_id):
        yield


def body_preview(text: str, limit: int = 100) -> str:
    """Truncate *text* to *limit* characters, appending ``...`` when cut."""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."

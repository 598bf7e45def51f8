"""Structured logging configuration.

Configures structlog with JSON output in production and a coloured console
renderer in development. Request ids are carried through contextvars, so
every log line emitted while the hub serves a request (router, provider,
budget, cache) is correlated without passing the id around.

Log format (production):
    {
        "timestamp": "2026-02-17T10:30:45.123456Z",
        "level": "info",
        "logger": "model_hub.hub",
        "event": "hub.request_completed",
        "request_id": "req_789...",
        "provider": "openai",
        "model": "gpt-4o-mini",
        "cost": 0.000123
    }
"""

from __future__ import annotations

import logging
import sys
from contextlib import AbstractContextManager

import structlog
from structlog.types import Processor


def configure_logging(
    *,
    json_logs: bool = False,
    log_level: str = "INFO",
) -> None:
    """Configure structured logging for the process.

    Args:
        json_logs: Use JSON format (True for production, False for dev)
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_logs:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.RichTracebackFormatter(),
            ),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ------------------------------------------------------------------ #
# Context Binding Helpers
# ------------------------------------------------------------------ #


def request_context(request_id: str, **extra: str) -> AbstractContextManager[None]:
    """Bind the request id (and any extra keys) to the log context for a block.

    The previous context is restored when the block exits, so nested hubs and
    the HTTP middleware do not clobber each other's bindings.

    Args:
        request_id: Request identifier
        **extra: Additional context, e.g. ``mode="chat"``
    """
    return structlog.contextvars.bound_contextvars(request_id=request_id, **extra)


def clear_context() -> None:
    """Clear all context variables (useful for testing)."""
    structlog.contextvars.clear_contextvars()

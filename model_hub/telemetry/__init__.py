"""Logging and metrics."""

from model_hub.telemetry.logging import clear_context, configure_logging, request_context

__all__ = [
    "clear_context",
    "configure_logging",
    "request_context",
]

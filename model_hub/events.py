"""EventBus - observability events emitted by the hub.

Collaborators (dashboards, alerting, metrics exporters) subscribe to hub
events instead of wrapping the hub. Events carry plain dict payloads and
never allow a subscriber to alter a request or response.

Handlers may be plain functions or coroutines. Handler failures are logged
and not propagated: a broken subscriber must never fail a chat request.

Usage:
    bus = EventBus()
    bus.subscribe(HubEvent.BUDGET_ALERT, notify_ops)
    bus.subscribe("*", audit_log.append)
    await bus.emit(HubEvent.REQUEST_COMPLETED, request_id=..., cost=...)
"""

from __future__ import annotations

import inspect
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import structlog

log = structlog.get_logger(__name__)

WILDCARD = "*"


class HubEvent(StrEnum):
    PROVIDER_REGISTERED = "provider_registered"
    PROVIDER_UNREGISTERED = "provider_unregistered"
    MODEL_SELECTED = "model_selected"
    REQUEST_COMPLETED = "request_completed"
    REQUEST_FAILED = "request_failed"
    CACHE_HIT = "cache_hit"
    STREAM_STARTED = "stream_started"
    STREAM_COMPLETED = "stream_completed"
    STREAM_ERROR = "stream_error"
    STREAM_FAILED = "stream_failed"
    FALLBACK_TRIGGERED = "fallback_triggered"
    BUDGET_ALERT = "budget_alert"
    CONFIG_UPDATED = "config_updated"
    BUDGET_UPDATED = "budget_updated"
    SHUTDOWN = "shutdown"


@dataclass
class Event:
    type: HubEvent
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


Handler = Callable[[Event], Awaitable[None] | None]


class EventBus:
    """In-process publish/subscribe for HubEvents."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, event: HubEvent | str, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` for ``event`` ("*" for every event).

        Returns:
            A callable that removes the subscription
        """
        key = str(event)
        if key != WILDCARD and key not in HubEvent._value2member_map_:
            raise ValueError(f"Unknown hub event: {event}")
        self._handlers[key].append(handler)
        return lambda: self.unsubscribe(event, handler)

    def unsubscribe(self, event: HubEvent | str, handler: Handler) -> None:
        handlers = self._handlers.get(str(event), [])
        if handler in handlers:
            handlers.remove(handler)

    async def emit(self, event: HubEvent, **data: Any) -> Event:
        payload = Event(type=event, data=data)
        handlers = [*self._handlers.get(event.value, []), *self._handlers.get(WILDCARD, [])]

        for handler in handlers:
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                log.error(
                    "events.handler_failed",
                    hub_event=event.value,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(exc),
                )
        return payload

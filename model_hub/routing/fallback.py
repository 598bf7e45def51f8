"""Fallback execution across a router decision's model chain.

The FallbackExecutor runs a call against the selected model and, on failure,
against each alternative in order until one succeeds. This provides
resilience against:
- Provider outages and timeouts that outlast local retries
- Rate limiting on one vendor
- Models removed between routing and execution

Each intermediate failure is reported through ``on_fallback`` before the
next model is tried. When every model fails, AllFallbacksExhausted carries
the attempted models and the last error; a chain of one re-raises that
single error unchanged.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, Generic, TypeVar

import structlog

from model_hub.exceptions import AllFallbacksExhausted

log = structlog.get_logger(__name__)

T = TypeVar("T")

FallbackHook = Callable[[str, str, Exception], Awaitable[None]]


class FallbackExecutor(Generic[T]):
    """Tries models in order until one call succeeds."""

    def __init__(self, on_fallback: FallbackHook | None = None) -> None:
        self._on_fallback = on_fallback
        self._fallback_events: list[dict[str, Any]] = []

    async def execute(
        self,
        models: list[str],
        call: Callable[[str], Awaitable[T]],
    ) -> tuple[T, str]:
        """Run ``call(model_id)`` for each model until one succeeds.

        Args:
            models: Model ids in priority order (selected model first)
            call: Coroutine factory executing the request against a model

        Returns:
            Tuple of (result, model_id that produced it)

        Raises:
            AllFallbacksExhausted: If more than one model was tried and all failed
            Exception: The original error if the chain had a single model
        """
        if not models:
            raise ValueError("FallbackExecutor requires at least one model")

        last_error: Exception | None = None
        for index, model_id in enumerate(models):
            try:
                result = await call(model_id)
            except Exception as exc:
                last_error = exc
                remaining = models[index + 1 :]
                self._fallback_events.append(
                    {
                        "model_id": model_id,
                        "error_type": type(exc).__name__,
                        "error_message": str(exc),
                    }
                )
                log.warning(
                    "fallback.model_failed",
                    model_id=model_id,
                    error_type=type(exc).__name__,
                    error_message=str(exc),
                    remaining_models=len(remaining),
                )
                if remaining and self._on_fallback is not None:
                    await self._on_fallback(model_id, remaining[0], exc)
                continue

            if index > 0:
                log.info(
                    "fallback.model_succeeded",
                    model_id=model_id,
                    preferred_model=models[0],
                    attempts=index + 1,
                )
            return result, model_id

        assert last_error is not None
        if len(models) == 1:
            raise last_error

        log.error(
            "fallback.all_models_failed",
            attempted_models=models,
            fallback_events=self._fallback_events,
        )
        raise AllFallbacksExhausted(list(models), last_error) from last_error

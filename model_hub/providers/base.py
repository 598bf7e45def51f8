"""Provider adapter contract and shared adapter plumbing.

ModelProvider is the closed capability set the hub and router talk to. Any
object with these methods can be registered; the test suite registers plain
in-process fakes.

BaseProvider implements the parts every vendor adapter shares:
- model resolution against the provider's catalog
- bounded retry with exponential backoff for transient failures (tenacity)
- translation of stray SDK exceptions into UpstreamCallFailed
- rolling metrics and rate-limit bookkeeping
- conversion of vendor stream events into canonical StreamChunks
- token-estimate based cost previews

A vendor adapter supplies the wire translation: ``_complete``,
``_open_stream``, ``_read_stream``, ``_ping`` and ``default_models``.
"""

from __future__ import annotations

import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol, TypeVar, runtime_checkable

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from model_hub.exceptions import ModelNotFound, TransientProviderError, UpstreamCallFailed
from model_hub.providers.metrics import ProviderMetricsCollector
from model_hub.providers.tokens import TokenEstimator
from model_hub.types import (
    ChatMessage,
    ChunkType,
    FinishReason,
    ModelDefinition,
    ModelRequest,
    ModelResponse,
    PerformanceMetrics,
    ProviderConfig,
    ProviderHealth,
    ProviderStatus,
    ResponseMetadata,
    StreamChunk,
    StreamMetadata,
    TokenUsage,
    ToolCall,
)

log = structlog.get_logger(__name__)

T = TypeVar("T")

# HTTP statuses worth retrying (timeouts, throttling, upstream outages)
TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
_TRANSIENT_MESSAGE_HINTS = ("timeout", "timed out", "network", "connection", "temporary", "rate limit")

# Health classification
DEGRADED_LATENCY_MS = 5000.0
DEGRADED_ERROR_RATE = 0.1


@runtime_checkable
class ModelProvider(Protocol):
    """What the hub requires from a registered provider."""

    provider_id: str

    async def initialize(self, config: ProviderConfig) -> None: ...

    async def chat(self, request: ModelRequest) -> ModelResponse: ...

    def stream(self, request: ModelRequest) -> AsyncIterator[StreamChunk]: ...

    async def health_check(self) -> ProviderHealth: ...

    def get_metrics(self) -> PerformanceMetrics: ...

    def estimate_cost(
        self, messages: Sequence[ChatMessage], model_id: str | None = None
    ) -> float: ...

    def list_models(self) -> list[ModelDefinition]: ...

    async def shutdown(self) -> None: ...


@dataclass
class StreamEvent:
    """Vendor-neutral event produced by an adapter's ``_read_stream``.

    ``kind`` is one of "content", "tool_call", "usage" or "finish".
    """

    kind: str
    text: str = ""
    tool_call: ToolCall | None = None
    usage: TokenUsage | None = None
    finish_reason: FinishReason | None = None


class BaseProvider(ABC):
    """Shared implementation for vendor adapters."""

    estimator: TokenEstimator = TokenEstimator()
    # Vendor exception classes that are always transient
    transient_errors: tuple[type[BaseException], ...] = ()

    def __init__(self) -> None:
        self.provider_id = ""
        self._config: ProviderConfig | None = None
        self._models: dict[str, ModelDefinition] = {}
        self._default_model: str | None = None
        self._metrics = ProviderMetricsCollector("")
        self._rate_limit_remaining: int | None = None
        self._rate_limit_reset: datetime | None = None
        self.retry_wait: wait_base = wait_exponential(multiplier=1, min=1, max=30)

    # ------------------------------------------------------------------ #
    # Vendor hooks
    # ------------------------------------------------------------------ #

    @abstractmethod
    def default_models(self, provider_id: str) -> list[ModelDefinition]:
        """Catalog used when the registration config declares no models."""

    @abstractmethod
    async def _setup(self, config: ProviderConfig) -> None:
        """Build the vendor client."""

    @abstractmethod
    async def _complete(self, request: ModelRequest, model: ModelDefinition) -> ModelResponse:
        """Issue one non-streaming call. Cost and latency are filled in by the caller."""

    @abstractmethod
    async def _open_stream(self, request: ModelRequest, model: ModelDefinition) -> Any:
        """Open a vendor stream. Retried as a unit."""

    @abstractmethod
    def _read_stream(self, handle: Any, model: ModelDefinition) -> AsyncIterator[StreamEvent]:
        """Translate an open vendor stream into StreamEvents."""

    @abstractmethod
    async def _ping(self) -> None:
        """Cheapest real call that proves the vendor is reachable."""

    async def _close(self) -> None:
        return None

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def initialize(self, config: ProviderConfig) -> None:
        self._config = config
        self.provider_id = config.id
        self._metrics = ProviderMetricsCollector(config.id)

        declared = config.models or self.default_models(config.id)
        # Definitions always point at this provider, whatever the config said
        self._models = {m.id: replace(m, provider_id=config.id) for m in declared}
        self._default_model = declared[0].id if declared else None

        await self._setup(config)

        log.info(
            "provider.initialized",
            provider_id=config.id,
            provider_type=config.type.value,
            models=list(self._models),
        )

    async def shutdown(self) -> None:
        await self._close()
        log.info("provider.shutdown", provider_id=self.provider_id)

    @property
    def config(self) -> ProviderConfig:
        if self._config is None:
            raise RuntimeError(f"Provider {type(self).__name__} is not initialized")
        return self._config

    # ------------------------------------------------------------------ #
    # Catalog
    # ------------------------------------------------------------------ #

    def list_models(self) -> list[ModelDefinition]:
        return list(self._models.values())

    def resolve_model(self, model_id: str | None) -> ModelDefinition:
        """Return the requested model, or the provider default when none is given.

        Raises:
            ModelNotFound: If the id is unknown or the provider has no models
        """
        target = model_id or self._default_model
        if target is None or target not in self._models:
            raise ModelNotFound(target, self.provider_id)
        return self._models[target]

    def estimate_cost(
        self, messages: Sequence[ChatMessage], model_id: str | None = None
    ) -> float:
        model = self.resolve_model(model_id)
        input_tokens = self.estimator.estimate_messages(messages)
        output_tokens = self.estimator.estimate_output(input_tokens, model.max_tokens)
        return model.calculate_cost(input_tokens, output_tokens)

    # ------------------------------------------------------------------ #
    # Calls
    # ------------------------------------------------------------------ #

    async def chat(self, request: ModelRequest) -> ModelResponse:
        """Execute a non-streaming call against the resolved model.

        Raises:
            ModelNotFound: If the model cannot be resolved
            UpstreamCallFailed: If the vendor call fails after retries
        """
        model = self.resolve_model(request.model)
        start = time.perf_counter()

        try:
            response = await self._with_retry(lambda: self._complete(request, model), model)
        except UpstreamCallFailed as exc:
            self._metrics.record_failure(model.id, latency_ms=_elapsed_ms(start))
            log.warning(
                "provider.chat_failed",
                provider_id=self.provider_id,
                model=model.id,
                error=str(exc),
                status_code=exc.status_code,
            )
            raise

        response.latency = _elapsed_ms(start)
        response.cost = model.calculate_cost(
            response.usage.prompt_tokens, response.usage.completion_tokens
        )
        response.metadata.request_id = request.request_id
        self._metrics.record_success(
            model.id,
            latency_ms=response.latency,
            cost=response.cost,
            tokens=response.usage.total_tokens,
        )

        log.info(
            "provider.chat_completed",
            provider_id=self.provider_id,
            model=model.id,
            prompt_tokens=response.usage.prompt_tokens,
            completion_tokens=response.usage.completion_tokens,
            cost=round(response.cost, 6),
            latency_ms=round(response.latency, 2),
        )
        return response

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamChunk]:
        """Stream the resolved model's output as canonical chunks.

        Yields content / tool_call chunks in upstream order, then one usage
        chunk and one done chunk. Any failure, including an unknown model,
        ends the stream with a single error chunk.
        """
        start = time.perf_counter()
        model_id = request.model or self._default_model or ""

        def meta(cost: float) -> StreamMetadata:
            return StreamMetadata(
                model=model_id,
                provider=self.provider_id,
                request_id=request.request_id,
                latency=_elapsed_ms(start),
                cost=cost,
            )

        try:
            model = self.resolve_model(request.model)
            model_id = model.id
            prompt_estimate = self.estimator.estimate_messages(request.messages)
            handle = await self._with_retry(lambda: self._open_stream(request, model), model)

            # Content plus tool-call arguments; drives the running cost estimate
            text_so_far = ""
            usage: TokenUsage | None = None
            finish = FinishReason.STOP

            def running_cost() -> float:
                return model.calculate_cost(
                    prompt_estimate, self.estimator.estimate_text(text_so_far)
                )

            async for event in self._read_stream(handle, model):
                if event.kind == "content" and event.text:
                    text_so_far += event.text
                    yield StreamChunk(ChunkType.CONTENT, meta(running_cost()), content=event.text)
                elif event.kind == "tool_call" and event.tool_call is not None:
                    text_so_far += event.tool_call.name + event.tool_call.arguments
                    yield StreamChunk(
                        ChunkType.TOOL_CALL, meta(running_cost()), tool_call=event.tool_call
                    )
                elif event.kind == "usage" and event.usage is not None:
                    usage = event.usage
                elif event.kind == "finish" and event.finish_reason is not None:
                    finish = event.finish_reason
        except Exception as exc:
            if isinstance(exc, UpstreamCallFailed | ModelNotFound):
                error: Exception = exc
            else:
                error = self._translate(exc, model_id)
            self._metrics.record_failure(model_id, latency_ms=_elapsed_ms(start))
            log.warning(
                "provider.stream_failed",
                provider_id=self.provider_id,
                model=model_id,
                error=str(error),
            )
            yield StreamChunk(ChunkType.ERROR, meta(0.0), error=str(error))
            return

        if usage is None:
            # Vendor did not report usage; fall back to the estimate
            usage = TokenUsage(
                prompt_tokens=prompt_estimate,
                completion_tokens=self.estimator.estimate_text(text_so_far),
            )
        cost = model.calculate_cost(usage.prompt_tokens, usage.completion_tokens)
        self._metrics.record_success(
            model.id, latency_ms=_elapsed_ms(start), cost=cost, tokens=usage.total_tokens
        )

        yield StreamChunk(ChunkType.USAGE, meta(cost), usage=usage)
        yield StreamChunk(ChunkType.DONE, meta(cost), finish_reason=finish)

    async def _with_retry(
        self, call: Callable[[], Awaitable[T]], model: ModelDefinition
    ) -> T:
        """Run ``call`` retrying transient failures with exponential backoff."""

        async def attempt() -> T:
            try:
                return await call()
            except UpstreamCallFailed:
                raise
            except Exception as exc:
                raise self._translate(exc, model.id) from exc

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransientProviderError),
            stop=stop_after_attempt(self.config.max_retries + 1),
            wait=self.retry_wait,
            before_sleep=lambda state: log.info(
                "provider.retrying",
                provider_id=self.provider_id,
                model=model.id,
                attempt=state.attempt_number,
            ),
            reraise=True,
        )
        return await retrying(attempt)

    # ------------------------------------------------------------------ #
    # Errors and rate limits
    # ------------------------------------------------------------------ #

    def _translate(self, exc: BaseException, model_id: str | None) -> UpstreamCallFailed:
        """Map a vendor/transport exception onto the hub's error taxonomy."""
        status = getattr(exc, "status_code", None)
        if not isinstance(status, int):
            status = None

        headers = getattr(getattr(exc, "response", None), "headers", None)
        if headers is not None:
            self._record_rate_limit(headers)
        if status == 429:
            self._rate_limit_remaining = 0

        message = f"{self.provider_id} call failed: {exc}"
        transient = (
            isinstance(exc, self.transient_errors)
            or isinstance(exc, TimeoutError | ConnectionError | httpx.TransportError)
            or status in TRANSIENT_STATUS_CODES
            or (status is None and _looks_transient(str(exc)))
        )
        if transient:
            return TransientProviderError(
                message, provider_id=self.provider_id, model_id=model_id, status_code=status
            )
        return UpstreamCallFailed(
            message, provider_id=self.provider_id, model_id=model_id, status_code=status
        )

    def _record_rate_limit(self, headers: Any) -> None:
        remaining = headers.get("x-ratelimit-remaining-requests") or headers.get(
            "anthropic-ratelimit-requests-remaining"
        )
        if remaining is not None and str(remaining).isdigit():
            self._rate_limit_remaining = int(remaining)

        retry_after = headers.get("retry-after")
        if retry_after is not None:
            try:
                seconds = float(retry_after)
            except ValueError:
                return
            self._rate_limit_reset = datetime.now(UTC) + timedelta(seconds=seconds)

    # ------------------------------------------------------------------ #
    # Health and metrics
    # ------------------------------------------------------------------ #

    async def health_check(self) -> ProviderHealth:
        start = time.perf_counter()
        error_rate = self._metrics.error_rate

        try:
            await self._ping()
        except Exception as exc:
            log.warning("provider.health_check_failed", provider_id=self.provider_id, error=str(exc))
            health = ProviderHealth(
                provider_id=self.provider_id,
                status=ProviderStatus.UNHEALTHY,
                error_rate=error_rate,
                availability=0.0,
                latency=_elapsed_ms(start),
                rate_limit_remaining=self._rate_limit_remaining,
                rate_limit_reset=self._rate_limit_reset,
                error=str(exc),
            )
        else:
            latency = _elapsed_ms(start)
            degraded = latency > DEGRADED_LATENCY_MS or error_rate > DEGRADED_ERROR_RATE
            health = ProviderHealth(
                provider_id=self.provider_id,
                status=ProviderStatus.DEGRADED if degraded else ProviderStatus.HEALTHY,
                error_rate=error_rate,
                availability=1.0 - error_rate,
                latency=latency,
                rate_limit_remaining=self._rate_limit_remaining,
                rate_limit_reset=self._rate_limit_reset,
            )

        return health

    def get_metrics(self) -> PerformanceMetrics:
        return self._metrics.snapshot()

    # ------------------------------------------------------------------ #
    # Helpers for vendor adapters
    # ------------------------------------------------------------------ #

    def _response(
        self,
        model: ModelDefinition,
        *,
        response_id: str | None,
        content: str,
        tool_calls: list[ToolCall],
        finish_reason: FinishReason,
        usage: TokenUsage,
    ) -> ModelResponse:
        return ModelResponse(
            id=response_id or f"resp_{uuid.uuid4().hex[:16]}",
            model=model.id,
            provider=self.provider_id,
            content=content,
            tool_calls=tool_calls,
            finish_reason=finish_reason,
            usage=usage,
            metadata=ResponseMetadata(),
        )


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


def _looks_transient(message: str) -> bool:
    lowered = message.lower()
    return any(hint in lowered for hint in _TRANSIENT_MESSAGE_HINTS)

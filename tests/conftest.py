"""
Shared test fixtures for pytest.

Provides:
- make_model: Build a ModelDefinition with sensible defaults
- FakeProvider: In-process provider satisfying the ModelProvider protocol
- make_hub: Factory building a ModelHub with fake providers registered
- fake_settings: Test environment configuration
- Clock: Manually advanced wall clock for budget and cache tests
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from typing import Any

import pytest

from model_hub.config import Environment, Settings, get_settings
from model_hub.hub import ModelHub
from model_hub.providers.tokens import TokenEstimator
from model_hub.types import (
    ChatMessage,
    ChunkType,
    FinishReason,
    ModelCapability,
    ModelDefinition,
    ModelFeature,
    ModelRequest,
    ModelResponse,
    PerformanceMetrics,
    ProviderConfig,
    ProviderHealth,
    ProviderStatus,
    ProviderType,
    ResponseMetadata,
    StreamChunk,
    StreamMetadata,
    TokenUsage,
)

# ------------------------------------------------------------------ #
# Session-scoped: clear settings cache between test sessions
# ------------------------------------------------------------------ #


@pytest.fixture(autouse=True, scope="session")
def _clear_settings_cache():
    """Clear the lru_cache on get_settings so test overrides take effect."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ------------------------------------------------------------------ #
# Model and provider fakes
# ------------------------------------------------------------------ #

DEFAULT_CAPABILITIES = (ModelCapability.TEXT_GENERATION, ModelCapability.STREAMING)
DEFAULT_FEATURES = (ModelFeature.SYSTEM_PROMPTS, ModelFeature.STREAMING_RESPONSE)


def make_model(
    model_id: str,
    provider_id: str = "fake",
    *,
    input_cost: float = 0.001,
    output_cost: float = 0.002,
    latency: float = 1000.0,
    max_tokens: int = 4096,
    context_window: int = 8192,
    capabilities: tuple[ModelCapability, ...] = DEFAULT_CAPABILITIES,
    features: tuple[ModelFeature, ...] = DEFAULT_FEATURES,
) -> ModelDefinition:
    return ModelDefinition(
        id=model_id,
        name=model_id,
        provider_id=provider_id,
        max_tokens=max_tokens,
        input_cost_per_1k=input_cost,
        output_cost_per_1k=output_cost,
        capabilities=capabilities,
        context_window=context_window,
        supported_features=features,
        average_latency=latency,
    )


def make_request(content: str = "Hello", **kwargs: Any) -> ModelRequest:
    return ModelRequest(messages=[ChatMessage(role="user", content=content)], **kwargs)


class FakeProvider:
    """Provider double: fixed token usage, scriptable failures and streams.

    Every successful chat reports 100 prompt and 50 completion tokens.
    """

    PROMPT_TOKENS = 100
    COMPLETION_TOKENS = 50

    def __init__(
        self,
        provider_id: str,
        models: Sequence[ModelDefinition] | None = None,
        *,
        content: str = "Hello from fake",
        finish_reason: FinishReason = FinishReason.STOP,
        stream_texts: Sequence[str] = ("Hel", "lo"),
    ) -> None:
        self.provider_id = provider_id
        self._models = {
            m.id: m for m in (models or [make_model(f"{provider_id}-model", provider_id)])
        }
        self.content = content
        self.finish_reason = finish_reason
        self.stream_texts = list(stream_texts)
        self.estimator = TokenEstimator()

        self.fail_with: Exception | None = None
        self.stream_error: str | None = None
        self.stream_raises: Exception | None = None
        self.stream_without_terminal = False
        self.health_status = ProviderStatus.HEALTHY

        self.config: ProviderConfig | None = None
        self.calls: list[ModelRequest] = []
        self.health_checks = 0
        self.shutdown_calls = 0

    def _resolve(self, model_id: str | None) -> ModelDefinition:
        if model_id is None:
            return next(iter(self._models.values()))
        return self._models[model_id]

    async def initialize(self, config: ProviderConfig) -> None:
        self.config = config
        self.provider_id = config.id

    async def chat(self, request: ModelRequest) -> ModelResponse:
        self.calls.append(request)
        if self.fail_with is not None:
            raise self.fail_with
        model = self._resolve(request.model)
        usage = TokenUsage(
            prompt_tokens=self.PROMPT_TOKENS, completion_tokens=self.COMPLETION_TOKENS
        )
        return ModelResponse(
            id=f"resp_{uuid.uuid4().hex[:8]}",
            model=model.id,
            provider=self.provider_id,
            content=self.content,
            finish_reason=self.finish_reason,
            usage=usage,
            cost=model.calculate_cost(usage.prompt_tokens, usage.completion_tokens),
            latency=12.0,
            metadata=ResponseMetadata(request_id=request.request_id),
        )

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamChunk]:
        self.calls.append(request)
        model = self._resolve(request.model)

        def meta(cost: float = 0.0) -> StreamMetadata:
            return StreamMetadata(
                model=model.id,
                provider=self.provider_id,
                request_id=request.request_id,
                cost=cost,
            )

        for text in self.stream_texts:
            yield StreamChunk(ChunkType.CONTENT, meta(0.0001), content=text)
        if self.stream_raises is not None:
            raise self.stream_raises
        if self.stream_error is not None:
            yield StreamChunk(ChunkType.ERROR, meta(), error=self.stream_error)
            return
        if self.stream_without_terminal:
            return

        usage = TokenUsage(
            prompt_tokens=self.PROMPT_TOKENS, completion_tokens=self.COMPLETION_TOKENS
        )
        cost = model.calculate_cost(usage.prompt_tokens, usage.completion_tokens)
        yield StreamChunk(ChunkType.USAGE, meta(cost), usage=usage)
        yield StreamChunk(ChunkType.DONE, meta(cost), finish_reason=FinishReason.STOP)

    async def health_check(self) -> ProviderHealth:
        self.health_checks += 1
        return ProviderHealth(
            provider_id=self.provider_id,
            status=self.health_status,
            error="down" if self.health_status is ProviderStatus.UNHEALTHY else None,
        )

    def get_metrics(self) -> PerformanceMetrics:
        return PerformanceMetrics(provider_id=self.provider_id, request_count=len(self.calls))

    def estimate_cost(
        self, messages: Sequence[ChatMessage], model_id: str | None = None
    ) -> float:
        model = self._resolve(model_id)
        input_tokens = self.estimator.estimate_messages(messages)
        output_tokens = self.estimator.estimate_output(input_tokens, model.max_tokens)
        return model.calculate_cost(input_tokens, output_tokens)

    def list_models(self) -> list[ModelDefinition]:
        return list(self._models.values())

    async def shutdown(self) -> None:
        self.shutdown_calls += 1


def provider_config(provider_id: str) -> ProviderConfig:
    return ProviderConfig(id=provider_id, type=ProviderType.LITELLM, name=provider_id)


class Clock:
    """Manually advanced clock returning seconds."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ------------------------------------------------------------------ #
# Fixtures
# ------------------------------------------------------------------ #


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def make_hub() -> Callable[..., Awaitable[ModelHub]]:
    """Build a hub (monitor disabled) with the given fake providers registered."""

    async def _make(*providers: FakeProvider, **hub_kwargs: Any) -> ModelHub:
        hub_kwargs.setdefault("monitoring_enabled", False)
        hub = ModelHub(**hub_kwargs)
        for provider in providers:
            await hub.register_provider(provider, provider_config(provider.provider_id))
        return hub

    return _make


@pytest.fixture
def fake_settings() -> Settings:
    """Test environment settings with no provider credentials."""
    return Settings(
        environment=Environment.TEST,
        debug=True,
        monitoring_enabled=False,
        budget_daily_limit=50.0,
        budget_monthly_limit=1000.0,
        openai_api_key=None,
        anthropic_api_key=None,
        litellm_base_url=None,
        redis_url=None,
    )

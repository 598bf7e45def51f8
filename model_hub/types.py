"""Canonical types shared by the router, the providers and the hub.

Everything that crosses a component boundary is one of these dataclasses.
Vendor SDK objects never leave the provider adapters; they are normalised
into ModelResponse / StreamChunk before returning.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import SecretStr


class ModelCapability(StrEnum):
    TEXT_GENERATION = "text-generation"
    CODE_GENERATION = "code-generation"
    FUNCTION_CALLING = "function-calling"
    VISION = "vision"
    MULTIMODAL = "multimodal"
    STREAMING = "streaming"
    EMBEDDINGS = "embeddings"
    FINE_TUNING = "fine-tuning"


class ModelFeature(StrEnum):
    JSON_MODE = "json-mode"
    SYSTEM_PROMPTS = "system-prompts"
    TOOL_CALLING = "tool-calling"
    VISION_INPUT = "vision-input"
    AUDIO_INPUT = "audio-input"
    STREAMING_RESPONSE = "streaming-response"
    CONTEXT_CACHING = "context-caching"
    BATCH_PROCESSING = "batch-processing"


class ProviderType(StrEnum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    LITELLM = "litellm"


class ProviderStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class FinishReason(StrEnum):
    STOP = "stop"
    LENGTH = "length"
    TOOL_CALLS = "tool_calls"
    CONTENT_FILTER = "content_filter"


class ChunkType(StrEnum):
    CONTENT = "content"
    TOOL_CALL = "tool_call"
    USAGE = "usage"
    ERROR = "error"
    DONE = "done"


class RoutingStrategy(StrEnum):
    COST_OPTIMIZED = "cost-optimized"
    PERFORMANCE_FIRST = "performance-first"
    QUALITY_FIRST = "quality-first"
    BALANCED = "balanced"
    CUSTOM = "custom"


class LoadBalancingStrategy(StrEnum):
    ROUND_ROBIN = "round-robin"
    LEAST_CONNECTIONS = "least-connections"
    WEIGHTED_ROUND_ROBIN = "weighted-round-robin"
    PERFORMANCE_BASED = "performance-based"


class AlertType(StrEnum):
    WARNING = "warning"
    CRITICAL = "critical"
    EXCEEDED = "exceeded"


class BudgetPeriod(StrEnum):
    DAILY = "daily"
    MONTHLY = "monthly"


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ------------------------------------------------------------------ #
# Catalog
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class ModelDefinition:
    """Static description of one model offered by a provider.

    Attributes:
        id: Model identifier as understood by the vendor API
        name: Human readable display name
        provider_id: Id of the registered provider that serves this model
        max_tokens: Maximum output tokens per call
        input_cost_per_1k: USD per 1K prompt tokens
        output_cost_per_1k: USD per 1K completion tokens
        capabilities: What the model can do (chat, vision, ...)
        context_window: Declared context window in tokens
        supported_features: Protocol features (streaming, json-mode, ...)
        average_latency: Declared average latency in milliseconds
        max_concurrency: Declared concurrent request ceiling
    """

    id: str
    name: str
    provider_id: str
    max_tokens: int
    input_cost_per_1k: float
    output_cost_per_1k: float
    capabilities: tuple[ModelCapability, ...] = ()
    context_window: int = 4096
    supported_features: tuple[ModelFeature, ...] = ()
    average_latency: float = 1000.0
    max_concurrency: int = 10

    def __post_init__(self) -> None:
        if self.max_tokens < 1:
            raise ValueError("max_tokens must be positive")
        if self.context_window < 1:
            raise ValueError("context_window must be positive")
        if self.input_cost_per_1k < 0 or self.output_cost_per_1k < 0:
            raise ValueError("model costs cannot be negative")
        if self.average_latency < 0:
            raise ValueError("average_latency cannot be negative")

    def calculate_cost(self, prompt_tokens: int, completion_tokens: int) -> float:
        """Cost in USD for the given token counts."""
        return (prompt_tokens / 1000) * self.input_cost_per_1k + (
            completion_tokens / 1000
        ) * self.output_cost_per_1k


@dataclass
class ProviderConfig:
    """Registration-time configuration for one provider adapter."""

    id: str
    type: ProviderType
    name: str = ""
    api_key: SecretStr | None = None
    base_url: str | None = None
    timeout: float = 60.0
    max_retries: int = 3
    models: list[ModelDefinition] = field(default_factory=list)
    enabled: bool = True

    def __post_init__(self) -> None:
        if not self.name:
            self.name = self.id
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")


# ------------------------------------------------------------------ #
# Requests
# ------------------------------------------------------------------ #


@dataclass
class ChatMessage:
    role: str
    content: str
    name: str | None = None
    tool_call_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name:
            data["name"] = self.name
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        return data


@dataclass
class ToolDefinition:
    name: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str = ""


@dataclass
class RequestRequirements:
    """Constraints a caller places on router-selected models."""

    preferred_providers: list[str] = field(default_factory=list)
    excluded_providers: list[str] = field(default_factory=list)
    required_capabilities: list[ModelCapability] = field(default_factory=list)
    required_features: list[ModelFeature] = field(default_factory=list)
    max_cost: float | None = None
    max_latency: float | None = None


@dataclass
class ModelRequest:
    messages: list[ChatMessage]
    model: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    tools: list[ToolDefinition] = field(default_factory=list)
    requirements: RequestRequirements | None = None
    stream: bool = False
    request_id: str = field(default_factory=lambda: f"req_{uuid.uuid4().hex[:16]}")

    def __post_init__(self) -> None:
        if not self.messages:
            raise ValueError("request must contain at least one message")
        if self.max_tokens is not None and self.max_tokens < 1:
            raise ValueError("max_tokens must be positive")
        if self.temperature is not None and not 0.0 <= self.temperature <= 2.0:
            raise ValueError("temperature must be between 0 and 2")


# ------------------------------------------------------------------ #
# Responses
# ------------------------------------------------------------------ #


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __post_init__(self) -> None:
        if not self.total_tokens:
            self.total_tokens = self.prompt_tokens + self.completion_tokens


@dataclass
class ResponseMetadata:
    request_id: str = ""
    timestamp: datetime = field(default_factory=_utcnow)
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class ModelResponse:
    id: str
    model: str
    provider: str
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: FinishReason = FinishReason.STOP
    usage: TokenUsage = field(default_factory=TokenUsage)
    cost: float = 0.0
    latency: float = 0.0
    cached: bool = False
    metadata: ResponseMetadata = field(default_factory=ResponseMetadata)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "model": self.model,
            "provider": self.provider,
            "content": self.content,
            "tool_calls": [
                {"id": c.id, "name": c.name, "arguments": c.arguments}
                for c in self.tool_calls
            ],
            "finish_reason": self.finish_reason.value,
            "usage": {
                "prompt_tokens": self.usage.prompt_tokens,
                "completion_tokens": self.usage.completion_tokens,
                "total_tokens": self.usage.total_tokens,
            },
            "cost": self.cost,
            "latency": self.latency,
            "cached": self.cached,
            "metadata": {
                "request_id": self.metadata.request_id,
                "timestamp": self.metadata.timestamp.isoformat(),
                **self.metadata.extra,
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ModelResponse:
        """Inverse of to_dict (used by out-of-process caches)."""
        metadata = dict(data.get("metadata") or {})
        request_id = metadata.pop("request_id", "")
        timestamp = metadata.pop("timestamp", None)
        usage = data.get("usage") or {}
        return cls(
            id=data["id"],
            model=data["model"],
            provider=data["provider"],
            content=data.get("content", ""),
            tool_calls=[ToolCall(**c) for c in data.get("tool_calls", [])],
            finish_reason=FinishReason(data.get("finish_reason", FinishReason.STOP.value)),
            usage=TokenUsage(**usage),
            cost=data.get("cost", 0.0),
            latency=data.get("latency", 0.0),
            cached=data.get("cached", False),
            metadata=ResponseMetadata(
                request_id=request_id,
                timestamp=datetime.fromisoformat(timestamp) if timestamp else _utcnow(),
                extra=metadata,
            ),
        )


@dataclass
class StreamMetadata:
    """Envelope carried by every chunk of a stream."""

    model: str
    provider: str
    request_id: str
    latency: float = 0.0
    cost: float = 0.0


@dataclass
class StreamChunk:
    """One element of a streamed response.

    Exactly one of the payload fields is meaningful, selected by ``type``:
    ``content`` for CONTENT, ``tool_call`` for TOOL_CALL, ``usage`` for USAGE,
    ``error`` for ERROR and ``finish_reason`` for DONE.
    """

    type: ChunkType
    metadata: StreamMetadata
    content: str = ""
    tool_call: ToolCall | None = None
    usage: TokenUsage | None = None
    error: str | None = None
    finish_reason: FinishReason | None = None

    @property
    def is_terminal(self) -> bool:
        return self.type in (ChunkType.DONE, ChunkType.ERROR)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type.value,
            "metadata": {
                "model": self.metadata.model,
                "provider": self.metadata.provider,
                "request_id": self.metadata.request_id,
                "latency": round(self.metadata.latency, 2),
                "cost": self.metadata.cost,
            },
        }
        if self.type is ChunkType.CONTENT:
            data["content"] = self.content
        elif self.type is ChunkType.TOOL_CALL and self.tool_call is not None:
            data["tool_call"] = {
                "id": self.tool_call.id,
                "name": self.tool_call.name,
                "arguments": self.tool_call.arguments,
            }
        elif self.type is ChunkType.USAGE and self.usage is not None:
            data["usage"] = {
                "prompt_tokens": self.usage.prompt_tokens,
                "completion_tokens": self.usage.completion_tokens,
                "total_tokens": self.usage.total_tokens,
            }
        elif self.type is ChunkType.ERROR:
            data["error"] = self.error
        elif self.type is ChunkType.DONE and self.finish_reason is not None:
            data["finish_reason"] = self.finish_reason.value
        return data


# ------------------------------------------------------------------ #
# Routing
# ------------------------------------------------------------------ #


@dataclass
class RouterDecision:
    selected_model: str
    provider: str
    reasoning: list[str] = field(default_factory=list)
    alternative_models: list[str] = field(default_factory=list)
    estimated_cost: float = 0.0
    estimated_latency: float = 0.0
    quality_score: float = 0.0
    confidence: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "selected_model": self.selected_model,
            "provider": self.provider,
            "reasoning": list(self.reasoning),
            "alternative_models": list(self.alternative_models),
            "estimated_cost": self.estimated_cost,
            "estimated_latency": self.estimated_latency,
            "quality_score": self.quality_score,
            "confidence": self.confidence,
        }


@dataclass
class RouterConfig:
    strategy: RoutingStrategy = RoutingStrategy.BALANCED
    cost_threshold: float = 0.01
    latency_threshold: float = 5000.0
    enable_fallback: bool = True
    fallback_chain: list[str] = field(default_factory=list)
    load_balancing: LoadBalancingStrategy = LoadBalancingStrategy.PERFORMANCE_BASED
    cache_ttl: int = 3600

    def __post_init__(self) -> None:
        if self.cost_threshold <= 0:
            raise ValueError("cost_threshold must be positive")
        if self.latency_threshold <= 0:
            raise ValueError("latency_threshold must be positive")
        if self.cache_ttl < 0:
            raise ValueError("cache_ttl cannot be negative")


@dataclass
class ProviderHealth:
    provider_id: str
    status: ProviderStatus
    last_check: datetime = field(default_factory=_utcnow)
    error_rate: float = 0.0
    availability: float = 1.0
    latency: float = 0.0
    rate_limit_remaining: int | None = None
    rate_limit_reset: datetime | None = None
    error: str | None = None


@dataclass
class PerformanceMetrics:
    provider_id: str
    model_id: str = "*"
    request_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    average_latency: float = 0.0
    p95_latency: float = 0.0
    p99_latency: float = 0.0
    total_cost: float = 0.0
    total_tokens: int = 0
    error_rate: float = 0.0
    throughput: float = 0.0
    last_updated: datetime = field(default_factory=_utcnow)


# ------------------------------------------------------------------ #
# Cache and budget
# ------------------------------------------------------------------ #


@dataclass
class CacheEntry:
    key: str
    response: ModelResponse
    timestamp: float = field(default_factory=time.time)
    ttl: float = 3600.0
    hit_count: int = 0
    size: int = 0

    def is_expired(self, now: float) -> bool:
        return now > self.timestamp + self.ttl


@dataclass
class BudgetLimits:
    """Spend ceilings in USD. ``None`` disables a ceiling."""

    daily_limit: float | None = None
    monthly_limit: float | None = None
    warning_threshold: float = 80.0
    critical_threshold: float = 95.0

    def __post_init__(self) -> None:
        for name in ("daily_limit", "monthly_limit"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ValueError(f"{name} must be positive")
        if not 0 <= self.warning_threshold <= 100:
            raise ValueError("warning_threshold must be between 0 and 100")
        if not 0 <= self.critical_threshold <= 100:
            raise ValueError("critical_threshold must be between 0 and 100")
        if self.warning_threshold > self.critical_threshold:
            raise ValueError("warning_threshold cannot exceed critical_threshold")


@dataclass
class BudgetUsage:
    daily_usage: float = 0.0
    monthly_usage: float = 0.0
    daily_reset_at: float = field(default_factory=time.time)
    monthly_reset_at: float = field(default_factory=time.time)


@dataclass
class BudgetAlert:
    type: AlertType
    period: BudgetPeriod
    current_usage: float
    limit: float
    percentage: float
    message: str
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass
class CostAnalysis:
    time_range: str
    total_cost: float = 0.0
    request_count: int = 0
    cost_by_provider: dict[str, float] = field(default_factory=dict)
    cost_by_model: dict[str, float] = field(default_factory=dict)
    cost_per_request: float = 0.0
    cost_per_token: float = 0.0
    projected_monthly_cost: float = 0.0
    savings_vs_baseline: float = 0.0

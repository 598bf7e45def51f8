"""Request bodies for the HTTP API.

Bodies are validated by pydantic and converted into the hub's dataclasses
before they reach the hub, so the hub never sees transport-level types.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from model_hub.types import (
    BudgetLimits,
    ChatMessage,
    LoadBalancingStrategy,
    ModelCapability,
    ModelFeature,
    ModelRequest,
    RequestRequirements,
    RoutingStrategy,
    ToolDefinition,
)


class MessageBody(BaseModel):
    role: str = Field(..., pattern="^(system|user|assistant|tool)$")
    content: str
    name: str | None = None
    tool_call_id: str | None = None


class ToolBody(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=dict)


class RequirementsBody(BaseModel):
    preferred_providers: list[str] = Field(default_factory=list)
    excluded_providers: list[str] = Field(default_factory=list)
    required_capabilities: list[ModelCapability] = Field(default_factory=list)
    required_features: list[ModelFeature] = Field(default_factory=list)
    max_cost: float | None = Field(default=None, ge=0)
    max_latency: float | None = Field(default=None, gt=0)


class ChatRequestBody(BaseModel):
    messages: list[MessageBody] = Field(..., min_length=1)
    model: str | None = Field(
        default=None,
        description="Explicit model id. Omit to let the router choose.",
    )
    max_tokens: int | None = Field(default=None, ge=1)
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    tools: list[ToolBody] = Field(default_factory=list)
    requirements: RequirementsBody | None = None

    def to_request(self, *, stream: bool = False) -> ModelRequest:
        requirements = None
        if self.requirements is not None:
            requirements = RequestRequirements(**self.requirements.model_dump())
        return ModelRequest(
            messages=[ChatMessage(**m.model_dump()) for m in self.messages],
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            tools=[ToolDefinition(**t.model_dump()) for t in self.tools],
            requirements=requirements,
            stream=stream,
        )


class RouterConfigBody(BaseModel):
    """Partial router config update. Omitted fields keep their current value."""

    strategy: RoutingStrategy | None = None
    cost_threshold: float | None = Field(default=None, gt=0)
    latency_threshold: float | None = Field(default=None, gt=0)
    enable_fallback: bool | None = None
    fallback_chain: list[str] | None = None
    load_balancing: LoadBalancingStrategy | None = None
    cache_ttl: int | None = Field(default=None, ge=0)

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class BudgetBody(BaseModel):
    daily_limit: float | None = Field(default=None, gt=0)
    monthly_limit: float | None = Field(default=None, gt=0)
    warning_threshold: float = Field(default=80.0, ge=0, le=100)
    critical_threshold: float = Field(default=95.0, ge=0, le=100)

    def to_limits(self) -> BudgetLimits:
        return BudgetLimits(**self.model_dump())

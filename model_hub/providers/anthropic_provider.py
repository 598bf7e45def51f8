"""Anthropic adapter built on the official ``anthropic`` async SDK.

The Messages API takes the system prompt as a top-level parameter, so
system messages are lifted out of the conversation before the call.
Streaming uses the raw event stream:

    message_start        -> prompt token count
    content_block_start  -> tool_use block id/name
    content_block_delta  -> text_delta / input_json_delta
    message_delta        -> completion token count and stop_reason
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import anthropic
import structlog
from anthropic import AsyncAnthropic

from model_hub.providers.base import BaseProvider, StreamEvent
from model_hub.providers.tokens import ANTHROPIC_ESTIMATOR
from model_hub.types import (
    ChatMessage,
    FinishReason,
    ModelCapability,
    ModelDefinition,
    ModelFeature,
    ModelRequest,
    ModelResponse,
    ProviderConfig,
    TokenUsage,
    ToolCall,
)

log = structlog.get_logger(__name__)

_STOP_REASONS = {
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "max_tokens": FinishReason.LENGTH,
    "tool_use": FinishReason.TOOL_CALLS,
}

_HEALTH_CHECK_MODEL = "claude-3-5-haiku-20241022"

_FULL_CAPABILITIES = (
    ModelCapability.TEXT_GENERATION,
    ModelCapability.CODE_GENERATION,
    ModelCapability.FUNCTION_CALLING,
    ModelCapability.VISION,
)
_FULL_FEATURES = (
    ModelFeature.SYSTEM_PROMPTS,
    ModelFeature.TOOL_CALLING,
    ModelFeature.STREAMING_RESPONSE,
    ModelFeature.VISION_INPUT,
)


def default_anthropic_models(provider_id: str) -> list[ModelDefinition]:
    return [
        ModelDefinition(
            id="claude-3-5-sonnet-20241022",
            name="Claude 3.5 Sonnet",
            provider_id=provider_id,
            max_tokens=8192,
            input_cost_per_1k=0.003,
            output_cost_per_1k=0.015,
            capabilities=_FULL_CAPABILITIES,
            context_window=200000,
            supported_features=_FULL_FEATURES,
            average_latency=2000,
            max_concurrency=50,
        ),
        ModelDefinition(
            id="claude-3-5-haiku-20241022",
            name="Claude 3.5 Haiku",
            provider_id=provider_id,
            max_tokens=8192,
            input_cost_per_1k=0.0008,
            output_cost_per_1k=0.004,
            capabilities=(ModelCapability.TEXT_GENERATION, ModelCapability.CODE_GENERATION),
            context_window=200000,
            supported_features=(ModelFeature.SYSTEM_PROMPTS, ModelFeature.STREAMING_RESPONSE),
            average_latency=800,
            max_concurrency=100,
        ),
        ModelDefinition(
            id="claude-3-opus-20240229",
            name="Claude 3 Opus",
            provider_id=provider_id,
            max_tokens=4096,
            input_cost_per_1k=0.015,
            output_cost_per_1k=0.075,
            capabilities=_FULL_CAPABILITIES,
            context_window=200000,
            supported_features=_FULL_FEATURES,
            average_latency=3000,
            max_concurrency=25,
        ),
    ]


def split_system(messages: list[ChatMessage]) -> tuple[str | None, list[dict[str, Any]]]:
    """Separate system prompts from the conversation turns.

    Multiple system messages are joined with blank lines. Tool results are
    sent back as ``tool_result`` blocks on a user turn.
    """
    system_parts: list[str] = []
    turns: list[dict[str, Any]] = []

    for message in messages:
        if message.role == "system":
            system_parts.append(message.content)
        elif message.role == "tool":
            turns.append(
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "tool_result",
                            "tool_use_id": message.tool_call_id or "",
                            "content": message.content,
                        }
                    ],
                }
            )
        else:
            turns.append({"role": message.role, "content": message.content})

    return ("\n\n".join(system_parts) or None), turns


class AnthropicProvider(BaseProvider):
    """Claude models via the Anthropic Messages API."""

    estimator = ANTHROPIC_ESTIMATOR
    transient_errors = (
        anthropic.APIConnectionError,
        anthropic.RateLimitError,
        anthropic.InternalServerError,
    )

    def __init__(self, client: AsyncAnthropic | None = None) -> None:
        super().__init__()
        self._client = client

    def default_models(self, provider_id: str) -> list[ModelDefinition]:
        return default_anthropic_models(provider_id)

    async def _setup(self, config: ProviderConfig) -> None:
        if self._client is not None:
            return
        self._client = AsyncAnthropic(
            api_key=config.api_key.get_secret_value() if config.api_key else None,
            base_url=config.base_url,
            timeout=config.timeout,
            max_retries=0,
        )

    async def _close(self) -> None:
        if self._client is not None:
            await self._client.close()

    @property
    def client(self) -> AsyncAnthropic:
        if self._client is None:
            raise RuntimeError("AnthropicProvider is not initialized")
        return self._client

    # ------------------------------------------------------------------ #
    # Wire format
    # ------------------------------------------------------------------ #

    def _params(self, request: ModelRequest, model: ModelDefinition) -> dict[str, Any]:
        system, turns = split_system(request.messages)
        params: dict[str, Any] = {
            "model": model.id,
            "messages": turns,
            "max_tokens": request.max_tokens or model.max_tokens,
        }
        if system:
            params["system"] = system
        if request.temperature is not None:
            # Anthropic accepts 0..1
            params["temperature"] = min(request.temperature, 1.0)
        if request.tools:
            params["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": tool.parameters or {"type": "object", "properties": {}},
                }
                for tool in request.tools
            ]
        return params

    async def _complete(self, request: ModelRequest, model: ModelDefinition) -> ModelResponse:
        raw = await self.client.messages.with_raw_response.create(**self._params(request, model))
        self._record_rate_limit(raw.headers)
        message = raw.parse()

        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in message.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append(
                    ToolCall(id=block.id, name=block.name, arguments=_dump_json(block.input))
                )

        return self._response(
            model,
            response_id=message.id,
            content="".join(text_parts),
            tool_calls=tool_calls,
            finish_reason=_STOP_REASONS.get(message.stop_reason or "end_turn", FinishReason.STOP),
            usage=TokenUsage(
                prompt_tokens=message.usage.input_tokens,
                completion_tokens=message.usage.output_tokens,
            ),
        )

    async def _open_stream(self, request: ModelRequest, model: ModelDefinition) -> Any:
        return await self.client.messages.create(**self._params(request, model), stream=True)

    async def _read_stream(self, handle: Any, model: ModelDefinition) -> AsyncIterator[StreamEvent]:
        input_tokens = 0
        tool_ids: dict[int, tuple[str, str]] = {}

        async for event in handle:
            if event.type == "message_start":
                input_tokens = event.message.usage.input_tokens
            elif event.type == "content_block_start" and event.content_block.type == "tool_use":
                block = event.content_block
                tool_ids[event.index] = (block.id, block.name)
                yield StreamEvent(kind="tool_call", tool_call=ToolCall(id=block.id, name=block.name))
            elif event.type == "content_block_delta":
                delta = event.delta
                if delta.type == "text_delta":
                    yield StreamEvent(kind="content", text=delta.text)
                elif delta.type == "input_json_delta":
                    call_id, name = tool_ids.get(event.index, ("", ""))
                    yield StreamEvent(
                        kind="tool_call",
                        tool_call=ToolCall(id=call_id, name=name, arguments=delta.partial_json),
                    )
            elif event.type == "message_delta":
                yield StreamEvent(
                    kind="usage",
                    usage=TokenUsage(
                        prompt_tokens=input_tokens,
                        completion_tokens=event.usage.output_tokens,
                    ),
                )
                if event.delta.stop_reason:
                    yield StreamEvent(
                        kind="finish",
                        finish_reason=_STOP_REASONS.get(event.delta.stop_reason, FinishReason.STOP),
                    )

    async def _ping(self) -> None:
        model = _HEALTH_CHECK_MODEL if _HEALTH_CHECK_MODEL in self._models else next(iter(self._models))
        await self.client.messages.create(
            model=model,
            max_tokens=1,
            messages=[{"role": "user", "content": "ping"}],
        )
        log.debug("anthropic.ping_ok", provider_id=self.provider_id, model=model)


def _dump_json(value: Any) -> str:
    return json.dumps(value) if value is not None else ""

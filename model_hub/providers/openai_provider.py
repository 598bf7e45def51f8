"""OpenAI adapter built on the official ``openai`` async SDK.

The SDK's own retry loop is disabled (``max_retries=0``) so that the
bounded retry in BaseProvider is the only one in play. Streams request
``include_usage`` so the final SSE frame carries real token counts.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import openai
import structlog
from openai import AsyncOpenAI

from model_hub.providers.base import BaseProvider, StreamEvent
from model_hub.providers.tokens import OPENAI_ESTIMATOR
from model_hub.types import (
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

_FINISH_REASONS = {
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "tool_calls": FinishReason.TOOL_CALLS,
    "function_call": FinishReason.TOOL_CALLS,
    "content_filter": FinishReason.CONTENT_FILTER,
}

_CHAT_FEATURES = (
    ModelFeature.JSON_MODE,
    ModelFeature.SYSTEM_PROMPTS,
    ModelFeature.TOOL_CALLING,
    ModelFeature.STREAMING_RESPONSE,
)


def default_openai_models(provider_id: str) -> list[ModelDefinition]:
    return [
        ModelDefinition(
            id="gpt-4o",
            name="GPT-4o",
            provider_id=provider_id,
            max_tokens=4096,
            input_cost_per_1k=0.005,
            output_cost_per_1k=0.015,
            capabilities=(
                ModelCapability.TEXT_GENERATION,
                ModelCapability.CODE_GENERATION,
                ModelCapability.FUNCTION_CALLING,
                ModelCapability.VISION,
            ),
            context_window=128000,
            supported_features=_CHAT_FEATURES,
            average_latency=1500,
            max_concurrency=100,
        ),
        ModelDefinition(
            id="gpt-4o-mini",
            name="GPT-4o Mini",
            provider_id=provider_id,
            max_tokens=4096,
            input_cost_per_1k=0.00015,
            output_cost_per_1k=0.0006,
            capabilities=(
                ModelCapability.TEXT_GENERATION,
                ModelCapability.CODE_GENERATION,
                ModelCapability.FUNCTION_CALLING,
            ),
            context_window=128000,
            supported_features=_CHAT_FEATURES,
            average_latency=800,
            max_concurrency=200,
        ),
        ModelDefinition(
            id="gpt-3.5-turbo",
            name="GPT-3.5 Turbo",
            provider_id=provider_id,
            max_tokens=4096,
            input_cost_per_1k=0.0005,
            output_cost_per_1k=0.0015,
            capabilities=(ModelCapability.TEXT_GENERATION, ModelCapability.FUNCTION_CALLING),
            context_window=16384,
            supported_features=(
                ModelFeature.SYSTEM_PROMPTS,
                ModelFeature.TOOL_CALLING,
                ModelFeature.STREAMING_RESPONSE,
            ),
            average_latency=600,
            max_concurrency=300,
        ),
    ]


class OpenAIProvider(BaseProvider):
    """Chat completions via api.openai.com (or any compatible base URL)."""

    estimator = OPENAI_ESTIMATOR
    transient_errors = (
        openai.APIConnectionError,
        openai.RateLimitError,
        openai.InternalServerError,
    )

    def __init__(self, client: AsyncOpenAI | None = None) -> None:
        super().__init__()
        self._client = client

    def default_models(self, provider_id: str) -> list[ModelDefinition]:
        return default_openai_models(provider_id)

    async def _setup(self, config: ProviderConfig) -> None:
        if self._client is not None:
            return
        self._client = AsyncOpenAI(
            api_key=config.api_key.get_secret_value() if config.api_key else None,
            base_url=config.base_url,
            timeout=config.timeout,
            max_retries=0,
        )

    async def _close(self) -> None:
        if self._client is not None:
            await self._client.close()

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            raise RuntimeError("OpenAIProvider is not initialized")
        return self._client

    # ------------------------------------------------------------------ #
    # Wire format
    # ------------------------------------------------------------------ #

    def _params(self, request: ModelRequest, model: ModelDefinition) -> dict[str, Any]:
        params: dict[str, Any] = {
            "model": model.id,
            "messages": [m.to_dict() for m in request.messages],
            "max_tokens": request.max_tokens or model.max_tokens,
        }
        if request.temperature is not None:
            params["temperature"] = request.temperature
        if request.tools:
            params["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.parameters,
                    },
                }
                for tool in request.tools
            ]
        return params

    async def _complete(self, request: ModelRequest, model: ModelDefinition) -> ModelResponse:
        log.debug(
            "openai.completion_request",
            model=model.id,
            message_count=len(request.messages),
            tool_count=len(request.tools),
        )
        raw = await self.client.chat.completions.with_raw_response.create(
            **self._params(request, model)
        )
        self._record_rate_limit(raw.headers)
        completion = raw.parse()

        choice = completion.choices[0]
        tool_calls = [
            ToolCall(id=tc.id, name=tc.function.name, arguments=tc.function.arguments or "")
            for tc in (choice.message.tool_calls or [])
        ]
        usage = completion.usage
        return self._response(
            model,
            response_id=completion.id,
            content=choice.message.content or "",
            tool_calls=tool_calls,
            finish_reason=_FINISH_REASONS.get(choice.finish_reason or "stop", FinishReason.STOP),
            usage=TokenUsage(
                prompt_tokens=usage.prompt_tokens if usage else 0,
                completion_tokens=usage.completion_tokens if usage else 0,
            ),
        )

    async def _open_stream(self, request: ModelRequest, model: ModelDefinition) -> Any:
        return await self.client.chat.completions.create(
            **self._params(request, model),
            stream=True,
            stream_options={"include_usage": True},
        )

    async def _read_stream(self, handle: Any, model: ModelDefinition) -> AsyncIterator[StreamEvent]:
        async for chunk in handle:
            if chunk.usage is not None:
                yield StreamEvent(
                    kind="usage",
                    usage=TokenUsage(
                        prompt_tokens=chunk.usage.prompt_tokens,
                        completion_tokens=chunk.usage.completion_tokens,
                    ),
                )
            if not chunk.choices:
                continue

            choice = chunk.choices[0]
            delta = choice.delta
            if delta is not None and delta.content:
                yield StreamEvent(kind="content", text=delta.content)
            for tc in (delta.tool_calls or []) if delta is not None else []:
                yield StreamEvent(
                    kind="tool_call",
                    tool_call=ToolCall(
                        id=tc.id or "",
                        name=(tc.function.name if tc.function else None) or "",
                        arguments=(tc.function.arguments if tc.function else None) or "",
                    ),
                )
            if choice.finish_reason:
                yield StreamEvent(
                    kind="finish",
                    finish_reason=_FINISH_REASONS.get(choice.finish_reason, FinishReason.STOP),
                )

    async def _ping(self) -> None:
        await self.client.models.list()


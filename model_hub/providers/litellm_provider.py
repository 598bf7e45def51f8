"""LiteLLM adapter for self-hosted or proxied models.

LiteLLM gives a unified interface to 100+ providers. Calls go through a
LiteLLM proxy so that keys for the long tail of vendors stay out of this
service; the hub only needs the proxy URL and key.

Model ids use LiteLLM's "<vendor>/<model>" format (e.g. ``ollama/qwen2.5:7b``).
Pricing and capabilities come from the registration config since the proxy
does not advertise them.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import httpx
import litellm
import structlog

from model_hub.providers.base import BaseProvider, StreamEvent
from model_hub.providers.tokens import LITELLM_ESTIMATOR
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


def default_litellm_models(provider_id: str) -> list[ModelDefinition]:
    return [
        ModelDefinition(
            id="openai/gpt-4o-mini",
            name="GPT-4o Mini (proxy)",
            provider_id=provider_id,
            max_tokens=4096,
            input_cost_per_1k=0.00015,
            output_cost_per_1k=0.0006,
            capabilities=(ModelCapability.TEXT_GENERATION, ModelCapability.CODE_GENERATION),
            context_window=128000,
            supported_features=(ModelFeature.SYSTEM_PROMPTS, ModelFeature.STREAMING_RESPONSE),
            average_latency=1000,
            max_concurrency=50,
        )
    ]


class LiteLLMProvider(BaseProvider):
    """Chat completions through a LiteLLM proxy."""

    estimator = LITELLM_ESTIMATOR
    transient_errors = (
        litellm.exceptions.RateLimitError,
        litellm.exceptions.ServiceUnavailableError,
        litellm.exceptions.Timeout,
        litellm.exceptions.APIConnectionError,
        litellm.exceptions.InternalServerError,
    )

    def __init__(self) -> None:
        super().__init__()
        self._api_base: str | None = None
        self._api_key: str | None = None

    def default_models(self, provider_id: str) -> list[ModelDefinition]:
        return default_litellm_models(provider_id)

    async def _setup(self, config: ProviderConfig) -> None:
        self._api_base = config.base_url
        self._api_key = config.api_key.get_secret_value() if config.api_key else None

    def _params(self, request: ModelRequest, model: ModelDefinition) -> dict[str, Any]:
        params: dict[str, Any] = {
            "model": model.id,
            "messages": [m.to_dict() for m in request.messages],
            "max_tokens": request.max_tokens or model.max_tokens,
            "api_base": self._api_base,
            "api_key": self._api_key,
            "timeout": self.config.timeout,
            "num_retries": 0,
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
            "litellm.completion_request",
            model=model.id,
            message_count=len(request.messages),
        )
        response = await litellm.acompletion(**self._params(request, model))

        choice = response.choices[0]
        message = choice.message
        tool_calls = [
            ToolCall(id=tc.id, name=tc.function.name or "", arguments=tc.function.arguments or "")
            for tc in (getattr(message, "tool_calls", None) or [])
        ]
        usage = getattr(response, "usage", None)
        return self._response(
            model,
            response_id=response.id,
            content=message.content or "",
            tool_calls=tool_calls,
            finish_reason=_FINISH_REASONS.get(choice.finish_reason or "stop", FinishReason.STOP),
            usage=TokenUsage(
                prompt_tokens=usage.prompt_tokens if usage else 0,
                completion_tokens=usage.completion_tokens if usage else 0,
            ),
        )

    async def _open_stream(self, request: ModelRequest, model: ModelDefinition) -> Any:
        return await litellm.acompletion(
            **self._params(request, model),
            stream=True,
            stream_options={"include_usage": True},
        )

    async def _read_stream(self, handle: Any, model: ModelDefinition) -> AsyncIterator[StreamEvent]:
        async for chunk in handle:
            usage = getattr(chunk, "usage", None)
            if usage is not None and usage.prompt_tokens:
                yield StreamEvent(
                    kind="usage",
                    usage=TokenUsage(
                        prompt_tokens=usage.prompt_tokens,
                        completion_tokens=usage.completion_tokens,
                    ),
                )
            if not chunk.choices:
                continue

            choice = chunk.choices[0]
            delta = choice.delta
            if delta.content:
                yield StreamEvent(kind="content", text=delta.content)
            for tc in getattr(delta, "tool_calls", None) or []:
                yield StreamEvent(
                    kind="tool_call",
                    tool_call=ToolCall(
                        id=tc.id or "",
                        name=tc.function.name or "",
                        arguments=tc.function.arguments or "",
                    ),
                )
            if choice.finish_reason:
                yield StreamEvent(
                    kind="finish",
                    finish_reason=_FINISH_REASONS.get(choice.finish_reason, FinishReason.STOP),
                )

    async def _ping(self) -> None:
        if not self._api_base:
            raise RuntimeError("LiteLLM proxy base URL is not configured")

        url = f"{self._api_base.rstrip('/')}/health"
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        async with httpx.AsyncClient(timeout=self.config.timeout) as client:
            response = await client.get(url, headers=headers)
        if response.status_code != 200:
            raise RuntimeError(f"LiteLLM proxy returned {response.status_code}")

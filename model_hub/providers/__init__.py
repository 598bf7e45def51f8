"""Provider adapters.

Each adapter normalises one upstream AI service behind ModelProvider.
Use create_provider() to build the adapter for a ProviderConfig.
"""

from model_hub.providers.anthropic_provider import AnthropicProvider
from model_hub.providers.base import BaseProvider, ModelProvider, StreamEvent
from model_hub.providers.litellm_provider import LiteLLMProvider
from model_hub.providers.openai_provider import OpenAIProvider
from model_hub.types import ProviderConfig, ProviderType

_ADAPTERS: dict[ProviderType, type[BaseProvider]] = {
    ProviderType.OPENAI: OpenAIProvider,
    ProviderType.ANTHROPIC: AnthropicProvider,
    ProviderType.LITELLM: LiteLLMProvider,
}


def create_provider(config: ProviderConfig) -> BaseProvider:
    """Instantiate (but do not initialize) the adapter for ``config.type``."""
    try:
        adapter_cls = _ADAPTERS[config.type]
    except KeyError:
        raise ValueError(f"Unsupported provider type: {config.type}") from None
    return adapter_cls()


__all__ = [
    "AnthropicProvider",
    "BaseProvider",
    "LiteLLMProvider",
    "ModelProvider",
    "OpenAIProvider",
    "StreamEvent",
    "create_provider",
]

"""Model routing hub: one interface over several AI model providers."""

from model_hub.events import Event, EventBus, HubEvent
from model_hub.exceptions import (
    AllFallbacksExhausted,
    BudgetExceeded,
    ModelHubError,
    ModelNotFound,
    NoEligibleModels,
    ProviderNotFound,
    ProviderUnavailable,
    UpstreamCallFailed,
)
from model_hub.hub import ModelHub
from model_hub.types import (
    BudgetLimits,
    ChatMessage,
    ModelRequest,
    ModelResponse,
    ProviderConfig,
    ProviderType,
    RequestRequirements,
    RouterConfig,
    RoutingStrategy,
    StreamChunk,
)

__all__ = [
    "AllFallbacksExhausted",
    "BudgetExceeded",
    "BudgetLimits",
    "ChatMessage",
    "Event",
    "EventBus",
    "HubEvent",
    "ModelHub",
    "ModelHubError",
    "ModelNotFound",
    "ModelRequest",
    "ModelResponse",
    "NoEligibleModels",
    "ProviderConfig",
    "ProviderNotFound",
    "ProviderType",
    "ProviderUnavailable",
    "RequestRequirements",
    "RouterConfig",
    "RoutingStrategy",
    "StreamChunk",
    "UpstreamCallFailed",
]

"""Model routing: candidate scoring, load balancing and fallback execution."""

from model_hub.routing.fallback import FallbackExecutor
from model_hub.routing.load_balancer import LoadBalancer
from model_hub.routing.router import IntelligentRouter
from model_hub.routing.scoring import ModelScore, ScoreWeights, weights_for

__all__ = [
    "FallbackExecutor",
    "IntelligentRouter",
    "LoadBalancer",
    "ModelScore",
    "ScoreWeights",
    "weights_for",
]

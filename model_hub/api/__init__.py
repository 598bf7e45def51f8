"""HTTP API over the model hub."""

from model_hub.api.routes import get_hub, router

__all__ = ["get_hub", "router"]

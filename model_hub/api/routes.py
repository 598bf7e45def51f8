"""Hub HTTP endpoints.

POST /v1/chat           - Route and execute a chat request
POST /v1/chat/stream    - Streaming variant (Server-Sent Events)
POST /v1/route          - Routing decision only, nothing is executed
GET  /v1/providers      - Registered providers and their models
GET  /v1/health         - Live health check of every provider
GET  /v1/metrics        - Per-provider performance metrics
GET  /v1/costs          - Cost analysis over 1h / 24h / 7d / 30d
GET  /v1/analytics      - Routing analytics and cache statistics
PUT  /v1/router-config  - Partial router configuration update
PUT  /v1/budget         - Replace budget limits

The hub instance is resolved through the ``get_hub`` dependency so tests can
swap it with app.dependency_overrides or by setting app.state.hub.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from dataclasses import asdict
from datetime import UTC, datetime
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse

from model_hub.api.schemas import BudgetBody, ChatRequestBody, RouterConfigBody
from model_hub.budget import TIME_RANGES
from model_hub.hub import ModelHub
from model_hub.types import ProviderConfig, StreamChunk

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/v1", tags=["hub"])


def get_hub(request: Request) -> ModelHub:
    hub: ModelHub | None = getattr(request.app.state, "hub", None)
    if hub is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Model hub is not initialized",
        )
    return hub


def _provider_summary(config: ProviderConfig, hub: ModelHub) -> dict[str, Any]:
    models = hub.get_provider(config.id).list_models()
    return {
        "id": config.id,
        "type": config.type.value,
        "name": config.name,
        "base_url": config.base_url,
        "enabled": config.enabled,
        "models": [
            {
                "id": m.id,
                "name": m.name,
                "max_tokens": m.max_tokens,
                "context_window": m.context_window,
                "input_cost_per_1k": m.input_cost_per_1k,
                "output_cost_per_1k": m.output_cost_per_1k,
                "capabilities": [c.value for c in m.capabilities],
                "supported_features": [f.value for f in m.supported_features],
                "average_latency": m.average_latency,
            }
            for m in models
        ],
    }


def _sse(chunk: StreamChunk) -> str:
    return f"event: {chunk.type.value}\ndata: {json.dumps(chunk.to_dict())}\n\n"


# ------------------------------------------------------------------ #
# Requests
# ------------------------------------------------------------------ #


@router.post("/chat", summary="Route and execute a chat request")
async def chat(body: ChatRequestBody, hub: ModelHub = Depends(get_hub)) -> dict[str, Any]:
    response = await hub.chat(body.to_request())
    return response.to_dict()


@router.post(
    "/chat/stream",
    summary="Route and stream a chat request",
    description="Returns Server-Sent Events, one canonical chunk per event.",
)
async def chat_stream(body: ChatRequestBody, hub: ModelHub = Depends(get_hub)) -> StreamingResponse:
    stream = hub.stream(body.to_request(stream=True))
    # Budget and routing failures surface here as HTTP errors, before any bytes are sent
    first = await anext(stream)

    async def generate() -> AsyncIterator[str]:
        try:
            yield _sse(first)
            async for chunk in stream:
                yield _sse(chunk)
        finally:
            await stream.aclose()

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("/route", summary="Preview the routing decision for a request")
async def route(body: ChatRequestBody, hub: ModelHub = Depends(get_hub)) -> dict[str, Any]:
    return hub.select_model(body.to_request()).to_dict()


# ------------------------------------------------------------------ #
# Inspection
# ------------------------------------------------------------------ #


@router.get("/providers")
async def list_providers(hub: ModelHub = Depends(get_hub)) -> list[dict[str, Any]]:
    return [_provider_summary(config, hub) for config in hub.list_providers()]


@router.get("/health")
async def health(hub: ModelHub = Depends(get_hub)) -> dict[str, Any]:
    """Run a health check against every provider right now."""
    results = await hub.get_health()
    statuses = {h.status.value for h in results}
    if not results or statuses == {"healthy"}:
        overall = "healthy"
    elif statuses == {"unhealthy"}:
        overall = "unhealthy"
    else:
        overall = "degraded"
    return {
        "status": overall,
        "providers": [asdict(h) for h in results],
        "timestamp": datetime.now(UTC).isoformat(),
    }


@router.get("/metrics")
async def provider_metrics(hub: ModelHub = Depends(get_hub)) -> list[dict[str, Any]]:
    return [asdict(m) for m in hub.get_metrics()]


@router.get("/costs")
async def costs(
    time_range: str = Query(default="24h", description="One of 1h, 24h, 7d, 30d"),
    hub: ModelHub = Depends(get_hub),
) -> dict[str, Any]:
    if time_range not in TIME_RANGES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"time_range must be one of {', '.join(TIME_RANGES)}",
        )
    return asdict(hub.get_cost_analysis(time_range))


@router.get("/analytics")
async def analytics(hub: ModelHub = Depends(get_hub)) -> dict[str, Any]:
    return hub.get_routing_analytics()


# ------------------------------------------------------------------ #
# Administration
# ------------------------------------------------------------------ #


@router.put("/router-config")
async def update_router_config(
    body: RouterConfigBody, hub: ModelHub = Depends(get_hub)
) -> dict[str, Any]:
    try:
        config = await hub.update_router_config(**body.changes())
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return asdict(config)


@router.put("/budget")
async def update_budget(body: BudgetBody, hub: ModelHub = Depends(get_hub)) -> dict[str, Any]:
    try:
        limits = body.to_limits()
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    await hub.set_budget_limits(limits)
    log.info("api.budget_updated", daily_limit=limits.daily_limit, monthly_limit=limits.monthly_limit)
    return {"limits": asdict(limits), "usage": asdict(hub.budget.get_usage())}

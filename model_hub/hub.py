"""ModelHub - the façade collaborators call.

Request pipeline (chat):
    budget check -> cache lookup -> route -> execute with fallback
    -> record spend -> cache write -> events

Request pipeline (stream):
    budget check -> route -> forward provider chunks (metadata enriched)
    -> record spend on ``done``

The hub owns provider lifecycle (register / unregister / shutdown) and a
periodic monitor that refreshes router health and metrics snapshots, purges
expired cache entries and raises budget alerts.

All shared state (provider registry, router catalog, cache, budget) lives on
the instance, so several hubs can coexist in one process.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import AsyncIterator
from dataclasses import replace
from typing import Any

import structlog

from model_hub.budget import BudgetTracker
from model_hub.cache import CacheBackend, InMemoryCacheBackend, cache_key, create_cache_backend
from model_hub.config import Settings, get_settings
from model_hub.events import EventBus, HubEvent
from model_hub.exceptions import ProviderNotFound
from model_hub.providers import create_provider
from model_hub.providers.base import ModelProvider
from model_hub.routing.fallback import FallbackExecutor
from model_hub.routing.router import IntelligentRouter
from model_hub.telemetry import prometheus
from model_hub.telemetry.logging import request_context
from model_hub.types import (
    BudgetLimits,
    ChunkType,
    CostAnalysis,
    ModelRequest,
    ModelResponse,
    PerformanceMetrics,
    ProviderConfig,
    ProviderHealth,
    ProviderStatus,
    RouterConfig,
    RouterDecision,
    StreamChunk,
    StreamMetadata,
    TokenUsage,
)

log = structlog.get_logger(__name__)


class ModelHub:
    """Routes, executes and accounts model requests across providers.

    Args:
        router_config: Routing strategy and thresholds
        budget_limits: Spend ceilings; None means unlimited
        cache_enabled: Whether chat responses are cached
        cache_max_entries: Cache capacity before eviction
        monitor_interval: Seconds between monitor ticks
        monitoring_enabled: Whether start() launches the monitor
        router: Pre-built router (tests inject one with a seeded balancer)
        cache: Response cache backend; takes precedence over cache_enabled
        events: Event bus to publish on
    """

    def __init__(
        self,
        *,
        router_config: RouterConfig | None = None,
        budget_limits: BudgetLimits | None = None,
        cache_enabled: bool = True,
        cache_max_entries: int = 1000,
        monitor_interval: float = 30.0,
        monitoring_enabled: bool = True,
        router: IntelligentRouter | None = None,
        budget: BudgetTracker | None = None,
        cache: CacheBackend | None = None,
        events: EventBus | None = None,
    ) -> None:
        self._router = router or IntelligentRouter(router_config)
        self._budget = budget or BudgetTracker(budget_limits)
        if cache is not None:
            self._cache: CacheBackend | None = cache
        elif cache_enabled:
            self._cache = InMemoryCacheBackend(
                ttl=self._router.config.cache_ttl,
                max_entries=cache_max_entries,
            )
        else:
            self._cache = None
        self.events = events or EventBus()

        self._providers: dict[str, ModelProvider] = {}
        self._configs: dict[str, ProviderConfig] = {}
        self._registry_lock = asyncio.Lock()

        self._monitor_interval = monitor_interval
        self._monitoring_enabled = monitoring_enabled
        self._monitor_task: asyncio.Task[None] | None = None
        self._closed = False

    @classmethod
    async def from_settings(cls, settings: Settings | None = None) -> ModelHub:
        """Build a hub and register a provider for every configured credential."""
        settings = settings or get_settings()
        hub = cls(
            router_config=settings.router_config(),
            budget_limits=settings.budget_limits(),
            cache_enabled=settings.cache_enabled,
            cache_max_entries=settings.cache_max_entries,
            monitor_interval=settings.health_check_interval_seconds,
            monitoring_enabled=settings.monitoring_enabled,
            cache=create_cache_backend(settings),
        )
        for config in settings.provider_configs():
            if config.enabled:
                await hub.register_provider(create_provider(config), config)
        return hub

    async def __aenter__(self) -> ModelHub:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()

    @property
    def router(self) -> IntelligentRouter:
        return self._router

    @property
    def budget(self) -> BudgetTracker:
        return self._budget

    @property
    def cache(self) -> CacheBackend | None:
        return self._cache

    # ------------------------------------------------------------------ #
    # Provider lifecycle
    # ------------------------------------------------------------------ #

    async def register_provider(self, provider: ModelProvider, config: ProviderConfig) -> None:
        """Initialize ``provider`` with ``config`` and make its models routable.

        Raises:
            ValueError: If a provider with the same id is already registered
        """
        async with self._registry_lock:
            if config.id in self._providers:
                raise ValueError(f"Provider already registered: {config.id}")

            await provider.initialize(config)
            if provider.provider_id != config.id:
                raise ValueError(
                    f"Provider initialized as {provider.provider_id!r}, expected {config.id!r}"
                )
            self._providers[config.id] = provider
            self._configs[config.id] = config
            models = self._router.add_provider(provider)

        log.info("hub.provider_registered", provider_id=config.id, model_count=len(models))
        await self.events.emit(
            HubEvent.PROVIDER_REGISTERED,
            provider_id=config.id,
            provider_type=config.type.value,
            models=[m.id for m in models],
        )

    async def unregister_provider(self, provider_id: str) -> None:
        """Shut a provider down and drop it and its models from routing.

        Raises:
            ProviderNotFound: If no provider with that id is registered
        """
        async with self._registry_lock:
            provider = self._providers.pop(provider_id, None)
            if provider is None:
                raise ProviderNotFound(provider_id)
            self._configs.pop(provider_id, None)
            self._router.remove_provider(provider_id)

        await provider.shutdown()
        log.info("hub.provider_unregistered", provider_id=provider_id)
        await self.events.emit(HubEvent.PROVIDER_UNREGISTERED, provider_id=provider_id)

    def list_providers(self) -> list[ProviderConfig]:
        return list(self._configs.values())

    def get_provider(self, provider_id: str) -> ModelProvider:
        provider = self._providers.get(provider_id)
        if provider is None:
            raise ProviderNotFound(provider_id)
        return provider

    # ------------------------------------------------------------------ #
    # Requests
    # ------------------------------------------------------------------ #

    def select_model(self, request: ModelRequest) -> RouterDecision:
        """Dry-run routing: the decision chat() would act on, without executing.

        The preview is not recorded, so it leaves round-robin state and
        routing analytics untouched.
        """
        return self._router.select_model(request, record=False)

    async def chat(self, request: ModelRequest) -> ModelResponse:
        """Serve a non-streaming request.

        Raises:
            BudgetExceeded: A spend ceiling has been reached
            ModelNotFound / ProviderUnavailable / NoEligibleModels: Routing failed
            UpstreamCallFailed: The only candidate failed
            AllFallbacksExhausted: The selected model and every alternative failed
        """
        with request_context(request.request_id, mode="chat"):
            try:
                response = await self._chat(request)
            except Exception as exc:
                log.warning("hub.request_failed", error_type=type(exc).__name__, error=str(exc))
                await self.events.emit(
                    HubEvent.REQUEST_FAILED,
                    request_id=request.request_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
            return response

    async def _chat(self, request: ModelRequest) -> ModelResponse:
        self._budget.check_budget(request)

        key: str | None = None
        if self._cache is not None:
            key = cache_key(request)
            cached = await self._cache.get(key)
            if cached is not None and not self._servable(cached, request):
                log.info("hub.cache_entry_stale", model=cached.model, provider=cached.provider)
                cached = None
            prometheus.record_cache_lookup(cached is not None)
            if cached is not None:
                cached.metadata = replace(cached.metadata, request_id=request.request_id)
                prometheus.record_hub_request(
                    provider=cached.provider, model=cached.model, mode="chat", status="cached"
                )
                log.info("hub.cache_hit", model=cached.model, provider=cached.provider)
                await self.events.emit(
                    HubEvent.CACHE_HIT,
                    request_id=request.request_id,
                    model=cached.model,
                    provider=cached.provider,
                )
                return cached

        decision = self._router.select_model(request)
        await self.events.emit(
            HubEvent.MODEL_SELECTED, request_id=request.request_id, decision=decision.to_dict()
        )

        chain = [decision.selected_model]
        if self._router.config.enable_fallback:
            chain.extend(decision.alternative_models)

        async def on_fallback(failed: str, next_model: str, error: Exception) -> None:
            prometheus.record_fallback(failed, next_model)
            await self.events.emit(
                HubEvent.FALLBACK_TRIGGERED,
                request_id=request.request_id,
                failed_model=failed,
                next_model=next_model,
                error=str(error),
            )

        executor: FallbackExecutor[ModelResponse] = FallbackExecutor(on_fallback)
        response, _ = await executor.execute(chain, lambda model_id: self._execute(request, model_id))

        self._budget.record_usage(
            response.cost,
            provider=response.provider,
            model=response.model,
            tokens=response.usage.total_tokens,
        )
        if self._cache is not None and key is not None:
            await self._cache.put(key, response)

        log.info(
            "hub.request_completed",
            provider=response.provider,
            model=response.model,
            cost=round(response.cost, 6),
            latency_ms=round(response.latency, 2),
        )
        await self.events.emit(
            HubEvent.REQUEST_COMPLETED,
            request_id=request.request_id,
            provider=response.provider,
            model=response.model,
            cost=response.cost,
            latency=response.latency,
            usage={
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            },
        )
        return response

    def _servable(self, cached: ModelResponse, request: ModelRequest) -> bool:
        """Whether a cached answer may still be returned for ``request``.

        The producing provider must still be registered and not unhealthy,
        and the request must not exclude it.
        """
        if cached.provider not in self._providers:
            return False
        health = self._router.get_health(cached.provider)
        if health is not None and health.status is ProviderStatus.UNHEALTHY:
            return False
        requirements = request.requirements
        return requirements is None or cached.provider not in requirements.excluded_providers

    async def _execute(self, request: ModelRequest, model_id: str) -> ModelResponse:
        """Run ``request`` on ``model_id`` via the provider that owns it."""
        model = self._router.get_model(model_id)
        provider = self.get_provider(model.provider_id)
        routed = replace(request, model=model_id)

        self._router.acquire(model.provider_id)
        prometheus.track_inflight(model.provider_id, 1)
        try:
            response = await provider.chat(routed)
        except Exception:
            prometheus.record_hub_request(
                provider=model.provider_id, model=model_id, mode="chat", status="error"
            )
            raise
        finally:
            self._router.release(model.provider_id)
            prometheus.track_inflight(model.provider_id, -1)

        prometheus.record_hub_request(
            provider=response.provider,
            model=response.model,
            mode="chat",
            status="success",
            duration_seconds=response.latency / 1000,
            prompt_tokens=response.usage.prompt_tokens,
            completion_tokens=response.usage.completion_tokens,
            cost=response.cost,
        )
        return response

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamChunk]:
        """Serve a streaming request.

        Budget and routing failures raise before the first chunk. Once the
        upstream stream has started, the sequence always ends with exactly
        one ``done`` or ``error`` chunk, and nothing follows it.
        """
        try:
            self._budget.check_budget(request)
            decision = self._router.select_model(request)
            model = self._router.get_model(decision.selected_model)
            provider = self.get_provider(model.provider_id)
        except Exception as exc:
            log.warning(
                "hub.stream_failed",
                request_id=request.request_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            await self.events.emit(
                HubEvent.STREAM_FAILED,
                request_id=request.request_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        await self.events.emit(
            HubEvent.MODEL_SELECTED, request_id=request.request_id, decision=decision.to_dict()
        )
        await self.events.emit(
            HubEvent.STREAM_STARTED,
            request_id=request.request_id,
            model=model.id,
            provider=model.provider_id,
        )

        start = time.perf_counter()
        total_cost = 0.0
        usage: TokenUsage | None = None
        terminal = False

        upstream = provider.stream(replace(request, model=model.id, stream=True))
        self._router.acquire(model.provider_id)
        prometheus.track_inflight(model.provider_id, 1)
        try:
            try:
                async for chunk in upstream:
                    if chunk.type is ChunkType.USAGE:
                        total_cost += chunk.metadata.cost
                        usage = chunk.usage

                    meta = replace(chunk.metadata, request_id=request.request_id)
                    if chunk.type in (ChunkType.USAGE, ChunkType.DONE):
                        meta.cost = total_cost
                    enriched = replace(chunk, metadata=meta)

                    if chunk.type is ChunkType.DONE:
                        terminal = True
                        await self._finish_stream(request, model.id, model.provider_id, total_cost, usage, start)
                        yield enriched
                        break
                    if chunk.type is ChunkType.ERROR:
                        terminal = True
                        await self._fail_stream(request, model.id, model.provider_id, chunk.error or "")
                        yield enriched
                        break
                    yield enriched
            except Exception as exc:
                if terminal:
                    raise
                terminal = True
                await self._fail_stream(request, model.id, model.provider_id, str(exc))
                yield self._error_chunk(request, model.id, model.provider_id, str(exc), start)

            if not terminal:
                message = "stream ended without a terminal chunk"
                await self._fail_stream(request, model.id, model.provider_id, message)
                yield self._error_chunk(request, model.id, model.provider_id, message, start)
        finally:
            self._router.release(model.provider_id)
            prometheus.track_inflight(model.provider_id, -1)
            aclose = getattr(upstream, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _finish_stream(
        self,
        request: ModelRequest,
        model_id: str,
        provider_id: str,
        cost: float,
        usage: TokenUsage | None,
        start: float,
    ) -> None:
        tokens = usage.total_tokens if usage is not None else 0
        self._budget.record_usage(cost, provider=provider_id, model=model_id, tokens=tokens)
        prometheus.record_hub_request(
            provider=provider_id,
            model=model_id,
            mode="stream",
            status="success",
            duration_seconds=time.perf_counter() - start,
            prompt_tokens=usage.prompt_tokens if usage is not None else 0,
            completion_tokens=usage.completion_tokens if usage is not None else 0,
            cost=cost,
        )
        log.info(
            "hub.stream_completed",
            request_id=request.request_id,
            provider=provider_id,
            model=model_id,
            cost=round(cost, 6),
        )
        await self.events.emit(
            HubEvent.STREAM_COMPLETED,
            request_id=request.request_id,
            model=model_id,
            provider=provider_id,
            cost=cost,
            total_tokens=tokens,
        )

    async def _fail_stream(
        self, request: ModelRequest, model_id: str, provider_id: str, error: str
    ) -> None:
        prometheus.record_hub_request(
            provider=provider_id, model=model_id, mode="stream", status="error"
        )
        log.warning(
            "hub.stream_error",
            request_id=request.request_id,
            provider=provider_id,
            model=model_id,
            error=error,
        )
        await self.events.emit(
            HubEvent.STREAM_ERROR,
            request_id=request.request_id,
            model=model_id,
            provider=provider_id,
            error=error,
        )

    @staticmethod
    def _error_chunk(
        request: ModelRequest, model_id: str, provider_id: str, error: str, start: float
    ) -> StreamChunk:
        return StreamChunk(
            type=ChunkType.ERROR,
            metadata=StreamMetadata(
                model=model_id,
                provider=provider_id,
                request_id=request.request_id,
                latency=(time.perf_counter() - start) * 1000,
            ),
            error=error,
        )

    # ------------------------------------------------------------------ #
    # Administration
    # ------------------------------------------------------------------ #

    def get_metrics(self) -> list[PerformanceMetrics]:
        return [provider.get_metrics() for provider in self._providers.values()]

    def get_cost_analysis(self, time_range: str = "24h") -> CostAnalysis:
        return self._budget.get_cost_analysis(time_range)

    async def get_health(self) -> list[ProviderHealth]:
        """Health-check every provider concurrently and update the router."""
        providers = list(self._providers.items())
        results = await asyncio.gather(
            *(provider.health_check() for _, provider in providers),
            return_exceptions=True,
        )

        health: list[ProviderHealth] = []
        for (provider_id, _), result in zip(providers, results, strict=True):
            if isinstance(result, BaseException):
                log.error("hub.health_check_failed", provider_id=provider_id, error=str(result))
                result = ProviderHealth(
                    provider_id=provider_id,
                    status=ProviderStatus.UNHEALTHY,
                    availability=0.0,
                    error=str(result),
                )
            self._router.update_health(result)
            health.append(result)
        return health

    def get_routing_analytics(self) -> dict[str, Any]:
        analytics = self._router.get_analytics()
        analytics["cache"] = self._cache.stats() if self._cache is not None else None
        return analytics

    async def update_router_config(self, **changes: Any) -> RouterConfig:
        """Apply ``changes`` to the router config (e.g. ``strategy=...``).

        Raises:
            TypeError: If a key is not a RouterConfig field
            ValueError: If the resulting config is invalid
        """
        config = replace(self._router.config, **changes)
        self._router.update_config(config)
        if self._cache is not None and "cache_ttl" in changes:
            self._cache.ttl = config.cache_ttl

        await self.events.emit(HubEvent.CONFIG_UPDATED, changes=sorted(changes))
        return config

    async def set_budget_limits(self, limits: BudgetLimits) -> None:
        self._budget.set_limits(limits)
        await self.events.emit(
            HubEvent.BUDGET_UPDATED,
            daily_limit=limits.daily_limit,
            monthly_limit=limits.monthly_limit,
        )

    # ------------------------------------------------------------------ #
    # Monitoring
    # ------------------------------------------------------------------ #

    async def refresh(self) -> None:
        """One monitor tick: health, metrics, cache purge, budget alerts."""
        await self.get_health()
        for provider_id, provider in list(self._providers.items()):
            self._router.update_metrics(provider_id, provider.get_metrics())

        if self._cache is not None:
            await self._cache.purge_expired()

        usage = self._budget.get_usage()
        prometheus.update_budget_usage(usage.daily_usage, usage.monthly_usage)
        for alert in self._budget.check_alerts():
            await self.events.emit(
                HubEvent.BUDGET_ALERT,
                type=alert.type.value,
                period=alert.period.value,
                current_usage=alert.current_usage,
                limit=alert.limit,
                percentage=alert.percentage,
                message=alert.message,
            )

    async def start(self) -> None:
        """Launch the periodic monitor (no-op if disabled or already running)."""
        if not self._monitoring_enabled or self._monitor_task is not None:
            return
        self._closed = False
        self._monitor_task = asyncio.create_task(self._monitor_loop(), name="model-hub-monitor")
        log.info("hub.monitor_started", interval_seconds=self._monitor_interval)

    async def _monitor_loop(self) -> None:
        while True:
            try:
                await self.refresh()
            except Exception as exc:
                log.error("hub.monitor_tick_failed", error=str(exc), exc_info=True)
            await asyncio.sleep(self._monitor_interval)

    async def shutdown(self) -> None:
        """Stop the monitor, shut every provider down and close the cache. Idempotent."""
        if self._closed:
            return
        self._closed = True

        if self._monitor_task is not None:
            self._monitor_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._monitor_task
            self._monitor_task = None

        async with self._registry_lock:
            providers = list(self._providers.items())
            for provider_id, _ in providers:
                self._router.remove_provider(provider_id)
            self._providers.clear()
            self._configs.clear()

        results = await asyncio.gather(
            *(provider.shutdown() for _, provider in providers),
            return_exceptions=True,
        )
        for (provider_id, _), result in zip(providers, results, strict=True):
            if isinstance(result, BaseException):
                log.error("hub.provider_shutdown_failed", provider_id=provider_id, error=str(result))
        if self._cache is not None:
            await self._cache.close()

        log.info("hub.shutdown", provider_count=len(providers))
        await self.events.emit(HubEvent.SHUTDOWN, provider_count=len(providers))

"""Response cache - completed chat responses keyed on what determines them.

Caches full ModelResponses keyed on the fields that determine the model's
output or the set of models allowed to produce it (messages, model,
max_tokens, temperature, tools, routing requirements), so identical requests
within the TTL never hit a provider twice. Keys are SHA-256 digests of a
canonical JSON encoding, which makes them deterministic and independent of
per-request metadata such as the request id.

Only non-streamed responses that finished normally are stored. Truncated,
filtered or tool-call responses are always recomputed.

Backends:
- InMemoryCacheBackend: per-process store (ResponseCache) with bounded size
- RedisCacheBackend: shared store for multi-instance deployments; Redis
  handles expiry, values are JSON encoded

create_cache_backend() picks Redis when ``REDIS_URL`` is configured and the
in-memory store otherwise.

Eviction (in-memory): once the entry count exceeds ``max_entries`` the oldest
10% by insertion time are dropped. This approximates LRU by recency of
insertion, not by hit frequency. Expired entries are dropped lazily on read.
"""

from __future__ import annotations

import hashlib
import json
import math
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import replace
from typing import TYPE_CHECKING, Any

import redis.asyncio as aioredis
import structlog

from model_hub.types import (
    CacheEntry,
    FinishReason,
    ModelRequest,
    ModelResponse,
    RequestRequirements,
)

if TYPE_CHECKING:
    from model_hub.config import Settings

log = structlog.get_logger(__name__)

# Namespace prefix so keys are recognisable in logs and in Redis
_RESPONSE_NS = "resp"


def cache_key(request: ModelRequest, model: str | None = None) -> str:
    """Build a deterministic cache key for ``request``.

    Args:
        request: The request to key
        model: Model id to key on; defaults to ``request.model``. When the
            caller lets the router choose, this is None and all such
            requests share the router-chosen namespace.

    Returns:
        String of the form "resp:<hex_digest>"
    """
    payload = {
        "messages": [
            {
                "role": m.role,
                "content": m.content,
                "name": m.name,
                "tool_call_id": m.tool_call_id,
            }
            for m in request.messages
        ],
        "model": model if model is not None else request.model,
        "max_tokens": request.max_tokens,
        "temperature": request.temperature,
        "tools": [
            {"name": t.name, "description": t.description, "parameters": t.parameters}
            for t in request.tools
        ],
        "requirements": _requirements_payload(request.requirements),
    }
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return f"{_RESPONSE_NS}:{hashlib.sha256(raw.encode()).hexdigest()}"


def _requirements_payload(requirements: RequestRequirements | None) -> dict[str, Any] | None:
    if requirements is None:
        return None
    return {
        "preferred_providers": list(requirements.preferred_providers),
        "excluded_providers": sorted(requirements.excluded_providers),
        "required_capabilities": sorted(str(c) for c in requirements.required_capabilities),
        "required_features": sorted(str(f) for f in requirements.required_features),
        "max_cost": requirements.max_cost,
        "max_latency": requirements.max_latency,
    }


def is_cacheable(response: ModelResponse) -> bool:
    return not response.cached and response.finish_reason is FinishReason.STOP


class ResponseCache:
    """Bounded TTL cache of ModelResponses.

    Args:
        ttl: Default entry lifetime in seconds
        max_entries: Entry count ceiling before eviction
        clock: Source of wall-clock seconds (injectable for tests)
    """

    EVICTION_FRACTION = 0.10

    def __init__(
        self,
        *,
        ttl: float = 3600.0,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self._ttl = ttl
        self._max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    @property
    def ttl(self) -> float:
        return self._ttl

    @ttl.setter
    def ttl(self, value: float) -> None:
        self._ttl = value

    def get(self, key: str) -> ModelResponse | None:
        """Return a copy of the cached response marked ``cached=True``, or None."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None

            if entry.is_expired(self._clock()):
                del self._entries[key]
                self._misses += 1
                log.debug("cache.expired", key=key)
                return None

            entry.hit_count += 1
            self._hits += 1
            response = replace(entry.response, cached=True)

        log.debug("cache.hit", key=key, hit_count=entry.hit_count)
        return response

    def put(self, key: str, response: ModelResponse, ttl: float | None = None) -> bool:
        """Store ``response`` if it is cacheable.

        Returns:
            True if stored, False if the response was rejected
        """
        if not is_cacheable(response):
            return False

        entry = CacheEntry(
            key=key,
            response=replace(response, cached=False),
            timestamp=self._clock(),
            ttl=self._ttl if ttl is None else ttl,
            size=_serialized_size(response),
        )
        with self._lock:
            self._entries[key] = entry
            if len(self._entries) > self._max_entries:
                self._evict_oldest()

        log.debug("cache.stored", key=key, size=entry.size, ttl=entry.ttl)
        return True

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
        if expired:
            log.debug("cache.purged", count=len(expired))
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            lookups = self._hits + self._misses
            return {
                "entries": len(self._entries),
                "max_entries": self._max_entries,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round(self._hits / lookups, 4) if lookups else 0.0,
                "total_size": sum(e.size for e in self._entries.values()),
                "ttl": self._ttl,
            }

    def _evict_oldest(self) -> None:
        """Drop the oldest 10% by insertion time. Caller holds the lock."""
        count = max(1, math.ceil(len(self._entries) * self.EVICTION_FRACTION))
        oldest = sorted(self._entries.values(), key=lambda e: e.timestamp)[:count]
        for entry in oldest:
            del self._entries[entry.key]
        log.info("cache.evicted", count=count, remaining=len(self._entries))


def _serialized_size(response: ModelResponse) -> int:
    return len(json.dumps(response.to_dict(), default=str))


# ------------------------------------------------------------------ #
# Backends
# ------------------------------------------------------------------ #


class CacheBackend(ABC):
    """Interface the hub uses for response caching."""

    @property
    @abstractmethod
    def ttl(self) -> float:
        """Default entry lifetime in seconds."""

    @ttl.setter
    @abstractmethod
    def ttl(self, value: float) -> None: ...

    @abstractmethod
    async def get(self, key: str) -> ModelResponse | None:
        """Return the cached response marked ``cached=True``, or None."""

    @abstractmethod
    async def put(self, key: str, response: ModelResponse, ttl: float | None = None) -> bool:
        """Store ``response`` if cacheable. Returns True if stored."""

    @abstractmethod
    async def purge_expired(self) -> int:
        """Drop expired entries. Returns the number removed."""

    @abstractmethod
    async def clear(self) -> None:
        """Remove every cached response."""

    @abstractmethod
    def stats(self) -> dict[str, Any]:
        """Backend statistics for analytics."""

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryCacheBackend(CacheBackend):
    """Per-process backend over a ResponseCache."""

    def __init__(
        self,
        *,
        ttl: float = 3600.0,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = ResponseCache(ttl=ttl, max_entries=max_entries, clock=clock)

    @property
    def ttl(self) -> float:
        return self._store.ttl

    @ttl.setter
    def ttl(self, value: float) -> None:
        self._store.ttl = value

    async def get(self, key: str) -> ModelResponse | None:
        return self._store.get(key)

    async def put(self, key: str, response: ModelResponse, ttl: float | None = None) -> bool:
        return self._store.put(key, response, ttl)

    async def purge_expired(self) -> int:
        return self._store.purge_expired()

    async def clear(self) -> None:
        self._store.clear()
        log.info("cache.memory.cleared")

    def __len__(self) -> int:
        return len(self._store)

    def stats(self) -> dict[str, Any]:
        return {"backend": "memory", **self._store.stats()}


class RedisCacheBackend(CacheBackend):
    """Shared cache backend backed by Redis.

    Values are JSON-encoded ModelResponse dicts stored with SETEX, so Redis
    owns expiry. Redis errors never fail a request: they are logged and the
    lookup is treated as a miss (or the write as skipped).

    Args:
        redis_url: Connection URL, e.g. ``redis://localhost:6379/0``
        ttl: Default entry lifetime in seconds
        client: Pre-built redis.asyncio client (tests inject a mock)
    """

    def __init__(
        self,
        redis_url: str | None = None,
        *,
        ttl: float = 3600.0,
        client: Any = None,
    ) -> None:
        if redis_url is None and client is None:
            raise ValueError("redis_url or client is required")
        self._redis_url = redis_url
        self._client = client
        self._ttl = ttl
        self._hits = 0
        self._misses = 0
        self._errors = 0

    def _get_client(self) -> Any:
        """Return or create the Redis client (lazy init)."""
        if self._client is None:
            self._client = aioredis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            log.info("cache.redis.connected", url=self._redis_url)
        return self._client

    @property
    def ttl(self) -> float:
        return self._ttl

    @ttl.setter
    def ttl(self, value: float) -> None:
        self._ttl = value

    async def get(self, key: str) -> ModelResponse | None:
        try:
            raw = await self._get_client().get(key)
        except Exception as exc:
            self._errors += 1
            self._misses += 1
            log.warning("cache.redis.get_failed", key=key, error=str(exc))
            return None

        if raw is None:
            self._misses += 1
            return None
        try:
            response = ModelResponse.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            self._misses += 1
            log.warning("cache.redis.decode_failed", key=key, error=str(exc))
            return None

        self._hits += 1
        log.debug("cache.hit", key=key, backend="redis")
        return replace(response, cached=True)

    async def put(self, key: str, response: ModelResponse, ttl: float | None = None) -> bool:
        if not is_cacheable(response):
            return False
        seconds = int(self._ttl if ttl is None else ttl)
        if seconds <= 0:
            return False

        serialised = json.dumps(replace(response, cached=False).to_dict(), default=str)
        try:
            await self._get_client().setex(key, seconds, serialised)
        except Exception as exc:
            self._errors += 1
            log.warning("cache.redis.set_failed", key=key, error=str(exc))
            return False

        log.debug("cache.stored", key=key, size=len(serialised), ttl=seconds, backend="redis")
        return True

    async def purge_expired(self) -> int:
        # Redis expires keys itself
        return 0

    async def clear(self) -> None:
        client = self._get_client()
        deleted = 0
        try:
            async for key in client.scan_iter(match=f"{_RESPONSE_NS}:*", count=100):
                await client.delete(key)
                deleted += 1
        except Exception as exc:
            self._errors += 1
            log.warning("cache.redis.clear_failed", error=str(exc))
            return
        self._hits = 0
        self._misses = 0
        log.info("cache.redis.cleared", deleted=deleted)

    def stats(self) -> dict[str, Any]:
        lookups = self._hits + self._misses
        return {
            "backend": "redis",
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / lookups, 4) if lookups else 0.0,
            "errors": self._errors,
            "ttl": self._ttl,
        }

    async def close(self) -> None:
        if self._client is not None:
            try:
                await self._client.aclose()
            except Exception as exc:
                log.warning("cache.redis.close_failed", error=str(exc))
            self._client = None


def create_cache_backend(settings: Settings) -> CacheBackend | None:
    """Return the backend ``settings`` call for, or None when caching is off."""
    if not settings.cache_enabled:
        return None
    if settings.redis_url:
        log.info("cache.backend_selected", backend="redis")
        return RedisCacheBackend(settings.redis_url, ttl=settings.cache_ttl_seconds)
    log.info("cache.backend_selected", backend="memory")
    return InMemoryCacheBackend(
        ttl=settings.cache_ttl_seconds,
        max_entries=settings.cache_max_entries,
    )

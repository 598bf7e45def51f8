"""Tests for response cache keys, the in-process store and the cache backends."""

from __future__ import annotations

import json

import pytest

from model_hub.cache import (
    InMemoryCacheBackend,
    RedisCacheBackend,
    ResponseCache,
    cache_key,
    create_cache_backend,
)
from model_hub.types import (
    ChatMessage,
    FinishReason,
    ModelRequest,
    ModelResponse,
    RequestRequirements,
    TokenUsage,
    ToolCall,
    ToolDefinition,
)
from tests.conftest import make_request


def _response(finish_reason: FinishReason = FinishReason.STOP, **kwargs) -> ModelResponse:
    return ModelResponse(
        id="resp_1",
        model="gpt-4o-mini",
        provider="openai",
        content="Paris",
        finish_reason=finish_reason,
        usage=TokenUsage(prompt_tokens=10, completion_tokens=2),
        cost=0.0001,
        **kwargs,
    )


class TestCacheKey:
    def test_key_is_namespaced_sha256(self):
        key = cache_key(make_request())
        prefix, digest = key.split(":")
        assert prefix == "resp"
        assert len(digest) == 64

    def test_key_ignores_request_id(self):
        first = make_request("What is the capital of France?")
        second = make_request("What is the capital of France?")
        assert first.request_id != second.request_id
        assert cache_key(first) == cache_key(second)

    def test_key_changes_with_content(self):
        assert cache_key(make_request("a")) != cache_key(make_request("b"))

    def test_key_changes_with_generation_parameters(self):
        base = cache_key(make_request())
        assert cache_key(make_request(temperature=0.2)) != base
        assert cache_key(make_request(max_tokens=10)) != base
        assert cache_key(make_request(model="gpt-4o")) != base

    def test_key_changes_with_role(self):
        user = ModelRequest(messages=[ChatMessage(role="user", content="hi")])
        system = ModelRequest(messages=[ChatMessage(role="system", content="hi")])
        assert cache_key(user) != cache_key(system)

    def test_model_argument_overrides_request_model(self):
        request = make_request()
        assert cache_key(request, "gpt-4o") == cache_key(make_request(model="gpt-4o"))

    def test_key_changes_with_tools(self):
        base = cache_key(make_request())
        lookup = ToolDefinition(name="lookup", description="Find a city")
        with_tool = cache_key(make_request(tools=[lookup]))
        assert with_tool != base

        wider = ToolDefinition(
            name="lookup", description="Find a city", parameters={"type": "object"}
        )
        assert cache_key(make_request(tools=[wider])) != with_tool

    def test_key_changes_with_requirements(self):
        base = cache_key(make_request())
        excluding = make_request(requirements=RequestRequirements(excluded_providers=["openai"]))
        capped = make_request(requirements=RequestRequirements(max_cost=0.01))
        assert cache_key(excluding) != base
        assert cache_key(capped) != base
        assert cache_key(excluding) != cache_key(capped)

    def test_excluded_provider_order_does_not_matter(self):
        first = RequestRequirements(excluded_providers=["a", "b"])
        second = RequestRequirements(excluded_providers=["b", "a"])
        assert cache_key(make_request(requirements=first)) == cache_key(
            make_request(requirements=second)
        )


class TestResponseCache:
    def test_round_trip_marks_response_cached(self, clock):
        cache = ResponseCache(clock=clock)
        assert cache.put("k", _response()) is True

        hit = cache.get("k")
        assert hit is not None
        assert hit.cached is True
        assert hit.content == "Paris"
        assert hit.usage.total_tokens == 12

    def test_stored_entry_is_not_mutated_by_hits(self, clock):
        cache = ResponseCache(clock=clock)
        cache.put("k", _response())
        cache.get("k")
        # The stored copy stays uncached, so it can be re-served as often as needed
        assert cache.get("k").cached is True
        assert cache.stats()["hits"] == 2

    def test_miss_returns_none(self, clock):
        cache = ResponseCache(clock=clock)
        assert cache.get("missing") is None
        assert cache.stats()["misses"] == 1

    def test_entry_expires_after_ttl(self, clock):
        cache = ResponseCache(ttl=60, clock=clock)
        cache.put("k", _response())

        clock.advance(60)
        assert cache.get("k") is not None

        clock.advance(1)
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_per_entry_ttl(self, clock):
        cache = ResponseCache(ttl=3600, clock=clock)
        cache.put("short", _response(), ttl=5)
        clock.advance(10)
        assert cache.get("short") is None

    def test_non_stop_responses_are_not_cached(self, clock):
        cache = ResponseCache(clock=clock)
        assert cache.put("length", _response(FinishReason.LENGTH)) is False
        assert cache.put("tools", _response(FinishReason.TOOL_CALLS)) is False
        assert len(cache) == 0

    def test_cached_responses_are_not_re_stored(self, clock):
        cache = ResponseCache(clock=clock)
        assert cache.put("k", _response(cached=True)) is False

    def test_eviction_drops_oldest_tenth(self, clock):
        cache = ResponseCache(max_entries=10, clock=clock)
        for i in range(10):
            cache.put(f"k{i}", _response())
            clock.advance(1)

        # 11 entries -> ceil(1.1) = 2 oldest dropped
        cache.put("k10", _response())

        assert len(cache) == 9
        assert cache.get("k0") is None
        assert cache.get("k1") is None
        assert cache.get("k2") is not None
        assert cache.get("k10") is not None

    def test_purge_expired(self, clock):
        cache = ResponseCache(ttl=10, clock=clock)
        cache.put("old", _response())
        clock.advance(5)
        cache.put("new", _response())
        clock.advance(6)

        assert cache.purge_expired() == 1
        assert cache.get("new") is not None

    def test_ttl_setter_applies_to_new_entries(self, clock):
        cache = ResponseCache(ttl=3600, clock=clock)
        cache.ttl = 1
        cache.put("k", _response())
        clock.advance(2)
        assert cache.get("k") is None

    def test_stats_and_clear(self, clock):
        cache = ResponseCache(clock=clock)
        cache.put("k", _response())
        cache.get("k")
        cache.get("other")

        stats = cache.stats()
        assert stats["entries"] == 1
        assert stats["hit_rate"] == 0.5
        assert stats["total_size"] > 0

        cache.clear()
        assert len(cache) == 0
        assert cache.stats()["hits"] == 0


class FakeRedis:
    """Async client double covering the redis.asyncio calls the backend makes."""

    def __init__(self, fail: bool = False) -> None:
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.fail = fail
        self.closed = False

    async def get(self, key):
        if self.fail:
            raise ConnectionError("redis down")
        return self.store.get(key)

    async def setex(self, key, ttl, value):
        if self.fail:
            raise ConnectionError("redis down")
        self.store[key] = value
        self.ttls[key] = ttl

    async def delete(self, key):
        self.store.pop(key, None)

    async def scan_iter(self, match=None, count=None):
        prefix = match.rstrip("*")
        for key in list(self.store):
            if key.startswith(prefix):
                yield key

    async def aclose(self):
        self.closed = True


class TestInMemoryCacheBackend:
    async def test_round_trip_and_stats(self, clock):
        backend = InMemoryCacheBackend(ttl=60, max_entries=5, clock=clock)
        assert await backend.put("k", _response()) is True

        hit = await backend.get("k")
        assert hit.cached is True
        assert await backend.get("other") is None

        stats = backend.stats()
        assert stats["backend"] == "memory"
        assert stats["entries"] == 1
        assert stats["hits"] == 1
        assert stats["misses"] == 1

    async def test_expiry_purge_and_clear(self, clock):
        backend = InMemoryCacheBackend(ttl=10, clock=clock)
        await backend.put("a", _response())
        clock.advance(11)
        assert await backend.purge_expired() == 1

        await backend.put("b", _response())
        await backend.clear()
        assert len(backend) == 0

    async def test_ttl_is_shared_with_store(self, clock):
        backend = InMemoryCacheBackend(ttl=3600, clock=clock)
        backend.ttl = 1
        await backend.put("k", _response())
        clock.advance(2)
        assert backend.ttl == 1
        assert await backend.get("k") is None

    async def test_rejects_uncacheable_responses(self):
        backend = InMemoryCacheBackend()
        assert await backend.put("k", _response(FinishReason.TOOL_CALLS)) is False


class TestRedisCacheBackend:
    async def test_round_trip_uses_setex(self):
        client = FakeRedis()
        backend = RedisCacheBackend(client=client, ttl=120)
        response = _response(tool_calls=[ToolCall(id="c1", name="lookup", arguments="{}")])

        assert await backend.put("resp:abc", response) is True
        assert client.ttls["resp:abc"] == 120
        assert json.loads(client.store["resp:abc"])["cached"] is False

        hit = await backend.get("resp:abc")
        assert hit.cached is True
        assert hit.content == "Paris"
        assert hit.usage.total_tokens == 12
        assert hit.tool_calls[0].name == "lookup"
        assert hit.finish_reason is FinishReason.STOP

    async def test_miss_and_stats(self):
        backend = RedisCacheBackend(client=FakeRedis())
        assert await backend.get("resp:missing") is None

        stats = backend.stats()
        assert stats["backend"] == "redis"
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.0

    async def test_errors_degrade_to_misses(self):
        backend = RedisCacheBackend(client=FakeRedis(fail=True))

        assert await backend.put("resp:k", _response()) is False
        assert await backend.get("resp:k") is None
        assert backend.stats()["errors"] == 2

    async def test_undecodable_value_is_a_miss(self):
        client = FakeRedis()
        client.store["resp:bad"] = "not json"
        backend = RedisCacheBackend(client=client)
        assert await backend.get("resp:bad") is None

    async def test_zero_ttl_is_not_stored(self):
        client = FakeRedis()
        backend = RedisCacheBackend(client=client, ttl=0)
        assert await backend.put("resp:k", _response()) is False
        assert client.store == {}

    async def test_clear_only_drops_response_keys(self):
        client = FakeRedis()
        client.store["session:1"] = "keep"
        backend = RedisCacheBackend(client=client)
        await backend.put("resp:a", _response())
        await backend.put("resp:b", _response())

        await backend.clear()
        assert client.store == {"session:1": "keep"}

    async def test_close(self):
        client = FakeRedis()
        backend = RedisCacheBackend(client=client)
        await backend.close()
        assert client.closed is True

    def test_requires_url_or_client(self):
        with pytest.raises(ValueError):
            RedisCacheBackend()


class TestCreateCacheBackend:
    def test_memory_without_redis_url(self, fake_settings):
        backend = create_cache_backend(fake_settings)
        assert isinstance(backend, InMemoryCacheBackend)
        assert backend.ttl == fake_settings.cache_ttl_seconds

    def test_redis_when_url_configured(self, fake_settings):
        settings = fake_settings.model_copy(
            update={"redis_url": "redis://localhost:6379/0", "cache_ttl_seconds": 90}
        )
        backend = create_cache_backend(settings)
        assert isinstance(backend, RedisCacheBackend)
        assert backend.ttl == 90

    def test_disabled(self, fake_settings):
        settings = fake_settings.model_copy(update={"cache_enabled": False})
        assert create_cache_backend(settings) is None

"""Tests for result caching."""

from unittest.mock import MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from identification_orchestration.cache import (
    InMemoryResultCache,
    RedisResultCache,
    build_cache_key,
)
from identification_orchestration.models import AggregationResult, ProviderSuccess

from tests.unit.helpers.factories import make_identification


def _result(request_id="req-1", providers=("a",)):
    return AggregationResult(
        request_id=request_id,
        per_provider_outcomes=[
            ProviderSuccess(provider=p, identifications=[make_identification(provider=p)])
            for p in providers
        ],
        combined=[],
        timing_ms=12,
    )


def _key(**overrides):
    params = {"category": None, "min_confidence": 0.3, "max_results": 20}
    params.update(overrides)
    return build_cache_key("abc123", **params)


class TestBuildCacheKey:
    def test_key_is_deterministic(self):
        assert _key() == _key()

    def test_provider_order_does_not_matter(self):
        assert _key(providers=["a", "b"]) == _key(providers=["b", "a"])

    def test_options_change_key(self):
        base = _key()
        assert _key(category="bird") != base
        assert _key(min_confidence=0.5) != base
        assert _key(max_results=5) != base
        assert _key(restrict_to_category=True) != base
        assert _key(providers=["a"]) != base
        assert build_cache_key("other", category=None, min_confidence=0.3, max_results=20) != base


class TestInMemoryResultCache:
    def test_set_and_get(self, fake_clock):
        cache = InMemoryResultCache(ttl_seconds=60, clock=fake_clock)
        result = _result()
        cache.set("k", result)
        assert cache.get("k") == result
        assert cache.get("missing") is None

    def test_entries_expire(self, fake_clock):
        cache = InMemoryResultCache(ttl_seconds=60, clock=fake_clock)
        cache.set("k", _result())
        fake_clock.advance(59)
        assert cache.get("k") is not None
        fake_clock.advance(1)
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_per_entry_ttl_override(self, fake_clock):
        cache = InMemoryResultCache(ttl_seconds=60, clock=fake_clock)
        cache.set("k", _result(), 5)
        fake_clock.advance(5)
        assert cache.get("k") is None

    def test_zero_ttl_disables_storage(self, fake_clock):
        cache = InMemoryResultCache(ttl_seconds=0, clock=fake_clock)
        cache.set("k", _result())
        assert len(cache) == 0

    def test_invalidate_for_provider(self, fake_clock):
        cache = InMemoryResultCache(clock=fake_clock)
        cache.set("k1", _result(providers=("a", "b")))
        cache.set("k2", _result(providers=("b",)))
        cache.set("k3", _result(providers=("c",)))
        assert cache.invalidate_for_provider("b") == 2
        assert cache.get("k3") is not None
        assert cache.invalidate_for_provider("a") == 0

    def test_set_prunes_expired_entries_and_index(self, fake_clock):
        cache = InMemoryResultCache(ttl_seconds=60, clock=fake_clock)
        cache.set("old", _result(providers=("a", "b")), 5)
        fake_clock.advance(5)
        cache.set("new", _result(providers=("c",)))
        assert len(cache) == 1
        assert set(cache._by_provider) == {"c"}
        assert cache.invalidate_for_provider("a") == 0

    def test_expired_get_clears_index(self, fake_clock):
        cache = InMemoryResultCache(ttl_seconds=5, clock=fake_clock)
        cache.set("k", _result(providers=("a",)))
        fake_clock.advance(5)
        assert cache.get("k") is None
        assert cache._by_provider == {}

    def test_is_healthy(self):
        assert InMemoryResultCache().is_healthy() is True


class TestRedisResultCache:
    def test_requires_url_or_client(self):
        with pytest.raises(ValueError):
            RedisResultCache()

    def test_round_trip_through_client(self):
        client = MagicMock()
        stored = {}
        pipe = MagicMock()
        pipe.set.side_effect = lambda key, value, ex: stored.__setitem__(key, value)
        client.pipeline.return_value = pipe
        client.get.side_effect = lambda key: stored.get(key)

        cache = RedisResultCache(client=client, ttl_seconds=30, key_prefix="t:")
        result = _result()
        cache.set("k", result)
        pipe.set.assert_called_once()
        assert pipe.set.call_args.kwargs["ex"] == 30
        pipe.sadd.assert_called_once_with("t:idx:provider:a", "k")
        assert cache.get("k") == result

    def test_miss_returns_none(self):
        client = MagicMock()
        client.get.return_value = None
        assert RedisResultCache(client=client).get("k") is None

    def test_redis_errors_degrade_to_miss(self):
        client = MagicMock()
        client.get.side_effect = RedisConnectionError("down")
        client.pipeline.side_effect = RedisConnectionError("down")
        cache = RedisResultCache(client=client)
        assert cache.get("k") is None
        cache.set("k", _result())

    def test_corrupt_entry_is_a_miss(self):
        client = MagicMock()
        client.get.return_value = b"{not json"
        assert RedisResultCache(client=client).get("k") is None

    def test_unreachable_server_is_unhealthy(self):
        with patch("identification_orchestration.cache.redis.Redis.from_url") as from_url:
            from_url.return_value.ping.side_effect = RedisConnectionError("refused")
            cache = RedisResultCache("redis://localhost:6390/0")
            assert cache.is_healthy() is False
            assert cache.get("k") is None

    def test_invalidate_for_provider(self):
        client = MagicMock()
        client.smembers.return_value = {b"k1", b"k2"}
        pipe = MagicMock()
        client.pipeline.return_value = pipe
        cache = RedisResultCache(client=client, key_prefix="t:")
        assert cache.invalidate_for_provider("a") == 2
        pipe.delete.assert_any_call("t:result:k1")
        pipe.delete.assert_any_call("t:idx:provider:a")

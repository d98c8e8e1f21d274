"""Caching module for aggregated identification results.

The orchestrator consults a :class:`ResultCache` before contacting providers
and stores the aggregated result afterwards. An in-memory cache serves tests
and single-process deployments; the Redis-backed cache serves production.
"""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Protocol, Set

import redis
from pydantic import ValidationError as ModelValidationError
from redis.exceptions import RedisError

from .models import AggregationResult

logger = logging.getLogger(__name__)


class ResultCache(Protocol):
    """Read/write hook the orchestrator uses around provider fan-out."""

    def get(self, key: str) -> Optional[AggregationResult]:
        ...

    def set(self, key: str, value: AggregationResult, ttl_seconds: Optional[int] = None) -> None:
        ...


def build_cache_key(
    content_hash: str,
    *,
    category: Optional[str],
    min_confidence: float,
    max_results: int,
    restrict_to_category: bool = False,
    providers: Iterable[str] = (),
) -> str:
    """Build a deterministic cache key from payload hash and effective options.

    The request id is deliberately absent so repeated payloads hit the cache.
    """

    prov = ",".join(sorted(providers))
    opts = f"{category or '*'}|{min_confidence:.6f}|{max_results}|{int(restrict_to_category)}"
    return hashlib.sha256(f"{content_hash}|{opts}|{prov}".encode("utf-8")).hexdigest()


@dataclass
class _CacheEntry:
    """Internal cache entry with expiration."""
    value: AggregationResult
    expires_at: float


class InMemoryResultCache:
    """Process-local TTL cache of aggregated results."""

    def __init__(
        self, ttl_seconds: int = 1800, *, clock: Callable[[], float] = time.time
    ) -> None:
        self._store: Dict[str, _CacheEntry] = {}
        self._ttl = ttl_seconds
        self._clock = clock
        # Index for invalidation when a provider goes away
        self._by_provider: Dict[str, Set[str]] = {}

    def get(self, key: str) -> Optional[AggregationResult]:
        """Fetch a cached result if available and not expired."""

        e = self._store.get(key)
        if not e:
            return None
        if e.expires_at <= self._clock():
            self._drop(key)
            return None
        return e.value

    def set(self, key: str, value: AggregationResult, ttl_seconds: Optional[int] = None) -> None:
        """Insert or update a cached result."""

        ttl = self._ttl if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            return
        self._purge_expired()
        self._store[key] = _CacheEntry(value=value, expires_at=self._clock() + ttl)
        for outcome in value.per_provider_outcomes:
            self._by_provider.setdefault(outcome.provider, set()).add(key)

    def _drop(self, key: str) -> None:
        self._store.pop(key, None)
        for provider in list(self._by_provider):
            keys = self._by_provider[provider]
            keys.discard(key)
            if not keys:
                del self._by_provider[provider]

    def _purge_expired(self) -> None:
        now = self._clock()
        for key in [k for k, e in self._store.items() if e.expires_at <= now]:
            self._drop(key)

    def invalidate_for_provider(self, provider: str) -> int:
        """Drop every cached result that involved ``provider``."""

        keys = self._by_provider.pop(provider, set())
        count = 0
        for k in keys:
            if self._store.pop(k, None) is not None:
                count += 1
        for other in list(self._by_provider):
            self._by_provider[other].difference_update(keys)
            if not self._by_provider[other]:
                del self._by_provider[other]
        return count

    def clear(self) -> None:
        self._store.clear()
        self._by_provider.clear()

    def __len__(self) -> int:
        return len(self._store)

    def is_healthy(self) -> bool:
        """In-memory cache is always healthy."""
        return True


class RedisResultCache:
    """Redis-backed result cache; any Redis failure degrades to a miss."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        client: Optional[redis.Redis] = None,
        ttl_seconds: int = 1800,
        key_prefix: str = "idorch:",
    ) -> None:
        if client is None and not redis_url:
            raise ValueError("RedisResultCache requires redis_url or client")
        self._url = redis_url
        self._prefix = key_prefix
        self._ttl = ttl_seconds
        self._redis: Optional[redis.Redis] = client

    def _ensure_client(self) -> bool:
        if self._redis is not None:
            return True
        try:
            self._redis = redis.Redis.from_url(self._url, socket_timeout=0.2)
            self._redis.ping()
            return True
        except RedisError as exc:
            logger.warning("RedisResultCache unavailable: %s", exc)
            self._redis = None
            return False

    def _result_key(self, key: str) -> str:
        return f"{self._prefix}result:{key}"

    def _provider_index(self, provider: str) -> str:
        return f"{self._prefix}idx:provider:{provider}"

    def get(self, key: str) -> Optional[AggregationResult]:
        if self._ttl <= 0:
            return None
        if not self._ensure_client():
            return None
        try:
            raw = self._redis.get(self._result_key(key))
            if not raw:
                return None
            return AggregationResult.model_validate_json(raw)
        except (RedisError, ModelValidationError, ValueError) as exc:
            logger.warning("Failed to read Redis cache entry: %s", exc)
            return None

    def set(self, key: str, value: AggregationResult, ttl_seconds: Optional[int] = None) -> None:
        ttl = self._ttl if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            return
        if not self._ensure_client():
            return
        try:
            pipe = self._redis.pipeline()
            pipe.set(self._result_key(key), value.model_dump_json(), ex=ttl)
            for outcome in value.per_provider_outcomes:
                idx = self._provider_index(outcome.provider)
                pipe.sadd(idx, key)
                pipe.expire(idx, ttl)
            pipe.execute()
        except RedisError as exc:
            logger.warning("Failed to store Redis cache entry: %s", exc)

    def invalidate_for_provider(self, provider: str) -> int:
        if not self._ensure_client():
            return 0
        try:
            idx = self._provider_index(provider)
            keys = self._redis.smembers(idx)
            if not keys:
                return 0
            key_list = [k.decode("utf-8") if isinstance(k, bytes) else str(k) for k in keys]
            pipe = self._redis.pipeline()
            for k in key_list:
                pipe.delete(self._result_key(k))
            pipe.delete(idx)
            pipe.execute()
            return len(key_list)
        except RedisError as exc:
            logger.warning("Failed provider invalidation in Redis cache: %s", exc)
            return 0

    def is_healthy(self) -> bool:
        if not self._ensure_client():
            return False
        try:
            self._redis.ping()
            return True
        except RedisError as exc:
            logger.warning("Redis health check failed: %s", exc)
            return False


__all__ = [
    "InMemoryResultCache",
    "RedisResultCache",
    "ResultCache",
    "build_cache_key",
]

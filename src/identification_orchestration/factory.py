"""Construction helpers wiring configuration into a ready orchestrator."""

from __future__ import annotations

import logging
import random
from typing import Optional

import httpx

from .aggregator import ResultAggregator
from .backoff import BackoffPolicy
from .cache import InMemoryResultCache, RedisResultCache, ResultCache
from .classification import (
    CategoryClassifier,
    KeywordCategoryClassifier,
    load_category_keywords,
)
from .clients import HttpIdentificationProvider, StaticIdentificationProvider
from .config import OrchestrationConfig, ProviderEndpoint, Settings
from .events import EventSink, LoggingEventSink
from .invoker import RetryingInvoker
from .metrics import OrchestrationMetricsCollector
from .orchestrator import IdentificationOrchestrator
from .providers import IdentificationProvider

logger = logging.getLogger(__name__)


def build_classifier(config: OrchestrationConfig) -> CategoryClassifier:
    """Create the label classifier, from the keyword file when configured."""
    if config.category_keywords_path:
        return KeywordCategoryClassifier(load_category_keywords(config.category_keywords_path))
    return KeywordCategoryClassifier()


def build_cache(config: OrchestrationConfig) -> Optional[ResultCache]:
    """Create the result cache backend based on configuration."""
    if not config.cache_enabled:
        return None
    if config.cache_backend == "redis" and config.redis_url:
        redis_cache = RedisResultCache(
            config.redis_url,
            ttl_seconds=config.cache_ttl_seconds,
            key_prefix=config.redis_prefix,
        )
        if redis_cache.is_healthy():
            return redis_cache
        logger.warning("Redis result cache unhealthy, falling back to memory cache")
    elif config.cache_backend not in ("memory", "redis"):
        logger.warning("Unknown cache backend %s, using memory cache", config.cache_backend)
    return InMemoryResultCache(ttl_seconds=config.cache_ttl_seconds)


def build_provider(
    endpoint: ProviderEndpoint,
    *,
    classifier: Optional[CategoryClassifier] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    max_payload_bytes: Optional[int] = None,
) -> IdentificationProvider:
    """Create the adapter for one configured provider endpoint."""
    if endpoint.is_builtin:
        kind = endpoint.endpoint.split(":", 1)[1]
        return StaticIdentificationProvider.builtin(
            endpoint.name,
            kind,
            endpoint.supported_categories,
            classifier=classifier,
            max_payload_bytes=max_payload_bytes,
        )
    if endpoint.endpoint.startswith(("http://", "https://")):
        return HttpIdentificationProvider(
            endpoint.name,
            endpoint.endpoint,
            endpoint.supported_categories,
            timeout_seconds=endpoint.timeout_seconds,
            headers=endpoint.auth,
            classifier=classifier,
            transport=transport,
            max_payload_bytes=max_payload_bytes,
        )
    raise ValueError(f"Unsupported provider endpoint for {endpoint.name}: {endpoint.endpoint}")


def build_orchestrator(
    settings: Optional[Settings] = None,
    *,
    cache: Optional[ResultCache] = None,
    sink: Optional[EventSink] = None,
    metrics: Optional[OrchestrationMetricsCollector] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> IdentificationOrchestrator:
    """Create an orchestrator with one adapter per enabled provider."""

    settings = settings or Settings()
    config = settings.config
    metrics = metrics or OrchestrationMetricsCollector()
    backoff = BackoffPolicy(
        base_seconds=config.backoff.base_seconds,
        max_seconds=config.backoff.max_seconds,
        jitter=config.backoff.jitter,
        rng=random.Random() if config.backoff.jitter else None,
    )
    orchestrator = IdentificationOrchestrator(
        invoker=RetryingInvoker(
            backoff,
            metrics=metrics,
            retry_on_timeouts=config.retry_on_timeouts,
            retry_on_failures=config.retry_on_failures,
        ),
        aggregator=ResultAggregator(config.aggregation),
        cache=cache if cache is not None else build_cache(config),
        sink=sink if sink is not None else LoggingEventSink(),
        metrics=metrics,
        request_deadline_seconds=config.request_deadline_seconds,
        max_payload_bytes=config.max_payload_bytes,
        cache_ttl_seconds=config.cache_ttl_seconds,
        health_check_interval_seconds=config.health_check_interval_seconds,
        unhealthy_threshold=config.unhealthy_threshold,
    )
    classifier = build_classifier(config)
    for endpoint in settings.enabled_providers():
        orchestrator.register_provider(
            endpoint.to_descriptor(),
            build_provider(
                endpoint,
                classifier=classifier,
                transport=transport,
                max_payload_bytes=config.max_payload_bytes,
            ),
        )
    logger.info(
        "Orchestrator ready with %d providers",
        len(orchestrator.provider_names),
        extra={"providers": orchestrator.provider_names, "environment": settings.environment},
    )
    return orchestrator


__all__ = ["build_cache", "build_classifier", "build_orchestrator", "build_provider"]

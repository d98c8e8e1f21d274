"""Identification orchestrator.

Fans one identification request out to every eligible provider concurrently,
collects one outcome per provider (a failing provider never fails the
request), and hands the outcomes to the aggregator.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from .cache import ResultCache, build_cache_key
from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitBreakerState,
    CircuitTransition,
)
from .aggregator import ResultAggregator
from .errors import NoEligibleProvidersError, ValidationError
from .events import BREAKER_TRANSITION, IDENTIFICATION_COMPLETED, EventSink, safe_emit
from .health_monitor import HealthMonitor
from .invoker import RetryingInvoker
from .metrics import OrchestrationMetricsCollector
from .models import (
    AggregationResult,
    HealthState,
    HealthStatusReport,
    IdentifyOptions,
    OutcomeStatus,
    ProviderDescriptor,
    ProviderFailure,
    ProviderHealth,
    ProviderOutcome,
)
from .providers import IdentificationProvider
from .validation import DEFAULT_MAX_PAYLOAD_BYTES, content_hash, decode_payload

logger = logging.getLogger(__name__)


@dataclass
class _Registration:
    descriptor: ProviderDescriptor
    provider: IdentificationProvider
    breaker: CircuitBreaker


class IdentificationOrchestrator:
    """Runs identification requests across all registered providers.

    Provider registration is expected at startup and is not safe to run
    concurrently with in-flight requests.
    """

    # pylint: disable=too-many-instance-attributes

    def __init__(
        self,
        *,
        invoker: Optional[RetryingInvoker] = None,
        aggregator: Optional[ResultAggregator] = None,
        cache: Optional[ResultCache] = None,
        sink: Optional[EventSink] = None,
        metrics: Optional[OrchestrationMetricsCollector] = None,
        request_deadline_seconds: float = 30.0,
        max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES,
        cache_ttl_seconds: int = 1800,
        health_check_interval_seconds: float = 30.0,
        unhealthy_threshold: int = 3,
        clock=time.time,
    ) -> None:
        if request_deadline_seconds <= 0:
            raise ValueError("request_deadline_seconds must be > 0")
        self.metrics = metrics or OrchestrationMetricsCollector()
        self.invoker = invoker or RetryingInvoker(metrics=self.metrics)
        if self.invoker.metrics is None:
            self.invoker.metrics = self.metrics
        self.aggregator = aggregator or ResultAggregator()
        self.cache = cache
        self.sink = sink
        self.request_deadline_seconds = request_deadline_seconds
        self.max_payload_bytes = max_payload_bytes
        self.cache_ttl_seconds = cache_ttl_seconds
        self.breakers = CircuitBreakerRegistry(clock=clock, listeners=[self._on_transition])
        self._registrations: Dict[str, _Registration] = {}
        self._providers: Dict[str, IdentificationProvider] = {}
        self.health_monitor = HealthMonitor(
            self._providers,
            interval_seconds=health_check_interval_seconds,
            metrics=self.metrics,
            unhealthy_threshold=unhealthy_threshold,
        )

    # --- registration -------------------------------------------------------------
    def register_provider(
        self, descriptor: ProviderDescriptor, provider: IdentificationProvider
    ) -> CircuitBreaker:
        """Register an adapter and create its breaker from the descriptor."""

        if descriptor.name in self._registrations:
            raise ValueError(f"Provider already registered: {descriptor.name}")
        if provider.name != descriptor.name:
            raise ValueError(
                f"Provider adapter name {provider.name!r} does not match descriptor {descriptor.name!r}"
            )
        breaker = self.breakers.register(
            descriptor.name,
            failure_threshold=descriptor.breaker.failure_threshold,
            recovery_timeout_seconds=descriptor.breaker.recovery_timeout_seconds,
            monitoring_period_seconds=descriptor.breaker.monitoring_period_seconds,
        )
        self._registrations[descriptor.name] = _Registration(descriptor, provider, breaker)
        self._providers[descriptor.name] = provider
        self.metrics.record_circuit_breaker(descriptor.name, breaker.state)
        logger.info(
            "Registered provider %s",
            descriptor.name,
            extra={
                "provider": descriptor.name,
                "categories": sorted(descriptor.supported_categories),
            },
        )
        return breaker

    def unregister_provider(self, name: str) -> None:
        if name not in self._registrations:
            raise KeyError(f"Provider not registered: {name}")
        self._registrations.pop(name)
        self._providers.pop(name, None)
        self.breakers.unregister(name)
        invalidate = getattr(self.cache, "invalidate_for_provider", None)
        if invalidate is not None:
            invalidate(name)
        logger.info("Unregistered provider %s", name, extra={"provider": name})

    @property
    def provider_names(self) -> List[str]:
        """Registered providers in registration order."""
        return list(self._registrations)

    def get_descriptor(self, name: str) -> ProviderDescriptor:
        return self._registrations[name].descriptor

    # --- request path ---------------------------------------------------------------
    async def identify(
        self, payload: bytes | str, options: Optional[IdentifyOptions] = None
    ) -> AggregationResult:
        """Identify ``payload`` with every eligible provider.

        Raises :class:`ValidationError` for a bad payload and
        :class:`NoEligibleProvidersError` when no registered provider supports
        the requested category; provider failures never raise.
        """

        options = options or IdentifyOptions()
        request_id = options.request_id or uuid.uuid4().hex
        options = options.model_copy(update={"request_id": request_id})
        category = options.category
        start = time.perf_counter()

        try:
            decoded = decode_payload(payload, self.max_payload_bytes)
        except ValidationError:
            self.metrics.record_request("invalid", self._elapsed_ms(start))
            raise

        eligible, unknown = self._select(options)
        if not eligible:
            self.metrics.record_request("no_providers", self._elapsed_ms(start))
            logger.warning(
                "No eligible providers for request %s",
                request_id,
                extra={"request_id": request_id, "category": category},
            )
            raise NoEligibleProvidersError(category)

        weights = self.aggregator.weights
        min_confidence = (
            weights.min_confidence if options.min_confidence is None else options.min_confidence
        )
        max_results = weights.max_results if options.max_results is None else options.max_results
        cache_key: Optional[str] = None
        if self.cache is not None and options.use_cache:
            cache_key = build_cache_key(
                content_hash(decoded.data),
                category=category,
                min_confidence=min_confidence,
                max_results=max_results,
                restrict_to_category=options.restrict_to_category,
                providers=[reg.descriptor.name for reg in eligible] + unknown,
            )
            cached = self._cache_get(cache_key)
            if cached is not None:
                result = cached.model_copy(
                    update={
                        "request_id": request_id,
                        "cached": True,
                        "timing_ms": self._elapsed_ms(start),
                    }
                )
                self._complete(result, "cached")
                return result

        outcomes = await self._fan_out(eligible, decoded.data, options)
        for name in unknown:
            outcomes.append(
                ProviderFailure(
                    provider=name,
                    error_kind="not_registered",
                    message=f"Provider not registered: {name}",
                )
            )

        combined = self.aggregator.aggregate(
            outcomes,
            provider_order=self.provider_names,
            priorities={
                name: reg.descriptor.category_priorities
                for name, reg in self._registrations.items()
            },
            category=category,
            restrict_to_category=options.restrict_to_category,
            min_confidence=min_confidence,
            max_results=max_results,
        )
        result = AggregationResult(
            request_id=request_id,
            per_provider_outcomes=outcomes,
            combined=combined,
            timing_ms=self._elapsed_ms(start),
            category=category,
        )
        # Partial results are not cached so a recovered provider is seen promptly
        if cache_key is not None and all(
            outcome.status == OutcomeStatus.SUCCESS.value for outcome in outcomes
        ):
            self._cache_set(cache_key, result)
        self._complete(result, "failed" if result.all_failed else "success")
        return result

    def _select(self, options: IdentifyOptions) -> tuple[List[_Registration], List[str]]:
        registrations = list(self._registrations.values())
        unknown: List[str] = []
        if options.providers is not None:
            wanted = list(dict.fromkeys(options.providers))
            unknown = [name for name in wanted if name not in self._registrations]
            registrations = [reg for reg in registrations if reg.descriptor.name in wanted]
        if options.category is not None:
            registrations = [
                reg for reg in registrations if reg.descriptor.supports(options.category)
            ]
        return registrations, unknown

    async def _fan_out(
        self, eligible: Sequence[_Registration], data: bytes, options: IdentifyOptions
    ) -> List[ProviderOutcome]:
        tasks: Dict[str, asyncio.Task] = {}
        for reg in eligible:
            self.metrics.record_provider_call(reg.descriptor.name)
            tasks[reg.descriptor.name] = asyncio.create_task(
                self.invoker.invoke(reg.descriptor, reg.provider, reg.breaker, data, options)
            )
        try:
            _, pending = await asyncio.wait(
                tasks.values(), timeout=self.request_deadline_seconds
            )
        finally:
            # Outstanding calls are cancelled at the deadline or if the request is cancelled
            leftover = [task for task in tasks.values() if not task.done()]
            for task in leftover:
                task.cancel()
            if leftover:
                await asyncio.gather(*leftover, return_exceptions=True)

        outcomes: List[ProviderOutcome] = []
        deadline_ms = int(self.request_deadline_seconds * 1000)
        for reg in eligible:
            name = reg.descriptor.name
            task = tasks[name]
            if task in pending or task.cancelled():
                logger.warning(
                    "Provider %s exceeded the request deadline",
                    name,
                    extra={"provider": name, "request_id": options.request_id},
                )
                outcome: ProviderOutcome = ProviderFailure(
                    provider=name,
                    error_kind="timeout",
                    message="request deadline exceeded",
                    latency_ms=deadline_ms,
                )
            elif task.exception() is not None:
                exc = task.exception()
                logger.error(
                    "Invoker raised for provider %s: %s",
                    name,
                    exc,
                    extra={"provider": name, "request_id": options.request_id},
                )
                outcome = ProviderFailure(
                    provider=name, error_kind="provider_error", message=str(exc)
                )
            else:
                outcome = task.result()
            self.metrics.record_provider_outcome(
                name,
                outcome.status,
                None if outcome.status == OutcomeStatus.SHORT_CIRCUITED.value else outcome.latency_ms,
            )
            outcomes.append(outcome)
        return outcomes

    def _cache_get(self, key: str) -> Optional[AggregationResult]:
        try:
            cached = self.cache.get(key)
        except Exception:  # noqa: BLE001
            logger.warning("Result cache lookup failed", exc_info=True)
            self.metrics.record_cache_operation("error")
            return None
        self.metrics.record_cache_operation("hit" if cached is not None else "miss")
        return cached

    def _cache_set(self, key: str, result: AggregationResult) -> None:
        try:
            self.cache.set(key, result, self.cache_ttl_seconds)
        except Exception:  # noqa: BLE001
            logger.warning("Result cache store failed", exc_info=True)
            self.metrics.record_cache_operation("error")

    def _complete(self, result: AggregationResult, status: str) -> None:
        self.metrics.record_request(status, result.timing_ms)
        counts = {
            state.value: len(result.outcomes_with_status(state)) for state in OutcomeStatus
        }
        logger.info(
            "Identification request %s completed with %d results",
            result.request_id,
            len(result.combined),
            extra={
                "request_id": result.request_id,
                "status": status,
                "timing_ms": result.timing_ms,
                **counts,
            },
        )
        safe_emit(
            self.sink,
            {
                "type": IDENTIFICATION_COMPLETED,
                "request_id": result.request_id,
                "category": result.category,
                "outcomes": counts,
                "combined": len(result.combined),
                "timing_ms": result.timing_ms,
                "cached": result.cached,
            },
        )

    # --- breaker observability ------------------------------------------------------
    def _on_transition(self, transition: CircuitTransition) -> None:
        self.metrics.record_circuit_breaker(transition.provider, transition.new_state)
        safe_emit(
            self.sink,
            {
                "type": BREAKER_TRANSITION,
                "provider": transition.provider,
                "from": transition.old_state.value,
                "to": transition.new_state.value,
                "reason": transition.reason,
                "consecutive_failures": transition.snapshot.consecutive_failures,
                "next_probe_time": transition.snapshot.next_probe_time,
            },
        )

    def reset_breaker(self, name: str) -> None:
        self.breakers.get(name).reset()

    def force_open_breaker(self, name: str) -> None:
        self.breakers.get(name).force_open()

    # --- health, capabilities, metrics ----------------------------------------------
    def get_health_status(self) -> HealthStatusReport:
        """Summarize breaker state; read-only."""

        snapshots = self.breakers.snapshots()
        per_provider = {
            name: ProviderHealth(
                state=snap.state,
                consecutive_failures=snap.consecutive_failures,
                last_failure_time=snap.last_failure_time,
                next_probe_time=snap.next_probe_time,
            )
            for name, snap in snapshots.items()
        }
        states = [snap.state for snap in snapshots.values()]
        if not states or all(state == CircuitBreakerState.OPEN for state in states):
            overall = HealthState.UNHEALTHY
        elif all(state == CircuitBreakerState.CLOSED for state in states):
            overall = HealthState.HEALTHY
        else:
            overall = HealthState.DEGRADED
        return HealthStatusReport(overall=overall, per_provider=per_provider)

    async def probe_health(self) -> Dict[str, HealthState]:
        """Run one probe round across providers; breakers are not touched."""

        status = await self.health_monitor.check_all()
        return {name: st.last_state for name, st in status.items()}

    def get_capabilities(self) -> Dict[str, Any]:
        providers = {
            name: sorted(reg.descriptor.supported_categories)
            for name, reg in self._registrations.items()
        }
        categories = sorted({cat for cats in providers.values() for cat in cats})
        return {
            "providers": providers,
            "categories": categories,
            "total_providers": len(providers),
        }

    def get_metrics(self) -> Dict[str, Any]:
        summary = self.metrics.get_metrics_summary()
        summary["breakers"] = {
            name: snap.state.value for name, snap in self.breakers.snapshots().items()
        }
        return summary

    # --- lifecycle ------------------------------------------------------------------
    async def start(self) -> None:
        await self.health_monitor.start()

    async def aclose(self) -> None:
        await self.health_monitor.stop()
        for name, provider in list(self._providers.items()):
            try:
                await provider.aclose()
            except Exception:  # noqa: BLE001
                logger.warning("Failed to close provider %s", name, exc_info=True)

    async def __aenter__(self) -> "IdentificationOrchestrator":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int((time.perf_counter() - start) * 1000)


__all__ = ["IdentificationOrchestrator"]

from __future__ import annotations

from collections import defaultdict
from dataclasses import asdict, dataclass
from typing import Dict, Optional

from prometheus_client import Counter, Gauge, Histogram

from .circuit_breaker import CircuitBreakerState


_REQ_TOTAL = Counter(
    "identify_requests_total",
    "Total identification requests",
    labelnames=["status"],
)
_REQ_DURATION = Histogram(
    "identify_request_duration_ms",
    "Identification request duration in ms",
    buckets=(50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000),
)
_PROVIDER_CALLS = Counter(
    "identify_provider_calls_total",
    "Provider invocations per request",
    labelnames=["provider"],
)
_PROVIDER_ATTEMPTS = Counter(
    "identify_provider_attempts_total",
    "Provider call attempts including retries",
    labelnames=["provider"],
)
_PROVIDER_OUTCOMES = Counter(
    "identify_provider_outcomes_total",
    "Provider outcomes by status",
    labelnames=["provider", "status"],
)
_PROVIDER_LATENCY = Histogram(
    "identify_provider_latency_ms",
    "Provider latency in ms",
    labelnames=["provider", "status"],
    buckets=(10, 50, 100, 250, 500, 1000, 2500, 5000, 10000),
)
_CB_STATE = Gauge(
    "identify_circuit_breaker_state",
    "Circuit breaker state (1 for the current state, 0 otherwise)",
    labelnames=["provider", "state"],
)
_PROVIDER_HEALTH = Gauge(
    "identify_provider_health_status",
    "Provider health probe status (1 healthy, 0 unhealthy)",
    labelnames=["provider"],
)
_PROVIDER_HEALTH_DURATION = Histogram(
    "identify_provider_health_check_duration_ms",
    "Provider health probe duration in ms",
    labelnames=["provider"],
    buckets=(10, 50, 100, 200, 500, 1000, 3000),
)
_CACHE_OPS = Counter(
    "identify_cache_operations_total",
    "Result cache lookups by outcome",
    labelnames=["outcome"],
)


@dataclass
class ProviderStats:
    attempted: int = 0
    attempts: int = 0
    succeeded: int = 0
    failed: int = 0
    short_circuited: int = 0
    latency_sum_ms: float = 0.0
    latency_count: int = 0

    @property
    def average_latency_ms(self) -> float:
        if self.latency_count == 0:
            return 0.0
        return self.latency_sum_ms / self.latency_count


class OrchestrationMetricsCollector:
    def __init__(self) -> None:
        # In-memory mirrors to provide summaries without scraping Prometheus
        self._providers: Dict[str, ProviderStats] = defaultdict(ProviderStats)
        self._request_totals: Dict[str, int] = defaultdict(int)
        self._cache_totals: Dict[str, int] = defaultdict(int)
        self._latency_sum_ms: float = 0.0
        self._latency_count: int = 0

    def record_request(self, status: str, duration_ms: float) -> None:
        _REQ_TOTAL.labels(status=status).inc()
        _REQ_DURATION.observe(duration_ms)
        self._request_totals[status] += 1
        self._latency_sum_ms += duration_ms
        self._latency_count += 1

    def record_provider_call(self, provider: str) -> None:
        _PROVIDER_CALLS.labels(provider=provider).inc()
        self._providers[provider].attempted += 1

    def record_attempt(self, provider: str) -> None:
        _PROVIDER_ATTEMPTS.labels(provider=provider).inc()
        self._providers[provider].attempts += 1

    def record_provider_outcome(
        self, provider: str, status: str, duration_ms: Optional[float] = None
    ) -> None:
        _PROVIDER_OUTCOMES.labels(provider=provider, status=status).inc()
        stats = self._providers[provider]
        if status == "success":
            stats.succeeded += 1
        elif status == "short_circuited":
            stats.short_circuited += 1
        else:
            stats.failed += 1
        if duration_ms is not None:
            _PROVIDER_LATENCY.labels(provider=provider, status=status).observe(duration_ms)
            stats.latency_sum_ms += duration_ms
            stats.latency_count += 1

    def record_circuit_breaker(self, provider: str, state: CircuitBreakerState | str) -> None:
        current = state.value if isinstance(state, CircuitBreakerState) else state
        for candidate in CircuitBreakerState:
            _CB_STATE.labels(provider=provider, state=candidate.value).set(
                1.0 if candidate.value == current else 0.0
            )

    def record_provider_health(
        self, provider: str, is_healthy: bool, duration_ms: float | None = None
    ) -> None:
        _PROVIDER_HEALTH.labels(provider=provider).set(1.0 if is_healthy else 0.0)
        if duration_ms is not None:
            _PROVIDER_HEALTH_DURATION.labels(provider=provider).observe(duration_ms)

    def record_cache_operation(self, outcome: str) -> None:
        label = outcome if outcome in {"hit", "miss", "error"} else "other"
        _CACHE_OPS.labels(outcome=label).inc()
        self._cache_totals[label] += 1

    # Summary helpers for health reporting and tests
    def get_provider_stats(self, provider: str) -> ProviderStats:
        return self._providers.get(provider) or ProviderStats()

    def get_total_requests(self) -> int:
        return sum(self._request_totals.values())

    def get_average_latency(self) -> float:
        if self._latency_count == 0:
            return 0.0
        return self._latency_sum_ms / self._latency_count

    def get_metrics_summary(self) -> Dict[str, object]:
        return {
            "requests_total": self.get_total_requests(),
            "requests_by_status": dict(self._request_totals),
            "average_latency_ms": self.get_average_latency(),
            "cache": dict(self._cache_totals),
            "providers": {
                name: {**asdict(stats), "average_latency_ms": stats.average_latency_ms}
                for name, stats in self._providers.items()
            },
        }

    def reset_metrics(self) -> None:
        self._providers.clear()
        self._request_totals.clear()
        self._cache_totals.clear()
        self._latency_sum_ms = 0.0
        self._latency_count = 0
        # Prometheus client objects keep their own internal state; only the
        # local mirrors used for summaries are cleared here.

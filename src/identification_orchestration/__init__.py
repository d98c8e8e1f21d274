"""Public package interface for identification orchestration."""

__version__ = "0.1.0"

from .aggregator import ResultAggregator, rank_identifications
from .backoff import BackoffPolicy
from .circuit_breaker import CircuitBreaker, CircuitBreakerRegistry, CircuitBreakerState
from .config import Settings
from .errors import (
    NoEligibleProvidersError,
    OrchestrationError,
    ProviderError,
    ProviderTimeoutError,
    ShortCircuitError,
    ValidationError,
)
from .factory import build_orchestrator
from .invoker import RetryingInvoker
from .models import (
    AggregatedIdentification,
    AggregationResult,
    HealthState,
    Identification,
    IdentifyOptions,
    ProviderDescriptor,
)
from .orchestrator import IdentificationOrchestrator
from .providers import IdentificationProvider, ProviderBase

__all__ = [
    "__version__",
    "AggregatedIdentification",
    "AggregationResult",
    "BackoffPolicy",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitBreakerState",
    "HealthState",
    "Identification",
    "IdentificationOrchestrator",
    "IdentificationProvider",
    "IdentifyOptions",
    "NoEligibleProvidersError",
    "OrchestrationError",
    "ProviderBase",
    "ProviderDescriptor",
    "ProviderError",
    "ProviderTimeoutError",
    "ResultAggregator",
    "RetryingInvoker",
    "Settings",
    "ShortCircuitError",
    "ValidationError",
    "build_orchestrator",
    "rank_identifications",
]

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, FrozenSet, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .circuit_breaker import CircuitBreakerState


class HealthState(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SHORT_CIRCUITED = "short_circuited"


class BreakerConfig(BaseModel):
    """Per-provider circuit breaker tuning."""

    model_config = ConfigDict(frozen=True)

    failure_threshold: int = Field(default=5, ge=1)
    recovery_timeout_seconds: float = Field(default=60.0, gt=0)
    monitoring_period_seconds: float = Field(default=60.0, gt=0)


class ProviderDescriptor(BaseModel):
    """Static description of a provider; immutable once registered."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    supported_categories: FrozenSet[str] = Field(default_factory=lambda: frozenset({"general"}))
    timeout_seconds: float = Field(default=10.0, gt=0)
    max_retries: int = Field(default=3, ge=0)
    category_priorities: Dict[str, int] = Field(default_factory=dict)
    breaker: BreakerConfig = Field(default_factory=BreakerConfig)

    def supports(self, category: str) -> bool:
        return category in self.supported_categories

    def priority_for(self, category: str) -> Optional[int]:
        return self.category_priorities.get(category)


class BoundingBox(BaseModel):
    x: float
    y: float
    width: float = Field(..., ge=0)
    height: float = Field(..., ge=0)


class Identification(BaseModel):
    """A single candidate result produced by a provider adapter."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    confidence: float = Field(..., ge=0.0, le=1.0)
    category: str = "general"
    source_provider: str
    bounding_box: Optional[BoundingBox] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AggregatedIdentification(BaseModel):
    """Merge of one or more same-entity identifications across providers."""

    name: str
    category: str
    merged_confidence: float = Field(..., ge=0.0, le=1.0)
    peak_confidence: float = Field(..., ge=0.0, le=1.0)
    contributing_providers: List[str] = Field(..., min_length=1)
    bounding_box: Optional[BoundingBox] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class IdentifyOptions(BaseModel):
    """Caller options for a single identification request."""

    category: Optional[str] = None
    min_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    max_results: Optional[int] = Field(default=None, ge=1)
    request_id: Optional[str] = None
    restrict_to_category: bool = False
    use_cache: bool = True
    # Limit the fan-out to these providers; unknown names yield not_registered
    providers: Optional[List[str]] = None


class ProviderSuccess(BaseModel):
    status: Literal["success"] = "success"
    provider: str
    identifications: List[Identification] = Field(default_factory=list)
    attempts: int = 1
    latency_ms: int = 0


class ProviderFailure(BaseModel):
    status: Literal["failure"] = "failure"
    provider: str
    error_kind: str
    message: str
    attempts: int = 0
    latency_ms: int = 0


class ProviderShortCircuited(BaseModel):
    status: Literal["short_circuited"] = "short_circuited"
    provider: str
    next_probe_time: Optional[float] = None
    attempts: int = 0
    latency_ms: int = 0


ProviderOutcome = Annotated[
    Union[ProviderSuccess, ProviderFailure, ProviderShortCircuited],
    Field(discriminator="status"),
]


class AggregationResult(BaseModel):
    """Complete response of one orchestration call."""

    request_id: str
    per_provider_outcomes: List[ProviderOutcome]
    combined: List[AggregatedIdentification]
    timing_ms: int
    category: Optional[str] = None
    cached: bool = False
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def outcomes_with_status(self, status: OutcomeStatus) -> List[str]:
        return [o.provider for o in self.per_provider_outcomes if o.status == status.value]

    @property
    def all_failed(self) -> bool:
        """True when no provider produced a successful outcome."""
        return not self.outcomes_with_status(OutcomeStatus.SUCCESS)


class ProviderHealth(BaseModel):
    state: CircuitBreakerState
    consecutive_failures: int
    last_failure_time: Optional[float] = None
    next_probe_time: Optional[float] = None


class HealthStatusReport(BaseModel):
    overall: HealthState
    per_provider: Dict[str, ProviderHealth] = Field(default_factory=dict)


class ErrorBody(BaseModel):
    """Canonical error body returned to callers of the transport layer."""

    error_code: str
    message: Optional[str] = None
    request_id: Optional[str] = None
    retryable: bool = False

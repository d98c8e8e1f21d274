"""Configuration models for the identification orchestrator.

This module defines the configuration schemas used by the orchestrator:
request deadlines, retry backoff, aggregation weights, caching and the
provider endpoint registry.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import BreakerConfig, ProviderDescriptor
from .validation import DEFAULT_MAX_PAYLOAD_BYTES


class BackoffConfig(BaseModel):
    """Retry delay configuration."""
    base_seconds: float = Field(default=1.0, ge=0)
    max_seconds: float = Field(default=10.0, ge=0)
    jitter: bool = False


class AggregationWeights(BaseModel):
    """Scoring weights and default filters for merged results."""
    agreement_bonus: float = Field(default=0.1, ge=0)
    priority_bonus: float = Field(default=0.15, ge=0)
    min_confidence: float = Field(default=0.3, ge=0.0, le=1.0)
    max_results: int = Field(default=20, ge=1)


class OrchestrationConfig(BaseModel):
    """Main configuration for identification orchestration."""
    request_deadline_seconds: float = Field(default=30.0, gt=0)
    max_payload_bytes: int = Field(default=DEFAULT_MAX_PAYLOAD_BYTES, ge=1)
    health_check_interval_seconds: int = 30
    unhealthy_threshold: int = 3
    # Retry policy toggles
    retry_on_timeouts: bool = True
    retry_on_failures: bool = True
    cache_enabled: bool = True
    cache_backend: str = "memory"  # memory | redis
    cache_ttl_seconds: int = 1800
    redis_url: str | None = None
    redis_prefix: str = "idorch:"
    backoff: BackoffConfig = BackoffConfig()
    aggregation: AggregationWeights = AggregationWeights()
    # Optional YAML file of category -> keyword lists for label classification
    category_keywords_path: Optional[str] = None


class ProviderEndpoint(BaseModel):
    """Configuration for a single identification provider."""
    name: str
    endpoint: str  # 'http://...' or 'builtin:birds' etc.
    supported_categories: List[str] = ["general"]
    timeout_seconds: float = Field(default=10.0, gt=0)
    max_retries: int = Field(default=3, ge=0)
    failure_threshold: int = Field(default=5, ge=1)
    recovery_timeout_seconds: float = Field(default=60.0, gt=0)
    monitoring_period_seconds: float = Field(default=60.0, gt=0)
    category_priorities: Dict[str, int] = {}
    auth: Dict[str, str] = {}  # extra request headers
    enabled: bool = True

    @property
    def is_builtin(self) -> bool:
        return self.endpoint.startswith("builtin:")

    def to_descriptor(self) -> ProviderDescriptor:
        return ProviderDescriptor(
            name=self.name,
            supported_categories=frozenset(self.supported_categories),
            timeout_seconds=self.timeout_seconds,
            max_retries=self.max_retries,
            category_priorities=dict(self.category_priorities),
            breaker=BreakerConfig(
                failure_threshold=self.failure_threshold,
                recovery_timeout_seconds=self.recovery_timeout_seconds,
                monitoring_period_seconds=self.monitoring_period_seconds,
            ),
        )


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    model_config = SettingsConfigDict(env_prefix="IDORCH_", env_nested_delimiter="__")

    # Core
    environment: str = "dev"
    log_level: str = "INFO"
    config: OrchestrationConfig = OrchestrationConfig()

    # Provider registry; registration order follows mapping order
    providers: Dict[str, ProviderEndpoint] = {
        "bird-catalog": ProviderEndpoint(
            name="bird-catalog",
            endpoint="builtin:birds",
            supported_categories=["bird", "general"],
            category_priorities={"bird": 1},
            timeout_seconds=2.0,
        ),
        "plant-catalog": ProviderEndpoint(
            name="plant-catalog",
            endpoint="builtin:plants",
            supported_categories=["plant", "general"],
            category_priorities={"plant": 1},
            timeout_seconds=2.0,
        ),
        "general-vision": ProviderEndpoint(
            name="general-vision",
            endpoint="builtin:general",
            supported_categories=["general", "bird", "plant", "animal", "insect"],
            timeout_seconds=2.0,
        ),
    }

    def __init__(self, _env_file: Optional[str] = None, **values: Any) -> None:
        file_values: Dict[str, Any] = {}
        if _env_file:
            cfg_path = Path(_env_file)
            if cfg_path.exists():
                loaded = yaml.safe_load(cfg_path.read_text(encoding="utf-8")) or {}
                if isinstance(loaded, dict):
                    file_values = loaded
        merged = {**file_values, **values}
        super().__init__(**merged)

    def enabled_providers(self) -> List[ProviderEndpoint]:
        return [endpoint for endpoint in self.providers.values() if endpoint.enabled]


__all__ = [
    "AggregationWeights",
    "BackoffConfig",
    "OrchestrationConfig",
    "ProviderEndpoint",
    "Settings",
]

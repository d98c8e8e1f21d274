from __future__ import annotations

"""
Error taxonomy and canonical error bodies for the identification orchestrator.
"""

from typing import Optional

from .models import ErrorBody

# Canonical mapping for the transport layer that fronts the orchestrator
ERROR_HTTP_MAP = {
    "INVALID_PAYLOAD": 400,
    "NO_ELIGIBLE_PROVIDERS": 422,
    "CIRCUIT_OPEN": 503,
    "PROVIDER_TIMEOUT": 504,
    "PROVIDER_FAILED": 502,
    "REQUEST_TIMEOUT": 408,
    "INTERNAL_ERROR": 500,
}

# Retry guidance (true means client may retry safely)
RETRYABLE = {
    "CIRCUIT_OPEN": True,
    "PROVIDER_TIMEOUT": True,
    "PROVIDER_FAILED": True,
    "REQUEST_TIMEOUT": True,
}


class OrchestrationError(Exception):
    """Base class for every error raised by the orchestration core."""

    error_code = "INTERNAL_ERROR"

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message

    @property
    def retryable(self) -> bool:
        return is_retryable(self.error_code)


class ValidationError(OrchestrationError):
    """Malformed, oversized or wrongly encoded payload; rejected before any provider call."""

    error_code = "INVALID_PAYLOAD"


class ProviderError(OrchestrationError):
    """A provider call failed; counted against that provider's breaker."""

    error_code = "PROVIDER_FAILED"
    kind = "provider_error"

    def __init__(
        self,
        message: str = "",
        *,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class ProviderTimeoutError(ProviderError):
    """Provider call exceeded its timeout or the request deadline."""

    error_code = "PROVIDER_TIMEOUT"
    kind = "timeout"


class ShortCircuitError(OrchestrationError):
    """Breaker rejected the call without contacting the provider."""

    error_code = "CIRCUIT_OPEN"

    def __init__(self, provider: str, next_probe_time: Optional[float]) -> None:
        super().__init__(f"Circuit breaker is OPEN for provider {provider}")
        self.provider = provider
        self.next_probe_time = next_probe_time


class NoEligibleProvidersError(OrchestrationError):
    """No registered provider supports the requested category."""

    error_code = "NO_ELIGIBLE_PROVIDERS"

    def __init__(self, category: Optional[str]) -> None:
        if category is None:
            message = "No identification providers are registered"
        else:
            message = f"No providers available for identification category: {category}"
        super().__init__(message)
        self.category = category


def http_status_for(code: str) -> int:
    return int(ERROR_HTTP_MAP.get(code, 500))


def is_retryable(code: str) -> bool:
    return bool(RETRYABLE.get(code, False))


def build_error_body(
    request_id: str | None, code: str, message: str | None = None
) -> ErrorBody:
    return ErrorBody(
        error_code=code,
        message=message,
        request_id=request_id,
        retryable=is_retryable(code),
    )


def error_body_for(exc: OrchestrationError, request_id: str | None = None) -> ErrorBody:
    """Build the canonical error body for a raised orchestration error."""

    return build_error_body(request_id, exc.error_code, exc.message or None)

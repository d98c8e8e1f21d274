from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from .backoff import BackoffPolicy
from .circuit_breaker import Admission, CircuitBreaker
from .errors import ProviderError, ProviderTimeoutError, ShortCircuitError, ValidationError
from .metrics import OrchestrationMetricsCollector
from .models import (
    IdentifyOptions,
    ProviderDescriptor,
    ProviderFailure,
    ProviderOutcome,
    ProviderShortCircuited,
    ProviderSuccess,
)
from .providers import IdentificationProvider

logger = logging.getLogger(__name__)


class RetryingInvoker:
    """Execute one provider call behind its breaker, retrying with backoff.

    The breaker is consulted once per call. Retries inside an admitted call
    never re-check it, so a HALF_OPEN trial stays a single call even when
    that call retries; the trial verdict is reported once, after the last
    attempt.
    """

    def __init__(
        self,
        backoff: Optional[BackoffPolicy] = None,
        *,
        metrics: OrchestrationMetricsCollector | None = None,
        retry_on_timeouts: bool = True,
        retry_on_failures: bool = True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.backoff = backoff or BackoffPolicy()
        self.metrics = metrics
        self.retry_on_timeouts = retry_on_timeouts
        self.retry_on_failures = retry_on_failures
        self._sleep = sleep
        self._clock = clock

    async def invoke(
        self,
        descriptor: ProviderDescriptor,
        provider: IdentificationProvider,
        breaker: CircuitBreaker,
        payload: bytes,
        options: IdentifyOptions,
    ) -> ProviderOutcome:
        name = descriptor.name
        try:
            admission = self.acquire(name, breaker)
        except ShortCircuitError as exc:
            logger.info(
                "Provider %s short-circuited",
                name,
                extra={
                    "provider": name,
                    "request_id": options.request_id,
                    "next_probe_time": exc.next_probe_time,
                },
            )
            return ProviderShortCircuited(provider=name, next_probe_time=exc.next_probe_time)

        start = self._clock()
        attempt_count = descriptor.max_retries + 1
        attempts = 0
        last_error: Optional[ProviderError] = None
        in_call = False
        try:
            for i in range(attempt_count):
                attempts += 1
                if self.metrics:
                    self.metrics.record_attempt(name)
                try:
                    in_call = True
                    results = await asyncio.wait_for(
                        provider.identify(payload, options),
                        timeout=descriptor.timeout_seconds,
                    )
                    in_call = False
                except ValidationError as exc:
                    in_call = False
                    # Invalid input never counts against the breaker
                    if admission.trial:
                        breaker.release_trial()
                    return ProviderFailure(
                        provider=name,
                        error_kind="validation",
                        message=exc.message or str(exc),
                        attempts=attempts,
                        latency_ms=self._elapsed_ms(start),
                    )
                except asyncio.TimeoutError:
                    in_call = False
                    last_error = ProviderTimeoutError(
                        f"{name} timed out after {descriptor.timeout_seconds}s",
                        provider=name,
                    )
                except ProviderError as exc:
                    in_call = False
                    last_error = exc
                except Exception as exc:  # noqa: BLE001
                    in_call = False
                    last_error = ProviderError(str(exc) or type(exc).__name__, provider=name)
                else:
                    breaker.record_success()
                    return ProviderSuccess(
                        provider=name,
                        identifications=list(results),
                        attempts=attempts,
                        latency_ms=self._elapsed_ms(start),
                    )

                if not admission.trial:
                    breaker.record_failure()
                logger.warning(
                    "Provider %s attempt %d/%d failed: %s",
                    name,
                    attempts,
                    attempt_count,
                    last_error,
                    extra={
                        "provider": name,
                        "request_id": options.request_id,
                        "attempt": attempts,
                        "error_kind": last_error.kind,
                    },
                )
                if i < attempt_count - 1 and self._can_retry(last_error):
                    await self._sleep(self.backoff.delay(i))
                    continue
                break
        except asyncio.CancelledError:
            # Request deadline hit: an interrupted call counts as a timeout, and
            # a trial must always end with a verdict
            if admission.trial or in_call:
                breaker.record_failure()
            raise

        if admission.trial:
            breaker.record_failure()
        return ProviderFailure(
            provider=name,
            error_kind=last_error.kind if last_error else "provider_error",
            message=(last_error.message or str(last_error)) if last_error else "unknown",
            attempts=attempts,
            latency_ms=self._elapsed_ms(start),
        )

    def acquire(self, name: str, breaker: CircuitBreaker) -> Admission:
        """Ask the breaker to admit a call; raise ShortCircuitError when rejected."""
        admission = breaker.admit()
        if not admission.allowed:
            raise ShortCircuitError(name, admission.next_probe_time)
        return admission

    def _can_retry(self, error: ProviderError) -> bool:
        if isinstance(error, ProviderTimeoutError):
            return self.retry_on_timeouts
        return self.retry_on_failures

    def _elapsed_ms(self, start: float) -> int:
        return int((self._clock() - start) * 1000)


__all__ = ["RetryingInvoker"]

"""Circuit breaker implementation for provider fault tolerance.

This module provides the per-provider failure-tracking state machine that
short-circuits calls to a provider known to be failing, plus the registry
that owns one breaker per registered provider for the orchestrator's lifetime.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)


class CircuitBreakerState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitSnapshot:
    """Point-in-time, read-only view of a breaker."""

    provider: str
    state: CircuitBreakerState
    consecutive_failures: int
    last_failure_time: Optional[float]
    next_probe_time: Optional[float]


@dataclass(frozen=True)
class Admission:
    """Answer to an admission request.

    ``trial`` is set when the call is the single HALF_OPEN recovery probe.
    """

    allowed: bool
    trial: bool = False
    next_probe_time: Optional[float] = None


@dataclass(frozen=True)
class CircuitTransition:
    provider: str
    old_state: CircuitBreakerState
    new_state: CircuitBreakerState
    reason: str
    snapshot: CircuitSnapshot


TransitionListener = Callable[[CircuitTransition], None]


class CircuitBreaker:
    """Circuit breaker guarding a single provider.

    All reads and writes of the breaker state are serialized by a lock;
    transition listeners run after the lock is released and their failures
    never affect the breaker.
    """

    def __init__(
        self,
        name: str = "default",
        failure_threshold: int = 5,
        recovery_timeout_seconds: float = 60.0,
        monitoring_period_seconds: float = 60.0,
        *,
        clock: Callable[[], float] = time.time,
        listeners: Optional[List[TransitionListener]] = None,
    ):
        """Initialize circuit breaker with failure threshold and recovery timeout."""
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if recovery_timeout_seconds <= 0:
            raise ValueError("recovery_timeout_seconds must be > 0")
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout_seconds = recovery_timeout_seconds
        self.monitoring_period_seconds = monitoring_period_seconds
        self._clock = clock
        self._listeners: List[TransitionListener] = list(listeners or [])
        self._lock = threading.Lock()
        self._state = CircuitBreakerState.CLOSED
        self._consecutive_failures = 0
        self._last_failure_time: Optional[float] = None
        self._next_probe_time: Optional[float] = None
        self._trial_in_flight = False

    # --- read-only views --------------------------------------------------------
    @property
    def state(self) -> CircuitBreakerState:
        with self._lock:
            return self._state

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._consecutive_failures

    @property
    def last_failure_time(self) -> Optional[float]:
        with self._lock:
            return self._last_failure_time

    @property
    def next_probe_time(self) -> Optional[float]:
        with self._lock:
            return self._next_probe_time

    def snapshot(self) -> CircuitSnapshot:
        with self._lock:
            return self._snapshot_locked()

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    # --- admission --------------------------------------------------------------
    def admit(self) -> Admission:
        """Ask for permission to start a call."""

        transition: Optional[CircuitTransition] = None
        with self._lock:
            if self._state == CircuitBreakerState.CLOSED:
                return Admission(allowed=True)
            if self._state == CircuitBreakerState.OPEN:
                now = self._clock()
                if self._next_probe_time is not None and now < self._next_probe_time:
                    return Admission(allowed=False, next_probe_time=self._next_probe_time)
                transition = self._transition_locked(
                    CircuitBreakerState.HALF_OPEN, "recovery_timeout_elapsed"
                )
                self._trial_in_flight = True
                admission = Admission(allowed=True, trial=True)
            elif self._trial_in_flight:
                # HALF_OPEN with the single trial already running
                return Admission(allowed=False, next_probe_time=self._next_probe_time)
            else:
                self._trial_in_flight = True
                admission = Admission(allowed=True, trial=True)
        self._notify(transition)
        return admission

    def allow_request(self) -> bool:
        """Check if request should be allowed through circuit breaker."""
        return self.admit().allowed

    # --- outcome reporting ------------------------------------------------------
    def record_success(self) -> None:
        """Record successful call; a successful HALF_OPEN trial closes the circuit."""

        transition: Optional[CircuitTransition] = None
        with self._lock:
            if self._state == CircuitBreakerState.HALF_OPEN:
                self._consecutive_failures = 0
                self._trial_in_flight = False
                self._next_probe_time = None
                transition = self._transition_locked(
                    CircuitBreakerState.CLOSED, "half_open_trial_succeeded"
                )
            elif self._state == CircuitBreakerState.CLOSED:
                self._consecutive_failures = 0
                if self._failure_history_expired_locked(self._clock()):
                    self._last_failure_time = None
            else:
                logger.debug(
                    "Ignoring success reported while circuit is OPEN for %s",
                    self.name,
                    extra={"provider": self.name},
                )
        self._notify(transition)

    def record_failure(self) -> None:
        """Record failed call and open the circuit when the threshold is reached."""

        transition: Optional[CircuitTransition] = None
        with self._lock:
            now = self._clock()
            if self._state == CircuitBreakerState.HALF_OPEN:
                self._consecutive_failures += 1
                self._last_failure_time = now
                self._trial_in_flight = False
                self._next_probe_time = now + self.recovery_timeout_seconds
                transition = self._transition_locked(
                    CircuitBreakerState.OPEN, "half_open_trial_failed"
                )
            elif self._state == CircuitBreakerState.CLOSED:
                if self._failure_history_expired_locked(now):
                    # Failures from an unrelated earlier period do not accumulate
                    self._consecutive_failures = 0
                self._consecutive_failures += 1
                self._last_failure_time = now
                if self._consecutive_failures >= self.failure_threshold:
                    self._next_probe_time = now + self.recovery_timeout_seconds
                    transition = self._transition_locked(
                        CircuitBreakerState.OPEN, "failure_threshold_reached"
                    )
            else:
                # Late failure of a call admitted before the circuit opened
                self._consecutive_failures += 1
                self._last_failure_time = now
            failures = self._consecutive_failures
            state = self._state
        logger.warning(
            "Circuit breaker recorded failure for provider %s (count: %d)",
            self.name,
            failures,
            extra={
                "provider": self.name,
                "failure_count": failures,
                "state": state.value,
            },
        )
        self._notify(transition)

    def release_trial(self) -> None:
        """Give back a HALF_OPEN trial whose call ended without a provider verdict."""

        with self._lock:
            if self._state == CircuitBreakerState.HALF_OPEN:
                self._trial_in_flight = False

    # --- manual controls --------------------------------------------------------
    def reset(self) -> None:
        """Force CLOSED and zero all counters."""

        with self._lock:
            self._consecutive_failures = 0
            self._last_failure_time = None
            self._next_probe_time = None
            self._trial_in_flight = False
            transition = self._transition_locked(CircuitBreakerState.CLOSED, "manual_reset")
        self._notify(transition)

    def force_open(self) -> None:
        """Force OPEN with a fresh probe time."""

        with self._lock:
            self._trial_in_flight = False
            self._next_probe_time = self._clock() + self.recovery_timeout_seconds
            transition = self._transition_locked(CircuitBreakerState.OPEN, "manual_force_open")
        self._notify(transition)

    # --- internals ----------------------------------------------------------------
    def _failure_history_expired_locked(self, now: float) -> bool:
        return (
            self._last_failure_time is not None
            and now - self._last_failure_time > self.monitoring_period_seconds
        )

    def _snapshot_locked(self) -> CircuitSnapshot:
        return CircuitSnapshot(
            provider=self.name,
            state=self._state,
            consecutive_failures=self._consecutive_failures,
            last_failure_time=self._last_failure_time,
            next_probe_time=self._next_probe_time,
        )

    def _transition_locked(
        self, new_state: CircuitBreakerState, reason: str
    ) -> CircuitTransition:
        old_state = self._state
        self._state = new_state
        return CircuitTransition(
            provider=self.name,
            old_state=old_state,
            new_state=new_state,
            reason=reason,
            snapshot=self._snapshot_locked(),
        )

    def _notify(self, transition: Optional[CircuitTransition]) -> None:
        if transition is None:
            return
        self._log_transition(transition)
        for listener in list(self._listeners):
            try:
                listener(transition)
            except Exception:  # pylint: disable=broad-exception-caught
                logger.warning(
                    "Circuit breaker transition listener failed for %s",
                    self.name,
                    exc_info=True,
                )

    @staticmethod
    def _log_transition(transition: CircuitTransition) -> None:
        extra = {
            "provider": transition.provider,
            "old_state": transition.old_state.value,
            "new_state": transition.new_state.value,
            "reason": transition.reason,
            "failure_count": transition.snapshot.consecutive_failures,
            "next_probe_time": transition.snapshot.next_probe_time,
        }
        message = "Circuit breaker state changed for provider %s: %s -> %s (%s)"
        args = (
            transition.provider,
            transition.old_state.value,
            transition.new_state.value,
            transition.reason,
        )
        if transition.new_state == CircuitBreakerState.OPEN:
            logger.error(message, *args, extra=extra)
        elif transition.new_state == CircuitBreakerState.HALF_OPEN:
            logger.warning(message, *args, extra=extra)
        else:
            logger.info(message, *args, extra=extra)


class CircuitBreakerRegistry:
    """Owns exactly one breaker per registered provider."""

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        listeners: Optional[List[TransitionListener]] = None,
    ) -> None:
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._clock = clock
        self._listeners: List[TransitionListener] = list(listeners or [])

    def add_listener(self, listener: TransitionListener) -> None:
        """Attach a transition listener to current and future breakers."""
        self._listeners.append(listener)
        for breaker in self._breakers.values():
            breaker.add_listener(listener)

    def register(
        self,
        provider: str,
        failure_threshold: int = 5,
        recovery_timeout_seconds: float = 60.0,
        monitoring_period_seconds: float = 60.0,
    ) -> CircuitBreaker:
        if provider in self._breakers:
            raise ValueError(f"Circuit breaker already registered for provider {provider}")
        breaker = CircuitBreaker(
            provider,
            failure_threshold,
            recovery_timeout_seconds,
            monitoring_period_seconds,
            clock=self._clock,
            listeners=self._listeners,
        )
        self._breakers[provider] = breaker
        return breaker

    def unregister(self, provider: str) -> None:
        self._breakers.pop(provider, None)

    def get(self, provider: str) -> CircuitBreaker:
        """Get circuit breaker for a specific provider."""
        try:
            return self._breakers[provider]
        except KeyError:
            raise KeyError(f"No circuit breaker registered for provider {provider}") from None

    def snapshots(self) -> Dict[str, CircuitSnapshot]:
        return {name: breaker.snapshot() for name, breaker in self._breakers.items()}

    def reset_all(self) -> int:
        for breaker in self._breakers.values():
            breaker.reset()
        logger.info(
            "Reset %d circuit breakers",
            len(self._breakers),
            extra={"reset_count": len(self._breakers)},
        )
        return len(self._breakers)

    def __contains__(self, provider: object) -> bool:
        return provider in self._breakers

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._breakers))

    def __len__(self) -> int:
        return len(self._breakers)

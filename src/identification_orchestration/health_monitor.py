from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, Mapping

from .metrics import OrchestrationMetricsCollector
from .models import HealthState
from .providers import IdentificationProvider

logger = logging.getLogger(__name__)


@dataclass
class ProbeStatus:
    is_healthy: bool
    last_state: HealthState
    last_check: float
    response_time_ms: float | None
    consecutive_failures: int


class HealthMonitor:
    """Periodically probes providers; results never touch breaker state."""

    def __init__(
        self,
        providers: Mapping[str, IdentificationProvider],
        interval_seconds: float,
        metrics: OrchestrationMetricsCollector,
        unhealthy_threshold: int = 3,
        probe_timeout_seconds: float = 5.0,
    ) -> None:
        # Live view: providers registered later are probed on the next round
        self.providers = providers
        self.interval_seconds = interval_seconds
        self.unhealthy_threshold = unhealthy_threshold
        self.probe_timeout_seconds = probe_timeout_seconds
        self.metrics = metrics
        self._status: Dict[str, ProbeStatus] = {}
        self._task: asyncio.Task | None = None
        self._stop: asyncio.Event | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        # Bind event to the currently running loop to avoid cross-loop issues
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._stop is not None:
            self._stop.set()
        if self._task:
            try:
                await self._task
            finally:
                self._task = None
                self._stop = None

    async def _run(self) -> None:
        assert self._stop is not None
        while not self._stop.is_set():
            await self.check_all()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def _probe(self, name: str, provider: IdentificationProvider) -> HealthState:
        try:
            return await asyncio.wait_for(
                provider.health_probe(), timeout=self.probe_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning("Health probe timed out for provider %s", name, extra={"provider": name})
            return HealthState.UNHEALTHY
        except Exception:  # noqa: BLE001
            logger.warning(
                "Health probe raised for provider %s", name, exc_info=True, extra={"provider": name}
            )
            return HealthState.UNHEALTHY

    async def check_all(self) -> Dict[str, ProbeStatus]:
        for name, provider in list(self.providers.items()):
            start = time.perf_counter()
            state = await self._probe(name, provider)
            dur = (time.perf_counter() - start) * 1000
            st = self._status.get(name) or ProbeStatus(True, HealthState.HEALTHY, time.time(), None, 0)
            if state != HealthState.UNHEALTHY:
                st.is_healthy = True
                st.consecutive_failures = 0
            else:
                st.consecutive_failures += 1
                if st.consecutive_failures >= self.unhealthy_threshold:
                    if st.is_healthy:
                        logger.warning(
                            "Provider %s marked unhealthy after %d failed probes",
                            name,
                            st.consecutive_failures,
                            extra={"provider": name, "failure_count": st.consecutive_failures},
                        )
                    st.is_healthy = False
            st.last_state = state
            st.last_check = time.time()
            st.response_time_ms = dur
            self._status[name] = st
            self.metrics.record_provider_health(name, st.is_healthy, dur)
        for name in list(self._status):
            if name not in self.providers:
                self._status.pop(name, None)
        return dict(self._status)

    def status(self) -> Dict[str, ProbeStatus]:
        return dict(self._status)

    def is_healthy(self, provider: str) -> bool:
        st = self._status.get(provider)
        return bool(st is None or st.is_healthy)

    def healthy_providers(self) -> list[str]:
        return [name for name in self.providers if self.is_healthy(name)]

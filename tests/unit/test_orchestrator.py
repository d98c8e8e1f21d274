"""Tests for the identification orchestrator."""

import asyncio
from unittest.mock import Mock

import pytest

from identification_orchestration.cache import InMemoryResultCache
from identification_orchestration.circuit_breaker import CircuitBreakerState
from identification_orchestration.errors import NoEligibleProvidersError, ValidationError
from identification_orchestration.events import BREAKER_TRANSITION, IDENTIFICATION_COMPLETED
from identification_orchestration.invoker import RetryingInvoker
from identification_orchestration.models import (
    HealthState,
    IdentifyOptions,
    OutcomeStatus,
    ProviderFailure,
    ProviderShortCircuited,
    ProviderSuccess,
)
from identification_orchestration.orchestrator import IdentificationOrchestrator

from tests.unit.helpers.factories import (
    PNG_BYTES,
    FakeProvider,
    RecordingSleep,
    failing_provider,
    make_descriptor,
)


def _orchestrator(**kwargs):
    kwargs.setdefault("invoker", RetryingInvoker(sleep=RecordingSleep()))
    return IdentificationOrchestrator(**kwargs)


def _register(orch, provider, **descriptor_overrides):
    descriptor_overrides.setdefault("categories", sorted(provider.supported_categories()))
    orch.register_provider(make_descriptor(provider.name, **descriptor_overrides), provider)
    return provider


class TestRegistration:
    def test_register_creates_breaker(self):
        orch = _orchestrator()
        breaker = orch.register_provider(
            make_descriptor("a", failure_threshold=7), FakeProvider("a")
        )
        assert breaker.failure_threshold == 7
        assert orch.breakers.get("a") is breaker
        assert orch.provider_names == ["a"]

    def test_duplicate_registration_rejected(self):
        orch = _orchestrator()
        orch.register_provider(make_descriptor("a"), FakeProvider("a"))
        with pytest.raises(ValueError):
            orch.register_provider(make_descriptor("a"), FakeProvider("a"))

    def test_name_mismatch_rejected(self):
        with pytest.raises(ValueError):
            _orchestrator().register_provider(make_descriptor("a"), FakeProvider("b"))

    def test_unregister_provider(self):
        orch = _orchestrator()
        _register(orch, FakeProvider("a"))
        orch.unregister_provider("a")
        assert orch.provider_names == []
        assert "a" not in orch.breakers
        with pytest.raises(KeyError):
            orch.unregister_provider("a")

    def test_capabilities(self):
        orch = _orchestrator()
        _register(orch, FakeProvider("birds", ["bird", "general"]))
        _register(orch, FakeProvider("plants", ["plant"]))
        caps = orch.get_capabilities()
        assert caps["providers"] == {"birds": ["bird", "general"], "plants": ["plant"]}
        assert caps["categories"] == ["bird", "general", "plant"]
        assert caps["total_providers"] == 2


class TestIdentify:
    async def test_partial_failure(self):
        """A and C succeed, B always fails; the request still succeeds."""
        orch = _orchestrator()
        _register(orch, FakeProvider("a", default=[{"name": "Robin", "confidence": 0.8}]))
        _register(orch, failing_provider("b"))
        _register(orch, FakeProvider("c", default=[{"name": "robin", "confidence": 0.6}]))

        result = await orch.identify(PNG_BYTES)

        assert [o.provider for o in result.per_provider_outcomes] == ["a", "b", "c"]
        assert isinstance(result.per_provider_outcomes[1], ProviderFailure)
        assert result.outcomes_with_status(OutcomeStatus.SUCCESS) == ["a", "c"]
        [robin] = result.combined
        assert robin.contributing_providers == ["a", "c"]
        assert robin.merged_confidence == 0.9
        assert result.all_failed is False

    async def test_no_eligible_providers(self):
        orch = _orchestrator()
        _register(orch, FakeProvider("a", ["bird"]))
        with pytest.raises(NoEligibleProvidersError) as exc_info:
            await orch.identify(PNG_BYTES, IdentifyOptions(category="X"))
        assert exc_info.value.category == "X"
        assert exc_info.value.error_code == "NO_ELIGIBLE_PROVIDERS"

    async def test_no_providers_registered(self):
        with pytest.raises(NoEligibleProvidersError):
            await _orchestrator().identify(PNG_BYTES)

    async def test_category_scoping_skips_unsupported_providers(self):
        orch = _orchestrator()
        birds = _register(orch, FakeProvider("birds", ["bird"], default=[{"name": "Owl", "confidence": 0.9}]))
        plants = _register(orch, FakeProvider("plants", ["plant"], default=[{"name": "Oak", "confidence": 0.9}]))

        result = await orch.identify(PNG_BYTES, IdentifyOptions(category="bird"))

        assert [o.provider for o in result.per_provider_outcomes] == ["birds"]
        assert birds.calls == 1
        assert plants.calls == 0

    async def test_invalid_payload_rejected_before_providers(self):
        orch = _orchestrator()
        provider = _register(orch, FakeProvider("a"))
        with pytest.raises(ValidationError):
            await orch.identify(b"")
        with pytest.raises(ValidationError):
            await orch.identify(b"not an image at all")
        assert provider.calls == 0
        assert orch.breakers.get("a").consecutive_failures == 0

    async def test_oversized_payload_rejected(self):
        orch = _orchestrator(max_payload_bytes=16)
        _register(orch, FakeProvider("a"))
        with pytest.raises(ValidationError):
            await orch.identify(PNG_BYTES)

    async def test_request_id_generated_and_passed_through(self):
        orch = _orchestrator()
        _register(orch, FakeProvider("a"))
        generated = await orch.identify(PNG_BYTES)
        assert generated.request_id
        supplied = await orch.identify(PNG_BYTES, IdentifyOptions(request_id="req-1", use_cache=False))
        assert supplied.request_id == "req-1"

    async def test_request_deadline_cancels_hung_provider(self):
        orch = _orchestrator(request_deadline_seconds=0.05)
        _register(orch, FakeProvider("fast", default=[{"name": "Robin", "confidence": 0.8}]))
        _register(orch, FakeProvider("hung", default="hang"), timeout_seconds=60)

        result = await asyncio.wait_for(orch.identify(PNG_BYTES), timeout=5)

        hung = result.per_provider_outcomes[1]
        assert isinstance(hung, ProviderFailure)
        assert hung.error_kind == "timeout"
        assert hung.message == "request deadline exceeded"
        assert [c.name for c in result.combined] == ["Robin"]
        # A call interrupted by the deadline counts against its breaker
        assert orch.breakers.get("hung").consecutive_failures == 1

    async def test_breaker_opens_and_short_circuits(self):
        orch = _orchestrator()
        bad = _register(orch, failing_provider("bad"), failure_threshold=2)
        _register(orch, FakeProvider("good", default=[{"name": "Robin", "confidence": 0.8}]))

        for _ in range(2):
            await orch.identify(PNG_BYTES, IdentifyOptions(use_cache=False))
        assert orch.breakers.get("bad").state == CircuitBreakerState.OPEN

        result = await orch.identify(PNG_BYTES, IdentifyOptions(use_cache=False))
        assert isinstance(result.per_provider_outcomes[0], ProviderShortCircuited)
        assert bad.calls == 2
        stats = orch.metrics.get_provider_stats("bad")
        assert stats.attempted == 3
        assert stats.failed == 2
        assert stats.short_circuited == 1

    async def test_concurrent_requests_share_one_half_open_trial(self, fake_clock):
        """Only one in-flight request may probe a recovering provider."""

        class GatedProvider(FakeProvider):
            def __init__(self, name):
                super().__init__(name)
                self.release = asyncio.Event()

            async def identify(self, payload, options):
                self.calls += 1
                await self.release.wait()
                return self.standardize_results([{"name": "Robin", "confidence": 0.9}])

        orch = _orchestrator(clock=fake_clock)
        provider = _register(orch, GatedProvider("a"), failure_threshold=1)
        orch.force_open_breaker("a")
        fake_clock.advance(30)

        requests = asyncio.gather(
            *(orch.identify(PNG_BYTES, IdentifyOptions(use_cache=False)) for _ in range(3))
        )
        await asyncio.sleep(0.01)
        provider.release.set()
        results = await requests

        statuses = sorted(r.per_provider_outcomes[0].status for r in results)
        assert statuses == ["short_circuited", "short_circuited", "success"]
        assert provider.calls == 1
        assert orch.breakers.get("a").state == CircuitBreakerState.CLOSED

    async def test_all_failed_returns_empty_combined(self):
        orch = _orchestrator()
        _register(orch, failing_provider("a"))
        _register(orch, failing_provider("b"))
        result = await orch.identify(PNG_BYTES)
        assert result.combined == []
        assert result.all_failed is True

    async def test_unknown_requested_provider_reported(self):
        orch = _orchestrator()
        _register(orch, FakeProvider("a", default=[{"name": "Robin", "confidence": 0.8}]))
        result = await orch.identify(PNG_BYTES, IdentifyOptions(providers=["a", "ghost"]))
        assert [o.provider for o in result.per_provider_outcomes] == ["a", "ghost"]
        assert result.per_provider_outcomes[1].error_kind == "not_registered"

    async def test_restrict_to_category(self):
        orch = _orchestrator()
        _register(
            orch,
            FakeProvider(
                "a",
                ["bird"],
                default=[
                    {"name": "Robin", "confidence": 0.8},
                    {"name": "Oak tree", "confidence": 0.8},
                ],
            ),
        )
        result = await orch.identify(
            PNG_BYTES, IdentifyOptions(category="bird", restrict_to_category=True)
        )
        assert [c.name for c in result.combined] == ["Robin"]


class TestCaching:
    async def test_cache_hit_returns_copy_with_new_request_id(self):
        cache = InMemoryResultCache()
        orch = _orchestrator(cache=cache)
        provider = _register(orch, FakeProvider("a", default=[{"name": "Robin", "confidence": 0.8}]))

        first = await orch.identify(PNG_BYTES, IdentifyOptions(request_id="r1"))
        second = await orch.identify(PNG_BYTES, IdentifyOptions(request_id="r2"))

        assert provider.calls == 1
        assert first.cached is False
        assert second.cached is True
        assert second.request_id == "r2"
        assert second.combined == first.combined

    async def test_use_cache_false_bypasses_cache(self):
        orch = _orchestrator(cache=InMemoryResultCache())
        provider = _register(orch, FakeProvider("a"))
        await orch.identify(PNG_BYTES)
        await orch.identify(PNG_BYTES, IdentifyOptions(use_cache=False))
        assert provider.calls == 2

    async def test_different_options_miss(self):
        orch = _orchestrator(cache=InMemoryResultCache())
        provider = _register(orch, FakeProvider("a"))
        await orch.identify(PNG_BYTES, IdentifyOptions(max_results=5))
        await orch.identify(PNG_BYTES, IdentifyOptions(max_results=6))
        assert provider.calls == 2

    async def test_partial_results_are_not_cached(self):
        cache = InMemoryResultCache()
        orch = _orchestrator(cache=cache)
        _register(orch, FakeProvider("a"))
        _register(orch, failing_provider("b"))
        await orch.identify(PNG_BYTES)
        assert len(cache) == 0

    async def test_broken_cache_is_treated_as_miss(self):
        cache = Mock()
        cache.get.side_effect = RuntimeError("cache down")
        cache.set.side_effect = RuntimeError("cache down")
        orch = _orchestrator(cache=cache)
        _register(orch, FakeProvider("a", default=[{"name": "Robin", "confidence": 0.8}]))
        result = await orch.identify(PNG_BYTES)
        assert [c.name for c in result.combined] == ["Robin"]

    async def test_unregister_invalidates_cached_results(self):
        cache = InMemoryResultCache()
        orch = _orchestrator(cache=cache)
        _register(orch, FakeProvider("a"))
        await orch.identify(PNG_BYTES)
        assert len(cache) == 1
        orch.unregister_provider("a")
        assert len(cache) == 0


class TestObservability:
    async def test_events_emitted(self):
        sink = Mock()
        orch = _orchestrator(sink=sink)
        _register(orch, failing_provider("a"), failure_threshold=1)
        await orch.identify(PNG_BYTES, IdentifyOptions(request_id="req-9"))

        events = [call.args[0] for call in sink.emit.call_args_list]
        transition = next(e for e in events if e["type"] == BREAKER_TRANSITION)
        assert transition["provider"] == "a"
        assert transition["from"] == "closed"
        assert transition["to"] == "open"
        completed = next(e for e in events if e["type"] == IDENTIFICATION_COMPLETED)
        assert completed["request_id"] == "req-9"
        assert completed["outcomes"]["failure"] == 1
        assert "timestamp" in completed

    async def test_failing_sink_never_breaks_request(self):
        sink = Mock()
        sink.emit.side_effect = RuntimeError("sink down")
        orch = _orchestrator(sink=sink)
        _register(orch, failing_provider("a"), failure_threshold=1)
        result = await orch.identify(PNG_BYTES)
        assert result.all_failed
        assert orch.breakers.get("a").state == CircuitBreakerState.OPEN

    async def test_metrics_summary(self):
        orch = _orchestrator()
        _register(orch, FakeProvider("a", default=[{"name": "Robin", "confidence": 0.8}]))
        await orch.identify(PNG_BYTES)
        summary = orch.get_metrics()
        assert summary["requests_total"] == 1
        assert summary["providers"]["a"]["succeeded"] == 1
        assert summary["breakers"] == {"a": "closed"}


class TestHealth:
    def test_no_providers_is_unhealthy(self):
        assert _orchestrator().get_health_status().overall == HealthState.UNHEALTHY

    def test_health_levels_follow_breakers(self):
        orch = _orchestrator()
        _register(orch, FakeProvider("a"))
        _register(orch, FakeProvider("b"))
        assert orch.get_health_status().overall == HealthState.HEALTHY

        orch.force_open_breaker("a")
        report = orch.get_health_status()
        assert report.overall == HealthState.DEGRADED
        assert report.per_provider["a"].state == CircuitBreakerState.OPEN
        assert report.per_provider["a"].next_probe_time is not None

        orch.force_open_breaker("b")
        assert orch.get_health_status().overall == HealthState.UNHEALTHY

        orch.reset_breaker("a")
        orch.reset_breaker("b")
        assert orch.get_health_status().overall == HealthState.HEALTHY

    async def test_probe_health_does_not_touch_breakers(self):
        orch = _orchestrator()
        _register(orch, FakeProvider("a", health=HealthState.UNHEALTHY))
        _register(orch, FakeProvider("b", health=HealthState.DEGRADED))
        probes = await orch.probe_health()
        assert probes == {"a": HealthState.UNHEALTHY, "b": HealthState.DEGRADED}
        assert orch.get_health_status().overall == HealthState.HEALTHY

    async def test_aclose_closes_providers(self):
        orch = _orchestrator()
        provider = _register(orch, FakeProvider("a"))
        async with orch:
            pass
        assert provider.closed is True

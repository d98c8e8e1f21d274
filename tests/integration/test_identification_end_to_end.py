"""End-to-end identification flows against builtin providers."""

import asyncio

import pytest

from identification_orchestration.config import ProviderEndpoint, Settings
from identification_orchestration.errors import NoEligibleProvidersError
from identification_orchestration.events import QueueEventSink
from identification_orchestration.factory import build_orchestrator
from identification_orchestration.models import HealthState, IdentifyOptions

from tests.unit.helpers.factories import PNG_BYTES, FakeProvider, make_descriptor


def _drain(queue):
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


@pytest.fixture
def sink():
    return QueueEventSink()


@pytest.fixture
def events(sink):
    return sink.register_subscriber()


@pytest.fixture
async def orchestrator(sink):
    async with build_orchestrator(Settings(), sink=sink) as orch:
        yield orch


class TestEndToEnd:
    async def test_default_providers_rank_agreeing_results_first(self, orchestrator):
        result = await orchestrator.identify(PNG_BYTES)
        assert [o.provider for o in result.per_provider_outcomes] == [
            "bird-catalog",
            "plant-catalog",
            "general-vision",
        ]
        names = [c.name for c in result.combined]
        assert names[0] == "House Sparrow"
        assert all(c.merged_confidence >= 0.3 for c in result.combined)
        assert result.combined == sorted(
            result.combined, key=lambda c: c.merged_confidence, reverse=True
        )

    async def test_category_limits_fan_out(self, orchestrator):
        result = await orchestrator.identify(
            PNG_BYTES, IdentifyOptions(category="plant", restrict_to_category=True)
        )
        assert [o.provider for o in result.per_provider_outcomes] == [
            "plant-catalog",
            "general-vision",
        ]
        assert result.combined[0].name == "Common Daisy"

    async def test_unknown_category(self, orchestrator):
        with pytest.raises(NoEligibleProvidersError):
            await orchestrator.identify(PNG_BYTES, IdentifyOptions(category="fungus"))

    async def test_repeat_request_is_served_from_cache(self, orchestrator):
        first = await orchestrator.identify(PNG_BYTES, IdentifyOptions(request_id="one"))
        second = await orchestrator.identify(PNG_BYTES, IdentifyOptions(request_id="two"))
        assert first.cached is False
        assert second.cached is True
        assert second.request_id == "two"
        assert second.combined == first.combined
        assert orchestrator.get_metrics()["requests_by_status"] == {"success": 1, "cached": 1}

    async def test_completion_events_are_emitted(self, orchestrator, events):
        await orchestrator.identify(PNG_BYTES, IdentifyOptions(request_id="evt"))
        [event] = [e for e in _drain(events) if e["type"] == "identification_completed"]
        assert event["request_id"] == "evt"
        assert event["outcomes"] == {"success": 3, "failure": 0, "short_circuited": 0}

    async def test_failing_provider_degrades_gracefully(self, orchestrator, events):
        orchestrator.register_provider(
            make_descriptor("broken", failure_threshold=1),
            FakeProvider("broken", default=RuntimeError("down")),
        )
        result = await orchestrator.identify(PNG_BYTES, IdentifyOptions(use_cache=False))
        outcomes = {o.provider: o.status for o in result.per_provider_outcomes}
        assert outcomes["broken"] == "failure"
        assert result.combined

        second = await orchestrator.identify(PNG_BYTES, IdentifyOptions(use_cache=False))
        outcomes = {o.provider: o.status for o in second.per_provider_outcomes}
        assert outcomes["broken"] == "short_circuited"
        assert [c.name for c in second.combined] == [c.name for c in result.combined]

        report = orchestrator.get_health_status()
        assert report.overall == HealthState.DEGRADED
        transitions = [
            e for e in _drain(events) if e["type"] == "breaker_transition"
        ]
        assert transitions[0]["provider"] == "broken"
        assert transitions[0]["to"] == "open"

    async def test_slow_provider_hits_request_deadline(self):
        settings = Settings(
            providers={"birds": ProviderEndpoint(name="birds", endpoint="builtin:birds")}
        )
        async with build_orchestrator(settings) as orch:
            orch.request_deadline_seconds = 0.05
            orch.register_provider(
                make_descriptor("slow", timeout_seconds=10),
                FakeProvider("slow", default="hang"),
            )
            result = await asyncio.wait_for(
                orch.identify(PNG_BYTES, IdentifyOptions(use_cache=False)), timeout=5
            )
        slow = next(o for o in result.per_provider_outcomes if o.provider == "slow")
        assert slow.status == "failure"
        assert slow.error_kind == "timeout"
        assert [c.name for c in result.combined][0] == "House Sparrow"

    async def test_probe_health(self, orchestrator):
        probes = await orchestrator.probe_health()
        assert probes == {
            "bird-catalog": HealthState.HEALTHY,
            "plant-catalog": HealthState.HEALTHY,
            "general-vision": HealthState.HEALTHY,
        }
        assert orchestrator.get_capabilities()["total_providers"] == 3

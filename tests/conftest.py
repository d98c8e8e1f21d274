from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure the package is importable when running from a source checkout
PROJECT_ROOT = Path(__file__).resolve().parents[1]
for path in (PROJECT_ROOT / "src", PROJECT_ROOT):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from identification_orchestration.metrics import OrchestrationMetricsCollector  # noqa: E402
from tests.unit.helpers.factories import PNG_BYTES, FakeClock, RecordingSleep  # noqa: E402


@pytest.fixture(scope="session")
def tests_root() -> Path:
    return Path(__file__).resolve().parent


@pytest.fixture
def png_bytes() -> bytes:
    return PNG_BYTES


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def metrics() -> OrchestrationMetricsCollector:
    """Fresh in-memory mirror; Prometheus series are process-global."""
    return OrchestrationMetricsCollector()

# tests/conftest.py
"""Pytest configuration and fixtures"""
import pytest
import sys
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from app.core.dispatch.engine import DispatchEngine  # noqa: E402
from app.core.dispatch.matcher import AppraiserMatcher  # noqa: E402
from app.core.dispatch.notifications import NotificationDispatcher  # noqa: E402
from app.core.dispatch.sla_monitor import SLAMonitor  # noqa: E402
from app.infra.metrics import get_metrics_collector  # noqa: E402
from tests.fakes import (  # noqa: E402
    NOW,
    InMemoryDispatchStore,
    RecordingNotificationFacility,
    RecordingRetrySink,
)


@pytest.fixture(autouse=True)
def reset_metrics():
    """Metrics are a process-wide singleton; start every test from zero"""
    get_metrics_collector().reset()
    yield


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock(now):
    return lambda: now


@pytest.fixture
def store():
    return InMemoryDispatchStore()


@pytest.fixture
def facility():
    return RecordingNotificationFacility()


@pytest.fixture
def retry_sink():
    return RecordingRetrySink()


@pytest.fixture
def notifier(store, facility, retry_sink):
    return NotificationDispatcher(store, facility, retry_sink)


@pytest.fixture
def matcher(store, clock):
    return AppraiserMatcher(store, clock=clock)


@pytest.fixture
def sla_monitor(store, notifier, clock):
    return SLAMonitor(store, notifier, clock=clock)


@pytest.fixture
def engine(store, matcher, sla_monitor, notifier, clock):
    return DispatchEngine(store, matcher, sla_monitor, notifier, clock=clock)

"""
Pytest configuration for Orb adaptation tests.

This module provides:
1. Event factories with deterministic ids and timestamps
2. Common fixtures (temp directories, bus, learning store, engine)
3. Test session configuration
"""

import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from orb_adaptation.adaptation_engine import AdaptationEngine
from orb_adaptation.event_bus import EventBus
from orb_adaptation.event_model import OrbEvent
from orb_adaptation.event_store import InMemoryEventStore
from orb_adaptation.learning_actions import LearningActionWorkflow
from orb_adaptation.learning_store import InMemoryLearningStore


# -----------------------------------------------------------------------------
# Test Constants
# -----------------------------------------------------------------------------
TEST_USER_ID = "test-user-123"
TEST_DEVICE_ID = "laptop-1"
BASE_TIME = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)


# -----------------------------------------------------------------------------
# Event Factories
# -----------------------------------------------------------------------------
def build_event(
    event_id: str,
    event_type: str = "action_completed",
    at: datetime = BASE_TIME,
    **fields,
) -> OrbEvent:
    """Build an OrbEvent from wire-shaped keyword fields."""
    data = {
        "id": event_id,
        "type": event_type,
        "timestamp": at.isoformat(),
    }
    data.update(fields)
    return OrbEvent.from_dict(data)


@pytest.fixture
def make_event():
    """Factory fixture returning build_event."""
    return build_event


@pytest.fixture
def spread_events():
    """
    Build `count` events of one action spread evenly over `days` days.

    Usage:
        events = spread_events("git-commit", 47, days=7)
    """
    def factory(action, count, days=7, event_type="action_completed", prefix=None, **fields):
        prefix = prefix or action
        step = timedelta(days=days - 1) / max(count - 1, 1) if days > 1 else timedelta(minutes=1)
        return [
            build_event(
                f"{prefix}-{i:03d}",
                event_type,
                BASE_TIME + step * i,
                payload={"actionType": action},
                **fields,
            )
            for i in range(count)
        ]
    return factory


# -----------------------------------------------------------------------------
# Common Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def bus():
    return EventBus(InMemoryEventStore())


@pytest.fixture
def learning_store():
    return InMemoryLearningStore()


@pytest.fixture
def engine(bus, learning_store):
    return AdaptationEngine(bus, learning_store=learning_store)


@pytest.fixture
def workflow(learning_store):
    return LearningActionWorkflow(learning_store)


# -----------------------------------------------------------------------------
# Session Configuration
# -----------------------------------------------------------------------------
def pytest_configure(config):
    """Configure pytest session."""
    config.addinivalue_line(
        "markers", "slow: tests that build large event windows"
    )

"""
Adaptation Router Tests

Test Categories:
1. Event Endpoint Tests
2. Aggregate Endpoint Tests
3. Learning Record Endpoint Tests
4. Error Mapping Tests
"""

from datetime import timedelta

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from orb_adaptation.adaptation_engine import AdaptationEngine
from orb_adaptation.errors import StorageError
from orb_adaptation.event_bus import EventBus
from orb_adaptation.event_store import InMemoryEventStore
from orb_adaptation.learning_actions import LearningActionWorkflow
from orb_adaptation.router import create_router

from .conftest import BASE_TIME, build_event


def _client(engine, workflow):
    app = FastAPI()
    app.include_router(create_router(engine, workflow))
    return TestClient(app)


@pytest.fixture
def client(engine, workflow):
    return _client(engine, workflow)


@pytest.fixture
def mode_window(bus):
    """40 events on one device, 34 of them in sol mode."""
    for i in range(40):
        bus.emit(build_event(
            f"mode-{i:02d}", "user_action", BASE_TIME + timedelta(minutes=i),
            mode="sol" if i < 34 else "mars", deviceId="laptop-1", userId="u1", role="orb",
        ))
    return bus


@pytest.fixture
def learned(client, mode_window):
    response = client.post("/adaptation/learning/run", json={"filter": {"deviceId": "laptop-1"}})
    assert response.status_code == 200
    return response.json()


# =============================================================================
# Section 1: Event Endpoint Tests
# =============================================================================

class TestEventEndpoints:

    def test_emit_event(self, client, bus):
        response = client.post("/adaptation/events", json={
            "id": "e1", "type": "action_completed", "timestamp": BASE_TIME.isoformat(),
            "role": "mav", "payload": {"actionType": "git-commit"},
        })

        assert response.status_code == 201
        assert response.json()["id"] == "e1"
        assert bus.get("e1") is not None

    def test_emit_invalid_event(self, client, bus):
        response = client.post("/adaptation/events", json={"id": "e1", "type": "teleported"})
        assert response.status_code == 422
        assert bus.store.count() == 0

    def test_emit_conflicting_id(self, client):
        body = {"id": "e1", "type": "user_action", "timestamp": BASE_TIME.isoformat()}
        assert client.post("/adaptation/events", json=body).status_code == 201
        assert client.post("/adaptation/events", json=body).status_code == 201
        body["payload"] = {"changed": True}
        assert client.post("/adaptation/events", json=body).status_code == 422

    def test_query_events(self, client, mode_window):
        response = client.get("/adaptation/events", params={"mode": "mars", "limit": 3})

        data = response.json()
        assert response.status_code == 200
        assert data["count"] == 3
        assert [e["id"] for e in data["events"]] == ["mode-39", "mode-38", "mode-37"]

    def test_query_events_by_type_list(self, client, bus):
        bus.emit(build_event("a", "action_completed"))
        bus.emit(build_event("b", "action_failed"))
        bus.emit(build_event("c", "user_action"))

        response = client.get(
            "/adaptation/events",
            params=[("type", "action_completed"), ("type", "action_failed")],
        )

        assert {e["id"] for e in response.json()["events"]} == {"a", "b"}

    def test_event_stats(self, client, mode_window):
        data = client.get("/adaptation/events/stats", params={"userId": "u1"}).json()
        assert data["totalEvents"] == 40
        assert data["byRole"] == {"orb": 40}
        assert data["mostUsedModes"][0] == {"mode": "sol", "count": 34}


# =============================================================================
# Section 2: Aggregate Endpoint Tests
# =============================================================================

class TestAggregateEndpoints:

    def test_computed_insights(self, client, mode_window):
        data = client.get("/adaptation/insights/computed").json()
        assert data["totalEvents"] == 40
        assert data["mostUsedModes"][0]["mode"] == "sol"

    def test_recommendations(self, client, mode_window):
        data = client.get("/adaptation/recommendations").json()
        assert data["count"] == len(data["recommendations"])
        assert any('"sol"' in r for r in data["recommendations"])

    def test_adjustments(self, client, mode_window):
        data = client.get("/adaptation/adjustments").json()
        assert data["defaultMode"] == "sol"
        assert data["computedAt"]

    def test_mode_suggestions(self, client, bus):
        bus.emit(build_event("f1", "action_failed", mode="mars"))
        data = client.get("/adaptation/modes/mars/suggestions").json()
        assert data["mode"] == "mars"
        assert data["suggestions"] == ['Mode "mars" has error rate of 100.0%']


# =============================================================================
# Section 3: Learning Record Endpoint Tests
# =============================================================================

class TestLearningRecordEndpoints:

    def test_learning_run_result(self, learned):
        assert learned["events_scanned"] == 40
        assert [p["type"] for p in learned["patterns"]] == ["mode_preference"]
        assert len(learned["insights"]) == 1
        assert len(learned["actions"]) == 1

    def test_learning_run_overrides(self, client, mode_window):
        response = client.post("/adaptation/learning/run", json={"pattern_types": ["error_pattern"]})
        assert response.json()["patterns"] == []

    def test_list_records(self, client, learned):
        patterns = client.get("/adaptation/patterns").json()
        insights = client.get("/adaptation/insights", params={"type": "mode_preference"}).json()
        actions = client.get("/adaptation/actions", params={"status": "pending"}).json()

        assert patterns["count"] == 1
        assert insights["insights"][0]["title"] == "sol Mode Preferred"
        assert actions["actions"][0]["target"] == "default_mode"

    def test_approve_then_history(self, client, learned):
        action_id = learned["actions"][0]["id"]

        response = client.post(f"/adaptation/actions/{action_id}/approve", json={"user_id": "u1"})
        history = client.get(f"/adaptation/actions/{action_id}/history").json()

        assert response.status_code == 200
        assert response.json()["status"] == "applied"
        assert [h["to_status"] for h in history["history"]] == ["applied"]
        assert history["history"][0]["user_id"] == "u1"

    def test_reject_without_body(self, client, learned):
        action_id = learned["actions"][0]["id"]
        response = client.post(f"/adaptation/actions/{action_id}/reject")
        assert response.status_code == 200
        assert response.json()["status"] == "rejected"

    def test_pattern_status(self, client, learned):
        pattern_id = learned["patterns"][0]["id"]
        response = client.post(f"/adaptation/patterns/{pattern_id}/status", json={"status": "validated"})
        assert response.status_code == 200
        assert response.json()["status"] == "validated"


# =============================================================================
# Section 4: Error Mapping Tests
# =============================================================================

class TestErrorMapping:

    def test_unknown_action_is_404(self, client):
        assert client.post("/adaptation/actions/ghost/approve").status_code == 404

    def test_second_decision_is_409(self, client, learned):
        action_id = learned["actions"][0]["id"]
        client.post(f"/adaptation/actions/{action_id}/approve")
        assert client.post(f"/adaptation/actions/{action_id}/reject").status_code == 409

    def test_unknown_pattern_is_404(self, client):
        response = client.post("/adaptation/patterns/ghost/status", json={"status": "validated"})
        assert response.status_code == 404

    def test_illegal_pattern_edge_is_409(self, client, learned):
        pattern_id = learned["patterns"][0]["id"]
        response = client.post(f"/adaptation/patterns/{pattern_id}/status", json={"status": "applied"})
        assert response.status_code == 409

    def test_bad_filter_is_422(self, client):
        response = client.get("/adaptation/events", params={"dateFrom": "not-a-date"})
        assert response.status_code == 422

    def test_storage_failure_is_503(self, learning_store, workflow):
        class BrokenStore(InMemoryEventStore):
            def _append_unlocked(self, event):
                raise StorageError("disk gone")

        engine = AdaptationEngine(EventBus(BrokenStore()), learning_store=learning_store)
        client = _client(engine, workflow)

        response = client.post("/adaptation/events", json={"id": "e1", "type": "user_action"})

        assert response.status_code == 503
        assert response.json()["detail"] == "Storage unavailable"

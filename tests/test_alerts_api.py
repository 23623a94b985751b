"""
Tests for the alert command and rule validation API
"""

import pytest
from datetime import datetime, timedelta
from fastapi.testclient import TestClient

from clinical_alerts.database import get_db
from clinical_alerts.main import app
from clinical_alerts.models.alert_models import AlertInstance


T0 = datetime(2026, 3, 2, 9, 0, 0)


@pytest.fixture
def client(session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def alert(db):
    instance = AlertInstance(
        id="alert-1",
        rule_id="pain-high",
        enrollment_id="enr-1",
        patient_id="pat-1",
        metric_key="pain_scale_0_10",
        severity="HIGH",
        status="PENDING",
        dedupe_key="pain-high:enr-1:pain_scale_0_10",
        active_dedupe_key="pain-high:enr-1:pain_scale_0_10",
        message="High pain: pain_scale_0_10 is 9",
        evidence={"status": "triggered"},
        notify_roles=["clinician"],
        triggered_at=T0,
        last_triggered_at=T0,
        trigger_count=1,
        sla_breach_time=T0 + timedelta(hours=2),
        escalation_level=0,
    )
    db.add(instance)
    db.commit()
    return instance


class TestAlertCommands:

    def test_get_alert(self, client, alert):
        response = client.get("/api/alerts/alert-1")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "PENDING"
        assert data["severity"] == "HIGH"
        assert data["audit_trail"] == []

    def test_unknown_alert(self, client):
        response = client.get("/api/alerts/nope")

        assert response.status_code == 404

    def test_acknowledge_then_conflict(self, client, alert):
        first = client.post("/api/alerts/alert-1/acknowledge", json={"actor_id": "dr-1"})

        assert first.status_code == 200
        body = first.json()
        assert body["status"] == "ACKNOWLEDGED"
        assert body["acknowledged_by"] == "dr-1"
        assert [e["action"] for e in body["audit_trail"]] == ["ACKNOWLEDGED"]

        second = client.post("/api/alerts/alert-1/acknowledge", json={"actor_id": "dr-2"})

        assert second.status_code == 409
        detail = second.json()["detail"]
        assert detail["current_status"] == "ACKNOWLEDGED"
        assert "RESOLVED" in detail["allowed_transitions"]

    def test_resolve_with_notes(self, client, alert):
        response = client.post("/api/alerts/alert-1/resolve", json={"actor_id": "dr-1", "notes": "Adjusted dose"})

        assert response.status_code == 200
        assert response.json()["status"] == "RESOLVED"
        assert response.json()["resolution_notes"] == "Adjusted dose"

    def test_snooze_limits(self, client, alert):
        too_long = client.post("/api/alerts/alert-1/snooze", json={"actor_id": "dr-1", "duration_minutes": 20000})
        ok = client.post("/api/alerts/alert-1/snooze", json={"actor_id": "dr-1", "duration_minutes": 60})

        assert too_long.status_code == 422
        assert ok.status_code == 200
        assert ok.json()["status"] == "SNOOZED"
        assert ok.json()["snooze_until"] is not None

    def test_cancel(self, client, alert):
        response = client.post("/api/alerts/alert-1/cancel", json={"actor_id": "dr-1", "reason": "entered in error"})

        assert response.status_code == 200
        assert response.json()["status"] == "CANCELLED"

        again = client.post("/api/alerts/alert-1/resolve", json={"actor_id": "dr-1"})
        assert again.status_code == 409
        assert again.json()["detail"]["allowed_transitions"] == []

    def test_actor_is_required(self, client, alert):
        response = client.post("/api/alerts/alert-1/acknowledge", json={})

        assert response.status_code == 422


class TestRuleAuthoring:

    def test_valid_draft(self, client):
        response = client.post("/api/alert-rules/validate", json={
            "id": "pain-high",
            "name": "High pain",
            "condition": "pain_scale_0_10",
            "operator": "greater_than_or_equal",
            "threshold": 8,
            "severity": "HIGH",
        })

        assert response.status_code == 200
        assert response.json() == {"valid": True, "errors": []}

    def test_invalid_draft_lists_errors(self, client):
        response = client.post("/api/alert-rules/validate", json={
            "id": "pain-high",
            "condition": "pain_scale_0_10",
            "operator": "trend_increasing",
            "severity": "SEVERE",
        })

        body = response.json()
        assert response.status_code == 200
        assert body["valid"] is False
        assert len(body["errors"]) == 2

    def test_condition_catalog(self, client):
        response = client.get("/api/alert-rules/conditions")

        keys = [c["key"] for c in response.json()["conditions"]]
        assert "pain_scale_0_10" in keys
        assert "no_assessment_for" in keys

    def test_health(self, client):
        response = client.get("/health")

        assert response.json()["status"] == "healthy"
        assert response.json()["worker_enabled"] is False

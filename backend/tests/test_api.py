"""HTTP surface tests: authentication, role permissions, error mapping and the workflow endpoints."""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from app.core.security import create_access_token
from app.main import app
from app.models.base import get_db
from app.models.user import UserRole
from app.services.notification_dispatcher import DatabaseNotificationSink, NotificationDispatcher
from app.services.workflow import WorkflowRegistry, get_registry


def auth(role, user_id=None):
    token = create_access_token(user_id or f"{role}-1", role)
    return {"Authorization": f"Bearer {token}"}


NURSE = auth(UserRole.NURSE)
RESIDENT = auth(UserRole.RESIDENT)
ATTENDING = auth(UserRole.ATTENDING)
CHARGE = auth(UserRole.CHARGE_NURSE)


@pytest.fixture()
def api_registry(store, session_factory, sink, clock):
    dispatcher = NotificationDispatcher([DatabaseNotificationSink(session_factory), sink])
    return WorkflowRegistry(store, dispatcher, clock=clock)


@pytest.fixture()
def client(session_factory, api_registry):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_registry] = lambda: api_registry
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture()
def patient_id(client):
    resp = client.post("/api/v1/patients/", json={"room_number": "412"}, headers=NURSE)
    assert resp.status_code == 201
    return resp.json()["id"]


def confirm_emergency(client, clock, patient_id):
    client.post(f"/api/v1/patients/{patient_id}/readings", json={"systolic": 170, "diastolic": 100}, headers=NURSE)
    clock.advance(minutes=15)
    return client.post(
        f"/api/v1/patients/{patient_id}/readings", json={"systolic": 175, "diastolic": 105}, headers=NURSE,
    )


class TestAuthentication:
    def test_health_is_public(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"

    def test_missing_token(self, client):
        assert client.get("/api/v1/patients/").status_code == 401

    def test_garbage_token(self, client):
        resp = client.get("/api/v1/patients/", headers={"Authorization": "Bearer not-a-token"})
        assert resp.status_code == 401

    def test_unknown_role(self, client):
        assert client.get("/api/v1/patients/", headers=auth("janitor")).status_code == 401


class TestPatients:
    def test_create_generates_identifier(self, client):
        resp = client.post("/api/v1/patients/", json={"room_number": "415", "has_asthma": True}, headers=CHARGE)
        assert resp.status_code == 201
        body = resp.json()
        assert body["anonymous_identifier"].startswith("PT-")
        assert body["has_asthma"] is True
        assert body["current_emergency_session_id"] is None

    def test_resident_cannot_register_patients(self, client):
        assert client.post("/api/v1/patients/", json={}, headers=RESIDENT).status_code == 403

    def test_duplicate_identifier(self, client):
        client.post("/api/v1/patients/", json={"anonymous_identifier": "PT-DUP1"}, headers=NURSE)
        resp = client.post("/api/v1/patients/", json={"anonymous_identifier": "PT-DUP1"}, headers=NURSE)
        assert resp.status_code == 400

    def test_unknown_patient(self, client):
        assert client.get("/api/v1/patients/missing", headers=NURSE).status_code == 404

    def test_filter_by_emergency(self, client, clock, patient_id):
        client.post("/api/v1/patients/", json={"room_number": "420"}, headers=NURSE)
        confirm_emergency(client, clock, patient_id)

        in_emergency = client.get("/api/v1/patients/?in_emergency=true", headers=RESIDENT).json()
        assert [p["id"] for p in in_emergency] == [patient_id]
        assert len(client.get("/api/v1/patients/?in_emergency=false", headers=RESIDENT).json()) == 1


class TestWorkflowEndpoints:
    def test_first_high_reading(self, client, patient_id):
        resp = client.post(
            f"/api/v1/patients/{patient_id}/readings",
            json={"systolic": 170, "diastolic": 100, "positioning_confirmed": True},
            headers=NURSE,
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["outcome"] == "first_high"
        assert body["reading"]["is_positioned_correctly"] is True
        assert body["timer"]["type"] == "bp_recheck"
        assert body["notifications"] == ["first_high_bp", "recheck_timer_started"]

    def test_reading_out_of_range(self, client, patient_id):
        resp = client.post(
            f"/api/v1/patients/{patient_id}/readings", json={"systolic": 0, "diastolic": 100}, headers=NURSE,
        )
        assert resp.status_code == 422

    def test_resident_cannot_record_readings(self, client, patient_id):
        resp = client.post(
            f"/api/v1/patients/{patient_id}/readings", json={"systolic": 170, "diastolic": 100}, headers=RESIDENT,
        )
        assert resp.status_code == 403

    def test_reading_for_unknown_patient(self, client):
        resp = client.post("/api/v1/patients/missing/readings", json={"systolic": 170, "diastolic": 100}, headers=NURSE)
        assert resp.status_code == 404
        assert resp.json()["error"] == "PATIENT_NOT_FOUND"

    def test_full_treatment_course(self, client, clock, patient_id):
        confirmed = confirm_emergency(client, clock, patient_id)
        assert confirmed.json()["outcome"] == "confirmed"
        assert confirmed.json()["session"]["status"] == "active"

        resp = client.post(
            f"/api/v1/patients/{patient_id}/session/algorithm", json={"algorithm": "labetalol"}, headers=RESIDENT,
        )
        assert resp.status_code == 200
        assert resp.json()["session"]["algorithm_selected"] == "labetalol"

        ordered = client.post(f"/api/v1/patients/{patient_id}/session/doses", json={}, headers=RESIDENT)
        assert ordered.status_code == 201
        dose = ordered.json()["medication"]
        assert dose["dose_number"] == 1
        assert dose["administered_at"] is None

        given = client.post(f"/api/v1/patients/{patient_id}/session/doses/{dose['id']}/administer", headers=NURSE)
        assert given.status_code == 200
        assert given.json()["timer"]["type"] == "medication_wait"

        clock.advance(minutes=10)
        resolved = client.post(
            f"/api/v1/patients/{patient_id}/readings", json={"systolic": 145, "diastolic": 95}, headers=NURSE,
        )
        assert resolved.json()["outcome"] == "resolved"

        session = client.get(f"/api/v1/patients/{patient_id}/session", headers=CHARGE).json()
        assert session["status"] == "resolved"
        meds = client.get(f"/api/v1/patients/{patient_id}/session/medications", headers=CHARGE).json()
        assert [m["administered_by"] for m in meds] == ["nurse-1"]

    def test_nurse_cannot_order_medication(self, client, clock, patient_id):
        confirm_emergency(client, clock, patient_id)
        client.post(f"/api/v1/patients/{patient_id}/session/algorithm", json={"algorithm": "nifedipine"}, headers=RESIDENT)
        assert client.post(f"/api/v1/patients/{patient_id}/session/doses", json={}, headers=NURSE).status_code == 403

    def test_unknown_algorithm(self, client, clock, patient_id):
        confirm_emergency(client, clock, patient_id)
        resp = client.post(
            f"/api/v1/patients/{patient_id}/session/algorithm", json={"algorithm": "magnesium"}, headers=RESIDENT,
        )
        assert resp.status_code == 422

    def test_precondition_failures_are_conflicts(self, client, patient_id):
        resp = client.post(
            f"/api/v1/patients/{patient_id}/session/algorithm", json={"algorithm": "labetalol"}, headers=RESIDENT,
        )
        assert resp.status_code == 409
        assert resp.json()["error"] == "NO_ACTIVE_SESSION"
        assert resp.json()["retryable"] is False

    def test_no_session_yet(self, client, patient_id):
        assert client.get(f"/api/v1/patients/{patient_id}/session", headers=NURSE).status_code == 409
        assert client.get(f"/api/v1/patients/{patient_id}/session/medications", headers=NURSE).json() == []

    def test_unknown_dose(self, client, clock, patient_id):
        confirm_emergency(client, clock, patient_id)
        resp = client.post(f"/api/v1/patients/{patient_id}/session/doses/missing/administer", headers=NURSE)
        assert resp.status_code == 404
        assert resp.json()["error"] == "MEDICATION_NOT_FOUND"

    def test_manual_start_escalate_and_acknowledge(self, client, patient_id):
        started = client.post(f"/api/v1/patients/{patient_id}/session", headers=ATTENDING)
        assert started.status_code == 201
        assert started.json()["notifications"][0] == "confirmed_emergency"

        escalated = client.post(
            f"/api/v1/patients/{patient_id}/session/escalate", json={"reason": "Refractory"}, headers=RESIDENT,
        )
        assert escalated.json()["session"]["status"] == "escalated"

        assert client.post(f"/api/v1/patients/{patient_id}/session/acknowledge", headers=RESIDENT).status_code == 403
        acked = client.post(f"/api/v1/patients/{patient_id}/session/acknowledge", headers=ATTENDING)
        assert acked.status_code == 200
        assert acked.json()["session"]["acknowledged_by"] == "attending-1"

    def test_second_start_conflicts(self, client, patient_id):
        client.post(f"/api/v1/patients/{patient_id}/session", headers=RESIDENT)
        resp = client.post(f"/api/v1/patients/{patient_id}/session", headers=RESIDENT)
        assert resp.status_code == 409
        assert resp.json()["error"] == "INVALID_TRANSITION"

    def test_store_failure_is_retryable(self, client, api_registry, patient_id, monkeypatch):
        def broken(*args, **kwargs):
            raise OperationalError("INSERT INTO audit_logs", {}, Exception("database is locked"))

        monkeypatch.setattr(api_registry.store, "audit", broken)
        resp = client.post(
            f"/api/v1/patients/{patient_id}/readings", json={"systolic": 170, "diastolic": 100}, headers=NURSE,
        )
        assert resp.status_code == 503
        assert resp.json()["retryable"] is True
        assert client.get(f"/api/v1/patients/{patient_id}/readings", headers=NURSE).json() == []

    def test_workflow_guidance(self, client, clock, patient_id):
        confirm_emergency(client, clock, patient_id)
        body = client.get(f"/api/v1/patients/{patient_id}/workflow", headers=NURSE).json()
        assert body["stage"] == "confirmed_active"
        assert "Select treatment algorithm" in body["next_action"]

    def test_timer_countdown(self, client, clock, patient_id):
        client.post(f"/api/v1/patients/{patient_id}/readings", json={"systolic": 170, "diastolic": 100}, headers=NURSE)
        body = client.get(f"/api/v1/patients/{patient_id}/timer", headers=NURSE).json()
        assert body["remaining_seconds"] == 15 * 60
        assert body["expired"] is False

        clock.advance(minutes=15)
        body = client.get(f"/api/v1/patients/{patient_id}/timer", headers=NURSE).json()
        assert body["expired"] is True

    def test_expired_timer_poll(self, client, clock, patient_id):
        client.post(f"/api/v1/patients/{patient_id}/readings", json={"systolic": 170, "diastolic": 100}, headers=NURSE)
        assert client.get(f"/api/v1/patients/{patient_id}/timer/expired", headers=NURSE).json() == []

        clock.advance(minutes=15)
        fired = client.get(f"/api/v1/patients/{patient_id}/timer/expired", headers=NURSE).json()
        assert [t["type"] for t in fired] == ["bp_recheck"]
        assert client.get(f"/api/v1/patients/{patient_id}/timer/expired", headers=NURSE).json() == []

    def test_unknown_patient_reads_are_not_found(self, client, api_registry):
        for path in ("session/medications", "timer/expired", "readings", "timer"):
            resp = client.get(f"/api/v1/patients/missing/{path}", headers=NURSE)
            assert resp.status_code == 404
        assert len(api_registry) == 0

    def test_no_timer(self, client, patient_id):
        body = client.get(f"/api/v1/patients/{patient_id}/timer", headers=NURSE).json()
        assert body == {"timer": None, "remaining_seconds": None, "expired": False}

    def test_protocol_steps(self, client):
        steps = client.get("/api/v1/protocols/hydralazine", headers=NURSE).json()
        assert [s["step"] for s in steps] == [1, 2]
        assert all(s["wait_minutes"] == 20 for s in steps)


class TestNotificationInbox:
    def test_role_inbox_and_acknowledge(self, client, patient_id):
        client.post(f"/api/v1/patients/{patient_id}/readings", json={"systolic": 170, "diastolic": 100}, headers=NURSE)

        inbox = client.get("/api/v1/notifications/", headers=NURSE).json()
        assert {n["event"] for n in inbox} == {"first_high_bp", "recheck_timer_started"}
        assert client.get("/api/v1/notifications/", headers=RESIDENT).json() == []

        target = inbox[0]["id"]
        assert client.patch(f"/api/v1/notifications/{target}/acknowledge", headers=RESIDENT).status_code == 404
        acked = client.patch(f"/api/v1/notifications/{target}/acknowledge", headers=NURSE)
        assert acked.json()["acknowledged_by"] == "nurse-1"
        assert client.get("/api/v1/notifications/unacknowledged-count", headers=NURSE).json() == {
            "unacknowledged_count": 1,
        }

    def test_broadcasts_reach_everyone(self, client, patient_id):
        client.post(f"/api/v1/patients/{patient_id}/session", headers=RESIDENT)
        client.post(f"/api/v1/patients/{patient_id}/session/resolve", headers=RESIDENT)
        for headers in (NURSE, RESIDENT, ATTENDING, CHARGE):
            events = [n["event"] for n in client.get("/api/v1/notifications/", headers=headers).json()]
            assert "session_resolved" in events


class TestAuditLogs:
    def test_charge_nurse_reviews_trail(self, client, patient_id):
        client.post(f"/api/v1/patients/{patient_id}/readings", json={"systolic": 170, "diastolic": 100}, headers=NURSE)
        logs = client.get(f"/api/v1/admin/audit-logs?patient_id={patient_id}", headers=CHARGE).json()
        assert {entry["action_type"] for entry in logs} == {"bp_reading_recorded", "first_high_bp_observed"}
        assert all(entry["user_id"] == "nurse-1" for entry in logs)

        filtered = client.get(
            "/api/v1/admin/audit-logs?action_type=first_high_bp_observed", headers=ATTENDING,
        ).json()
        assert len(filtered) == 1

    def test_nurse_cannot_read_trail(self, client):
        assert client.get("/api/v1/admin/audit-logs", headers=NURSE).status_code == 403

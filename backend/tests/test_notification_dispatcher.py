"""Tests for notification routing and delivery sinks."""
import json
from types import SimpleNamespace

import httpx
import pytest

from app.models.notification import Notification, NotificationPriority
from app.models.timer import TimerType
from app.models.user import UserRole
from app.services import notification_dispatcher as dispatch_module
from app.services.notification_dispatcher import (
    DatabaseNotificationSink,
    NotificationDispatcher,
    NotificationEvent,
    WebhookNotificationSink,
    algorithm_failure,
    confirmed_emergency,
    first_high_bp,
    session_resolved,
    timer_expired,
)
from conftest import FailingSink, RecordingSink

PATIENT = SimpleNamespace(id="p-1", room_number="412", anonymous_identifier="PT-AB12")


class TestRouting:
    def test_confirmed_emergency_reaches_the_floor(self):
        request = confirmed_emergency(PATIENT, 175, 105)
        assert request.roles == (UserRole.NURSE, UserRole.RESIDENT, UserRole.CHARGE_NURSE)
        assert request.priority == NotificationPriority.CRITICAL
        assert "Room 412" in request.message
        assert "175/105" in request.message

    def test_manual_confirmation_omits_bp(self):
        assert "BP:" not in confirmed_emergency(PATIENT).message

    def test_algorithm_failure_is_stat_for_physicians(self):
        request = algorithm_failure(PATIENT, "Labetalol", 170, 112)
        assert request.roles == (UserRole.ATTENDING, UserRole.RESIDENT)
        assert request.priority == NotificationPriority.STAT

    def test_resolution_is_broadcast(self):
        request = session_resolved(PATIENT, "BP controlled at 140/90")
        assert request.is_broadcast
        assert request.message.startswith("Room 412:")

    def test_resolution_without_room_names_the_patient(self):
        patient = SimpleNamespace(id="p-2", room_number=None, anonymous_identifier="PT-CD34")
        assert session_resolved(patient, "Resolved").message.startswith("Patient PT-CD34:")

    def test_first_high_reading_goes_to_nurse(self):
        request = first_high_bp(PATIENT, 170, 100)
        assert request.roles == (UserRole.NURSE,)
        assert request.priority == NotificationPriority.INFO

    @pytest.mark.parametrize("timer_type, event, roles", [
        (TimerType.BP_RECHECK, NotificationEvent.RECHECK_DUE, (UserRole.NURSE, UserRole.CHARGE_NURSE)),
        (TimerType.MEDICATION_WAIT, NotificationEvent.MEDICATION_WAIT_COMPLETE, (UserRole.NURSE,)),
        (
            TimerType.ADMINISTRATION_DEADLINE,
            NotificationEvent.ADMINISTRATION_DEADLINE_PASSED,
            (UserRole.RESIDENT, UserRole.CHARGE_NURSE),
        ),
    ])
    def test_timer_expiry_routing(self, timer_type, event, roles):
        timer = SimpleNamespace(id="t-1", type=timer_type, patient_id="p-1", duration_minutes=15)
        request = timer_expired(timer)
        assert request.event == event
        assert request.roles == roles
        assert request.priority == NotificationPriority.CRITICAL
        assert request.context == {"timer_id": "t-1"}


class TestDatabaseSink:
    def test_one_row_per_role(self, session_factory, db):
        DatabaseNotificationSink(session_factory).deliver(confirmed_emergency(PATIENT, 175, 105))
        rows = db.query(Notification).all()
        assert sorted(r.recipient_role for r in rows) == sorted(
            [UserRole.NURSE, UserRole.RESIDENT, UserRole.CHARGE_NURSE]
        )
        assert all(r.type == NotificationPriority.CRITICAL for r in rows)
        assert all(r.patient_id == "p-1" for r in rows)

    def test_broadcast_is_a_single_row(self, session_factory, db):
        DatabaseNotificationSink(session_factory).deliver(session_resolved(PATIENT, "Resolved"))
        rows = db.query(Notification).all()
        assert len(rows) == 1
        assert rows[0].recipient_role is None
        assert rows[0].event == NotificationEvent.SESSION_RESOLVED


class TestWebhookSink:
    def test_mock_mode_sends_nothing(self, monkeypatch):
        def no_network(*args, **kwargs):
            raise AssertionError("network used in mock mode")

        monkeypatch.setattr(dispatch_module.httpx, "Client", no_network)
        WebhookNotificationSink(url="https://push.example", mock_mode=True).deliver(first_high_bp(PATIENT, 170, 100))

    def test_missing_url_behaves_like_mock(self, monkeypatch):
        monkeypatch.setattr(dispatch_module.httpx, "Client", None)
        WebhookNotificationSink(url="", mock_mode=False).deliver(first_high_bp(PATIENT, 170, 100))

    def test_posts_payload(self, monkeypatch):
        captured = []
        real_client = httpx.Client

        def handler(request):
            captured.append(request)
            return httpx.Response(202)

        monkeypatch.setattr(
            dispatch_module.httpx, "Client",
            lambda timeout: real_client(transport=httpx.MockTransport(handler), timeout=timeout),
        )
        sink = WebhookNotificationSink(url="https://push.example/notify", api_key="secret", mock_mode=False)
        sink.deliver(algorithm_failure(PATIENT, "Labetalol", 170, 112))

        assert len(captured) == 1
        assert captured[0].headers["Authorization"] == "Bearer secret"
        body = json.loads(captured[0].content)
        assert body["event"] == NotificationEvent.ALGORITHM_FAILURE
        assert body["roles"] == [UserRole.ATTENDING, UserRole.RESIDENT]
        assert body["priority"] == NotificationPriority.STAT

    def test_http_errors_raise(self, monkeypatch):
        real_client = httpx.Client
        monkeypatch.setattr(
            dispatch_module.httpx, "Client",
            lambda timeout: real_client(
                transport=httpx.MockTransport(lambda request: httpx.Response(500)), timeout=timeout,
            ),
        )
        sink = WebhookNotificationSink(url="https://push.example/notify", mock_mode=False)
        with pytest.raises(httpx.HTTPStatusError):
            sink.deliver(first_high_bp(PATIENT, 170, 100))


class TestDispatcher:
    def test_delivers_to_every_sink_in_order(self):
        first, second = RecordingSink(), RecordingSink()
        dispatcher = NotificationDispatcher([first])
        dispatcher.add_sink(second)
        requests = [first_high_bp(PATIENT, 170, 100), confirmed_emergency(PATIENT, 175, 105)]

        assert dispatcher.dispatch(requests) == 0
        assert first.events == [NotificationEvent.FIRST_HIGH_BP, NotificationEvent.CONFIRMED_EMERGENCY]
        assert second.events == first.events

    def test_failures_are_counted_not_raised(self):
        recorder = RecordingSink()
        dispatcher = NotificationDispatcher([FailingSink(), recorder])
        failures = dispatcher.dispatch([first_high_bp(PATIENT, 170, 100), session_resolved(PATIENT, "Resolved")])
        assert failures == 2
        assert len(recorder.requests) == 2

    def test_notify_builds_ad_hoc_request(self):
        recorder = RecordingSink()
        NotificationDispatcher([recorder]).notify(
            [UserRole.CHARGE_NURSE], NotificationPriority.WARNING, "Staffing", "Float nurse requested", "p-1",
        )
        request = recorder.requests[0]
        assert request.event == "custom"
        assert request.roles == (UserRole.CHARGE_NURSE,)

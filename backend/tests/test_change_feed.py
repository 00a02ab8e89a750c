"""Tests for store change notifications and the per-case session context."""
import pytest

from app.core.exceptions import SessionNotFoundError
from app.models.reading import BloodPressureReading
from app.models.base import generate_uuid
from app.services.session_context import SessionContext
from app.services.session_machine import SessionStage
from app.services.timer_watcher import TimerExpiryWatcher


class TestChangeFeed:
    def test_events_published_after_commit(self, feed, session_factory, patient, clock):
        events = []
        feed.subscribe(events.append, tables=["bp_readings"])

        db = session_factory()
        db.add(BloodPressureReading(
            id=generate_uuid(), patient_id=patient.id, systolic=150, diastolic=95,
            timestamp=clock.now, recorded_by="nurse-1",
        ))
        db.flush()
        assert events == []
        db.commit()
        db.close()

        assert len(events) == 1
        assert events[0].table == "bp_readings"
        assert events[0].event_type == "INSERT"
        assert events[0].patient_id == patient.id
        assert events[0].row["systolic"] == 150

    def test_rollback_discards_events(self, feed, session_factory, patient, clock):
        events = []
        feed.subscribe(events.append)

        db = session_factory()
        db.add(BloodPressureReading(
            id=generate_uuid(), patient_id=patient.id, systolic=150, diastolic=95,
            timestamp=clock.now, recorded_by="nurse-1",
        ))
        db.flush()
        db.rollback()
        db.close()
        assert events == []

    def test_filters_by_patient_and_table(self, feed, registry, make_patient, nurse):
        a, b = make_patient(), make_patient()
        mine, timers_only = [], []
        feed.subscribe(mine.append, patient_id=a.id)
        feed.subscribe(timers_only.append, tables=["timers"])

        registry.for_patient(a.id).record_bp_reading(nurse, 170, 100)
        registry.for_patient(b.id).record_bp_reading(nurse, 170, 100)

        assert {e.patient_id for e in mine} == {a.id}
        assert {e.table for e in mine} == {"bp_readings", "timers"}
        assert {e.table for e in timers_only} == {"timers"}
        assert {e.patient_id for e in timers_only} == {a.id, b.id}

    def test_unsubscribe(self, feed, registry, patient, nurse):
        events = []
        subscription = feed.subscribe(events.append)
        assert feed.subscriber_count == 1
        subscription.unsubscribe()
        subscription.unsubscribe()
        assert feed.subscriber_count == 0

        registry.for_patient(patient.id).record_bp_reading(nurse, 170, 100)
        assert events == []

    def test_subscriber_errors_are_contained(self, feed, registry, patient, nurse):
        received = []

        def broken(change):
            raise RuntimeError("observer crashed")

        feed.subscribe(broken)
        feed.subscribe(received.append)
        registry.for_patient(patient.id).record_bp_reading(nurse, 170, 100)
        assert received


class TestSessionContext:
    def test_focus_loads_and_subscribes(self, registry, feed, patient, nurse, clock):
        case = registry.for_patient(patient.id)
        case.record_bp_reading(nurse, 170, 100)

        snapshot = case.focus_session()
        assert snapshot["patient"].id == patient.id
        assert len(snapshot["readings"]) == 1
        assert snapshot["active_timer"].type == "bp_recheck"
        assert snapshot["timer_remaining_seconds"] == 15 * 60
        assert feed.subscriber_count == 1

    def test_change_marks_stale_and_read_reloads(self, registry, patient, nurse, clock):
        case = registry.for_patient(patient.id)
        context = case.context
        case.focus_session()
        loads = context.reload_count

        assert context.readings == []
        assert context.reload_count == loads

        case.record_bp_reading(nurse, 170, 100)
        assert context.is_stale
        assert len(context.readings) == 1
        assert context.reload_count == loads + 1

    def test_duplicate_signals_converge(self, registry, patient, nurse, clock):
        case = registry.for_patient(patient.id)
        context = case.context
        case.record_bp_reading(nurse, 170, 100)
        clock.advance(minutes=15)
        case.record_bp_reading(nurse, 175, 105)
        case.focus_session()

        context.mark_stale()
        context.mark_stale()
        assert context.session.status == "active"
        assert context.workflow_state().stage == SessionStage.CONFIRMED_ACTIVE

    def test_unfocus_clears_state(self, registry, feed, patient, nurse):
        case = registry.for_patient(patient.id)
        case.focus_session()
        case.unfocus_session()
        assert feed.subscriber_count == 0
        assert not case.context.is_focused

        case.record_bp_reading(nurse, 170, 100)
        assert case.context.is_stale

    def test_focus_on_a_closed_session(self, registry, patient, nurse, resident, clock):
        case = registry.for_patient(patient.id)
        started = case.start_session(resident)
        case.resolve_session(resident)
        case.start_session(resident)

        snapshot = case.focus_session(started.session.id)
        assert snapshot["session"].id == started.session.id
        assert snapshot["session"].status == "resolved"

    def test_focus_on_unknown_session(self, registry, patient):
        with pytest.raises(SessionNotFoundError):
            registry.for_patient(patient.id).focus_session("missing")

    def test_focus_resets_expiry_acknowledgements(self, store, feed, registry, patient, nurse, clock):
        watcher = TimerExpiryWatcher(store, clock=clock)
        context = SessionContext(patient.id, store, feed=feed, clock=clock, watcher=watcher)
        context.focus()

        registry.for_patient(patient.id).record_bp_reading(nurse, 170, 100)
        clock.advance(minutes=15)
        assert len(context.expired_timers()) == 1
        assert context.expired_timers() == []

        context.unfocus()
        context.focus()
        assert len(context.expired_timers()) == 1
        assert watcher.patient_id == patient.id

    def test_case_reports_its_own_expired_timers(self, registry, make_patient, nurse, clock):
        other = make_patient()
        case = registry.for_patient(make_patient().id)
        case.record_bp_reading(nurse, 170, 100)
        registry.for_patient(other.id).record_bp_reading(nurse, 172, 102)
        case.focus_session()

        assert case.expired_timers() == []
        clock.advance(minutes=15)
        fired = case.expired_timers()
        assert [t.patient_id for t in fired] == [case.patient_id]
        assert case.expired_timers() == []
        assert case.context.is_stale

        case.unfocus_session()
        case.focus_session()
        assert len(case.expired_timers()) == 1

    def test_expired_timers_are_not_paged_twice(self, registry, patient, nurse, sink, clock):
        case = registry.for_patient(patient.id)
        case.record_bp_reading(nurse, 170, 100)
        case.focus_session()
        clock.advance(minutes=15)
        sent = len(sink.requests)

        assert len(case.expired_timers()) == 1
        assert len(sink.requests) == sent
        assert "timer_expired" not in [entry.action_type for entry in case.audit_trail()]

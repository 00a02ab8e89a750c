"""
Workflow Orchestrator: the single entry point for every protocol action on a case.

Each operation runs under the case's lock as one store transaction (state change
plus its audit entries). Notifications are queued on the case's outbox at commit
and delivered after the lock is released, so a slow sink never blocks the next
operation, and a failed operation leaves neither rows nor alerts behind.
Batches of one case are delivered in commit order by a single drainer at a time.
"""
import logging
import threading
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import (
    CaseBusyError,
    InvalidTransitionError,
    MedicationNotFoundError,
    MissingActorError,
    PatientNotFoundError,
    PreconditionError,
    SessionNotFoundError,
)
from ..models.base import SessionLocal, generate_uuid, utcnow
from ..models.medication import MedicationDose
from ..models.reading import BloodPressureReading
from ..models.session import EmergencySession, SessionStatus
from ..models.timer import Timer, TimerType
from . import notification_dispatcher as notices
from .change_feed import ChangeFeed
from .clinical_rules import contraindication_warnings, next_dose, parse_algorithm, protocol_for
from .notification_dispatcher import (
    DatabaseNotificationSink,
    NotificationDispatcher,
    NotificationRequest,
    WebhookNotificationSink,
)
from .session_context import SessionContext
from .session_machine import (
    ReadingDecision,
    ReadingOutcome,
    WorkflowState,
    check_can_acknowledge,
    check_can_administer,
    check_can_order_dose,
    check_can_select_algorithm,
    check_can_start,
    decide_reading,
    describe_workflow,
    require_active,
)
from .store import WorkflowStore
from .timer_service import StartedTimer, TimerService
from .timer_watcher import TimerExpiryWatcher

logger = logging.getLogger(__name__)

SYSTEM_ACTOR_ID = "system"


@dataclass
class OperationResult:
    """What an operation did, for callers that render it."""
    operation: str
    patient_id: str
    session: Optional[EmergencySession] = None
    reading: Optional[BloodPressureReading] = None
    medication: Optional[MedicationDose] = None
    timer: Optional[Timer] = None
    decision: Optional[ReadingDecision] = None
    warnings: List[str] = field(default_factory=list)
    notifications: List[NotificationRequest] = field(default_factory=list)
    audit_actions: List[str] = field(default_factory=list)


class WorkflowOrchestrator:
    """Owns one patient's case. Obtain instances through ``WorkflowRegistry``."""

    def __init__(
        self,
        patient_id: str,
        store: WorkflowStore,
        dispatcher: NotificationDispatcher,
        timers: Optional[TimerService] = None,
        feed: Optional[ChangeFeed] = None,
        clock: Callable[[], datetime] = utcnow,
        min_confirmation_gap: Optional[timedelta] = None,
        asthma_blocks_labetalol: bool = settings.ASTHMA_BLOCKS_LABETALOL,
        lock_timeout: float = settings.STORE_TIMEOUT_SECONDS,
    ):
        self.patient_id = patient_id
        self.store = store
        self.dispatcher = dispatcher
        self.clock = clock
        self.timers = timers or TimerService(clock=clock)
        self.min_confirmation_gap = (
            min_confirmation_gap
            if min_confirmation_gap is not None
            else timedelta(seconds=settings.CONFIRMATION_MIN_GAP_SECONDS)
        )
        self.asthma_blocks_labetalol = asthma_blocks_labetalol
        self.lock_timeout = lock_timeout
        # Observer-side expiry polling; paging on expiry belongs to the server-wide watcher
        self.watcher = TimerExpiryWatcher(store, clock=clock, patient_id=patient_id)
        self.context = SessionContext(patient_id, store, feed=feed, clock=clock, watcher=self.watcher)
        self.last_used = clock()
        self._lock = threading.Lock()
        self._outbox: deque = deque()
        self._delivery_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    @contextmanager
    def _serialized(self):
        if not self._lock.acquire(timeout=self.lock_timeout):
            logger.warning("Case %s busy for more than %ss", self.patient_id, self.lock_timeout)
            raise CaseBusyError(self.patient_id, self.lock_timeout)
        try:
            yield
        finally:
            self._lock.release()

    def _run(self, operation: str, actor, fn: Callable) -> OperationResult:
        if actor is None or not getattr(actor, "id", None):
            raise MissingActorError(operation)
        with self._serialized():
            self.last_used = self.clock()
            result = OperationResult(operation=operation, patient_id=self.patient_id)
            with self.store.unit_of_work(operation) as db:
                patient = self.store.get_patient(db, self.patient_id)
                if patient is None:
                    raise PatientNotFoundError(self.patient_id)
                fn(db, patient, actor, result)
            logger.debug("%s committed for %s: %s", operation, self.patient_id, result.audit_actions)
            if result.notifications:
                self._outbox.append(list(result.notifications))
        self._deliver_pending()
        return result

    def _deliver_pending(self) -> None:
        """Deliver queued batches in commit order; a delivery already in progress drains ours too."""
        while self._outbox:
            if not self._delivery_lock.acquire(blocking=False):
                return
            try:
                while True:
                    try:
                        batch = self._outbox.popleft()
                    except IndexError:
                        break
                    self.dispatcher.dispatch(batch)
            finally:
                self._delivery_lock.release()

    @property
    def is_idle(self) -> bool:
        """True when no work is in flight for the case and nobody observes it."""
        return (
            not self._lock.locked()
            and not self._delivery_lock.locked()
            and not self._outbox
            and not self.context.is_focused
        )

    def _audit(self, db: Session, actor, result: OperationResult, action: str,
               session_id: Optional[str] = None, **details) -> None:
        self.store.audit(
            db, actor.id, action,
            patient_id=self.patient_id,
            session_id=session_id,
            timestamp=self.clock(),
            **details,
        )
        result.audit_actions.append(action)

    @staticmethod
    def _started(result: OperationResult, started: StartedTimer) -> Timer:
        result.timer = started.timer
        result.notifications.append(started.notification)
        return started.timer

    def _active_session(self, db: Session) -> EmergencySession:
        return require_active(self.store.active_session(db, self.patient_id), self.patient_id)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def start_session(self, actor) -> OperationResult:
        """Open an emergency session by hand (no confirming reading pair needed)."""

        def apply(db, patient, actor, result):
            check_can_start(self.store.active_session(db, self.patient_id), self.patient_id)
            session = self._open_session(db, patient, actor, result)
            self._audit(db, actor, result, "session_started", session.id, manual=True)
            result.notifications.insert(0, notices.confirmed_emergency(patient))

        return self._run("start_session", actor, apply)

    def _open_session(self, db, patient, actor, result) -> EmergencySession:
        now = self.clock()
        session = EmergencySession(
            id=generate_uuid(),
            patient_id=patient.id,
            initiated_by=actor.id,
            initiated_at=now,
            algorithm_selected=None,
            current_step=0,
            status=SessionStatus.ACTIVE,
        )
        db.add(session)
        patient.current_emergency_session_id = session.id
        db.flush()
        self._started(result, self.timers.create_administration_deadline_timer(db, patient.id))
        result.session = session
        logger.info("Emergency session %s opened for patient %s", session.id, patient.id)
        return session

    def _close_session(self, db, patient, session, result, details: str) -> None:
        session.status = SessionStatus.RESOLVED
        session.resolved_at = self.clock()
        if patient.current_emergency_session_id == session.id:
            patient.current_emergency_session_id = None
        stopped = self.timers.deactivate_all_timers(db, patient.id)
        db.flush()
        result.session = session
        result.notifications.append(notices.session_resolved(patient, details))
        logger.info("Session %s resolved (%s); %d timer(s) stopped", session.id, details, stopped)

    def _escalate(self, db, patient, session, result) -> None:
        session.status = SessionStatus.ESCALATED
        session.escalated_at = self.clock()
        stopped = self.timers.deactivate_all_timers(db, patient.id)
        db.flush()
        result.session = session
        logger.warning("Session %s escalated for patient %s; %d timer(s) stopped", session.id, patient.id, stopped)

    def resolve_session(self, actor, reason: Optional[str] = None) -> OperationResult:

        def apply(db, patient, actor, result):
            session = self._active_session(db)
            details = reason or "Resolved by clinician"
            self._close_session(db, patient, session, result, details)
            self._audit(db, actor, result, "session_resolved", session.id, reason=details)

        return self._run("resolve_session", actor, apply)

    def escalate_session(self, actor, reason: Optional[str] = None) -> OperationResult:

        def apply(db, patient, actor, result):
            session = self._active_session(db)
            self._escalate(db, patient, session, result)
            result.notifications.append(notices.manual_escalation(patient, reason))
            self._audit(db, actor, result, "session_escalated", session.id, reason=reason, manual=True)

        return self._run("escalate_session", actor, apply)

    def acknowledge_session(self, actor, session_id: Optional[str] = None) -> OperationResult:
        """Receiving clinician takes over an escalated case. Status is unchanged."""

        def apply(db, patient, actor, result):
            if session_id is not None:
                session = self.store.get_session(db, session_id)
                if session is None or session.patient_id != self.patient_id:
                    raise SessionNotFoundError(session_id)
            else:
                session = self.store.latest_session(db, self.patient_id, SessionStatus.ESCALATED)
                if session is None:
                    raise InvalidTransitionError(
                        f"Patient {self.patient_id} has no escalated session to acknowledge",
                        details={"patient_id": self.patient_id},
                    )
            check_can_acknowledge(session)
            session.acknowledged_at = self.clock()
            session.acknowledged_by = actor.id
            db.flush()
            result.session = session
            self._audit(db, actor, result, "escalation_acknowledged", session.id)

        return self._run("acknowledge_session", actor, apply)

    # ------------------------------------------------------------------
    # Readings
    # ------------------------------------------------------------------

    def record_bp_reading(
        self,
        actor,
        systolic: int,
        diastolic: int,
        positioning_confirmed: bool = False,
        notes: Optional[str] = None,
    ) -> OperationResult:

        def apply(db, patient, actor, result):
            now = self.clock()
            latest = self.store.recent_readings(db, self.patient_id, limit=1)
            previous = latest[0] if latest else None
            session = self.store.active_session(db, self.patient_id)
            latest_session = session or self.store.latest_session(db, self.patient_id)
            active_timer = self.timers.get_active_timer(db, self.patient_id)
            decision = decide_reading(
                systolic,
                diastolic,
                session,
                previous,
                gap=(now - previous.timestamp) if previous else None,
                has_active_timer=active_timer is not None,
                min_confirmation_gap=self.min_confirmation_gap,
                latest_session=latest_session,
            )

            reading = BloodPressureReading(
                id=generate_uuid(),
                patient_id=self.patient_id,
                systolic=systolic,
                diastolic=diastolic,
                timestamp=now,
                recorded_by=actor.id,
                is_positioned_correctly=positioning_confirmed,
                notes=notes,
            )
            db.add(reading)
            db.flush()
            result.reading = reading
            result.decision = decision
            # a reading on an escalated case is filed under that session
            attached = session or (latest_session if decision.outcome == ReadingOutcome.RECORDED else None)
            result.session = attached
            self._audit(
                db, actor, result, "bp_reading_recorded", attached.id if attached else None,
                reading_id=reading.id, systolic=systolic, diastolic=diastolic,
                category=decision.category.value, positioning_confirmed=positioning_confirmed,
            )
            self._apply_decision(db, patient, actor, result, decision, session, active_timer)

        return self._run("record_bp_reading", actor, apply)

    def _apply_decision(self, db, patient, actor, result, decision, session, active_timer) -> None:
        systolic, diastolic = result.reading.systolic, result.reading.diastolic
        outcome = decision.outcome
        details = {"systolic": systolic, "diastolic": diastolic}

        if outcome == ReadingOutcome.FIRST_HIGH:
            result.notifications.append(notices.first_high_bp(patient, systolic, diastolic))
            self._started(result, self.timers.create_recheck_timer(db, self.patient_id))

        elif outcome == ReadingOutcome.AWAITING_RECHECK:
            details["min_gap_seconds"] = int(self.min_confirmation_gap.total_seconds())

        elif outcome == ReadingOutcome.CONFIRMED:
            session = self._open_session(db, patient, actor, result)
            result.notifications.insert(
                len(result.notifications) - 1,
                notices.confirmed_emergency(patient, systolic, diastolic),
            )

        elif outcome in (ReadingOutcome.NORMALIZED, ReadingOutcome.BORDERLINE):
            details["timers_stopped"] = self.timers.deactivate_all_timers(db, self.patient_id)

        elif outcome == ReadingOutcome.RESOLVED:
            self._close_session(
                db, patient, session, result,
                f"BP controlled at {systolic}/{diastolic}",
            )

        elif outcome == ReadingOutcome.ESCALATED:
            self._escalate(db, patient, session, result)
            protocol = protocol_for(session.algorithm_selected)
            details["algorithm"] = protocol.algorithm.value
            details["doses_given"] = session.current_step
            result.notifications.append(notices.algorithm_failure(patient, protocol.name, systolic, diastolic))

        elif outcome == ReadingOutcome.TIMER_SATISFIED:
            self.timers.deactivate_timer(db, active_timer.id)
            details["timer_id"] = active_timer.id
            details["timer_type"] = active_timer.type

        if decision.audit_action:
            self._audit(
                db, actor, result, decision.audit_action, session.id if session else None,
                reason=decision.reason, **details,
            )

    # ------------------------------------------------------------------
    # Treatment
    # ------------------------------------------------------------------

    def select_algorithm(self, actor, algorithm) -> OperationResult:

        def apply(db, patient, actor, result):
            try:
                chosen = parse_algorithm(algorithm)
            except ValueError:
                raise PreconditionError(
                    f"Unknown medication algorithm: {algorithm}",
                    code="UNKNOWN_ALGORITHM",
                    details={"algorithm": str(algorithm)},
                )
            session = self._active_session(db)
            check_can_select_algorithm(session)

            cautions = contraindication_warnings(chosen, bool(patient.has_asthma))
            if cautions and self.asthma_blocks_labetalol:
                raise InvalidTransitionError(cautions[0], details={"algorithm": chosen.value})

            protocol = protocol_for(chosen)
            session.algorithm_selected = chosen.value
            db.flush()
            result.session = session
            result.warnings.extend(cautions)
            result.notifications.append(notices.algorithm_selected(patient, protocol.name))
            for caution in cautions:
                result.notifications.append(notices.asthma_caution(patient, caution))

            if not self._deadline_counted(db, session):
                self._started(result, self.timers.create_administration_deadline_timer(db, self.patient_id))

            self._audit(
                db, actor, result, "algorithm_selected", session.id,
                algorithm=chosen.value, max_doses=protocol.max_doses, warnings=cautions,
            )

        return self._run("select_algorithm", actor, apply)

    def _deadline_counted(self, db: Session, session: EmergencySession) -> bool:
        """An administration deadline was already started for this session."""
        return (
            db.query(Timer)
            .filter(
                Timer.patient_id == self.patient_id,
                Timer.type == TimerType.ADMINISTRATION_DEADLINE,
                Timer.started_at >= session.initiated_at,
            )
            .first()
            is not None
        )

    def order_next_dose(self, actor, administer_now: bool = False) -> OperationResult:
        """
        Order the next dose of the selected algorithm. With ``administer_now`` the
        same actor also gives it in the same transaction.
        """

        def apply(db, patient, actor, result):
            session = self._active_session(db)
            check_can_order_dose(session, self.store.pending_medication(db, session.id))
            result.session = session

            step = next_dose(session.algorithm_selected, session.current_step or 0)
            if step is None:
                protocol = protocol_for(session.algorithm_selected)
                message = (
                    f"{protocol.name} protocol complete ({protocol.max_doses} doses); "
                    "recheck BP, a high reading escalates"
                )
                result.warnings.append(message)
                self._audit(db, actor, result, "protocol_exhausted", session.id,
                            algorithm=protocol.algorithm.value, doses_given=session.current_step)
                logger.info("Protocol exhausted for session %s", session.id)
                return

            dose = MedicationDose(
                id=generate_uuid(),
                patient_id=self.patient_id,
                emergency_session_id=session.id,
                algorithm=session.algorithm_selected,
                dose_number=step.step,
                medication_name=step.medication,
                dose=step.dose,
                route=step.route,
                wait_minutes=step.wait_minutes,
                ordered_by=actor.id,
                ordered_at=self.clock(),
            )
            db.add(dose)
            session.current_step = step.step
            db.flush()
            result.medication = dose
            result.notifications.append(notices.medication_ordered(patient, step.label))
            self._audit(
                db, actor, result, "medication_ordered", session.id,
                medication_id=dose.id, dose_number=step.step, label=step.label,
            )
            if administer_now:
                self._administer(db, patient, actor, result, dose)

        return self._run("order_next_dose", actor, apply)

    def administer_medication(self, actor, medication_id: str) -> OperationResult:

        def apply(db, patient, actor, result):
            dose = self.store.get_medication(db, medication_id)
            if dose is None or dose.patient_id != self.patient_id:
                raise MedicationNotFoundError(medication_id)
            session = self.store.get_session(db, dose.emergency_session_id)
            check_can_administer(dose, session)
            result.session = session
            self._administer(db, patient, actor, result, dose)

        return self._run("administer_medication", actor, apply)

    def _administer(self, db, patient, actor, result, dose: MedicationDose) -> None:
        now = self.clock()
        dose.administered_by = actor.id
        dose.administered_at = now
        dose.next_bp_check_at = now + timedelta(minutes=dose.wait_minutes)
        db.flush()
        result.medication = dose
        result.notifications.append(notices.medication_administered(patient, dose.label, dose.wait_minutes))
        self._started(result, self.timers.create_medication_wait_timer(db, self.patient_id, dose.wait_minutes))
        self._audit(
            db, actor, result, "medication_administered", dose.emergency_session_id,
            medication_id=dose.id, dose_number=dose.dose_number, label=dose.label,
            next_bp_check_at=dose.next_bp_check_at.isoformat(),
        )

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def focus_session(self, session_id: Optional[str] = None) -> dict:
        return self.context.focus(session_id)

    def unfocus_session(self) -> None:
        self.context.unfocus()

    def expired_timers(self) -> List[Timer]:
        """Timers of this case that expired since the last poll; focus and unfocus start over."""
        return self.context.expired_timers()

    def patient(self):
        with self.store.reader() as db:
            patient = self.store.get_patient(db, self.patient_id)
        if patient is None:
            raise PatientNotFoundError(self.patient_id)
        return patient

    def current_session(self) -> Optional[EmergencySession]:
        """The active session, else the most recent closed one."""
        with self.store.reader() as db:
            return self.store.active_session(db, self.patient_id) or self.store.latest_session(db, self.patient_id)

    def active_timer(self) -> Optional[Timer]:
        with self.store.reader() as db:
            return self.timers.get_active_timer(db, self.patient_id)

    def readings(self, limit: Optional[int] = None) -> List[BloodPressureReading]:
        with self.store.reader() as db:
            return self.store.recent_readings(db, self.patient_id, limit)

    def medications(self, session_id: Optional[str] = None) -> List[MedicationDose]:
        with self.store.reader() as db:
            if session_id:
                return self.store.session_medications(db, session_id)
            return self.store.patient_medications(db, self.patient_id)

    def workflow_state(self) -> WorkflowState:
        with self.store.reader() as db:
            patient = self.store.get_patient(db, self.patient_id)
            if patient is None:
                raise PatientNotFoundError(self.patient_id)
            session = self.store.active_session(db, self.patient_id) or self.store.latest_session(db, self.patient_id)
            readings = self.store.recent_readings(db, self.patient_id)
            medications = self.store.session_medications(db, session.id) if session else []
        return describe_workflow(
            session, readings, medications, bool(patient.has_asthma), self.clock(),
            recheck_minutes=self.timers.recheck_minutes,
        )

    def audit_trail(self):
        with self.store.reader() as db:
            return self.store.audit_trail(db, self.patient_id)


class WorkflowRegistry:
    """
    One orchestrator per case, created on first use for a registered patient.

    Orchestrators untouched for ``idle_seconds`` with no work in flight and no
    observer are dropped when a new case is created; state lives in the
    store, so a dropped case is rebuilt on its next use.
    """

    def __init__(
        self,
        store: WorkflowStore,
        dispatcher: NotificationDispatcher,
        feed: Optional[ChangeFeed] = None,
        clock: Callable[[], datetime] = utcnow,
        idle_seconds: float = settings.REGISTRY_IDLE_SECONDS,
        **options,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.feed = feed
        self.clock = clock
        self.idle_timeout = timedelta(seconds=idle_seconds)
        self.options = options
        self._orchestrators: Dict[str, WorkflowOrchestrator] = {}
        self._lock = threading.Lock()

    def for_patient(self, patient_id: str) -> WorkflowOrchestrator:
        with self._lock:
            orchestrator = self._orchestrators.get(patient_id)
            if orchestrator is None:
                with self.store.reader() as db:
                    if self.store.get_patient(db, patient_id) is None:
                        raise PatientNotFoundError(patient_id)
                self._prune_idle()
                orchestrator = WorkflowOrchestrator(
                    patient_id,
                    self.store,
                    self.dispatcher,
                    feed=self.feed,
                    clock=self.clock,
                    **self.options,
                )
                self._orchestrators[patient_id] = orchestrator
            orchestrator.last_used = self.clock()
            return orchestrator

    def _prune_idle(self) -> List[str]:
        cutoff = self.clock() - self.idle_timeout
        evicted = [
            pid for pid, orchestrator in self._orchestrators.items()
            if orchestrator.last_used <= cutoff and orchestrator.is_idle
        ]
        for pid in evicted:
            del self._orchestrators[pid]
        if evicted:
            logger.debug("Dropped %d idle case(s) from the registry", len(evicted))
        return evicted

    def prune_idle(self) -> List[str]:
        """Drop idle orchestrators now; returns the evicted patient ids."""
        with self._lock:
            return self._prune_idle()

    def discard(self, patient_id: str) -> None:
        with self._lock:
            orchestrator = self._orchestrators.pop(patient_id, None)
        if orchestrator is not None:
            orchestrator.unfocus_session()

    def __contains__(self, patient_id: str) -> bool:
        return patient_id in self._orchestrators

    def __len__(self) -> int:
        return len(self._orchestrators)

    def on_timer_expired(self, timer: Timer) -> None:
        """Expiry callback for TimerExpiryWatcher: audit once, then alert."""
        with self.store.unit_of_work("timer_expired") as db:
            self.store.audit(
                db, SYSTEM_ACTOR_ID, "timer_expired",
                patient_id=timer.patient_id,
                timestamp=self.clock(),
                timer_id=timer.id,
                timer_type=timer.type,
                duration_minutes=timer.duration_minutes,
            )
        self.dispatcher.dispatch([notices.timer_expired(timer)])


def build_registry(session_factory=SessionLocal, clock: Callable[[], datetime] = utcnow) -> WorkflowRegistry:
    """Registry wired to the notifications table, the push webhook and a change feed."""
    store = WorkflowStore(session_factory)
    feed = ChangeFeed()
    feed.attach(session_factory)
    dispatcher = NotificationDispatcher([
        DatabaseNotificationSink(session_factory),
        WebhookNotificationSink(),
    ])
    return WorkflowRegistry(store, dispatcher, feed=feed, clock=clock)


_registry: Optional[WorkflowRegistry] = None
_registry_lock = threading.Lock()


def get_registry() -> WorkflowRegistry:
    global _registry
    with _registry_lock:
        if _registry is None:
            _registry = build_registry()
        return _registry


def set_registry(registry: Optional[WorkflowRegistry]) -> None:
    """Replace the process-wide registry (None rebuilds it lazily)."""
    global _registry
    with _registry_lock:
        _registry = registry

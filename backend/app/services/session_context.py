"""
Per-case observer state: the focused patient, their session, readings,
medications and active timer.

Change events only mark the context stale; the next read reloads everything
from the store, so duplicated or reordered events cannot make it diverge.
"""
import logging
import threading
from datetime import datetime
from typing import Callable, List, Optional

from ..core.exceptions import PatientNotFoundError, SessionNotFoundError
from ..models.base import utcnow
from ..models.timer import Timer
from .change_feed import ChangeEvent, ChangeFeed, Subscription
from .session_machine import WorkflowState, describe_workflow
from .store import WorkflowStore
from .timer_service import TimerService
from .timer_watcher import TimerExpiryWatcher

logger = logging.getLogger(__name__)

OBSERVED_TABLES = ("bp_readings", "medications", "emergency_sessions", "timers", "patients")


class SessionContext:

    def __init__(
        self,
        patient_id: str,
        store: WorkflowStore,
        feed: Optional[ChangeFeed] = None,
        clock: Callable[[], datetime] = utcnow,
        watcher: Optional[TimerExpiryWatcher] = None,
    ):
        self.patient_id = patient_id
        self.store = store
        self.feed = feed
        self.clock = clock
        self.watcher = watcher
        self.timers = TimerService(clock=clock)
        self.reload_count = 0

        self._lock = threading.Lock()
        self._subscription: Optional[Subscription] = None
        self._focused_session_id: Optional[str] = None
        self._focused = False
        self._stale = True
        self._clear()

    def _clear(self) -> None:
        self._patient = None
        self._session = None
        self._readings: List = []
        self._medications: List = []
        self._timer: Optional[Timer] = None

    # ── Lifecycle ────────────────────────────────────────────────────────────

    @property
    def is_focused(self) -> bool:
        return self._focused

    def focus(self, session_id: Optional[str] = None) -> dict:
        """
        Attach to a case. With ``session_id`` the context follows that session
        even after it is closed; otherwise it follows the patient's latest session.
        """
        if session_id is not None:
            with self.store.reader() as db:
                session = self.store.get_session(db, session_id)
            if session is None or session.patient_id != self.patient_id:
                raise SessionNotFoundError(session_id)

        self.unfocus()
        self._focused_session_id = session_id
        self._focused = True
        if self.feed is not None:
            self._subscription = self.feed.subscribe(
                self._on_change, tables=OBSERVED_TABLES, patient_id=self.patient_id,
            )
        if self.watcher is not None:
            self.watcher.reset(patient_id=self.patient_id)
        self.mark_stale()
        logger.debug("Focused case %s (session=%s)", self.patient_id, session_id or "latest")
        return self.snapshot()

    def unfocus(self) -> None:
        """Detach from the change feed and drop all derived state."""
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        if self.watcher is not None:
            self.watcher.reset()
        with self._lock:
            self._focused_session_id = None
            self._focused = False
            self._clear()
            self._stale = True

    def _on_change(self, change: ChangeEvent) -> None:
        self.mark_stale()

    def mark_stale(self) -> None:
        with self._lock:
            self._stale = True

    @property
    def is_stale(self) -> bool:
        return self._stale

    # ── Derived state ────────────────────────────────────────────────────────

    def reload(self) -> None:
        with self.store.reader() as db:
            patient = self.store.get_patient(db, self.patient_id)
            if patient is None:
                raise PatientNotFoundError(self.patient_id)
            if self._focused_session_id:
                session = self.store.get_session(db, self._focused_session_id)
            else:
                session = self.store.latest_session(db, self.patient_id)
            readings = self.store.recent_readings(db, self.patient_id)
            medications = self.store.session_medications(db, session.id) if session else []
            timer = self.timers.get_active_timer(db, self.patient_id)

        with self._lock:
            self._patient = patient
            self._session = session
            self._readings = readings
            self._medications = medications
            self._timer = timer
            self._stale = False
            self.reload_count += 1

    def _ensure_fresh(self) -> None:
        if self._stale:
            self.reload()

    @property
    def patient(self):
        self._ensure_fresh()
        return self._patient

    @property
    def session(self):
        self._ensure_fresh()
        return self._session

    @property
    def readings(self) -> List:
        """Newest first."""
        self._ensure_fresh()
        return list(self._readings)

    @property
    def medications(self) -> List:
        self._ensure_fresh()
        return list(self._medications)

    @property
    def active_timer(self) -> Optional[Timer]:
        self._ensure_fresh()
        return self._timer

    def workflow_state(self) -> WorkflowState:
        self._ensure_fresh()
        return describe_workflow(
            self._session,
            self._readings,
            self._medications,
            bool(self._patient.has_asthma),
            self.clock(),
            recheck_minutes=self.timers.recheck_minutes,
        )

    def snapshot(self) -> dict:
        self._ensure_fresh()
        timer = self._timer
        return {
            "patient": self._patient,
            "session": self._session,
            "readings": list(self._readings),
            "medications": list(self._medications),
            "active_timer": timer,
            "timer_remaining_seconds": self.timers.time_remaining(timer) if timer else None,
        }

    def expired_timers(self) -> List[Timer]:
        """Timers of this case that expired since the last poll (each reported once)."""
        if self.watcher is None:
            return []
        fired = self.watcher.check_once()
        if fired:
            self.mark_stale()
        return fired

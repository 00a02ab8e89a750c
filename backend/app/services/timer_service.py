"""
Timer Manager: protocol deadlines (recheck, administration deadline, medication wait).

Invariant: creating a timer first deactivates every active timer of the patient,
so at most one timer is effective per patient. All methods run inside the
caller's SQLAlchemy session; the caller owns the transaction.
"""
import logging
import warnings
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import DataIntegrityWarning
from ..models.base import generate_uuid, utcnow
from ..models.timer import Timer, TimerType
from .notification_dispatcher import NotificationRequest, timer_started

logger = logging.getLogger(__name__)


@dataclass
class StartedTimer:
    timer: Timer
    notification: NotificationRequest


class TimerService:

    def __init__(
        self,
        clock: Callable[[], datetime] = utcnow,
        recheck_minutes: int = settings.RECHECK_TIMER_MINUTES,
        deadline_minutes: int = settings.ADMINISTRATION_DEADLINE_MINUTES,
    ):
        self.clock = clock
        self.recheck_minutes = recheck_minutes
        self.deadline_minutes = deadline_minutes

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_recheck_timer(self, db: Session, patient_id: str) -> StartedTimer:
        """Confirmatory reading window after a first high BP."""
        return self._start(db, patient_id, TimerType.BP_RECHECK, self.recheck_minutes)

    def create_administration_deadline_timer(self, db: Session, patient_id: str) -> StartedTimer:
        """First-dose administration window after emergency confirmation."""
        return self._start(db, patient_id, TimerType.ADMINISTRATION_DEADLINE, self.deadline_minutes)

    def create_medication_wait_timer(self, db: Session, patient_id: str, wait_minutes: int) -> StartedTimer:
        if wait_minutes <= 0:
            raise ValueError("Medication wait must be a positive number of minutes")
        return self._start(db, patient_id, TimerType.MEDICATION_WAIT, wait_minutes)

    def _start(self, db: Session, patient_id: str, timer_type: str, minutes: int) -> StartedTimer:
        superseded = self.deactivate_all_timers(db, patient_id)
        now = self.clock()
        timer = Timer(
            id=generate_uuid(),
            patient_id=patient_id,
            type=timer_type,
            started_at=now,
            duration_minutes=minutes,
            expires_at=now + timedelta(minutes=minutes),
            is_active=True,
        )
        db.add(timer)
        db.flush()
        logger.info(
            "Started %s timer %s for patient %s (%d min, superseded %d)",
            timer_type, timer.id, patient_id, minutes, superseded,
        )
        return StartedTimer(timer=timer, notification=timer_started(timer))

    # ------------------------------------------------------------------
    # Deactivation (idempotent)
    # ------------------------------------------------------------------

    def deactivate_timer(self, db: Session, timer_id: str) -> bool:
        """Returns True if the timer was active before the call."""
        timer = db.query(Timer).filter(Timer.id == timer_id).first()
        if timer is None:
            logger.debug("deactivate_timer: unknown timer %s", timer_id)
            return False
        if not timer.is_active:
            return False
        timer.is_active = False
        timer.deactivated_at = self.clock()
        db.flush()
        return True

    def deactivate_all_timers(self, db: Session, patient_id: str) -> int:
        """Returns the number of timers that were deactivated."""
        now = self.clock()
        active = self.get_active_timers(db, patient_id)
        for timer in active:
            timer.is_active = False
            timer.deactivated_at = now
        if active:
            db.flush()
        return len(active)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_active_timers(self, db: Session, patient_id: str) -> List[Timer]:
        return (
            db.query(Timer)
            .filter(Timer.patient_id == patient_id, Timer.is_active.is_(True))
            .order_by(Timer.expires_at)
            .all()
        )

    def get_active_timer(self, db: Session, patient_id: str) -> Optional[Timer]:
        """
        The patient's effective timer. More than one active timer breaks the
        supersession invariant; the soonest-expiring one wins and the rest are reported.
        """
        active = self.get_active_timers(db, patient_id)
        if not active:
            return None
        if len(active) > 1:
            message = (
                f"Patient {patient_id} has {len(active)} active timers; "
                f"using soonest-expiring {active[0].id}"
            )
            logger.warning(message)
            warnings.warn(message, DataIntegrityWarning, stacklevel=2)
        return active[0]

    def time_remaining(self, timer: Timer) -> int:
        """Seconds until expiry; negative means overdue."""
        return timer.remaining_seconds(self.clock())

    def is_expired(self, timer: Timer) -> bool:
        """Active and its full declared duration has elapsed."""
        return bool(timer.is_active) and timer.has_elapsed(self.clock())

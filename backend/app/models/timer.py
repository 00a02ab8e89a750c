from datetime import datetime, timedelta

from sqlalchemy import Column, String, Integer, Boolean, DateTime, ForeignKey
from .base import Base, generate_uuid, utcnow


class TimerType:
    BP_RECHECK = "bp_recheck"
    MEDICATION_WAIT = "medication_wait"
    ADMINISTRATION_DEADLINE = "administration_deadline"

    ALL = [BP_RECHECK, MEDICATION_WAIT, ADMINISTRATION_DEADLINE]


class Timer(Base):
    """
    Protocol deadline. Lifecycle is active -> deactivated; there is no stored
    "expired" state, expiry is computed from started_at + duration on read.
    """
    __tablename__ = "timers"

    id = Column(String, primary_key=True, default=generate_uuid)
    patient_id = Column(String, ForeignKey("patients.id"), nullable=False, index=True)
    type = Column(String(30), nullable=False)
    started_at = Column(DateTime, nullable=False, default=utcnow)
    duration_minutes = Column(Integer, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    deactivated_at = Column(DateTime, nullable=True)

    @property
    def duration(self) -> timedelta:
        return timedelta(minutes=self.duration_minutes)

    def remaining_seconds(self, now: datetime) -> int:
        """Seconds until expiry; negative when overdue."""
        return int((self.expires_at - now).total_seconds())

    def has_elapsed(self, now: datetime) -> bool:
        return now - self.started_at >= self.duration

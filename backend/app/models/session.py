from sqlalchemy import Column, String, Integer, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from .base import Base, TimestampMixin, generate_uuid, utcnow


class SessionStatus:
    ACTIVE = "active"
    RESOLVED = "resolved"
    ESCALATED = "escalated"

    ALL = [ACTIVE, RESOLVED, ESCALATED]


class EmergencySession(Base, TimestampMixin):
    """One hypertensive-emergency episode. Historical record, never deleted."""
    __tablename__ = "emergency_sessions"

    id = Column(String, primary_key=True, default=generate_uuid)
    patient_id = Column(String, ForeignKey("patients.id"), nullable=False, index=True)
    initiated_by = Column(String(100), nullable=False)
    initiated_at = Column(DateTime, nullable=False, default=utcnow)
    algorithm_selected = Column(String(20), nullable=True)
    current_step = Column(Integer, nullable=False, default=0)  # doses ordered so far
    status = Column(String(20), nullable=False, default=SessionStatus.ACTIVE, index=True)

    resolved_at = Column(DateTime, nullable=True)
    escalated_at = Column(DateTime, nullable=True)
    acknowledged_at = Column(DateTime, nullable=True)
    acknowledged_by = Column(String(100), nullable=True)

    patient = relationship("Patient", back_populates="sessions")
    medications = relationship("MedicationDose", back_populates="session", order_by="MedicationDose.dose_number")

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

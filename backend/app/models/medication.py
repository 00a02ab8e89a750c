from sqlalchemy import Column, String, Integer, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from .base import Base, TimestampMixin, generate_uuid, utcnow


class MedicationRoute:
    IV = "IV"
    PO = "PO"


class MedicationDose(Base, TimestampMixin):
    """A dose ordered for a session; updated exactly once when administered."""
    __tablename__ = "medications"

    id = Column(String, primary_key=True, default=generate_uuid)
    patient_id = Column(String, ForeignKey("patients.id"), nullable=False, index=True)
    emergency_session_id = Column(String, ForeignKey("emergency_sessions.id"), nullable=False, index=True)
    algorithm = Column(String(20), nullable=False)
    dose_number = Column(Integer, nullable=False)  # 1-based position in the dose sequence
    medication_name = Column(String(50), nullable=False)
    dose = Column(String(20), nullable=False)  # e.g. "20mg", "5-10mg"
    route = Column(String(5), nullable=False)
    wait_minutes = Column(Integer, nullable=False)

    ordered_by = Column(String(100), nullable=False)
    ordered_at = Column(DateTime, nullable=False, default=utcnow)
    administered_by = Column(String(100), nullable=True)
    administered_at = Column(DateTime, nullable=True)
    next_bp_check_at = Column(DateTime, nullable=True)

    session = relationship("EmergencySession", back_populates="medications")

    @property
    def is_administered(self) -> bool:
        return self.administered_at is not None

    @property
    def label(self) -> str:
        return f"{self.medication_name} {self.dose} {self.route}"

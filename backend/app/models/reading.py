from sqlalchemy import Column, String, Integer, Boolean, Text, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from .base import Base, generate_uuid, utcnow


class BloodPressureReading(Base):
    """Append-only BP observation. Never updated or deleted by the workflow."""
    __tablename__ = "bp_readings"

    id = Column(String, primary_key=True, default=generate_uuid)
    patient_id = Column(String, ForeignKey("patients.id"), nullable=False, index=True)
    systolic = Column(Integer, nullable=False)
    diastolic = Column(Integer, nullable=False)
    timestamp = Column(DateTime, nullable=False, default=utcnow, index=True)
    recorded_by = Column(String(100), nullable=False)  # User ID
    is_positioned_correctly = Column(Boolean, default=False, nullable=False)
    notes = Column(Text, nullable=True)

    patient = relationship("Patient", back_populates="readings")

    @property
    def display(self) -> str:
        return f"{self.systolic}/{self.diastolic}"

import random
import string

from sqlalchemy import Column, String, Boolean, Text
from sqlalchemy.orm import relationship
from .base import Base, TimestampMixin, generate_uuid


def generate_anonymous_identifier() -> str:
    """Short identifier like ``PT-A7K3``; no PHI is stored."""
    code = "".join(random.choices(string.ascii_uppercase + string.digits, k=4))
    return f"PT-{code}"


class Patient(Base, TimestampMixin):
    __tablename__ = "patients"

    id = Column(String, primary_key=True, default=generate_uuid)
    anonymous_identifier = Column(String(20), nullable=False, index=True, default=generate_anonymous_identifier)
    room_number = Column(String(20), nullable=True)
    has_asthma = Column(Boolean, default=False, nullable=False)
    # Mirrors the session currently owning the case; cleared on resolution
    current_emergency_session_id = Column(String, nullable=True, index=True)
    notes = Column(Text, nullable=True)

    readings = relationship("BloodPressureReading", back_populates="patient", order_by="BloodPressureReading.timestamp")
    sessions = relationship("EmergencySession", back_populates="patient")

from sqlalchemy import Column, String, DateTime, JSON, ForeignKey
from .base import Base, generate_uuid, utcnow


class AuditLog(Base):
    """Append-only compliance trail: one row per state-changing action."""
    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=generate_uuid)
    timestamp = Column(DateTime, nullable=False, default=utcnow, index=True)
    user_id = Column(String(100), nullable=False, index=True)
    action_type = Column(String(50), nullable=False, index=True)
    patient_id = Column(String, ForeignKey("patients.id"), nullable=True, index=True)
    session_id = Column(String, nullable=True)
    details = Column(JSON, nullable=False, default=dict)

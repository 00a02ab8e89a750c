from sqlalchemy import Column, String, Text, DateTime
from .base import Base, generate_uuid, utcnow


class NotificationPriority:
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"
    STAT = "stat"

    ALL = [INFO, WARNING, CRITICAL, STAT]


class Notification(Base):
    """In-app notification row; ``recipient_role`` NULL means broadcast."""
    __tablename__ = "notifications"

    id = Column(String, primary_key=True, default=generate_uuid)
    type = Column(String(10), nullable=False, default=NotificationPriority.INFO)
    event = Column(String(50), nullable=False)
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    recipient_role = Column(String(20), nullable=True, index=True)
    patient_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    acknowledged_at = Column(DateTime, nullable=True)
    acknowledged_by = Column(String(100), nullable=True)

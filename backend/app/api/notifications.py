"""Notifications API: role inbox, acknowledge, unacknowledged count."""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import or_
from sqlalchemy.orm import Session
from typing import List, Optional
from pydantic import BaseModel, ConfigDict
from datetime import datetime

from ..models.base import get_db, utcnow
from ..models.notification import Notification
from ..core.security import Actor, get_current_user

router = APIRouter(prefix="/notifications", tags=["notifications"])


class NotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: str
    event: str
    title: str
    message: str
    recipient_role: Optional[str]
    patient_id: Optional[str]
    created_at: datetime
    acknowledged_at: Optional[datetime]
    acknowledged_by: Optional[str]


def _inbox(db: Session, role: str):
    """Notifications addressed to ``role`` plus broadcasts."""
    return db.query(Notification).filter(
        or_(Notification.recipient_role == role, Notification.recipient_role.is_(None))
    )


@router.get("/", response_model=List[NotificationResponse])
def list_notifications(
    patient_id: Optional[str] = None,
    include_acknowledged: bool = False,
    limit: int = 100,
    db: Session = Depends(get_db),
    current_user: Actor = Depends(get_current_user),
):
    """The caller's role inbox, newest first."""
    q = _inbox(db, current_user.role)
    if patient_id:
        q = q.filter(Notification.patient_id == patient_id)
    if not include_acknowledged:
        q = q.filter(Notification.acknowledged_at.is_(None))
    return q.order_by(Notification.created_at.desc()).limit(limit).all()


@router.patch("/{notification_id}/acknowledge", response_model=NotificationResponse)
def acknowledge_notification(
    notification_id: str,
    db: Session = Depends(get_db),
    current_user: Actor = Depends(get_current_user),
):
    notification = _inbox(db, current_user.role).filter(Notification.id == notification_id).first()
    if not notification:
        raise HTTPException(status_code=404, detail="Notification not found")
    if notification.acknowledged_at is None:
        notification.acknowledged_at = utcnow()
        notification.acknowledged_by = current_user.id
        db.commit()
        db.refresh(notification)
    return notification


@router.get("/unacknowledged-count")
def unacknowledged_count(
    db: Session = Depends(get_db),
    current_user: Actor = Depends(get_current_user),
):
    count = _inbox(db, current_user.role).filter(Notification.acknowledged_at.is_(None)).count()
    return {"unacknowledged_count": count}

"""Admin endpoints: audit log viewer."""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict
from datetime import datetime

from ..models.base import get_db
from ..models.audit import AuditLog
from ..core.security import require_permission
from ..core.permissions import PERM_VIEW_AUDIT_LOGS

router = APIRouter(prefix="/admin", tags=["admin"])


class AuditLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    timestamp: datetime
    user_id: str
    action_type: str
    patient_id: Optional[str]
    session_id: Optional[str]
    details: Dict[str, Any]


@router.get("/audit-logs", response_model=List[AuditLogResponse])
def get_audit_logs(
    patient_id: Optional[str] = Query(None, description="Filter by patient ID"),
    user_id: Optional[str] = Query(None, description="Filter by user ID"),
    action_type: Optional[str] = Query(None, description="Filter by action type"),
    since: Optional[datetime] = Query(None, description="Filter records after this datetime"),
    until: Optional[datetime] = Query(None, description="Filter records before this datetime"),
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    _viewer=Depends(require_permission(PERM_VIEW_AUDIT_LOGS)),
):
    """Searchable compliance trail, filterable by patient, user, date range and action type."""
    q = db.query(AuditLog)
    if patient_id:
        q = q.filter(AuditLog.patient_id == patient_id)
    if user_id:
        q = q.filter(AuditLog.user_id == user_id)
    if action_type:
        q = q.filter(AuditLog.action_type == action_type)
    if since:
        q = q.filter(AuditLog.timestamp >= since)
    if until:
        q = q.filter(AuditLog.timestamp <= until)
    return q.order_by(AuditLog.timestamp.desc()).offset(skip).limit(limit).all()

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from ..models.base import get_db, generate_uuid
from ..models.patient import Patient, generate_anonymous_identifier
from ..core.security import Actor, require_permission
from ..core.permissions import PERM_MANAGE_PATIENTS, PERM_VIEW_PATIENTS

router = APIRouter(prefix="/patients", tags=["patients"])


class PatientCreate(BaseModel):
    anonymous_identifier: Optional[str] = Field(None, max_length=20)
    room_number: Optional[str] = Field(None, max_length=20)
    has_asthma: bool = False
    notes: Optional[str] = None


class PatientResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    anonymous_identifier: str
    room_number: Optional[str]
    has_asthma: bool
    current_emergency_session_id: Optional[str]
    notes: Optional[str]
    created_at: datetime


@router.post("/", response_model=PatientResponse, status_code=status.HTTP_201_CREATED)
def create_patient(
    patient_in: PatientCreate,
    db: Session = Depends(get_db),
    current_user: Actor = Depends(require_permission(PERM_MANAGE_PATIENTS)),
):
    identifier = patient_in.anonymous_identifier or generate_anonymous_identifier()
    existing = db.query(Patient).filter(Patient.anonymous_identifier == identifier).first()
    if existing:
        raise HTTPException(status_code=400, detail="Patient identifier already exists")
    patient = Patient(
        id=generate_uuid(),
        anonymous_identifier=identifier,
        room_number=patient_in.room_number,
        has_asthma=patient_in.has_asthma,
        notes=patient_in.notes,
    )
    db.add(patient)
    db.commit()
    db.refresh(patient)
    return patient


@router.get("/", response_model=List[PatientResponse])
def list_patients(
    in_emergency: Optional[bool] = None,
    skip: int = 0,
    limit: int = 50,
    db: Session = Depends(get_db),
    current_user: Actor = Depends(require_permission(PERM_VIEW_PATIENTS)),
):
    """List patients; ``in_emergency`` filters on an open emergency session."""
    q = db.query(Patient)
    if in_emergency is True:
        q = q.filter(Patient.current_emergency_session_id.isnot(None))
    elif in_emergency is False:
        q = q.filter(Patient.current_emergency_session_id.is_(None))
    return q.order_by(Patient.created_at).offset(skip).limit(limit).all()


@router.get("/{patient_id}", response_model=PatientResponse)
def get_patient(
    patient_id: str,
    db: Session = Depends(get_db),
    current_user: Actor = Depends(require_permission(PERM_VIEW_PATIENTS)),
):
    patient = db.query(Patient).filter(Patient.id == patient_id).first()
    if not patient:
        raise HTTPException(status_code=404, detail="Patient not found")
    return patient

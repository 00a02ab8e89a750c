"""Emergency workflow endpoints: readings, session lifecycle, treatment, timer."""
from fastapi import APIRouter, Depends, status
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime

from ..core.security import Actor, get_current_user, require_permission
from ..core.exceptions import NoActiveSessionError
from ..core.permissions import (
    PERM_ACKNOWLEDGE_ESCALATION,
    PERM_ADMINISTER_MEDICATION,
    PERM_ESCALATE_SESSION,
    PERM_ORDER_MEDICATION,
    PERM_RECORD_READINGS,
    PERM_RESOLVE_SESSION,
    PERM_SELECT_ALGORITHM,
    PERM_START_SESSION,
    PERM_VIEW_PATIENTS,
)
from ..services.clinical_rules import MedicationAlgorithm, protocol_steps
from ..services.workflow import OperationResult, WorkflowRegistry, get_registry

router = APIRouter(prefix="/patients", tags=["emergency-workflow"])
protocols_router = APIRouter(prefix="/protocols", tags=["protocols"])


# ── Request / Response schemas ──────────────────────────────────────────────

class ReadingCreate(BaseModel):
    systolic: int = Field(..., gt=0, le=300)
    diastolic: int = Field(..., gt=0, le=200)
    positioning_confirmed: bool = False
    notes: Optional[str] = None


class AlgorithmSelect(BaseModel):
    algorithm: MedicationAlgorithm


class DoseOrder(BaseModel):
    administer_now: bool = False


class ReasonRequest(BaseModel):
    reason: Optional[str] = None


class AcknowledgeRequest(BaseModel):
    session_id: Optional[str] = None


class ReadingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    systolic: int
    diastolic: int
    timestamp: datetime
    recorded_by: str
    is_positioned_correctly: bool
    notes: Optional[str]


class SessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    patient_id: str
    initiated_by: str
    initiated_at: datetime
    algorithm_selected: Optional[str]
    current_step: int
    status: str
    resolved_at: Optional[datetime]
    escalated_at: Optional[datetime]
    acknowledged_at: Optional[datetime]
    acknowledged_by: Optional[str]


class MedicationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    emergency_session_id: str
    algorithm: str
    dose_number: int
    medication_name: str
    dose: str
    route: str
    wait_minutes: int
    ordered_by: str
    ordered_at: datetime
    administered_by: Optional[str]
    administered_at: Optional[datetime]
    next_bp_check_at: Optional[datetime]


class TimerResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    type: str
    started_at: datetime
    duration_minutes: int
    expires_at: datetime
    is_active: bool


class OperationResponse(BaseModel):
    operation: str
    patient_id: str
    outcome: Optional[str] = None
    stage: Optional[str] = None
    session: Optional[SessionResponse] = None
    reading: Optional[ReadingResponse] = None
    medication: Optional[MedicationResponse] = None
    timer: Optional[TimerResponse] = None
    warnings: List[str] = []
    notifications: List[str] = []
    audit_actions: List[str] = []


class WorkflowResponse(BaseModel):
    stage: str
    next_action: str
    can_proceed: bool
    requires_escalation: bool
    next_action_time: Optional[datetime]
    warnings: List[str]


class ActiveTimerResponse(BaseModel):
    timer: Optional[TimerResponse]
    remaining_seconds: Optional[int]
    expired: bool


class ProtocolStepResponse(BaseModel):
    step: int
    label: str
    wait_minutes: int


def _operation_response(result: OperationResult) -> OperationResponse:
    def dump(schema, obj):
        return schema.model_validate(obj) if obj is not None else None

    decision = result.decision
    return OperationResponse(
        operation=result.operation,
        patient_id=result.patient_id,
        outcome=decision.outcome.value if decision else None,
        stage=decision.stage.value if decision else None,
        session=dump(SessionResponse, result.session),
        reading=dump(ReadingResponse, result.reading),
        medication=dump(MedicationResponse, result.medication),
        timer=dump(TimerResponse, result.timer),
        warnings=result.warnings,
        notifications=[n.event for n in result.notifications],
        audit_actions=result.audit_actions,
    )


# ── Readings ─────────────────────────────────────────────────────────────────

@router.post("/{patient_id}/readings", response_model=OperationResponse, status_code=status.HTTP_201_CREATED)
def record_reading(
    patient_id: str,
    reading_in: ReadingCreate,
    registry: WorkflowRegistry = Depends(get_registry),
    current_user: Actor = Depends(require_permission(PERM_RECORD_READINGS)),
):
    """Record a BP reading and apply whatever protocol transition it triggers."""
    result = registry.for_patient(patient_id).record_bp_reading(
        current_user,
        reading_in.systolic,
        reading_in.diastolic,
        positioning_confirmed=reading_in.positioning_confirmed,
        notes=reading_in.notes,
    )
    return _operation_response(result)


@router.get("/{patient_id}/readings", response_model=List[ReadingResponse])
def list_readings(
    patient_id: str,
    limit: Optional[int] = None,
    registry: WorkflowRegistry = Depends(get_registry),
    current_user: Actor = Depends(require_permission(PERM_VIEW_PATIENTS)),
):
    orchestrator = registry.for_patient(patient_id)
    orchestrator.patient()
    return orchestrator.readings(limit)


# ── Session lifecycle ────────────────────────────────────────────────────────

@router.post("/{patient_id}/session", response_model=OperationResponse, status_code=status.HTTP_201_CREATED)
def start_session(
    patient_id: str,
    registry: WorkflowRegistry = Depends(get_registry),
    current_user: Actor = Depends(require_permission(PERM_START_SESSION)),
):
    return _operation_response(registry.for_patient(patient_id).start_session(current_user))


@router.get("/{patient_id}/session", response_model=SessionResponse)
def get_session(
    patient_id: str,
    registry: WorkflowRegistry = Depends(get_registry),
    current_user: Actor = Depends(require_permission(PERM_VIEW_PATIENTS)),
):
    """The active session, or the most recent closed one."""
    orchestrator = registry.for_patient(patient_id)
    orchestrator.patient()
    session = orchestrator.current_session()
    if session is None:
        raise NoActiveSessionError(patient_id)
    return session


@router.get("/{patient_id}/session/medications", response_model=List[MedicationResponse])
def list_medications(
    patient_id: str,
    registry: WorkflowRegistry = Depends(get_registry),
    current_user: Actor = Depends(require_permission(PERM_VIEW_PATIENTS)),
):
    orchestrator = registry.for_patient(patient_id)
    orchestrator.patient()
    session = orchestrator.current_session()
    if session is None:
        return []
    return orchestrator.medications(session.id)


@router.get("/{patient_id}/workflow", response_model=WorkflowResponse)
def get_workflow(
    patient_id: str,
    registry: WorkflowRegistry = Depends(get_registry),
    current_user: Actor = Depends(get_current_user),
):
    """Next clinical action for the case, for display surfaces."""
    state = registry.for_patient(patient_id).workflow_state()
    return WorkflowResponse(
        stage=state.stage.value,
        next_action=state.next_action,
        can_proceed=state.can_proceed,
        requires_escalation=state.requires_escalation,
        next_action_time=state.next_action_time,
        warnings=state.warnings,
    )


@router.post("/{patient_id}/session/resolve", response_model=OperationResponse)
def resolve_session(
    patient_id: str,
    body: ReasonRequest = ReasonRequest(),
    registry: WorkflowRegistry = Depends(get_registry),
    current_user: Actor = Depends(require_permission(PERM_RESOLVE_SESSION)),
):
    return _operation_response(registry.for_patient(patient_id).resolve_session(current_user, body.reason))


@router.post("/{patient_id}/session/escalate", response_model=OperationResponse)
def escalate_session(
    patient_id: str,
    body: ReasonRequest = ReasonRequest(),
    registry: WorkflowRegistry = Depends(get_registry),
    current_user: Actor = Depends(require_permission(PERM_ESCALATE_SESSION)),
):
    return _operation_response(registry.for_patient(patient_id).escalate_session(current_user, body.reason))


@router.post("/{patient_id}/session/acknowledge", response_model=OperationResponse)
def acknowledge_session(
    patient_id: str,
    body: AcknowledgeRequest = AcknowledgeRequest(),
    registry: WorkflowRegistry = Depends(get_registry),
    current_user: Actor = Depends(require_permission(PERM_ACKNOWLEDGE_ESCALATION)),
):
    return _operation_response(
        registry.for_patient(patient_id).acknowledge_session(current_user, body.session_id)
    )


# ── Treatment ────────────────────────────────────────────────────────────────

@router.post("/{patient_id}/session/algorithm", response_model=OperationResponse)
def select_algorithm(
    patient_id: str,
    body: AlgorithmSelect,
    registry: WorkflowRegistry = Depends(get_registry),
    current_user: Actor = Depends(require_permission(PERM_SELECT_ALGORITHM)),
):
    return _operation_response(registry.for_patient(patient_id).select_algorithm(current_user, body.algorithm))


@protocols_router.get("/{algorithm}", response_model=List[ProtocolStepResponse])
def get_protocol(
    algorithm: MedicationAlgorithm,
    current_user: Actor = Depends(get_current_user),
):
    """Every dose step of an algorithm, for display."""
    return [
        ProtocolStepResponse(step=s.step, label=s.label, wait_minutes=s.wait_minutes)
        for s in protocol_steps(algorithm)
    ]


@router.post("/{patient_id}/session/doses", response_model=OperationResponse, status_code=status.HTTP_201_CREATED)
def order_dose(
    patient_id: str,
    body: DoseOrder = DoseOrder(),
    registry: WorkflowRegistry = Depends(get_registry),
    current_user: Actor = Depends(require_permission(PERM_ORDER_MEDICATION)),
):
    """Order the next dose of the selected algorithm."""
    result = registry.for_patient(patient_id).order_next_dose(current_user, administer_now=body.administer_now)
    return _operation_response(result)


@router.post("/{patient_id}/session/doses/{dose_id}/administer", response_model=OperationResponse)
def administer_dose(
    patient_id: str,
    dose_id: str,
    registry: WorkflowRegistry = Depends(get_registry),
    current_user: Actor = Depends(require_permission(PERM_ADMINISTER_MEDICATION)),
):
    return _operation_response(registry.for_patient(patient_id).administer_medication(current_user, dose_id))


# ── Timer ────────────────────────────────────────────────────────────────────

@router.get("/{patient_id}/timer", response_model=ActiveTimerResponse)
def get_active_timer(
    patient_id: str,
    registry: WorkflowRegistry = Depends(get_registry),
    current_user: Actor = Depends(require_permission(PERM_VIEW_PATIENTS)),
):
    orchestrator = registry.for_patient(patient_id)
    orchestrator.patient()
    timer = orchestrator.active_timer()
    if timer is None:
        return ActiveTimerResponse(timer=None, remaining_seconds=None, expired=False)
    return ActiveTimerResponse(
        timer=TimerResponse.model_validate(timer),
        remaining_seconds=orchestrator.timers.time_remaining(timer),
        expired=orchestrator.timers.is_expired(timer),
    )


@router.get("/{patient_id}/timer/expired", response_model=List[TimerResponse])
def poll_expired_timers(
    patient_id: str,
    registry: WorkflowRegistry = Depends(get_registry),
    current_user: Actor = Depends(require_permission(PERM_VIEW_PATIENTS)),
):
    """Timers of the case that expired since this case was last polled; each is returned once."""
    orchestrator = registry.for_patient(patient_id)
    orchestrator.patient()
    return orchestrator.expired_timers()

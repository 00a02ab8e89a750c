"""
Emergency session state machine.

    none -> first_high_observed -> confirmed_active -> algorithm_selected
         -> treating(step N) -> resolved | escalated

Everything here is a pure decision over already-loaded rows: which transition a
new BP reading triggers, which operations are legal in the current stage, and the
guidance shown to clinicians. The orchestrator applies the decisions.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional, Sequence

from ..core.exceptions import InvalidTransitionError, NoActiveSessionError
from ..models.session import SessionStatus
from .clinical_rules import (
    BPCategory,
    TARGET_DIASTOLIC_MAX,
    TARGET_DIASTOLIC_MIN,
    TARGET_SYSTOLIC_MAX,
    TARGET_SYSTOLIC_MIN,
    classify_bp,
    contraindication_warnings,
    has_algorithm_failed,
    next_dose,
    protocol_for,
)


class SessionStage(str, Enum):
    NONE = "none"
    FIRST_HIGH_OBSERVED = "first_high_observed"
    CONFIRMED_ACTIVE = "confirmed_active"
    ALGORITHM_SELECTED = "algorithm_selected"
    TREATING = "treating"
    RESOLVED = "resolved"
    ESCALATED = "escalated"


class ReadingOutcome(str, Enum):
    FIRST_HIGH = "first_high"
    AWAITING_RECHECK = "awaiting_recheck"
    CONFIRMED = "confirmed"
    NORMALIZED = "normalized"
    BORDERLINE = "borderline"
    RESOLVED = "resolved"
    ESCALATED = "escalated"
    TIMER_SATISFIED = "timer_satisfied"
    RECORDED = "recorded"


# Audit action type written for each outcome
OUTCOME_AUDIT_ACTIONS = {
    ReadingOutcome.FIRST_HIGH: "first_high_bp_observed",
    ReadingOutcome.AWAITING_RECHECK: "confirmation_gap_insufficient",
    ReadingOutcome.CONFIRMED: "emergency_confirmed",
    ReadingOutcome.NORMALIZED: "bp_normalized",
    ReadingOutcome.BORDERLINE: "bp_recorded_no_action",
    ReadingOutcome.RESOLVED: "bp_controlled_auto_resolved",
    ReadingOutcome.ESCALATED: "algorithm_failure",
    ReadingOutcome.TIMER_SATISFIED: "timer_satisfied_by_reading",
    ReadingOutcome.RECORDED: None,
}


@dataclass(frozen=True)
class ReadingDecision:
    category: BPCategory
    outcome: ReadingOutcome
    stage: SessionStage
    reason: str

    @property
    def audit_action(self) -> Optional[str]:
        return OUTCOME_AUDIT_ACTIONS[self.outcome]


def session_stage(session, latest_category: Optional[BPCategory] = None) -> SessionStage:
    """Stage of a case given its most relevant session (or None) and latest reading."""
    if session is None:
        return SessionStage.FIRST_HIGH_OBSERVED if latest_category == BPCategory.HIGH else SessionStage.NONE
    if session.status == SessionStatus.RESOLVED:
        return SessionStage.RESOLVED
    if session.status == SessionStatus.ESCALATED:
        return SessionStage.ESCALATED
    if not session.algorithm_selected:
        return SessionStage.CONFIRMED_ACTIVE
    if (session.current_step or 0) == 0:
        return SessionStage.ALGORITHM_SELECTED
    return SessionStage.TREATING


def decide_reading(
    systolic: int,
    diastolic: int,
    active_session,
    previous_reading,
    gap: Optional[timedelta],
    has_active_timer: bool,
    min_confirmation_gap: timedelta,
    latest_session=None,
) -> ReadingDecision:
    """
    Transition triggered by a new reading.

    ``previous_reading`` is the reading immediately before the new one and ``gap``
    the time between them; ``active_session`` is the patient's session with
    status=active, if any; ``latest_session`` is the most recent session of any status.
    An escalated case belongs to the receiving clinician: its readings are recorded
    but never confirm a new emergency.
    """
    category = classify_bp(systolic, diastolic)

    if active_session is None and latest_session is not None and latest_session.status == SessionStatus.ESCALATED:
        return ReadingDecision(
            category, ReadingOutcome.RECORDED, SessionStage.ESCALATED,
            "Case escalated; reading recorded for the receiving clinician",
        )

    if active_session is None:
        if category == BPCategory.HIGH:
            previous_high = previous_reading is not None and classify_bp(
                previous_reading.systolic, previous_reading.diastolic
            ) == BPCategory.HIGH
            if not previous_high:
                return ReadingDecision(
                    category, ReadingOutcome.FIRST_HIGH, SessionStage.FIRST_HIGH_OBSERVED,
                    "First high reading; confirmatory recheck required",
                )
            if gap is not None and gap >= min_confirmation_gap:
                return ReadingDecision(
                    category, ReadingOutcome.CONFIRMED, SessionStage.CONFIRMED_ACTIVE,
                    "Two high readings separated by the confirmation interval",
                )
            return ReadingDecision(
                category, ReadingOutcome.AWAITING_RECHECK, SessionStage.FIRST_HIGH_OBSERVED,
                "Previous high reading is too recent to confirm an emergency",
            )
        if category == BPCategory.IN_TARGET:
            return ReadingDecision(category, ReadingOutcome.NORMALIZED, SessionStage.NONE, "BP within target range")
        return ReadingDecision(category, ReadingOutcome.BORDERLINE, SessionStage.NONE, "BP recorded, no action")

    current = session_stage(active_session)
    if category == BPCategory.IN_TARGET:
        return ReadingDecision(category, ReadingOutcome.RESOLVED, SessionStage.RESOLVED, "BP controlled during active session")

    if category == BPCategory.HIGH:
        algorithm = active_session.algorithm_selected
        if algorithm and has_algorithm_failed(algorithm, active_session.current_step or 0):
            return ReadingDecision(
                category, ReadingOutcome.ESCALATED, SessionStage.ESCALATED,
                "Maximum doses reached without BP control",
            )
        if has_active_timer:
            return ReadingDecision(
                category, ReadingOutcome.TIMER_SATISFIED, current,
                "Reading satisfies the pending deadline",
            )

    return ReadingDecision(category, ReadingOutcome.RECORDED, current, "Reading recorded during active session")


# ── Transition guards ────────────────────────────────────────────────────────

def require_active(session, patient_id: str):
    if session is None or session.status != SessionStatus.ACTIVE:
        raise NoActiveSessionError(patient_id)
    return session


def check_can_start(existing_active, patient_id: str) -> None:
    if existing_active is not None:
        raise InvalidTransitionError(
            f"Patient {patient_id} already has an active emergency session",
            details={"session_id": existing_active.id},
        )


def check_can_select_algorithm(session) -> None:
    if session.algorithm_selected:
        raise InvalidTransitionError(
            f"Algorithm {session.algorithm_selected} is already selected for this session",
            details={"session_id": session.id, "algorithm": session.algorithm_selected},
        )


def check_can_order_dose(session, pending_dose) -> None:
    if not session.algorithm_selected:
        raise InvalidTransitionError(
            "Select a treatment algorithm before ordering medication",
            details={"session_id": session.id},
        )
    if pending_dose is not None:
        raise InvalidTransitionError(
            f"Dose {pending_dose.dose_number} has not been administered yet",
            details={"session_id": session.id, "medication_id": pending_dose.id},
        )


def check_can_administer(dose, session) -> None:
    if dose.administered_at is not None:
        raise InvalidTransitionError(
            f"Dose {dose.dose_number} was already administered",
            details={"medication_id": dose.id},
        )
    if session is None or session.status != SessionStatus.ACTIVE:
        raise InvalidTransitionError(
            "Dose belongs to a session that is no longer active",
            details={"medication_id": dose.id, "session_id": dose.emergency_session_id},
        )


def check_can_acknowledge(session) -> None:
    if session.status != SessionStatus.ESCALATED:
        raise InvalidTransitionError(
            "Only escalated sessions can be acknowledged",
            details={"session_id": session.id, "status": session.status},
        )
    if session.acknowledged_at is not None:
        raise InvalidTransitionError(
            f"Session already acknowledged by {session.acknowledged_by}",
            details={"session_id": session.id},
        )


# ── Clinician guidance ───────────────────────────────────────────────────────

TARGET_WARNING = (
    f"Target BP: {TARGET_SYSTOLIC_MIN}-{TARGET_SYSTOLIC_MAX} / "
    f"{TARGET_DIASTOLIC_MIN}-{TARGET_DIASTOLIC_MAX} mmHg"
)


@dataclass
class WorkflowState:
    stage: SessionStage
    next_action: str
    can_proceed: bool
    requires_escalation: bool = False
    next_action_time: Optional[datetime] = None
    warnings: List[str] = field(default_factory=list)


def describe_workflow(
    session,
    readings: Sequence,
    medications: Sequence,
    has_asthma: bool,
    now: datetime,
    recheck_minutes: int = 15,
) -> WorkflowState:
    """What should happen next for a case. ``readings`` are newest first."""
    if not readings and session is None:
        return WorkflowState(SessionStage.NONE, "Record initial BP reading", can_proceed=True)

    latest = readings[0] if readings else None
    latest_category = classify_bp(latest.systolic, latest.diastolic) if latest else None
    stage = session_stage(session, latest_category)

    if stage == SessionStage.NONE:
        if latest_category == BPCategory.IN_TARGET:
            return WorkflowState(stage, "BP within target range - continue monitoring", True, warnings=["BP controlled"])
        return WorkflowState(stage, "Continue routine BP monitoring", True)

    if stage == SessionStage.FIRST_HIGH_OBSERVED:
        return WorkflowState(
            stage,
            f"Complete positioning checklist and wait {recheck_minutes} minutes for confirmatory reading",
            can_proceed=False,
            next_action_time=latest.timestamp + timedelta(minutes=recheck_minutes),
            warnings=[f"First high BP reading detected. Confirm positioning and recheck in {recheck_minutes} minutes."],
        )

    if stage == SessionStage.RESOLVED:
        return WorkflowState(stage, "BP within target range - continue monitoring", True, warnings=["BP controlled"])

    if stage == SessionStage.ESCALATED:
        action = "Await specialist intervention"
        if session.acknowledged_at is None:
            action = "Attending: acknowledge escalated case and take over care"
        return WorkflowState(
            stage, action, can_proceed=False, requires_escalation=True,
            warnings=["CASE ESCALATED TO SPECIALIST"],
        )

    if stage == SessionStage.CONFIRMED_ACTIVE:
        return WorkflowState(
            stage,
            "Resident: Select treatment algorithm (Labetalol/Hydralazine/Nifedipine)",
            can_proceed=True,
            warnings=["CONFIRMED EMERGENCY - Algorithm selection required"],
        )

    algorithm = session.algorithm_selected
    protocol = protocol_for(algorithm)
    step = session.current_step or 0
    warnings = contraindication_warnings(algorithm, has_asthma)
    last_med = medications[-1] if medications else None

    if last_med is not None and last_med.administered_at is None:
        return WorkflowState(stage, f"Nurse: Administer {last_med.label}", True, warnings=warnings)

    if last_med is not None and last_med.next_bp_check_at is not None and last_med.next_bp_check_at > now:
        return WorkflowState(
            stage,
            f"Wait {last_med.wait_minutes} minutes, then recheck BP",
            can_proceed=False,
            next_action_time=last_med.next_bp_check_at,
            warnings=warnings + [TARGET_WARNING],
        )

    if has_algorithm_failed(algorithm, step):
        still_high = (
            latest_category == BPCategory.HIGH
            and last_med is not None
            and last_med.administered_at is not None
            and latest.timestamp >= last_med.administered_at
        )
        if still_high:
            return WorkflowState(
                stage,
                "ALGORITHM FAILURE: Escalate to attending and switch protocol",
                can_proceed=False,
                requires_escalation=True,
                warnings=warnings + [
                    "ALGORITHM FAILURE: Maximum doses reached without BP control",
                    "STAT consult required: MFM, Internal Medicine, Anesthesia, or Critical Care",
                ],
            )
        return WorkflowState(
            stage,
            "Final dose given: recheck BP (a high reading escalates to attending)",
            can_proceed=True,
            warnings=warnings + [TARGET_WARNING],
        )

    upcoming = next_dose(algorithm, step)
    return WorkflowState(
        stage,
        f"Resident: Order {upcoming.label}",
        can_proceed=True,
        warnings=warnings + [f"Step {upcoming.step} of {protocol.max_doses}"],
    )

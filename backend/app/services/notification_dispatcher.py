"""
Notification effects and their delivery.

The workflow decides *what*, *whom* and *how urgent* (NotificationRequest);
sinks hand requests to the notifications table and to the external push
collaborator. Delivery is best-effort: a failing sink is logged, never raised.
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Tuple

import httpx

from ..core.config import settings
from ..models.base import generate_uuid, utcnow
from ..models.notification import Notification, NotificationPriority
from ..models.timer import TimerType
from ..models.user import UserRole

logger = logging.getLogger(__name__)


class NotificationEvent:
    FIRST_HIGH_BP = "first_high_bp"
    RECHECK_TIMER_STARTED = "recheck_timer_started"
    CONFIRMED_EMERGENCY = "confirmed_emergency"
    ADMINISTRATION_DEADLINE_STARTED = "administration_deadline_started"
    ALGORITHM_SELECTED = "algorithm_selected"
    ASTHMA_CAUTION = "asthma_caution"
    MEDICATION_ORDERED = "medication_ordered"
    MEDICATION_ADMINISTERED = "medication_administered"
    MEDICATION_WAIT_STARTED = "medication_wait_started"
    MEDICATION_WAIT_COMPLETE = "medication_wait_complete"
    RECHECK_DUE = "recheck_due"
    ADMINISTRATION_DEADLINE_PASSED = "administration_deadline_passed"
    ALGORITHM_FAILURE = "algorithm_failure"
    SESSION_RESOLVED = "session_resolved"


# event -> (recipient roles, priority); empty roles means broadcast
EVENT_ROUTING = {
    NotificationEvent.FIRST_HIGH_BP: ((UserRole.NURSE,), NotificationPriority.INFO),
    NotificationEvent.RECHECK_TIMER_STARTED: ((UserRole.NURSE,), NotificationPriority.WARNING),
    NotificationEvent.CONFIRMED_EMERGENCY: (
        (UserRole.NURSE, UserRole.RESIDENT, UserRole.CHARGE_NURSE),
        NotificationPriority.CRITICAL,
    ),
    NotificationEvent.ADMINISTRATION_DEADLINE_STARTED: ((UserRole.RESIDENT,), NotificationPriority.CRITICAL),
    NotificationEvent.ALGORITHM_SELECTED: ((UserRole.NURSE, UserRole.CHARGE_NURSE), NotificationPriority.INFO),
    NotificationEvent.ASTHMA_CAUTION: ((UserRole.RESIDENT,), NotificationPriority.WARNING),
    NotificationEvent.MEDICATION_ORDERED: ((UserRole.NURSE,), NotificationPriority.CRITICAL),
    NotificationEvent.MEDICATION_ADMINISTERED: ((UserRole.RESIDENT,), NotificationPriority.INFO),
    NotificationEvent.MEDICATION_WAIT_STARTED: ((UserRole.NURSE,), NotificationPriority.CRITICAL),
    NotificationEvent.MEDICATION_WAIT_COMPLETE: ((UserRole.NURSE,), NotificationPriority.CRITICAL),
    NotificationEvent.RECHECK_DUE: ((UserRole.NURSE, UserRole.CHARGE_NURSE), NotificationPriority.CRITICAL),
    NotificationEvent.ADMINISTRATION_DEADLINE_PASSED: (
        (UserRole.RESIDENT, UserRole.CHARGE_NURSE),
        NotificationPriority.CRITICAL,
    ),
    NotificationEvent.ALGORITHM_FAILURE: ((UserRole.ATTENDING, UserRole.RESIDENT), NotificationPriority.STAT),
    NotificationEvent.SESSION_RESOLVED: ((), NotificationPriority.INFO),
}

TIMER_EXPIRY_EVENTS = {
    TimerType.BP_RECHECK: NotificationEvent.RECHECK_DUE,
    TimerType.MEDICATION_WAIT: NotificationEvent.MEDICATION_WAIT_COMPLETE,
    TimerType.ADMINISTRATION_DEADLINE: NotificationEvent.ADMINISTRATION_DEADLINE_PASSED,
}


@dataclass(frozen=True)
class NotificationRequest:
    event: str
    roles: Tuple[str, ...]
    priority: str
    title: str
    message: str
    patient_id: Optional[str] = None
    context: dict = field(default_factory=dict, compare=False)

    @property
    def is_broadcast(self) -> bool:
        return not self.roles


def build_request(event: str, title: str, message: str, patient_id: Optional[str] = None, **context) -> NotificationRequest:
    roles, priority = EVENT_ROUTING[event]
    return NotificationRequest(
        event=event,
        roles=roles,
        priority=priority,
        title=title,
        message=message,
        patient_id=patient_id,
        context=context,
    )


def _location(room_number: Optional[str], prefix: str = " in Room ") -> str:
    return f"{prefix}{room_number}" if room_number else ""


# ── Message builders ─────────────────────────────────────────────────────────

def first_high_bp(patient, systolic: int, diastolic: int) -> NotificationRequest:
    return build_request(
        NotificationEvent.FIRST_HIGH_BP,
        "First high BP reading",
        f"BP {systolic}/{diastolic}{_location(patient.room_number)}. "
        "Confirm positioning and recheck in 15 minutes.",
        patient.id,
        room_number=patient.room_number,
    )


def confirmed_emergency(patient, systolic: Optional[int] = None, diastolic: Optional[int] = None) -> NotificationRequest:
    bp = f" (BP: {systolic}/{diastolic})" if systolic is not None else ""
    return build_request(
        NotificationEvent.CONFIRMED_EMERGENCY,
        "HYPERTENSIVE EMERGENCY CONFIRMED",
        f"Patient{_location(patient.room_number)} has confirmed severe hypertension{bp}. "
        "Emergency protocol activated; select treatment algorithm.",
        patient.id,
        room_number=patient.room_number,
    )


def algorithm_selected(patient, protocol_name: str) -> NotificationRequest:
    return build_request(
        NotificationEvent.ALGORITHM_SELECTED,
        "Treatment Algorithm Selected",
        f"{protocol_name} protocol selected for patient{_location(patient.room_number)}. "
        "Be prepared to administer medication.",
        patient.id,
    )


def asthma_caution(patient, warning: str) -> NotificationRequest:
    return build_request(
        NotificationEvent.ASTHMA_CAUTION,
        "CAUTION: Patient Has Asthma",
        f"{warning}. Consider an alternative algorithm.",
        patient.id,
    )


def medication_ordered(patient, label: str) -> NotificationRequest:
    return build_request(
        NotificationEvent.MEDICATION_ORDERED,
        "MEDICATION ORDER - ADMINISTER NOW",
        f"{label} has been ordered{_location(patient.room_number, ' for Room ')}. "
        "Administer immediately per protocol.",
        patient.id,
    )


def medication_administered(patient, label: str, wait_minutes: int) -> NotificationRequest:
    return build_request(
        NotificationEvent.MEDICATION_ADMINISTERED,
        "Medication Administered",
        f"{label} administered. Recheck BP in {wait_minutes} minutes.",
        patient.id,
    )


def algorithm_failure(patient, protocol_name: str, systolic: int, diastolic: int) -> NotificationRequest:
    return build_request(
        NotificationEvent.ALGORITHM_FAILURE,
        "STAT CONSULTATION REQUIRED",
        f"Hypertension algorithm failure{_location(patient.room_number)}. {protocol_name} protocol "
        f"completed without BP control. Current BP: {systolic}/{diastolic}. "
        "Immediate specialist intervention required.",
        patient.id,
        room_number=patient.room_number,
    )


def manual_escalation(patient, reason: Optional[str]) -> NotificationRequest:
    return build_request(
        NotificationEvent.ALGORITHM_FAILURE,
        "STAT CONSULTATION REQUIRED",
        f"Emergency case{_location(patient.room_number)} escalated to attending."
        + (f" Reason: {reason}" if reason else ""),
        patient.id,
    )


def session_resolved(patient, details: str) -> NotificationRequest:
    who = f"Room {patient.room_number}" if patient.room_number else f"Patient {patient.anonymous_identifier}"
    return build_request(
        NotificationEvent.SESSION_RESOLVED,
        "BP Emergency Resolved",
        f"{who}: {details}. Emergency session closed.",
        patient.id,
    )


def timer_started(timer) -> NotificationRequest:
    if timer.type == TimerType.BP_RECHECK:
        return build_request(
            NotificationEvent.RECHECK_TIMER_STARTED,
            "BP Recheck Required",
            f"Take a confirmatory blood pressure reading in {timer.duration_minutes} minutes.",
            timer.patient_id,
            timer_id=timer.id,
        )
    if timer.type == TimerType.ADMINISTRATION_DEADLINE:
        return build_request(
            NotificationEvent.ADMINISTRATION_DEADLINE_STARTED,
            "MEDICATION DEADLINE",
            f"First medication dose must be administered within {timer.duration_minutes} minutes "
            "(30-60 min window).",
            timer.patient_id,
            timer_id=timer.id,
        )
    return build_request(
        NotificationEvent.MEDICATION_WAIT_STARTED,
        "BP Check Scheduled",
        f"Check blood pressure when the {timer.duration_minutes} minute medication wait completes.",
        timer.patient_id,
        timer_id=timer.id,
    )


def timer_expired(timer) -> NotificationRequest:
    event = TIMER_EXPIRY_EVENTS[timer.type]
    messages = {
        NotificationEvent.RECHECK_DUE: ("TIMER EXPIRED - BP CHECK REQUIRED", "BP recheck timer expired. Take confirmatory reading NOW."),
        NotificationEvent.MEDICATION_WAIT_COMPLETE: ("TIMER EXPIRED - BP CHECK REQUIRED", "Medication wait complete. Check BP NOW."),
        NotificationEvent.ADMINISTRATION_DEADLINE_PASSED: (
            "ADMINISTRATION DEADLINE PASSED",
            "First-dose administration window has elapsed. Administer medication immediately.",
        ),
    }
    title, message = messages[event]
    return build_request(event, title, message, timer.patient_id, timer_id=timer.id)


# ── Sinks ────────────────────────────────────────────────────────────────────

class NotificationSink:
    name = "sink"

    def deliver(self, request: NotificationRequest) -> None:
        raise NotImplementedError


class DatabaseNotificationSink(NotificationSink):
    """One in-app notification row per recipient role (one row for broadcasts)."""
    name = "database"

    def __init__(self, session_factory: Callable):
        self.session_factory = session_factory

    def deliver(self, request: NotificationRequest) -> None:
        db = self.session_factory()
        try:
            for role in request.roles or (None,):
                db.add(Notification(
                    id=generate_uuid(),
                    type=request.priority,
                    event=request.event,
                    title=request.title,
                    message=request.message,
                    recipient_role=role,
                    patient_id=request.patient_id,
                    created_at=utcnow(),
                ))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


class WebhookNotificationSink(NotificationSink):
    """POSTs requests to the external push-delivery service."""
    name = "webhook"

    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[int] = None,
        mock_mode: Optional[bool] = None,
    ):
        self.url = url if url is not None else settings.NOTIFICATION_WEBHOOK_URL
        self.api_key = api_key if api_key is not None else settings.NOTIFICATION_API_KEY
        self.timeout = timeout if timeout is not None else settings.NOTIFICATION_TIMEOUT
        self.mock_mode = mock_mode if mock_mode is not None else settings.NOTIFICATION_MOCK_MODE

    def payload(self, request: NotificationRequest) -> dict:
        return {
            "event": request.event,
            "roles": list(request.roles),
            "priority": request.priority,
            "title": request.title,
            "message": request.message,
            "patient_id": request.patient_id,
            "context": request.context,
        }

    def deliver(self, request: NotificationRequest) -> None:
        if self.mock_mode or not self.url:
            logger.debug("Mock push delivery: %s -> %s", request.event, request.roles or "broadcast")
            return
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        with httpx.Client(timeout=self.timeout) as client:
            resp = client.post(self.url, json=self.payload(request), headers=headers)
            resp.raise_for_status()


class NotificationDispatcher:
    """Fans each request out to every sink without awaiting delivery guarantees."""

    def __init__(self, sinks: Optional[Iterable[NotificationSink]] = None):
        self.sinks: List[NotificationSink] = list(sinks or [])

    def add_sink(self, sink: NotificationSink) -> None:
        self.sinks.append(sink)

    def notify(
        self,
        roles: Iterable[str],
        priority: str,
        title: str,
        message: str,
        patient_id: Optional[str] = None,
        event: str = "custom",
    ) -> None:
        self.dispatch([NotificationRequest(
            event=event,
            roles=tuple(roles),
            priority=priority,
            title=title,
            message=message,
            patient_id=patient_id,
        )])

    def dispatch(self, requests: Iterable[NotificationRequest]) -> int:
        """Deliver requests in order. Returns the number of failed sink deliveries."""
        failures = 0
        for request in requests:
            logger.info(
                "Notify %s [%s] -> %s (patient=%s)",
                request.event, request.priority, ",".join(request.roles) or "broadcast", request.patient_id,
            )
            for sink in self.sinks:
                try:
                    sink.deliver(request)
                except Exception as exc:
                    failures += 1
                    logger.warning(
                        "Notification delivery via %s failed for %s (patient=%s): %s",
                        sink.name, request.event, request.patient_id, exc,
                    )
        return failures

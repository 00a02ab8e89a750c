"""
Store access for the workflow: transactional unit of work plus the lookups the
orchestrator and observers need. Works unchanged against SQLite in-memory or a
remote database; only the sessionmaker differs.
"""
import logging
from contextlib import contextmanager
from typing import Iterator, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import StoreError
from ..models.audit import AuditLog
from ..models.base import generate_uuid, utcnow
from ..models.medication import MedicationDose
from ..models.notification import Notification  # noqa: F401 - registers the mapper
from ..models.patient import Patient
from ..models.reading import BloodPressureReading
from ..models.session import EmergencySession, SessionStatus
from ..models.timer import Timer

logger = logging.getLogger(__name__)


class WorkflowStore:

    def __init__(self, session_factory):
        self.session_factory = session_factory

    @contextmanager
    def unit_of_work(self, operation: str = "operation") -> Iterator[Session]:
        """One transaction: committed on success, rolled back on any error."""
        db = self.session_factory()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("Store failure during %s: %s", operation, exc)
            raise StoreError(
                f"Store rejected {operation}: {exc.__class__.__name__}",
                details={"operation": operation},
            ) from exc
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    @contextmanager
    def reader(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
        except SQLAlchemyError as exc:
            raise StoreError(f"Store read failed: {exc.__class__.__name__}") from exc
        finally:
            db.close()

    # ── Patients ─────────────────────────────────────────────────────────────

    @staticmethod
    def get_patient(db: Session, patient_id: str) -> Optional[Patient]:
        return db.query(Patient).filter(Patient.id == patient_id).first()

    # ── Readings ─────────────────────────────────────────────────────────────

    @staticmethod
    def recent_readings(db: Session, patient_id: str, limit: Optional[int] = None) -> List[BloodPressureReading]:
        q = (
            db.query(BloodPressureReading)
            .filter(BloodPressureReading.patient_id == patient_id)
            .order_by(BloodPressureReading.timestamp.desc())
        )
        if limit:
            q = q.limit(limit)
        return q.all()

    # ── Sessions ─────────────────────────────────────────────────────────────

    @staticmethod
    def get_session(db: Session, session_id: str) -> Optional[EmergencySession]:
        return db.query(EmergencySession).filter(EmergencySession.id == session_id).first()

    @staticmethod
    def active_session(db: Session, patient_id: str) -> Optional[EmergencySession]:
        return (
            db.query(EmergencySession)
            .filter(
                EmergencySession.patient_id == patient_id,
                EmergencySession.status == SessionStatus.ACTIVE,
            )
            .order_by(EmergencySession.initiated_at.desc())
            .first()
        )

    @staticmethod
    def latest_session(db: Session, patient_id: str, status: Optional[str] = None) -> Optional[EmergencySession]:
        q = db.query(EmergencySession).filter(EmergencySession.patient_id == patient_id)
        if status:
            q = q.filter(EmergencySession.status == status)
        return q.order_by(EmergencySession.initiated_at.desc()).first()

    @staticmethod
    def list_sessions(db: Session, status: Optional[str] = None) -> List[EmergencySession]:
        q = db.query(EmergencySession)
        if status:
            q = q.filter(EmergencySession.status == status)
        return q.order_by(EmergencySession.initiated_at.desc()).all()

    # ── Medications ──────────────────────────────────────────────────────────

    @staticmethod
    def session_medications(db: Session, session_id: str) -> List[MedicationDose]:
        return (
            db.query(MedicationDose)
            .filter(MedicationDose.emergency_session_id == session_id)
            .order_by(MedicationDose.dose_number)
            .all()
        )

    @staticmethod
    def patient_medications(db: Session, patient_id: str) -> List[MedicationDose]:
        return (
            db.query(MedicationDose)
            .filter(MedicationDose.patient_id == patient_id)
            .order_by(MedicationDose.ordered_at)
            .all()
        )

    @staticmethod
    def get_medication(db: Session, medication_id: str) -> Optional[MedicationDose]:
        return db.query(MedicationDose).filter(MedicationDose.id == medication_id).first()

    @staticmethod
    def pending_medication(db: Session, session_id: str) -> Optional[MedicationDose]:
        return (
            db.query(MedicationDose)
            .filter(
                MedicationDose.emergency_session_id == session_id,
                MedicationDose.administered_at.is_(None),
            )
            .order_by(MedicationDose.dose_number)
            .first()
        )

    # ── Timers ───────────────────────────────────────────────────────────────

    @staticmethod
    def all_active_timers(db: Session, patient_id: Optional[str] = None) -> List[Timer]:
        q = db.query(Timer).filter(Timer.is_active.is_(True))
        if patient_id:
            q = q.filter(Timer.patient_id == patient_id)
        return q.order_by(Timer.expires_at).all()

    @staticmethod
    def get_timer(db: Session, timer_id: str) -> Optional[Timer]:
        return db.query(Timer).filter(Timer.id == timer_id).first()

    # ── Audit ────────────────────────────────────────────────────────────────

    @staticmethod
    def audit(
        db: Session,
        user_id: str,
        action_type: str,
        patient_id: Optional[str] = None,
        session_id: Optional[str] = None,
        timestamp=None,
        **details,
    ) -> AuditLog:
        entry = AuditLog(
            id=generate_uuid(),
            timestamp=timestamp or utcnow(),
            user_id=user_id,
            action_type=action_type,
            patient_id=patient_id,
            session_id=session_id,
            details=details,
        )
        db.add(entry)
        return entry

    @staticmethod
    def audit_trail(db: Session, patient_id: str) -> List[AuditLog]:
        return (
            db.query(AuditLog)
            .filter(AuditLog.patient_id == patient_id)
            .order_by(AuditLog.timestamp)
            .all()
        )

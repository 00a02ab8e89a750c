"""
Error taxonomy for the protocol workflow.

PreconditionError - the caller must fix its input (missing actor/patient/session,
                    invalid state transition). Never retried.
StoreError        - persistence unavailable or rejected a write. The caller may retry;
                    the core never retries internally.
DataIntegrityWarning - recoverable inconsistency in stored data. Logged, never raised.
"""
from typing import Optional, Dict, Any


class ProtocolError(Exception):
    """Base exception for all workflow errors."""

    retryable = False

    def __init__(
        self,
        message: str,
        code: str = "PROTOCOL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class PreconditionError(ProtocolError):
    def __init__(self, message: str, code: str = "PRECONDITION_FAILED", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, details=details)


class MissingActorError(PreconditionError):
    def __init__(self, operation: str):
        super().__init__(
            f"An authenticated user is required for {operation}",
            code="MISSING_ACTOR",
            details={"operation": operation},
        )


class NotFoundError(PreconditionError):
    """A referenced record does not exist (or belongs to another patient)."""


class PatientNotFoundError(NotFoundError):
    def __init__(self, patient_id: str):
        super().__init__(
            f"Patient {patient_id} not found",
            code="PATIENT_NOT_FOUND",
            details={"patient_id": patient_id},
        )


class SessionNotFoundError(NotFoundError):
    def __init__(self, session_id: str):
        super().__init__(
            f"Emergency session {session_id} not found",
            code="SESSION_NOT_FOUND",
            details={"session_id": session_id},
        )


class MedicationNotFoundError(NotFoundError):
    def __init__(self, medication_id: str):
        super().__init__(
            f"Medication {medication_id} not found",
            code="MEDICATION_NOT_FOUND",
            details={"medication_id": medication_id},
        )


class NoActiveSessionError(PreconditionError):
    def __init__(self, patient_id: str):
        super().__init__(
            f"Patient {patient_id} has no active emergency session",
            code="NO_ACTIVE_SESSION",
            details={"patient_id": patient_id},
        )


class InvalidTransitionError(PreconditionError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="INVALID_TRANSITION", details=details)


class StoreError(ProtocolError):
    retryable = True

    def __init__(self, message: str, code: str = "STORE_UNAVAILABLE", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, details=details)


class CaseBusyError(StoreError):
    def __init__(self, patient_id: str, timeout: float):
        super().__init__(
            f"Another operation on patient {patient_id} did not finish within {timeout:g}s",
            code="CASE_BUSY",
            details={"patient_id": patient_id, "timeout_seconds": timeout},
        )


class DataIntegrityWarning(UserWarning):
    """Stored data violates an invariant the workflow can recover from."""

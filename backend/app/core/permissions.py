"""
Role-based permission matrix for the hypertension response workflow.
Defines what each clinical role is allowed to do in the system.
"""
from ..models.user import UserRole

# Permission constants
PERM_VIEW_PATIENTS = "view_patients"
PERM_MANAGE_PATIENTS = "manage_patients"
PERM_RECORD_READINGS = "record_readings"
PERM_START_SESSION = "start_session"
PERM_SELECT_ALGORITHM = "select_algorithm"
PERM_ORDER_MEDICATION = "order_medication"
PERM_ADMINISTER_MEDICATION = "administer_medication"
PERM_RESOLVE_SESSION = "resolve_session"
PERM_ESCALATE_SESSION = "escalate_session"
PERM_ACKNOWLEDGE_ESCALATION = "acknowledge_escalation"
PERM_VIEW_AUDIT_LOGS = "view_audit_logs"

# Role permission matrix
ROLE_PERMISSIONS: dict = {
    UserRole.NURSE: {
        PERM_VIEW_PATIENTS,
        PERM_MANAGE_PATIENTS,
        PERM_RECORD_READINGS,
        PERM_ADMINISTER_MEDICATION,
    },
    UserRole.RESIDENT: {
        PERM_VIEW_PATIENTS,
        PERM_START_SESSION,
        PERM_SELECT_ALGORITHM,
        PERM_ORDER_MEDICATION,
        PERM_RESOLVE_SESSION,
        PERM_ESCALATE_SESSION,
    },
    UserRole.ATTENDING: {
        PERM_VIEW_PATIENTS,
        PERM_START_SESSION,
        PERM_RESOLVE_SESSION,
        PERM_ESCALATE_SESSION,
        PERM_ACKNOWLEDGE_ESCALATION,
        PERM_VIEW_AUDIT_LOGS,
    },
    UserRole.CHARGE_NURSE: {
        PERM_VIEW_PATIENTS,
        PERM_MANAGE_PATIENTS,
        PERM_RESOLVE_SESSION,
        PERM_VIEW_AUDIT_LOGS,
        # Charge nurse does NOT order or administer medication
    },
}


def has_permission(role: str, permission: str) -> bool:
    """Check if a role has a specific permission."""
    return permission in ROLE_PERMISSIONS.get(role, set())

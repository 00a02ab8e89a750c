class UserRole:
    """Clinical roles. Accounts live in the identity provider, not in this store."""
    NURSE = "nurse"
    RESIDENT = "resident"
    ATTENDING = "attending"
    CHARGE_NURSE = "chargeNurse"

    ALL = [NURSE, RESIDENT, ATTENDING, CHARGE_NURSE]

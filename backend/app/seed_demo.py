"""
Demo data seeder.

Creates two postpartum patients so the emergency walkthrough works right after
a fresh start: one without contraindications and one with asthma (labetalol
caution path).

This seeder is idempotent; it is safe to call on every startup.
"""
import logging

from .models.base import SessionLocal, Base, engine, generate_uuid
from .models.patient import Patient
# Register the mappers Patient's relationships point at
from .models import medication, reading, session  # noqa: F401

logger = logging.getLogger(__name__)

DEMO_PATIENTS = (
    {
        "anonymous_identifier": "PT-DEMO1",
        "room_number": "412",
        "has_asthma": False,
        "notes": "Pre-seeded demo patient, G2P2, postpartum day 1.",
    },
    {
        "anonymous_identifier": "PT-DEMO2",
        "room_number": "415",
        "has_asthma": True,
        "notes": "Pre-seeded demo patient with asthma; labetalol is contraindicated.",
    },
)


def seed_demo_data() -> None:
    """Create the demo patients if they do not already exist."""
    # Ensure tables exist (no-op when already created by main.py)
    Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        for spec in DEMO_PATIENTS:
            _seed_patient(db, spec)
    finally:
        db.close()


def _seed_patient(db, spec: dict) -> Patient:
    identifier = spec["anonymous_identifier"]
    patient = db.query(Patient).filter(Patient.anonymous_identifier == identifier).first()
    if not patient:
        patient = Patient(id=generate_uuid(), **spec)
        db.add(patient)
        db.commit()
        db.refresh(patient)
        logger.info("[seed] Created demo patient %s (room %s, asthma=%s)", identifier, patient.room_number, patient.has_asthma)
    return patient

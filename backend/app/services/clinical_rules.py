"""
Clinical rules for the postpartum hypertension protocol.
Pure functions: BP classification and the static medication algorithm table.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

# BP thresholds (mmHg)
SYSTOLIC_HIGH = 160
DIASTOLIC_HIGH = 110
TARGET_SYSTOLIC_MIN = 130
TARGET_SYSTOLIC_MAX = 150
TARGET_DIASTOLIC_MIN = 80
TARGET_DIASTOLIC_MAX = 100


class BPCategory(str, Enum):
    HIGH = "high"
    IN_TARGET = "in_target"
    BORDERLINE = "borderline"


class MedicationAlgorithm(str, Enum):
    LABETALOL = "labetalol"
    HYDRALAZINE = "hydralazine"
    NIFEDIPINE = "nifedipine"


class Contraindication(str, Enum):
    ASTHMA = "asthma"
    SEVERE_BRADYCARDIA = "severe_bradycardia"


@dataclass(frozen=True)
class DoseStep:
    step: int
    medication: str
    dose: str
    route: str
    wait_minutes: int

    @property
    def label(self) -> str:
        return f"{self.medication} {self.dose} {self.route}"


@dataclass(frozen=True)
class MedicationProtocol:
    algorithm: MedicationAlgorithm
    name: str
    route: str
    doses: Tuple[DoseStep, ...]
    contraindications: Tuple[Contraindication, ...]

    @property
    def max_doses(self) -> int:
        return len(self.doses)


PROTOCOLS = {
    MedicationAlgorithm.LABETALOL: MedicationProtocol(
        algorithm=MedicationAlgorithm.LABETALOL,
        name="Labetalol",
        route="IV",
        doses=(
            DoseStep(1, "Labetalol", "20mg", "IV", 10),
            DoseStep(2, "Labetalol", "40mg", "IV", 10),
            DoseStep(3, "Labetalol", "80mg", "IV", 10),
        ),
        contraindications=(Contraindication.ASTHMA, Contraindication.SEVERE_BRADYCARDIA),
    ),
    MedicationAlgorithm.HYDRALAZINE: MedicationProtocol(
        algorithm=MedicationAlgorithm.HYDRALAZINE,
        name="Hydralazine",
        route="IV",
        doses=(
            DoseStep(1, "Hydralazine", "5-10mg", "IV", 20),
            DoseStep(2, "Hydralazine", "10mg", "IV", 20),
        ),
        contraindications=(),
    ),
    MedicationAlgorithm.NIFEDIPINE: MedicationProtocol(
        algorithm=MedicationAlgorithm.NIFEDIPINE,
        name="Nifedipine",
        route="PO",
        doses=(
            DoseStep(1, "Nifedipine", "10mg", "PO", 20),
            DoseStep(2, "Nifedipine", "20mg", "PO", 20),
            DoseStep(3, "Nifedipine", "20mg", "PO", 20),
        ),
        contraindications=(),
    ),
}


def is_bp_high(systolic: float, diastolic: float) -> bool:
    return systolic >= SYSTOLIC_HIGH or diastolic >= DIASTOLIC_HIGH


def is_bp_in_target(systolic: float, diastolic: float) -> bool:
    return (
        TARGET_SYSTOLIC_MIN <= systolic <= TARGET_SYSTOLIC_MAX
        and TARGET_DIASTOLIC_MIN <= diastolic <= TARGET_DIASTOLIC_MAX
    )


def classify_bp(systolic: float, diastolic: float) -> BPCategory:
    """High and in-target bands cannot overlap, so exactly one category applies."""
    if is_bp_high(systolic, diastolic):
        return BPCategory.HIGH
    if is_bp_in_target(systolic, diastolic):
        return BPCategory.IN_TARGET
    return BPCategory.BORDERLINE


def parse_algorithm(value) -> MedicationAlgorithm:
    """Raises ValueError for anything outside the closed set of algorithms."""
    if isinstance(value, MedicationAlgorithm):
        return value
    return MedicationAlgorithm(str(value).lower())


def protocol_for(algorithm) -> MedicationProtocol:
    return PROTOCOLS[parse_algorithm(algorithm)]


def has_algorithm_failed(algorithm, current_step: int) -> bool:
    return current_step >= protocol_for(algorithm).max_doses


def next_dose(algorithm, current_step: int) -> Optional[DoseStep]:
    """The dose after ``current_step`` doses, or None once the protocol is exhausted."""
    protocol = protocol_for(algorithm)
    if current_step < 0 or current_step >= protocol.max_doses:
        return None
    return protocol.doses[current_step]


def dose_step(algorithm, dose_number: int) -> DoseStep:
    protocol = protocol_for(algorithm)
    if not 1 <= dose_number <= protocol.max_doses:
        raise ValueError(f"{protocol.name} has no dose {dose_number}")
    return protocol.doses[dose_number - 1]


def protocol_steps(algorithm) -> Tuple[DoseStep, ...]:
    return protocol_for(algorithm).doses


def contraindication_warnings(algorithm, has_asthma: bool) -> list:
    """Advisory only; callers decide whether a warning blocks selection."""
    protocol = protocol_for(algorithm)
    warnings = []
    if has_asthma and Contraindication.ASTHMA in protocol.contraindications:
        warnings.append(
            f"CAUTION: Patient has asthma - {protocol.name} may be contraindicated"
        )
    return warnings

from .patient import PatientInfo
from .protocol import (
    EAR_ORDER,
    FREQUENCY_ORDER,
    Ear,
    Frequency,
    Phase,
    ScreeningOutcome,
    Stimulus,
    ThresholdResult,
    TrialState,
    iter_pairs,
    next_pair,
)

__all__ = [
    "EAR_ORDER",
    "FREQUENCY_ORDER",
    "Ear",
    "Frequency",
    "PatientInfo",
    "Phase",
    "ScreeningOutcome",
    "Stimulus",
    "ThresholdResult",
    "TrialState",
    "iter_pairs",
    "next_pair",
]

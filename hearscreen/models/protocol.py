from __future__ import annotations
from dataclasses import dataclass, replace
from enum import Enum, IntEnum
from typing import Any, Dict, Iterator, Optional, Tuple


class Frequency(IntEnum):
    """Screening frequencies in traversal order."""

    HZ_500 = 500
    HZ_1000 = 1000
    HZ_2000 = 2000
    HZ_4000 = 4000

    @classmethod
    def coerce(cls, value: Any) -> "Frequency":
        if isinstance(value, cls):
            return value
        try:
            return cls(int(str(value).strip().lower().replace("hz", "").strip()))
        except (TypeError, ValueError):
            raise ValueError(f"Unsupported frequency: {value!r}") from None

    @property
    def hz(self) -> int:
        return int(self.value)


class Ear(Enum):
    RIGHT = "right"
    LEFT = "left"

    @property
    def label(self) -> str:
        # OD = right, OS = left
        return "OD" if self is Ear.RIGHT else "OS"

    @property
    def pan(self) -> float:
        return 1.0 if self is Ear.RIGHT else -1.0

    @classmethod
    def coerce(cls, value: Any) -> "Ear":
        if isinstance(value, cls):
            return value
        aliases = {
            "R": cls.RIGHT,
            "RIGHT": cls.RIGHT,
            "OD": cls.RIGHT,
            "DX": cls.RIGHT,
            "L": cls.LEFT,
            "LEFT": cls.LEFT,
            "OS": cls.LEFT,
            "SX": cls.LEFT,
        }
        ear = aliases.get(str(value).strip().upper())
        if ear is None:
            raise ValueError(f"Unsupported ear: {value!r}")
        return ear


EAR_ORDER: Tuple[Ear, ...] = (Ear.RIGHT, Ear.LEFT)
FREQUENCY_ORDER: Tuple[Frequency, ...] = tuple(Frequency)


def iter_pairs() -> Iterator[Tuple[Ear, Frequency]]:
    """All (ear, frequency) pairs in test order: right ear first, then left."""
    for ear in EAR_ORDER:
        for freq in FREQUENCY_ORDER:
            yield ear, freq


def next_pair(ear: Ear, frequency: Frequency) -> Optional[Tuple[Ear, Frequency]]:
    pairs = list(iter_pairs())
    idx = pairs.index((ear, frequency))
    if idx + 1 < len(pairs):
        return pairs[idx + 1]
    return None


class Phase(Enum):
    DESCENDING = "descending"
    ASCENDING = "ascending"


@dataclass(frozen=True)
class TrialState:
    ear: Ear
    frequency: Frequency
    nominal_level: int
    phase: Phase = Phase.DESCENDING

    def with_level(self, level: int, phase: Optional[Phase] = None) -> "TrialState":
        return replace(self, nominal_level=int(level), phase=phase or self.phase)


@dataclass(frozen=True)
class ThresholdResult:
    ear: Ear
    frequency: Frequency
    threshold: int
    passed: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ear": self.ear.value,
            "frequency": self.frequency.hz,
            "threshold": int(self.threshold),
            "passed": bool(self.passed),
        }


@dataclass(frozen=True)
class Stimulus:
    ear: Ear
    frequency: Frequency
    nominal_level: int
    duration_ms: int


class ScreeningOutcome(Enum):
    PASS = "PASS"
    REFER = "REFER"

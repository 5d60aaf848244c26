from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple
import logging

from ..models import FREQUENCY_ORDER, Frequency

REFERENCE_FLOOR_DB = 15
HISTORY_SIZE = 3

_log = logging.getLogger("hearscreen.calibration")


@dataclass(frozen=True)
class CalibrationRecord:
    """Reference history for one frequency.

    ``history`` keeps the most recent operator-entered "just audible" levels,
    oldest first. The applied offset is the minimum of the history minus the
    reference floor, so the most sensitive self-report wins.
    """

    frequency: Frequency
    history: Tuple[int, ...] = ()
    last_calibrated_at: Optional[datetime] = None
    reference_floor_db: int = REFERENCE_FLOOR_DB

    @property
    def is_calibrated(self) -> bool:
        return len(self.history) > 0

    @property
    def applied_offset(self) -> int:
        if not self.history:
            return 0
        return min(self.history) - self.reference_floor_db

    def with_reference(self, level_db: int, history_size: int = HISTORY_SIZE,
                       when: Optional[datetime] = None) -> "CalibrationRecord":
        history = (self.history + (int(level_db),))[-history_size:]
        return replace(self, history=history, last_calibrated_at=when or datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "history": list(self.history),
            "last_calibration_date": self.last_calibrated_at.isoformat() if self.last_calibrated_at else None,
        }

    @classmethod
    def from_dict(cls, frequency: Frequency, data: Dict[str, Any],
                  reference_floor_db: int = REFERENCE_FLOOR_DB,
                  history_size: int = HISTORY_SIZE) -> "CalibrationRecord":
        raw_history = data.get("history") or []
        history: List[int] = []
        for value in raw_history:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"Invalid calibration value for {frequency.hz} Hz: {value!r}")
            history.append(int(value))
        stamp = data.get("last_calibration_date")
        when = None
        if stamp:
            try:
                when = datetime.fromisoformat(str(stamp))
            except ValueError as exc:
                raise ValueError(f"Invalid calibration date for {frequency.hz} Hz: {stamp!r}") from exc
        return cls(
            frequency=frequency,
            history=tuple(history[-history_size:]),
            last_calibrated_at=when,
            reference_floor_db=reference_floor_db,
        )


@dataclass
class CalibrationStore:
    """Per-frequency personal calibration.

    Records are immutable; every write swaps the whole record for its
    frequency, so readers always see a consistent snapshot.
    """

    reference_floor_db: int = REFERENCE_FLOOR_DB
    history_size: int = HISTORY_SIZE
    frequencies: Tuple[Frequency, ...] = FREQUENCY_ORDER
    _records: Dict[Frequency, CalibrationRecord] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        self.frequencies = tuple(Frequency.coerce(f) for f in self.frequencies)
        self.reset()

    @classmethod
    def from_settings(cls, settings) -> "CalibrationStore":
        return cls(reference_floor_db=int(settings.reference_floor_db), history_size=int(settings.history_size))

    def _empty(self, frequency: Frequency) -> CalibrationRecord:
        return CalibrationRecord(frequency=frequency, reference_floor_db=self.reference_floor_db)

    # ---- API ----
    def record_reference(self, frequency, level_db: int) -> CalibrationRecord:
        freq = Frequency.coerce(frequency)
        if isinstance(level_db, bool) or not isinstance(level_db, int):
            raise TypeError(f"Reference level must be an integer dB value, got {level_db!r}")
        record = self.record(freq).with_reference(level_db, self.history_size)
        self._records[freq] = record
        _log.debug(
            "Reference %d dB saved for %d Hz: history=%s offset=%+d",
            level_db, freq.hz, list(record.history), record.applied_offset,
        )
        return record

    def record(self, frequency) -> CalibrationRecord:
        freq = Frequency.coerce(frequency)
        return self._records.get(freq) or self._empty(freq)

    def records(self) -> List[CalibrationRecord]:
        return [self.record(f) for f in self.frequencies]

    def applied_offset(self, frequency) -> int:
        return self.record(frequency).applied_offset

    def is_calibrated(self, frequency) -> bool:
        return self.record(frequency).is_calibrated

    def missing_frequencies(self) -> List[Frequency]:
        return [f for f in self.frequencies if not self.is_calibrated(f)]

    def is_fully_calibrated(self) -> bool:
        return not self.missing_frequencies()

    def last_calibration_date(self) -> Optional[datetime]:
        stamps = [r.last_calibrated_at for r in self.records() if r.last_calibrated_at is not None]
        return max(stamps) if stamps else None

    def load(self, records: Iterable[CalibrationRecord]) -> None:
        for record in records:
            freq = Frequency.coerce(record.frequency)
            if freq not in self.frequencies:
                continue
            self._records[freq] = replace(
                record,
                history=tuple(record.history)[-self.history_size:],
                reference_floor_db=self.reference_floor_db,
            )

    def reset(self, frequency=None) -> None:
        if frequency is None:
            self._records = {f: self._empty(f) for f in self.frequencies}
        else:
            freq = Frequency.coerce(frequency)
            self._records[freq] = self._empty(freq)

    def get_map(self) -> Dict[int, int]:
        return {f.hz: self.applied_offset(f) for f in self.frequencies}

import datetime as dt
import os
import threading

from ..errors import InvalidState
from ..models import Ear, Frequency, ScreeningOutcome, ThresholdResult, iter_pairs


class ResultAccumulator:
    """Append-only list of resolved thresholds, one per (ear, frequency).

    Rows arrive in test order (right ear first, frequencies ascending). Once
    sealed the collection is read-only and can be handed to reporting.
    """

    def __init__(self):
        self._rows = []
        self._keys = set()
        self._sealed = False
        self._lock = threading.Lock()

    def append(self, result: ThresholdResult):
        key = (result.ear, result.frequency)
        with self._lock:
            if self._sealed:
                raise InvalidState("Results are sealed: the test is complete.")
            if key in self._keys:
                raise InvalidState(f"Threshold already recorded for {result.ear.label} {result.frequency.hz} Hz")
            self._rows.append(result)
            self._keys.add(key)

    def seal(self):
        with self._lock:
            self._sealed = True

    @property
    def sealed(self):
        return self._sealed

    @property
    def results(self):
        return tuple(self._rows)

    def __len__(self):
        return len(self._rows)

    def __iter__(self):
        return iter(self.results)

    def get(self, ear, frequency):
        ear = Ear.coerce(ear)
        frequency = Frequency.coerce(frequency)
        for r in self._rows:
            if r.ear is ear and r.frequency is frequency:
                return r
        return None

    def is_complete(self):
        return all(k in self._keys for k in iter_pairs())

    def failed(self):
        return [r for r in self._rows if not r.passed]

    @property
    def outcome(self):
        """REFER as soon as one frequency failed, PASS otherwise."""
        return ScreeningOutcome.REFER if self.failed() else ScreeningOutcome.PASS

    def to_map_by_ear(self):
        """{'OD': {freq: threshold}, 'OS': {...}}"""
        out = {'OD': {}, 'OS': {}}
        for r in self._rows:
            out[r.ear.label][r.frequency.hz] = r.threshold
        return out

    def to_rows(self, patient):
        out = []
        for r in self._rows:
            out.append([patient.id, patient.name, r.ear.label, r.frequency.hz, r.threshold,
                        "pass" if r.passed else "refer"])
        return out

    def to_payload(self, patient, started_at=None, finished_at=None):
        return {
            "screening": {
                "patientId": patient.id,
                "patientName": patient.name,
                "patientAge": patient.age,
                "timestamp": dt.datetime.now().isoformat(timespec="seconds"),
                "startedAt": started_at.isoformat(timespec="seconds") if started_at else None,
                "finishedAt": finished_at.isoformat(timespec="seconds") if finished_at else None,
                "operator": os.getenv("USERNAME") or os.getenv("USER") or "operator",
                "complete": self.is_complete(),
                "outcome": self.outcome.value,
                "note": patient.notes or "",
            },
            "thresholds": [
                {"ear": r.ear.value, "hz": r.frequency.hz, "dbhl": r.threshold, "passed": r.passed,
                 "method": "DescendAscend10dB"}
                for r in self._rows
            ],
        }

from __future__ import annotations
from datetime import datetime as dt
from typing import Any, Dict, List, Optional
import json
import os

from .audio.calibration import HISTORY_SIZE, REFERENCE_FLOOR_DB, CalibrationRecord
from .errors import PersistenceError
from .models import FREQUENCY_ORDER, Frequency


def _write_json_atomic(path: str, data: Any) -> None:
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    os.replace(tmp_path, path)


class CalibrationRepository:
    """Calibration history persisted in a JSON file.

    File layout::

        {
          "frequencies": {
            "500": {"history": [25, 20, 30], "last_calibration_date": "2024-05-02T10:11:12+00:00"},
            ...
          }
        }
    """

    def __init__(self, json_path: Optional[str] = None, reference_floor_db: int = REFERENCE_FLOOR_DB,
                 history_size: int = HISTORY_SIZE):
        if json_path is None:
            from .paths import path_calibration
            json_path = path_calibration()
        self.json_path = json_path
        self.reference_floor_db = reference_floor_db
        self.history_size = history_size

    def _load(self) -> Dict[str, Any]:
        if not os.path.exists(self.json_path):
            return {"frequencies": {}}
        try:
            with open(self.json_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            raise PersistenceError(f"Cannot read calibration file {self.json_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise PersistenceError(f"Calibration file {self.json_path} is not a JSON object.")
        data.setdefault("frequencies", {})
        return data

    def load_calibration(self) -> List[CalibrationRecord]:
        data = self._load()
        records: List[CalibrationRecord] = []
        for key, entry in (data.get("frequencies") or {}).items():
            try:
                freq = Frequency.coerce(key)
                record = CalibrationRecord.from_dict(freq, entry or {}, self.reference_floor_db, self.history_size)
            except ValueError as exc:
                raise PersistenceError(f"Invalid calibration entry {key!r}: {exc}") from exc
            records.append(record)
        records.sort(key=lambda r: FREQUENCY_ORDER.index(r.frequency))
        return records

    def save_calibration_reference(self, frequency, level_db: int) -> CalibrationRecord:
        freq = Frequency.coerce(frequency)
        data = self._load()
        freqs = data.setdefault("frequencies", {})
        try:
            current = CalibrationRecord.from_dict(freq, freqs.get(str(freq.hz)) or {},
                                                  self.reference_floor_db, self.history_size)
        except ValueError as exc:
            raise PersistenceError(f"Invalid calibration entry {freq.hz}: {exc}") from exc
        record = current.with_reference(level_db, self.history_size)
        freqs[str(freq.hz)] = record.to_dict()
        data["updated_at"] = dt.now().isoformat(timespec="seconds")
        try:
            _write_json_atomic(self.json_path, data)
        except OSError as exc:
            raise PersistenceError(f"Cannot write calibration file {self.json_path}: {exc}") from exc
        return record


def save_exam(payload: Dict[str, Any], patient_id: str = "", ts: Optional[str] = None,
              root: Optional[str] = None) -> str:
    """Write a completed screening to ``<root>/<PATIENT_ID>/<timestamp>.json``."""
    if root is None:
        from .paths import exams_dir
        root = exams_dir()
    if not ts:
        ts = dt.now().strftime("%Y%m%d_%H%M%S")
    folder = os.path.join(root, str(patient_id or "ANONYMOUS").upper())
    json_path = os.path.join(folder, f"{ts}.json")
    try:
        _write_json_atomic(json_path, payload)
    except OSError as exc:
        raise PersistenceError(f"Cannot save exam {json_path}: {exc}") from exc
    return json_path


def list_exams(patient_id: str, root: Optional[str] = None) -> List[str]:
    if root is None:
        from .paths import exams_dir
        root = exams_dir()
    folder = os.path.join(root, str(patient_id).upper())
    if not os.path.isdir(folder):
        return []
    return [os.path.join(folder, fn) for fn in sorted(os.listdir(folder)) if fn.endswith(".json")]

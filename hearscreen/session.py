from __future__ import annotations
from typing import Any, Dict, Optional
import logging

from .audio.calibration import CalibrationRecord, CalibrationStore
from .audio.playback import AudioSink, SoundDeviceSink
from .audio.synthesizer import ToneSynthesizer
from .errors import InvalidState, PersistenceError
from .models import PatientInfo
from .screening.exporter import export_results_to_webapp
from .screening.threshold_engine import EngineListener, EngineState, ThresholdEngine, format_duration
from .settings import ProtocolSettings
from .storage import CalibrationRepository, save_exam

_log = logging.getLogger("hearscreen.session")


class ScreeningSession:
    """Owns the calibration store, synthesizer and engine for one operator session.

    Calibration may only be edited while no test is running. ``reset`` drops
    the current test and patient but keeps the calibration.
    """

    def __init__(self, settings: Optional[ProtocolSettings] = None, sink: Optional[AudioSink] = None,
                 repository: Optional[CalibrationRepository] = None, scheduler=None,
                 listener: Optional[EngineListener] = None, patient: Optional[PatientInfo] = None,
                 clock=None) -> None:
        self.settings = settings or ProtocolSettings()
        self.repository = repository
        self.patient = patient or PatientInfo()
        self.calibration = CalibrationStore.from_settings(self.settings)
        self.sink = sink if sink is not None else SoundDeviceSink.from_settings(self.settings)
        self.synthesizer = ToneSynthesizer(
            self.calibration,
            self.sink,
            tone_duration_ms=self.settings.tone_duration_ms,
            full_scale_db=self.settings.full_scale_db,
        )
        self.engine = ThresholdEngine(
            self.synthesizer,
            self.calibration,
            self.settings,
            scheduler=scheduler,
            listener=listener,
            clock=clock,
        )

    # ---- Calibration ----
    @property
    def test_running(self) -> bool:
        return self.engine.state not in (EngineState.NOT_STARTED, EngineState.COMPLETE)

    def load_calibration(self) -> int:
        if self.repository is None:
            return 0
        records = self.repository.load_calibration()
        self.calibration.load(records)
        _log.info("Loaded calibration for %d frequencies", sum(1 for r in records if r.is_calibrated))
        return len(records)

    def save_calibration(self, frequency, level_db: int) -> CalibrationRecord:
        """Apply the reference in memory, then persist it.

        A persistence failure is re-raised as :class:`PersistenceError` after the
        in-memory update, so testing can continue with the unsaved value.
        """
        if self.test_running:
            raise InvalidState("Calibration cannot be changed while a test is running.")
        record = self.calibration.record_reference(frequency, level_db)
        if self.repository is not None:
            try:
                self.repository.save_calibration_reference(record.frequency, level_db)
            except PersistenceError as exc:
                _log.warning("Calibration for %d Hz kept in memory only: %s", record.frequency.hz, exc)
                raise
        return record

    # ---- Test ----
    def start_test(self):
        return self.engine.start()

    def record_response(self, heard: bool) -> None:
        self.engine.record_response(heard)

    def replay(self) -> None:
        self.engine.replay()

    def complete_test(self):
        return self.engine.complete_test()

    def reset(self) -> None:
        self.engine.reset()
        self.patient = PatientInfo()

    # ---- Report ----
    def report_payload(self) -> Dict[str, Any]:
        if self.engine.state is not EngineState.COMPLETE:
            raise InvalidState("Results are available once the test is complete.")
        payload = self.engine.results.to_payload(self.patient, self.engine.started_at, self.engine.finished_at)
        payload["screening"]["duration"] = format_duration(self.engine.elapsed())
        last = self.calibration.last_calibration_date()
        payload["calibration"] = {
            "offsets": {str(k): v for k, v in self.calibration.get_map().items()},
            "lastCalibrationDate": last.isoformat() if last else None,
        }
        return payload

    def save_exam(self, root: Optional[str] = None) -> str:
        path = save_exam(self.report_payload(), self.patient.id, root=root)
        _log.info("Exam saved to %s", path)
        return path

    def export(self, webapp_url: str, auth_token: Optional[str] = None):
        return export_results_to_webapp(webapp_url, auth_token, self.report_payload())

from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path

import pytest

from hearscreen.errors import InvalidState, PersistenceError
from hearscreen.models import FREQUENCY_ORDER, Frequency, PatientInfo
from hearscreen.screening.threshold_engine import EngineState
from hearscreen.session import ScreeningSession
from hearscreen.storage import CalibrationRepository

from conftest import FakeSink, ImmediateScheduler, ManualScheduler


class BrokenRepository(CalibrationRepository):
    def save_calibration_reference(self, frequency, level_db):
        raise PersistenceError("disk full")


def _calibrate_all(session, level=20):
    for freq in FREQUENCY_ORDER:
        session.save_calibration(freq, level)


def test_calibration_is_persisted_and_reloaded(tmp_path: Path) -> None:
    path = str(tmp_path / "calibration.json")
    first = ScreeningSession(sink=FakeSink(), repository=CalibrationRepository(path))
    first.save_calibration(1000, 25)
    first.save_calibration(1000, 20)

    second = ScreeningSession(sink=FakeSink(), repository=CalibrationRepository(path))
    assert second.load_calibration() == 1
    assert second.calibration.record(1000).history == (25, 20)
    assert second.calibration.applied_offset(Frequency.HZ_1000) == 5


def test_persistence_failure_keeps_value_in_memory(tmp_path: Path) -> None:
    session = ScreeningSession(sink=FakeSink(), repository=BrokenRepository(str(tmp_path / "c.json")))
    with pytest.raises(PersistenceError):
        session.save_calibration(500, 30)
    assert session.calibration.record(500).history == (30,)
    assert session.calibration.applied_offset(500) == 15


def test_calibration_locked_while_test_runs() -> None:
    session = ScreeningSession(sink=FakeSink(), scheduler=ManualScheduler())
    _calibrate_all(session)
    session.start_test()
    with pytest.raises(InvalidState):
        session.save_calibration(500, 10)
    assert session.calibration.record(500).history == (20,)
    session.complete_test()
    session.save_calibration(500, 10)
    assert session.calibration.applied_offset(500) == -5


def test_report_needs_a_completed_test() -> None:
    session = ScreeningSession(sink=FakeSink(), scheduler=ManualScheduler())
    with pytest.raises(InvalidState):
        session.report_payload()


def test_report_payload_after_full_run() -> None:
    now = [datetime(2024, 5, 2, 10, 0, 0)]

    def clock():
        now[0] += timedelta(seconds=15)
        return now[0]

    session = ScreeningSession(
        sink=FakeSink(auto_finish=True),
        scheduler=ImmediateScheduler(),
        patient=PatientInfo(name="Ada", id="PZ0001", age="6"),
        clock=clock,
    )
    _calibrate_all(session)
    session.start_test()
    while session.engine.state is not EngineState.COMPLETE:
        session.record_response(False)

    payload = session.report_payload()
    assert payload["screening"]["outcome"] == "REFER"
    assert payload["screening"]["duration"] == "00:15"
    assert len(payload["thresholds"]) == 8
    assert all(t["dbhl"] == 60 for t in payload["thresholds"])
    assert payload["calibration"]["offsets"] == {"500": 5, "1000": 5, "2000": 5, "4000": 5}
    assert payload["calibration"]["lastCalibrationDate"]


def test_save_exam_writes_report(tmp_path: Path) -> None:
    session = ScreeningSession(sink=FakeSink(), scheduler=ManualScheduler(),
                               patient=PatientInfo(id="pz0002"))
    _calibrate_all(session)
    session.start_test()
    session.complete_test()
    path = session.save_exam(root=str(tmp_path))
    assert Path(path).parent == tmp_path / "PZ0002"


def test_reset_keeps_calibration_and_drops_patient() -> None:
    session = ScreeningSession(sink=FakeSink(), scheduler=ManualScheduler(),
                               patient=PatientInfo(name="Ada"))
    _calibrate_all(session)
    session.start_test()
    session.reset()
    assert session.engine.state is EngineState.NOT_STARTED
    assert session.patient == PatientInfo()
    assert session.calibration.is_fully_calibrated()
    assert not session.test_running

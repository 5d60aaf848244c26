from __future__ import annotations

import io
import json
from pathlib import Path

import pytest

from hearscreen import cli
from hearscreen.models import FREQUENCY_ORDER, PatientInfo
from hearscreen.session import ScreeningSession

from conftest import FakeSink, ImmediateScheduler


@pytest.fixture(autouse=True)
def app_home(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.setenv("HEARSCREEN_HOME", str(tmp_path))
    return tmp_path


def _session(out, calibrated=True):
    listener = cli.ConsoleListener(out)
    session = ScreeningSession(sink=FakeSink(auto_finish=True), scheduler=ImmediateScheduler(),
                               listener=listener, patient=PatientInfo(id="PZ0001"))
    if calibrated:
        for freq in FREQUENCY_ORDER:
            session.save_calibration(freq, 15)
    return session, listener


def _answers(*values):
    queue = list(values)
    return lambda prompt: queue.pop(0)


def test_calibrate_writes_file(app_home: Path) -> None:
    out = io.StringIO()
    path = app_home / "cal.json"
    assert cli.main(["--calibration", str(path), "calibrate", "500", "20"], out=out) == 0
    assert "500 Hz: history [20], offset +5 dB" in out.getvalue()
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["frequencies"]["500"]["history"] == [20]


def test_calibrate_rejects_bad_input(app_home: Path) -> None:
    out = io.StringIO()
    assert cli.main(["calibrate", "500", "95"], out=out) == 2
    assert cli.main(["calibrate", "750", "20"], out=out) == 2
    assert not (app_home / "calibration.json").exists()


def test_status_lists_missing_frequencies() -> None:
    out = io.StringIO()
    cli.main(["calibrate", "1000", "25"], out=io.StringIO())
    assert cli.main(["status"], out=out) == 0
    text = out.getvalue()
    assert "Not calibrated: 500 Hz, 2000 Hz, 4000 Hz" in text
    assert "+10" in text


def test_invalid_settings_file(app_home: Path) -> None:
    bad = app_home / "settings.json"
    bad.write_text(json.dumps({"step_db": 0}), encoding="utf-8")
    out = io.StringIO()
    assert cli.main(["--settings", str(bad), "status"], out=out) == 2
    assert "Invalid settings" in out.getvalue()


def test_interactive_run_without_responses() -> None:
    out = io.StringIO()
    session, listener = _session(out)
    code = cli.run_interactive(session, listener, input_fn=_answers(*["n"] * 8), out=out)
    assert code == 0
    text = out.getvalue()
    assert text.count("(REFER)") == 8
    assert "Outcome: REFER" in text


def test_interactive_replay_and_quit() -> None:
    out = io.StringIO()
    session, listener = _session(out)
    code = cli.run_interactive(session, listener, input_fn=_answers("y", "r", "?", "q"), out=out)
    assert code == 0
    assert session.engine.levels_presented("OD", 500) == [50, 40]
    assert len(session.sink.calls) == 3
    assert len(session.engine.results) == 0


def test_interactive_run_requires_calibration() -> None:
    out = io.StringIO()
    session, listener = _session(out, calibrated=False)
    assert cli.run_interactive(session, listener, input_fn=_answers(), out=out) == 2
    assert "calibrate" in out.getvalue()


def test_exams_lists_saved_runs(app_home: Path) -> None:
    out = io.StringIO()
    session, listener = _session(out)
    cli.run_interactive(session, listener, input_fn=_answers("q"), out=out)
    path = session.save_exam()
    listing = io.StringIO()
    assert cli.main(["exams", "pz0001"], out=listing) == 0
    assert listing.getvalue().strip() == path
    assert cli.main(["exams", "nobody"], out=io.StringIO()) == 1


def test_result_table_lists_each_threshold() -> None:
    out = io.StringIO()
    session, listener = _session(out)
    cli.run_interactive(session, listener, input_fn=_answers(*["n"] * 8), out=out)
    lines = out.getvalue().splitlines()
    table = lines[lines.index("Ear  Hz     dB HL  Result") + 1:]
    assert table[0].split() == ["OD", "500", "60", "refer"]
    assert table[7].split() == ["OS", "4000", "60", "refer"]

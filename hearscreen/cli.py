from __future__ import annotations
import argparse
import logging
import sys
import threading
from typing import Callable, Optional, TextIO

from .audio.devices import list_output_devices
from .errors import AudioUnavailable, InvalidState, NotCalibrated, PersistenceError, ScreeningError
from .models import PatientInfo
from .paths import get_log_file_path
from .screening.threshold_engine import EngineListener, EngineState, format_duration
from .session import ScreeningSession
from .settings import load_settings
from .storage import CalibrationRepository, list_exams
from .version import __version__


def _configure_logging(verbose: bool) -> None:
    handlers: list[logging.Handler] = []
    try:
        handlers.append(logging.FileHandler(get_log_file_path(), encoding="utf-8"))
    except OSError:
        pass
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.DEBUG if verbose else logging.WARNING)
    handlers.append(console)
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )


class ConsoleListener(EngineListener):
    def __init__(self, out: TextIO) -> None:
        self.out = out
        self.ready = threading.Event()

    def on_trial_presented(self, trial) -> None:
        print(f"  > {trial.ear.label} {trial.frequency.hz} Hz  {trial.nominal_level} dB HL", file=self.out)

    def on_awaiting_response(self, trial) -> None:
        self.ready.set()

    def on_threshold_captured(self, result) -> None:
        verdict = "pass" if result.passed else "REFER"
        print(f"  = {result.ear.label} {result.frequency.hz} Hz: {result.threshold} dB HL ({verdict})", file=self.out)

    def on_test_finished(self, results) -> None:
        self.ready.set()

    def on_error(self, error) -> None:
        print(f"  ! {error}", file=self.out)
        self.ready.set()


def print_results(session: ScreeningSession, out: TextIO) -> None:
    results = session.engine.results
    print("Ear  Hz     dB HL  Result", file=out)
    for _pid, _name, ear, hz, dbhl, verdict in results.to_rows(session.patient):
        print(f"{ear:<4} {hz:<6} {dbhl:<6} {verdict}", file=out)
    print(f"Outcome: {results.outcome.value}  (duration {format_duration(session.engine.elapsed())})", file=out)


def run_interactive(session: ScreeningSession, listener: ConsoleListener,
                    input_fn: Callable[[str], str] = input, out: TextIO = sys.stdout) -> int:
    """Drive the engine from keyboard answers until the test is complete."""
    engine = session.engine
    try:
        session.start_test()
    except NotCalibrated as exc:
        print(f"Cannot start: {exc}. Run 'hearscreen calibrate' first.", file=out)
        return 2
    except AudioUnavailable as exc:
        print(f"Cannot start: {exc}", file=out)
        return 1

    while engine.state is not EngineState.COMPLETE:
        listener.ready.wait()
        listener.ready.clear()
        state = engine.state
        if state is EngineState.PRESENTATION_FAILED:
            answer = input_fn("Audio unavailable. [r]etry / [q]uit: ").strip().lower()
            if answer.startswith("q"):
                engine.complete_test()
                break
            try:
                engine.retry()
            except AudioUnavailable as exc:
                print(f"  ! {exc}", file=out)
                listener.ready.set()
            continue
        if state is not EngineState.AWAITING_RESPONSE:
            continue
        answer = input_fn("Heard? [y]es / [n]o / [r]eplay / [q]uit: ").strip().lower()
        try:
            if answer.startswith("y"):
                engine.record_response(True)
            elif answer.startswith("n"):
                engine.record_response(False)
            elif answer.startswith("r"):
                engine.replay()
            elif answer.startswith("q"):
                engine.complete_test()
            else:
                listener.ready.set()
        except ScreeningError as exc:
            print(f"  ! {exc}", file=out)
            if engine.state is EngineState.AWAITING_RESPONSE:
                listener.ready.set()
    print_results(session, out)
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hearscreen", description="Pediatric pure-tone hearing screening")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--settings", help="Settings file (.json/.yaml)")
    parser.add_argument("--calibration", help="Calibration file (default: app data folder)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug log on console")
    sub = parser.add_subparsers(dest="command", required=True)

    cal = sub.add_parser("calibrate", help="Save a just-audible reference level")
    cal.add_argument("frequency", help="500, 1000, 2000 or 4000")
    cal.add_argument("level", type=int, help="Reference level in dB (0-80)")

    sub.add_parser("status", help="Show calibration status")
    sub.add_parser("devices", help="List audio output devices")

    exams = sub.add_parser("exams", help="List saved exams of a patient")
    exams.add_argument("patient_id", help="Patient ID")

    run = sub.add_parser("run", help="Run an interactive screening")
    run.add_argument("--name", default="", help="Patient name")
    run.add_argument("--id", dest="pid", default="", help="Patient ID")
    run.add_argument("--age", default="", help="Patient age")
    run.add_argument("--notes", default="", help="Notes")
    run.add_argument("--export-url", help="POST results to this URL")
    run.add_argument("--token", help="Auth token for --export-url")
    run.add_argument("--no-save", action="store_true", help="Do not save the exam JSON")
    return parser


def _cmd_calibrate(session: ScreeningSession, args, out: TextIO) -> int:
    if not 0 <= args.level <= 80:
        print(f"Reference level out of range (0-80): {args.level}", file=out)
        return 2
    try:
        record = session.save_calibration(args.frequency, args.level)
    except ValueError as exc:
        print(str(exc), file=out)
        return 2
    except PersistenceError as exc:
        record = session.calibration.record(args.frequency)
        print(f"Warning: calibration not saved ({exc})", file=out)
        print(f"{record.frequency.hz} Hz: history {list(record.history)}, offset {record.applied_offset:+d} dB", file=out)
        return 1
    print(f"{record.frequency.hz} Hz: history {list(record.history)}, offset {record.applied_offset:+d} dB", file=out)
    return 0


def _cmd_status(session: ScreeningSession, out: TextIO) -> int:
    print("Hz     History        Offset  Last calibration", file=out)
    for record in session.calibration.records():
        hist = ",".join(str(v) for v in record.history) or "-"
        offset = f"{record.applied_offset:+d}" if record.is_calibrated else "n/a"
        when = record.last_calibrated_at.strftime("%Y-%m-%d %H:%M") if record.last_calibrated_at else "-"
        print(f"{record.frequency.hz:<6} {hist:<14} {offset:<7} {when}", file=out)
    missing = session.calibration.missing_frequencies()
    if missing:
        print("Not calibrated: " + ", ".join(f"{f.hz} Hz" for f in missing), file=out)
    else:
        print("All frequencies calibrated.", file=out)
    return 0


def _cmd_devices(out: TextIO) -> int:
    devices = list_output_devices()
    if not devices:
        print("No stereo output devices found.", file=out)
        return 1
    for d in devices:
        mark = "*" if d["is_default"] else " "
        print(f"{mark} [{d['index']}] {d['name']} ({d['host_api']}, {d['sample_rate']:.0f} Hz)", file=out)
    return 0


def _cmd_exams(args, out: TextIO) -> int:
    paths = list_exams(args.patient_id)
    if not paths:
        print(f"No exams saved for {args.patient_id}.", file=out)
        return 1
    for path in paths:
        print(path, file=out)
    return 0


def _cmd_run(session: ScreeningSession, listener: ConsoleListener, args, out: TextIO) -> int:
    session.patient = PatientInfo(name=args.name, id=args.pid, age=args.age, notes=args.notes)
    code = run_interactive(session, listener, out=out)
    if code != 0:
        return code
    if not args.no_save:
        try:
            print(f"Exam saved: {session.save_exam()}", file=out)
        except (PersistenceError, InvalidState) as exc:
            print(f"Warning: exam not saved ({exc})", file=out)
    if args.export_url:
        ok, message = session.export(args.export_url, args.token)
        print(("Exported: " if ok else "Export failed: ") + message, file=out)
    return 0


def main(argv: Optional[list[str]] = None, out: TextIO = sys.stdout) -> int:
    args = _build_parser().parse_args(sys.argv[1:] if argv is None else argv)
    _configure_logging(args.verbose)

    if args.command == "devices":
        return _cmd_devices(out)
    if args.command == "exams":
        return _cmd_exams(args, out)

    try:
        settings = load_settings(args.settings)
    except (OSError, ValueError) as exc:
        print(f"Invalid settings: {exc}", file=out)
        return 2
    repository = CalibrationRepository(args.calibration, settings.reference_floor_db, settings.history_size)
    listener = ConsoleListener(out)
    session = ScreeningSession(settings, repository=repository, listener=listener)
    try:
        session.load_calibration()
    except PersistenceError as exc:
        print(f"Warning: {exc}", file=out)

    if args.command == "calibrate":
        return _cmd_calibrate(session, args, out)
    if args.command == "status":
        return _cmd_status(session, out)
    return _cmd_run(session, listener, args, out)


if __name__ == "__main__":
    raise SystemExit(main())

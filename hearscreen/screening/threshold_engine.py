"""Descend-then-ascend threshold search across both ears.

The engine starts loud, steps down on every "heard" until the child stops
responding, then steps up until the first "heard" again; that level is the
threshold. Right ear is tested before left, frequencies in ascending order.

Timing model: a tone is presented, the engine waits for the playback future,
then accepts exactly one operator response. The next tone is presented after
the inter-trial pause. Both waits are cancellable; every scheduled callback
carries a generation number so callbacks from a cancelled step are ignored.
"""

from __future__ import annotations

from concurrent.futures import Future
from datetime import datetime, timedelta
from enum import Enum
from functools import partial
from typing import Callable, List, Optional, Tuple
import logging
import threading

from ..audio.calibration import CalibrationStore
from ..audio.synthesizer import ToneSynthesizer
from ..errors import InvalidState, NotCalibrated, ScreeningError
from ..models import EAR_ORDER, FREQUENCY_ORDER, Ear, Frequency, Phase, ThresholdResult, TrialState, next_pair
from ..settings import ProtocolSettings
from .results import ResultAccumulator

_log = logging.getLogger("hearscreen.engine")


class EngineState(Enum):
    NOT_STARTED = "not_started"
    PRESENTING = "presenting"
    AWAITING_RESPONSE = "awaiting_response"
    PRESENTATION_FAILED = "presentation_failed"
    COMPLETE = "complete"


class TimerScheduler:
    """Runs callbacks on ``threading.Timer`` threads."""

    def call_later(self, delay_s: float, fn: Callable[[], None]):
        timer = threading.Timer(max(0.0, delay_s), fn)
        timer.daemon = True
        timer.start()
        return timer


class EngineListener:
    """Operator UI hooks. Every method is optional; the defaults do nothing."""

    def on_trial_presented(self, trial: TrialState) -> None:
        pass

    def on_awaiting_response(self, trial: TrialState) -> None:
        pass

    def on_threshold_captured(self, result: ThresholdResult) -> None:
        pass

    def on_test_finished(self, results: Tuple[ThresholdResult, ...]) -> None:
        pass

    def on_error(self, error: Exception) -> None:
        pass


def format_duration(delta: timedelta) -> str:
    total = max(0, int(delta.total_seconds()))
    minutes, seconds = divmod(total, 60)
    return f"{minutes:02d}:{seconds:02d}"


class ThresholdEngine:
    def __init__(self, synthesizer: ToneSynthesizer, calibration: CalibrationStore,
                 settings: Optional[ProtocolSettings] = None,
                 scheduler=None, listener: Optional[EngineListener] = None,
                 clock: Optional[Callable[[], datetime]] = None) -> None:
        self.synth = synthesizer
        self.calib = calibration
        self.settings = settings or ProtocolSettings()
        self.scheduler = scheduler or TimerScheduler()
        self.listener = listener or EngineListener()
        self._clock = clock or datetime.now
        self._lock = threading.RLock()
        self._state = EngineState.NOT_STARTED
        self._trial: Optional[TrialState] = None
        self._results = ResultAccumulator()
        self._trace: List[TrialState] = []
        self._generation = 0
        self._timer = None
        self.started_at: Optional[datetime] = None
        self.finished_at: Optional[datetime] = None

    # ---------------- State ----------------
    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def trial(self) -> Optional[TrialState]:
        return self._trial

    @property
    def results(self) -> ResultAccumulator:
        return self._results

    @property
    def trace(self) -> Tuple[TrialState, ...]:
        """Every trial presented so far, replays excluded."""
        return tuple(self._trace)

    def levels_presented(self, ear, frequency) -> List[int]:
        ear = Ear.coerce(ear)
        frequency = Frequency.coerce(frequency)
        return [t.nominal_level for t in self._trace if t.ear is ear and t.frequency is frequency]

    def elapsed(self) -> timedelta:
        if self.started_at is None:
            return timedelta(0)
        end = self.finished_at or self._clock()
        return end - self.started_at

    def _require(self, *states: EngineState) -> None:
        if self._state not in states:
            allowed = ", ".join(s.value for s in states)
            raise InvalidState(f"Operation not allowed in state '{self._state.value}' (expected: {allowed})")

    def _bump(self) -> int:
        self._generation += 1
        return self._generation

    # ---------------- Presentation ----------------
    def _present(self, trial: TrialState, gen: int) -> None:
        future = self.synth.present(trial.ear, trial.frequency, trial.nominal_level,
                                    self.settings.tone_duration_ms)
        self._trace.append(trial)
        self.listener.on_trial_presented(trial)
        _log.debug("Presented %s %d Hz at %d dB HL (%s)", trial.ear.label, trial.frequency.hz,
                   trial.nominal_level, trial.phase.value)
        future.add_done_callback(partial(self._on_tone_finished, gen))

    def _on_tone_finished(self, gen: int, future: Future) -> None:
        with self._lock:
            if gen != self._generation or self._state is not EngineState.PRESENTING:
                return
            if future.cancelled():
                return
            exc = future.exception()
            if exc is not None:
                _log.error("Playback failed: %s", exc)
                self._state = EngineState.PRESENTATION_FAILED
                self.listener.on_error(exc)
                return
            self._state = EngineState.AWAITING_RESPONSE
            self.listener.on_awaiting_response(self._trial)

    def _schedule(self, trial: TrialState) -> None:
        gen = self._bump()
        self._trial = trial
        self._state = EngineState.PRESENTING
        delay = self.settings.inter_trial_pause_ms / 1000.0
        self._timer = self.scheduler.call_later(delay, partial(self._fire, gen))

    def _fire(self, gen: int) -> None:
        with self._lock:
            if gen != self._generation or self._state is not EngineState.PRESENTING:
                return
            try:
                self._present(self._trial, gen)
            except ScreeningError as exc:
                _log.error("Scheduled presentation failed: %s", exc)
                self._state = EngineState.PRESENTATION_FAILED
                self.listener.on_error(exc)

    def _cancel_pending(self) -> None:
        self._bump()
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        self.synth.cancel()

    # ---------------- API ----------------
    def start(self) -> TrialState:
        with self._lock:
            self._require(EngineState.NOT_STARTED)
            missing = self.calib.missing_frequencies()
            if missing:
                raise NotCalibrated(missing)
            trial = TrialState(EAR_ORDER[0], FREQUENCY_ORDER[0], self.settings.start_level_db, Phase.DESCENDING)
            gen = self._bump()
            self._trial = trial
            self._state = EngineState.PRESENTING
            self.started_at = self._clock()
            try:
                self._present(trial, gen)
            except ScreeningError:
                self._trial = None
                self._state = EngineState.NOT_STARTED
                self.started_at = None
                raise
            _log.info("Screening started")
            return trial

    def record_response(self, heard: bool) -> None:
        with self._lock:
            self._require(EngineState.AWAITING_RESPONSE)
            s = self.settings
            trial = self._trial
            level = trial.nominal_level
            _log.debug("Response at %d dB HL: %s", level, "heard" if heard else "not heard")
            if heard:
                if trial.phase is Phase.DESCENDING and level > s.min_level_db:
                    self._schedule(trial.with_level(level - s.step_db))
                else:
                    self._resolve(trial, level, level <= s.pass_level_db)
            elif level >= s.start_level_db:
                # no response even at the starting (ceiling) level
                self._resolve(trial, s.no_response_level_db, False)
            else:
                self._schedule(trial.with_level(level + s.step_db, Phase.ASCENDING))

    def replay(self) -> None:
        with self._lock:
            self._require(EngineState.AWAITING_RESPONSE)
            gen = self._bump()
            self._state = EngineState.PRESENTING
            try:
                future = self.synth.replay()
            except ScreeningError:
                self._state = EngineState.AWAITING_RESPONSE
                raise
            _log.debug("Replayed %s %d Hz at %d dB HL", self._trial.ear.label, self._trial.frequency.hz,
                       self._trial.nominal_level)
            future.add_done_callback(partial(self._on_tone_finished, gen))

    def retry(self) -> None:
        with self._lock:
            self._require(EngineState.PRESENTATION_FAILED)
            gen = self._bump()
            self._state = EngineState.PRESENTING
            try:
                self._present(self._trial, gen)
            except ScreeningError:
                self._state = EngineState.PRESENTATION_FAILED
                raise

    def complete_test(self) -> Tuple[ThresholdResult, ...]:
        with self._lock:
            if self._state is EngineState.COMPLETE:
                raise InvalidState("The test is already complete.")
            self._finish()
            return self._results.results

    def reset(self) -> None:
        with self._lock:
            self._cancel_pending()
            self._state = EngineState.NOT_STARTED
            self._trial = None
            self._results = ResultAccumulator()
            self._trace = []
            self.started_at = None
            self.finished_at = None

    # ---------------- Internals ----------------
    def _resolve(self, trial: TrialState, threshold: int, passed: bool) -> None:
        result = ThresholdResult(trial.ear, trial.frequency, int(threshold), bool(passed))
        self._results.append(result)
        _log.info("Threshold %s %d Hz: %d dB HL (%s)", trial.ear.label, trial.frequency.hz,
                  result.threshold, "pass" if passed else "refer")
        self.listener.on_threshold_captured(result)
        following = next_pair(trial.ear, trial.frequency)
        if following is None:
            self._finish()
            return
        ear, freq = following
        self._schedule(TrialState(ear, freq, self.settings.start_level_db, Phase.DESCENDING))

    def _finish(self) -> None:
        self._cancel_pending()
        self._state = EngineState.COMPLETE
        self._results.seal()
        self.finished_at = self._clock()
        _log.info("Screening complete: %d results, outcome %s", len(self._results), self._results.outcome.value)
        self.listener.on_test_finished(self._results.results)

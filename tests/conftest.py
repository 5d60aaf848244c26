from __future__ import annotations

from concurrent.futures import Future
from typing import Any, Callable, List, Tuple

import pytest

from hearscreen.audio.calibration import CalibrationStore
from hearscreen.audio.playback import AudioSink
from hearscreen.audio.synthesizer import ToneSynthesizer
from hearscreen.errors import AudioUnavailable
from hearscreen.models import FREQUENCY_ORDER
from hearscreen.screening.threshold_engine import EngineListener, ThresholdEngine
from hearscreen.settings import ProtocolSettings


class FakeSink(AudioSink):
    """Records every play call; futures complete on ``finish()`` or immediately with ``auto_finish``."""

    def __init__(self, auto_finish: bool = False) -> None:
        self.auto_finish = auto_finish
        self.calls: List[Tuple[float, float, float, int]] = []
        self.futures: List[Future] = []
        self.available = True
        self.resume_calls = 0
        self.stop_calls = 0

    def resume(self) -> None:
        self.resume_calls += 1
        if not self.available:
            raise AudioUnavailable("device suspended")

    def play(self, frequency_hz, amplitude, pan, duration_ms) -> Future:
        future: Future = Future()
        self.calls.append((frequency_hz, amplitude, pan, duration_ms))
        self.futures.append(future)
        if self.auto_finish:
            future.set_result(None)
        return future

    def finish(self) -> None:
        pending = [f for f in self.futures if not f.done()]
        assert pending, "no tone in flight"
        pending[-1].set_result(None)

    def stop(self) -> None:
        self.stop_calls += 1
        for f in self.futures:
            if not f.done():
                f.cancel()


class _Handle:
    def __init__(self, fn: Callable[[], None], delay: float) -> None:
        self.fn = fn
        self.delay = delay
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Holds scheduled callbacks until the test calls ``run_pending``."""

    def __init__(self) -> None:
        self.handles: List[_Handle] = []

    def call_later(self, delay_s: float, fn: Callable[[], None]) -> _Handle:
        handle = _Handle(fn, delay_s)
        self.handles.append(handle)
        return handle

    def pending(self) -> List[_Handle]:
        return [h for h in self.handles if not h.cancelled]

    def run_pending(self) -> None:
        handles, self.handles = self.pending(), []
        for h in handles:
            h.fn()


class ImmediateScheduler:
    def call_later(self, delay_s: float, fn: Callable[[], None]) -> _Handle:
        fn()
        return _Handle(fn, delay_s)


class RecordingListener(EngineListener):
    def __init__(self) -> None:
        self.events: List[Tuple[str, Any]] = []

    def on_trial_presented(self, trial) -> None:
        self.events.append(("presented", trial))

    def on_awaiting_response(self, trial) -> None:
        self.events.append(("awaiting", trial))

    def on_threshold_captured(self, result) -> None:
        self.events.append(("threshold", result))

    def on_test_finished(self, results) -> None:
        self.events.append(("finished", results))

    def on_error(self, error) -> None:
        self.events.append(("error", error))

    def names(self) -> List[str]:
        return [name for name, _ in self.events]


@pytest.fixture
def settings() -> ProtocolSettings:
    return ProtocolSettings()


@pytest.fixture
def calibrated_store() -> CalibrationStore:
    store = CalibrationStore()
    for freq in FREQUENCY_ORDER:
        store.record_reference(freq, 15)
    return store


@pytest.fixture
def sink() -> FakeSink:
    return FakeSink()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def listener() -> RecordingListener:
    return RecordingListener()


@pytest.fixture
def engine(calibrated_store, sink, scheduler, listener, settings) -> ThresholdEngine:
    synth = ToneSynthesizer(calibrated_store, sink, tone_duration_ms=settings.tone_duration_ms)
    return ThresholdEngine(synth, calibrated_store, settings, scheduler=scheduler, listener=listener)

from __future__ import annotations
from concurrent.futures import Future
from typing import Optional
import logging
import threading

from ..errors import AlreadyPlaying, AudioUnavailable, InvalidState
from ..models import Ear, Frequency, Stimulus
from .calibration import CalibrationStore
from .playback import AudioSink

_log = logging.getLogger("hearscreen.synthesizer")

FULL_SCALE_DB = 100.0
TONE_DURATION_MS = 1500


def level_to_amplitude(physical_db: float, full_scale_db: float = FULL_SCALE_DB) -> float:
    """Linear amplitude for ``physical_db``; ``full_scale_db`` maps to 1.0."""
    amplitude = 10 ** ((float(physical_db) - float(full_scale_db)) / 20.0)
    return float(max(0.0, min(1.0, amplitude)))


class ToneSynthesizer:
    """Turns (ear, frequency, nominal level) into a calibrated tone on the sink.

    Only one presentation may be in flight. The returned future resolves when
    the sink reports that the tone finished.
    """

    def __init__(self, calibration: CalibrationStore, sink: AudioSink,
                 tone_duration_ms: int = TONE_DURATION_MS, full_scale_db: float = FULL_SCALE_DB) -> None:
        self.calibration = calibration
        self.sink = sink
        self.tone_duration_ms = int(tone_duration_ms)
        self.full_scale_db = float(full_scale_db)
        self._lock = threading.Lock()
        self._inflight: Optional[Future] = None
        self._last: Optional[Stimulus] = None

    @property
    def is_playing(self) -> bool:
        with self._lock:
            return self._inflight is not None and not self._inflight.done()

    @property
    def last_stimulus(self) -> Optional[Stimulus]:
        return self._last

    def physical_level(self, frequency: Frequency, nominal_level_db: int) -> int:
        return int(nominal_level_db) + self.calibration.applied_offset(frequency)

    def present(self, ear, frequency, nominal_level_db: int, duration_ms: Optional[int] = None) -> Future:
        ear = Ear.coerce(ear)
        frequency = Frequency.coerce(frequency)
        duration_ms = self.tone_duration_ms if duration_ms is None else int(duration_ms)
        if duration_ms <= 0:
            raise ValueError(f"Tone duration must be positive, got {duration_ms} ms")
        with self._lock:
            if self._inflight is not None and not self._inflight.done():
                raise AlreadyPlaying(f"A tone is already playing ({self._last.frequency.hz} Hz)")
            try:
                self.sink.resume()
            except AudioUnavailable:
                raise
            except Exception as exc:
                raise AudioUnavailable(f"Audio device could not be resumed: {exc}") from exc

            physical = self.physical_level(frequency, nominal_level_db)
            amplitude = level_to_amplitude(physical, self.full_scale_db)
            if physical > self.full_scale_db:
                _log.warning(
                    "%d Hz at %d dB HL needs %d dB, above the %.0f dB full scale: output capped",
                    frequency.hz, nominal_level_db, physical, self.full_scale_db,
                )
            try:
                future = self.sink.play(frequency.hz, amplitude, ear.pan, duration_ms)
            except AudioUnavailable:
                raise
            except Exception as exc:
                raise AudioUnavailable(f"Audio playback failed: {exc}") from exc
            self._inflight = future
            self._last = Stimulus(ear, frequency, int(nominal_level_db), duration_ms)
        _log.debug(
            "Tone %s %d Hz: nominal %d dB HL, physical %d dB, amplitude %.5f",
            ear.label, frequency.hz, nominal_level_db, physical, amplitude,
        )
        return future

    def replay(self) -> Future:
        stim = self._last
        if stim is None:
            raise InvalidState("No stimulus has been presented yet.")
        return self.present(stim.ear, stim.frequency, stim.nominal_level, stim.duration_ms)

    def cancel(self) -> None:
        with self._lock:
            future, self._inflight = self._inflight, None
        if future is not None and not future.done():
            future.cancel()
        # also releases a stream left open by a tone that already ended
        self.sink.stop()

from __future__ import annotations
from concurrent.futures import Future, InvalidStateError
from typing import Dict, Optional
import logging
import threading

import numpy as np

try:
    import sounddevice as sd
except Exception:  # pragma: no cover
    sd = None

from ..errors import AudioUnavailable
from .tone_generator import route_to_channel, shaped_tone

_log = logging.getLogger("hearscreen.audio")


def _resolve(future: Future) -> None:
    try:
        if not future.done():
            future.set_result(None)
    except InvalidStateError:
        # cancelled concurrently from the operator side
        pass


def _fail(future: Future, exc: BaseException) -> None:
    try:
        if not future.done():
            future.set_exception(exc)
    except InvalidStateError:
        pass


class AudioSink:
    """Output device contract used by the tone synthesizer.

    ``play`` must return a future that resolves once the tone has finished
    sounding; ``resume`` raises when the device cannot be used.
    """

    def resume(self) -> None:
        raise NotImplementedError

    def play(self, frequency_hz: float, amplitude: float, pan: float, duration_ms: int) -> Future:
        raise NotImplementedError

    def stop(self) -> None:
        raise NotImplementedError


class SoundDeviceSink(AudioSink):
    """PortAudio output through ``sounddevice``, one stream per tone."""

    def __init__(self, sample_rate: int = 48000, device: Optional[str | int] = None,
                 left_index: int = 0, right_index: int = 1, ramp_ms: int = 50) -> None:
        self.sample_rate = int(sample_rate)
        self.device = device
        self.ramp_ms = ramp_ms
        self.channel_map: Dict[str, int] = {"OS": int(left_index), "OD": int(right_index)}
        self._lock = threading.Lock()
        self._stream = None
        self._future: Optional[Future] = None
        self._buffer: Optional[np.ndarray] = None
        self._pos = 0

    @classmethod
    def from_settings(cls, settings) -> "SoundDeviceSink":
        return cls(
            sample_rate=settings.sample_rate,
            device=settings.output_device,
            left_index=settings.left_channel_index,
            right_index=settings.right_channel_index,
            ramp_ms=settings.ramp_ms,
        )

    def _channel_count(self) -> int:
        return max(self.channel_map.values()) + 1

    def channel_for_pan(self, pan: float) -> int:
        return self.channel_map["OD"] if pan >= 0 else self.channel_map["OS"]

    def render(self, frequency_hz: float, amplitude: float, pan: float, duration_ms: int) -> np.ndarray:
        mono = shaped_tone(frequency_hz, duration_ms, self.sample_rate, amplitude, ramp_ms=self.ramp_ms)
        return route_to_channel(mono, self.channel_for_pan(pan), self._channel_count())

    def resume(self) -> None:
        if sd is None:
            raise AudioUnavailable("sounddevice is not available: install the dependency to play audio.")
        try:
            sd.query_devices(self.device, kind='output')
        except Exception as exc:
            raise AudioUnavailable(f"Output device unavailable: {exc}") from exc

    def play(self, frequency_hz: float, amplitude: float, pan: float, duration_ms: int) -> Future:
        if sd is None:
            raise AudioUnavailable("sounddevice is not available: install the dependency to play audio.")
        buffer = self.render(frequency_hz, amplitude, pan, duration_ms)
        future: Future = Future()
        self._close_stream()
        with self._lock:
            self._buffer = buffer
            self._pos = 0
            self._future = future
        kwargs = {
            'samplerate': self.sample_rate,
            'channels': buffer.shape[1],
            'dtype': 'float32',
            'callback': self._callback,
            'finished_callback': lambda: _resolve(future),
            'latency': 'low',
        }
        if self.device is not None:
            kwargs['device'] = self.device
        try:
            stream = sd.OutputStream(**kwargs)
            stream.start()
        except Exception as exc:
            _fail(future, exc)
            raise AudioUnavailable(f"Audio playback failed: {exc}") from exc
        with self._lock:
            self._stream = stream
        _log.debug("Stream started: %.0f Hz amp=%.5f pan=%+.0f %d ms", frequency_hz, amplitude, pan, duration_ms)
        return future

    def _callback(self, outdata, frames, _time, status) -> None:  # pragma: no cover
        if status:
            _log.debug("PortAudio status: %s", status)
        with self._lock:
            buffer = self._buffer
            pos = self._pos
            if buffer is None:
                outdata[:] = 0.0
                raise sd.CallbackStop
            chunk = buffer[pos:pos + frames]
            self._pos = pos + len(chunk)
        outdata[:len(chunk)] = chunk
        if len(chunk) < frames:
            outdata[len(chunk):] = 0.0
            raise sd.CallbackStop

    def _close_stream(self) -> None:
        with self._lock:
            stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.abort()
                stream.close()
            except Exception as exc:
                _log.debug("Error closing stream: %s", exc)

    def stop(self) -> None:
        with self._lock:
            future, self._future = self._future, None
            self._buffer = None
        # cancel before aborting, otherwise finished_callback resolves it
        if future is not None:
            future.cancel()
        self._close_stream()

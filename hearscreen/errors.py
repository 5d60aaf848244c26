from __future__ import annotations
from typing import Iterable


class ScreeningError(Exception):
    """Base class for every error raised by the screening core."""


class NotCalibrated(ScreeningError):
    """Raised when a test is started before every frequency has a calibration reference."""

    def __init__(self, missing: Iterable[object]) -> None:
        self.missing = tuple(missing)
        labels = ", ".join(f"{int(f)} Hz" for f in self.missing)
        super().__init__(f"Calibration missing for: {labels}")


class AudioUnavailable(ScreeningError):
    """The audio backend could not be resumed; the presentation did not happen."""


class AlreadyPlaying(ScreeningError):
    """A tone is already in flight."""


class InvalidState(ScreeningError):
    """Operation requested in a state that does not allow it."""


class PersistenceError(ScreeningError):
    """Calibration or exam data could not be written to disk."""

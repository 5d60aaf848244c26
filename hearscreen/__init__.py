"""Pediatric pure-tone hearing screening: calibration, tone playback and the
threshold-seeking protocol."""

from .version import __version__

__all__ = ["__version__"]

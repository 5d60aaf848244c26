from __future__ import annotations
from typing import List, Dict

try:
    import sounddevice as sd
except Exception:  # pragma: no cover - optional backend
    sd = None


def list_output_devices() -> List[Dict[str, object]]:
    """List stereo-capable output devices known to PortAudio."""
    devices: List[Dict[str, object]] = []
    if sd is None:
        return devices

    try:
        default_output = sd.default.device[1]
    except Exception:
        default_output = None

    try:
        hostapis = sd.query_hostapis()
    except Exception:
        hostapis = []

    try:
        infos = sd.query_devices()
    except Exception:
        return devices

    for idx, info in enumerate(infos):
        if info.get("max_output_channels", 0) < 2:
            continue
        hostapi_idx = info.get("hostapi")
        host_name = ""
        if hostapis and hostapi_idx is not None and 0 <= hostapi_idx < len(hostapis):
            host_name = hostapis[hostapi_idx].get("name", "")
        devices.append(
            {
                "name": info.get("name", f"Device {idx}"),
                "host_api": host_name,
                "sample_rate": info.get("default_samplerate", 48000),
                "index": idx,
                "is_default": default_output == idx,
            }
        )
    return devices

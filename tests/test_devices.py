from __future__ import annotations

from types import SimpleNamespace

from hearscreen.audio import devices


class _FakeSoundDevice:
    default = SimpleNamespace(device=(0, 2))

    @staticmethod
    def query_hostapis():
        return [{"name": "ALSA"}]

    @staticmethod
    def query_devices():
        return [
            {"name": "Mic", "max_output_channels": 0, "hostapi": 0},
            {"name": "Mono speaker", "max_output_channels": 1, "hostapi": 0},
            {"name": "Headphones", "max_output_channels": 2, "hostapi": 0, "default_samplerate": 44100.0},
        ]


def test_only_stereo_outputs_are_listed(monkeypatch) -> None:
    monkeypatch.setattr(devices, "sd", _FakeSoundDevice)
    listed = devices.list_output_devices()
    assert listed == [{
        "name": "Headphones",
        "host_api": "ALSA",
        "sample_rate": 44100.0,
        "index": 2,
        "is_default": True,
    }]


def test_no_backend_lists_nothing(monkeypatch) -> None:
    monkeypatch.setattr(devices, "sd", None)
    assert devices.list_output_devices() == []

"""Protocol and audio settings persisted in the app-data folder.

Every policy constant of the screening protocol lives here so that clinics can
tune the levels without touching the engine. Settings are stored as JSON by
default; ``.yaml``/``.yml`` files are read through PyYAML.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Union
import json
import os

try:
    import yaml  # type: ignore
except Exception:  # pragma: no cover - yaml is optional
    yaml = None


@dataclass(frozen=True)
class ProtocolSettings:
    # staircase, dB HL (nominal)
    start_level_db: int = 50
    step_db: int = 10
    min_level_db: int = 20
    pass_level_db: int = 30
    no_response_level_db: int = 60
    # calibration
    reference_floor_db: int = 15
    history_size: int = 3
    # timing
    inter_trial_pause_ms: int = 3000
    tone_duration_ms: int = 1500
    ramp_ms: int = 50
    # output
    full_scale_db: float = 100.0
    sample_rate: int = 48000
    # PortAudio index (int) or device name substring (str)
    output_device: Optional[Union[int, str]] = None
    left_channel_index: int = 0
    right_channel_index: int = 1

    def validate(self) -> "ProtocolSettings":
        if self.step_db <= 0:
            raise ValueError("step_db must be positive.")
        if not self.min_level_db <= self.pass_level_db <= self.start_level_db:
            raise ValueError("Expected min_level_db <= pass_level_db <= start_level_db.")
        if self.no_response_level_db <= self.start_level_db:
            raise ValueError("no_response_level_db must be above start_level_db.")
        if self.history_size < 1:
            raise ValueError("history_size must be at least 1.")
        if self.inter_trial_pause_ms < 0 or self.tone_duration_ms <= 0:
            raise ValueError("Timing values must be non-negative, tone duration positive.")
        if self.ramp_ms < 0 or 2 * self.ramp_ms > self.tone_duration_ms:
            raise ValueError("ramp_ms must fit twice inside tone_duration_ms.")
        if self.sample_rate <= 0:
            raise ValueError("sample_rate must be positive.")
        if self.left_channel_index < 0 or self.right_channel_index < 0:
            raise ValueError("Channel indices must be non-negative.")
        if self.left_channel_index == self.right_channel_index:
            raise ValueError("Left and right channels must differ.")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProtocolSettings":
        known = {f.name: f for f in fields(cls)}
        values: Dict[str, Any] = {}
        for key, value in (data or {}).items():
            field = known.get(key)
            if field is None:
                continue
            default = field.default
            if key == "output_device":
                values[key] = _device_id(value)
                continue
            if value is None:
                continue
            try:
                values[key] = type(default)(value)
            except (TypeError, ValueError) as exc:
                raise ValueError(f"Invalid value for '{key}': {value!r}") from exc
        return replace(cls(), **values).validate()


def _device_id(value: Any) -> Optional[Union[int, str]]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"Invalid value for 'output_device': {value!r}")
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text:
        return None
    if text.isdigit():
        return int(text)
    return text


def _read_raw(path: Path) -> Dict[str, Any]:
    with path.open('r', encoding='utf-8') as handle:
        if path.suffix.lower() in {'.yaml', '.yml'}:
            if yaml is None:
                raise ValueError('YAML support unavailable: install PyYAML.')
            data = yaml.safe_load(handle)
        else:
            data = json.load(handle)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Settings file {path} must contain a mapping.")
    return data


def load_settings(path: str | os.PathLike[str] | None = None) -> ProtocolSettings:
    """Load settings from *path*, falling back to defaults when the file is missing."""
    if path is None:
        from .paths import path_settings
        path = path_settings()
    settings_path = Path(path)
    if not settings_path.exists():
        return ProtocolSettings()
    try:
        data = _read_raw(settings_path)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Settings file {settings_path} is not valid JSON: {exc}") from exc
    return ProtocolSettings.from_dict(data)


def save_settings(settings: ProtocolSettings, path: str | os.PathLike[str] | None = None) -> str:
    if path is None:
        from .paths import path_settings
        path = path_settings()
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = f"{target}.tmp"
    with open(tmp_path, 'w', encoding='utf-8') as handle:
        if target.suffix.lower() in {'.yaml', '.yml'} and yaml is not None:
            yaml.safe_dump(settings.to_dict(), handle, sort_keys=False)
        else:
            json.dump(settings.to_dict(), handle, ensure_ascii=False, indent=2)
    os.replace(tmp_path, target)
    return str(target)

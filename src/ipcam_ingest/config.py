"""Construction-time configuration for stream workers."""
from __future__ import annotations

import json
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from .motion import MotionCalibration, MotionSensitivity
from .schedule import ScheduleGrid, parse_schedule
from .source import DEFAULT_READ_TIMEOUT_S, SOURCE_BACKENDS, normalise_backend, redact_address

DEFAULT_SAVE_DIR = Path(os.environ.get("IPCAM_RECORDINGS_DIR", "recordings"))
DEFAULT_SEGMENT_DURATION_S = 600.0
DEFAULT_TARGET_FPS = 25.0
DEFAULT_ENCODING = "mpeg4"
DEFAULT_CONTAINER_EXTENSION = "mp4"
DEFAULT_RECONNECT_AFTER_FAILURES = 50
DEFAULT_RECONNECT_DELAY_S = 2.0
DEFAULT_FPS_WINDOW_S = 2.0


@dataclass(frozen=True, slots=True)
class StreamConfig:
    """Immutable settings for one camera stream."""

    name: str
    address: str
    save_dir: Path = DEFAULT_SAVE_DIR
    segment_duration_s: float = DEFAULT_SEGMENT_DURATION_S
    recording_schedule: ScheduleGrid | None = None
    motion_schedule: ScheduleGrid | None = None
    motion_sensitivity: MotionSensitivity = MotionSensitivity.OFF
    shrink_for_motion: bool = False
    target_fps: float | None = None
    source_backend: str = field(default_factory=lambda: normalise_backend(None))
    encoding: str = DEFAULT_ENCODING
    container_extension: str = DEFAULT_CONTAINER_EXTENSION
    reconnect_after_failures: int = DEFAULT_RECONNECT_AFTER_FAILURES
    reconnect_delay_s: float = DEFAULT_RECONNECT_DELAY_S
    read_timeout_s: float = DEFAULT_READ_TIMEOUT_S
    fps_window_s: float = DEFAULT_FPS_WINDOW_S
    motion_calibration: Mapping[MotionSensitivity, MotionCalibration] | None = None

    def __post_init__(self) -> None:
        name = str(self.name).strip()
        if not name:
            raise ValueError("Stream name must not be empty")
        address = str(self.address).strip()
        if not address:
            raise ValueError("Stream address must not be empty")
        object.__setattr__(self, "name", name)
        object.__setattr__(self, "address", address)
        object.__setattr__(self, "save_dir", Path(self.save_dir))
        object.__setattr__(
            self, "segment_duration_s", _positive_float(self.segment_duration_s, "Segment duration")
        )
        object.__setattr__(self, "recording_schedule", parse_schedule(self.recording_schedule))
        object.__setattr__(self, "motion_schedule", parse_schedule(self.motion_schedule))
        object.__setattr__(self, "motion_sensitivity", MotionSensitivity.parse(self.motion_sensitivity))
        object.__setattr__(self, "shrink_for_motion", _parse_flag(self.shrink_for_motion, default=False))
        if self.target_fps is not None:
            fps = _positive_float(self.target_fps, "Target fps")
            if fps > 120:
                raise ValueError("Target fps must not exceed 120")
            object.__setattr__(self, "target_fps", fps)
        backend = normalise_backend(self.source_backend)
        if backend not in SOURCE_BACKENDS:
            raise ValueError(f"Unknown source backend: {self.source_backend}")
        object.__setattr__(self, "source_backend", backend)
        extension = str(self.container_extension).strip().lstrip(".")
        if not extension:
            raise ValueError("Container extension must not be empty")
        object.__setattr__(self, "container_extension", extension)
        try:
            failures = int(self.reconnect_after_failures)
        except (TypeError, ValueError) as exc:
            raise ValueError("reconnect_after_failures must be an integer") from exc
        if failures < 1:
            raise ValueError("reconnect_after_failures must be at least 1")
        object.__setattr__(self, "reconnect_after_failures", failures)
        object.__setattr__(
            self, "reconnect_delay_s", _non_negative_float(self.reconnect_delay_s, "Reconnect delay")
        )
        object.__setattr__(self, "read_timeout_s", _positive_float(self.read_timeout_s, "Read timeout"))
        object.__setattr__(self, "fps_window_s", _positive_float(self.fps_window_s, "Fps window"))
        if self.motion_calibration is not None:
            object.__setattr__(self, "motion_calibration", _parse_calibration(self.motion_calibration))

    @property
    def display_address(self) -> str:
        return redact_address(self.address)

    @property
    def uses_recording_schedule(self) -> bool:
        return self.recording_schedule is not None

    @property
    def motion_enabled(self) -> bool:
        return self.motion_sensitivity is not MotionSensitivity.OFF

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable view with credentials redacted."""

        return {
            "name": self.name,
            "address": self.display_address,
            "save_dir": str(self.save_dir),
            "segment_duration_s": self.segment_duration_s,
            "recording_schedule": self.recording_schedule.to_list() if self.recording_schedule else None,
            "motion_schedule": self.motion_schedule.to_list() if self.motion_schedule else None,
            "motion_sensitivity": self.motion_sensitivity.name.lower(),
            "shrink_for_motion": self.shrink_for_motion,
            "target_fps": self.target_fps,
            "source_backend": self.source_backend,
            "encoding": self.encoding,
            "container_extension": self.container_extension,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "StreamConfig":
        if not isinstance(payload, Mapping):
            raise ValueError("Stream configuration must be a mapping")
        data = dict(payload)
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown stream configuration keys: {', '.join(unknown)}")
        if "name" not in data or "address" not in data:
            raise ValueError("Stream configuration requires 'name' and 'address'")
        return cls(**data)


def _positive_float(value: Any, label: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{label} must be numeric") from exc
    if not math.isfinite(number) or number <= 0:
        raise ValueError(f"{label} must be a positive finite value")
    return number


def _non_negative_float(value: Any, label: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{label} must be numeric") from exc
    if not math.isfinite(number) or number < 0:
        raise ValueError(f"{label} must not be negative")
    return number


def _parse_flag(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        if math.isnan(float(value)):
            raise ValueError("Flags must be boolean values")
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if not text:
            return default
        if text in {"true", "1", "yes", "on", "enabled"}:
            return True
        if text in {"false", "0", "no", "off", "disabled"}:
            return False
    raise ValueError("Flags must be boolean values")


def _parse_calibration(value: Any) -> dict[MotionSensitivity, MotionCalibration]:
    if not isinstance(value, Mapping):
        raise ValueError("Motion calibration must be a mapping of sensitivity to thresholds")
    table: dict[MotionSensitivity, MotionCalibration] = {}
    for key, entry in value.items():
        level = MotionSensitivity.parse(key)
        if level is MotionSensitivity.OFF:
            raise ValueError("Motion calibration cannot be defined for the 'off' level")
        if isinstance(entry, MotionCalibration):
            table[level] = entry
        elif isinstance(entry, Mapping):
            try:
                table[level] = MotionCalibration(**dict(entry))
            except TypeError as exc:
                raise ValueError(f"Invalid calibration for {level.name.lower()}: {exc}") from exc
        else:
            raise ValueError(f"Invalid calibration for {level.name.lower()}")
    return table


def load_stream_configs(path: Path | str) -> list[StreamConfig]:
    """Read stream configurations from a JSON file.

    The file may hold a single mapping, a list of mappings or an object with a
    ``streams`` list.
    """

    config_path = Path(path)
    try:
        payload = json.loads(config_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid stream configuration JSON in {config_path}") from exc
    if isinstance(payload, Mapping) and "streams" in payload:
        payload = payload["streams"]
    if isinstance(payload, Mapping):
        entries = [payload]
    elif isinstance(payload, list):
        entries = payload
    else:
        raise ValueError("Stream configuration file must contain an object or a list")
    configs = [StreamConfig.from_dict(entry) for entry in entries]
    names = [config.name for config in configs]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise ValueError(f"Duplicate stream names: {', '.join(duplicates)}")
    return configs


__all__ = [
    "DEFAULT_SAVE_DIR",
    "DEFAULT_SEGMENT_DURATION_S",
    "DEFAULT_TARGET_FPS",
    "StreamConfig",
    "load_stream_configs",
]

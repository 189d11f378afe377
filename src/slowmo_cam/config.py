"""Pipeline configuration structures."""
from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Mapping

import json
import math

from .camera import CAMERA_SOURCES, parse_camera_choice
from .export import ExportFormat
from .sensor import MOTION_SENSORS


def parse_resolution(value: str) -> tuple[int, int]:
    """Parse ``"<width>x<height>"`` into a tuple of positive integers."""

    width, sep, height = value.strip().lower().partition("x")
    if not sep:
        raise ValueError("Resolution must be formatted as <width>x<height>")
    try:
        width_i = int(width)
        height_i = int(height)
    except ValueError as exc:
        raise ValueError("Resolution must be formatted as <width>x<height>") from exc
    if width_i <= 0 or height_i <= 0:
        raise ValueError("Resolution values must be positive integers")
    return width_i, height_i


def _positive(name: str, value: float) -> float:
    try:
        value_f = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be numeric") from exc
    if not math.isfinite(value_f) or value_f <= 0:
        raise ValueError(f"{name} must be a positive number")
    return value_f


@dataclass(slots=True)
class PipelineSettings:
    """User configurable options for the motion capture pipeline."""

    motion_threshold: float = 1.5
    recording_duration_s: float = 10.0
    scale_factor: float = 2.0
    sample_rate_hz: int = 50
    sensor: str = "synthetic"
    camera: str = "synthetic"
    resolution: str = "640x480"
    framerate: int = 30
    output_dir: str = "data/captures"
    export_container: str = "mp4"
    export_codec: str = "auto"
    raw_container: str = "mov"
    export_attempts: int = 1

    def __post_init__(self) -> None:
        threshold = float(self.motion_threshold)
        if not math.isfinite(threshold) or threshold < 0:
            raise ValueError("Motion threshold must be a non-negative number")
        self.motion_threshold = threshold
        self.recording_duration_s = _positive("Recording duration", self.recording_duration_s)
        self.scale_factor = _positive("Scale factor", self.scale_factor)
        self.sample_rate_hz = int(self.sample_rate_hz)
        if self.sample_rate_hz < 1 or self.sample_rate_hz > 1000:
            raise ValueError("Sample rate must be between 1 and 1000 Hz")
        self.sensor = self.sensor.strip().lower()
        if self.sensor not in MOTION_SENSORS:
            raise ValueError(f"Unknown motion sensor: {self.sensor!r}")
        backend, device = parse_camera_choice(self.camera)
        if backend not in CAMERA_SOURCES:
            raise ValueError(f"Unknown camera source: {self.camera!r}")
        self.camera = backend if device is None else f"{backend}:{device}"
        parse_resolution(self.resolution)
        self.framerate = int(self.framerate)
        if self.framerate < 1 or self.framerate > 120:
            raise ValueError("Framerate must be between 1 and 120 fps")
        if not str(self.output_dir).strip():
            raise ValueError("Output directory must not be empty")
        self.export_container = ExportFormat(self.export_container, self.export_codec).container
        self.raw_container = self.raw_container.strip().lower().lstrip(".")
        if self.raw_container not in {"mov", "mp4", "mkv"}:
            raise ValueError("Raw container must be mov, mp4 or mkv")
        self.export_attempts = int(self.export_attempts)
        if self.export_attempts < 1:
            raise ValueError("Export attempts must be at least 1")

    @property
    def frame_size(self) -> tuple[int, int]:
        return parse_resolution(self.resolution)

    @property
    def export_format(self) -> ExportFormat:
        return ExportFormat(container=self.export_container, codec=self.export_codec)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PipelineSettings":
        known = {item.name for item in fields(cls)}
        data = {key: value for key, value in dict(payload).items() if key in known}
        return cls(**data)

    def merged(self, changes: Mapping[str, Any]) -> "PipelineSettings":
        """Return a validated copy with *changes* applied."""

        data = self.to_dict()
        data.update({key: value for key, value in changes.items() if value is not None})
        return PipelineSettings.from_dict(data)


class PipelineSettingsStore:
    """Simple JSON backed persistence for :class:`PipelineSettings`."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> PipelineSettings:
        if not self._path.exists():
            return PipelineSettings()
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValueError("Invalid pipeline settings JSON") from exc
        if not isinstance(raw, dict):
            raise ValueError("Pipeline settings must be a JSON object")
        return PipelineSettings.from_dict(raw)

    def save(self, settings: PipelineSettings) -> None:
        payload = settings.to_dict()
        self._path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")


__all__ = [
    "PipelineSettings",
    "PipelineSettingsStore",
    "parse_resolution",
]

"""Tests for pipeline settings validation and persistence."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from slowmo_cam.config import PipelineSettings, PipelineSettingsStore, parse_resolution


def test_defaults_match_documented_values() -> None:
    settings = PipelineSettings()

    assert settings.motion_threshold == 1.5
    assert settings.recording_duration_s == 10.0
    assert settings.scale_factor == 2.0
    assert settings.frame_size == (640, 480)
    assert settings.export_format.container == "mp4"
    assert settings.export_attempts == 1


@pytest.mark.parametrize(
    "overrides",
    [
        {"motion_threshold": -0.1},
        {"recording_duration_s": 0},
        {"scale_factor": float("nan")},
        {"sample_rate_hz": 0},
        {"camera": "polaroid"},
        {"sensor": "seismograph"},
        {"resolution": "wide"},
        {"framerate": 0},
        {"export_container": "avi"},
        {"raw_container": "gif"},
        {"export_attempts": 0},
    ],
)
def test_invalid_values_are_rejected(overrides: dict[str, object]) -> None:
    with pytest.raises(ValueError):
        PipelineSettings(**overrides)


def test_round_trip_through_store(tmp_path: Path) -> None:
    store = PipelineSettingsStore(tmp_path / "nested" / "settings.json")
    assert store.load() == PipelineSettings()

    settings = PipelineSettings(motion_threshold=2.25, camera="OpenCV", export_container=".MKV")
    store.save(settings)

    loaded = store.load()
    assert loaded == settings
    assert loaded.camera == "opencv"
    assert loaded.export_container == "mkv"
    assert json.loads(store.path.read_text(encoding="utf-8"))["motion_threshold"] == 2.25


def test_unknown_keys_are_ignored() -> None:
    settings = PipelineSettings.from_dict({"scale_factor": 4, "legacy_option": True})
    assert settings.scale_factor == 4.0


def test_merged_validates_changes() -> None:
    settings = PipelineSettings()

    updated = settings.merged({"recording_duration_s": 5, "camera": None})
    assert updated.recording_duration_s == 5.0
    assert updated.camera == "synthetic"
    with pytest.raises(ValueError):
        settings.merged({"framerate": 500})


def test_invalid_json_is_reported(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(ValueError):
        PipelineSettingsStore(path).load()


def test_parse_resolution() -> None:
    assert parse_resolution("1280x720") == (1280, 720)
    with pytest.raises(ValueError):
        parse_resolution("0x720")


def test_camera_device_and_alias_are_normalised() -> None:
    settings = PipelineSettings(camera=" USB:/dev/video2 ")

    assert settings.camera == "opencv:/dev/video2"
    assert PipelineSettings(camera="test").camera == "synthetic"

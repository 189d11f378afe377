"""Tests for slow-motion composition building."""

from __future__ import annotations

from fractions import Fraction
from pathlib import Path

import av
import numpy as np
import pytest

from slowmo_cam.artifacts import RawAsset
from slowmo_cam.timescale import (
    Composition,
    CompositionError,
    CompositionTrack,
    NoVideoTrack,
    TimeRange,
    TimeTransformEngine,
)


def test_ten_second_recording_becomes_twenty_seconds(make_clip) -> None:
    clip = make_clip(frames=20, fps=10)
    engine = TimeTransformEngine()

    composition = engine.transform(RawAsset(location=clip, duration=10.0, fps=10.0))

    assert composition.duration == pytest.approx(20.0)
    track = composition.video_track
    assert track.source == clip
    assert track.source_range.start == 0.0
    assert track.source_range.duration == pytest.approx(10.0)
    assert track.scaled_duration == pytest.approx(20.0)
    assert track.time_scale == pytest.approx(2.0)
    assert track.frame_count == 20
    assert track.output_frame_rate() == Fraction(5)


@pytest.mark.parametrize("scale", [0.5, 1.0, 2.0, 4.0])
def test_duration_scales_by_factor(make_clip, scale: float) -> None:
    clip = make_clip(frames=6, fps=10)
    engine = TimeTransformEngine(scale_factor=3.0)

    composition = engine.transform(RawAsset(location=clip, duration=0.6), scale_factor=scale)

    assert composition.duration == pytest.approx(0.6 * scale)


@pytest.mark.parametrize("scale", [0, -1.0, float("nan"), float("inf"), "fast"])
def test_invalid_scale_factor_is_rejected(scale) -> None:
    with pytest.raises(CompositionError):
        TimeTransformEngine(scale_factor=scale)


def test_zero_duration_is_rejected(make_clip) -> None:
    clip = make_clip(frames=3)

    with pytest.raises(CompositionError):
        TimeTransformEngine().transform(RawAsset(location=clip, duration=0.0))


def test_missing_file_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(CompositionError):
        TimeTransformEngine().transform(RawAsset(location=tmp_path / "gone.mov", duration=1.0))


def test_audio_only_file_has_no_video_track(tmp_path: Path) -> None:
    path = tmp_path / "sound.wav"
    with av.open(str(path), mode="w") as container:
        stream = container.add_stream("pcm_s16le", rate=8000)
        samples = np.zeros((1, 800), dtype=np.int16)
        frame = av.AudioFrame.from_ndarray(samples, format="s16", layout="mono")
        frame.sample_rate = 8000
        for packet in stream.encode(frame):
            container.mux(packet)
        for packet in stream.encode():
            container.mux(packet)

    with pytest.raises(NoVideoTrack):
        TimeTransformEngine().transform(RawAsset(location=path, duration=0.1))


def test_garbage_file_is_a_composition_error(tmp_path: Path) -> None:
    path = tmp_path / "broken.mov"
    path.write_bytes(b"not really a movie")

    with pytest.raises(CompositionError):
        TimeTransformEngine().transform(RawAsset(location=path, duration=1.0))


def test_composition_requires_tracks() -> None:
    with pytest.raises(CompositionError):
        Composition(tracks=(), duration=1.0)


def test_composition_serialises_tracks(make_clip) -> None:
    clip = make_clip(frames=4, fps=10)
    composition = TimeTransformEngine().transform(RawAsset(location=clip, duration=0.4))

    payload = composition.to_dict()

    assert payload["duration"] == pytest.approx(0.8)
    assert payload["tracks"][0]["media_type"] == "video"
    assert payload["tracks"][0]["source"] == str(clip)


def _track(scale: float, rate: int = 10) -> CompositionTrack:
    return CompositionTrack(
        media_type="video",
        source=Path("clip.mov"),
        stream_index=0,
        source_range=TimeRange(start=0.0, duration=1.0),
        scaled_duration=scale,
        frame_rate=Fraction(rate),
        frame_count=rate,
        width=32,
        height=24,
    )


def test_small_scale_keeps_a_positive_output_rate() -> None:
    rate = _track(0.0001).output_frame_rate()

    assert rate > 0
    assert float(rate) == pytest.approx(100000.0)


def test_scale_too_large_for_any_frame_rate_is_rejected() -> None:
    with pytest.raises(CompositionError):
        _track(1e9).output_frame_rate()

"""Tests for the capture session and its movie file output."""

from __future__ import annotations

import asyncio
from pathlib import Path

import av
import numpy as np
import pytest

from conftest import StaticCamera
from slowmo_cam import capture as capture_module
from slowmo_cam.artifacts import DestinationExists, DestinationRegistry, RawAsset
from slowmo_cam.camera import BaseCamera
from slowmo_cam.capture import (
    AlreadyRecording,
    CaptureSession,
    DeviceUnavailable,
    OutputAttachError,
    RecordingError,
)
from slowmo_cam.controller import RecordingController, RecordingState


def _session(camera: StaticCamera | None, **kwargs) -> CaptureSession:
    kwargs.setdefault("fps", 20)
    kwargs.setdefault("registry", DestinationRegistry())
    return CaptureSession(lambda: camera, **kwargs)


async def _wait_for(outcomes: list, count: int = 1, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while len(outcomes) < count:
        if loop.time() > deadline:
            raise AssertionError("recording did not finish in time")
        await asyncio.sleep(0.01)


def test_configure_without_camera_raises_device_unavailable() -> None:
    session = _session(None)

    with pytest.raises(DeviceUnavailable):
        asyncio.run(session.configure())
    assert session.configured is False


def test_configure_without_encoder_raises_output_attach_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    camera = StaticCamera()
    monkeypatch.setattr(capture_module, "select_encoder", lambda choice: (None, ("h264", "mpeg4")))
    session = _session(camera)

    with pytest.raises(OutputAttachError) as excinfo:
        asyncio.run(session.configure())

    assert "h264" in str(excinfo.value)
    assert camera.closed is True


def test_recording_produces_raw_asset(tmp_path: Path) -> None:
    camera = StaticCamera()
    session = _session(camera)
    outcomes: list = []
    session.set_listener(lambda token, outcome: outcomes.append((token, outcome)))
    destination = tmp_path / "clip.mov"

    async def scenario() -> None:
        await session.configure()
        await session.begin()
        token = session.start_recording(destination)
        assert session.is_recording
        await asyncio.sleep(0.3)
        session.stop_recording(token)
        await _wait_for(outcomes)
        await session.release()

    asyncio.run(scenario())

    token, outcome = outcomes[0]
    assert isinstance(outcome, RawAsset)
    assert outcome.location == destination
    assert outcome.frame_count > 0
    assert outcome.duration > 0
    assert destination.exists()
    assert not any(path.name.startswith(".clip.partial") for path in tmp_path.iterdir())
    with av.open(str(destination)) as container:
        assert container.streams.video
    assert camera.closed is True


def test_second_recording_is_rejected(tmp_path: Path) -> None:
    session = _session(StaticCamera())

    async def scenario() -> None:
        await session.begin()
        token = session.start_recording(tmp_path / "first.mov")
        try:
            with pytest.raises(AlreadyRecording):
                session.start_recording(tmp_path / "second.mov")
        finally:
            session.stop_recording(token)
            await session.release()

    asyncio.run(scenario())


def test_recording_to_existing_file_leaves_it_untouched(tmp_path: Path) -> None:
    destination = tmp_path / "taken.mov"
    destination.write_bytes(b"keep me")
    session = _session(StaticCamera())

    async def scenario() -> None:
        await session.begin()
        try:
            with pytest.raises(DestinationExists):
                session.start_recording(destination)
        finally:
            await session.release()

    asyncio.run(scenario())
    assert destination.read_bytes() == b"keep me"


def test_stop_before_any_frame_reports_empty_capture(tmp_path: Path) -> None:
    session = _session(StaticCamera())
    outcomes: list = []
    session.set_listener(lambda token, outcome: outcomes.append(outcome))
    destination = tmp_path / "empty.mov"

    async def scenario() -> None:
        await session.begin()
        token = session.start_recording(destination)
        session.stop_recording(token)
        await _wait_for(outcomes)
        await session.release()

    asyncio.run(scenario())

    assert isinstance(outcomes[0], RecordingError)
    assert "empty capture" in outcomes[0].reason
    assert not destination.exists()


def test_camera_failure_during_recording_reports_device_removed(tmp_path: Path) -> None:
    session = _session(StaticCamera(fail_after=3))
    outcomes: list = []
    session.set_listener(lambda token, outcome: outcomes.append(outcome))

    async def scenario() -> None:
        await session.begin()
        session.start_recording(tmp_path / "unplugged.mov")
        await _wait_for(outcomes)
        await session.release()

    asyncio.run(scenario())

    assert isinstance(outcomes[0], RecordingError)
    assert outcomes[0].reason.startswith("device removed")
    assert list(tmp_path.iterdir()) == []


def test_release_fails_active_recording(tmp_path: Path) -> None:
    session = _session(StaticCamera())
    outcomes: list = []
    session.set_listener(lambda token, outcome: outcomes.append(outcome))

    async def scenario() -> None:
        await session.begin()
        session.start_recording(tmp_path / "interrupted.mov")
        await asyncio.sleep(0.1)
        await session.release()

    asyncio.run(scenario())

    assert len(outcomes) == 1
    assert isinstance(outcomes[0], RecordingError)
    assert outcomes[0].reason == "capture session released"
    assert session.running is False


def test_stop_for_unknown_token_is_ignored(tmp_path: Path) -> None:
    session = _session(StaticCamera())

    async def scenario() -> None:
        await session.begin()
        token = session.start_recording(tmp_path / "a.mov")
        session.stop_recording(capture_module.RecordingToken(id=999, destination=tmp_path / "b.mov"))
        assert session.is_recording
        session.stop_recording(token)
        await session.release()

    asyncio.run(scenario())


class EmptyFrameCamera(BaseCamera):
    async def get_frame(self) -> np.ndarray:
        return np.zeros((0, 0, 3), dtype=np.uint8)


def test_unencodable_frame_fails_recording_and_controller_recovers(tmp_path: Path) -> None:
    session = CaptureSession(EmptyFrameCamera, fps=20, registry=DestinationRegistry())
    errors: list = []
    names = iter(tmp_path / f"clip-{index}.mov" for index in range(10))

    async def scenario() -> None:
        controller = RecordingController(
            session,
            destination_factory=lambda: next(names),
            recording_duration_s=0.3,
            on_error=errors.append,
        )
        assert controller.handle_trigger() is True
        await asyncio.wait_for(_wait_for(errors), 5.0)
        await asyncio.wait_for(controller.wait_idle(), 5.0)
        assert controller.state is RecordingState.IDLE
        assert controller.handle_trigger() is True
        await asyncio.wait_for(controller.shutdown(), 5.0)
        assert controller.state is RecordingState.IDLE
        await session.release()

    asyncio.run(scenario())

    assert isinstance(errors[0], RecordingError)
    assert errors[0].reason.startswith("unable to encode frame")
    assert not [path for path in tmp_path.iterdir() if path.name.startswith("clip-0")]
    assert not [path for path in tmp_path.iterdir() if ".partial" in path.name]


def test_unexpected_finalise_error_is_reported_as_recording_error(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    def broken_finish(self):
        raise RuntimeError("muxer exploded")

    monkeypatch.setattr(capture_module._ActiveRecording, "finish", broken_finish)
    session = _session(StaticCamera())
    outcomes: list = []
    session.set_listener(lambda token, outcome: outcomes.append(outcome))

    async def scenario() -> None:
        await session.begin()
        token = session.start_recording(tmp_path / "broken.mov")
        await asyncio.sleep(0.2)
        session.stop_recording(token)
        await _wait_for(outcomes)
        assert session.running is True
        await session.release()

    asyncio.run(scenario())

    assert isinstance(outcomes[0], RecordingError)
    assert "muxer exploded" in outcomes[0].reason
    assert list(tmp_path.iterdir()) == []


def test_failing_listener_does_not_stop_the_frame_pump(tmp_path: Path) -> None:
    session = _session(StaticCamera())
    calls: list = []

    def listener(token, outcome) -> None:
        calls.append(outcome)
        raise RuntimeError("consumer bug")

    session.set_listener(listener)

    async def scenario() -> None:
        await session.begin()
        token = session.start_recording(tmp_path / "first.mov")
        await asyncio.sleep(0.2)
        session.stop_recording(token)
        await _wait_for(calls)
        await asyncio.sleep(0.1)
        assert session.running is True
        second = session.start_recording(tmp_path / "second.mov")
        await asyncio.sleep(0.2)
        session.stop_recording(second)
        await _wait_for(calls, count=2)
        await session.release()

    asyncio.run(scenario())

    assert all(isinstance(outcome, RawAsset) for outcome in calls)
    assert (tmp_path / "second.mov").exists()

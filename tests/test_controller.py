"""Tests for the bounded recording state machine."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from slowmo_cam.artifacts import PipelineError, RawAsset
from slowmo_cam.capture import DeviceUnavailable, RecordingError, RecordingToken
from slowmo_cam.controller import RecordingController, RecordingState


class FakeCapture:
    """Capture session double that finishes recordings on demand."""

    def __init__(self, *, configure_error: Exception | None = None, auto_finish: bool = True) -> None:
        self.configure_error = configure_error
        self.auto_finish = auto_finish
        self.listener = None
        self.started: list[RecordingToken] = []
        self.stop_calls: list[RecordingToken] = []
        self.releases = 0
        self.active: RecordingToken | None = None
        self._next_id = 0

    def set_listener(self, listener) -> None:
        self.listener = listener

    async def configure(self) -> None:
        if self.configure_error is not None:
            raise self.configure_error

    async def begin(self) -> None:
        return None

    def start_recording(self, destination: Path) -> RecordingToken:
        self._next_id += 1
        token = RecordingToken(id=self._next_id, destination=Path(destination))
        self.started.append(token)
        self.active = token
        return token

    def stop_recording(self, token: RecordingToken) -> None:
        self.stop_calls.append(token)
        if self.auto_finish:
            asyncio.get_running_loop().call_soon(self.finish, token)

    def finish(self, token: RecordingToken, outcome=None) -> None:
        if token == self.active:
            self.active = None
        if outcome is None:
            outcome = RawAsset(location=token.destination, duration=10.0, frame_count=300, fps=30.0)
        self.listener(token, outcome)

    async def release(self) -> None:
        self.releases += 1
        if self.active is not None:
            self.finish(self.active, RecordingError("capture session released"))


def _controller(capture: FakeCapture, tmp_path: Path, **kwargs) -> RecordingController:
    names = iter(tmp_path / f"clip-{index}.mov" for index in range(100))
    return RecordingController(capture, destination_factory=lambda: next(names), **kwargs)


def test_triggers_while_busy_are_dropped(tmp_path: Path) -> None:
    capture = FakeCapture()
    assets: list[RawAsset] = []
    controller = _controller(capture, tmp_path, recording_duration_s=0.05, on_asset=assets.append)

    async def scenario() -> None:
        assert controller.handle_trigger() is True
        assert controller.state is RecordingState.ARMED
        assert controller.handle_trigger() is False
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert controller.state is RecordingState.RECORDING
        assert controller.handle_trigger() is False
        await asyncio.wait_for(controller.wait_idle(), 1.0)

    asyncio.run(scenario())

    assert len(capture.started) == 1
    assert controller.dropped_triggers == 2
    assert len(assets) == 1
    assert controller.state is RecordingState.IDLE


def test_deadline_stops_recording_exactly_once(tmp_path: Path) -> None:
    capture = FakeCapture()
    controller = _controller(capture, tmp_path, recording_duration_s=0.05)

    async def scenario() -> None:
        controller.handle_trigger()
        await asyncio.wait_for(controller.wait_idle(), 1.0)
        await asyncio.sleep(0.1)

    asyncio.run(scenario())

    assert len(capture.stop_calls) == 1
    assert controller.stop_calls == 1


def test_deadline_after_manual_stop_is_a_no_op(tmp_path: Path) -> None:
    capture = FakeCapture()
    controller = _controller(capture, tmp_path, recording_duration_s=0.1)

    async def scenario() -> None:
        controller.handle_trigger()
        await asyncio.sleep(0.01)
        assert controller.request_stop() is True
        assert controller.request_stop() is False
        await asyncio.wait_for(controller.wait_idle(), 1.0)
        await asyncio.sleep(0.2)

    asyncio.run(scenario())

    assert len(capture.stop_calls) == 1


def test_completion_before_deadline_cancels_timer(tmp_path: Path) -> None:
    capture = FakeCapture(auto_finish=False)
    assets: list[RawAsset] = []
    controller = _controller(capture, tmp_path, recording_duration_s=0.1, on_asset=assets.append)

    async def scenario() -> None:
        controller.handle_trigger()
        await asyncio.sleep(0.01)
        token = capture.started[0]
        capture.finish(token, RawAsset(location=token.destination, duration=0.5))
        await asyncio.wait_for(controller.wait_idle(), 1.0)
        await asyncio.sleep(0.2)

    asyncio.run(scenario())

    assert capture.stop_calls == []
    assert len(assets) == 1


def test_start_failure_surfaces_error_and_returns_to_idle(tmp_path: Path) -> None:
    capture = FakeCapture(configure_error=DeviceUnavailable("no camera"))
    errors: list[PipelineError] = []
    controller = _controller(capture, tmp_path, on_error=errors.append)

    async def scenario() -> None:
        controller.handle_trigger()
        await asyncio.wait_for(controller.wait_idle(), 1.0)

    asyncio.run(scenario())

    assert isinstance(errors[0], DeviceUnavailable)
    assert capture.releases == 1
    assert controller.state is RecordingState.IDLE
    assert controller.snapshot()["last_error"] == "no camera"


def test_unexpected_start_failure_is_wrapped(tmp_path: Path) -> None:
    capture = FakeCapture(configure_error=OSError("disk full"))
    errors: list[PipelineError] = []
    controller = _controller(capture, tmp_path, on_error=errors.append)

    async def scenario() -> None:
        controller.handle_trigger()
        await asyncio.wait_for(controller.wait_idle(), 1.0)

    asyncio.run(scenario())

    assert isinstance(errors[0], RecordingError)
    assert "disk full" in errors[0].reason


def test_recording_error_releases_capture_and_allows_next_cycle(tmp_path: Path) -> None:
    capture = FakeCapture(auto_finish=False)
    errors: list[PipelineError] = []
    controller = _controller(capture, tmp_path, recording_duration_s=5.0, on_error=errors.append)

    async def scenario() -> None:
        controller.handle_trigger()
        await asyncio.sleep(0.01)
        token = capture.started[0]
        capture.finish(token, RecordingError("device removed: unplugged"))
        await asyncio.wait_for(controller.wait_idle(), 1.0)
        assert controller.handle_trigger() is True
        await asyncio.sleep(0.01)
        assert controller.state is RecordingState.RECORDING
        await controller.shutdown(timeout=0.2)

    asyncio.run(scenario())

    assert isinstance(errors[0], RecordingError)
    assert capture.releases >= 2
    assert len(capture.started) == 2


def test_foreign_completion_is_ignored(tmp_path: Path) -> None:
    capture = FakeCapture(auto_finish=False)
    controller = _controller(capture, tmp_path, recording_duration_s=5.0)

    async def scenario() -> None:
        controller.handle_trigger()
        await asyncio.sleep(0.01)
        stranger = RecordingToken(id=42, destination=tmp_path / "other.mov")
        capture.finish(stranger)
        await asyncio.sleep(0.01)
        assert controller.state is RecordingState.RECORDING
        await controller.shutdown(timeout=0.2)

    asyncio.run(scenario())


def test_invalid_duration_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        _controller(FakeCapture(), tmp_path, recording_duration_s=0)

"""Capture session owning the video input device and the movie file output."""
from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Callable, Optional, Union

import av
import numpy as np

from .artifacts import (
    DestinationExists,
    DestinationRegistry,
    PipelineError,
    PublishError,
    RawAsset,
    partial_path,
    publish_partial,
    remove_quietly,
)
from .camera import BaseCamera, CameraError, summarise_exception
from .encoding import EncoderUnavailableError, VideoEncoder, select_encoder

logger = logging.getLogger(__name__)


class DeviceUnavailable(PipelineError):
    """Raised when no video input exists or it cannot be attached."""


class OutputAttachError(PipelineError):
    """Raised when the movie file output cannot be attached to the session."""


class AlreadyRecording(PipelineError):
    """Raised when a recording is requested while one is in progress."""


class RecordingError(PipelineError):
    """Delivered when a recording could not produce a usable file."""

    def __init__(self, reason: str, *, location: Path | None = None) -> None:
        self.reason = reason
        self.location = location
        super().__init__(f"Recording failed: {reason}")


@dataclass(frozen=True, slots=True)
class RecordingToken:
    """Correlates a started recording with its completion callback."""

    id: int
    destination: Path


RecordingOutcome = Union[RawAsset, RecordingError]
CompletionListener = Callable[[RecordingToken, RecordingOutcome], None]
CameraFactory = Callable[[], Optional[BaseCamera]]


@dataclass(slots=True)
class _ActiveRecording:
    token: RecordingToken
    partial: Path
    fps: int
    encoding: str
    container_format: str | None
    started_at: float | None = None
    encoder: VideoEncoder | None = None
    stop_requested: bool = False
    closed: bool = False
    _lock: Lock = field(default_factory=Lock)

    def add_frame(self, frame: np.ndarray, timestamp: float) -> None:
        with self._lock:
            if self.closed:
                return
            if self.encoder is None:
                height, width = frame.shape[:2]
                self.encoder = VideoEncoder(
                    path=self.partial,
                    rate=self.fps,
                    width=width,
                    height=height,
                    encoding=self.encoding,
                    container_format=self.container_format,
                )
                self.started_at = timestamp
            elapsed = max(0.0, timestamp - (self.started_at or timestamp))
            self.encoder.encode(frame, pts=round(elapsed * self.fps))

    def finish(self) -> RawAsset:
        with self._lock:
            self.closed = True
            encoder = self.encoder
            self.encoder = None
        destination = self.token.destination
        if encoder is None or encoder.frame_count == 0:
            if encoder is not None:
                encoder.abort()
            remove_quietly(self.partial)
            raise RecordingError("empty capture: no frames were recorded", location=destination)
        last_pts = encoder.last_pts
        frame_count = encoder.frame_count
        try:
            encoder.close()
        except (av.FFmpegError, OSError) as exc:
            remove_quietly(self.partial)
            raise RecordingError(f"disk write failure: {exc}", location=destination) from exc
        try:
            publish_partial(self.partial, destination)
        except (DestinationExists, PublishError) as exc:
            raise RecordingError(str(exc), location=destination) from exc
        return RawAsset(
            location=destination,
            duration=(last_pts + 1) / float(self.fps),
            frame_count=frame_count,
            fps=float(self.fps),
        )

    def abort(self) -> None:
        with self._lock:
            self.closed = True
            encoder = self.encoder
            self.encoder = None
        if encoder is not None:
            encoder.abort()
        remove_quietly(self.partial)


class CaptureSession:
    """Owns one video input and one movie file output.

    Frames are pumped from the camera on an asyncio task once :meth:`begin`
    has been called. At most one recording is active at a time; its
    completion is reported to the registered listener with either a
    :class:`RawAsset` or a :class:`RecordingError`.
    """

    def __init__(
        self,
        camera_factory: CameraFactory,
        *,
        fps: int = 30,
        encoding: str = "auto",
        container_format: str | None = None,
        registry: DestinationRegistry | None = None,
        on_finished: CompletionListener | None = None,
    ) -> None:
        if fps <= 0:
            raise ValueError("fps must be positive")
        self._camera_factory = camera_factory
        self._fps = int(fps)
        self._frame_interval = 1.0 / self._fps
        self._encoding = encoding
        self._container_format = container_format
        self._registry = registry or DestinationRegistry()
        self._on_finished = on_finished
        self._camera: BaseCamera | None = None
        self._codec: str | None = None
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self._recording: _ActiveRecording | None = None
        self._tokens = itertools.count(1)

    # ------------------------------------------------------------------
    @property
    def configured(self) -> bool:
        return self._camera is not None and self._codec is not None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def is_recording(self) -> bool:
        return self._recording is not None

    @property
    def codec(self) -> str | None:
        return self._codec

    def set_listener(self, listener: CompletionListener | None) -> None:
        """Register the single listener receiving recording completions."""

        self._on_finished = listener

    # ------------------------------------------------------------------
    async def configure(self) -> None:
        """Acquire the video input and attach the movie file output."""

        if self.configured:
            return
        try:
            camera = self._camera_factory()
        except CameraError as exc:
            raise DeviceUnavailable(summarise_exception(exc)) from exc
        if camera is None:
            raise DeviceUnavailable("no video input device available")
        codec, attempted = await asyncio.to_thread(select_encoder, self._encoding)
        if codec is None:
            await self._close_camera(camera)
            raise OutputAttachError(
                "unable to attach movie file output; tried " + ", ".join(attempted)
            )
        self._camera = camera
        self._codec = codec
        logger.info("Capture session configured (encoder %s, %d fps)", codec, self._fps)

    async def begin(self) -> None:
        """Start pumping frames from the input. Calling it again is a no-op."""

        if self._running:
            return
        if not self.configured:
            await self.configure()
        self._running = True
        self._task = asyncio.create_task(self._run(), name="slowmo-capture-session")

    def start_recording(self, destination: Path | str) -> RecordingToken:
        """Begin writing frames to *destination*."""

        if self._recording is not None:
            raise AlreadyRecording("a recording is already in progress on this session")
        if not self._running:
            raise RecordingError("capture session is not running")
        target = self._registry.claim(destination)
        token = RecordingToken(id=next(self._tokens), destination=target)
        self._recording = _ActiveRecording(
            token=token,
            partial=partial_path(target),
            fps=self._fps,
            encoding=self._codec or self._encoding,
            container_format=self._container_format,
        )
        logger.info("Recording %s started: %s", token.id, target)
        return token

    def stop_recording(self, token: RecordingToken) -> None:
        """Request a graceful stop. Unknown or finished tokens are ignored."""

        recording = self._recording
        if recording is None or recording.token != token:
            logger.debug("Ignoring stop for inactive recording %s", token.id)
            return
        recording.stop_requested = True

    async def release(self) -> None:
        """Stop the frame pump and release the input device and output."""

        self._running = False
        task = self._task
        self._task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Capture frame pump had crashed")
        if self._recording is not None:
            await self._fail_recording("capture session released")
        camera = self._camera
        self._camera = None
        self._codec = None
        if camera is not None:
            await self._close_camera(camera)
        logger.info("Capture session released")

    # ------------------------------------------------------------------
    async def _close_camera(self, camera: BaseCamera) -> None:
        try:
            await camera.close()
        except Exception as exc:  # pragma: no cover - best effort cleanup
            logger.warning("Failed to close camera: %s", exc)

    def _deliver(self, token: RecordingToken, outcome: RecordingOutcome) -> None:
        self._registry.release(token.destination)
        listener = self._on_finished
        if listener is None:
            logger.warning("Recording %s finished without a listener", token.id)
            return
        try:
            listener(token, outcome)
        except Exception:
            logger.exception("Completion listener failed for recording %s", token.id)

    async def _finish_recording(self) -> None:
        recording = self._recording
        if recording is None:
            return
        self._recording = None
        try:
            outcome: RecordingOutcome = await asyncio.to_thread(recording.finish)
        except RecordingError as exc:
            logger.error("Recording %s failed: %s", recording.token.id, exc.reason)
            outcome = exc
        except Exception as exc:
            logger.exception("Recording %s could not be finalised", recording.token.id)
            await asyncio.to_thread(recording.abort)
            outcome = RecordingError(
                f"unable to finalise recording: {exc}", location=recording.token.destination
            )
        else:
            logger.info(
                "Recording %s finished: %.2fs, %d frames",
                recording.token.id,
                outcome.duration,
                outcome.frame_count,
            )
        self._deliver(recording.token, outcome)

    async def _fail_recording(self, reason: str) -> None:
        recording = self._recording
        if recording is None:
            return
        self._recording = None
        await asyncio.to_thread(recording.abort)
        logger.error("Recording %s failed: %s", recording.token.id, reason)
        self._deliver(recording.token, RecordingError(reason, location=recording.token.destination))

    async def _run(self) -> None:
        try:
            await self._pump()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Capture frame pump crashed")
            self._running = False
            await self._fail_recording(f"capture stopped unexpectedly: {exc}")

    async def _pump(self) -> None:
        loop = asyncio.get_running_loop()
        while self._running:
            started = loop.time()
            recording = self._recording
            if recording is not None and recording.stop_requested:
                await self._finish_recording()
                continue
            camera = self._camera
            if camera is None:
                break
            try:
                frame = await camera.get_frame()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if self._recording is not None:
                    self._running = False
                    await self._fail_recording(f"device removed: {summarise_exception(exc)}")
                    break
                logger.error("Failed to read frame from camera: %s", exc)
                await asyncio.sleep(self._frame_interval)
                continue
            recording = self._recording
            if recording is not None and not recording.stop_requested:
                try:
                    await asyncio.to_thread(recording.add_frame, np.asarray(frame), started)
                except (av.FFmpegError, OSError, EncoderUnavailableError) as exc:
                    await self._fail_recording(f"disk write failure: {exc}")
                    continue
                except Exception as exc:
                    logger.exception("Recording %s rejected a frame", recording.token.id)
                    await self._fail_recording(f"unable to encode frame: {exc}")
                    continue
            elapsed = loop.time() - started
            await asyncio.sleep(max(0.0, self._frame_interval - elapsed))


__all__ = [
    "AlreadyRecording",
    "CaptureSession",
    "CompletionListener",
    "DeviceUnavailable",
    "OutputAttachError",
    "RecordingError",
    "RecordingOutcome",
    "RecordingToken",
]

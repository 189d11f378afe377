"""Bounded-duration recording orchestration."""
from __future__ import annotations

import asyncio
import logging
import math
from enum import Enum
from pathlib import Path
from typing import Callable

from .artifacts import PipelineError, RawAsset
from .capture import CaptureSession, RecordingError, RecordingOutcome, RecordingToken
from .sensor import MotionSample

logger = logging.getLogger(__name__)

AssetCallback = Callable[[RawAsset], None]
ErrorCallback = Callable[[PipelineError], None]
DestinationFactory = Callable[[], Path]


class RecordingState(str, Enum):
    """Lifecycle states of a recording cycle."""

    IDLE = "idle"
    ARMED = "armed"
    RECORDING = "recording"
    FINALIZING = "finalizing"


class RecordingController:
    """Turns motion triggers into bounded recordings.

    The controller runs ``IDLE -> ARMED -> RECORDING -> FINALIZING -> IDLE``.
    Triggers arriving outside ``IDLE`` are dropped, so at most one recording
    cycle exists at a time. A single deadline timer bounds each recording;
    whichever of the deadline, a manual stop, or the capture completion
    arrives first wins and the others become no-ops.

    All methods must be called from the event loop thread.
    """

    def __init__(
        self,
        capture: CaptureSession,
        *,
        destination_factory: DestinationFactory,
        recording_duration_s: float = 10.0,
        on_asset: AssetCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> None:
        duration = float(recording_duration_s)
        if not math.isfinite(duration) or duration <= 0:
            raise ValueError("Recording duration must be a positive number of seconds")
        self._capture = capture
        self._capture.set_listener(self._on_capture_finished)
        self._destination_factory = destination_factory
        self._duration = duration
        self._on_asset = on_asset
        self._on_error = on_error
        self._state = RecordingState.IDLE
        self._idle = asyncio.Event()
        self._idle.set()
        self._token: RecordingToken | None = None
        self._deadline: asyncio.TimerHandle | None = None
        self._stop_requested = False
        self._cycle_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[None]] = set()
        self._dropped_triggers = 0
        self._stop_calls = 0
        self._cycles = 0
        self._last_error: str | None = None

    # ------------------------------------------------------------------
    @property
    def state(self) -> RecordingState:
        return self._state

    @property
    def recording_duration_s(self) -> float:
        return self._duration

    @property
    def dropped_triggers(self) -> int:
        return self._dropped_triggers

    @property
    def stop_calls(self) -> int:
        """Number of ``stop_recording`` requests issued to the capture session."""

        return self._stop_calls

    def snapshot(self) -> dict[str, object]:
        return {
            "state": self._state.value,
            "recording_duration_s": self._duration,
            "cycles": self._cycles,
            "dropped_triggers": self._dropped_triggers,
            "stop_calls": self._stop_calls,
            "last_error": self._last_error,
        }

    async def wait_idle(self) -> None:
        """Wait until the current cycle, if any, has returned to ``IDLE``."""

        await self._idle.wait()

    # ------------------------------------------------------------------
    def handle_trigger(self, sample: MotionSample | None = None) -> bool:
        """Start a recording cycle when idle. Returns ``False`` when dropped."""

        if self._state is not RecordingState.IDLE:
            self._dropped_triggers += 1
            logger.debug("Trigger dropped while %s", self._state.value)
            return False
        self._state = RecordingState.ARMED
        self._idle.clear()
        self._cycles += 1
        self._last_error = None
        if sample is not None:
            logger.info("Motion trigger accepted (peak %.3f g)", sample.peak())
        self._cycle_task = asyncio.create_task(self._start_cycle(), name="slowmo-recording-cycle")
        return True

    def request_stop(self) -> bool:
        """Stop the active recording early. Returns ``False`` if nothing to stop."""

        token = self._token
        if token is None:
            return False
        return self._stop_once(token, "manual stop")

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Stop any active recording and wait for the cycle to settle.

        If the capture session does not report completion within *timeout*
        seconds it is released, which fails the pending recording.
        """

        self.request_stop()
        task = self._cycle_task
        if task is not None and not task.done():
            await task
        try:
            await asyncio.wait_for(self.wait_idle(), timeout)
        except asyncio.TimeoutError:
            logger.warning("Recording did not finish within %.1fs; releasing capture", timeout)
            await self._capture.release()
            await self.wait_idle()

    # ------------------------------------------------------------------
    async def _start_cycle(self) -> None:
        try:
            await self._capture.configure()
            await self._capture.begin()
            destination = self._destination_factory()
            token = self._capture.start_recording(destination)
        except Exception as exc:
            error = exc if isinstance(exc, PipelineError) else RecordingError(str(exc))
            logger.error("Unable to start recording: %s", error)
            await self._capture.release()
            self._surface_error(error)
            self._enter_idle()
            return
        loop = asyncio.get_running_loop()
        self._token = token
        self._stop_requested = False
        self._state = RecordingState.RECORDING
        self._deadline = loop.call_later(self._duration, self._on_deadline, token)
        logger.info("Recording armed for %.1fs: %s", self._duration, token.destination)

    def _on_deadline(self, token: RecordingToken) -> None:
        self._deadline = None
        if self._stop_once(token, "deadline reached"):
            logger.info("Recording deadline reached")

    def _cancel_deadline(self) -> None:
        handle = self._deadline
        self._deadline = None
        if handle is not None:
            handle.cancel()

    def _stop_once(self, token: RecordingToken, reason: str) -> bool:
        if token != self._token or self._stop_requested:
            return False
        if self._state is not RecordingState.RECORDING:
            return False
        self._stop_requested = True
        self._cancel_deadline()
        self._state = RecordingState.FINALIZING
        self._stop_calls += 1
        logger.info("Stopping recording %s (%s)", token.id, reason)
        self._capture.stop_recording(token)
        return True

    def _on_capture_finished(self, token: RecordingToken, outcome: RecordingOutcome) -> None:
        if token != self._token:
            logger.warning("Ignoring completion for unknown recording %s", token.id)
            return
        self._stop_requested = True
        self._cancel_deadline()
        self._state = RecordingState.FINALIZING
        task = asyncio.create_task(self._finalise(outcome), name="slowmo-recording-finalise")
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _finalise(self, outcome: RecordingOutcome) -> None:
        try:
            if isinstance(outcome, RecordingError):
                await self._capture.release()
                self._surface_error(outcome)
                return
            callback = self._on_asset
            if callback is None:
                logger.warning("Recording finished without an asset consumer: %s", outcome.location)
                return
            try:
                callback(outcome)
            except Exception:
                logger.exception("Asset consumer failed for %s", outcome.location)
        finally:
            self._token = None
            self._enter_idle()

    def _surface_error(self, error: PipelineError) -> None:
        self._last_error = str(error)
        callback = self._on_error
        if callback is None:
            logger.error("Recording cycle failed: %s", error)
            return
        try:
            callback(error)
        except Exception:
            logger.exception("Error consumer failed while handling %s", error)

    def _enter_idle(self) -> None:
        self._state = RecordingState.IDLE
        self._idle.set()


__all__ = [
    "AssetCallback",
    "DestinationFactory",
    "ErrorCallback",
    "RecordingController",
    "RecordingState",
]

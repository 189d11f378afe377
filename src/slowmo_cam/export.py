"""Asynchronous rendering of compositions to media files."""
from __future__ import annotations

import asyncio
import itertools
import logging
import os
import threading
from collections import OrderedDict
from concurrent.futures import Executor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable

import av

from .artifacts import (
    DestinationRegistry,
    PipelineError,
    partial_path,
    publish_partial,
    remove_quietly,
)
from .encoding import EncoderUnavailableError, VideoEncoder
from .timescale import Composition, CompositionTrack

logger = logging.getLogger(__name__)


class ExportFailure(PipelineError):
    """Raised or reported when a composition could not be rendered."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Export failed: {reason}")


class _ExportCancelled(Exception):
    """Internal signal raised by the render loop when cancelled."""


class ExportStatus(str, Enum):
    """Lifecycle of an export job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset({ExportStatus.COMPLETED, ExportStatus.FAILED, ExportStatus.CANCELLED})
_STATUS_RANK = {
    ExportStatus.PENDING: 0,
    ExportStatus.RUNNING: 1,
    ExportStatus.COMPLETED: 2,
    ExportStatus.FAILED: 2,
    ExportStatus.CANCELLED: 2,
}

_CONTAINER_MUXERS = {
    "mp4": "mp4",
    "m4v": "mp4",
    "mov": "mov",
    "mkv": "matroska",
}


@dataclass(frozen=True, slots=True)
class ExportFormat:
    """Target container and codec preference for an export."""

    container: str = "mp4"
    codec: str = "auto"

    def __post_init__(self) -> None:
        container = self.container.strip().lower().lstrip(".")
        if container not in _CONTAINER_MUXERS:
            raise ValueError(f"Unsupported export container: {self.container!r}")
        object.__setattr__(self, "container", container)
        object.__setattr__(self, "codec", (self.codec or "auto").strip().lower() or "auto")

    @property
    def muxer(self) -> str:
        return _CONTAINER_MUXERS[self.container]

    @property
    def suffix(self) -> str:
        return f".{self.container}"

    @classmethod
    def parse(cls, value: str) -> "ExportFormat":
        """Parse ``"container"`` or ``"container:codec"``."""

        container, _, codec = value.partition(":")
        return cls(container=container, codec=codec or "auto")


@dataclass(slots=True)
class ExportJob:
    """Book-keeping for one render. Status only ever moves forward."""

    id: int
    composition: Composition
    output_location: Path
    format: ExportFormat
    status: ExportStatus = ExportStatus.PENDING
    reason: str | None = None
    attempts: int = 0

    def advance(self, status: ExportStatus, reason: str | None = None) -> None:
        if self.status.terminal:
            raise ValueError(f"Export job {self.id} already {self.status.value}")
        if _STATUS_RANK[status] < _STATUS_RANK[self.status]:
            raise ValueError(
                f"Export job {self.id} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status
        if reason is not None:
            self.reason = reason


@dataclass(frozen=True, slots=True)
class ExportResult:
    """Terminal outcome delivered once per job."""

    job_id: int
    status: ExportStatus
    output_location: Path
    reason: str | None = None

    @property
    def error(self) -> ExportFailure | None:
        if self.status is ExportStatus.FAILED:
            return ExportFailure(self.reason or "unknown error")
        return None

    def to_dict(self) -> dict[str, object]:
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "output_location": str(self.output_location),
            "reason": self.reason,
        }


ExportCallback = Callable[[ExportResult], None]


@dataclass(slots=True)
class ExportHandle:
    """Cancellable reference to a running export."""

    job: ExportJob
    _future: asyncio.Future[ExportResult]
    _lock: threading.Lock = field(default_factory=threading.Lock)
    _cancel_requested: threading.Event = field(default_factory=threading.Event)

    @property
    def status(self) -> ExportStatus:
        with self._lock:
            return self.job.status

    @property
    def output_location(self) -> Path:
        return self.job.output_location

    def done(self) -> bool:
        return self._future.done()

    def cancel(self) -> bool:
        """Request cancellation. Returns ``False`` once the job is terminal."""

        with self._lock:
            if self.job.status.terminal:
                return False
            self._cancel_requested.set()
        logger.info("Export %s cancellation requested", self.job.id)
        return True

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested.is_set()

    @property
    def cancel_event(self) -> threading.Event:
        """Event polled by the render loop."""

        return self._cancel_requested

    async def wait(self) -> ExportResult:
        return await asyncio.shield(self._future)

    # Worker side -------------------------------------------------------
    def start(self) -> ExportResult | None:
        """Mark the job running, or cancel it if that was already requested."""

        with self._lock:
            if self._cancel_requested.is_set():
                return self._settle(ExportStatus.CANCELLED, "cancelled before start")
            self.job.advance(ExportStatus.RUNNING)
        return None

    def resolve(self, status: ExportStatus, reason: str | None = None) -> ExportResult:
        """Record the terminal *status*. A job already terminal keeps its outcome."""

        with self._lock:
            return self._settle(status, reason)

    def commit(self, publish: Callable[[], None]) -> ExportResult:
        """Run *publish* unless cancelled, atomically with the terminal status."""

        with self._lock:
            if self._cancel_requested.is_set():
                return self._settle(ExportStatus.CANCELLED, "cancelled")
            try:
                publish()
            except PipelineError as exc:
                return self._settle(ExportStatus.FAILED, str(exc))
            return self._settle(ExportStatus.COMPLETED)

    def deliver(self, result: ExportResult) -> bool:
        """Resolve the awaitable side. Returns ``False`` if already resolved."""

        if self._future.done():
            return False
        self._future.set_result(result)
        return True

    def _settle(self, status: ExportStatus, reason: str | None = None) -> ExportResult:
        job = self.job
        if not job.status.terminal:
            job.advance(status, reason)
        return ExportResult(
            job_id=job.id,
            status=job.status,
            output_location=job.output_location,
            reason=job.reason,
        )


def _render_track(
    track: CompositionTrack,
    target: Path,
    export_format: ExportFormat,
    cancelled: threading.Event,
) -> int:
    """Re-encode *track* into *target* with stretched timestamps."""

    source_range = track.source_range
    output_rate = track.output_frame_rate()
    encoder: VideoEncoder | None = None
    written = 0
    with av.open(str(track.source), mode="r") as source:
        stream = next((item for item in source.streams if item.index == track.stream_index), None)
        if stream is None:
            raise ExportFailure(f"stream {track.stream_index} missing from {track.source}")
        time_base = stream.time_base
        first_time: float | None = None
        try:
            for index, frame in enumerate(source.decode(stream)):
                if cancelled.is_set():
                    raise _ExportCancelled()
                if frame.pts is not None and time_base:
                    timestamp = float(frame.pts * time_base)
                else:
                    timestamp = index / float(track.frame_rate)
                if first_time is None:
                    first_time = timestamp
                offset = timestamp - first_time
                if offset < source_range.start:
                    continue
                if offset >= source_range.end:
                    break
                array = frame.to_ndarray(format="rgb24")
                if encoder is None:
                    height, width = array.shape[:2]
                    encoder = VideoEncoder(
                        path=target,
                        rate=output_rate,
                        width=width,
                        height=height,
                        encoding=export_format.codec,
                        container_format=export_format.muxer,
                    )
                # Source seconds scaled, expressed in ticks of the output rate.
                pts = round((offset - source_range.start) * track.time_scale * float(output_rate))
                encoder.encode(array, pts=pts)
                written += 1
        except BaseException:
            if encoder is not None:
                encoder.abort()
            raise
    if encoder is None:
        raise ExportFailure(f"{track.source} produced no frames")
    encoder.close()
    return written


class ExportPipeline:
    """Renders compositions on worker threads without blocking the caller.

    Results are delivered on the event loop that was running when
    :meth:`export` was called (or the one passed explicitly), exactly once
    per job. Statuses of the last ``history`` finished jobs stay available
    through :meth:`status_for`.
    """

    def __init__(
        self,
        *,
        registry: DestinationRegistry | None = None,
        max_attempts: int = 1,
        executor: Executor | None = None,
        history: int = 256,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if history < 1:
            raise ValueError("history must be at least 1")
        self._registry = registry or DestinationRegistry()
        self._max_attempts = int(max_attempts)
        self._executor = executor
        self._history = int(history)
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._jobs: OrderedDict[Path, ExportJob] = OrderedDict()
        self._handles: dict[int, ExportHandle] = {}

    # ------------------------------------------------------------------
    def export(
        self,
        composition: Composition,
        output_location: Path | str,
        export_format: ExportFormat | None = None,
        *,
        callback: ExportCallback | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> ExportHandle:
        """Start rendering *composition* to *output_location*.

        Raises :class:`DestinationExists` without touching the filesystem
        when the destination already exists or is owned by another writer.
        """

        export_format = export_format or ExportFormat()
        loop = loop or asyncio.get_running_loop()
        target = self._registry.claim(output_location)
        job = ExportJob(
            id=next(self._ids),
            composition=composition,
            output_location=target,
            format=export_format,
        )
        handle = ExportHandle(job=job, _future=loop.create_future())
        with self._lock:
            self._jobs.pop(target, None)
            self._jobs[target] = job
            self._handles[job.id] = handle
            self._prune_history()
        logger.info("Export %s queued: %s (%s)", job.id, target, export_format.container)
        worker = loop.run_in_executor(self._executor, self._run_job, handle, loop, callback)
        worker.add_done_callback(_log_worker_crash)
        return handle

    def status_for(self, location: Path | str) -> ExportStatus | None:
        """Return the status of the latest export written to *location*."""

        key = Path(os.path.abspath(os.fspath(location)))
        with self._lock:
            job = self._jobs.get(key)
        return None if job is None else job.status

    def pending(self) -> list[ExportHandle]:
        with self._lock:
            handles = list(self._handles.values())
        return [handle for handle in handles if not handle.done()]

    def cancel_all(self) -> int:
        return sum(1 for handle in self.pending() if handle.cancel())

    # ------------------------------------------------------------------
    def _prune_history(self) -> None:
        finished = [key for key, job in self._jobs.items() if job.status.terminal]
        excess = len(finished) - self._history
        for key in finished[: max(0, excess)]:
            del self._jobs[key]

    def _run_job(
        self,
        handle: ExportHandle,
        loop: asyncio.AbstractEventLoop,
        callback: ExportCallback | None,
    ) -> None:
        job = handle.job
        partial = partial_path(job.output_location)
        try:
            result = self._execute(handle, partial)
        except Exception as exc:
            logger.exception("Export %s crashed", job.id)
            result = handle.resolve(ExportStatus.FAILED, f"unexpected error: {exc}")
        finally:
            remove_quietly(partial)
            self._registry.release(job.output_location)
        try:
            loop.call_soon_threadsafe(self._deliver, handle, result, callback)
        except RuntimeError:
            logger.warning("Export %s finished after its event loop closed", job.id)

    def _execute(self, handle: ExportHandle, partial: Path) -> ExportResult:
        job = handle.job
        cancelled = handle.start()
        if cancelled is not None:
            return cancelled
        track = job.composition.video_track
        failure: str | None = None
        for attempt in range(1, self._max_attempts + 1):
            job.attempts = attempt
            try:
                frames = _render_track(track, partial, job.format, handle.cancel_event)
            except _ExportCancelled:
                remove_quietly(partial)
                return handle.resolve(ExportStatus.CANCELLED, "cancelled")
            except ExportFailure as exc:
                failure = exc.reason
            except PipelineError as exc:
                remove_quietly(partial)
                return handle.resolve(ExportStatus.FAILED, str(exc))
            except (av.FFmpegError, OSError, EncoderUnavailableError, ValueError) as exc:
                failure = str(exc)
            else:
                result = handle.commit(lambda: publish_partial(partial, job.output_location))
                if result.status is ExportStatus.COMPLETED:
                    logger.info(
                        "Export %s completed: %s (%d frames, %.3fs)",
                        job.id,
                        job.output_location,
                        frames,
                        job.composition.duration,
                    )
                return result
            remove_quietly(partial)
            logger.warning("Export %s attempt %d failed: %s", job.id, attempt, failure)
        return handle.resolve(ExportStatus.FAILED, failure)

    def _deliver(
        self,
        handle: ExportHandle,
        result: ExportResult,
        callback: ExportCallback | None,
    ) -> None:
        with self._lock:
            self._handles.pop(result.job_id, None)
            self._prune_history()
        if not handle.deliver(result):
            return
        if callback is None:
            return
        try:
            callback(result)
        except Exception:
            logger.exception("Export callback failed for job %s", result.job_id)


def _log_worker_crash(future: asyncio.Future[None]) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("Export worker crashed", exc_info=exc)


__all__ = [
    "ExportCallback",
    "ExportFailure",
    "ExportFormat",
    "ExportHandle",
    "ExportJob",
    "ExportPipeline",
    "ExportResult",
    "ExportStatus",
]

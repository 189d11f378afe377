"""Motion-triggered slow-motion capture pipeline."""
from __future__ import annotations

import asyncio
import itertools
import logging
import os
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Deque, Optional

from .artifacts import (
    ArtifactNamer,
    DestinationRegistry,
    FinalArtifact,
    PipelineError,
    RawAsset,
)
from .camera import BaseCamera, create_camera
from .capture import CaptureSession
from .config import PipelineSettings
from .controller import RecordingController
from .event_log import PipelineEventLog
from .export import ExportFailure, ExportPipeline, ExportStatus
from .motion import MotionMonitor
from .overlay import ImageCompositor, OverlayStage, StillImage
from .sensor import BaseMotionSensor, MotionSample, create_motion_sensor
from .timescale import TimeTransformEngine

logger = logging.getLogger(__name__)

ImageSource = Callable[[Path], Awaitable[Optional[StillImage]]]
ReportCallback = Callable[["CycleReport"], None]


class OverlayQueue:
    """Image source answered from outside, one pending request per export.

    Must be used from the event loop thread.
    """

    def __init__(self) -> None:
        self._pending: dict[Path, asyncio.Future[Optional[StillImage]]] = {}

    @staticmethod
    def _key(location: Path | str) -> Path:
        return Path(os.path.abspath(os.fspath(location)))

    async def __call__(self, location: Path) -> Optional[StillImage]:
        key = self._key(location)
        if key in self._pending:
            raise RuntimeError(f"An overlay request for {key} is already pending")
        future: asyncio.Future[Optional[StillImage]] = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        try:
            return await future
        finally:
            self._pending.pop(key, None)

    def pending(self) -> list[Path]:
        return [key for key, future in self._pending.items() if not future.done()]

    def is_pending(self, location: Path | str) -> bool:
        future = self._pending.get(self._key(location))
        return future is not None and not future.done()

    def submit(self, location: Path | str, image: StillImage) -> bool:
        """Answer the request for *location*. ``False`` when nothing is pending."""

        future = self._pending.get(self._key(location))
        if future is None or future.done():
            return False
        future.set_result(image)
        return True

    def decline(self, location: Path | str) -> bool:
        future = self._pending.get(self._key(location))
        if future is None or future.done():
            return False
        future.set_result(None)
        return True

    def decline_all(self) -> int:
        return sum(1 for key in list(self._pending) if self.decline(key))


@dataclass(slots=True)
class CycleReport:
    """Progress and outcome of one trigger-to-artifact cycle."""

    id: int
    started_at: float
    raw_asset: RawAsset | None = None
    stage: str = "recording"
    status: str = "running"
    composition_duration: float | None = None
    exported_location: Path | None = None
    artifact: FinalArtifact | None = None
    error: str | None = None
    finished_at: float | None = None

    def finish(self, status: str, error: str | None = None) -> None:
        self.status = status
        self.error = error
        self.finished_at = time.time()

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "stage": self.stage,
            "status": self.status,
            "raw_asset": self.raw_asset.to_dict() if self.raw_asset else None,
            "composition_duration": self.composition_duration,
            "exported_location": str(self.exported_location) if self.exported_location else None,
            "artifact": self.artifact.to_dict() if self.artifact else None,
            "error": self.error,
        }


class MotionCapturePipeline:
    """Owns every stage from motion trigger to framed slow-motion video."""

    def __init__(
        self,
        settings: PipelineSettings | None = None,
        *,
        sensor: BaseMotionSensor | None = None,
        camera_factory: Callable[[], Optional[BaseCamera]] | None = None,
        image_source: ImageSource | None = None,
        compositor: ImageCompositor | None = None,
        event_log: PipelineEventLog | None = None,
        on_report: ReportCallback | None = None,
        max_reports: int = 20,
    ) -> None:
        self.settings = settings or PipelineSettings()
        settings = self.settings
        self.registry = DestinationRegistry()
        self.namer = ArtifactNamer(
            settings.output_dir,
            raw_container=settings.raw_container,
            export_container=settings.export_container,
            registry=self.registry,
        )
        self.event_log = event_log or PipelineEventLog()
        self._sensor = sensor or create_motion_sensor(
            settings.sensor, sample_rate_hz=settings.sample_rate_hz
        )
        self.monitor = MotionMonitor(self._sensor, sample_rate_hz=settings.sample_rate_hz)
        self.capture = CaptureSession(
            camera_factory or self._default_camera,
            fps=settings.framerate,
            registry=self.registry,
        )
        self.controller = RecordingController(
            self.capture,
            destination_factory=self.namer.raw_recording,
            recording_duration_s=settings.recording_duration_s,
            on_asset=self._on_asset,
            on_error=self._on_recording_error,
        )
        self.engine = TimeTransformEngine(settings.scale_factor)
        self.exporter = ExportPipeline(registry=self.registry, max_attempts=settings.export_attempts)
        self.overlay = OverlayStage(
            self.exporter.status_for,
            compositor=compositor,
            registry=self.registry,
            namer=self.namer.framed,
        )
        self.image_source: ImageSource = image_source or OverlayQueue()
        self._on_report = on_report
        self._reports: Deque[CycleReport] = deque(maxlen=max_reports)
        self._report_ids = itertools.count(1)
        self._cycles: set[asyncio.Task[None]] = set()
        self._running = False

    def _default_camera(self) -> BaseCamera:
        choice = os.getenv("SLOWMO_CAMERA", self.settings.camera)
        return create_camera(
            choice, resolution=self.settings.frame_size, fps=self.settings.framerate
        )

    # ------------------------------------------------------------------
    @property
    def running(self) -> bool:
        return self._running

    @property
    def reports(self) -> list[CycleReport]:
        return list(self._reports)

    def status(self) -> dict[str, object]:
        pending = self.image_source.pending() if isinstance(self.image_source, OverlayQueue) else []
        return {
            "running": self._running,
            "controller": self.controller.snapshot(),
            "monitor": self.monitor.snapshot(),
            "pending_overlays": [str(path) for path in pending],
            "cycles": [report.to_dict() for report in self._reports],
        }

    async def start(self) -> None:
        """Configure the capture session and start watching for motion."""

        if self._running:
            return
        try:
            await self.capture.configure()
            await self.capture.begin()
        except PipelineError as exc:
            await self.capture.release()
            self.event_log.record("recording", "capture_unavailable", str(exc))
            raise
        await self.monitor.start(self.settings.motion_threshold, self._on_trigger)
        self._running = True
        self.event_log.record(
            "pipeline",
            "started",
            "Motion capture pipeline started.",
            metadata={
                "threshold": self.settings.motion_threshold,
                "duration_s": self.settings.recording_duration_s,
                "scale_factor": self.settings.scale_factor,
            },
        )

    async def stop(self, timeout: float = 5.0) -> None:
        """Stop sampling, finish or fail any recording and cancel pending work."""

        await self.monitor.stop()
        await self.controller.shutdown(timeout)
        self.exporter.cancel_all()
        if isinstance(self.image_source, OverlayQueue):
            self.image_source.decline_all()
        cycles = list(self._cycles)
        if cycles:
            _, still_running = await asyncio.wait(cycles, timeout=timeout)
            for task in still_running:
                task.cancel()
            await asyncio.gather(*still_running, return_exceptions=True)
        await self.capture.release()
        await self._sensor.close()
        if self._running:
            self.event_log.record("pipeline", "stopped", "Motion capture pipeline stopped.")
        self._running = False

    def request_stop(self) -> bool:
        """Stop the current recording early."""

        return self.controller.request_stop()

    # ------------------------------------------------------------------
    def _on_trigger(self, sample: MotionSample) -> None:
        if self.controller.handle_trigger(sample):
            self.event_log.record(
                "motion",
                "trigger",
                "Motion above threshold started a recording.",
                metadata={"peak_g": round(sample.peak(), 3)},
            )

    def _new_report(self) -> CycleReport:
        report = CycleReport(id=next(self._report_ids), started_at=time.time())
        self._reports.append(report)
        return report

    def _on_recording_error(self, error: PipelineError) -> None:
        report = self._new_report()
        report.finish("failed", str(error))
        self.event_log.record("recording", "failed", str(error))
        self._publish(report)

    def _on_asset(self, raw_asset: RawAsset) -> None:
        self.event_log.record(
            "recording",
            "finished",
            f"Recorded {raw_asset.duration:.2f}s to {raw_asset.location.name}.",
            metadata=raw_asset.to_dict(),
        )
        task = asyncio.create_task(self.run_cycle(raw_asset), name="slowmo-cycle")
        self._cycles.add(task)
        task.add_done_callback(self._cycles.discard)

    def _publish(self, report: CycleReport) -> None:
        callback = self._on_report
        if callback is None:
            return
        try:
            callback(report)
        except Exception:
            logger.exception("Cycle report consumer failed for cycle %s", report.id)

    async def run_cycle(self, raw_asset: RawAsset) -> CycleReport:
        """Carry *raw_asset* through transform, export and overlay."""

        report = self._new_report()
        report.raw_asset = raw_asset
        try:
            report.stage = "transform"
            composition = await asyncio.to_thread(self.engine.transform, raw_asset)
            report.composition_duration = composition.duration
            self.event_log.record(
                "transform",
                "composed",
                f"Stretched {raw_asset.duration:.2f}s to {composition.duration:.2f}s.",
                metadata=composition.to_dict(),
            )

            report.stage = "export"
            destination = self.namer.exported(raw_asset.location)
            handle = self.exporter.export(composition, destination, self.settings.export_format)
            result = await handle.wait()
            if result.status is ExportStatus.CANCELLED:
                report.finish("cancelled", result.reason)
                self.event_log.record("export", "cancelled", f"Export of {destination.name} cancelled.")
                return report
            if result.status is not ExportStatus.COMPLETED:
                raise result.error or ExportFailure(result.reason or "unknown error")
            report.exported_location = result.output_location
            self.event_log.record(
                "export", "completed", f"Exported {result.output_location.name}."
            )

            report.stage = "overlay"
            image = await self.image_source(result.output_location)
            if image is None:
                self.overlay.cancel(result.output_location)
                report.finish("declined")
                self.event_log.record(
                    "overlay", "declined", f"No image chosen for {result.output_location.name}."
                )
                return report
            artifact = await asyncio.to_thread(
                self.overlay.attach_overlay, result.output_location, image
            )
            report.artifact = artifact
            report.finish("completed")
            self.event_log.record(
                "overlay",
                "completed",
                f"Final video written to {artifact.location.name}.",
                metadata={"location": str(artifact.location)},
            )
        except PipelineError as exc:
            logger.error("Cycle %s failed during %s: %s", report.id, report.stage, exc)
            report.finish("failed", str(exc))
            self.event_log.record(report.stage, "failed", str(exc))
        except Exception as exc:
            logger.exception("Cycle %s crashed during %s", report.id, report.stage)
            report.finish("failed", f"unexpected error: {exc}")
            self.event_log.record(
                report.stage,
                "failed",
                f"Unexpected error: {exc}",
                metadata={"type": type(exc).__name__},
            )
        finally:
            if report.finished_at is None:
                report.finish("cancelled", "pipeline stopped")
            self._publish(report)
        return report


__all__ = [
    "CycleReport",
    "ImageSource",
    "MotionCapturePipeline",
    "OverlayQueue",
]

"""FastAPI application wiring together the SlowMo Cam pipeline."""
from __future__ import annotations

import base64
import binascii
import logging
from pathlib import Path

from fastapi import FastAPI, HTTPException
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from .artifacts import PipelineError
from .config import PipelineSettingsStore
from .event_log import PipelineEventLog
from .overlay import OverlayError, load_still_image
from .pipeline import MotionCapturePipeline, OverlayQueue
from .version import APP_VERSION


class OverlayPayload(BaseModel):
    location: str
    image_base64: str


class SettingsPayload(BaseModel):
    motion_threshold: float | None = None
    recording_duration_s: float | None = None
    scale_factor: float | None = None
    sample_rate_hz: int | None = None
    sensor: str | None = None
    camera: str | None = None
    resolution: str | None = None
    framerate: int | None = None
    output_dir: str | None = None
    export_container: str | None = None
    export_codec: str | None = None
    raw_container: str | None = None
    export_attempts: int | None = None


def create_app(
    settings_path: Path | str = Path("data/settings.json"),
    *,
    pipeline: MotionCapturePipeline | None = None,
) -> FastAPI:
    app = FastAPI(title="SlowMo Cam", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    store = PipelineSettingsStore(settings_path)
    if pipeline is None:
        settings = store.load()
        event_log = PipelineEventLog(Path(settings.output_dir) / "events.jsonl")
        pipeline = MotionCapturePipeline(settings, event_log=event_log)
    startup_error: str | None = None

    def _overlay_queue() -> OverlayQueue | None:
        source = pipeline.image_source
        return source if isinstance(source, OverlayQueue) else None

    @app.on_event("startup")
    async def startup() -> None:
        nonlocal startup_error
        try:
            await pipeline.start()
        except PipelineError as exc:
            logger.error("Pipeline failed to start: %s", exc)
            startup_error = str(exc)
        else:
            startup_error = None

    @app.on_event("shutdown")
    async def shutdown() -> None:
        await pipeline.stop()

    @app.get("/api/status")
    async def get_status() -> dict[str, object]:
        status = pipeline.status()
        status["version"] = APP_VERSION
        status["startup_error"] = startup_error
        return status

    @app.post("/api/recording/stop")
    async def stop_recording() -> dict[str, object]:
        if not pipeline.request_stop():
            raise HTTPException(status_code=409, detail="No recording in progress")
        return {"state": pipeline.controller.state.value}

    @app.get("/api/overlay/pending")
    async def get_pending_overlays() -> dict[str, object]:
        queue = _overlay_queue()
        pending = queue.pending() if queue is not None else []
        return {"pending": [str(path) for path in pending]}

    @app.post("/api/overlay")
    async def submit_overlay(payload: OverlayPayload) -> dict[str, object]:
        queue = _overlay_queue()
        if queue is None or not queue.is_pending(payload.location):
            raise HTTPException(status_code=404, detail="No overlay pending for that location")
        try:
            data = base64.b64decode(payload.image_base64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise HTTPException(status_code=400, detail="Image must be base64 encoded") from exc
        try:
            image = await run_in_threadpool(load_still_image, data)
        except OverlayError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if not queue.submit(payload.location, image):
            raise HTTPException(status_code=404, detail="No overlay pending for that location")
        return {"location": payload.location, "width": image.width, "height": image.height}

    @app.delete("/api/overlay")
    async def decline_overlay(location: str) -> dict[str, object]:
        queue = _overlay_queue()
        if queue is None or not queue.decline(location):
            raise HTTPException(status_code=404, detail="No overlay pending for that location")
        return {"location": location, "declined": True}

    @app.get("/api/settings")
    async def get_settings() -> dict[str, object]:
        try:
            settings = await run_in_threadpool(store.load)
        except ValueError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return {"settings": settings.to_dict()}

    @app.post("/api/settings")
    async def update_settings(payload: SettingsPayload) -> dict[str, object]:
        raw = payload.model_dump(exclude_none=True)
        try:
            current = await run_in_threadpool(store.load)
            settings = current.merged(raw)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        await run_in_threadpool(store.save, settings)
        pipeline.event_log.record(
            "pipeline",
            "settings_updated",
            "Pipeline settings updated; changes apply on next start.",
            metadata={"fields": sorted(raw)},
        )
        return {"settings": settings.to_dict(), "restart_required": True}

    @app.get("/api/events")
    async def get_events(limit: int = 100, category: str | None = None) -> dict[str, object]:
        entries = await run_in_threadpool(pipeline.event_log.tail, limit, category=category)
        ordered = list(reversed(entries))
        return {"entries": [entry.to_dict() for entry in ordered]}

    return app


__all__ = ["create_app"]

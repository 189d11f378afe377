"""Compositing a still image over an exported video."""
from __future__ import annotations

import io
import logging
import os
import threading
from dataclasses import dataclass
from fractions import Fraction
from pathlib import Path
from typing import Callable, Optional, Protocol

import av
import numpy as np

from .artifacts import (
    ArtifactNamer,
    DestinationRegistry,
    FinalArtifact,
    PipelineError,
    partial_path,
    publish_partial,
    remove_quietly,
)
from .encoding import EncoderUnavailableError, VideoEncoder, as_rate, fit_frame
from .export import ExportStatus

logger = logging.getLogger(__name__)


class ArtifactNotReady(PipelineError):
    """Raised when the exported file is not complete or missing."""


class OverlayError(PipelineError):
    """Raised when the still image cannot be composited."""


@dataclass(frozen=True, slots=True)
class StillImage:
    """RGBA still image held as a ``(height, width, 4)`` uint8 array."""

    pixels: np.ndarray

    @classmethod
    def from_array(cls, array: np.ndarray) -> "StillImage":
        data = np.asarray(array)
        if data.ndim == 2:
            data = np.repeat(data[:, :, np.newaxis], 3, axis=2)
        if data.ndim != 3 or data.shape[2] not in (3, 4):
            raise OverlayError("Overlay image must be an RGB or RGBA array")
        if data.shape[0] == 0 or data.shape[1] == 0:
            raise OverlayError("Overlay image is empty")
        if data.dtype != np.uint8:
            data = np.clip(data, 0, 255).astype(np.uint8)
        if data.shape[2] == 3:
            alpha = np.full(data.shape[:2] + (1,), 255, dtype=np.uint8)
            data = np.concatenate([data, alpha], axis=2)
        return cls(pixels=np.ascontiguousarray(data))

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])


def load_still_image(source: Path | str | bytes) -> StillImage:
    """Decode a PNG/JPEG (or anything FFmpeg reads) into a :class:`StillImage`."""

    if isinstance(source, (bytes, bytearray)):
        if not source:
            raise OverlayError("Overlay image is empty")
        target: object = io.BytesIO(bytes(source))
        label = "uploaded image"
    else:
        target = os.fspath(source)
        label = str(target)
    try:
        with av.open(target, mode="r") as container:
            stream = next((item for item in container.streams if item.type == "video"), None)
            if stream is None:
                raise OverlayError(f"{label} is not an image")
            for frame in container.decode(stream):
                return StillImage.from_array(frame.to_ndarray(format="rgba"))
    except (av.FFmpegError, OSError, ValueError) as exc:
        raise OverlayError(f"Unable to decode {label}: {exc}") from exc
    raise OverlayError(f"{label} contains no image data")


def blend_rgba(frame: np.ndarray, overlay: np.ndarray) -> np.ndarray:
    """Alpha-blend an RGBA *overlay* of the same size over an RGB *frame*."""

    alpha = overlay[:, :, 3:4].astype(np.float32) / 255.0
    base = frame[:, :, :3].astype(np.float32)
    blended = base * (1.0 - alpha) + overlay[:, :, :3].astype(np.float32) * alpha
    return np.clip(blended + 0.5, 0, 255).astype(np.uint8)


class ImageCompositor(Protocol):
    def compose(
        self,
        source: Path,
        image: StillImage,
        destination: Path,
        cancelled: threading.Event,
    ) -> int:
        """Write *source* with *image* applied to *destination*; return frame count."""


class FrameBlendCompositor:
    """Blends the image over every frame and re-encodes with PyAV."""

    def __init__(self, encoding: str = "auto") -> None:
        self._encoding = encoding

    def compose(
        self,
        source: Path,
        image: StillImage,
        destination: Path,
        cancelled: threading.Event,
    ) -> int:
        encoder: VideoEncoder | None = None
        scaled: np.ndarray | None = None
        written = 0
        with av.open(str(source), mode="r") as container:
            stream = next((item for item in container.streams if item.type == "video"), None)
            if stream is None:
                raise OverlayError(f"{source} does not contain a video track")
            rate = as_rate(stream.average_rate or stream.guessed_rate or 30)
            time_base = stream.time_base
            try:
                for frame in container.decode(stream):
                    if cancelled.is_set():
                        raise OverlayError("overlay cancelled")
                    rgb = frame.to_ndarray(format="rgb24")
                    height, width = rgb.shape[:2]
                    if scaled is None:
                        scaled = fit_frame(image.pixels, width, height)
                        encoder = VideoEncoder(
                            path=destination,
                            rate=rate,
                            width=width,
                            height=height,
                            encoding=self._encoding,
                        )
                    pts = None
                    if frame.pts is not None and time_base:
                        pts = round(Fraction(frame.pts) * time_base * rate)
                    encoder.encode(blend_rgba(rgb, scaled), pts=pts)
                    written += 1
            except BaseException:
                if encoder is not None:
                    encoder.abort()
                raise
        if encoder is None:
            raise OverlayError(f"{source} produced no frames")
        encoder.close()
        return written


StatusLookup = Callable[[Path], Optional[ExportStatus]]
DestinationNamer = Callable[[Path], Path]


class OverlayStage:
    """Produces the final artifact from a completed export and a still image."""

    def __init__(
        self,
        status_for: StatusLookup,
        *,
        compositor: ImageCompositor | None = None,
        registry: DestinationRegistry | None = None,
        namer: DestinationNamer | None = None,
    ) -> None:
        self._status_for = status_for
        self._compositor = compositor or FrameBlendCompositor()
        self._registry = registry or DestinationRegistry()
        self._namer = namer or self._default_name
        self._lock = threading.Lock()
        self._active: dict[Path, threading.Event] = {}

    def _default_name(self, exported_location: Path) -> Path:
        return ArtifactNamer(exported_location.parent, registry=self._registry).framed(
            exported_location
        )

    @staticmethod
    def _key(location: Path | str) -> Path:
        return Path(os.path.abspath(os.fspath(location)))

    def attach_overlay(
        self, exported_location: Path | str, image: StillImage | np.ndarray
    ) -> FinalArtifact:
        """Composite *image* over the exported video and publish the result.

        Blocking; run it on a worker thread from async code.
        """

        location = self._key(exported_location)
        status = self._status_for(location)
        if status is not ExportStatus.COMPLETED:
            state = "unknown" if status is None else status.value
            raise ArtifactNotReady(f"Export for {location} is not complete ({state})")
        if not location.is_file():
            raise ArtifactNotReady(f"Exported file {location} is missing")
        still = image if isinstance(image, StillImage) else StillImage.from_array(image)

        cancelled = threading.Event()
        with self._lock:
            if location in self._active:
                raise OverlayError(f"An overlay for {location} is already in progress")
            self._active[location] = cancelled
        try:
            destination = self._registry.claim(self._namer(location))
        except PipelineError:
            with self._lock:
                self._active.pop(location, None)
            raise
        partial = partial_path(destination)
        try:
            try:
                frames = self._compositor.compose(location, still, partial, cancelled)
            except OverlayError:
                raise
            except (av.FFmpegError, OSError, ValueError, EncoderUnavailableError) as exc:
                raise OverlayError(f"Compositing {location.name} failed: {exc}") from exc
            publish_partial(partial, destination)
        finally:
            remove_quietly(partial)
            self._registry.release(destination)
            with self._lock:
                self._active.pop(location, None)
        logger.info("Overlay applied to %s (%d frames): %s", location.name, frames, destination)
        return FinalArtifact(location=destination)

    def cancel(self, exported_location: Path | str) -> bool:
        """Abandon the overlay for *exported_location*; no artifact is produced."""

        location = self._key(exported_location)
        with self._lock:
            event = self._active.get(location)
        if event is None:
            logger.info("Overlay for %s declined", location.name)
            return False
        event.set()
        logger.info("Overlay for %s cancelled", location.name)
        return True


__all__ = [
    "ArtifactNotReady",
    "FrameBlendCompositor",
    "ImageCompositor",
    "OverlayError",
    "OverlayStage",
    "StillImage",
    "blend_rgba",
    "load_still_image",
]

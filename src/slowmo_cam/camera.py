"""Video inputs feeding the capture session."""
from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod

import numpy as np

logger = logging.getLogger(__name__)

# User visible identifiers for camera backends.
CAMERA_SOURCES: dict[str, str] = {
    "synthetic": "Synthetic sweep pattern",
    "opencv": "OpenCV (USB webcam)",
}

DEFAULT_CAMERA_CHOICE = "synthetic"

_CAMERA_ALIASES = {
    "usb": "opencv",
    "webcam": "opencv",
    "test": "synthetic",
}


class CameraError(RuntimeError):
    """Raised when the camera cannot be opened or stops delivering frames."""


class BaseCamera(ABC):
    """Abstract camera capable of producing RGB frames."""

    @abstractmethod
    async def get_frame(self) -> np.ndarray:  # pragma: no cover - interface only
        raise NotImplementedError

    async def close(self) -> None:  # pragma: no cover - optional override
        return None


def summarise_exception(exc: BaseException) -> str:
    """Describe *exc* and every exception chained behind it, outermost first.

    Exceptions without a message are named by their type so that a bare
    ``OSError()`` from a driver still says something in the recording error.
    """

    details: list[str] = []
    visited: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in visited:
        visited.add(id(current))
        text = str(current).strip() or type(current).__name__
        if text not in details:
            details.append(text)
        current = current.__cause__ or current.__context__
    return " | ".join(details)


def parse_camera_choice(choice: str | None) -> tuple[str, str | None]:
    """Split ``"backend[:device]"`` into a canonical backend and device."""

    if choice is None:
        choice = os.getenv("SLOWMO_CAMERA", DEFAULT_CAMERA_CHOICE)
    backend, _, device = choice.strip().partition(":")
    backend = backend.strip().lower()
    return _CAMERA_ALIASES.get(backend, backend), (device.strip() or None)


class OpenCVCamera(BaseCamera):
    """USB webcam read through OpenCV.

    ``device`` is a capture index or a device path such as ``/dev/video2``.
    A failed read raises :class:`CameraError`, which the capture session
    treats as the device having been removed.
    """

    def __init__(
        self,
        device: int | str = 0,
        resolution: tuple[int, int] | None = None,
        *,
        fps: int | None = None,
    ) -> None:
        try:
            import cv2
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise CameraError("OpenCV is not installed") from exc

        if isinstance(device, str) and device.isdigit():
            device = int(device)
        self.device = device
        self._cv2 = cv2
        self._capture = cv2.VideoCapture(device)
        if not self._capture.isOpened():
            self._capture.release()
            raise CameraError(f"Unable to open video device {device!r}")
        if resolution is not None:
            width, height = resolution
            self._capture.set(cv2.CAP_PROP_FRAME_WIDTH, float(width))
            self._capture.set(cv2.CAP_PROP_FRAME_HEIGHT, float(height))
        if fps:
            self._capture.set(cv2.CAP_PROP_FPS, float(fps))
        reported = self._capture.get(cv2.CAP_PROP_FPS)
        self.fps = float(reported) if reported and reported > 0 else float(fps or 0)
        logger.info("Opened video device %r (%.1f fps)", device, self.fps)

    async def get_frame(self) -> np.ndarray:
        ok, frame = await asyncio.to_thread(self._capture.read)
        if not ok or frame is None or frame.size == 0:
            raise CameraError(f"Video device {self.device!r} stopped delivering frames")
        return self._cv2.cvtColor(frame, self._cv2.COLOR_BGR2RGB)

    async def close(self) -> None:
        await asyncio.to_thread(self._capture.release)


class SyntheticCamera(BaseCamera):
    """Deterministic stand-in for a real device.

    Each frame is a vertical gradient with a white bar that advances one
    column per frame, so a recording's content depends only on how many
    frames were captured. ``elapsed`` is the footage time at ``fps``.
    """

    def __init__(
        self,
        resolution: tuple[int, int] = (640, 480),
        *,
        fps: int | None = None,
    ) -> None:
        width, height = (int(value) for value in resolution)
        if width <= 0 or height <= 0:
            raise CameraError(f"Invalid synthetic resolution {width}x{height}")
        self.fps = int(fps) if fps else 30
        self.frame_index = 0
        self._width = width
        gradient = np.linspace(0, 200, height, dtype=np.uint8).reshape(-1, 1)
        self._background = np.repeat(np.tile(gradient, (1, width))[:, :, np.newaxis], 3, axis=2)

    @property
    def elapsed(self) -> float:
        return self.frame_index / float(self.fps)

    async def get_frame(self) -> np.ndarray:
        frame = self._background.copy()
        frame[:, self.frame_index % self._width] = 255
        self.frame_index += 1
        return frame


def create_camera(
    choice: str | None = None,
    *,
    resolution: tuple[int, int] | None = None,
    fps: int | None = None,
) -> BaseCamera:
    """Create the camera named by *choice* or the ``SLOWMO_CAMERA`` variable.

    *choice* is ``"synthetic"``, ``"opencv"`` or ``"opencv:<device>"``.
    Raises :class:`CameraError` when the backend is unknown or cannot be
    opened so the capture session can report the device as unavailable.
    """

    backend, device = parse_camera_choice(choice)
    if backend == "synthetic":
        return SyntheticCamera(resolution or (640, 480), fps=fps)
    if backend == "opencv":
        return OpenCVCamera(device if device is not None else 0, resolution, fps=fps)
    raise CameraError(f"Unknown camera choice: {choice}")


__all__ = [
    "CAMERA_SOURCES",
    "DEFAULT_CAMERA_CHOICE",
    "BaseCamera",
    "CameraError",
    "OpenCVCamera",
    "SyntheticCamera",
    "create_camera",
    "parse_camera_choice",
    "summarise_exception",
]

"""Video encoder discovery and incremental encoding helpers."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from fractions import Fraction
from pathlib import Path
from typing import Sequence

import av
import numpy as np

logger = logging.getLogger(__name__)


class EncoderUnavailableError(RuntimeError):
    """Raised when no encoder from the candidate list can be opened."""


_CODEC_FAMILIES: dict[str, tuple[str, ...]] = {
    "h264": ("libx264", "h264", "h264_v4l2m2m", "mpeg4"),
    "hevc": ("libx265", "hevc", "libx264", "h264", "mpeg4"),
    "mpeg4": ("mpeg4", "libx264", "h264"),
}

_CODEC_ALIASES = {
    "auto": "h264",
    "default": "h264",
    "x264": "libx264",
    "h265": "hevc",
    "libx265": "hevc",
    "hardware": "h264_v4l2m2m",
    "software": "libx264",
}

_CODEC_OPTIONS: dict[str, dict[str, str]] = {
    "libx264": {"preset": "veryfast", "crf": "23"},
    "libx265": {"preset": "veryfast", "crf": "28"},
}

CODECS_REQUIRE_EVEN_DIMENSIONS: frozenset[str] = frozenset(
    {"h264", "libx264", "h264_v4l2m2m", "hevc", "libx265", "mpeg4"}
)


def normalise_encoder_choice(choice: str | None) -> str:
    """Normalise a user-provided encoder choice string."""

    if not choice:
        return "h264"
    key = choice.strip().lower()
    if not key:
        return "h264"
    return _CODEC_ALIASES.get(key, key)


def codec_candidates(choice: str | None) -> list[str]:
    """Return codec names to try, most preferred first."""

    preference = normalise_encoder_choice(choice)
    family = _CODEC_FAMILIES.get(preference)
    if family is not None:
        return list(family)
    candidates = [preference]
    for fallback in _CODEC_FAMILIES["h264"]:
        if fallback not in candidates:
            candidates.append(fallback)
    return candidates


def _codec_available(codec: str) -> bool:
    try:
        context = av.CodecContext.create(codec, "w")
    except (av.FFmpegError, ValueError) as exc:
        logger.debug("Codec %s unavailable: %s", codec, exc)
        return False
    if not getattr(context, "is_encoder", True):
        logger.debug("Codec %s is not an encoder", codec)
        return False
    return True


def select_encoder(choice: str | None) -> tuple[str | None, tuple[str, ...]]:
    """Return ``(codec, attempted)`` for the first usable encoder.

    ``codec`` is ``None`` when none of the candidates could be created.
    """

    attempted: list[str] = []
    for codec in codec_candidates(choice):
        attempted.append(codec)
        if _codec_available(codec):
            return codec, tuple(attempted)
    return None, tuple(attempted)


def ensure_rgb_frame(frame: np.ndarray | Sequence, *, even: bool = True) -> np.ndarray:
    """Return a contiguous RGB frame suitable for encoding."""

    array = np.asarray(frame)
    if array.ndim == 2:
        array = np.repeat(array[:, :, np.newaxis], 3, axis=2)
    elif array.ndim == 3:
        if array.shape[2] == 1:
            array = np.repeat(array, 3, axis=2)
        elif array.shape[2] > 3:
            array = array[:, :, :3]
    else:
        raise ValueError("Expected a 2D or 3D frame for encoding")

    if array.dtype != np.uint8:
        array = np.clip(array, 0, 255).astype(np.uint8)

    if even:
        height, width = array.shape[:2]
        if width % 2:
            array = array[:, : width - 1, :]
        if height % 2:
            array = array[: height - 1, :, :]

    if not array.flags["C_CONTIGUOUS"]:
        array = np.ascontiguousarray(array)

    return array


def as_rate(value: Fraction | int | float) -> Fraction:
    """Return *value* as a frame rate fraction usable as a codec time base."""

    rate = Fraction(value).limit_denominator(65535)
    if rate <= 0:
        raise ValueError("Frame rate must be positive")
    return rate


@dataclass(slots=True)
class VideoEncoder:
    """Incrementally encode RGB frames into a media container.

    Frames are stamped with consecutive presentation timestamps in a time
    base of ``1 / rate`` unless an explicit ``pts`` is supplied.
    """

    path: Path
    rate: Fraction | int | float
    width: int
    height: int
    encoding: str = "auto"
    container_format: str | None = None
    codec: str | None = field(init=False, default=None)
    _container: av.container.OutputContainer | None = field(init=False, default=None)
    _stream: av.video.stream.VideoStream | None = field(init=False, default=None)
    _frame_index: int = field(init=False, default=0)
    _last_pts: int = field(init=False, default=-1)

    def __post_init__(self) -> None:
        self.rate = as_rate(self.rate)
        if self.width <= 0 or self.height <= 0:
            raise ValueError("Frame dimensions must be positive")
        self._open()

    # ------------------------------------------------------------------
    def _open(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        container = av.open(self.path.as_posix(), mode="w", format=self.container_format)
        stream = None
        for codec in codec_candidates(self.encoding):
            try:
                stream = container.add_stream(
                    codec, rate=self.rate, options=dict(_CODEC_OPTIONS.get(codec, {}))
                )
            except (av.FFmpegError, ValueError) as exc:
                logger.debug("Encoder %s rejected: %s", codec, exc)
                continue
            self.codec = codec
            break
        if stream is None:
            container.close()
            raise EncoderUnavailableError(f"No compatible encoder available for {self.encoding!r}")
        width, height = int(self.width), int(self.height)
        if self.codec in CODECS_REQUIRE_EVEN_DIMENSIONS:
            width -= width % 2
            height -= height % 2
        stream.width = width
        stream.height = height
        stream.pix_fmt = "yuv420p"
        stream.time_base = Fraction(self.rate.denominator, self.rate.numerator)
        self._container = container
        self._stream = stream

    @property
    def frame_count(self) -> int:
        return self._frame_index

    @property
    def last_pts(self) -> int:
        return self._last_pts

    @property
    def time_base(self) -> Fraction:
        return Fraction(self.rate.denominator, self.rate.numerator)

    # ------------------------------------------------------------------
    def encode(self, frame: np.ndarray | Sequence, pts: int | None = None) -> None:
        if self._stream is None or self._container is None:
            raise RuntimeError("Video encoder has been closed")
        rgb = ensure_rgb_frame(frame, even=True)
        height, width = self._stream.height, self._stream.width
        if rgb.shape[0] != height or rgb.shape[1] != width:
            rgb = fit_frame(rgb, width, height)
        video_frame = av.VideoFrame.from_ndarray(rgb, format="rgb24")
        if pts is None:
            pts = self._frame_index
        pts = max(int(pts), self._last_pts + 1)
        video_frame.pts = pts
        video_frame.time_base = self.time_base
        self._last_pts = pts
        self._frame_index += 1
        for packet in self._stream.encode(video_frame):
            self._container.mux(packet)

    # ------------------------------------------------------------------
    def close(self) -> None:
        if self._stream is None or self._container is None:
            return
        try:
            for packet in self._stream.encode():
                self._container.mux(packet)
        finally:
            self._container.close()
            self._stream = None
            self._container = None

    def abort(self) -> None:
        """Close the container without flushing pending packets."""

        container = self._container
        self._stream = None
        self._container = None
        if container is None:
            return
        try:
            container.close()
        except (av.FFmpegError, OSError) as exc:
            logger.debug("Ignoring error while aborting encoder for %s: %s", self.path, exc)

    # ------------------------------------------------------------------
    def __enter__(self) -> "VideoEncoder":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()
        else:
            self.abort()


def fit_frame(frame: np.ndarray, width: int, height: int) -> np.ndarray:
    """Nearest-neighbour resize of *frame* to ``width`` x ``height``."""

    src_height, src_width = frame.shape[:2]
    rows = (np.arange(height) * src_height // max(1, height)).clip(0, src_height - 1)
    cols = (np.arange(width) * src_width // max(1, width)).clip(0, src_width - 1)
    return np.ascontiguousarray(frame[rows][:, cols])


__all__ = [
    "CODECS_REQUIRE_EVEN_DIMENSIONS",
    "EncoderUnavailableError",
    "VideoEncoder",
    "as_rate",
    "codec_candidates",
    "ensure_rgb_frame",
    "fit_frame",
    "normalise_encoder_choice",
    "select_encoder",
]

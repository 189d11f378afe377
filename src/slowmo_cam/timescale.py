"""Slow-motion compositions built by stretching a recording's timeline."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from fractions import Fraction
from pathlib import Path

import av

from .artifacts import PipelineError, RawAsset

logger = logging.getLogger(__name__)

DEFAULT_SCALE_FACTOR = 2.0


class NoVideoTrack(PipelineError):
    """Raised when an asset holds no video stream."""


class CompositionError(PipelineError):
    """Raised when the time range cannot be inserted or stretched."""


@dataclass(frozen=True, slots=True)
class TimeRange:
    """Half-open interval ``[start, start + duration)`` in seconds."""

    start: float
    duration: float

    @property
    def end(self) -> float:
        return self.start + self.duration


@dataclass(frozen=True, slots=True)
class CompositionTrack:
    """One source track inserted into a composition.

    ``source_range`` is the span copied from the source stream and
    ``scaled_duration`` the span it occupies on the composition timeline.
    Frames keep their content; only presentation times are stretched.
    """

    media_type: str
    source: Path
    stream_index: int
    source_range: TimeRange
    scaled_duration: float
    frame_rate: Fraction
    frame_count: int
    width: int
    height: int

    @property
    def time_scale(self) -> float:
        return self.scaled_duration / self.source_range.duration

    def output_frame_rate(self) -> Fraction:
        """Frame rate that plays every source frame over the scaled span."""

        rate = (Fraction(self.frame_rate) / Fraction(self.time_scale)).limit_denominator(65535)
        if rate <= 0:
            raise CompositionError(f"Time scale {self.time_scale:g} leaves no playable frame rate")
        return rate


@dataclass(frozen=True, slots=True)
class Composition:
    """Ordered set of tracks with a target duration."""

    tracks: tuple[CompositionTrack, ...]
    duration: float

    def __post_init__(self) -> None:
        if not self.tracks:
            raise CompositionError("A composition requires at least one track")

    @property
    def video_track(self) -> CompositionTrack:
        for track in self.tracks:
            if track.media_type == "video":
                return track
        raise NoVideoTrack("Composition has no video track")

    def to_dict(self) -> dict[str, object]:
        return {
            "duration": self.duration,
            "tracks": [
                {
                    "media_type": track.media_type,
                    "source": str(track.source),
                    "stream_index": track.stream_index,
                    "source_start": track.source_range.start,
                    "source_duration": track.source_range.duration,
                    "scaled_duration": track.scaled_duration,
                    "frame_rate": float(track.frame_rate),
                    "frame_count": track.frame_count,
                }
                for track in self.tracks
            ],
        }


@dataclass(frozen=True, slots=True)
class _VideoStreamInfo:
    index: int
    frame_rate: Fraction
    packet_count: int
    width: int
    height: int


def _inspect_video_stream(location: Path, fallback_rate: float) -> _VideoStreamInfo:
    try:
        container = av.open(str(location), mode="r")
    except (av.FFmpegError, OSError) as exc:
        raise CompositionError(f"Unable to open {location}: {exc}") from exc
    with container:
        stream = next((item for item in container.streams if item.type == "video"), None)
        if stream is None:
            raise NoVideoTrack(f"{location} does not contain a video track")
        packet_count = 0
        try:
            for packet in container.demux(stream):
                if packet.size:
                    packet_count += 1
        except av.FFmpegError as exc:
            raise CompositionError(f"Corrupt video track in {location}: {exc}") from exc
        rate = stream.average_rate or stream.guessed_rate
        if not rate and fallback_rate > 0:
            rate = Fraction(fallback_rate).limit_denominator(65535)
        if not rate:
            raise CompositionError(f"Unable to determine the frame rate of {location}")
        return _VideoStreamInfo(
            index=stream.index,
            frame_rate=Fraction(rate),
            packet_count=packet_count,
            width=int(stream.codec_context.width or 0),
            height=int(stream.codec_context.height or 0),
        )


class TimeTransformEngine:
    """Builds slow-motion compositions from recorded assets.

    ``transform`` reads media metadata from disk, so callers on an event
    loop should run it via :func:`asyncio.to_thread`.
    """

    def __init__(self, scale_factor: float = DEFAULT_SCALE_FACTOR) -> None:
        self._scale_factor = self._validate_scale(scale_factor)

    @property
    def scale_factor(self) -> float:
        return self._scale_factor

    @staticmethod
    def _validate_scale(value: float) -> float:
        try:
            scale = float(value)
        except (TypeError, ValueError) as exc:
            raise CompositionError("Scale factor must be numeric") from exc
        if not math.isfinite(scale) or scale <= 0:
            raise CompositionError("Scale factor must be a positive finite number")
        return scale

    def transform(self, raw_asset: RawAsset, scale_factor: float | None = None) -> Composition:
        """Return a composition stretching *raw_asset* by *scale_factor*."""

        scale = self._scale_factor if scale_factor is None else self._validate_scale(scale_factor)
        duration = float(raw_asset.duration)
        if not math.isfinite(duration) or duration <= 0:
            raise CompositionError(f"{raw_asset.location} has no playable duration")
        location = Path(raw_asset.location)
        if not location.is_file():
            raise CompositionError(f"{location} does not exist")

        info = _inspect_video_stream(location, raw_asset.fps)
        if info.packet_count == 0:
            raise CompositionError(f"{location} contains an empty video track")

        source_range = TimeRange(start=0.0, duration=duration)
        track = CompositionTrack(
            media_type="video",
            source=location,
            stream_index=info.index,
            source_range=source_range,
            scaled_duration=duration * scale,
            frame_rate=info.frame_rate,
            frame_count=info.packet_count,
            width=info.width,
            height=info.height,
        )
        composition = Composition(tracks=(track,), duration=duration * scale)
        logger.info(
            "Composed %s: %.3fs stretched x%.2f to %.3fs",
            location.name,
            duration,
            scale,
            composition.duration,
        )
        return composition


__all__ = [
    "Composition",
    "CompositionError",
    "CompositionTrack",
    "DEFAULT_SCALE_FACTOR",
    "NoVideoTrack",
    "TimeRange",
    "TimeTransformEngine",
]

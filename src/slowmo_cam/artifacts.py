"""Shared pipeline entities, errors and destination bookkeeping."""
from __future__ import annotations

import logging
import os
import shutil
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Iterator

logger = logging.getLogger(__name__)


class PipelineError(RuntimeError):
    """Base class for every failure surfaced by a pipeline stage."""


class DestinationExists(PipelineError):
    """Raised when an output path already exists or is being written."""

    def __init__(self, path: Path | str, detail: str | None = None) -> None:
        self.path = Path(path)
        message = f"Destination already exists: {self.path}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class PublishError(PipelineError):
    """Raised when a finished partial file could not be moved into place."""

    def __init__(self, path: Path | str, reason: str) -> None:
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"Unable to publish {self.path}: {reason}")


@dataclass(frozen=True, slots=True)
class RawAsset:
    """A finished recording produced by the capture session."""

    location: Path
    duration: float
    frame_count: int = 0
    fps: float = 0.0

    def to_dict(self) -> dict[str, object]:
        return {
            "location": str(self.location),
            "duration": float(self.duration),
            "frame_count": int(self.frame_count),
            "fps": float(self.fps),
        }


@dataclass(frozen=True, slots=True)
class FinalArtifact:
    """Terminal output of one pipeline cycle."""

    location: Path

    def to_dict(self) -> dict[str, object]:
        return {"location": str(self.location)}


class DestinationRegistry:
    """Tracks paths currently owned by a writer.

    Capture, export and overlay stages claim their destination before
    writing so that two stages never produce the same file concurrently.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._claimed: set[Path] = set()

    @staticmethod
    def _key(path: Path | str) -> Path:
        return Path(os.path.abspath(os.fspath(path)))

    def claim(self, path: Path | str) -> Path:
        """Reserve *path* for a single writer."""

        key = self._key(path)
        with self._lock:
            if key in self._claimed:
                raise DestinationExists(key, "another writer owns this path")
            if key.exists():
                raise DestinationExists(key)
            self._claimed.add(key)
        logger.debug("Claimed destination %s", key)
        return key

    def release(self, path: Path | str) -> None:
        key = self._key(path)
        with self._lock:
            self._claimed.discard(key)

    def is_claimed(self, path: Path | str) -> bool:
        with self._lock:
            return self._key(path) in self._claimed

    @contextmanager
    def reserve(self, path: Path | str) -> Iterator[Path]:
        key = self.claim(path)
        try:
            yield key
        finally:
            self.release(key)


def partial_path(path: Path) -> Path:
    """Return the hidden sibling used while *path* is being written."""

    return path.with_name(f".{path.stem}.partial{path.suffix}")


def publish_partial(partial: Path, destination: Path) -> None:
    """Move a completed *partial* file into place without overwriting.

    Raises :class:`DestinationExists` when *destination* appeared in the
    meantime and :class:`PublishError` when the file could not be written.
    Either way no truncated file is left at *destination*.
    """

    try:
        os.link(partial, destination)
    except FileExistsError as exc:
        raise DestinationExists(destination) from exc
    except OSError as exc:
        logger.debug("Hard link to %s failed (%s); copying instead", destination, exc)
        _copy_exclusive(partial, destination)
    finally:
        remove_quietly(partial)


def _copy_exclusive(partial: Path, destination: Path) -> None:
    created = False
    try:
        with partial.open("rb") as source, destination.open("xb") as target:
            created = True
            shutil.copyfileobj(source, target, 1 << 20)
    except FileExistsError as exc:
        raise DestinationExists(destination) from exc
    except OSError as exc:
        if created:
            remove_quietly(destination)
        raise PublishError(destination, str(exc)) from exc


def remove_quietly(path: Path | None) -> None:
    if path is None:
        return
    try:
        path.unlink()
    except FileNotFoundError:
        return
    except OSError as exc:  # pragma: no cover - filesystem specific
        logger.warning("Unable to remove %s: %s", path, exc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ArtifactNamer:
    """Produce stable, collision-checked names for pipeline outputs."""

    def __init__(
        self,
        directory: Path | str,
        *,
        raw_container: str = "mov",
        export_container: str = "mp4",
        registry: DestinationRegistry | None = None,
    ) -> None:
        self._directory = Path(directory)
        self._raw_suffix = f".{raw_container.lstrip('.')}"
        self._export_suffix = f".{export_container.lstrip('.')}"
        self._registry = registry or DestinationRegistry()

    @property
    def directory(self) -> Path:
        return self._directory

    def _available(self, stem: str, suffix: str) -> Path:
        self._directory.mkdir(parents=True, exist_ok=True)
        candidate = self._directory / f"{stem}{suffix}"
        index = 1
        while candidate.exists() or self._registry.is_claimed(candidate):
            candidate = self._directory / f"{stem}-{index:02d}{suffix}"
            index += 1
        return candidate

    def raw_recording(self, started_at: datetime | None = None) -> Path:
        stamp = (started_at or _utcnow()).strftime("%Y%m%d-%H%M%S")
        return self._available(stamp, self._raw_suffix)

    def exported(self, raw_location: Path) -> Path:
        return self._available(f"{raw_location.stem}-edited", self._export_suffix)

    def framed(self, exported_location: Path) -> Path:
        return self._available(f"{exported_location.stem}-framed", exported_location.suffix)


__all__ = [
    "ArtifactNamer",
    "DestinationExists",
    "DestinationRegistry",
    "FinalArtifact",
    "PipelineError",
    "PublishError",
    "RawAsset",
    "partial_path",
    "publish_partial",
    "remove_quietly",
]

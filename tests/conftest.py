from __future__ import annotations

from pathlib import Path
from typing import Callable

import av
import numpy as np
import pytest

from slowmo_cam.camera import BaseCamera
from slowmo_cam.encoding import VideoEncoder


class StaticCamera(BaseCamera):
    """Camera returning numbered solid frames."""

    def __init__(self, width: int = 32, height: int = 24, *, fail_after: int | None = None) -> None:
        self.width = width
        self.height = height
        self.fail_after = fail_after
        self.frames = 0
        self.closed = False

    async def get_frame(self) -> np.ndarray:
        if self.fail_after is not None and self.frames >= self.fail_after:
            raise OSError("camera unplugged")
        self.frames += 1
        value = (self.frames * 17) % 256
        return np.full((self.height, self.width, 3), value, dtype=np.uint8)

    async def close(self) -> None:
        self.closed = True


def write_clip(path: Path, *, frames: int = 10, fps: int = 10, size: tuple[int, int] = (32, 24)) -> Path:
    width, height = size
    with VideoEncoder(path=path, rate=fps, width=width, height=height) as encoder:
        for index in range(frames):
            frame = np.zeros((height, width, 3), dtype=np.uint8)
            frame[:, : (index % width) + 1, 0] = 200
            encoder.encode(frame)
    return path


@pytest.fixture()
def make_clip(tmp_path: Path) -> Callable[..., Path]:
    def _make(name: str = "raw.mov", **kwargs) -> Path:
        return write_clip(tmp_path / name, **kwargs)

    return _make


def png_bytes(path: Path, colour: tuple[int, int, int, int], size: tuple[int, int] = (8, 8)) -> bytes:
    width, height = size
    pixels = np.zeros((height, width, 4), dtype=np.uint8)
    pixels[:, :] = colour
    with av.open(str(path), mode="w", format="image2") as container:
        stream = container.add_stream("png", rate=1)
        stream.width = width
        stream.height = height
        stream.pix_fmt = "rgba"
        frame = av.VideoFrame.from_ndarray(pixels, format="rgba")
        for packet in stream.encode(frame):
            container.mux(packet)
        for packet in stream.encode():
            container.mux(packet)
    return path.read_bytes()

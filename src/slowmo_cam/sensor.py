"""Motion sensor abstractions feeding the motion monitor."""
from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Iterable


class SensorError(RuntimeError):
    """Raised when a motion sensor cannot produce a sample."""


@dataclass(frozen=True, slots=True)
class Vector3:
    """Simple 3D vector container for sensor measurements."""

    x: float
    y: float
    z: float


@dataclass(frozen=True, slots=True)
class MotionSample:
    """One accelerometer reading expressed in g."""

    x: float
    y: float
    z: float
    timestamp: float

    @classmethod
    def from_vector(cls, vector: Vector3, timestamp: float | None = None) -> "MotionSample":
        stamp = time.monotonic() if timestamp is None else float(timestamp)
        return cls(float(vector.x), float(vector.y), float(vector.z), stamp)

    def peak(self) -> float:
        """Return the largest absolute axis value."""

        return max(abs(self.x), abs(self.y), abs(self.z))


class BaseMotionSensor(ABC):
    """Accelerometer-like source sampled at a fixed rate."""

    sample_rate_hz: float = 50.0

    @abstractmethod
    async def read(self) -> MotionSample:  # pragma: no cover - interface only
        raise NotImplementedError

    async def close(self) -> None:  # pragma: no cover - optional override
        return None


class SyntheticMotionSensor(BaseMotionSensor):
    """Replays scripted readings, then reports a resting device.

    The resting reading is ``(0, 0, 1)`` g which stays below any sensible
    trigger threshold.
    """

    def __init__(
        self,
        readings: Iterable[Vector3 | tuple[float, float, float]] = (),
        *,
        sample_rate_hz: float = 50.0,
        rest: Vector3 = Vector3(0.0, 0.0, 1.0),
    ) -> None:
        if sample_rate_hz <= 0:
            raise ValueError("sample_rate_hz must be positive")
        self.sample_rate_hz = float(sample_rate_hz)
        self._pending: deque[Vector3] = deque(
            item if isinstance(item, Vector3) else Vector3(*item) for item in readings
        )
        self._rest = rest
        self._closed = False

    def push(self, x: float, y: float, z: float) -> None:
        """Queue a reading to be returned by the next :meth:`read`."""

        self._pending.append(Vector3(float(x), float(y), float(z)))

    async def read(self) -> MotionSample:
        if self._closed:
            raise SensorError("Synthetic sensor has been closed")
        vector = self._pending.popleft() if self._pending else self._rest
        await asyncio.sleep(0)
        return MotionSample.from_vector(vector)

    async def close(self) -> None:
        self._closed = True


MOTION_SENSORS: dict[str, str] = {
    "synthetic": "Scripted test readings",
    "gy85": "GY-85 ADXL345 accelerometer (I2C)",
}


def create_motion_sensor(choice: str | None = None, *, sample_rate_hz: float = 50.0) -> BaseMotionSensor:
    """Create the motion sensor named by *choice*."""

    resolved = (choice or "synthetic").strip().lower()
    if resolved == "synthetic":
        return SyntheticMotionSensor(sample_rate_hz=sample_rate_hz)
    if resolved == "gy85":
        from .gy85 import Gy85Accelerometer

        return Gy85Accelerometer(sample_rate_hz=sample_rate_hz)
    raise SensorError(f"Unknown motion sensor choice: {choice}")


__all__ = [
    "BaseMotionSensor",
    "MOTION_SENSORS",
    "MotionSample",
    "SensorError",
    "SyntheticMotionSensor",
    "Vector3",
    "create_motion_sensor",
]

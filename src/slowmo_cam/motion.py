"""Threshold based motion trigger driven by the accelerometer feed."""
from __future__ import annotations

import asyncio
import logging
import math
from typing import Callable, Optional

from .sensor import BaseMotionSensor, MotionSample

logger = logging.getLogger(__name__)

TriggerCallback = Callable[[MotionSample], None]


def exceeds_threshold(sample: MotionSample, threshold: float) -> bool:
    """Return ``True`` when any axis of *sample* is strictly above *threshold*."""

    return abs(sample.x) > threshold or abs(sample.y) > threshold or abs(sample.z) > threshold


class MotionMonitor:
    """Continuously samples a motion sensor and reports qualifying samples.

    Every sample above the threshold produces one trigger. Consecutive
    qualifying samples are not merged; filtering of repeated triggers is
    left to the consumer.
    """

    def __init__(self, sensor: BaseMotionSensor, *, sample_rate_hz: float | None = None) -> None:
        rate = float(sample_rate_hz if sample_rate_hz is not None else sensor.sample_rate_hz)
        if not math.isfinite(rate) or rate <= 0:
            raise ValueError("Sample rate must be a positive number")
        self._sensor = sensor
        self._interval = 1.0 / rate
        self._threshold: float = 0.0
        self._on_trigger: Optional[TriggerCallback] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._running = False
        self._samples_seen = 0
        self._triggers_emitted = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def threshold(self) -> float:
        return self._threshold

    def snapshot(self) -> dict[str, object]:
        return {
            "running": self._running,
            "threshold": self._threshold,
            "samples": self._samples_seen,
            "triggers": self._triggers_emitted,
        }

    async def start(self, threshold: float, on_trigger: TriggerCallback) -> None:
        """Begin sampling; ``on_trigger`` runs on the event loop."""

        if self._task is not None:
            raise RuntimeError("Motion monitor already running")
        threshold = float(threshold)
        if not math.isfinite(threshold) or threshold < 0:
            raise ValueError("Motion threshold must be a non-negative number")
        self._threshold = threshold
        self._on_trigger = on_trigger
        self._running = True
        self._task = asyncio.create_task(self._run(), name="slowmo-motion-monitor")
        logger.info("Motion monitor started (threshold %.3f g)", threshold)

    async def stop(self) -> None:
        """Stop sampling. No trigger is delivered once this returns."""

        self._running = False
        task = self._task
        self._task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info("Motion monitor stopped")
        self._on_trigger = None

    def _handle_sample(self, sample: MotionSample) -> None:
        self._samples_seen += 1
        if not exceeds_threshold(sample, self._threshold):
            return
        callback = self._on_trigger
        if not self._running or callback is None:
            return
        self._triggers_emitted += 1
        logger.debug("Motion trigger: peak %.3f g", sample.peak())
        try:
            callback(sample)
        except Exception:
            logger.exception("Motion trigger callback failed")

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        while self._running:
            started = loop.time()
            try:
                sample = await self._sensor.read()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Failed to read motion sensor: %s", exc)
            else:
                self._handle_sample(sample)
            elapsed = loop.time() - started
            await asyncio.sleep(max(0.0, self._interval - elapsed))


__all__ = ["MotionMonitor", "TriggerCallback", "exceeds_threshold"]

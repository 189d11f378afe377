"""ADXL345 accelerometer access for the GY-85 IMU board."""

from __future__ import annotations

import asyncio
import struct
import time
from threading import Lock

from .sensor import BaseMotionSensor, MotionSample, SensorError, Vector3


class Gy85Error(SensorError):
    """Base exception raised for GY-85 failures."""


class Gy85UnavailableError(Gy85Error):
    """Raised when the sensor or required drivers are unavailable."""


class Gy85Accelerometer(BaseMotionSensor):
    """Motion sensor backed by the ADXL345 on a GY-85 board.

    Only the accelerometer is configured; the gyroscope and magnetometer on
    the same board are left untouched. Readings are scaled to g in full
    resolution mode so they compare directly against the trigger threshold.
    """

    _ADXL345_ADDRESS = 0x53

    _ADXL345_POWER_CTL = 0x2D
    _ADXL345_DATA_FORMAT = 0x31
    _ADXL345_BW_RATE = 0x2C
    _ADXL345_DATAX0 = 0x32

    _ADXL345_SCALE_G = 0.0039  # g per LSB in full resolution mode

    def __init__(self, *, i2c_bus: int | None = None, sample_rate_hz: float = 50.0) -> None:
        if sample_rate_hz <= 0:
            raise ValueError("sample_rate_hz must be positive")
        self.sample_rate_hz = float(sample_rate_hz)
        self._lock = Lock()
        self._bus = self._create_bus(i2c_bus)
        self._owns_bus = True
        try:
            self._device = self._create_device()
        except Gy85Error:
            self._release_bus()
            raise
        self._initialise()

    def _release_bus(self) -> None:
        bus = getattr(self, "_bus", None)
        if bus is None:
            return
        if getattr(self, "_owns_bus", False):
            try:
                deinit = getattr(bus, "deinit", None)
                if callable(deinit):
                    deinit()
            finally:
                self._owns_bus = False
        self._bus = None
        self._device = None

    async def close(self) -> None:
        """Release any owned I²C resources."""

        self._release_bus()

    def _create_bus(self, bus_number: int | None):
        if bus_number is not None:
            try:
                from adafruit_extended_bus import ExtendedI2C  # type: ignore
            except ModuleNotFoundError as exc:  # pragma: no cover - optional dependency
                raise Gy85UnavailableError(
                    "install adafruit-circuitpython-extended-bus for custom I2C buses"
                ) from exc

            try:
                return ExtendedI2C(bus_number)  # type: ignore[call-arg]
            except Exception as exc:  # pragma: no cover - hardware specific
                raise Gy85UnavailableError(
                    f"Unable to access I2C bus {bus_number}: {exc}"
                ) from exc

        try:
            import board  # type: ignore
        except ModuleNotFoundError as exc:  # pragma: no cover - optional dependency
            raise Gy85UnavailableError("install adafruit-blinka to access board.I2C") from exc

        try:
            return board.I2C()  # type: ignore[attr-defined]
        except Exception as exc:  # pragma: no cover - hardware specific
            raise Gy85UnavailableError(f"Unable to access default I2C bus: {exc}") from exc

    def _create_device(self):
        try:
            from adafruit_bus_device.i2c_device import I2CDevice  # type: ignore
        except ModuleNotFoundError as exc:  # pragma: no cover - optional dependency
            raise Gy85UnavailableError(
                "install adafruit-circuitpython-busdevice to access the GY-85"
            ) from exc

        try:
            return I2CDevice(self._bus, self._ADXL345_ADDRESS)
        except ValueError as exc:
            raise Gy85UnavailableError(
                f"ADXL345 not found at 0x{self._ADXL345_ADDRESS:02X}: {exc}"
            ) from exc
        except OSError as exc:
            raise Gy85UnavailableError(
                f"Unable to communicate with ADXL345 at 0x{self._ADXL345_ADDRESS:02X}: {exc}"
            ) from exc

    def _initialise(self) -> None:
        self._write_register(self._ADXL345_POWER_CTL, 0x08)
        self._write_register(self._ADXL345_DATA_FORMAT, 0x08)
        self._write_register(self._ADXL345_BW_RATE, 0x0A)
        time.sleep(0.01)

    def _write_register(self, register: int, value: int) -> None:
        try:
            with self._device as dev:
                dev.write(bytes((register & 0xFF, value & 0xFF)))
        except Exception as exc:  # pragma: no cover - hardware specific
            raise Gy85Error(f"Failed to write register 0x{register:02X}: {exc}") from exc

    def _read_registers(self, register: int, length: int) -> bytes:
        buffer = bytearray(length)
        try:
            with self._device as dev:
                dev.write(bytes((register & 0xFF,)), stop=False)
                dev.readinto(buffer)
        except Exception as exc:
            raise Gy85Error(f"Failed to read register 0x{register:02X}: {exc}") from exc
        return bytes(buffer)

    def read_vector(self) -> Vector3:
        """Return the current acceleration in g."""

        if self._device is None:
            raise Gy85Error("GY-85 accelerometer has been closed")
        with self._lock:
            raw = self._read_registers(self._ADXL345_DATAX0, 6)
        x, y, z = struct.unpack_from("<hhh", raw)
        return Vector3(
            x=self._ADXL345_SCALE_G * x,
            y=self._ADXL345_SCALE_G * y,
            z=self._ADXL345_SCALE_G * z,
        )

    async def read(self) -> MotionSample:
        vector = await asyncio.to_thread(self.read_vector)
        return MotionSample.from_vector(vector)


__all__ = ["Gy85Accelerometer", "Gy85Error", "Gy85UnavailableError"]

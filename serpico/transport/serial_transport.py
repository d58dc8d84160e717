"""Serial byte-stream transport used by serpico."""

from __future__ import annotations

import errno
import logging
import time
from typing import Callable, Optional

import serial

from ..errors import (
    Disconnected,
    PermissionDenied,
    PortUnavailable,
    TransportError,
    TransportTimeout,
)
from ..settings import DEFAULT_BAUDRATE

SerialFactory = Callable[..., serial.Serial]

_LOGGER = logging.getLogger(__name__)
_PERMISSION_ERRNOS = (errno.EACCES, errno.EPERM)


def _assert_control_lines(ser: serial.Serial) -> None:
    """Best-effort DTR assertion; MicroPython USB CDC only transmits while DTR is set."""
    try:
        ser.dtr = True
        ser.rts = False
        time.sleep(0.01)
    except Exception:
        _LOGGER.debug("Failed to set control lines", exc_info=True)


def _open_error(port: str, exc: Exception) -> TransportError:
    code = getattr(exc, "errno", None)
    text = str(exc)
    if (
        code in _PERMISSION_ERRNOS
        or "PermissionError" in text
        or "Permission denied" in text
        or "Access is denied" in text
    ):
        return PermissionDenied(f"Permission denied opening {port}: {exc}")
    return PortUnavailable(f"Could not open {port}: {exc}")


class SerialTransport:
    """Owns one OS serial handle and exposes timed, chunked byte I/O."""

    def __init__(
        self,
        port: str,
        *,
        baudrate: int = DEFAULT_BAUDRATE,
        timeout: float = 0.05,
        write_timeout: float = 1.0,
        serial_factory: SerialFactory = serial.Serial,
    ) -> None:
        self.port = port
        self.baudrate = baudrate
        self.timeout = timeout
        self.write_timeout = write_timeout
        self._serial_factory = serial_factory
        self._serial: Optional[serial.Serial] = None

    @property
    def is_open(self) -> bool:
        return bool(self._serial and self._serial.is_open)

    @property
    def in_waiting(self) -> int:
        ser = self._require_open()
        try:
            return ser.in_waiting
        except (serial.SerialException, OSError) as exc:
            raise Disconnected(f"Lost connection to {self.port}: {exc}") from exc

    def open(self) -> "SerialTransport":
        if self.is_open:
            return self
        try:
            ser = self._serial_factory(
                self.port,
                self.baudrate,
                timeout=self.timeout,
                write_timeout=self.write_timeout,
            )
        except (serial.SerialException, OSError) as exc:
            raise _open_error(self.port, exc) from exc
        _assert_control_lines(ser)
        self._serial = ser
        _LOGGER.debug("Opened %s at %d baud", self.port, self.baudrate)
        return self

    def close(self) -> None:
        ser = self._serial
        self._serial = None
        if ser is None:
            return
        try:
            ser.close()
        except Exception:
            _LOGGER.debug("Failed to close %s", self.port, exc_info=True)
        else:
            _LOGGER.debug("Closed %s", self.port)

    def read(self, max_bytes: int = 256, timeout: Optional[float] = None) -> bytes:
        """Return up to *max_bytes* as soon as any arrive, or raise TransportTimeout."""
        ser = self._require_open()
        wait = self.timeout if timeout is None else timeout
        try:
            if ser.timeout != wait:
                ser.timeout = wait
            available = ser.in_waiting
            data = ser.read(min(max_bytes, max(1, available)))
        except (serial.SerialException, OSError) as exc:
            raise Disconnected(f"Lost connection to {self.port}: {exc}") from exc
        if not data:
            raise TransportTimeout(f"No data from {self.port} within {wait:.2f}s")
        return bytes(data)

    def write(self, data: bytes) -> int:
        ser = self._require_open()
        try:
            written = ser.write(data)
            ser.flush()
        except serial.SerialTimeoutException as exc:
            raise Disconnected(
                f"Write to {self.port} not accepted within {self.write_timeout}s"
            ) from exc
        except (serial.SerialException, OSError) as exc:
            raise Disconnected(f"Lost connection to {self.port}: {exc}") from exc
        return len(data) if written is None else written

    def _require_open(self) -> serial.Serial:
        if not self.is_open:
            raise Disconnected(f"Serial port {self.port} is not open")
        assert self._serial is not None
        return self._serial

    def __enter__(self) -> "SerialTransport":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

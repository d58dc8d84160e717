"""Exception hierarchy for serpico."""

from __future__ import annotations

from typing import Optional


class SerpicoError(Exception):
    """Base class for every error raised by serpico.

    Errors raised mid-session carry the last protocol ``state`` and the
    ``elapsed`` time of the failed operation so callers can decide whether to
    reopen and retry or give up.
    """

    def __init__(
        self,
        message: str,
        *,
        state: Optional[str] = None,
        elapsed: Optional[float] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.state = state
        self.elapsed = elapsed

    def __str__(self) -> str:
        context = []
        if self.state is not None:
            context.append(f"state={self.state}")
        if self.elapsed is not None:
            context.append(f"elapsed={self.elapsed:.2f}s")
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"


class TransportError(SerpicoError):
    """Raised when the serial transport fails."""


class PortUnavailable(TransportError):
    """The serial port does not exist or is held by another process."""


class PermissionDenied(TransportError):
    """The OS refused access to the serial port."""


class TransportTimeout(TransportError):
    """No bytes arrived within the read timeout."""


class Disconnected(TransportError):
    """The device went away while the port was open."""


class DeviceNotFound(SerpicoError):
    """No MicroPython device could be discovered."""


class MultipleDevicesFound(DeviceNotFound):
    """More than one MicroPython device was discovered."""

    def __init__(self, devices: list[str]) -> None:
        super().__init__(
            "Multiple MicroPython devices found ({}), please specify one with "
            "--device".format(", ".join(devices))
        )
        self.devices = devices


class ProtocolError(SerpicoError):
    """The device did not follow the raw REPL protocol."""


class ProtocolTimeout(ProtocolError):
    """The device did not answer within the allotted time."""


class SessionClosed(ProtocolError):
    """The session was closed or discarded after a failure."""


class WriteError(SerpicoError):
    """A file chunk was not acknowledged by the device."""

    def __init__(
        self,
        message: str,
        *,
        remote_path: str,
        bytes_written: int,
        state: Optional[str] = None,
        elapsed: Optional[float] = None,
    ) -> None:
        super().__init__(message, state=state, elapsed=elapsed)
        self.remote_path = remote_path
        self.bytes_written = bytes_written


class DeviceException(SerpicoError):
    """The executed code raised an exception on the device."""

    def __init__(self, response) -> None:
        detail = response.stderr.decode("utf-8", errors="replace").strip()
        super().__init__(detail or "Device reported an error")
        self.response = response

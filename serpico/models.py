"""Value types shared across serpico."""
from __future__ import annotations

import enum
import time
from dataclasses import dataclass
from typing import Optional

from .errors import DeviceException


@dataclass(frozen=True)
class Port:
    """A serial device seen at enumeration time."""

    device: str
    vid: Optional[int] = None
    pid: Optional[int] = None
    manufacturer: Optional[str] = None
    product: Optional[str] = None
    description: Optional[str] = None
    serial_number: Optional[str] = None

    @classmethod
    def from_port_info(cls, info) -> "Port":
        """Build a :class:`Port` from a ``serial.tools.list_ports`` entry."""

        return cls(
            device=info.device,
            vid=getattr(info, "vid", None),
            pid=getattr(info, "pid", None),
            manufacturer=getattr(info, "manufacturer", None),
            product=getattr(info, "product", None),
            description=getattr(info, "description", None),
            serial_number=getattr(info, "serial_number", None),
        )

    @property
    def usb_id(self) -> Optional[str]:
        if self.vid is None or self.pid is None:
            return None
        return f"{self.vid:04X}:{self.pid:04X}"


class ResponseStatus(enum.Enum):
    OK = "ok"
    DEVICE_EXCEPTION = "device_exception"
    TRANSPORT_ERROR = "transport_error"


@dataclass
class Response:
    """Captured result of one command."""

    stdout: bytes = b""
    stderr: bytes = b""
    status: ResponseStatus = ResponseStatus.OK
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status is ResponseStatus.OK

    @property
    def text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    @property
    def error_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")

    def raise_for_status(self) -> None:
        """Raise :class:`DeviceException` if the command did not succeed."""

        if not self.ok:
            raise DeviceException(self)


class CommandKind(enum.Enum):
    EXECUTE = "execute"
    WRITE_FILE = "write_file"


@dataclass
class Command:
    """A unit of work for a session; ``response`` is filled once it finishes."""

    kind: CommandKind
    source: bytes = b""
    remote_path: str = ""
    content: bytes = b""
    response: Optional[Response] = None

    @classmethod
    def execute(cls, source: bytes | str) -> "Command":
        if isinstance(source, str):
            source = source.encode("utf-8")
        return cls(CommandKind.EXECUTE, source=source)

    @classmethod
    def write_file(cls, remote_path: str, content: bytes) -> "Command":
        return cls(CommandKind.WRITE_FILE, remote_path=remote_path, content=content)


class Deadline:
    """Bounds the total time spent on a command."""

    def __init__(self, seconds: float, *, clock=time.monotonic) -> None:
        self._clock = clock
        self.seconds = seconds
        self.expires_at = clock() + seconds

    @classmethod
    def optional(cls, seconds: Optional[float]) -> Optional["Deadline"]:
        return None if seconds is None else cls(seconds)

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self._clock() >= self.expires_at

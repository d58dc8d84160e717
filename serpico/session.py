"""Session ownership for one connected MicroPython device."""

from __future__ import annotations

import enum
import logging
import threading
from typing import Callable, Optional

from .config import SerpicoConfig
from .errors import ProtocolError, SerpicoError, SessionClosed
from .models import Deadline, Response
from .repl import RawReplDriver, ReplState
from .repl.raw_repl import OutputCallback
from .transport import SerialTransport

TransportFactory = Callable[..., SerialTransport]

_LOGGER = logging.getLogger(__name__)


class SessionState(enum.Enum):
    OPEN = "open"
    ACTIVE = "active"
    CLOSED = "closed"


class Session:
    """Owns the transport to one device and runs one command at a time.

    A session that hits a transport or protocol failure closes itself and
    cannot be reused; open a new one to retry.
    """

    def __init__(
        self,
        port: str,
        config: Optional[SerpicoConfig] = None,
        *,
        transport_factory: TransportFactory = SerialTransport,
    ) -> None:
        self.port = port
        self.config = config or SerpicoConfig()
        self._transport_factory = transport_factory
        self._transport: Optional[SerialTransport] = None
        self._driver: Optional[RawReplDriver] = None
        self._command_lock = threading.Lock()
        self.state = SessionState.CLOSED
        self.failure: Optional[SerpicoError] = None
        self._opened = False

    @property
    def driver(self) -> RawReplDriver:
        if self._driver is None or self.state is SessionState.CLOSED:
            raise SessionClosed(f"Session on {self.port} is closed")
        return self._driver

    def open(self) -> "Session":
        if self.state is not SessionState.CLOSED:
            return self
        if self.failure is not None:
            raise SessionClosed(
                f"Session on {self.port} was discarded after: {self.failure}"
            )
        if self._opened:
            raise SessionClosed(f"Session on {self.port} was already closed")
        cfg = self.config
        transport = self._transport_factory(
            self.port,
            baudrate=cfg.baudrate,
            timeout=cfg.read_timeout,
            write_timeout=cfg.write_timeout,
        )
        transport.open()
        self._opened = True
        self._transport = transport
        self._driver = RawReplDriver(
            transport,
            enter_timeout=cfg.enter_timeout,
            output_timeout=cfg.output_timeout,
            poll_interval=cfg.read_timeout,
            write_block_size=cfg.write_block_size,
            raw_paste=cfg.raw_paste,
            soft_reset=cfg.soft_reset,
        )
        self.state = SessionState.OPEN
        return self

    def close(self) -> None:
        if self.state is SessionState.CLOSED:
            return
        try:
            if self._driver is not None and self._driver.state is ReplState.RAW:
                self._driver.exit_raw()
        finally:
            if self._transport is not None:
                self._transport.close()
            self._transport = None
            self.state = SessionState.CLOSED

    def _discard(self, exc: SerpicoError) -> None:
        _LOGGER.debug("Discarding session on %s: %s", self.port, exc)
        self.failure = exc
        self.close()

    def ensure_raw(self, deadline: Optional[Deadline] = None) -> None:
        driver = self.driver
        if driver.state is ReplState.RAW:
            return
        try:
            driver.enter_raw(deadline)
        except SerpicoError as exc:
            self._discard(exc)
            raise
        self.state = SessionState.ACTIVE

    def execute(
        self,
        source: bytes | str,
        *,
        deadline: Optional[Deadline] = None,
        on_stdout: Optional[OutputCallback] = None,
        on_stderr: Optional[OutputCallback] = None,
    ) -> Response:
        """Run *source* on the device; only one command may be in flight."""
        if not self._command_lock.acquire(blocking=False):
            raise ProtocolError(
                f"A command is already in flight on {self.port}",
                state=ReplState.EXECUTING.value,
            )
        try:
            self.ensure_raw(deadline)
            try:
                return self.driver.execute(
                    source,
                    deadline=deadline,
                    on_stdout=on_stdout,
                    on_stderr=on_stderr,
                )
            except SerpicoError as exc:
                if self.driver.state is ReplState.ERROR:
                    self._discard(exc)
                raise
        finally:
            self._command_lock.release()

    def __enter__(self) -> "Session":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

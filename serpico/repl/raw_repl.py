"""MicroPython raw REPL protocol driver.

The device side of the raw REPL is an implicit state machine; this module
tracks it explicitly::

    NORMAL --enter_raw()--> ENTERING_RAW --banner--> RAW
    RAW --execute()--> EXECUTING --stdout EOT, stderr EOT, prompt--> RAW
    RAW --exit_raw()--> NORMAL
    any --transport failure / timeout--> ERROR (terminal)

Once the driver reaches ``ERROR`` every further call raises and the owning
session must be discarded.
"""

from __future__ import annotations

import enum
import logging
import struct
import time
from typing import Callable, Optional

from ..errors import (
    ProtocolError,
    ProtocolTimeout,
    SerpicoError,
    TransportError,
    TransportTimeout,
)
from ..models import Deadline, Response, ResponseStatus
from ..transport import SerialTransport

OutputCallback = Callable[[bytes], None]

CTRL_A = b"\x01"  # enter raw REPL
CTRL_B = b"\x02"  # exit raw REPL
CTRL_C = b"\x03"  # interrupt
CTRL_D = b"\x04"  # execute / end of output / soft reboot
EOT = CTRL_D

RAW_REPL_BANNER = b"raw REPL; CTRL-B to exit\r\n"
PROMPT = b">"
OK_MARKER = b"OK"
SOFT_REBOOT_MARKER = b"soft reboot\r\n"
RAW_PASTE_REQUEST = b"\x05A\x01"
RAW_PASTE_SUPPORTED = b"R\x01"
RAW_PASTE_UNSUPPORTED = b"R\x00"
RAW_PASTE_WINDOW_INC = b"\x01"
RAW_PASTE_ABORT = b"\x04"

_READ_CHUNK = 256
_LOGGER = logging.getLogger(__name__)


class ReplState(enum.Enum):
    NORMAL = "normal"
    ENTERING_RAW = "entering_raw"
    RAW = "raw"
    EXECUTING = "executing"
    ERROR = "error"


class _NewlineTranslator:
    """Turn CRLF into LF across chunk boundaries."""

    def __init__(self) -> None:
        self._held_cr = False

    def feed(self, data: bytes) -> bytes:
        if self._held_cr:
            data = b"\r" + data
            self._held_cr = False
        if data.endswith(b"\r"):
            data = data[:-1]
            self._held_cr = True
        return data.replace(b"\r\n", b"\n")

    def flush(self) -> bytes:
        if self._held_cr:
            self._held_cr = False
            return b"\r"
        return b""


class RawReplDriver:
    """Drives one device through the raw REPL over a :class:`SerialTransport`."""

    def __init__(
        self,
        transport: SerialTransport,
        *,
        enter_timeout: float = 3.0,
        output_timeout: float = 10.0,
        poll_interval: float = 0.05,
        write_block_size: int = 256,
        raw_paste: bool = True,
        soft_reset: bool = False,
    ) -> None:
        self.transport = transport
        self.enter_timeout = enter_timeout
        self.output_timeout = output_timeout
        self.poll_interval = poll_interval
        self.write_block_size = max(1, write_block_size)
        self.use_raw_paste = raw_paste
        self.soft_reset = soft_reset
        self.state = ReplState.NORMAL
        self._pending = bytearray()
        self._started = time.monotonic()

    # -- state helpers -----------------------------------------------------------
    def _transition(self, state: ReplState) -> None:
        if state is not self.state:
            _LOGGER.debug("raw REPL %s -> %s", self.state.value, state.value)
        self.state = state

    def _elapsed(self) -> float:
        return time.monotonic() - self._started

    def _require(self, *states: ReplState) -> None:
        if self.state is ReplState.ERROR:
            raise ProtocolError(
                "Driver is in a terminal error state; reopen the session",
                state=self.state.value,
            )
        if self.state not in states:
            raise ProtocolError(
                f"Operation not allowed in state {self.state.value}",
                state=self.state.value,
            )

    def _fail(self, exc: SerpicoError) -> SerpicoError:
        """Move to ERROR and stamp *exc* with the state it failed in."""
        failed_in = self.state.value
        self._transition(ReplState.ERROR)
        if exc.state is None:
            exc.state = failed_in
        if exc.elapsed is None:
            exc.elapsed = self._elapsed()
        return exc

    # -- low level I/O -----------------------------------------------------------
    def _write(self, data: bytes) -> None:
        self.transport.write(data)

    def _has_input(self) -> bool:
        return bool(self._pending) or self.transport.in_waiting > 0

    def _check_deadline(self, deadline: Optional[Deadline], what: str) -> None:
        if deadline is not None and deadline.expired:
            raise ProtocolTimeout(
                f"Command deadline of {deadline.seconds:.2f}s expired while {what}"
            )

    def _wait_budget(
        self, idle_deadline: float, deadline: Optional[Deadline], what: str
    ) -> float:
        now = time.monotonic()
        self._check_deadline(deadline, what)
        remaining = idle_deadline - now
        if remaining <= 0:
            raise ProtocolTimeout(f"Timed out while {what}")
        if deadline is not None:
            remaining = min(remaining, deadline.remaining())
        return max(0.001, min(self.poll_interval, remaining))

    def _fill(self, idle_deadline: float, deadline: Optional[Deadline], what: str) -> bool:
        """Read one chunk into the pending buffer; return False on a quiet poll."""
        wait = self._wait_budget(idle_deadline, deadline, what)
        try:
            chunk = self.transport.read(_READ_CHUNK, timeout=wait)
        except TransportTimeout:
            return False
        self._pending.extend(chunk)
        return True

    def read_exact(
        self, count: int, timeout: float, deadline: Optional[Deadline] = None
    ) -> bytes:
        idle_deadline = time.monotonic() + timeout
        while len(self._pending) < count:
            if self._fill(idle_deadline, deadline, f"waiting for {count} bytes"):
                idle_deadline = time.monotonic() + timeout
        data = bytes(self._pending[:count])
        del self._pending[:count]
        return data

    def read_until(
        self,
        ending: bytes,
        timeout: float,
        deadline: Optional[Deadline] = None,
        on_data: Optional[OutputCallback] = None,
    ) -> bytes:
        """Consume input up to and including *ending*.

        *timeout* is an idle ceiling and restarts whenever bytes arrive. When
        *on_data* is given, bytes before the marker are handed to it as soon
        as they cannot be part of the marker.
        """
        idle_deadline = time.monotonic() + timeout
        emitted = 0
        hold = len(ending) - 1
        while True:
            index = self._pending.find(ending)
            if index >= 0:
                end = index + len(ending)
                data = bytes(self._pending[:end])
                del self._pending[:end]
                if on_data is not None and index > emitted:
                    on_data(data[emitted:index])
                return data
            if on_data is not None:
                safe = len(self._pending) - hold
                if safe > emitted:
                    on_data(bytes(self._pending[emitted:safe]))
                    emitted = safe
            try:
                if self._fill(idle_deadline, deadline, f"waiting for {ending!r}"):
                    idle_deadline = time.monotonic() + timeout
            except ProtocolTimeout as exc:
                tail = bytes(self._pending[-64:])
                raise ProtocolTimeout(f"{exc.message}; last bytes {tail!r}") from None

    def drain(
        self,
        quiet: float = 0.1,
        ceiling: float = 1.0,
        deadline: Optional[Deadline] = None,
    ) -> bytes:
        """Discard input until the line stays quiet for *quiet* seconds.

        Gives up after *ceiling* seconds on a device that keeps talking, and
        raises ProtocolTimeout if *deadline* expires first.
        """
        drained = bytes(self._pending)
        self._pending.clear()
        stop_at = time.monotonic() + ceiling
        while time.monotonic() < stop_at:
            self._check_deadline(deadline, "draining pending output")
            wait = quiet
            if deadline is not None:
                wait = max(0.001, min(quiet, deadline.remaining()))
            try:
                drained += self.transport.read(_READ_CHUNK, timeout=wait)
            except TransportTimeout:
                break
        return drained

    # -- protocol ----------------------------------------------------------------
    def enter_raw(self, deadline: Optional[Deadline] = None) -> None:
        """Interrupt any running program and switch the device to the raw REPL."""
        self._require(ReplState.NORMAL, ReplState.RAW)
        self._started = time.monotonic()
        self._transition(ReplState.ENTERING_RAW)
        try:
            self._write(b"\r" + CTRL_C + CTRL_C)
            self.drain(deadline=deadline)
            self._write(b"\r" + CTRL_A)
            if self.soft_reset:
                self.read_until(RAW_REPL_BANNER + PROMPT, self.enter_timeout, deadline)
                self._write(CTRL_D)
                self.read_until(SOFT_REBOOT_MARKER, self.enter_timeout, deadline)
            # boot.py output may appear between the reboot and the banner.
            self.read_until(RAW_REPL_BANNER, self.enter_timeout, deadline)
            self.read_until(PROMPT, self.enter_timeout, deadline)
        except SerpicoError as exc:
            raise self._fail(exc)
        self._transition(ReplState.RAW)

    def execute(
        self,
        source: bytes | str,
        *,
        deadline: Optional[Deadline] = None,
        on_stdout: Optional[OutputCallback] = None,
        on_stderr: Optional[OutputCallback] = None,
    ) -> Response:
        """Run *source* on the device and return its captured output."""
        self._require(ReplState.RAW)
        if isinstance(source, str):
            source = source.encode("utf-8")
        if not source.strip():
            # A bare CTRL-D on an empty line is a soft reboot, not an execute.
            source = b"pass"
        self._started = time.monotonic()
        self._transition(ReplState.EXECUTING)
        try:
            self._send_source(source, deadline)
            stdout = self._collect(on_stdout, deadline)
            stderr = self._collect(on_stderr, deadline)
            self.read_until(PROMPT, self.enter_timeout, deadline)
        except SerpicoError as exc:
            raise self._fail(exc)
        self._transition(ReplState.RAW)
        status = ResponseStatus.DEVICE_EXCEPTION if stderr else ResponseStatus.OK
        return Response(
            stdout=stdout, stderr=stderr, status=status, elapsed=self._elapsed()
        )

    def exit_raw(self) -> None:
        """Return the device to the friendly REPL; failures are only logged."""
        if self.state is ReplState.ERROR:
            return
        try:
            self._write(b"\r" + CTRL_B)
        except TransportError:
            _LOGGER.warning("Failed to leave raw REPL on %s", self.transport.port, exc_info=True)
        self._pending.clear()
        self._transition(ReplState.NORMAL)

    def _collect(
        self, on_data: Optional[OutputCallback], deadline: Optional[Deadline]
    ) -> bytes:
        translator = _NewlineTranslator()
        forward: Optional[OutputCallback] = None
        if on_data is not None:

            def _forward(chunk: bytes) -> None:
                text = translator.feed(chunk)
                if text:
                    on_data(text)

            forward = _forward

        data = self.read_until(EOT, self.output_timeout, deadline, forward)
        if on_data is not None:
            tail = translator.flush()
            if tail:
                on_data(tail)
        return data[:-1].replace(b"\r\n", b"\n")

    def _send_source(self, source: bytes, deadline: Optional[Deadline]) -> None:
        if self.use_raw_paste:
            self._write(RAW_PASTE_REQUEST)
            reply = self.read_exact(2, self.enter_timeout, deadline)
            if reply == RAW_PASTE_SUPPORTED:
                self._raw_paste_write(source, deadline)
                return
            if reply == RAW_PASTE_UNSUPPORTED:
                _LOGGER.debug("Device refused raw-paste; using standard raw mode")
            else:
                # Firmware predates raw-paste and re-printed the raw banner.
                self.read_until(
                    RAW_REPL_BANNER[2:] + PROMPT, self.enter_timeout, deadline
                )
                _LOGGER.debug("Device does not know raw-paste; disabling it")
                self.use_raw_paste = False
        self._raw_write(source, deadline)

    def _raw_write(self, source: bytes, deadline: Optional[Deadline]) -> None:
        for start in range(0, len(source), self.write_block_size):
            self._check_deadline(deadline, "sending source")
            self._write(source[start : start + self.write_block_size])
            # The device input buffer is small; give it time to drain.
            time.sleep(0.01)
        self._write(EOT)
        reply = self.read_exact(2, self.enter_timeout, deadline)
        if reply != OK_MARKER:
            raise ProtocolError(f"Could not execute command (response: {reply!r})")

    def _raw_paste_write(self, source: bytes, deadline: Optional[Deadline]) -> None:
        window_size = struct.unpack("<H", self.read_exact(2, self.enter_timeout, deadline))[0]
        window_remain = window_size
        offset = 0
        while offset < len(source):
            while window_remain == 0 or self._has_input():
                flag = self.read_exact(1, self.enter_timeout, deadline)
                if flag == RAW_PASTE_WINDOW_INC:
                    window_remain += window_size
                elif flag == RAW_PASTE_ABORT:
                    self._write(EOT)
                    raise ProtocolError("Device aborted raw-paste transfer")
                else:
                    raise ProtocolError(f"Unexpected byte during raw-paste: {flag!r}")
            block = source[offset : offset + window_remain]
            self._write(block)
            window_remain -= len(block)
            offset += len(block)
        self._write(EOT)
        self.read_until(EOT, self.enter_timeout, deadline)

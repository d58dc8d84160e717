"""
Script execution and file upload for MicroPython boards.

Uploads are driven through the raw REPL: a file handle is opened on the
device, the content is sent as a series of small ``write`` calls, and the
handle is closed. Each chunk is acknowledged before the next one is sent.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Iterator, Optional

from ..errors import SerpicoError, WriteError
from ..models import Command, CommandKind, Deadline, Response, ResponseStatus
from ..repl.raw_repl import OutputCallback
from ..session import Session

_LOGGER = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 256


@dataclass
class DeploymentResult:
    """Result of a file upload."""

    remote_path: str
    bytes_written: int
    chunks: int
    elapsed: float = 0.0


def open_snippet(remote_path: str) -> str:
    return f"f=open({remote_path!r},'wb')\nw=f.write"


def chunk_snippet(chunk: bytes) -> str:
    return f"w({chunk!r})"


def close_snippet() -> str:
    return "f.close()"


def run_file_snippet(remote_path: str) -> str:
    return f"exec(open({remote_path!r}).read())"


def iter_chunks(content: bytes, chunk_size: int) -> Iterator[bytes]:
    if chunk_size <= 0:
        raise ValueError("Chunk size must be greater than zero")
    for start in range(0, len(content), chunk_size):
        yield content[start : start + chunk_size]


class Deployer:
    """Runs sources and uploads files through a :class:`Session`."""

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        """Initialize deployer.

        Args:
            chunk_size: Default number of content bytes sent per write call
        """
        self.chunk_size = chunk_size

    def run(
        self,
        session: Session,
        source: bytes | str,
        *,
        deadline: Optional[Deadline] = None,
        on_stdout: Optional[OutputCallback] = None,
        on_stderr: Optional[OutputCallback] = None,
    ) -> Response:
        """Execute *source* on the device and return the captured response.

        Args:
            session: Open session to the device
            source: MicroPython source to execute
            deadline: Optional bound on the whole command
            on_stdout: Receives stdout bytes as they arrive
            on_stderr: Receives stderr bytes as they arrive

        Returns:
            Response with stdout, stderr and status
        """
        response = session.execute(
            source, deadline=deadline, on_stdout=on_stdout, on_stderr=on_stderr
        )
        if not response.ok:
            _LOGGER.debug("Device raised: %s", response.error_text.strip())
        return response

    def run_remote(
        self,
        session: Session,
        remote_path: str,
        **kwargs,
    ) -> Response:
        """Execute a file that already lives on the device."""
        return self.run(session, run_file_snippet(remote_path), **kwargs)

    def deploy_file(
        self,
        session: Session,
        remote_path: str,
        content: bytes,
        *,
        chunk_size: Optional[int] = None,
        deadline: Optional[Deadline] = None,
    ) -> DeploymentResult:
        """Write *content* to *remote_path* on the device.

        Args:
            session: Open session to the device
            remote_path: Destination path on the device filesystem
            content: Bytes to write
            chunk_size: Content bytes per write call (defaults to the deployer's)
            deadline: Optional bound on the whole upload

        Returns:
            DeploymentResult describing the upload

        Raises:
            WriteError: If any step was not acknowledged by the device
        """
        size = chunk_size or self.chunk_size
        chunks = list(iter_chunks(content, size))
        started = time.monotonic()
        written = 0

        def step(source: str, what: str) -> None:
            try:
                response = self.run(session, source, deadline=deadline)
            except SerpicoError as exc:
                raise self._write_error(
                    remote_path, written, f"{what} failed: {exc}", exc, started
                ) from exc
            if not response.ok:
                raise self._write_error(
                    remote_path,
                    written,
                    f"{what} failed on device: {response.error_text.strip()}",
                    None,
                    started,
                )

        step(open_snippet(remote_path), f"Opening {remote_path}")
        for index, chunk in enumerate(chunks, start=1):
            step(chunk_snippet(chunk), f"Chunk {index}/{len(chunks)}")
            written += len(chunk)
            _LOGGER.debug("Wrote %d/%d bytes to %s", written, len(content), remote_path)
        step(close_snippet(), f"Closing {remote_path}")

        _LOGGER.info("Deployed %d bytes to %s", written, remote_path)
        return DeploymentResult(
            remote_path=remote_path,
            bytes_written=written,
            chunks=len(chunks),
            elapsed=time.monotonic() - started,
        )

    def submit(self, session: Session, command: Command) -> Response:
        """Run *command* and record its response on it."""
        try:
            if command.kind is CommandKind.EXECUTE:
                command.response = self.run(session, command.source)
            else:
                started = time.monotonic()
                self.deploy_file(session, command.remote_path, command.content)
                command.response = Response(
                    status=ResponseStatus.OK,
                    elapsed=time.monotonic() - started,
                )
        except SerpicoError as exc:
            if session.failure is not None:
                command.response = Response(
                    stderr=str(exc).encode("utf-8"),
                    status=ResponseStatus.TRANSPORT_ERROR,
                )
            raise
        return command.response

    def _write_error(
        self,
        remote_path: str,
        written: int,
        message: str,
        cause: Optional[SerpicoError],
        started: float,
    ) -> WriteError:
        _LOGGER.warning(
            "Upload of %s aborted after %d bytes; the remote file may be partially written",
            remote_path,
            written,
        )
        return WriteError(
            message,
            remote_path=remote_path,
            bytes_written=written,
            state=cause.state if cause is not None else None,
            elapsed=time.monotonic() - started,
        )

"""
Command-line interface for serpico.

This module provides the `serpico` CLI tool for running scripts on and
deploying files to MicroPython boards.
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import BinaryIO, List, Optional

from .config import SerpicoConfig, load_config
from .deploy import Deployer
from .errors import (
    DeviceNotFound,
    PermissionDenied,
    PortUnavailable,
    SerpicoError,
    WriteError,
)
from .models import Deadline
from .session import Session
from .settings import CONFIG_FILE, configure_logging
from .transport import discover, select_device

EXIT_OK = 0
EXIT_DEVICE_EXCEPTION = 1
EXIT_USAGE = 2
EXIT_DEVICE_NOT_FOUND = 3
EXIT_PROTOCOL_ERROR = 4
EXIT_WRITE_ERROR = 5
EXIT_PORT_ERROR = 6
EXIT_FILE_ERROR = 7

logger = logging.getLogger(__name__)


class LocalFileError(Exception):
    """Raised when a local source file cannot be read."""


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer: {value!r}") from None
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be greater than zero: {value}")
    return number


def _positive_float(value: str) -> float:
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number: {value!r}") from None
    if not number > 0:
        raise argparse.ArgumentTypeError(f"must be greater than zero: {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="serpico",
        description="Run and deploy MicroPython code on a serial-attached board",
    )
    parser.add_argument(
        "-d",
        "--device",
        help="Serial device to use; discovered automatically when omitted",
    )
    parser.add_argument("-b", "--baud", type=_positive_int, help="Baud rate")
    parser.add_argument(
        "-t",
        "--timeout",
        type=_positive_float,
        help="Seconds to wait for more output before giving up",
    )
    parser.add_argument(
        "--deadline",
        type=_positive_float,
        help="Upper bound in seconds on each device command",
    )
    parser.add_argument(
        "-c",
        "--config",
        default=CONFIG_FILE,
        help=f"JSON config file (default: {CONFIG_FILE})",
    )
    parser.add_argument(
        "--soft-reset",
        action="store_true",
        default=None,
        help="Soft reset the interpreter before running code",
    )
    parser.add_argument(
        "--no-raw-paste",
        dest="raw_paste",
        action="store_false",
        default=None,
        help="Use plain raw REPL mode even if the board supports raw-paste",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Execute a file on the device")
    run_parser.add_argument("file", type=Path, help="MicroPython source file")

    deploy_parser = subparsers.add_parser(
        "deploy", help="Upload a file to the device filesystem"
    )
    deploy_parser.add_argument("file", type=Path, help="Local file to upload")
    deploy_parser.add_argument("remote_path", help="Destination path on the device")
    deploy_parser.add_argument(
        "--chunk-size", type=_positive_int, help="Bytes sent per write call"
    )
    deploy_parser.add_argument(
        "--run", action="store_true", help="Execute the file after uploading it"
    )

    subparsers.add_parser("discover", help="Print discovered MicroPython devices")
    return parser


def resolve_config(args: argparse.Namespace) -> SerpicoConfig:
    """Load the config file and apply command-line overrides."""
    config = load_config(args.config)
    overrides = {}
    if args.baud is not None:
        overrides["baudrate"] = args.baud
    if args.timeout is not None:
        overrides["output_timeout"] = args.timeout
    if args.deadline is not None:
        overrides["deadline"] = args.deadline
    if args.soft_reset is not None:
        overrides["soft_reset"] = args.soft_reset
    if args.raw_paste is not None:
        overrides["raw_paste"] = args.raw_paste
    if getattr(args, "chunk_size", None) is not None:
        overrides["chunk_size"] = args.chunk_size
    return replace(config, **overrides)


def _console_writer(stream: BinaryIO):
    def write(data: bytes) -> None:
        stream.write(data)
        stream.flush()

    return write


def _read_source(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as exc:
        raise LocalFileError(f"Couldn't read file {path}: {exc}") from exc


def cmd_discover(config: SerpicoConfig) -> int:
    devices = discover(config)
    if not devices:
        print("No MicroPython devices found", file=sys.stderr)
        return EXIT_DEVICE_NOT_FOUND
    for port in devices:
        print(port.device)
    return EXIT_OK


def cmd_run(args: argparse.Namespace, config: SerpicoConfig) -> int:
    source = _read_source(args.file)
    device = select_device(config, override=args.device)
    logger.info("Running %s on %s", args.file, device)
    with Session(device, config) as session:
        response = Deployer(config.chunk_size).run(
            session,
            source,
            deadline=Deadline.optional(config.deadline),
            on_stdout=_console_writer(sys.stdout.buffer),
            on_stderr=_console_writer(sys.stderr.buffer),
        )
    return EXIT_OK if response.ok else EXIT_DEVICE_EXCEPTION


def cmd_deploy(args: argparse.Namespace, config: SerpicoConfig) -> int:
    content = _read_source(args.file)
    device = select_device(config, override=args.device)
    deployer = Deployer(config.chunk_size)
    with Session(device, config) as session:
        result = deployer.deploy_file(
            session,
            args.remote_path,
            content,
            deadline=Deadline.optional(config.deadline),
        )
        print(
            f"Wrote {result.bytes_written} bytes to {result.remote_path} "
            f"in {result.chunks} chunk(s)",
            file=sys.stderr,
        )
        if not args.run:
            return EXIT_OK
        response = deployer.run_remote(
            session,
            args.remote_path,
            deadline=Deadline.optional(config.deadline),
            on_stdout=_console_writer(sys.stdout.buffer),
            on_stderr=_console_writer(sys.stderr.buffer),
        )
    return EXIT_OK if response.ok else EXIT_DEVICE_EXCEPTION


def exit_code_for(exc: SerpicoError) -> int:
    if isinstance(exc, DeviceNotFound):
        return EXIT_DEVICE_NOT_FOUND
    if isinstance(exc, WriteError):
        return EXIT_WRITE_ERROR
    if isinstance(exc, (PortUnavailable, PermissionDenied)):
        return EXIT_PORT_ERROR
    return EXIT_PROTOCOL_ERROR


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(level=logging.DEBUG if args.verbose else logging.WARNING)
    config = resolve_config(args)

    try:
        if args.command == "discover":
            return cmd_discover(config)
        if args.command == "run":
            return cmd_run(args, config)
        return cmd_deploy(args, config)
    except LocalFileError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FILE_ERROR
    except SerpicoError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return exit_code_for(exc)
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())

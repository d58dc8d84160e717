"""Logging setup and shared constants for serpico."""

from __future__ import annotations

import logging

CONFIG_FILE = "serpico.json"
LOG_LEVEL = logging.WARNING
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"

DEFAULT_BAUDRATE = 115200
# Raspberry Pi Pico running MicroPython.
DEFAULT_USB_IDS = ("2E8A:0005",)
DEFAULT_MANUFACTURERS = ("MicroPython",)


def configure_logging(
    *, level: int = LOG_LEVEL, fmt: str = LOG_FORMAT, force: bool = False
) -> None:
    """Initialize the root logger used across serpico."""

    if force:
        logging.basicConfig(level=level, format=fmt, force=True)
        return

    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=level, format=fmt)

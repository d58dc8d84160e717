"""Configuration helpers for serpico."""
from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, List, Optional, Tuple

from .settings import (
    CONFIG_FILE,
    DEFAULT_BAUDRATE,
    DEFAULT_MANUFACTURERS,
    DEFAULT_USB_IDS,
)

logger = logging.getLogger(__name__)


def _coerce_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _coerce_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _coerce_optional_float(value: Any, default: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _coerce_str_list(value: Any, default: List[str]) -> List[str]:
    if isinstance(value, str):
        return [value]
    if not isinstance(value, (list, tuple)):
        return list(default)
    return [str(item) for item in value]


def parse_usb_id(value: str) -> Tuple[int, int]:
    """Parse a ``VID:PID`` hex pair such as ``2E8A:0005``."""

    vid, sep, pid = value.partition(":")
    if not sep:
        raise ValueError(f"USB id {value!r} is not in VID:PID form")
    return int(vid, 16), int(pid, 16)


@dataclass
class SerpicoConfig:
    baudrate: int = DEFAULT_BAUDRATE
    read_timeout: float = 0.05
    write_timeout: float = 1.0
    probe_timeout: float = 0.5
    enter_timeout: float = 3.0
    output_timeout: float = 10.0
    deadline: Optional[float] = None
    chunk_size: int = 256
    write_block_size: int = 256
    usb_ids: List[str] = field(default_factory=lambda: list(DEFAULT_USB_IDS))
    manufacturers: List[str] = field(
        default_factory=lambda: list(DEFAULT_MANUFACTURERS)
    )
    raw_paste: bool = True
    soft_reset: bool = False
    probe_candidates: bool = False
    probe_unmatched: bool = False

    def usb_signatures(self) -> List[Tuple[int, int]]:
        """Return the configured USB ids as integer pairs, skipping bad entries."""

        signatures = []
        for item in self.usb_ids:
            try:
                signatures.append(parse_usb_id(item))
            except ValueError:
                logger.warning("Ignoring malformed USB id %r", item)
        return signatures


def load_config(path: str | Path = CONFIG_FILE) -> SerpicoConfig:
    """Load configuration data from *path* or return defaults on failure."""

    defaults = SerpicoConfig()
    cfg_path = Path(path)
    if not cfg_path.exists():
        return defaults

    try:
        raw = json.loads(cfg_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        logger.error("Config file %s contains invalid JSON: %s", cfg_path, exc)
        return defaults
    except OSError as exc:
        logger.error("Could not read config file %s: %s", cfg_path, exc)
        return defaults

    if not isinstance(raw, dict):
        logger.error("Config file %s did not contain an object", cfg_path)
        return defaults

    data = asdict(defaults)
    data["baudrate"] = max(1, _coerce_int(raw.get("baudrate"), defaults.baudrate))
    for key in (
        "read_timeout",
        "write_timeout",
        "probe_timeout",
        "enter_timeout",
        "output_timeout",
    ):
        data[key] = max(0.01, _coerce_float(raw.get(key), getattr(defaults, key)))
    data["deadline"] = _coerce_optional_float(raw.get("deadline"), defaults.deadline)
    data["chunk_size"] = max(1, _coerce_int(raw.get("chunk_size"), defaults.chunk_size))
    data["write_block_size"] = max(
        1, _coerce_int(raw.get("write_block_size"), defaults.write_block_size)
    )
    data["usb_ids"] = _coerce_str_list(raw.get("usb_ids"), defaults.usb_ids)
    data["manufacturers"] = _coerce_str_list(
        raw.get("manufacturers"), defaults.manufacturers
    )
    for key in ("raw_paste", "soft_reset", "probe_candidates", "probe_unmatched"):
        data[key] = bool(raw.get(key, data[key]))

    return SerpicoConfig(**data)

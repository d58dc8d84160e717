"""Serial port enumeration and MicroPython board detection."""

from __future__ import annotations

import logging
import queue
import sys
import threading
import time
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

import serial.tools.list_ports

from ..config import SerpicoConfig, parse_usb_id
from ..errors import (
    DeviceNotFound,
    MultipleDevicesFound,
    TransportError,
    TransportTimeout,
)
from ..models import Port
from ..settings import DEFAULT_BAUDRATE, DEFAULT_MANUFACTURERS, DEFAULT_USB_IDS
from .serial_transport import SerialTransport

PortLister = Callable[[], Iterable[object]]
TransportFactory = Callable[..., SerialTransport]

PROBE_COMMAND = b"\r\x03"
REPL_MARKERS = (b">>>", b"raw REPL", b"MicroPython")

_LOGGER = logging.getLogger(__name__)


def _is_callout_duplicate(device: str) -> bool:
    # macOS lists every USB modem twice; /dev/tty.* is the one to keep.
    return sys.platform == "darwin" and device.startswith("/dev/cu.")


def list_ports(
    *, comports: PortLister = serial.tools.list_ports.comports
) -> List[Port]:
    """Return every serial port the OS currently exposes."""
    ports = []
    for info in comports():
        device = getattr(info, "device", None)
        if not device or _is_callout_duplicate(device):
            continue
        ports.append(Port.from_port_info(info))
    return ports


def matches_signature(
    port: Port,
    usb_ids: Sequence[Tuple[int, int]],
    manufacturers: Sequence[str],
) -> bool:
    if port.vid is not None and (port.vid, port.pid) in usb_ids:
        return True
    return bool(port.manufacturer) and port.manufacturer in manufacturers


def list_candidates(
    *,
    usb_ids: Optional[Sequence[Tuple[int, int]]] = None,
    manufacturers: Sequence[str] = DEFAULT_MANUFACTURERS,
    comports: PortLister = serial.tools.list_ports.comports,
) -> List[Port]:
    """Return the ports whose USB signature matches a supported board."""
    if usb_ids is None:
        usb_ids = [parse_usb_id(item) for item in DEFAULT_USB_IDS]
    candidates = []
    for port in list_ports(comports=comports):
        if matches_signature(port, usb_ids, manufacturers):
            _LOGGER.debug("Candidate %s (%s, %s)", port.device, port.usb_id, port.manufacturer)
            candidates.append(port)
    return candidates


def probe(
    port: Port | str,
    *,
    baudrate: int = DEFAULT_BAUDRATE,
    timeout: float = 0.5,
    transport_factory: TransportFactory = SerialTransport,
) -> bool:
    """Interrupt the device and report whether a REPL prompt shows up in time."""
    device = port.device if isinstance(port, Port) else port
    transport = transport_factory(
        device, baudrate=baudrate, timeout=min(timeout, 0.05), write_timeout=timeout
    )
    try:
        transport.open()
    except TransportError as exc:
        _LOGGER.debug("Skipping port %s during probe: %s", device, exc)
        return False
    try:
        transport.write(PROBE_COMMAND)
        seen = b""
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                seen += transport.read(256, timeout=min(remaining, 0.05))
            except TransportTimeout:
                continue
            if any(marker in seen for marker in REPL_MARKERS):
                _LOGGER.debug("MicroPython REPL answered on %s", device)
                return True
        _LOGGER.debug("No REPL prompt from %s within %.2fs", device, timeout)
        return False
    except TransportError as exc:
        _LOGGER.debug("Probe of %s failed: %s", device, exc)
        return False
    finally:
        transport.close()


def probe_all(
    ports: Sequence[Port],
    *,
    baudrate: int = DEFAULT_BAUDRATE,
    timeout: float = 0.5,
    transport_factory: TransportFactory = SerialTransport,
) -> List[Port]:
    """Probe *ports* concurrently and return those that answered, in input order."""
    if not ports:
        return []
    results: "queue.Queue[Tuple[int, bool]]" = queue.Queue()

    def worker(index: int, port: Port) -> None:
        try:
            ok = probe(
                port,
                baudrate=baudrate,
                timeout=timeout,
                transport_factory=transport_factory,
            )
        except Exception:
            _LOGGER.debug("Probe worker for %s crashed", port.device, exc_info=True)
            ok = False
        results.put((index, ok))

    threads = [
        threading.Thread(
            target=worker,
            args=(index, port),
            name=f"probe[{port.device}]",
            daemon=True,
        )
        for index, port in enumerate(ports)
    ]
    for thread in threads:
        thread.start()

    answered = set()
    # Each probe is bounded by its own timeout; the margin covers open/close.
    collect_until = time.monotonic() + timeout + 2.0
    for _ in threads:
        remaining = collect_until - time.monotonic()
        if remaining <= 0:
            break
        try:
            index, ok = results.get(timeout=remaining)
        except queue.Empty:
            break
        if ok:
            answered.add(index)
    return [port for index, port in enumerate(ports) if index in answered]


def discover(
    config: Optional[SerpicoConfig] = None,
    *,
    comports: PortLister = serial.tools.list_ports.comports,
    transport_factory: TransportFactory = SerialTransport,
) -> List[Port]:
    """Return the MicroPython devices visible right now."""
    config = config or SerpicoConfig()
    candidates = list_candidates(
        usb_ids=config.usb_signatures(),
        manufacturers=config.manufacturers,
        comports=comports,
    )
    if config.probe_candidates:
        candidates = probe_all(
            candidates,
            baudrate=config.baudrate,
            timeout=config.probe_timeout,
            transport_factory=transport_factory,
        )
    if config.probe_unmatched:
        all_ports = list_ports(comports=comports)
        unmatched = [port for port in all_ports if port not in candidates]
        found = probe_all(
            unmatched,
            baudrate=config.baudrate,
            timeout=config.probe_timeout,
            transport_factory=transport_factory,
        )
        candidates = [port for port in all_ports if port in candidates or port in found]
    return candidates


def select_device(
    config: Optional[SerpicoConfig] = None,
    override: Optional[str] = None,
    **kwargs,
) -> str:
    """Resolve the single device path to talk to."""
    if override:
        return override
    devices = discover(config, **kwargs)
    if not devices:
        raise DeviceNotFound("No MicroPython devices found")
    if len(devices) > 1:
        raise MultipleDevicesFound([port.device for port in devices])
    _LOGGER.info("MicroPython device discovered at %s", devices[0].device)
    return devices[0].device

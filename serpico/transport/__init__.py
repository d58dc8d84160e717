"""Transport layer abstractions for serpico."""

from .discovery import (
    discover,
    list_candidates,
    list_ports,
    probe,
    probe_all,
    select_device,
)
from .serial_transport import SerialTransport

__all__ = [
    "SerialTransport",
    "discover",
    "list_candidates",
    "list_ports",
    "probe",
    "probe_all",
    "select_device",
]

import errno
import unittest
from unittest import mock

import serial

from serpico.errors import (
    Disconnected,
    PermissionDenied,
    PortUnavailable,
    TransportTimeout,
)
from serpico.transport.serial_transport import SerialTransport


def _open_transport(ser: mock.Mock, **kwargs) -> SerialTransport:
    factory = mock.Mock(return_value=ser)
    transport = SerialTransport("COM9", serial_factory=factory, **kwargs)
    transport.open()
    return transport


@mock.patch("serpico.transport.serial_transport.time.sleep", return_value=None)
class SerialTransportTests(unittest.TestCase):
    def setUp(self) -> None:
        self.ser = mock.Mock()
        self.ser.is_open = True
        self.ser.timeout = 0.05
        self.ser.in_waiting = 0

    def test_open_passes_port_settings(self, _sleep) -> None:
        factory = mock.Mock(return_value=self.ser)
        transport = SerialTransport(
            "COM9", baudrate=9600, timeout=0.2, write_timeout=0.3, serial_factory=factory
        )
        transport.open()
        factory.assert_called_once_with("COM9", 9600, timeout=0.2, write_timeout=0.3)
        self.assertTrue(transport.is_open)
        self.assertTrue(self.ser.dtr)

    def test_open_maps_permission_errors(self, _sleep) -> None:
        factory = mock.Mock(
            side_effect=serial.SerialException(
                errno.EACCES, "could not open port /dev/ttyACM0: Permission denied"
            )
        )
        transport = SerialTransport("/dev/ttyACM0", serial_factory=factory)
        with self.assertRaises(PermissionDenied):
            transport.open()
        self.assertFalse(transport.is_open)

    def test_open_maps_missing_port(self, _sleep) -> None:
        factory = mock.Mock(
            side_effect=serial.SerialException(
                errno.ENOENT, "could not open port /dev/ttyACM7: No such file"
            )
        )
        transport = SerialTransport("/dev/ttyACM7", serial_factory=factory)
        with self.assertRaises(PortUnavailable):
            transport.open()

    def test_read_returns_available_bytes(self, _sleep) -> None:
        self.ser.in_waiting = 3
        self.ser.read.return_value = b"abc"
        transport = _open_transport(self.ser)
        self.assertEqual(transport.read(256), b"abc")
        self.ser.read.assert_called_once_with(3)

    def test_read_caps_at_max_bytes_and_applies_timeout(self, _sleep) -> None:
        self.ser.in_waiting = 500
        self.ser.read.return_value = b"x" * 16
        transport = _open_transport(self.ser)
        transport.read(16, timeout=0.5)
        self.ser.read.assert_called_once_with(16)
        self.assertEqual(self.ser.timeout, 0.5)

    def test_read_raises_timeout_when_nothing_arrives(self, _sleep) -> None:
        self.ser.read.return_value = b""
        transport = _open_transport(self.ser)
        with self.assertRaises(TransportTimeout):
            transport.read(16)

    def test_read_reports_disconnect(self, _sleep) -> None:
        self.ser.read.side_effect = serial.SerialException(
            "device reports readiness to read but returned no data"
        )
        transport = _open_transport(self.ser)
        with self.assertRaises(Disconnected):
            transport.read(16)

    def test_write_flushes_and_returns_count(self, _sleep) -> None:
        self.ser.write.return_value = 4
        transport = _open_transport(self.ser)
        self.assertEqual(transport.write(b"\r\x03\x03\r"), 4)
        self.ser.flush.assert_called_once()

    def test_write_timeout_is_reported_as_disconnect(self, _sleep) -> None:
        self.ser.write.side_effect = serial.SerialTimeoutException("Write timeout")
        transport = _open_transport(self.ser)
        with self.assertRaises(Disconnected):
            transport.write(b"\x01")

    def test_io_on_closed_transport_raises(self, _sleep) -> None:
        transport = SerialTransport("COM9", serial_factory=mock.Mock())
        with self.assertRaises(Disconnected):
            transport.write(b"\x01")

    def test_close_is_idempotent(self, _sleep) -> None:
        transport = _open_transport(self.ser)
        transport.close()
        transport.close()
        self.ser.close.assert_called_once()
        self.assertFalse(transport.is_open)

    def test_context_manager_closes_on_error(self, _sleep) -> None:
        factory = mock.Mock(return_value=self.ser)
        with self.assertRaises(RuntimeError):
            with SerialTransport("COM9", serial_factory=factory):
                raise RuntimeError("boom")
        self.ser.close.assert_called_once()


if __name__ == "__main__":  # pragma: no cover
    unittest.main()

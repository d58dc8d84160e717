import functools
import time
import unittest
from types import SimpleNamespace
from unittest import mock

from simulated_board import SimulatedBoard, boards_factory

from serpico.config import SerpicoConfig
from serpico.errors import DeviceNotFound, MultipleDevicesFound
from serpico.models import Port
from serpico.transport import SerialTransport, discover, list_candidates, probe
from serpico.transport.discovery import list_ports, probe_all, select_device


def port_info(device, vid=None, pid=None, manufacturer=None):
    return SimpleNamespace(
        device=device,
        vid=vid,
        pid=pid,
        manufacturer=manufacturer,
        product=None,
        description="n/a",
        serial_number=None,
    )


PICO = port_info("/dev/ttyACM0", 0x2E8A, 0x0005, "MicroPython")
ESP = port_info("/dev/ttyUSB0", 0x10C4, 0xEA60, "Silicon Labs")
MODEM = port_info("/dev/ttyS0")


def transports_for(boards):
    return functools.partial(SerialTransport, serial_factory=boards_factory(boards))


class ListingTests(unittest.TestCase):
    def test_candidates_match_usb_id(self) -> None:
        ports = list_candidates(comports=lambda: [MODEM, PICO, ESP])
        self.assertEqual([port.device for port in ports], ["/dev/ttyACM0"])
        self.assertEqual(ports[0].usb_id, "2E8A:0005")

    def test_candidates_match_manufacturer(self) -> None:
        info = port_info("COM4", 0x1234, 0x5678, "MicroPython")
        ports = list_candidates(usb_ids=[], comports=lambda: [info])
        self.assertEqual([port.device for port in ports], ["COM4"])

    def test_no_ports_is_not_an_error(self) -> None:
        self.assertEqual(list_candidates(comports=lambda: []), [])

    def test_macos_callout_devices_are_skipped(self) -> None:
        infos = [
            port_info("/dev/cu.usbmodem101", 0x2E8A, 0x0005),
            port_info("/dev/tty.usbmodem101", 0x2E8A, 0x0005),
        ]
        with mock.patch("serpico.transport.discovery.sys.platform", "darwin"):
            ports = list_ports(comports=lambda: infos)
        self.assertEqual([port.device for port in ports], ["/dev/tty.usbmodem101"])


class ProbeTests(unittest.TestCase):
    def test_friendly_repl_answers_probe(self) -> None:
        factory = transports_for({"/dev/ttyACM0": SimulatedBoard()})
        self.assertTrue(probe("/dev/ttyACM0", timeout=0.5, transport_factory=factory))

    def test_silent_port_fails_within_timeout(self) -> None:
        factory = transports_for({"/dev/ttyS0": SimulatedBoard(silent=True)})
        started = time.monotonic()
        self.assertFalse(probe("/dev/ttyS0", timeout=0.2, transport_factory=factory))
        self.assertLess(time.monotonic() - started, 2.0)

    def test_missing_port_is_skipped(self) -> None:
        factory = transports_for({})
        self.assertFalse(probe("/dev/ttyACM5", timeout=0.2, transport_factory=factory))

    def test_probe_all_keeps_input_order(self) -> None:
        factory = transports_for(
            {
                "A": SimulatedBoard(),
                "B": SimulatedBoard(silent=True),
                "C": SimulatedBoard(),
            }
        )
        ports = [Port("C"), Port("B"), Port("A")]
        found = probe_all(ports, timeout=0.2, transport_factory=factory)
        self.assertEqual([port.device for port in found], ["C", "A"])

    def test_probe_all_runs_probes_concurrently(self) -> None:
        devices = [f"/dev/ttyS{index}" for index in range(5)]
        factory = transports_for(
            {device: SimulatedBoard(silent=True) for device in devices}
        )
        started = time.monotonic()
        found = probe_all(
            [Port(device) for device in devices], timeout=0.2, transport_factory=factory
        )
        self.assertEqual(found, [])
        # Sequential probing would take at least 5 * 0.2s.
        self.assertLess(time.monotonic() - started, 0.7)


class DiscoverTests(unittest.TestCase):
    def test_discover_without_probing_uses_signatures(self) -> None:
        found = discover(SerpicoConfig(), comports=lambda: [PICO, ESP])
        self.assertEqual([port.device for port in found], ["/dev/ttyACM0"])

    def test_discover_filters_through_list_candidates(self) -> None:
        config = SerpicoConfig(usb_ids=["10C4:EA60"], manufacturers=[])
        comports = mock.Mock(return_value=[PICO, ESP])
        with mock.patch(
            "serpico.transport.discovery.list_candidates", wraps=list_candidates
        ) as candidates:
            found = discover(config, comports=comports)
        candidates.assert_called_once_with(
            usb_ids=[(0x10C4, 0xEA60)], manufacturers=[], comports=comports
        )
        self.assertEqual([port.device for port in found], ["/dev/ttyUSB0"])

    def test_probe_candidates_drops_unresponsive_ports(self) -> None:
        config = SerpicoConfig(probe_candidates=True, probe_timeout=0.2)
        second = port_info("/dev/ttyACM1", 0x2E8A, 0x0005)
        factory = transports_for(
            {
                "/dev/ttyACM0": SimulatedBoard(silent=True),
                "/dev/ttyACM1": SimulatedBoard(),
            }
        )
        found = discover(config, comports=lambda: [PICO, second], transport_factory=factory)
        self.assertEqual([port.device for port in found], ["/dev/ttyACM1"])

    def test_probe_unmatched_finds_boards_behind_generic_bridges(self) -> None:
        config = SerpicoConfig(probe_unmatched=True, probe_timeout=0.2)
        factory = transports_for(
            {
                "/dev/ttyUSB0": SimulatedBoard(),
                "/dev/ttyS0": SimulatedBoard(silent=True),
            }
        )
        found = discover(
            config, comports=lambda: [MODEM, PICO, ESP], transport_factory=factory
        )
        self.assertEqual(
            [port.device for port in found], ["/dev/ttyACM0", "/dev/ttyUSB0"]
        )


class SelectDeviceTests(unittest.TestCase):
    def test_override_skips_discovery(self) -> None:
        comports = mock.Mock()
        self.assertEqual(
            select_device(SerpicoConfig(), override="COM7", comports=comports), "COM7"
        )
        comports.assert_not_called()

    def test_single_match_is_selected(self) -> None:
        device = select_device(SerpicoConfig(), comports=lambda: [PICO, MODEM])
        self.assertEqual(device, "/dev/ttyACM0")

    def test_no_match_raises(self) -> None:
        with self.assertRaises(DeviceNotFound):
            select_device(SerpicoConfig(), comports=lambda: [MODEM])

    def test_several_matches_raise_with_device_list(self) -> None:
        second = port_info("/dev/ttyACM1", 0x2E8A, 0x0005)
        with self.assertRaises(MultipleDevicesFound) as ctx:
            select_device(SerpicoConfig(), comports=lambda: [PICO, second])
        self.assertEqual(ctx.exception.devices, ["/dev/ttyACM0", "/dev/ttyACM1"])
        self.assertIsInstance(ctx.exception, DeviceNotFound)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()

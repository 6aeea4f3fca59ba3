import unittest
import sys
import os
import io
from contextlib import redirect_stderr, redirect_stdout
from unittest.mock import patch

# Add the 'src' directory to the Python path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

import serial

from scs_bus import cli
from scs_bus import utils
from scs_bus.errors import PortError
from scs_bus.transport import SerialTransport
from mock_bus import SimulatedBus, SimulatedServo


class _CountingSerial:
    """Stand-in for a pyserial port that records every timeout change."""

    def __init__(self):
        self._timeout = None
        self.timeout_changes = []
        self.reads = 0
        self.is_open = True

    @property
    def timeout(self):
        return self._timeout

    @timeout.setter
    def timeout(self, value):
        self._timeout = value
        self.timeout_changes.append(value)

    def read(self, size):
        self.reads += 1
        return b""

    def reset_input_buffer(self):
        pass

    def reset_output_buffer(self):
        pass

    def close(self):
        self.is_open = False


class TestCommandLine(unittest.TestCase):
    """
    End-to-end tests for the scs-bus command, from arguments to bytes on the
    line. The serial port is replaced by a simulated bus.
    """

    def setUp(self) -> None:
        self.line = SimulatedBus([SimulatedServo(1), SimulatedServo(2), SimulatedServo(5)])

    def run_cli(self, *args):
        out, err = io.StringIO(), io.StringIO()
        argv = ["--port", "sim://", "--timeout", "0.01"] + list(args)
        with redirect_stdout(out), redirect_stderr(err):
            code = cli.main(argv, transport_factory=lambda port: self.line)
        return code, out.getvalue(), err.getvalue()

    def test_ping(self) -> None:
        code, out, _ = self.run_cli("ping", "1")
        self.assertEqual(code, 0)
        self.assertIn("PRESENT", out)

        code, out, _ = self.run_cli("ping", "7")
        self.assertEqual(code, 1)
        self.assertIn("ABSENT", out)

    def test_scan(self) -> None:
        code, out, _ = self.run_cli("scan", "--first", "0", "--last", "6")
        self.assertEqual(code, 0)
        self.assertIn("1, 2, 5", out)
        self.assertFalse(self.line.is_open)

    def test_position_write_and_read(self) -> None:
        code, _, _ = self.run_cli("--protocol-end", "1", "position", "1", "1122")
        self.assertEqual(code, 0)
        self.assertEqual(self.line.write_calls[0], bytes.fromhex("FF FF 01 05 03 2A 04 62 66"))

        code, out, _ = self.run_cli("--protocol-end", "1", "position", "1")
        self.assertEqual(code, 0)
        self.assertIn("position = 1122", out)

    def test_positions(self) -> None:
        self.line.servo(2).silent = True
        code, out, _ = self.run_cli("--sync-read", "native", "positions", "1", "2", "5")
        self.assertEqual(code, 1)
        self.assertIn("Servo 1: 2048", out)
        self.assertIn("Servo 2: no response", out)

    def test_register_read_and_write(self) -> None:
        code, _, _ = self.run_cli("write", "2", "acceleration", "20")
        self.assertEqual(code, 0)
        code, out, _ = self.run_cli("read", "2", "acceleration")
        self.assertEqual(code, 0)
        self.assertIn("acceleration = 20", out)

    def test_set_id(self) -> None:
        code, _, _ = self.run_cli("set-id", "5", "9")
        self.assertEqual(code, 0)
        self.assertEqual(self.run_cli("ping", "5")[0], 1)
        self.assertEqual(self.run_cli("ping", "9")[0], 0)

    def test_mode_and_torque(self) -> None:
        self.assertEqual(self.run_cli("mode", "1", "wheel")[0], 0)
        self.assertEqual(self.line.servo(1).memory[33], utils.MODE_WHEEL)
        self.assertEqual(self.run_cli("torque", "1", "on")[0], 0)
        self.assertEqual(self.line.servo(1).memory[40], 1)

    def test_set_baud(self) -> None:
        code, out, _ = self.run_cli("set-baud", "1", "4")
        self.assertEqual(code, 0)
        self.assertIn("115200", out)
        self.assertEqual(self.line.servo(1).memory[6], 4)

    def test_bus_error_exit_status(self) -> None:
        self.line.servo(1).silent = True
        code, _, err = self.run_cli("read", "1", "present_position")
        self.assertEqual(code, 1)
        self.assertIn("did not answer", err)

    def test_out_of_range_value(self) -> None:
        code, _, err = self.run_cli("position", "1", "5000")
        self.assertEqual(code, 1)
        self.assertIn("out of range", err)
        self.assertEqual(self.line.write_calls, [])

    @patch('scs_bus.transport.serial.serial_for_url', side_effect=serial.SerialException("device busy"))
    def test_port_error(self, mock_serial_for_url) -> None:
        err = io.StringIO()
        with redirect_stdout(io.StringIO()), redirect_stderr(err):
            code = cli.main(["--port", "/dev/ttyUSB9", "ping", "1"])
        self.assertEqual(code, 1)
        self.assertIn("/dev/ttyUSB9", err.getvalue())
        mock_serial_for_url.assert_called_once()


class TestSerialTransport(unittest.TestCase):
    """SerialTransport over pyserial's loopback URL."""

    def test_loopback_round_trip(self) -> None:
        transport = SerialTransport("loop://")
        transport.open(utils.BAUD_RATE)
        self.assertTrue(transport.is_open)
        transport.write(b"\xff\xff\x01\x02\x01\xfb")
        self.assertEqual(transport.read(6, 0.1), b"\xff\xff\x01\x02\x01\xfb")
        transport.write(b"stale")
        transport.reset_input_buffer()
        self.assertEqual(transport.read(5, 0.01), b"")
        transport.close()
        self.assertFalse(transport.is_open)

    def test_closed_port(self) -> None:
        transport = SerialTransport("loop://")
        with self.assertRaises(PortError):
            transport.write(b"\x00")

    @patch('scs_bus.transport.serial.serial_for_url', side_effect=serial.SerialException("no such device"))
    def test_open_failure_is_wrapped(self, mock_serial_for_url) -> None:
        transport = SerialTransport("/dev/ttyUSB9")
        with self.assertRaises(PortError) as cm:
            transport.open(utils.BAUD_RATE)
        self.assertIsInstance(cm.exception.__cause__, serial.SerialException)
        self.assertFalse(transport.is_open)

    def test_read_timeout_is_applied_in_steps(self) -> None:
        port = _CountingSerial()
        with patch('scs_bus.transport.serial.serial_for_url', return_value=port) as mock_serial_for_url:
            transport = SerialTransport("/dev/ttyUSB0")
            transport.open(utils.BAUD_RATE)
        self.assertEqual(mock_serial_for_url.call_args.kwargs["timeout"], utils.SERIAL_READ_TIMEOUT)

        # Deadlines shrinking inside one step leave the port alone
        for remaining in (0.0431, 0.0422, 0.041, 0.0400001):
            transport.read(4, remaining)
        self.assertEqual(port.timeout_changes, [0.05])

        transport.read(4, 0.0399)
        transport.read(4, 0.031)
        self.assertEqual(port.timeout_changes, [0.05, 0.04])
        self.assertEqual(port.reads, 6)


if __name__ == '__main__':
    unittest.main()

# Byte transport between the host and the bus. The dispatcher only relies on the
# Transport interface; SerialTransport is the pyserial implementation used in practice.
import logging
import math

import serial

from . import utils
from .errors import PortError

logger = logging.getLogger(__name__)

# Granularity of read timeouts (seconds)
TIMEOUT_STEP = 0.01


class Transport:
    """
    Interface the dispatcher expects from a byte transport.

    Reads may return fewer bytes than requested (or none at all) when the
    timeout expires; the caller reassembles frames itself.
    """

    def open(self, baud_rate: int):
        raise NotImplementedError

    def close(self):
        raise NotImplementedError

    @property
    def is_open(self) -> bool:
        raise NotImplementedError

    def write(self, data: bytes):
        raise NotImplementedError

    def read(self, max_bytes: int, timeout: float) -> bytes:
        raise NotImplementedError

    def reset_input_buffer(self):
        """Discards anything received but not yet read."""


class SerialTransport(Transport):
    """
    Transport over a serial port (USB adapter or UART) using pyserial.

    `port` may be a device path ('/dev/ttyUSB0', 'COM3') or any pyserial URL
    ('loop://', 'socket://host:port').
    """

    def __init__(self, port: str = utils.SERIAL_PORT):
        self.port = port
        self._serial = None

    def open(self, baud_rate: int):
        try:
            self._serial = serial.serial_for_url(
                self.port,
                baudrate=baud_rate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=utils.SERIAL_READ_TIMEOUT,
                write_timeout=utils.SERIAL_READ_TIMEOUT * 10,
            )
        except (serial.SerialException, ValueError) as e:
            self._serial = None
            raise PortError(f"Could not open serial port {self.port} at {baud_rate} baud: {e}") from e
        self._serial.reset_input_buffer()
        self._serial.reset_output_buffer()
        logger.info(f"[SCS Port] {self.port} opened at {baud_rate} baud.")

    def close(self):
        if self._serial is not None:
            self._serial.close()
            logger.info(f"[SCS Port] {self.port} closed.")
        self._serial = None

    @property
    def is_open(self) -> bool:
        return self._serial is not None and self._serial.is_open

    def _require_open(self):
        if not self.is_open:
            raise PortError(f"Serial port {self.port} is not open")
        return self._serial

    def write(self, data: bytes):
        ser = self._require_open()
        ser.write(data)
        ser.flush()

    def read(self, max_bytes: int, timeout: float) -> bytes:
        ser = self._require_open()
        # Changing the timeout reconfigures the port, so only whole steps are applied.
        timeout = round(math.ceil(round(timeout / TIMEOUT_STEP, 6)) * TIMEOUT_STEP, 6)
        if ser.timeout != timeout:
            ser.timeout = timeout
        return ser.read(max_bytes)

    def reset_input_buffer(self):
        self._require_open().reset_input_buffer()

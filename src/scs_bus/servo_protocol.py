# Contains the low-level packet codec for Feetech SCS/STS servos:
# packet creation, checksum calculation, response decoding and stream framing.
# Nothing in here touches the serial port.
import enum
from dataclasses import dataclass, field

from . import utils
from .errors import ChecksumError, FramingError, RangeError, ServoFault


class Instruction(enum.IntEnum):
    """Instruction bytes understood by SCS-series firmware."""
    PING = 0x01
    READ = 0x02
    WRITE = 0x03
    REG_WRITE = 0x04
    ACTION = 0x05
    SYNC_READ = 0x82
    SYNC_WRITE = 0x83


class ErrorFlags(enum.IntFlag):
    """Bits of the error byte in a status packet."""
    VOLTAGE = 0x01
    ANGLE_LIMIT = 0x02
    OVERHEAT = 0x04
    RANGE = 0x08
    CHECKSUM = 0x10
    OVERLOAD = 0x20
    INSTRUCTION = 0x40


# Header(2) + ID(1) + Length(1) + Error(1) + Checksum(1)
STATUS_PACKET_OVERHEAD = 6
# The length byte counts the instruction/error byte, the parameters and the checksum.
MAX_PARAMETERS = 0xFF - 2


@dataclass
class StatusPacket:
    """
    A decoded response packet.

    Attributes:
        servo_id (int): ID the reply came from.
        error (int): Raw error byte (for an instruction packet, the instruction byte).
        params (bytes): Parameter bytes between the error byte and the checksum.
        fault (ServoFault | None): Set by the dispatcher when `error` is non-zero.
    """
    servo_id: int
    error: int
    params: bytes
    fault: ServoFault | None = field(default=None, compare=False)

    @property
    def flags(self) -> ErrorFlags:
        return ErrorFlags(self.error & 0x7F)


def calculate_checksum(packet_data_for_sum) -> int:
    """
    Calculates the Feetech checksum for a given packet.
    The checksum is the bitwise inverse of the sum of all bytes in the packet
    (excluding the initial 0xFF headers), truncated to one byte.

    Args:
        packet_data_for_sum (bytes-like): The packet data (from Servo ID to last parameter) to sum.

    Returns:
        int: The calculated checksum byte.
    """
    current_sum = sum(packet_data_for_sum)
    return (~current_sum) & 0xFF


def encode_instruction(servo_id: int, instruction: int, parameters=()) -> bytes:
    """
    Builds an instruction packet.

    Packet: [0xFF, 0xFF, ID, Length, Instr, Param_0 ... Param_N-1, Checksum]
    Length = N + 2 (the instruction byte and the checksum are counted, the
    header, ID and Length bytes are not).

    Args:
        servo_id (int): Target servo ID (0-253), or 0xFE for broadcast.
        instruction (int): One of the `Instruction` values.
        parameters (iterable of int): Parameter bytes (0-255 each).

    Returns:
        bytes: The complete packet, ready to be written to the bus.
    """
    if not 0 <= servo_id <= utils.SERVO_BROADCAST_ID:
        raise RangeError(f"Servo ID must be 0-254, got {servo_id}")
    params = list(parameters)
    if len(params) > MAX_PARAMETERS:
        raise RangeError(f"Too many parameters for one packet ({len(params)} > {MAX_PARAMETERS})")
    for value in params:
        if not 0 <= value <= 0xFF:
            raise RangeError(f"Parameter byte out of range: {value}")

    packet = bytearray([utils.SERVO_HEADER, utils.SERVO_HEADER, servo_id, len(params) + 2, int(instruction)])
    packet.extend(params)
    packet.append(calculate_checksum(packet[2:]))
    return bytes(packet)


def find_header(data, scan_limit: int = utils.MAX_NOISE_BYTES) -> int | None:
    """
    Locates the start of the first packet header in `data`.

    A run of three or more 0xFF bytes is treated as noise followed by a
    header, since 0xFF is never a valid servo ID.

    Args:
        data (bytes-like): Received bytes.
        scan_limit (int): Maximum number of noise bytes allowed before the header.

    Returns:
        int | None: Index of the first header byte, or None if `data` ends
        before a header could be confirmed.

    Raises:
        FramingError: If more than `scan_limit` bytes precede any header.
    """
    i = 0
    while i + 1 < len(data):
        if i > scan_limit:
            break
        if data[i] == utils.SERVO_HEADER and data[i + 1] == utils.SERVO_HEADER:
            if i + 2 < len(data) and data[i + 2] == utils.SERVO_HEADER:
                i += 1
                continue
            return i
        i += 1
    if i > scan_limit:
        raise FramingError(f"No packet header within the first {scan_limit} bytes")
    return None


def decode_response(data, scan_limit: int = utils.MAX_NOISE_BYTES) -> StatusPacket:
    """
    Decodes one complete status packet.

    Expected response: [0xFF, 0xFF, ID, Length, Error, Param_0 ... Param_N-1, Checksum]

    Args:
        data (bytes-like): The received bytes. Leading noise (up to `scan_limit`
            bytes) is skipped; nothing may follow the checksum.
        scan_limit (int): Maximum number of noise bytes before the header.

    Returns:
        StatusPacket: The decoded packet.

    Raises:
        FramingError: Missing header, truncated packet or inconsistent length field.
        ChecksumError: The trailing checksum does not match the packet contents.
    """
    start = find_header(data, scan_limit)
    if start is None:
        raise FramingError(f"No packet header found in {bytes(data).hex(' ')!r}")

    body = bytes(data[start + 2:]) # ID, Length, Error, Params..., Checksum
    if len(body) < 4:
        raise FramingError(f"Truncated packet: {bytes(data).hex(' ')}")

    servo_id, length = body[0], body[1]
    if length < 2:
        raise FramingError(f"Invalid length field {length}")
    if len(body) != length + 2:
        raise FramingError(
            f"Length field says {length} byte(s) follow, but {len(body) - 2} were received"
        )

    expected_checksum = calculate_checksum(body[:-1])
    actual_checksum = body[-1]
    if expected_checksum != actual_checksum:
        raise ChecksumError(expected_checksum, actual_checksum, bytes(data[start:]))

    return StatusPacket(servo_id=servo_id, error=body[2], params=body[3:-1])


class FrameBuffer:
    """
    Reassembles status packets from partial serial reads.

    Bytes go in through `feed()`; complete frames come out of `next_frame()`.
    `bytes_needed()` reports how many more bytes the current frame needs, so the
    caller never reads past the end of the frame it is waiting for.
    """

    def __init__(self, scan_limit: int = utils.MAX_NOISE_BYTES):
        self.scan_limit = scan_limit
        self._buffer = bytearray()
        self._skipped = 0

    def __len__(self):
        return len(self._buffer)

    def feed(self, data):
        self._buffer.extend(data)

    def clear(self):
        self._buffer.clear()
        self._skipped = 0

    def _align(self) -> bool:
        # Drop noise in front of the header; True once the buffer starts with one.
        start = find_header(self._buffer, max(0, self.scan_limit - self._skipped))
        if start is None:
            # Keep a trailing 0xFF, it may be the first half of a header.
            keep = 1 if self._buffer[-1:] == bytes([utils.SERVO_HEADER]) else 0
            drop = len(self._buffer) - keep
            self._skipped += drop
            del self._buffer[:drop]
            return False
        self._skipped += start
        del self._buffer[:start]
        return True

    def bytes_needed(self) -> int:
        """Minimum number of bytes still missing for the current frame."""
        if len(self._buffer) < 4:
            return 4 - len(self._buffer)
        return max(1, 4 + self._buffer[3] - len(self._buffer))

    def next_frame(self) -> bytes | None:
        """
        Returns the next complete frame (header to checksum) or None if more bytes are needed.

        Raises:
            FramingError: Too much noise before a header, or an impossible length field.
        """
        if not self._buffer or not self._align():
            return None
        if len(self._buffer) < 4:
            return None
        length = self._buffer[3]
        if length < 2:
            bad = bytes(self._buffer[:4])
            del self._buffer[:4]
            raise FramingError(f"Invalid length field {length} in {bad.hex(' ')}")
        total = 4 + length
        if len(self._buffer) < total:
            return None
        frame = bytes(self._buffer[:total])
        del self._buffer[:total]
        self._skipped = 0
        return frame


def encode_value(value: int, width: int, protocol_end: int = utils.PROTOCOL_END_LITTLE) -> list[int]:
    """
    Splits a register value into `width` bytes in the connection's byte order.

    Args:
        value (int): Unsigned value that fits in `width` bytes.
        width (int): 1 or 2.
        protocol_end (int): PROTOCOL_END_LITTLE (low byte first) or PROTOCOL_END_BIG.

    Returns:
        list[int]: The bytes, in wire order.
    """
    if width == 1:
        if not 0 <= value <= 0xFF:
            raise RangeError(f"Value {value} does not fit in one byte")
        return [value]
    if width == 2:
        if not 0 <= value <= 0xFFFF:
            raise RangeError(f"Value {value} does not fit in two bytes")
        low, high = value & 0xFF, (value >> 8) & 0xFF
        if protocol_end == utils.PROTOCOL_END_BIG:
            return [high, low]
        return [low, high]
    raise ValueError(f"Unsupported register width {width}")


def decode_value(data, width: int, protocol_end: int = utils.PROTOCOL_END_LITTLE) -> int:
    """Inverse of `encode_value`: assembles `width` bytes into an unsigned integer."""
    if len(data) < width:
        raise ValueError(f"Need {width} byte(s), got {len(data)}")
    if width == 1:
        return data[0]
    if width == 2:
        byteorder = 'big' if protocol_end == utils.PROTOCOL_END_BIG else 'little'
        return int.from_bytes(bytes(data[:2]), byteorder=byteorder, signed=False)
    raise ValueError(f"Unsupported register width {width}")

# Exception hierarchy for everything that can go wrong between the host and the servos.


class ScsBusError(Exception):
    """Base class for all scs_bus errors."""


class PortError(ScsBusError):
    """The transport could not be opened or claimed."""


class ConnectionStateError(ScsBusError):
    """An operation was called in the wrong connection state."""


class NotConnectedError(ConnectionStateError):
    def __init__(self, operation: str = "operation"):
        super().__init__(f"Cannot run {operation}: the bus is not connected")


class AlreadyConnectedError(ConnectionStateError):
    def __init__(self):
        super().__init__("The bus is already connected; disconnect() first")


class BusBusyError(ScsBusError):
    """A caller gave up waiting for its turn on the bus, or the wait queue is full."""


class TransientBusError(ScsBusError):
    """Bus noise or a dropped turnaround. The dispatcher retries these."""


class ResponseTimeoutError(TransientBusError):
    def __init__(self, servo_id: int, timeout: float, received: int = 0):
        self.servo_id = servo_id
        self.timeout = timeout
        self.received = received
        super().__init__(
            f"Servo {servo_id} did not answer within {timeout * 1000:.0f} ms "
            f"({received} byte(s) received)"
        )


class CodecError(TransientBusError):
    """A byte sequence could not be decoded into a valid packet."""


class FramingError(CodecError):
    """No header was found, or the length field disagrees with the data."""


class ChecksumError(CodecError):
    def __init__(self, expected: int, actual: int, packet: bytes = b""):
        self.expected = expected
        self.actual = actual
        self.packet = bytes(packet)
        super().__init__(
            f"Checksum mismatch (expected 0x{expected:02X}, got 0x{actual:02X}) "
            f"in packet {self.packet.hex(' ')}"
        )


class ProtocolError(ScsBusError):
    """A well-formed reply that does not belong to the request (e.g. wrong servo id)."""


class ServoFault(ScsBusError):
    """
    The servo answered, but its status packet carried error flags.

    Attributes:
        servo_id (int): The servo that reported the fault.
        flags (ErrorFlags): The decoded error bits.
        value (int | None): The register value that came with the reply, if any.
    """

    def __init__(self, servo_id: int, flags, value: int | None = None):
        self.servo_id = servo_id
        self.flags = flags
        self.value = value
        names = ", ".join(flag.name for flag in type(flags) if flag in flags) or "none"
        super().__init__(f"Servo {servo_id} reported error flags 0x{int(flags):02X} ({names})")


class UnknownRegisterError(ScsBusError, LookupError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown register {name!r}")


class RangeError(ScsBusError, ValueError):
    """A value, servo id or packet size is outside what the protocol allows."""


class ReadOnlyRegisterError(RangeError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Register {name!r} is read-only")

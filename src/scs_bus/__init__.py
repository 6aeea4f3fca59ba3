from .errors import (
    AlreadyConnectedError,
    BusBusyError,
    ChecksumError,
    CodecError,
    ConnectionStateError,
    FramingError,
    NotConnectedError,
    PortError,
    ProtocolError,
    RangeError,
    ReadOnlyRegisterError,
    ResponseTimeoutError,
    ScsBusError,
    ServoFault,
    TransientBusError,
    UnknownRegisterError,
)
from .servo_driver import ConnectionState, ScsServoBus
from .servo_protocol import ErrorFlags, Instruction
from .transport import SerialTransport, Transport
from .utils import ConnectionOptions, PROTOCOL_END_BIG, PROTOCOL_END_LITTLE

__version__ = "0.1.0"

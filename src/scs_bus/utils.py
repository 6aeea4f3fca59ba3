# Contains constants, connection options and logging helpers shared across the scs_bus package.
import logging
from dataclasses import dataclass, fields, replace as _dataclass_replace

# --- Serial Port Configuration ---
# USB adapters usually enumerate as /dev/ttyUSB0 (CH340/CP210x) or /dev/ttyACM0.
# On a Raspberry Pi wired straight to the GPIO UART, use /dev/ttyAMA0 and make
# sure the serial console is disabled in 'sudo raspi-config'.
SERIAL_PORT = "/dev/ttyUSB0"
BAUD_RATE = 1000000 # Factory default for STS/SCS servos

# --- Protocol Variant ---
# Byte order of 2-byte register values. STS/SMS firmware sends the low byte
# first; older SCS firmware sends the high byte first.
PROTOCOL_END_LITTLE = 0
PROTOCOL_END_BIG = 1

# --- Timing ---
SERIAL_READ_TIMEOUT = 0.05 # Seconds a servo has to answer an instruction
RESPONSE_RETRIES = 2 # Extra attempts after a timeout or corrupted reply
INTER_COMMAND_DELAY = 0.005 # Pause between back-to-back reads in a sequential sync read
EEPROM_SETTLE_DELAY = 0.02 # Time for an EEPROM write (ID/baud) to take effect

# --- Addressing ---
SERVO_HEADER = 0xFF
SERVO_BROADCAST_ID = 0xFE
MAX_SERVO_ID = 0xFD # 253, highest addressable (non-broadcast) id
MAX_NOISE_BYTES = 32 # Leading garbage tolerated before a packet header

# --- Sync Read Modes ---
SYNC_READ_SEQUENTIAL = "sequential" # One READ per servo, works on every firmware
SYNC_READ_NATIVE = "native" # Single SYNC_READ instruction (STS firmware)

# --- Fault Policies ---
FAULT_POLICY_WARN = "warn" # Log the fault and return the value annotated with it
FAULT_POLICY_RAISE = "raise" # Raise ServoFault (it still carries the value)

# Baud-rate register index -> bits per second
BAUD_RATE_TABLE = {
    0: 1000000,
    1: 500000,
    2: 250000,
    3: 128000,
    4: 115200,
    5: 76800,
    6: 57600,
    7: 38400,
}

# Operating mode register values
MODE_POSITION = 0
MODE_WHEEL = 1

# Wheel speeds are sign-magnitude: bit 15 selects reverse rotation.
WHEEL_DIRECTION_BIT = 0x8000
MAX_WHEEL_SPEED = 0x7FFF

# Positions are 12-bit (4096 steps per revolution)
MAX_POSITION = 4095


@dataclass(frozen=True)
class ConnectionOptions:
    """
    Everything that is fixed for the lifetime of one connection.

    Attributes:
        port (str): Serial device path or pyserial URL (e.g. 'loop://').
        baud_rate (int): Line speed in bits per second.
        protocol_end (int): PROTOCOL_END_LITTLE (STS, default) or PROTOCOL_END_BIG (SCS).
        response_timeout (float): Seconds to wait for each status packet.
        retries (int): Re-sends of the same packet after a timeout or corrupted reply.
        sync_read_mode (str): SYNC_READ_SEQUENTIAL or SYNC_READ_NATIVE.
        inter_command_delay (float): Seconds between reads of a sequential sync read.
        fault_policy (str): FAULT_POLICY_WARN or FAULT_POLICY_RAISE.
        queue_limit (int | None): Maximum callers allowed to wait for the bus.
        queue_timeout (float | None): Seconds a caller waits for its turn before giving up.
    """
    port: str = SERIAL_PORT
    baud_rate: int = BAUD_RATE
    protocol_end: int = PROTOCOL_END_LITTLE
    response_timeout: float = SERIAL_READ_TIMEOUT
    retries: int = RESPONSE_RETRIES
    sync_read_mode: str = SYNC_READ_SEQUENTIAL
    inter_command_delay: float = INTER_COMMAND_DELAY
    fault_policy: str = FAULT_POLICY_WARN
    queue_limit: int | None = None
    queue_timeout: float | None = None

    def __post_init__(self):
        if not isinstance(self.baud_rate, int) or self.baud_rate <= 0:
            raise ValueError(f"baud_rate must be a positive integer, got {self.baud_rate!r}")
        if self.protocol_end not in (PROTOCOL_END_LITTLE, PROTOCOL_END_BIG):
            raise ValueError(f"protocol_end must be 0 or 1, got {self.protocol_end!r}")
        if self.response_timeout <= 0:
            raise ValueError("response_timeout must be positive")
        if self.retries < 0:
            raise ValueError("retries cannot be negative")
        if self.sync_read_mode not in (SYNC_READ_SEQUENTIAL, SYNC_READ_NATIVE):
            raise ValueError(f"Unknown sync_read_mode {self.sync_read_mode!r}")
        if self.inter_command_delay < 0:
            raise ValueError("inter_command_delay cannot be negative")
        if self.fault_policy not in (FAULT_POLICY_WARN, FAULT_POLICY_RAISE):
            raise ValueError(f"Unknown fault_policy {self.fault_policy!r}")
        if self.queue_limit is not None and self.queue_limit < 1:
            raise ValueError("queue_limit must be at least 1")

    def replace(self, **changes) -> "ConnectionOptions":
        """Returns a copy with the given fields changed (validated again)."""
        unknown = set(changes) - {f.name for f in fields(self)}
        if unknown:
            raise TypeError(f"Unknown connection option(s): {', '.join(sorted(unknown))}")
        return _dataclass_replace(self, **changes)


def baud_rate_from_index(index: int) -> int:
    """Maps a baud-rate register index (0-7) to bits per second."""
    try:
        return BAUD_RATE_TABLE[index]
    except KeyError:
        raise ValueError(f"Baud-rate index must be 0-7, got {index!r}") from None


def configure_logging(level=logging.INFO, log_file=None):
    """
    Configure logging for the scs_bus package.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional path to log file
    """
    package_logger = logging.getLogger("scs_bus")
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%H:%M:%S'
    )

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    package_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

    package_logger.setLevel(level)
    return package_logger

# Contains the high-level servo API, acting as the public surface of the package.
# Every call is a translation into register names and dispatcher/batcher calls.
import enum
import logging
import threading
import time

from . import utils
from .dispatcher import CommandDispatcher, RegisterValue, check_servo_id
from .errors import AlreadyConnectedError, BusBusyError, NotConnectedError, PortError, RangeError, ServoFault
from .sync_batcher import SyncBatcher, normalize_servo_values
from .transport import SerialTransport

logger = logging.getLogger(__name__)


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class Connection:
    """
    Everything that lives from connect() to disconnect(): the open transport,
    the dispatcher that owns it and the batcher built on top of it.
    """

    def __init__(self, transport, options: utils.ConnectionOptions):
        self.transport = transport
        self.options = options
        self.dispatcher = CommandDispatcher.from_options(transport, options)
        self.batcher = SyncBatcher(
            self.dispatcher,
            mode=options.sync_read_mode,
            inter_command_delay=options.inter_command_delay,
        )

    def close(self):
        # Wait for the transaction in flight, if any, before pulling the port.
        # No queue timeout here: the port must be closed whatever happens.
        try:
            acquired = self.dispatcher.lock.acquire()
        except BusBusyError:
            logger.warning("[SCS Bus] Wait queue is full; closing the port without waiting for it.")
            acquired = False
        try:
            self.transport.close()
        finally:
            if acquired:
                self.dispatcher.lock.release()


def encode_wheel_speed(speed: int) -> int:
    """
    Converts a signed wheel speed into the goal-speed register format
    (magnitude in bits 0-14, bit 15 set for reverse rotation).
    """
    if isinstance(speed, bool) or not isinstance(speed, int):
        raise RangeError(f"Wheel speed must be an integer, got {speed!r}")
    if abs(speed) > utils.MAX_WHEEL_SPEED:
        raise RangeError(f"Wheel speed must be within +/-{utils.MAX_WHEEL_SPEED}, got {speed}")
    if speed < 0:
        return -speed | utils.WHEEL_DIRECTION_BIT
    return speed


def decode_wheel_speed(raw: int) -> int:
    """Inverse of `encode_wheel_speed`."""
    magnitude = raw & utils.MAX_WHEEL_SPEED
    return -magnitude if raw & utils.WHEEL_DIRECTION_BIT else magnitude


def _fault_of(status) -> ServoFault | None:
    # Write acknowledgements carry no value, only the fault flags.
    return status.fault if status is not None else None


class ScsServoBus:
    """
    Client for one SCS/STS servo bus.

    Usage:
        bus = ScsServoBus()
        bus.connect(utils.ConnectionOptions(port="/dev/ttyUSB0"))
        bus.write_position(1, 2048)
        positions = bus.sync_read_positions([1, 2, 3])
        bus.disconnect()

    Args:
        transport_factory: Callable taking the port name and returning an
            unopened Transport. Defaults to SerialTransport.
    """

    def __init__(self, transport_factory=SerialTransport):
        self._transport_factory = transport_factory
        self._state = ConnectionState.DISCONNECTED
        self._state_lock = threading.Lock()
        self._connection = None

    # --- Connection state ---

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def options(self) -> utils.ConnectionOptions | None:
        return self._connection.options if self._connection else None

    def connect(self, options: utils.ConnectionOptions | None = None, **overrides) -> bool:
        """
        Opens the transport and makes the bus ready for commands.

        Args:
            options (ConnectionOptions | None): Port, baud rate, protocol variant, timing.
            **overrides: Individual ConnectionOptions fields (e.g. baud_rate=500000).

        Returns:
            bool: True once connected.

        Raises:
            AlreadyConnectedError: The bus is already connected (or connecting).
            PortError: The transport could not be opened.
        """
        options = options or utils.ConnectionOptions()
        if overrides:
            options = options.replace(**overrides)

        with self._state_lock:
            if self._state is not ConnectionState.DISCONNECTED:
                raise AlreadyConnectedError()
            self._state = ConnectionState.CONNECTING

        try:
            transport = self._transport_factory(options.port)
            transport.open(options.baud_rate)
        except BaseException:
            self._state = ConnectionState.DISCONNECTED
            raise

        self._connection = Connection(transport, options)
        self._state = ConnectionState.CONNECTED
        variant = "big-endian (SCS)" if options.protocol_end == utils.PROTOCOL_END_BIG else "little-endian (STS)"
        logger.info(f"[SCS Bus] Connected to {options.port} at {options.baud_rate} baud, {variant}.")
        return True

    def disconnect(self) -> bool:
        """Closes the transport. The bus can be connected again afterwards."""
        with self._state_lock:
            connection = self._require_connection("disconnect")
            self._connection = None
            self._state = ConnectionState.DISCONNECTED
        try:
            connection.close()
        except (OSError, PortError) as e:
            logger.warning(f"[SCS Bus] Error while closing {connection.options.port}: {e}")
        logger.info(f"[SCS Bus] Disconnected from {connection.options.port}.")
        return True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if self.is_connected:
            self.disconnect()

    def _require_connection(self, operation: str) -> Connection:
        connection = self._connection
        if self._state is not ConnectionState.CONNECTED or connection is None:
            raise NotConnectedError(operation)
        return connection

    def _dispatcher(self, operation: str) -> CommandDispatcher:
        return self._require_connection(operation).dispatcher

    def _batcher(self, operation: str) -> SyncBatcher:
        return self._require_connection(operation).batcher

    # --- Generic register access ---

    def read_register(self, servo_id: int, name: str) -> RegisterValue:
        return self._dispatcher("read_register").read_register(servo_id, name)

    def write_register(self, servo_id: int, name: str, value: int) -> ServoFault | None:
        """Writes one register. Returns the fault the servo reported with its acknowledgement, if any."""
        return _fault_of(self._dispatcher("write_register").write_register(servo_id, name, value))

    def ping(self, servo_id: int) -> bool:
        return self._dispatcher("ping").ping(servo_id)

    def scan(self, servo_ids=range(0, utils.MAX_SERVO_ID + 1)) -> list[int]:
        """
        Pings each ID once (no retries) and returns the ones that answered.
        The bus is held for the whole scan.
        """
        dispatcher = self._dispatcher("scan")
        present = []
        with dispatcher.exclusive():
            for servo_id in servo_ids:
                if dispatcher.ping(servo_id, retries=0):
                    logger.info(f"[SCS Scan] Servo {servo_id}: PRESENT")
                    present.append(servo_id)
        return present

    def lock_eeprom(self, servo_id: int):
        """Locks the EEPROM so further writes to it are not persisted."""
        self._dispatcher("lock_eeprom").write_register(servo_id, "lock", 1)

    def unlock_eeprom(self, servo_id: int):
        """Unlocks the EEPROM so writes to ID, baud rate, mode, etc. persist."""
        self._dispatcher("unlock_eeprom").write_register(servo_id, "lock", 0)

    # --- Position ---

    def read_position(self, servo_id: int) -> RegisterValue:
        """Returns the present position (0-4095)."""
        return self._dispatcher("read_position").read_register(servo_id, "present_position")

    def write_position(self, servo_id: int, position: int) -> ServoFault | None:
        """Sets the goal position (0-4095). Returns the reported fault, if any."""
        return _fault_of(self._dispatcher("write_position").write_register(servo_id, "goal_position", position))

    def reg_write_position(self, servo_id: int, position: int) -> ServoFault | None:
        """Stages a goal position that takes effect on the next `action()`."""
        return _fault_of(self._dispatcher("reg_write_position").reg_write_register(servo_id, "goal_position", position))

    def action(self, servo_id: int = utils.SERVO_BROADCAST_ID):
        """Applies all staged (REG_WRITE) commands, by default on every servo at once."""
        self._dispatcher("action").action(servo_id)

    def write_torque_enable(self, servo_id: int, enabled: bool) -> ServoFault | None:
        return _fault_of(self._dispatcher("write_torque_enable").write_register(servo_id, "torque_enable", 1 if enabled else 0))

    def write_acceleration(self, servo_id: int, acceleration: int) -> ServoFault | None:
        """Sets the acceleration register (0-254, 0 means maximum acceleration)."""
        return _fault_of(self._dispatcher("write_acceleration").write_register(servo_id, "acceleration", acceleration))

    # --- Mode ---

    def _write_eeprom(self, dispatcher: CommandDispatcher, servo_id: int, name: str, value: int):
        # Unlock, write, lock again at the same ID.
        dispatcher.write_register(servo_id, "lock", 0)
        dispatcher.write_register(servo_id, name, value)
        dispatcher.write_register(servo_id, "lock", 1)

    def set_wheel_mode(self, servo_id: int):
        """Switches the servo to continuous rotation; speed is then set with `write_wheel_speed`."""
        dispatcher = self._dispatcher("set_wheel_mode")
        check_servo_id(servo_id)
        with dispatcher.exclusive():
            self._write_eeprom(dispatcher, servo_id, "operating_mode", utils.MODE_WHEEL)
        logger.info(f"[SCS Bus] Servo {servo_id} set to wheel mode.")

    def set_position_mode(self, servo_id: int):
        dispatcher = self._dispatcher("set_position_mode")
        check_servo_id(servo_id)
        with dispatcher.exclusive():
            self._write_eeprom(dispatcher, servo_id, "operating_mode", utils.MODE_POSITION)
        logger.info(f"[SCS Bus] Servo {servo_id} set to position mode.")

    def read_mode(self, servo_id: int) -> RegisterValue:
        """Returns the operating mode (0 = position, 1 = wheel)."""
        return self._dispatcher("read_mode").read_register(servo_id, "operating_mode")

    def write_wheel_speed(self, servo_id: int, speed: int) -> ServoFault | None:
        """Sets the wheel speed; negative values rotate in reverse."""
        raw = encode_wheel_speed(speed)
        return _fault_of(self._dispatcher("write_wheel_speed").write_register(servo_id, "goal_speed", raw))

    # --- Sync operations ---

    def sync_read_positions(self, servo_ids) -> dict[int, RegisterValue]:
        """
        Reads the present position of several servos.

        Returns:
            dict[int, RegisterValue]: servo_id -> position. Servos that did not
            answer are missing from the result.
        """
        return self._batcher("sync_read_positions").sync_read("present_position", servo_ids)

    def sync_write_positions(self, positions):
        """Sends goal positions (mapping or pairs of servo_id -> position) in one packet."""
        group = normalize_servo_values(positions)
        self._batcher("sync_write_positions").sync_write("goal_position", group)

    def sync_write_wheel_speed(self, speeds):
        """Sends signed wheel speeds (mapping or pairs of servo_id -> speed) in one packet."""
        group = normalize_servo_values(speeds)
        raw = {servo_id: encode_wheel_speed(speed) for servo_id, speed in group.items()}
        self._batcher("sync_write_wheel_speed").sync_write("goal_speed", raw)

    # --- Bus configuration ---

    def read_baud_rate(self, servo_id: int) -> RegisterValue:
        """Returns the baud-rate index (0-7, see utils.BAUD_RATE_TABLE)."""
        return self._dispatcher("read_baud_rate").read_register(servo_id, "baud_rate")

    def set_baud_rate(self, servo_id: int, baud_rate_index: int):
        """
        Changes a servo's baud rate.

        The servo stops answering at the current rate as soon as the write
        lands, so the write is not acknowledged and the EEPROM is left unlocked.
        Reconnect at `utils.baud_rate_from_index(baud_rate_index)` and call
        `lock_eeprom()` to finish.
        """
        dispatcher = self._dispatcher("set_baud_rate")
        check_servo_id(servo_id)
        if baud_rate_index not in utils.BAUD_RATE_TABLE:
            raise RangeError(f"Baud-rate index must be 0-7, got {baud_rate_index!r}")
        new_rate = utils.BAUD_RATE_TABLE[baud_rate_index]
        with dispatcher.exclusive():
            dispatcher.write_register(servo_id, "lock", 0)
            dispatcher.write_register(servo_id, "baud_rate", baud_rate_index, expect_response=False)
            time.sleep(utils.EEPROM_SETTLE_DELAY)
        logger.info(f"[SCS Bus] Servo {servo_id} now listens at {new_rate} baud. Reconnect to keep talking to it.")

    def set_servo_id(self, current_servo_id: int, new_servo_id: int):
        """
        Changes a servo's ID. Afterwards the servo only answers at `new_servo_id`.
        """
        dispatcher = self._dispatcher("set_servo_id")
        check_servo_id(current_servo_id)
        check_servo_id(new_servo_id)
        if current_servo_id == new_servo_id:
            return
        with dispatcher.exclusive():
            dispatcher.write_register(current_servo_id, "lock", 0)
            dispatcher.write_register(current_servo_id, "id", new_servo_id, expect_response=False)
            time.sleep(utils.EEPROM_SETTLE_DELAY)
            dispatcher.write_register(new_servo_id, "lock", 1)
        logger.info(f"[SCS Bus] Servo {current_servo_id} renumbered to {new_servo_id}.")

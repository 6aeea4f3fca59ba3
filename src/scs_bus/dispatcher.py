# Turns logical operations into bus transactions: one packet written, its reply
# read and validated, with only one transaction on the half-duplex line at a time.
import contextlib
import logging
import threading
import time

from . import registers
from . import servo_protocol
from . import utils
from .errors import (
    BusBusyError,
    ChecksumError,
    FramingError,
    ProtocolError,
    RangeError,
    ResponseTimeoutError,
    ServoFault,
    TransientBusError,
)
from .servo_protocol import Instruction

logger = logging.getLogger(__name__)


class BusLock:
    """
    First-come, first-served lock for the bus.

    Callers are served strictly in the order they called `acquire()`. The
    owning thread may acquire again (a batch holds the bus across several
    transactions). A caller that times out while waiting gives up its place
    in the queue without blocking the ones behind it.
    """

    def __init__(self, queue_limit: int | None = None):
        self.queue_limit = queue_limit
        self._cond = threading.Condition()
        self._next_ticket = 0
        self._now_serving = 0
        self._abandoned = set()
        self._owner = None
        self._depth = 0

    @property
    def waiting(self) -> int:
        """Number of callers queued behind the current owner."""
        with self._cond:
            queued = self._next_ticket - self._now_serving - len(self._abandoned)
            return max(0, queued - (1 if self._owner is not None else 0))

    def locked(self) -> bool:
        with self._cond:
            return self._owner is not None

    def acquire(self, timeout: float | None = None) -> bool:
        me = threading.get_ident()
        with self._cond:
            if self._owner == me:
                self._depth += 1
                return True
            if self.queue_limit is not None:
                queued = self._next_ticket - self._now_serving - len(self._abandoned)
                if self._owner is not None:
                    queued -= 1
                if queued >= self.queue_limit:
                    raise BusBusyError(f"{queued} caller(s) already waiting for the bus")
            ticket = self._next_ticket
            self._next_ticket += 1
            if not self._cond.wait_for(lambda: self._now_serving == ticket and self._owner is None, timeout):
                self._abandoned.add(ticket)
                return False
            self._owner = me
            self._depth = 1
            return True

    def release(self):
        with self._cond:
            if self._owner != threading.get_ident():
                raise RuntimeError("BusLock released by a thread that does not own it")
            self._depth -= 1
            if self._depth:
                return
            self._owner = None
            self._now_serving += 1
            while self._now_serving in self._abandoned:
                self._abandoned.remove(self._now_serving)
                self._now_serving += 1
            self._cond.notify_all()


class RegisterValue(int):
    """
    A register value as read from a servo.

    Behaves like a plain int; `fault` holds the ServoFault the servo reported
    together with the value, or None.
    """

    def __new__(cls, value: int, fault: ServoFault | None = None):
        obj = super().__new__(cls, value)
        obj.fault = fault
        return obj

    def __repr__(self):
        if self.fault is None:
            return f"RegisterValue({int(self)})"
        return f"RegisterValue({int(self)}, fault={self.fault.flags!r})"


def check_servo_id(servo_id: int, allow_broadcast: bool = False) -> int:
    """Validates a servo ID before any bus traffic."""
    if isinstance(servo_id, bool) or not isinstance(servo_id, int):
        raise RangeError(f"Servo ID must be an integer, got {servo_id!r}")
    upper = utils.SERVO_BROADCAST_ID if allow_broadcast else utils.MAX_SERVO_ID
    if not 0 <= servo_id <= upper:
        raise RangeError(f"Servo ID must be 0-{upper}, got {servo_id}")
    return servo_id


class CommandDispatcher:
    """
    Owns the transport for one connection and runs every transaction on it.

    Each call to `execute()` writes exactly one packet and, unless told
    otherwise, reads exactly one status packet back. Timeouts and corrupted
    replies are retried with the same packet; everything else is surfaced
    immediately.
    """

    def __init__(
        self,
        transport,
        protocol_end: int = utils.PROTOCOL_END_LITTLE,
        response_timeout: float = utils.SERIAL_READ_TIMEOUT,
        retries: int = utils.RESPONSE_RETRIES,
        fault_policy: str = utils.FAULT_POLICY_WARN,
        queue_limit: int | None = None,
        queue_timeout: float | None = None,
    ):
        self._transport = transport
        self.protocol_end = protocol_end
        self.response_timeout = response_timeout
        self.retries = retries
        self.fault_policy = fault_policy
        self.queue_timeout = queue_timeout
        self.lock = BusLock(queue_limit)

    @classmethod
    def from_options(cls, transport, options: utils.ConnectionOptions) -> "CommandDispatcher":
        return cls(
            transport,
            protocol_end=options.protocol_end,
            response_timeout=options.response_timeout,
            retries=options.retries,
            fault_policy=options.fault_policy,
            queue_limit=options.queue_limit,
            queue_timeout=options.queue_timeout,
        )

    @property
    def transport(self):
        return self._transport

    @contextlib.contextmanager
    def exclusive(self):
        """Holds the bus for the duration of the block (re-entrant for the same thread)."""
        if not self.lock.acquire(self.queue_timeout):
            raise BusBusyError(f"Gave up waiting {self.queue_timeout} s for the bus")
        try:
            yield self
        finally:
            self.lock.release()

    # --- Transactions ---

    def execute(
        self,
        servo_id: int,
        instruction: int,
        parameters=(),
        expect_response: bool = True,
        retries: int | None = None,
    ) -> servo_protocol.StatusPacket | None:
        """
        Runs one transaction: write the packet, then read and validate the reply.

        Args:
            servo_id (int): Target servo, or the broadcast ID for unacknowledged commands.
            instruction (int): Instruction byte.
            parameters (iterable of int): Instruction parameters.
            expect_response (bool): False for packets no servo answers (broadcast, sync write).
            retries (int | None): Override for the number of re-sends.

        Returns:
            StatusPacket | None: The validated reply, or None when no reply was expected.

        Raises:
            ResponseTimeoutError, ChecksumError, FramingError: After all retries failed.
            ProtocolError: The reply came from a different servo.
        """
        if expect_response and servo_id == utils.SERVO_BROADCAST_ID:
            raise RangeError("Broadcast packets are never answered; use expect_response=False")
        packet = servo_protocol.encode_instruction(servo_id, instruction, parameters)
        attempts = 1 + (self.retries if retries is None else retries)

        with self.exclusive():
            last_error = None
            for attempt in range(1, attempts + 1):
                self._send(packet)
                if not expect_response:
                    return None
                try:
                    status = self._receive(servo_id)
                except TransientBusError as e:
                    last_error = e
                    if attempt < attempts:
                        logger.warning(f"[SCS Dispatch] Servo {servo_id}: {e}. Retry {attempt}/{attempts - 1}.")
                    continue
                self._check_status(servo_id, status)
                return status

        # Single-shot pings (scan) fail routinely.
        log = logger.error if attempts > 1 else logger.debug
        log(f"[SCS Dispatch] Servo {servo_id}: giving up after {attempts} attempt(s): {last_error}")
        raise last_error

    def _send(self, packet: bytes):
        # Anything still in the input buffer belongs to an earlier transaction.
        self._transport.reset_input_buffer()
        logger.debug(f"[SCS Dispatch] TX {packet.hex(' ')}")
        self._transport.write(packet)

    def _receive(self, servo_id: int, frames: servo_protocol.FrameBuffer | None = None) -> servo_protocol.StatusPacket:
        if frames is None:
            frames = servo_protocol.FrameBuffer()
        deadline = time.monotonic() + self.response_timeout
        received = 0
        try:
            while True:
                frame = frames.next_frame()
                if frame is not None:
                    logger.debug(f"[SCS Dispatch] RX {frame.hex(' ')}")
                    return servo_protocol.decode_response(frame)
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise ResponseTimeoutError(servo_id, self.response_timeout, received)
                try:
                    chunk = self._transport.read(frames.bytes_needed(), remaining)
                except TimeoutError:
                    raise ResponseTimeoutError(servo_id, self.response_timeout, received) from None
                received += len(chunk)
                frames.feed(chunk)
        except TransientBusError:
            raise
        except BaseException:
            # The packet is already on the wire; its reply must not leak into the next transaction.
            self._discard_response(frames, deadline)
            raise

    def _discard_response(self, frames: servo_protocol.FrameBuffer, deadline: float):
        while True:
            try:
                if frames.next_frame() is not None:
                    return
            except FramingError:
                return
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            try:
                frames.feed(self._transport.read(frames.bytes_needed(), remaining))
            except (OSError, TimeoutError):
                return

    def _check_status(self, servo_id: int, status: servo_protocol.StatusPacket):
        if status.servo_id != servo_id:
            raise ProtocolError(
                f"Expected a reply from servo {servo_id}, got one from servo {status.servo_id}. "
                "Is another controller talking on the bus?"
            )
        if status.flags:
            status.fault = ServoFault(status.servo_id, status.flags)
            logger.warning(f"[SCS Dispatch] {status.fault}")

    # --- Register access ---

    def _register_value(self, status: servo_protocol.StatusPacket, entry: registers.RegisterEntry) -> RegisterValue:
        value = None
        if len(status.params) >= entry.width:
            value = servo_protocol.decode_value(status.params, entry.width, self.protocol_end)
        elif status.fault is None:
            raise ProtocolError(
                f"Servo {status.servo_id} returned {len(status.params)} byte(s) for "
                f"{entry.name!r}, expected {entry.width}"
            )
        if status.fault is not None:
            status.fault.value = value
            if value is None or self.fault_policy == utils.FAULT_POLICY_RAISE:
                raise status.fault
        return RegisterValue(value, status.fault)

    def read_register(self, servo_id: int, name: str) -> RegisterValue:
        """
        Reads one register from one servo.

        Returns:
            RegisterValue: The value; `.fault` is set if the servo reported error flags.
        """
        entry = registers.resolve(name)
        check_servo_id(servo_id)
        status = self.execute(servo_id, Instruction.READ, [entry.address, entry.width])
        return self._register_value(status, entry)

    def _write(self, instruction: int, servo_id: int, name: str, value, expect_response: bool | None):
        entry = registers.resolve(name)
        value = entry.validate(value)
        check_servo_id(servo_id, allow_broadcast=True)
        if expect_response is None:
            expect_response = servo_id != utils.SERVO_BROADCAST_ID
        params = [entry.address] + servo_protocol.encode_value(value, entry.width, self.protocol_end)
        status = self.execute(servo_id, instruction, params, expect_response=expect_response)
        if status is not None and status.fault is not None and self.fault_policy == utils.FAULT_POLICY_RAISE:
            raise status.fault
        return status

    def write_register(self, servo_id: int, name: str, value, expect_response: bool | None = None):
        """Writes one register. Writes to the broadcast ID are not acknowledged."""
        return self._write(Instruction.WRITE, servo_id, name, value, expect_response)

    def reg_write_register(self, servo_id: int, name: str, value, expect_response: bool | None = None):
        """Stages a write that the servo applies on the next ACTION."""
        return self._write(Instruction.REG_WRITE, servo_id, name, value, expect_response)

    def action(self, servo_id: int = utils.SERVO_BROADCAST_ID):
        """Triggers staged REG_WRITE commands."""
        check_servo_id(servo_id, allow_broadcast=True)
        return self.execute(servo_id, Instruction.ACTION, expect_response=servo_id != utils.SERVO_BROADCAST_ID)

    def ping(self, servo_id: int, retries: int | None = None) -> bool:
        """Returns True if a servo answers at `servo_id`."""
        check_servo_id(servo_id)
        try:
            self.execute(servo_id, Instruction.PING, retries=retries)
        except TransientBusError:
            return False
        except ProtocolError as e:
            logger.warning(f"[SCS Ping] {e}")
            return False
        return True

    def sync_read_native(self, address: int, width: int, servo_ids: list[int]) -> dict[int, servo_protocol.StatusPacket]:
        """
        Reads `width` bytes at `address` from several servos with one SYNC_READ packet.

        Each listed servo answers with its own status packet, in the order listed.
        Servos whose reply is missing or corrupt are left out of the result.

        Returns:
            dict[int, StatusPacket]: Replies keyed by servo ID.
        """
        params = [address, width] + list(servo_ids)
        packet = servo_protocol.encode_instruction(utils.SERVO_BROADCAST_ID, Instruction.SYNC_READ, params)
        replies = {}
        expected_ids = set(servo_ids)

        with self.exclusive():
            self._send(packet)
            frames = servo_protocol.FrameBuffer()
            for _ in range(len(servo_ids)):
                waiting_for = min(expected_ids - set(replies), default=utils.SERVO_BROADCAST_ID)
                try:
                    status = self._receive(waiting_for, frames)
                except ResponseTimeoutError:
                    break
                except ChecksumError as e:
                    logger.warning(f"[SCS SyncRead] {e}. Ignoring packet.")
                    continue
                except FramingError as e:
                    logger.warning(f"[SCS SyncRead] {e}. Abandoning the rest of the reply.")
                    frames.clear()
                    break
                if status.servo_id not in expected_ids or status.servo_id in replies:
                    logger.warning(f"[SCS SyncRead] Ignoring unexpected reply from servo {status.servo_id}.")
                    continue
                if status.flags:
                    status.fault = ServoFault(status.servo_id, status.flags)
                    logger.warning(f"[SCS SyncRead] {status.fault}")
                replies[status.servo_id] = status

        missing = sorted(expected_ids - set(replies))
        if missing:
            logger.warning(f"[SCS SyncRead] Did not receive valid responses for IDs: {missing}")
        return replies

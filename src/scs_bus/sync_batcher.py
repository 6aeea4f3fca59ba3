# Batched access to several servos: SYNC_WRITE packets and synchronized reads.
import logging
import time
from collections.abc import Mapping

from . import registers
from . import servo_protocol
from . import utils
from .dispatcher import RegisterValue, check_servo_id
from .errors import ProtocolError, RangeError, ServoFault, TransientBusError
from .servo_protocol import Instruction

logger = logging.getLogger(__name__)


def normalize_servo_values(values) -> dict[int, int]:
    """
    Turns a mapping or an iterable of (servo_id, value) pairs into a dict
    ordered by ascending servo ID.

    Raises:
        RangeError: A servo ID appears twice, or an entry is not a pair.
    """
    pairs = values.items() if isinstance(values, Mapping) else values
    group = {}
    for pair in pairs:
        try:
            servo_id, value = pair
        except (TypeError, ValueError):
            raise RangeError(f"Expected (servo_id, value) pairs, got {pair!r}") from None
        check_servo_id(servo_id)
        if servo_id in group:
            raise RangeError(f"Servo ID {servo_id} appears more than once")
        group[servo_id] = value
    return {servo_id: group[servo_id] for servo_id in sorted(group)}


class SyncBatcher:
    """
    Builds multi-servo transactions on top of a CommandDispatcher.

    `mode` selects how `sync_read` talks to the bus: SYNC_READ_NATIVE sends a
    single SYNC_READ instruction, SYNC_READ_SEQUENTIAL issues one READ per
    servo while holding the bus for the whole batch.
    """

    def __init__(self, dispatcher, mode: str = utils.SYNC_READ_SEQUENTIAL,
                 inter_command_delay: float = utils.INTER_COMMAND_DELAY):
        if mode not in (utils.SYNC_READ_SEQUENTIAL, utils.SYNC_READ_NATIVE):
            raise ValueError(f"Unknown sync read mode {mode!r}")
        self.dispatcher = dispatcher
        self.mode = mode
        self.inter_command_delay = inter_command_delay

    def build_sync_write(self, register_name: str, values_by_id) -> list[int]:
        """
        Validates a sync group and returns the SYNC_WRITE parameter block:
        [StartAddr, DataLen, ID1, Data1..., ID2, Data2..., ...]
        """
        entry = registers.resolve(register_name)
        group = normalize_servo_values(values_by_id)
        encoded = {}
        for servo_id, value in group.items():
            value = entry.validate(value)
            encoded[servo_id] = servo_protocol.encode_value(value, entry.width, self.dispatcher.protocol_end)

        params = [entry.address, entry.width]
        for servo_id, data in encoded.items():
            params.append(servo_id)
            params.extend(data)
        if len(params) > servo_protocol.MAX_PARAMETERS:
            raise RangeError(
                f"Sync write of {len(group)} servo(s) to {register_name!r} does not fit in one packet"
            )
        return params

    def sync_write(self, register_name: str, values_by_id):
        """
        Writes one register on several servos with a single SYNC_WRITE packet.
        Servos never acknowledge a sync write, so nothing is read back.

        Args:
            register_name (str): Register to write.
            values_by_id: Mapping (or pairs) of servo_id -> value.
        """
        params = self.build_sync_write(register_name, values_by_id)
        if len(params) == 2:
            return
        self.dispatcher.execute(utils.SERVO_BROADCAST_ID, Instruction.SYNC_WRITE, params, expect_response=False)

    def sync_read(self, register_name: str, servo_ids) -> dict[int, RegisterValue]:
        """
        Reads one register from several servos.

        Servos that do not answer (after retries) or answer with a corrupt
        packet are left out of the result; they never abort the batch.

        Returns:
            dict[int, RegisterValue]: servo_id -> value, in ascending ID order.
        """
        entry = registers.resolve(register_name)
        ids = sorted(set(servo_ids))
        for servo_id in ids:
            check_servo_id(servo_id)
        if not ids:
            return {}
        if self.mode == utils.SYNC_READ_NATIVE:
            return self._sync_read_native(entry, ids)
        return self._sync_read_sequential(entry, ids)

    def _sync_read_native(self, entry: registers.RegisterEntry, ids: list[int]) -> dict[int, RegisterValue]:
        if len(ids) + 2 > servo_protocol.MAX_PARAMETERS:
            raise RangeError(f"Too many servos ({len(ids)}) for one SYNC_READ packet")
        replies = self.dispatcher.sync_read_native(entry.address, entry.width, ids)
        values = {}
        for servo_id in ids:
            status = replies.get(servo_id)
            if status is None:
                continue
            if len(status.params) < entry.width:
                logger.warning(f"[SCS SyncRead] Servo {servo_id} returned a short payload. Skipping.")
                continue
            value = servo_protocol.decode_value(status.params, entry.width, self.dispatcher.protocol_end)
            if status.fault is not None:
                status.fault.value = value
            values[servo_id] = RegisterValue(value, status.fault)
        return values

    def _sync_read_sequential(self, entry: registers.RegisterEntry, ids: list[int]) -> dict[int, RegisterValue]:
        values = {}
        # The whole batch holds the bus so no other caller's command lands between the reads.
        with self.dispatcher.exclusive():
            for index, servo_id in enumerate(ids):
                if index and self.inter_command_delay > 0:
                    time.sleep(self.inter_command_delay)
                try:
                    values[servo_id] = self.dispatcher.read_register(servo_id, entry.name)
                except ServoFault as fault:
                    if fault.value is not None:
                        values[servo_id] = RegisterValue(fault.value, fault)
                except (TransientBusError, ProtocolError) as e:
                    logger.warning(f"[SCS SyncRead] Servo {servo_id} skipped: {e}")

        missing = [servo_id for servo_id in ids if servo_id not in values]
        if missing:
            logger.warning(f"[SCS SyncRead] Did not receive valid responses for IDs: {missing}")
        return values

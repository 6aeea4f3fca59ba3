import unittest
import sys
import os
import threading
import time
from unittest.mock import patch

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from scs_bus import servo_protocol
from scs_bus import utils
from scs_bus.dispatcher import BusLock, CommandDispatcher, RegisterValue
from scs_bus.errors import (
    BusBusyError,
    ChecksumError,
    ProtocolError,
    RangeError,
    ReadOnlyRegisterError,
    ResponseTimeoutError,
    ServoFault,
)
from scs_bus.servo_protocol import ErrorFlags, Instruction
from mock_bus import make_bus

TIMEOUT = 0.01


def _wait_until(condition, limit: float = 2.0) -> None:
    deadline = time.monotonic() + limit
    while not condition():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.001)


class TestCommandDispatcher(unittest.TestCase):
    """Transactions against a simulated bus."""

    def setUp(self) -> None:
        self.bus = make_bus(1, 2, 3)
        self.dispatcher = CommandDispatcher(self.bus, response_timeout=TIMEOUT)

    def test_read_register(self) -> None:
        value = self.dispatcher.read_register(1, "present_position")
        self.assertEqual(value, 2048)
        self.assertIsInstance(value, RegisterValue)
        self.assertIsNone(value.fault)
        self.assertEqual(self.bus.write_calls, [
            servo_protocol.encode_instruction(1, Instruction.READ, [56, 2])
        ])

    def test_write_then_read_echo(self) -> None:
        self.dispatcher.write_register(2, "goal_position", 1122)
        self.assertEqual(self.dispatcher.read_register(2, "present_position"), 1122)

    def test_partial_reads_and_noise(self) -> None:
        bus = make_bus(1, chunk_size=1)
        bus.servo(1).noise = b"\x00\x37"
        dispatcher = CommandDispatcher(bus, response_timeout=0.05)
        self.assertEqual(dispatcher.read_register(1, "present_position"), 2048)

    def test_stale_input_is_discarded(self) -> None:
        # A leftover reply from servo 9 must not be taken as the answer.
        self.bus.inject(bytes([0xFF, 0xFF, 0x09, 0x02, 0x00, 0xF4]))
        self.assertEqual(self.dispatcher.read_register(1, "present_position"), 2048)

    def test_corrupted_reply_is_retried(self) -> None:
        self.bus.servo(1).corrupt_replies = 1
        with self.assertLogs('scs_bus.dispatcher', level='WARNING'):
            value = self.dispatcher.read_register(1, "present_position")
        self.assertEqual(value, 2048)
        self.assertEqual(len(self.bus.write_calls), 2)
        self.assertEqual(self.bus.write_calls[0], self.bus.write_calls[1])

    def test_gives_up_after_retries(self) -> None:
        self.bus.servo(3).silent = True
        with self.assertLogs('scs_bus.dispatcher', level='ERROR'):
            with self.assertRaises(ResponseTimeoutError) as cm:
                self.dispatcher.read_register(3, "present_position")
        self.assertEqual(cm.exception.servo_id, 3)
        self.assertEqual(len(self.bus.write_calls), 1 + utils.RESPONSE_RETRIES)

    def test_persistent_corruption_raises_checksum_error(self) -> None:
        self.bus.servo(1).corrupt_replies = 10
        with self.assertLogs('scs_bus.dispatcher', level='WARNING'):
            with self.assertRaises(ChecksumError):
                self.dispatcher.read_register(1, "present_position")

    def test_reply_from_wrong_servo(self) -> None:
        self.bus.servo(2).reply_as = 7
        with self.assertRaises(ProtocolError):
            self.dispatcher.read_register(2, "present_position")
        # Not retried: the line is healthy, someone else answered.
        self.assertEqual(len(self.bus.write_calls), 1)

    def test_fault_is_attached_under_warn_policy(self) -> None:
        self.bus.servo(1).error_flags = ErrorFlags.OVERHEAT
        with self.assertLogs('scs_bus.dispatcher', level='WARNING') as logs:
            value = self.dispatcher.read_register(1, "present_position")
        self.assertEqual(value, 2048)
        self.assertIsInstance(value.fault, ServoFault)
        self.assertEqual(value.fault.flags, ErrorFlags.OVERHEAT)
        self.assertIn("OVERHEAT", "\n".join(logs.output))

    def test_reserved_error_bit_is_not_a_fault(self) -> None:
        # Bit 7 of the error byte carries no fault meaning
        self.bus.servo(1).error_flags = 0x80
        value = self.dispatcher.read_register(1, "present_position")
        self.assertEqual(value, 2048)
        self.assertIsNone(value.fault)
        status = self.dispatcher.write_register(1, "torque_enable", 1)
        self.assertIsNone(status.fault)
        self.assertEqual(status.flags, ErrorFlags(0))

        self.bus.servo(1).error_flags = 0x80 | ErrorFlags.OVERLOAD
        with self.assertLogs('scs_bus.dispatcher', level='WARNING'):
            value = self.dispatcher.read_register(1, "present_position")
        self.assertEqual(value.fault.flags, ErrorFlags.OVERLOAD)

    def test_fault_raises_under_raise_policy(self) -> None:
        dispatcher = CommandDispatcher(self.bus, response_timeout=TIMEOUT, fault_policy=utils.FAULT_POLICY_RAISE)
        self.bus.servo(1).error_flags = ErrorFlags.VOLTAGE | ErrorFlags.OVERLOAD
        with self.assertRaises(ServoFault) as cm:
            dispatcher.read_register(1, "present_position")
        self.assertEqual(cm.exception.servo_id, 1)
        self.assertEqual(cm.exception.value, 2048)
        with self.assertRaises(ServoFault):
            dispatcher.write_register(1, "torque_enable", 1)

    def test_ping(self) -> None:
        self.assertTrue(self.dispatcher.ping(1))
        self.assertFalse(self.dispatcher.ping(9, retries=0))
        self.assertEqual(len(self.bus.write_calls), 2)

    def test_invalid_requests_never_reach_the_bus(self) -> None:
        with self.assertRaises(RangeError):
            self.dispatcher.read_register(254, "present_position")
        with self.assertRaises(RangeError):
            self.dispatcher.write_register(1, "goal_position", 5000)
        with self.assertRaises(ReadOnlyRegisterError):
            self.dispatcher.write_register(1, "present_position", 10)
        with self.assertRaises(RangeError):
            self.dispatcher.execute(utils.SERVO_BROADCAST_ID, Instruction.PING)
        self.assertEqual(self.bus.write_calls, [])

    def test_broadcast_write_is_not_acknowledged(self) -> None:
        self.assertIsNone(self.dispatcher.write_register(utils.SERVO_BROADCAST_ID, "torque_enable", 1))
        for servo in self.bus.servos:
            self.assertEqual(servo.memory[40], 1)

    def test_reg_write_and_action(self) -> None:
        self.dispatcher.reg_write_register(1, "goal_position", 100)
        self.dispatcher.reg_write_register(2, "goal_position", 200)
        self.assertEqual(self.dispatcher.read_register(1, "present_position"), 2048)
        self.dispatcher.action()
        self.assertEqual(self.dispatcher.read_register(1, "present_position"), 100)
        self.assertEqual(self.dispatcher.read_register(2, "present_position"), 200)

    def test_interrupted_read_drains_the_reply(self) -> None:
        original_read = self.bus.read
        calls = []

        def flaky_read(max_bytes, timeout):
            calls.append(max_bytes)
            if len(calls) == 2:
                raise RuntimeError("interrupted")
            return original_read(max_bytes, timeout)

        with patch.object(self.bus, 'read', side_effect=flaky_read):
            with self.assertRaises(RuntimeError):
                self.dispatcher.read_register(1, "present_position")
        self.assertEqual(self.bus.pending, 0)
        self.assertFalse(self.dispatcher.lock.locked())
        self.assertEqual(self.dispatcher.read_register(2, "present_position"), 2048)

    def test_big_endian_variant(self) -> None:
        bus = make_bus(1, protocol_end=utils.PROTOCOL_END_BIG)
        dispatcher = CommandDispatcher(bus, protocol_end=utils.PROTOCOL_END_BIG, response_timeout=TIMEOUT)
        dispatcher.write_register(1, "goal_position", 1122)
        self.assertEqual(bus.write_calls[0], bytes.fromhex("FF FF 01 05 03 2A 04 62 66"))
        self.assertEqual(dispatcher.read_register(1, "present_position"), 1122)

    def test_native_sync_read_skips_silent_servo(self) -> None:
        self.bus.servo(2).silent = True
        with self.assertLogs('scs_bus.dispatcher', level='WARNING'):
            replies = self.dispatcher.sync_read_native(56, 2, [1, 2, 3])
        self.assertEqual(sorted(replies), [1, 3])
        self.assertEqual(len(self.bus.write_calls), 1)
        self.assertEqual(self.bus.write_calls[0][2], utils.SERVO_BROADCAST_ID)

    def test_concurrent_callers_never_interleave(self) -> None:
        bus = make_bus(1, 2, 3, 4, chunk_size=3)
        dispatcher = CommandDispatcher(bus, response_timeout=0.5)
        for servo_id in (1, 2, 3, 4):
            bus.servo(servo_id).set_word(56, servo_id * 100)
        errors = []
        results = {servo_id: [] for servo_id in (1, 2, 3, 4)}

        def worker(servo_id):
            try:
                for _ in range(20):
                    results[servo_id].append(dispatcher.read_register(servo_id, "present_position"))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(i,)) for i in (1, 2, 3, 4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(errors, [])
        self.assertEqual(bus.collisions, 0)
        for servo_id, values in results.items():
            self.assertEqual(values, [servo_id * 100] * 20)
        self.assertEqual(len(bus.write_calls), 80)

    def test_exclusive_times_out(self) -> None:
        dispatcher = CommandDispatcher(self.bus, response_timeout=TIMEOUT, queue_timeout=0.02)
        outcome = []

        def other_caller():
            try:
                dispatcher.ping(1)
                outcome.append("ran")
            except BusBusyError:
                outcome.append("busy")

        with dispatcher.exclusive():
            t = threading.Thread(target=other_caller)
            t.start()
            t.join()
        self.assertEqual(outcome, ["busy"])
        self.assertEqual(self.bus.write_calls, [])


class TestBusLock(unittest.TestCase):

    def test_reentrant_for_owner(self) -> None:
        lock = BusLock()
        self.assertTrue(lock.acquire())
        self.assertTrue(lock.acquire())
        lock.release()
        self.assertTrue(lock.locked())
        lock.release()
        self.assertFalse(lock.locked())

    def test_release_by_other_thread(self) -> None:
        lock = BusLock()
        lock.acquire()
        failures = []

        def intruder():
            try:
                lock.release()
            except RuntimeError:
                failures.append(True)

        t = threading.Thread(target=intruder)
        t.start()
        t.join()
        self.assertEqual(failures, [True])
        lock.release()

    def test_callers_are_served_in_arrival_order(self) -> None:
        lock = BusLock()
        order = []

        def caller(index):
            lock.acquire()
            order.append(index)
            lock.release()

        lock.acquire()
        threads = []
        for index in range(4):
            t = threading.Thread(target=caller, args=(index,))
            t.start()
            threads.append(t)
            _wait_until(lambda: lock.waiting == index + 1)
        lock.release()
        for t in threads:
            t.join()
        self.assertEqual(order, [0, 1, 2, 3])

    def test_abandoned_ticket_is_skipped(self) -> None:
        lock = BusLock()
        results = {}

        def caller(name, timeout):
            results[name] = lock.acquire(timeout)
            if results[name]:
                lock.release()

        lock.acquire()
        impatient = threading.Thread(target=caller, args=("impatient", 0.01))
        impatient.start()
        impatient.join()
        patient = threading.Thread(target=caller, args=("patient", None))
        patient.start()
        _wait_until(lambda: lock.waiting == 1)
        lock.release()
        patient.join(timeout=2)

        self.assertFalse(patient.is_alive())
        self.assertEqual(results, {"impatient": False, "patient": True})
        self.assertFalse(lock.locked())

    def test_queue_limit(self) -> None:
        lock = BusLock(queue_limit=1)
        outcome = []

        def waiter():
            lock.acquire()
            lock.release()

        def latecomer():
            try:
                lock.acquire()
                outcome.append("acquired")
                lock.release()
            except BusBusyError:
                outcome.append("busy")

        lock.acquire()
        first = threading.Thread(target=waiter)
        first.start()
        _wait_until(lambda: lock.waiting == 1)
        second = threading.Thread(target=latecomer)
        second.start()
        second.join()
        lock.release()
        first.join()
        self.assertEqual(outcome, ["busy"])


if __name__ == '__main__':
    unittest.main()

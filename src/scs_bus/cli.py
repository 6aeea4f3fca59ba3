# Command line tool for bench work on an SCS servo bus: find servos, read and
# write registers, renumber them and change their baud rate.
import argparse
import logging
import sys

from . import registers
from . import utils
from .errors import ScsBusError
from .servo_driver import ScsServoBus
from .transport import SerialTransport


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scs-bus",
        description="Talk to Feetech SCS/STS servos on a half-duplex serial bus.")
    parser.add_argument("--port", default=utils.SERIAL_PORT,
                        help=f"Serial device or pyserial URL (default {utils.SERIAL_PORT}).")
    parser.add_argument("--baud", type=int, default=utils.BAUD_RATE,
                        help=f"Baud rate (default {utils.BAUD_RATE}).")
    parser.add_argument("--protocol-end", type=int, choices=(0, 1), default=utils.PROTOCOL_END_LITTLE,
                        help="Byte order of 2-byte values: 0 = STS little-endian, 1 = SCS big-endian.")
    parser.add_argument("--sync-read", choices=(utils.SYNC_READ_SEQUENTIAL, utils.SYNC_READ_NATIVE),
                        default=utils.SYNC_READ_SEQUENTIAL, help="How positions of several servos are read.")
    parser.add_argument("--timeout", type=float, default=utils.SERIAL_READ_TIMEOUT,
                        help="Seconds to wait for each reply.")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="-v for progress messages, -vv for packet traces.")

    commands = parser.add_subparsers(dest="command", required=True)

    scan = commands.add_parser("scan", help="Ping a range of IDs and list the servos that answer.")
    scan.add_argument("--first", type=int, default=0)
    scan.add_argument("--last", type=int, default=utils.MAX_SERVO_ID)

    ping = commands.add_parser("ping", help="Check whether a servo answers.")
    ping.add_argument("id", type=int)

    read = commands.add_parser("read", help="Read a register.")
    read.add_argument("id", type=int)
    read.add_argument("register", choices=registers.names())

    write = commands.add_parser("write", help="Write a register.")
    write.add_argument("id", type=int)
    write.add_argument("register", choices=[n for n in registers.names() if registers.resolve(n).writable])
    write.add_argument("value", type=int)

    position = commands.add_parser("position", help="Read the present position, or move to a goal position.")
    position.add_argument("id", type=int)
    position.add_argument("value", type=int, nargs="?", help="Goal position (0-4095).")

    positions = commands.add_parser("positions", help="Read the present position of several servos.")
    positions.add_argument("id", type=int, nargs="+")

    set_id = commands.add_parser("set-id", help="Renumber a servo.")
    set_id.add_argument("old_id", type=int)
    set_id.add_argument("new_id", type=int)

    set_baud = commands.add_parser("set-baud", help="Change a servo's baud rate.")
    set_baud.add_argument("id", type=int)
    set_baud.add_argument("index", type=int, choices=sorted(utils.BAUD_RATE_TABLE),
                          help=", ".join(f"{i}={rate}" for i, rate in utils.BAUD_RATE_TABLE.items()))

    mode = commands.add_parser("mode", help="Switch between position and wheel mode.")
    mode.add_argument("id", type=int)
    mode.add_argument("mode", choices=("position", "wheel"))

    torque = commands.add_parser("torque", help="Enable or disable torque.")
    torque.add_argument("id", type=int)
    torque.add_argument("state", choices=("on", "off"))
    return parser


def _run(bus: ScsServoBus, args) -> int:
    if args.command == "scan":
        found = bus.scan(range(args.first, args.last + 1))
        print(f"Found {len(found)} servo(s): {', '.join(str(i) for i in found) or 'none'}")
        return 0 if found else 1

    if args.command == "ping":
        present = bus.ping(args.id)
        print(f"Servo {args.id}: {'PRESENT' if present else 'ABSENT'}")
        return 0 if present else 1

    if args.command == "read":
        value = bus.read_register(args.id, args.register)
        print(f"Servo {args.id} {args.register} = {int(value)}")
        if value.fault is not None:
            print(f"  warning: {value.fault}")
        return 0

    if args.command == "write":
        fault = bus.write_register(args.id, args.register, args.value)
        print(f"Servo {args.id} {args.register} <- {args.value}")
        if fault is not None:
            print(f"  warning: {fault}")
        return 0

    if args.command == "position":
        if args.value is not None:
            fault = bus.write_position(args.id, args.value)
            print(f"Servo {args.id} goal position <- {args.value}")
            if fault is not None:
                print(f"  warning: {fault}")
            return 0
        print(f"Servo {args.id} position = {int(bus.read_position(args.id))}")
        return 0

    if args.command == "positions":
        positions = bus.sync_read_positions(args.id)
        for servo_id in sorted(set(args.id)):
            print(f"Servo {servo_id}: {int(positions[servo_id]) if servo_id in positions else 'no response'}")
        return 0 if len(positions) == len(set(args.id)) else 1

    if args.command == "set-id":
        bus.set_servo_id(args.old_id, args.new_id)
        print(f"Servo {args.old_id} is now servo {args.new_id}")
        return 0

    if args.command == "set-baud":
        bus.set_baud_rate(args.id, args.index)
        print(f"Servo {args.id} now runs at {utils.BAUD_RATE_TABLE[args.index]} baud. "
              "Reconnect at the new rate and lock its EEPROM ('write ID lock 1').")
        return 0

    if args.command == "mode":
        if args.mode == "wheel":
            bus.set_wheel_mode(args.id)
        else:
            bus.set_position_mode(args.id)
        print(f"Servo {args.id} is in {args.mode} mode")
        return 0

    if args.command == "torque":
        bus.write_torque_enable(args.id, args.state == "on")
        print(f"Servo {args.id} torque {args.state}")
        return 0

    raise AssertionError(f"unhandled command {args.command}")


def main(argv=None, transport_factory=SerialTransport) -> int:
    args = _build_parser().parse_args(argv)
    if args.verbose:
        utils.configure_logging(logging.DEBUG if args.verbose > 1 else logging.INFO)

    try:
        options = utils.ConnectionOptions(
            port=args.port,
            baud_rate=args.baud,
            protocol_end=args.protocol_end,
            response_timeout=args.timeout,
            sync_read_mode=args.sync_read,
        )
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    bus = ScsServoBus(transport_factory=transport_factory)
    try:
        bus.connect(options)
        with bus:
            return _run(bus, args)
    except ScsBusError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())

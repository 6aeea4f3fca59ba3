# Static memory map of SCS/STS servos: register name -> address, width, range and access.
from dataclasses import dataclass
from types import MappingProxyType

from .errors import RangeError, ReadOnlyRegisterError, UnknownRegisterError

READ_ONLY = "ro"
READ_WRITE = "rw"


@dataclass(frozen=True)
class RegisterEntry:
    """
    One register in the servo's control table.

    Attributes:
        name (str): Name used by the public API.
        address (int): Byte offset in the servo's memory map.
        width (int): Size in bytes (1 or 2).
        minimum (int): Smallest value accepted for writes.
        maximum (int): Largest value accepted for writes.
        access (str): READ_ONLY or READ_WRITE.
        eeprom (bool): True if the value persists and needs the EEPROM lock released.
    """
    name: str
    address: int
    width: int
    minimum: int = 0
    maximum: int | None = None
    access: str = READ_WRITE
    eeprom: bool = False

    @property
    def writable(self) -> bool:
        return self.access == READ_WRITE

    @property
    def upper_bound(self) -> int:
        if self.maximum is not None:
            return self.maximum
        return (1 << (8 * self.width)) - 1

    def validate(self, value) -> int:
        """
        Checks that `value` may be written to this register.

        Returns:
            int: The value as a plain int.

        Raises:
            ReadOnlyRegisterError: The register cannot be written.
            RangeError: The value is not an integer or outside [minimum, maximum].
        """
        if not self.writable:
            raise ReadOnlyRegisterError(self.name)
        if isinstance(value, bool):
            value = int(value)
        if not isinstance(value, int):
            raise RangeError(f"Register {self.name!r} needs an integer, got {value!r}")
        if not self.minimum <= value <= self.upper_bound:
            raise RangeError(
                f"Value {value} out of range for {self.name!r} ({self.minimum}-{self.upper_bound})"
            )
        return value


_ENTRIES = [
    # -------- EEPROM --------
    RegisterEntry("model_number", 3, 2, access=READ_ONLY, eeprom=True),
    RegisterEntry("id", 5, 1, 0, 253, eeprom=True),
    RegisterEntry("baud_rate", 6, 1, 0, 7, eeprom=True),
    RegisterEntry("return_delay", 7, 1, 0, 254, eeprom=True),
    RegisterEntry("min_angle_limit", 9, 2, 0, 4095, eeprom=True),
    RegisterEntry("max_angle_limit", 11, 2, 0, 4095, eeprom=True),
    RegisterEntry("operating_mode", 33, 1, 0, 3, eeprom=True),
    # -------- SRAM (control) --------
    RegisterEntry("torque_enable", 40, 1, 0, 1),
    RegisterEntry("acceleration", 41, 1, 0, 254),
    RegisterEntry("goal_position", 42, 2, 0, 4095),
    RegisterEntry("goal_time", 44, 2),
    RegisterEntry("goal_speed", 46, 2),
    RegisterEntry("lock", 55, 1, 0, 1),
    # -------- SRAM (feedback) --------
    RegisterEntry("present_position", 56, 2, access=READ_ONLY),
    RegisterEntry("present_speed", 58, 2, access=READ_ONLY),
    RegisterEntry("present_load", 60, 2, access=READ_ONLY),
    RegisterEntry("present_voltage", 62, 1, access=READ_ONLY),
    RegisterEntry("present_temperature", 63, 1, access=READ_ONLY),
    RegisterEntry("moving", 66, 1, access=READ_ONLY),
]

REGISTERS = MappingProxyType({entry.name: entry for entry in _ENTRIES})


def resolve(name: str) -> RegisterEntry:
    """Looks up a register by name, raising UnknownRegisterError if there is none."""
    try:
        return REGISTERS[name]
    except (KeyError, TypeError):
        raise UnknownRegisterError(name) from None


def names() -> list[str]:
    """All register names, in address order."""
    return [entry.name for entry in sorted(_ENTRIES, key=lambda e: e.address)]

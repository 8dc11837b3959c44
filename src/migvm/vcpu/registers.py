"""
Register file definitions.

The virtual CPU has 32 general-purpose registers named $0 through $31.
Each holds a 32-bit signed integer and starts at zero.

Unlike MIPS, $0 is not hard-wired to zero here - it is an ordinary
register that keeps whatever was last written to it.

Register names are only looked up when an instruction is decoded. At run
time the engine addresses registers by index into a fixed-size list, so
the "exactly 32 registers" rule is part of the data structure itself.
"""

from dataclasses import dataclass

# ============================================================================
# Register Layout
# ============================================================================

NUM_REGISTERS = 32

# 32-bit two's complement bounds
INT32_MIN = -(1 << 31)
INT32_MAX = (1 << 31) - 1
UINT32_MASK = 0xFFFFFFFF

# Canonical names, in index order ("$0", "$1", ..., "$31")
REGISTER_NAMES = [f"${i}" for i in range(NUM_REGISTERS)]

# Name -> index lookup, used only by the decoder and the state codec
REGISTER_INDEX = {name: i for i, name in enumerate(REGISTER_NAMES)}


def wrap32(value: int) -> int:
    """
    Wrap an arbitrary Python integer to a signed 32-bit value.

    Python integers never overflow, so every arithmetic result has to be
    folded back into range explicitly. This gives the same wraparound a
    32-bit two's complement machine would produce.

    Examples:
        wrap32(0x7FFFFFFF + 1) == -0x80000000
        wrap32(-1) == -1
        wrap32(0xFFFFFFFE) == -2
    """
    value &= UINT32_MASK
    if value > INT32_MAX:
        value -= 1 << 32
    return value


def to_unsigned(value: int) -> int:
    """Reinterpret a signed 32-bit value as unsigned (0..2**32-1)."""
    return value & UINT32_MASK


def register_index(name: str) -> int:
    """
    Get the index of a register from its name.

    Args:
        name: A register token such as "$7".

    Returns:
        The register index (0..31).

    Raises:
        KeyError: If the name is not one of the 32 canonical registers.
    """
    return REGISTER_INDEX[name]


def get_register_name(index: int) -> str:
    """Get the canonical name for a register index ("$3" for 3)."""
    if 0 <= index < NUM_REGISTERS:
        return REGISTER_NAMES[index]
    return f"unknown({index})"


class RegisterFile:
    """
    The 32 general-purpose registers of one virtual CPU.

    Values are stored in a plain list indexed 0..31. All writes go
    through wrap32() so a register can never hold a value outside the
    signed 32-bit range.

    Usage:
        regs = RegisterFile()
        regs[3] = 5
        regs[4] = 7
        regs[2] = regs[3] + regs[4]
    """

    def __init__(self, values=None):
        self._values = [0] * NUM_REGISTERS
        if values is not None:
            self.load(values)

    def __getitem__(self, index: int) -> int:
        return self._values[index]

    def __setitem__(self, index: int, value: int):
        if not 0 <= index < NUM_REGISTERS:
            raise IndexError(f"register index out of range: {index}")
        self._values[index] = wrap32(value)

    def __len__(self) -> int:
        return NUM_REGISTERS

    def __iter__(self):
        return iter(self._values)

    def __eq__(self, other) -> bool:
        if isinstance(other, RegisterFile):
            return self._values == other._values
        return NotImplemented

    def load(self, values):
        """
        Replace all 32 registers at once.

        Args:
            values: An iterable of exactly 32 integers, in index order.

        Raises:
            ValueError: If the iterable does not hold exactly 32 values.
        """
        new_values = [wrap32(v) for v in values]
        if len(new_values) != NUM_REGISTERS:
            raise ValueError(
                f"expected {NUM_REGISTERS} register values, got {len(new_values)}"
            )
        self._values = new_values

    def clear(self):
        """Reset every register to zero."""
        self._values = [0] * NUM_REGISTERS

    def snapshot(self) -> tuple[int, ...]:
        """Get an immutable copy of all register values in index order."""
        return tuple(self._values)

    def __repr__(self) -> str:
        nonzero = ", ".join(
            f"{REGISTER_NAMES[i]}={v}" for i, v in enumerate(self._values) if v
        )
        return f"RegisterFile({nonzero})"


@dataclass(frozen=True)
class VMState:
    """
    The unit of state transfer: all 32 registers plus the program counter.

    Attributes:
        registers: Register values in index order ($0 first)
        pc: Index of the instruction the VM stopped at
    """
    registers: tuple[int, ...]
    pc: int = 0

    def __post_init__(self):
        if len(self.registers) != NUM_REGISTERS:
            raise ValueError(
                f"expected {NUM_REGISTERS} register values, got {len(self.registers)}"
            )
        if self.pc < 0:
            raise ValueError(f"program counter must be non-negative, got {self.pc}")

    def register(self, name: str) -> int:
        """Get a register value by name ("$1")."""
        return self.registers[register_index(name)]

"""
Binary encodings of VM state.

There are two formats, and they are deliberately different.

Migration buffer (network byte order, variable length):

    offset 0:  int32   PC
    then, once per register, until the end of the buffer:
               uint32  L, length of the register name
               L bytes register name, ASCII ("$0" .. "$31")
               int32   register value

    Register entries are written in ascending lexicographic order of the
    name string, so "$1" < "$10" < "$11" ... < "$2". The decoder accepts
    any order, but encode() always produces this one so the same state
    always yields the same bytes.

Snapshot block (fixed 128 bytes):

    32 x int32, register $0 first, little-endian, no header and no PC.

    Loading a snapshot therefore restores registers only - execution
    restarts at PC 0.
"""

import struct

from migvm.vcpu.registers import NUM_REGISTERS, REGISTER_INDEX, REGISTER_NAMES, VMState


class FormatError(Exception):
    """Exception raised when a migration buffer or snapshot is malformed."""
    pass


# ============================================================================
# Migration Buffer
# ============================================================================

_PC = struct.Struct("!i")
_KEY_LEN = struct.Struct("!I")
_VALUE = struct.Struct("!i")

# Entry order on the wire: sorted by name string, not by register index
WIRE_ORDER = sorted(REGISTER_NAMES)


def encode_migration(state: VMState) -> bytes:
    """
    Serialize registers and PC into a migration buffer.

    Args:
        state: The VM state to send.

    Returns:
        The encoded buffer (without the transport's length prefix).
    """
    parts = [_PC.pack(state.pc)]
    for name in WIRE_ORDER:
        key = name.encode("ascii")
        parts.append(_KEY_LEN.pack(len(key)))
        parts.append(key)
        parts.append(_VALUE.pack(state.registers[REGISTER_INDEX[name]]))
    return b"".join(parts)


def decode_migration(data: bytes) -> VMState:
    """
    Parse a migration buffer.

    The received register set replaces the destination's registers
    wholesale: any register missing from the buffer comes back as zero.

    Args:
        data: The buffer, without the length prefix.

    Returns:
        The decoded VMState, with the PC exactly as the sender had it.

    Raises:
        FormatError: If the buffer is truncated, names an unknown register,
                     repeats a register, or carries a negative PC.
    """
    if len(data) < _PC.size:
        raise FormatError(f"migration buffer too short for PC: {len(data)} bytes")

    (pc,) = _PC.unpack_from(data, 0)
    if pc < 0:
        raise FormatError(f"negative program counter in migration buffer: {pc}")

    values = [0] * NUM_REGISTERS
    seen: set[int] = set()
    pos = _PC.size

    while pos < len(data):
        if pos + _KEY_LEN.size > len(data):
            raise FormatError(f"truncated key length at offset {pos}")
        (key_len,) = _KEY_LEN.unpack_from(data, pos)
        pos += _KEY_LEN.size

        if pos + key_len + _VALUE.size > len(data):
            raise FormatError(
                f"truncated register entry at offset {pos} "
                f"(key length {key_len}, {len(data) - pos} bytes left)"
            )
        raw_key = data[pos:pos + key_len]
        pos += key_len

        try:
            name = raw_key.decode("ascii")
        except UnicodeDecodeError:
            raise FormatError(f"register name is not ASCII: {raw_key!r}") from None

        index = REGISTER_INDEX.get(name)
        if index is None:
            raise FormatError(f"unknown register in migration buffer: {name!r}")
        if index in seen:
            raise FormatError(f"duplicate register in migration buffer: {name}")
        seen.add(index)

        (values[index],) = _VALUE.unpack_from(data, pos)
        pos += _VALUE.size

    return VMState(tuple(values), pc)


# ============================================================================
# Snapshot Block
# ============================================================================

_SNAPSHOT = struct.Struct(f"<{NUM_REGISTERS}i")

SNAPSHOT_SIZE = _SNAPSHOT.size  # 128 bytes


def encode_snapshot(registers) -> bytes:
    """
    Serialize the 32 registers into a snapshot block.

    Args:
        registers: 32 register values in index order (a RegisterFile,
                   tuple, or list).
    """
    return _SNAPSHOT.pack(*registers)


def decode_snapshot(data: bytes) -> tuple[int, ...]:
    """
    Parse a snapshot block.

    Raises:
        FormatError: If the block is not exactly SNAPSHOT_SIZE bytes.
    """
    if len(data) != SNAPSHOT_SIZE:
        raise FormatError(
            f"snapshot must be {SNAPSHOT_SIZE} bytes, got {len(data)}"
        )
    return _SNAPSHOT.unpack(data)

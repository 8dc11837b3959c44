"""
Test the migration buffer and snapshot block formats.
"""

import struct

import pytest

from migvm.state.codec import (
    SNAPSHOT_SIZE,
    WIRE_ORDER,
    FormatError,
    decode_migration,
    decode_snapshot,
    encode_migration,
    encode_snapshot,
)
from migvm.vcpu.registers import VMState


def sample_state(pc: int = 3) -> VMState:
    values = tuple((i * 7919 - 50000) * (-1) ** i for i in range(32))
    return VMState(values, pc)


def entry(name: str, value: int) -> bytes:
    key = name.encode("ascii")
    return struct.pack("!I", len(key)) + key + struct.pack("!i", value)


class TestMigrationBuffer:
    """Migration buffer layout and validation."""

    def test_round_trip(self):
        state = sample_state()
        assert decode_migration(encode_migration(state)) == state

    def test_round_trip_extremes(self):
        values = (-2**31, 2**31 - 1) + (0,) * 29 + (-1,)
        state = VMState(values, 2**31 - 1)
        assert decode_migration(encode_migration(state)) == state

    def test_pc_is_big_endian_header(self):
        data = encode_migration(VMState((0,) * 32, 258))
        assert data[:4] == b"\x00\x00\x01\x02"

    def test_entries_in_lexicographic_order(self):
        assert WIRE_ORDER[:4] == ["$0", "$1", "$10", "$11"]
        assert WIRE_ORDER.index("$2") == 12

        values = tuple(range(32))
        data = encode_migration(VMState(values, 0))

        # First entry after the PC is $0, second is $1, third is $10
        pos = 4
        names = []
        for _ in range(3):
            (key_len,) = struct.unpack_from("!I", data, pos)
            names.append(data[pos + 4:pos + 4 + key_len].decode())
            pos += 4 + key_len + 4
        assert names == ["$0", "$1", "$10"]

    def test_exact_bytes(self):
        values = [0] * 32
        values[1] = 42
        data = encode_migration(VMState(tuple(values), 3))

        expected = struct.pack("!i", 3) + b"".join(
            entry(name, 42 if name == "$1" else 0) for name in WIRE_ORDER
        )
        assert data == expected

    def test_size(self):
        # 4-byte PC + per register (4 + len(name) + 4)
        names = sum(len(f"${i}") for i in range(32))
        assert len(encode_migration(sample_state())) == 4 + 32 * 8 + names

    def test_decoder_accepts_any_order(self):
        data = struct.pack("!i", 7) + entry("$2", 5) + entry("$1", -5)
        state = decode_migration(data)
        assert state.pc == 7
        assert state.register("$1") == -5
        assert state.register("$2") == 5
        assert state.register("$3") == 0

    def test_pc_only(self):
        state = decode_migration(struct.pack("!i", 4))
        assert state == VMState((0,) * 32, 4)

    def test_too_short_for_pc(self):
        with pytest.raises(FormatError):
            decode_migration(b"\x00\x01")

    def test_truncated_entry(self):
        data = encode_migration(sample_state())
        with pytest.raises(FormatError, match="truncated"):
            decode_migration(data[:-2])

    def test_truncated_key_length(self):
        data = struct.pack("!i", 0) + b"\x00\x00"
        with pytest.raises(FormatError, match="truncated"):
            decode_migration(data)

    def test_unknown_register(self):
        data = struct.pack("!i", 0) + entry("$R0", 0)
        with pytest.raises(FormatError, match="unknown register"):
            decode_migration(data)

    def test_duplicate_register(self):
        data = struct.pack("!i", 0) + entry("$1", 1) + entry("$1", 2)
        with pytest.raises(FormatError, match="duplicate"):
            decode_migration(data)

    def test_negative_pc(self):
        with pytest.raises(FormatError, match="negative"):
            decode_migration(struct.pack("!i", -1))


class TestSnapshotBlock:
    """Snapshot block layout and validation."""

    def test_round_trip(self):
        values = sample_state().registers
        assert decode_snapshot(encode_snapshot(values)) == values

    def test_fixed_size_no_header(self):
        data = encode_snapshot(range(32))
        assert len(data) == SNAPSHOT_SIZE == 128
        assert data[:8] == struct.pack("<ii", 0, 1)
        assert data[-4:] == struct.pack("<i", 31)

    @pytest.mark.parametrize("size", [0, 4, 127, 129, 256])
    def test_wrong_size(self, size):
        with pytest.raises(FormatError):
            decode_snapshot(b"\x00" * size)

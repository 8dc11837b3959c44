"""
Snapshot persistence.

A snapshot is the 128-byte register block from the codec, written to a
file. It never includes the PC, so a VM restored from a snapshot starts
its program over from the first instruction.
"""

import logging
from pathlib import Path

from .codec import FormatError, decode_snapshot, encode_snapshot

logger = logging.getLogger(__name__)


class SnapshotStore:
    """
    Reads and writes register snapshots.

    Writing is best-effort: an unwritable path is logged and reported
    through the return value, and the VM keeps running without a
    persisted snapshot.

    Reading distinguishes three cases:
    - file absent or empty: cold start, load() returns None
    - file of the right size: the 32 register values
    - anything else: FormatError

    Usage:
        store = SnapshotStore()
        store.save("vm1.snap", vcpu.registers)
        values = store.load("vm1.snap")
        if values is not None:
            vcpu.reset_registers(values)
    """

    def __init__(self):
        self._saved = 0
        self._failed = 0

    @property
    def saved(self) -> int:
        """Number of snapshots written successfully."""
        return self._saved

    @property
    def failed(self) -> int:
        """Number of snapshot writes that failed."""
        return self._failed

    def save(self, path: str | Path, registers) -> bool:
        """
        Overwrite the file at path with a register snapshot.

        Args:
            path: Destination file.
            registers: 32 register values in index order.

        Returns:
            True if the snapshot was written, False if it could not be.
        """
        data = encode_snapshot(registers)
        try:
            Path(path).write_bytes(data)
        except OSError as e:
            self._failed += 1
            logger.error(f"Unable to create snapshot {path}: {e}")
            return False

        self._saved += 1
        logger.info(f"Snapshot written to {path} ({len(data)} bytes)")
        return True

    def load(self, path: str | Path | None) -> tuple[int, ...] | None:
        """
        Read a register snapshot.

        Args:
            path: Snapshot file, or None for "no snapshot configured".

        Returns:
            The 32 register values, or None for a cold start.

        Raises:
            FormatError: If the file exists but has the wrong size.
            OSError: If the file exists but cannot be read.
        """
        if path is None:
            return None

        path = Path(path)
        if not path.exists():
            logger.warning(f"Snapshot {path} not found, cold start")
            return None

        data = path.read_bytes()
        if not data:
            logger.info(f"Snapshot {path} is empty, cold start")
            return None

        try:
            values = decode_snapshot(data)
        except FormatError as e:
            raise FormatError(f"{path}: {e}") from e

        logger.info(f"Snapshot {path} loaded")
        return values

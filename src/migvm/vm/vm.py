"""
Virtual Machine assembly.

This module provides the VirtualMachine class that puts one vCPU together
with the things its instructions reach out to: the snapshot store for
SNAPSHOT and, on the sending side, the migration transport for MIGRATE.
"""

import logging
from typing import TextIO

from migvm.config import VMConfig
from migvm.migration.transport import MigrationSender, TransportConfig
from migvm.state.snapshot import SnapshotStore
from migvm.vcpu.decoder import OpcodeCase
from migvm.vcpu.registers import RegisterFile, VMState
from migvm.vcpu.vcpu import VCPU, SliceResult, VCPUError
from .program import load_program

logger = logging.getLogger(__name__)


class VMError(Exception):
    """Exception raised when VM operations fail."""
    pass


class VirtualMachine:
    """
    Represents one virtual machine.

    A VM created with a TransportConfig is on the sending side of a
    migration: MIGRATE stops it and ships its state. Without one it is on
    the receiving side and MIGRATE does nothing.

    Usage:
        vm = VirtualMachine.from_config("Local Machine", load_config("vm1.conf"),
                                        migration=TransportConfig())
        vm.restore_snapshot("vm1.snap")
        vm.run_to_completion()
        vm.dump_state()
    """

    def __init__(
        self,
        name: str,
        slice_size: int,
        program,
        opcode_case: OpcodeCase = OpcodeCase.STRICT,
        output: TextIO | None = None,
        snapshots: SnapshotStore | None = None,
        migration: TransportConfig | None = None,
    ):
        """
        Create a virtual machine.

        Args:
            name: Name shown in dumps and logs.
            slice_size: Instructions per scheduling turn.
            program: The instruction lines.
            opcode_case: Opcode matching policy for this VM's decoder.
            output: Stream for register dumps (default stdout).
            snapshots: Store used by SNAPSHOT (a new one by default).
            migration: Transport settings; enables the sending side.

        Raises:
            VMError: If the slice size is invalid.
        """
        self._name = name
        self._snapshots = snapshots if snapshots is not None else SnapshotStore()
        self._sender = MigrationSender(migration) if migration is not None else None

        self._vcpu = VCPU(
            name,
            opcode_case=opcode_case,
            output=output,
            on_migrate=self._sender,
            on_snapshot=self._write_snapshot,
        )
        try:
            self._vcpu.configure(slice_size)
        except VCPUError as e:
            raise VMError(str(e)) from e
        self._vcpu.load(program)

    @classmethod
    def from_config(cls, name: str, config: VMConfig, **kwargs) -> "VirtualMachine":
        """
        Create a VM from a parsed configuration file.

        Raises:
            NotFoundError: If the configured instruction file is missing.
            ProgramError: If the instruction file cannot be read.
        """
        program = load_program(config.binary)
        return cls(
            name,
            config.slice_size,
            program,
            opcode_case=config.opcode_case,
            **kwargs,
        )

    @property
    def name(self) -> str:
        return self._name

    @property
    def vcpu(self) -> VCPU:
        """Get the vCPU."""
        return self._vcpu

    @property
    def registers(self) -> RegisterFile:
        return self._vcpu.registers

    @property
    def pc(self) -> int:
        return self._vcpu.pc

    @property
    def runnable(self) -> bool:
        return self._vcpu.runnable

    @property
    def snapshots(self) -> SnapshotStore:
        return self._snapshots

    @property
    def is_sender(self) -> bool:
        """True if MIGRATE ships this VM's state elsewhere."""
        return self._sender is not None

    def _write_snapshot(self, vcpu: VCPU, path: str):
        self._snapshots.save(path, vcpu.registers)

    def restore_snapshot(self, path) -> bool:
        """
        Restore registers from a snapshot file, if there is one.

        The PC always goes back to 0: snapshots do not record where the
        program was.

        Returns:
            True if registers were restored, False for a cold start.

        Raises:
            FormatError: If the snapshot file has the wrong size.
        """
        values = self._snapshots.load(path)
        if values is None:
            return False
        self._vcpu.reset_registers(values)
        return True

    def resume_migrated(self, state: VMState):
        """
        Adopt a state received from a migration source.

        The source stopped on its MIGRATE instruction without executing
        it, so this VM continues at the instruction after that one.

        Raises:
            VMError: If the resumed PC lies outside this VM's program,
                     which means the two hosts loaded different programs.
        """
        try:
            self._vcpu.restore(VMState(state.registers, state.pc + 1))
        except VCPUError as e:
            raise VMError(
                f"cannot resume at PC {state.pc + 1}: {e} "
                "(do both hosts load the same instruction file?)"
            ) from e
        logger.info(f"{self._name}: resumed after migration at PC {self.pc}")

    def run_slice(self) -> SliceResult:
        """Run one scheduling slice."""
        return self._vcpu.run_slice()

    def run_to_completion(self) -> list[SliceResult]:
        """
        Run slice after slice until the VM finishes, migrates or fails.

        Returns:
            The result of every slice, in order. A failure shows up as the
            last result (result.failed is True).
        """
        results = []
        while self._vcpu.runnable:
            results.append(self._vcpu.run_slice())
        return results

    def dump_state(self, stream: TextIO | None = None):
        """Print all registers."""
        self._vcpu.dump_state(stream)

    def __str__(self) -> str:
        return (
            f"VirtualMachine(name={self._name!r}, pc={self.pc}/"
            f"{len(self._vcpu.program)}, slice={self._vcpu.slice_size})"
        )

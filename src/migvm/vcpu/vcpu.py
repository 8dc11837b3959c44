"""
Virtual CPU execution engine.

This module provides the VCPU class that owns one VM's register file,
program counter and instruction sequence, and executes instructions one
at a time or in bounded slices.

A slice is the unit of scheduling: the engine runs at most slice_size
instructions and then returns control to its caller (the scheduler), the
same way a real hypervisor gets control back from a guest on a timer exit.
"""

import logging
import sys
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, TextIO

from migvm.migration.transport import TransportError
from .decoder import DecodeError, Decoder, Instruction, Opcode, OpcodeCase
from .registers import NUM_REGISTERS, RegisterFile, VMState, to_unsigned, wrap32

logger = logging.getLogger(__name__)


class VCPUError(Exception):
    """Exception raised when the vCPU is used incorrectly."""
    pass


class SliceExit(IntEnum):
    """Why run_slice() returned."""

    SLICE_EXHAUSTED = 0   # ran slice_size instructions, more remain
    END_OF_PROGRAM = 1    # PC reached the end of the instruction sequence
    MIGRATED = 2          # hit MIGRATE, state was handed off, VM halted
    DECODE_ERROR = 3      # instruction at PC could not be decoded
    TRANSPORT_ERROR = 4   # MIGRATE could not deliver the state


EXIT_NAMES = {
    SliceExit.SLICE_EXHAUSTED: "SLICE_EXHAUSTED",
    SliceExit.END_OF_PROGRAM: "END_OF_PROGRAM",
    SliceExit.MIGRATED: "MIGRATED",
    SliceExit.DECODE_ERROR: "DECODE_ERROR",
    SliceExit.TRANSPORT_ERROR: "TRANSPORT_ERROR",
}


@dataclass
class SliceResult:
    """
    Outcome of one run_slice() call.

    Attributes:
        exit: Which condition stopped the slice
        executed: Number of instructions completed in this slice
        pc_before: PC when the slice started
        pc_after: PC when the slice stopped
        error: The DecodeError or TransportError for failed slices
    """
    exit: SliceExit
    executed: int
    pc_before: int
    pc_after: int
    error: Exception | None = None

    @property
    def exit_name(self) -> str:
        return EXIT_NAMES[self.exit]

    @property
    def failed(self) -> bool:
        return self.error is not None


# Hook signatures: called with the vCPU and the instruction's target
MigrateHook = Callable[["VCPU", str], None]
SnapshotHook = Callable[["VCPU", str], None]


class VCPU:
    """
    Executes one VM's instruction sequence.

    The lifecycle is:
    1. Create the vCPU (all registers zero, PC = 0)
    2. configure() the slice size
    3. load() the instruction sequence (exactly once)
    4. Optionally restore() a migrated state or reset_registers() from
       a snapshot
    5. Call run_slice() until it stops being runnable

    Side effects of MIGRATE and SNAPSHOT are delegated to hooks so the
    engine itself never touches sockets or files. A vCPU created without
    a migrate hook is on the receiving side: MIGRATE is skipped there.

    Usage:
        vcpu = VCPU("vm1")
        vcpu.configure(slice_size=4)
        vcpu.load(["li $1,10", "li $2,20", "add $3,$1,$2"])
        result = vcpu.run_slice()
        assert vcpu.registers[3] == 30
    """

    def __init__(
        self,
        name: str = "vm",
        opcode_case: OpcodeCase = OpcodeCase.STRICT,
        output: TextIO | None = None,
        on_migrate: MigrateHook | None = None,
        on_snapshot: SnapshotHook | None = None,
    ):
        """
        Create a new vCPU.

        Args:
            name: Name used in register dumps and log messages.
            opcode_case: How this VM's decoder matches opcode tokens.
            output: Stream for DUMP_PROCESSOR_STATE output (default stdout).
            on_migrate: Called with (vcpu, address) on MIGRATE. May raise
                        TransportError.
            on_snapshot: Called with (vcpu, path) on SNAPSHOT.
        """
        self._name = name
        self._decoder = Decoder(opcode_case)
        self._output = output
        self._on_migrate = on_migrate
        self._on_snapshot = on_snapshot

        self._registers = RegisterFile()
        self._pc = 0
        self._program: tuple[str, ...] | None = None
        self._decoded: list[Instruction | None] = []
        self._slice_size: int | None = None

        self._halted = False
        self._exit_reason: SliceExit | None = None

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def configure(self, slice_size: int):
        """
        Set the maximum number of instructions per run_slice() call.

        Raises:
            VCPUError: If slice_size is not a positive integer.
        """
        if slice_size < 1:
            raise VCPUError(f"slice size must be at least 1, got {slice_size}")
        self._slice_size = slice_size

    def load(self, instructions):
        """
        Install the instruction sequence.

        Lines are stored as-is and decoded lazily when the PC reaches them,
        so a bad line only fails the run when (and if) it is executed.

        Raises:
            VCPUError: If a program was already loaded.
        """
        if self._program is not None:
            raise VCPUError(f"{self._name}: program already loaded")
        self._program = tuple(instructions)
        self._decoded = [None] * len(self._program)
        logger.debug(f"{self._name}: loaded {len(self._program)} instructions")

    # ------------------------------------------------------------------
    # State access
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self._name

    @property
    def registers(self) -> RegisterFile:
        """The live register file."""
        return self._registers

    @property
    def pc(self) -> int:
        """Index of the next instruction to execute."""
        return self._pc

    @property
    def program(self) -> tuple[str, ...]:
        if self._program is None:
            raise VCPUError(f"{self._name}: no program loaded")
        return self._program

    @property
    def slice_size(self) -> int | None:
        return self._slice_size

    @property
    def opcode_case(self) -> OpcodeCase:
        return self._decoder.opcode_case

    @property
    def halted(self) -> bool:
        """True once the vCPU migrated away or aborted on an error."""
        return self._halted

    @property
    def finished(self) -> bool:
        """True when the vCPU will never execute another instruction."""
        return self._halted or self._pc >= len(self.program)

    @property
    def runnable(self) -> bool:
        return not self.finished

    @property
    def exit_reason(self) -> SliceExit | None:
        """Exit status of the most recent slice (None before the first)."""
        return self._exit_reason

    @property
    def state(self) -> VMState:
        """An immutable copy of the registers and PC."""
        return VMState(self._registers.snapshot(), self._pc)

    def restore(self, state: VMState):
        """
        Replace registers and PC wholesale.

        Used on the receiving side of a migration. The caller decides what
        the PC should be (see VirtualMachine.resume_migrated()).

        Raises:
            VCPUError: If the PC lies past the end of the loaded program.
        """
        if self._program is not None and state.pc > len(self._program):
            raise VCPUError(
                f"{self._name}: PC {state.pc} is past the end of the "
                f"{len(self._program)}-instruction program"
            )
        self._registers.load(state.registers)
        self._pc = state.pc

    def reset_registers(self, values):
        """
        Apply a register snapshot.

        Snapshots do not carry a PC, so execution always restarts at 0.
        """
        self._registers.load(values)
        self._pc = 0

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _fetch(self) -> Instruction:
        """Decode the instruction at PC, caching the result."""
        insn = self._decoded[self._pc]
        if insn is None:
            insn = self._decoder.decode(self.program[self._pc])
            self._decoded[self._pc] = insn
        return insn

    def step(self) -> Instruction:
        """
        Execute the instruction at PC.

        The PC advances by one after every instruction except a MIGRATE on
        the sending side: there the vCPU halts with PC still pointing at the
        MIGRATE, which is the PC the destination receives.

        Returns:
            The instruction that was executed.

        Raises:
            VCPUError: If the vCPU is halted or already at the end.
            DecodeError: If the instruction at PC cannot be decoded. No
                         register is modified and the PC does not move.
            TransportError: If the migrate hook failed to send the state.
                            The vCPU is halted regardless.
        """
        if self.finished:
            raise VCPUError(f"{self._name}: vCPU is not runnable")

        insn = self._fetch()
        op = insn.opcode
        regs = self._registers

        if op is Opcode.MIGRATE and self._on_migrate is not None:
            # The source stops here whether or not the send succeeds
            self._halted = True
            logger.info(f"{self._name}: migrating to {insn.target} at PC {self._pc}")
            try:
                self._on_migrate(self, insn.target)
            except TransportError:
                self._exit_reason = SliceExit.TRANSPORT_ERROR
                raise
            self._exit_reason = SliceExit.MIGRATED
            return insn

        if op is Opcode.LI:
            regs[insn.rd] = insn.imm
        elif op is Opcode.ADD:
            regs[insn.rd] = regs[insn.rs] + regs[insn.rt]
        elif op is Opcode.ADDI:
            regs[insn.rd] = regs[insn.rs] + insn.imm
        elif op is Opcode.SUB:
            regs[insn.rd] = regs[insn.rs] - regs[insn.rt]
        elif op is Opcode.MUL:
            regs[insn.rd] = regs[insn.rs] * regs[insn.rt]
        elif op is Opcode.AND:
            regs[insn.rd] = regs[insn.rs] & regs[insn.rt]
        elif op is Opcode.OR:
            regs[insn.rd] = regs[insn.rs] | regs[insn.rt]
        elif op is Opcode.ORI:
            regs[insn.rd] = regs[insn.rs] | insn.imm
        elif op is Opcode.XOR:
            regs[insn.rd] = regs[insn.rs] ^ regs[insn.rt]
        elif op is Opcode.SLL:
            regs[insn.rd] = wrap32(regs[insn.rt] << insn.imm)
        elif op is Opcode.SRL:
            # Logical shift: operate on the unsigned bit pattern
            regs[insn.rd] = to_unsigned(regs[insn.rt]) >> insn.imm
        elif op is Opcode.DUMP:
            self.dump_state()
        elif op is Opcode.SNAPSHOT:
            if self._on_snapshot is None:
                logger.warning(f"{self._name}: no snapshot store, skipping {insn.text!r}")
            else:
                self._on_snapshot(self, insn.target)
        elif op is Opcode.MIGRATE:
            logger.warning(
                f"{self._name}: MIGRATE at PC {self._pc} ignored on the receiving side"
            )

        self._pc += 1
        return insn

    def run_slice(self) -> SliceResult:
        """
        Run until the slice is used up, the program ends, or the vCPU halts.

        Decode and transport failures do not propagate: they halt this
        vCPU and are returned in the result, so a scheduler can report them
        and carry on with its other VMs.

        Returns:
            A SliceResult describing why the slice stopped.

        Raises:
            VCPUError: If no slice size was configured or no program loaded.
        """
        if self._slice_size is None:
            raise VCPUError(f"{self._name}: slice size not configured")

        pc_before = self._pc
        executed = 0
        error: Exception | None = None

        if self._halted:
            # Nothing left to do; report the reason we stopped last time
            return SliceResult(self._exit_reason, 0, pc_before, pc_before)

        while True:
            if self._pc >= len(self.program):
                reason = SliceExit.END_OF_PROGRAM
                break
            if executed >= self._slice_size:
                reason = SliceExit.SLICE_EXHAUSTED
                break

            try:
                self.step()
            except DecodeError as e:
                logger.error(f"{self._name}: decode error at PC {self._pc}: {e}")
                self._halted = True
                reason, error = SliceExit.DECODE_ERROR, e
                break
            except TransportError as e:
                logger.error(f"{self._name}: migration failed at PC {self._pc}: {e}")
                reason, error = SliceExit.TRANSPORT_ERROR, e
                break

            executed += 1
            if self._halted:
                reason = SliceExit.MIGRATED
                break

        self._exit_reason = reason
        logger.debug(
            f"{self._name}: slice ran {executed} instructions, "
            f"PC {pc_before} -> {self._pc} ({EXIT_NAMES[reason]})"
        )
        return SliceResult(reason, executed, pc_before, self._pc, error)

    def dump_state(self, stream: TextIO | None = None):
        """
        Print all 32 registers in index order.

        Args:
            stream: Where to write (defaults to the vCPU's output stream).
        """
        out = stream or self._output or sys.stdout
        print(file=out)
        print(f"Register values for {self._name}", file=out)
        print(file=out)
        for i in range(NUM_REGISTERS):
            print(f"R{i}: {self._registers[i]}", file=out)

    def __repr__(self) -> str:
        return f"VCPU(name={self._name!r}, pc={self._pc}, halted={self._halted})"

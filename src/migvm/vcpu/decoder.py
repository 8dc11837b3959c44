"""
Instruction decoder.

Turns one line of assembly text into an Instruction. The decoder is the
only place that deals with text - the execution engine only ever sees
decoded instructions and switches on their opcode.

Instruction forms:

    li    Rd, imm          Rd <- imm
    add   Rd, Rs, Rt       Rd <- Rs + Rt
    addi  Rd, Rs, imm      Rd <- Rs + imm
    sub   Rd, Rs, Rt       Rd <- Rs - Rt
    mul   Rd, Rs, Rt       Rd <- Rs * Rt
    and   Rd, Rs, Rt       Rd <- Rs & Rt
    or    Rd, Rs, Rt       Rd <- Rs | Rt
    or    Rd, Rs, imm      Rd <- Rs | imm
    xor   Rd, Rs, Rt       Rd <- Rs ^ Rt
    sll   Rd, Rt, n        Rd <- Rt << n
    srl   Rd, Rt, n        Rd <- Rt >> n (logical)
    DUMP_PROCESSOR_STATE   report all registers
    MIGRATE a.b.c.d        send VM state to another host
    SNAPSHOT path          write registers to a file

Anything else is a DecodeError. A line is either decoded completely or
rejected - there is no such thing as a partially decoded instruction.
"""

import ipaddress
import re
from dataclasses import dataclass
from enum import Enum

from .registers import INT32_MAX, INT32_MIN, NUM_REGISTERS


class DecodeError(Exception):
    """Exception raised when an instruction line cannot be decoded."""

    def __init__(self, line: str, reason: str):
        super().__init__(f"{reason}: {line!r}")
        self.line = line
        self.reason = reason


class Opcode(Enum):
    """All instruction kinds the engine knows how to execute."""

    LI = "li"
    ADD = "add"
    ADDI = "addi"
    SUB = "sub"
    MUL = "mul"
    AND = "and"
    OR = "or"
    ORI = "ori"  # "or" with an immediate third operand
    XOR = "xor"
    SLL = "sll"
    SRL = "srl"
    DUMP = "DUMP_PROCESSOR_STATE"
    MIGRATE = "MIGRATE"
    SNAPSHOT = "SNAPSHOT"


class OpcodeCase(Enum):
    """
    How opcode tokens are matched.

    STRICT: mnemonics must be written exactly as documented above
            (arithmetic lowercase, directives uppercase).
    INSENSITIVE: the opcode token is matched ignoring case.

    Each VM picks one policy and keeps it for its whole program.
    """

    STRICT = "strict"
    INSENSITIVE = "insensitive"


@dataclass(frozen=True)
class Instruction:
    """
    A decoded instruction.

    Only the fields used by the opcode are set; the rest stay None.

    Attributes:
        opcode: The instruction kind
        rd: Destination register index
        rs: First source register index
        rt: Second source register index
        imm: Immediate value or shift amount
        target: MIGRATE address or SNAPSHOT path
        text: The original line, for error reporting
    """
    opcode: Opcode
    rd: int | None = None
    rs: int | None = None
    rt: int | None = None
    imm: int | None = None
    target: str | None = None
    text: str = ""


# ============================================================================
# Operand Patterns
# ============================================================================

_REG = r"\$(\d+)"
_IMM = r"(-?\d+)"
_SHAMT = r"(\d+)"
_SEP = r"\s*,\s*"

_THREE_REG = re.compile(_REG + _SEP + _REG + _SEP + _REG)
_TWO_REG_IMM = re.compile(_REG + _SEP + _REG + _SEP + _IMM)
_TWO_REG_SHAMT = re.compile(_REG + _SEP + _REG + _SEP + _SHAMT)
_REG_IMM = re.compile(_REG + _SEP + _IMM)
_IPV4 = re.compile(r"(\d{1,3}(?:\.\d{1,3}){3})")
_PATH = re.compile(r"(\S.*)")

# Opcode token: the leading run of letters (and underscores, so that
# DUMP_PROCESSOR_STATE is one token), then either nothing or whitespace
_OPCODE = re.compile(r"([A-Za-z_]+)(?:\s+(.*))?")

_THREE_REG_OPS = {
    "add": Opcode.ADD,
    "sub": Opcode.SUB,
    "mul": Opcode.MUL,
    "and": Opcode.AND,
    "xor": Opcode.XOR,
}

_MNEMONICS = (
    "li", "add", "addi", "sub", "mul", "and", "or", "xor", "sll", "srl",
    "DUMP_PROCESSOR_STATE", "MIGRATE", "SNAPSHOT",
)


class Decoder:
    """
    Decodes instruction lines for one VM.

    Usage:
        decoder = Decoder()                          # strict opcode case
        insn = decoder.decode("add $2, $3, $4")
        assert insn.opcode is Opcode.ADD

        loose = Decoder(OpcodeCase.INSENSITIVE)
        loose.decode("migrate 10.0.0.2")             # MIGRATE
    """

    def __init__(self, opcode_case: OpcodeCase = OpcodeCase.STRICT):
        self._opcode_case = opcode_case
        if opcode_case is OpcodeCase.INSENSITIVE:
            self._mnemonics = {m.lower(): m for m in _MNEMONICS}
        else:
            self._mnemonics = {m: m for m in _MNEMONICS}

    @property
    def opcode_case(self) -> OpcodeCase:
        return self._opcode_case

    def _canonical(self, token: str) -> str | None:
        if self._opcode_case is OpcodeCase.INSENSITIVE:
            token = token.lower()
        return self._mnemonics.get(token)

    def decode(self, line: str) -> Instruction:
        """
        Decode one instruction line.

        Args:
            line: The raw instruction text.

        Returns:
            The decoded Instruction.

        Raises:
            DecodeError: If the line is not a recognized instruction form,
                         names an unknown register, or has an out-of-range
                         immediate or shift amount.
        """
        text = line.strip()
        match = _OPCODE.fullmatch(text)
        if match is None:
            raise DecodeError(line, "malformed instruction")

        mnemonic = self._canonical(match.group(1))
        if mnemonic is None:
            raise DecodeError(line, f"unknown opcode {match.group(1)!r}")

        operands = (match.group(2) or "").strip()

        if mnemonic == "li":
            rd, imm = self._match(_REG_IMM, operands, line)
            return Instruction(
                Opcode.LI, rd=self._reg(rd, line), imm=self._imm(imm, line),
                text=text,
            )

        if mnemonic in _THREE_REG_OPS:
            rd, rs, rt = self._match(_THREE_REG, operands, line)
            return Instruction(
                _THREE_REG_OPS[mnemonic],
                rd=self._reg(rd, line), rs=self._reg(rs, line),
                rt=self._reg(rt, line), text=text,
            )

        if mnemonic == "addi":
            rd, rs, imm = self._match(_TWO_REG_IMM, operands, line)
            return Instruction(
                Opcode.ADDI, rd=self._reg(rd, line), rs=self._reg(rs, line),
                imm=self._imm(imm, line), text=text,
            )

        if mnemonic == "or":
            # Third operand is a register if it looks like one, otherwise
            # it must be a numeric literal
            reg_form = _THREE_REG.fullmatch(operands)
            if reg_form is not None:
                rd, rs, rt = reg_form.groups()
                return Instruction(
                    Opcode.OR, rd=self._reg(rd, line), rs=self._reg(rs, line),
                    rt=self._reg(rt, line), text=text,
                )
            rd, rs, imm = self._match(_TWO_REG_IMM, operands, line)
            return Instruction(
                Opcode.ORI, rd=self._reg(rd, line), rs=self._reg(rs, line),
                imm=self._imm(imm, line), text=text,
            )

        if mnemonic in ("sll", "srl"):
            rd, rt, shamt = self._match(_TWO_REG_SHAMT, operands, line)
            amount = int(shamt)
            if amount > 31:
                raise DecodeError(line, f"shift amount out of range: {amount}")
            return Instruction(
                Opcode.SLL if mnemonic == "sll" else Opcode.SRL,
                rd=self._reg(rd, line), rt=self._reg(rt, line), imm=amount,
                text=text,
            )

        if mnemonic == "DUMP_PROCESSOR_STATE":
            if operands:
                raise DecodeError(line, "DUMP_PROCESSOR_STATE takes no operands")
            return Instruction(Opcode.DUMP, text=text)

        if mnemonic == "MIGRATE":
            (address,) = self._match(_IPV4, operands, line)
            try:
                ipaddress.IPv4Address(address)
            except ValueError:
                raise DecodeError(line, f"invalid IPv4 address {address!r}") from None
            return Instruction(Opcode.MIGRATE, target=address, text=text)

        # SNAPSHOT is the only mnemonic left
        (path,) = self._match(_PATH, operands, line)
        return Instruction(Opcode.SNAPSHOT, target=path, text=text)

    @staticmethod
    def _match(pattern: re.Pattern, operands: str, line: str) -> tuple[str, ...]:
        match = pattern.fullmatch(operands)
        if match is None:
            raise DecodeError(line, "operands do not match instruction form")
        return match.groups()

    @staticmethod
    def _reg(token: str, line: str) -> int:
        index = int(token)
        # "$07" is not a register name, only "$7" is
        if index >= NUM_REGISTERS or token != str(index):
            raise DecodeError(line, f"unknown register ${token}")
        return index

    @staticmethod
    def _imm(token: str, line: str) -> int:
        value = int(token)
        if not INT32_MIN <= value <= INT32_MAX:
            raise DecodeError(line, f"immediate out of 32-bit range: {value}")
        return value


def decode(line: str, opcode_case: OpcodeCase = OpcodeCase.STRICT) -> Instruction:
    """Decode a single line with a throwaway Decoder."""
    return Decoder(opcode_case).decode(line)

"""RV32I instruction formats, field decoding and dispatch."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

_WORD_MASK = 0xFFFFFFFF

OP_LUI = 0b0110111
OP_AUIPC = 0b0010111
OP_JAL = 0b1101111
OP_JALR = 0b1100111
OP_LOAD = 0b0000011
OP_STORE = 0b0100011
OP_ARITH_IMM = 0b0010011
OP_ARITH = 0b0110011
OP_BRANCH = 0b1100011
ECALL = 0x73
EBREAK = 0x100073


def mask(bits: int) -> int:
    """Return a mask of the low ``bits`` bits."""
    return (1 << bits) - 1


def field_mask(low: int, high: int) -> int:
    """Return a mask covering bits ``low`` through ``high`` inclusive."""
    return mask(high - low + 1) << low


def to_signed(value: int) -> int:
    """Interpret a 32-bit word as a two's-complement integer."""
    value &= _WORD_MASK
    return value - (1 << 32) if value & 0x80000000 else value


def sign_from(value: int, pos: int) -> int:
    """Sign-extend ``value`` from bit ``pos``, giving a 32-bit word."""
    shift = 31 - pos
    shifted = (value << shift) & _WORD_MASK
    return (to_signed(shifted) >> shift) & _WORD_MASK


class DecodeError(ValueError):
    """Raised when a word is not a supported instruction."""


class Visitor(ABC):
    """Receives decoded instructions, one method per format."""

    @abstractmethod
    def visit_u(self, ins: "UType"):
        """Handle a U-type instruction."""

    @abstractmethod
    def visit_j(self, ins: "JType"):
        """Handle a J-type instruction."""

    @abstractmethod
    def visit_i(self, ins: "IType"):
        """Handle an I-type instruction."""

    @abstractmethod
    def visit_b(self, ins: "BType"):
        """Handle a B-type instruction."""

    @abstractmethod
    def visit_s(self, ins: "SType"):
        """Handle an S-type instruction."""

    @abstractmethod
    def visit_r(self, ins: "RType"):
        """Handle an R-type instruction."""

    def visit_ecall(self, ins: "Ecall"):
        """Handle ecall/ebreak; by default it has no effect and reports its kind."""
        return ins.kind


def _rd(cmd: int) -> int:
    return cmd >> 7 & mask(5)


def _rs1(cmd: int) -> int:
    return cmd >> 15 & mask(5)


def _rs2(cmd: int) -> int:
    return cmd >> 20 & mask(5)


def _fn3(cmd: int) -> int:
    return cmd >> 12 & mask(3)


@dataclass
class UType:
    opcode: int
    rd: int
    imm: int

    @classmethod
    def parse(cls, cmd: int) -> "UType":
        cmd &= _WORD_MASK
        return cls(cmd & mask(7), _rd(cmd), cmd & ~mask(12) & _WORD_MASK)

    def accept(self, visitor: Visitor):
        return visitor.visit_u(self)


@dataclass
class JType:
    opcode: int
    rd: int
    imm: int

    @classmethod
    def parse(cls, cmd: int) -> "JType":
        cmd &= _WORD_MASK
        imm = (
            ((cmd >> 31) & 0x1) << 20
            | ((cmd >> 21) & 0x3FF) << 1
            | ((cmd >> 20) & 0x1) << 11
            | ((cmd >> 12) & 0xFF) << 12
        )
        return cls(cmd & mask(7), _rd(cmd), sign_from(imm, 20))

    def accept(self, visitor: Visitor):
        return visitor.visit_j(self)


@dataclass
class IType:
    opcode: int
    fn3: int
    rd: int
    rs1: int
    imm: int

    @classmethod
    def parse(cls, cmd: int) -> "IType":
        cmd &= _WORD_MASK
        return cls(cmd & mask(7), _fn3(cmd), _rd(cmd), _rs1(cmd), cmd >> 20)

    def sign(self) -> None:
        """Sign-extend the 12-bit immediate in place."""
        self.imm = sign_from(self.imm, 11)

    def accept(self, visitor: Visitor):
        return visitor.visit_i(self)


@dataclass
class BType:
    opcode: int
    fn3: int
    rd: int
    rs1: int
    rs2: int
    imm: int

    @classmethod
    def parse(cls, cmd: int) -> "BType":
        cmd &= _WORD_MASK
        imm = (
            ((cmd >> 31) & 0x1) << 12
            | ((cmd >> 7) & 0x1E)
            | ((cmd >> 25) & 0x3F) << 5
            | ((cmd >> 7) & 0x1) << 11
        )
        return cls(cmd & mask(7), _fn3(cmd), _rd(cmd), _rs1(cmd), _rs2(cmd), imm)

    def sign(self) -> None:
        """Sign-extend the 13-bit branch offset in place."""
        self.imm = sign_from(self.imm, 12)

    def accept(self, visitor: Visitor):
        return visitor.visit_b(self)


@dataclass
class SType:
    opcode: int
    fn3: int
    rd: int
    rs1: int
    rs2: int
    imm: int

    @classmethod
    def parse(cls, cmd: int) -> "SType":
        cmd &= _WORD_MASK
        imm = (cmd >> 7 & field_mask(0, 4)) | (cmd >> 20 & field_mask(5, 11))
        return cls(cmd & mask(7), _fn3(cmd), _rd(cmd), _rs1(cmd), _rs2(cmd), imm)

    def sign(self) -> None:
        """Sign-extend the 12-bit store offset in place."""
        self.imm = sign_from(self.imm, 11)

    def accept(self, visitor: Visitor):
        return visitor.visit_s(self)


@dataclass
class RType:
    opcode: int
    fn3: int
    fn7: int
    rd: int
    rs1: int
    rs2: int

    @classmethod
    def parse(cls, cmd: int) -> "RType":
        cmd &= _WORD_MASK
        return cls(
            cmd & mask(7),
            _fn3(cmd),
            cmd >> 25 & mask(7),
            _rd(cmd),
            _rs1(cmd),
            _rs2(cmd),
        )

    def accept(self, visitor: Visitor):
        return visitor.visit_r(self)


@dataclass
class Ecall:
    kind: int

    @classmethod
    def parse(cls, cmd: int) -> "Ecall":
        cmd &= _WORD_MASK
        if cmd == ECALL:
            return cls(0)
        if cmd == EBREAK:
            return cls(1)
        return cls(-1)

    def accept(self, visitor: Visitor):
        return visitor.visit_ecall(self)


_FORMATS = {
    OP_LUI: UType,
    OP_AUIPC: UType,
    OP_JAL: JType,
    OP_JALR: IType,
    OP_LOAD: IType,
    OP_ARITH_IMM: IType,
    OP_BRANCH: BType,
    OP_STORE: SType,
    OP_ARITH: RType,
}


def dispatch(cmd: int):
    """Decode a 32-bit word into the matching instruction format."""
    cmd &= _WORD_MASK
    opcode = cmd & mask(7)
    fmt = _FORMATS.get(opcode)
    if fmt is not None:
        return fmt.parse(cmd)
    if cmd in (ECALL, EBREAK):
        return Ecall.parse(cmd)
    raise DecodeError(f"Unparseable opcode {opcode} cmd {cmd:X}")
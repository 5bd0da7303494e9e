"""A simple in-order interpreter that executes one instruction per step."""

from __future__ import annotations

import sys
from typing import TextIO

from .instructions import (
    OP_ARITH,
    OP_ARITH_IMM,
    OP_AUIPC,
    OP_BRANCH,
    OP_JAL,
    OP_JALR,
    OP_LOAD,
    OP_LUI,
    OP_STORE,
    BType,
    DecodeError,
    Ecall,
    IType,
    JType,
    RType,
    SType,
    UType,
    Visitor,
    dispatch,
    mask,
    sign_from,
    to_signed,
)
from .log import Logger
from .memory import Memory
from .registers import REGISTER_COUNT, RegisterFile

_WORD = 0xFFFFFFFF
END_OF_PROGRAM = 0x0FF00513
OUTPUT_ADDRESS = 0xA0000000

_log = Logger()


class ToySimulator(Visitor):
    """Runs a program directly against registers and memory."""

    def __init__(
        self, memory: Memory, trace_steps: int = 50, out: TextIO | None = None
    ) -> None:
        self.memory = memory
        self.trace_steps = trace_steps
        self.out = out
        self.regs = RegisterFile()
        self.pc = 0
        self.npc = 0
        self.steps = 0

    def _emit(self, text: str) -> None:
        stream = self.out if self.out is not None else sys.stdout
        stream.write(text)

    def visit_u(self, ins: UType) -> None:
        if ins.opcode == OP_LUI:
            self.regs[ins.rd] = ins.imm
        elif ins.opcode == OP_AUIPC:
            self.regs[ins.rd] = self.pc + ins.imm
        else:
            raise NotImplementedError(f"Unrecognized U code {ins.opcode}")

    def visit_j(self, ins: JType) -> None:
        if ins.opcode != OP_JAL:
            raise NotImplementedError(f"Unrecognized J code {ins.opcode}")
        self.regs[ins.rd] = self.pc + 4
        self.npc = (self.pc + ins.imm) & _WORD

    def _load(self, ins: IType) -> int:
        ins.sign()
        addr = (self.regs[ins.rs1] + ins.imm) & _WORD
        mem = self.memory
        if ins.fn3 == 0b000:
            return sign_from(mem[addr], 7)
        if ins.fn3 == 0b001:
            return sign_from(mem[addr] | mem[addr + 1] << 8, 15)
        if ins.fn3 == 0b010:
            return mem.read_word(addr)
        if ins.fn3 == 0b100:
            return mem[addr]
        if ins.fn3 == 0b101:
            return mem[addr] | mem[addr + 1] << 8
        raise NotImplementedError(f"Unrecognized I code {ins.opcode} fn3 {ins.fn3}")

    def _shift_amount(self, ins: IType) -> int:
        if ins.imm >> 5 & 1:
            raise ValueError(
                f"Cannot shift more than 31 pos, opcode = {ins.opcode}"
            )
        return ins.imm & mask(6)

    def _arith_imm(self, ins: IType) -> int:
        src = self.regs[ins.rs1]
        if ins.fn3 == 0b000:
            ins.sign()
            return src + ins.imm
        if ins.fn3 == 0b101 and ins.imm >> 6 == 0b000000:
            return src >> self._shift_amount(ins)
        if ins.fn3 == 0b101 and ins.imm >> 6 == 0b010000:
            return to_signed(src) >> self._shift_amount(ins)
        if ins.fn3 == 0b001 and ins.imm >> 6 == 0b000000:
            return src << self._shift_amount(ins)
        if ins.fn3 == 0b100:
            ins.sign()
            return src ^ ins.imm
        if ins.fn3 == 0b111:
            ins.sign()
            return src & ins.imm
        if ins.fn3 == 0b010:
            ins.sign()
            # Both sides are compared as unsigned words.
            return 1 if src < ins.imm else 0
        raise NotImplementedError(f"Unrecognized I code {ins.opcode} fn3 {ins.fn3}")

    def visit_i(self, ins: IType) -> None:
        if ins.opcode == OP_JALR and ins.fn3 == 0b000:
            ins.sign()
            link = self.pc + 4
            self.npc = (self.regs[ins.rs1] + ins.imm) & ~1 & _WORD
            self.regs[ins.rd] = link
        elif ins.opcode == OP_LOAD:
            self.regs[ins.rd] = self._load(ins)
        elif ins.opcode == OP_ARITH_IMM:
            self.regs[ins.rd] = self._arith_imm(ins)
        else:
            raise NotImplementedError(
                f"Unrecognized I code {ins.opcode} fn3 {ins.fn3}"
            )

    def visit_b(self, ins: BType) -> None:
        if ins.opcode != OP_BRANCH:
            raise NotImplementedError(f"Unrecognized B code {ins.opcode}")
        a, b = self.regs[ins.rs1], self.regs[ins.rs2]
        comparisons = {
            0b000: lambda: a == b,
            0b001: lambda: a != b,
            0b100: lambda: to_signed(a) < to_signed(b),
            0b101: lambda: to_signed(a) >= to_signed(b),
            0b110: lambda: a < b,
            0b111: lambda: a >= b,
        }
        compare = comparisons.get(ins.fn3)
        if compare is None:
            raise NotImplementedError(
                f"Unrecognized B code {ins.opcode} fn3 {ins.fn3}"
            )
        ins.sign()
        if compare():
            self.npc = (self.pc + ins.imm) & _WORD

    def visit_s(self, ins: SType) -> None:
        if ins.opcode != OP_STORE:
            raise NotImplementedError(f"Unrecognized S code {ins.opcode}")
        if ins.fn3 not in (0b000, 0b001, 0b010):
            raise NotImplementedError(
                f"Unrecognized S code {ins.opcode} fn3 {ins.fn3}"
            )
        ins.sign()
        addr = (self.regs[ins.rs1] + ins.imm) & _WORD
        value = self.regs[ins.rs2]
        for offset in range(1 << ins.fn3):
            self.memory[addr + offset] = value >> (8 * offset) & mask(8)
        if ins.fn3 == 0b010 and addr == OUTPUT_ADDRESS:
            _log.debug(f"Output dec={value} hex={value:X}")

    def visit_r(self, ins: RType) -> None:
        if ins.opcode != OP_ARITH:
            raise NotImplementedError(f"Unrecognized R code {ins.opcode}")
        a, b = self.regs[ins.rs1], self.regs[ins.rs2]
        if ins.fn3 == 0b100:
            result = a ^ b
        elif ins.fn3 == 0b001 and ins.fn7 == 0b0000000:
            result = a << (b & mask(5))
        elif ins.fn3 == 0b000 and ins.fn7 == 0b0000000:
            result = a + b
        elif ins.fn3 == 0b000 and ins.fn7 == 0b0100000:
            result = a - b
        elif ins.fn3 == 0b110 and ins.fn7 == 0b0000000:
            result = a | b
        else:
            raise NotImplementedError(
                f"Unrecognized R code {ins.opcode} fn3 {ins.fn3} fn7 {ins.fn7}"
            )
        self.regs[ins.rd] = result

    def visit_ecall(self, ins: Ecall) -> None:
        return None

    def _trace(self) -> None:
        parts = [
            f"(counter {self.steps}) ",
            f"(PC {self.pc:X}) ",
            f"(next-PC {self.npc:X}) ",
        ]
        parts.extend(
            f"(x{i} {to_signed(self.regs[i])}) "
            for i in range(REGISTER_COUNT)
            if self.regs[i]
        )
        self._emit("".join(parts) + "\n")

    def run(self) -> int:
        """Execute until the end marker; print and return the low byte of a0."""
        while True:
            cmd = self.memory.read_word(self.pc)
            self.steps += 1
            if cmd == END_OF_PROGRAM:
                _log.info("Returning")
                _log.info(f"Run for {self.steps} cycles")
                result = self.regs[10] & 0xFF
                self._emit(f"{result}\n")
                return result
            opcode = cmd & mask(7)
            if opcode & 0x3 != 0x3:
                raise DecodeError(f"Bad opcode {opcode} with cmd {cmd}")
            ins = dispatch(cmd)
            if isinstance(ins, Ecall):
                raise DecodeError(f"Unparseable opcode {opcode}")
            self.npc = (self.pc + 4) & _WORD
            ins.accept(self)
            if self.steps <= self.trace_steps:
                self._trace()
            self.pc = self.npc


def run_toy(memory: Memory) -> int:
    """Run ``memory`` on the in-order interpreter and return the exit byte."""
    return ToySimulator(memory).run()
"""Execution core of the out-of-order pipeline: stations, ALUs, load/store and commit."""

from __future__ import annotations

import sys
from typing import Optional, TextIO

from .instructions import (
    OP_ARITH,
    OP_ARITH_IMM,
    OP_AUIPC,
    OP_BRANCH,
    OP_LOAD,
    OP_STORE,
    sign_from,
    to_signed,
)
from .log import Logger
from .memory import Memory
from .registers import RenameTable
from .units import (
    ALU,
    LSB_DELAY,
    ALUOp,
    ALUUnit,
    LoadStoreBuffer,
    LSBEntry,
    LSBState,
    LSBType,
    NaivePredictor,
    Predictor,
    ReorderBuffer,
    ReservationStations,
    RoBEntry,
    RoBState,
    RoBType,
    RSEntry,
    RSState,
)

_WORD = 0xFFFFFFFF
_FREE = ReservationStations.FREE_ID
_INVALID = ReservationStations.INVALID_ID

_IMM_OPS = {
    0b000: ALUOp.ADD,
    0b001: ALUOp.SHIFT_LEFT,
    0b111: ALUOp.LAND,
    0b110: ALUOp.LOR,
    0b100: ALUOp.LXOR,
}

_REG_OPS = {
    0b100: ALUOp.XOR,
    0b110: ALUOp.LOR,
    0b111: ALUOp.LAND,
}

_BRANCHES = {
    0b000: lambda a, b: a == b,
    0b001: lambda a, b: a != b,
    0b100: lambda a, b: to_signed(a) < to_signed(b),
    0b101: lambda a, b: to_signed(a) >= to_signed(b),
    0b110: lambda a, b: a < b,
    0b111: lambda a, b: a >= b,
}


class Core:
    """Holds the pipeline units and runs every stage except instruction issue."""

    def __init__(self, memory: Memory, predictor: Optional[Predictor] = None) -> None:
        self.memory = memory
        self.predictor = predictor if predictor is not None else NaivePredictor()
        self.rs = ReservationStations()
        self.rob = ReorderBuffer()
        self.rf = RenameTable()
        self.alu = ALU()
        self.lsb = LoadStoreBuffer()
        self.pc = 0
        self.npc = 0
        self.fnpc = 0
        self.clk = 0
        self.finish = False
        self.flush = False
        self.valid_rs: Optional[int] = None
        self.exit_code: Optional[int] = None
        self.out: Optional[TextIO] = None
        self.log = Logger()

    def _emit(self, text: str) -> None:
        stream = self.out if self.out is not None else sys.stdout
        stream.write(text)

    def update_rob(self, rob_id: int, value: int) -> None:
        """Finish a register-writing entry and forward its value to waiting stations."""
        latch = self.rob.now.slots[rob_id]
        if latch.value.type is not RoBType.REG:
            raise ValueError(f"reorder-buffer entry {rob_id} does not write a register")
        value &= _WORD
        self.log.debug(f"RoBUpd: rob {rob_id} reg {latch.value.dest} val {value}")
        latch.value.value = value
        latch.value.state = RoBState.FINISH
        latch.mark()

        for now_latch, pre_latch in zip(self.rs.now, self.rs.pre):
            rsi, rso = now_latch.value, pre_latch.value
            if not (rso.busy and rso.state is RSState.PREPARE):
                continue
            if rso.qj == rob_id:
                rsi.qj, rsi.vj = _FREE, value
            if rso.qk == rob_id:
                rsi.qk, rsi.vk = _FREE, value
            if rsi.qj == _FREE and rsi.qk == _FREE:
                rsi.state = RSState.READY
            now_latch.mark()

    def exec_alu(self, unit: ALUUnit) -> None:
        """Compute one ALU operation and write the result to its entry."""
        a, b = unit.a & _WORD, unit.b & _WORD
        shift = b & 63
        if unit.op is ALUOp.ADD:
            result = a + b
        elif unit.op in (ALUOp.XOR, ALUOp.LXOR):
            result = a ^ b
        elif unit.op is ALUOp.SHIFT_LEFT:
            result = a << shift
        elif unit.op is ALUOp.SHIFT_RIGHT:
            result = a >> shift
        elif unit.op is ALUOp.AR_SHIFT_RIGHT:
            result = to_signed(a) >> shift
        elif unit.op is ALUOp.LAND:
            result = a & b
        elif unit.op is ALUOp.LOR:
            result = a | b
        else:
            raise ValueError(f"ALU: unrecognized type {unit.op}")
        self.update_rob(unit.rob_id, result & _WORD)

    def run_alu(self) -> None:
        """Execute every unit that was issued last cycle."""
        for pre_latch, now_latch in zip(self.alu.pre, self.alu.now):
            unit = pre_latch.value
            if unit.busy:
                now_latch.value.busy = False
                now_latch.mark()
                self.exec_alu(unit)

    def _claim_alu(self, start: int) -> Optional[int]:
        alu_id = self.alu.valid_id(start)
        if alu_id is None:
            self.log.error("No valid ALU")
        return alu_id

    def _issue(self, alu_id: int, entry: RSEntry, rs_id: int, op: ALUOp, b: int) -> None:
        self.alu.now[alu_id].set(ALUUnit(True, entry.rob_id, op, entry.vj, b & _WORD))
        entry.busy = False
        self.rs.now[rs_id].set(entry)

    def exec_rs(self, entry: RSEntry, rs_id: int, start: int) -> int:
        """Start a ready station; return the first ALU index still free to claim."""
        if entry.opcode == OP_AUIPC:
            alu_id = self._claim_alu(start)
            if alu_id is None:
                return start
            self.log.debug(
                f"Issuing ALU::ADD {entry.vj:x} {entry.vk:x} by alu {alu_id} "
                f"updating rob {entry.rob_id}"
            )
            entry.state = RSState.EXECUTING
            self._issue(alu_id, entry, rs_id, ALUOp.ADD, entry.vk)
            return alu_id + 1

        if entry.opcode == OP_LOAD:
            slot = self.lsb.now.slots[entry.rob_id]
            slot.value.addr = (entry.vj + entry.vk) & _WORD
            slot.value.state = LSBState.READY
            slot.mark()
            self.lsb.counter = LSB_DELAY
            entry.state = RSState.EXECUTING
            entry.busy = False
            self.rs.now[rs_id].set(entry)
            return start

        if entry.opcode == OP_STORE:
            entry.busy = False
            self.rs.now[rs_id].set(entry)
            slot = self.lsb.now.slots[entry.rob_id]
            slot.value.addr = (entry.vj + entry.a) & _WORD
            slot.value.store_value = entry.vk
            slot.value.state = LSBState.READY
            slot.mark()
            return start

        if entry.opcode == OP_ARITH_IMM:
            alu_id = self._claim_alu(start)
            if alu_id is None:
                return start
            op = _IMM_OPS.get(entry.fn3)
            if entry.fn3 == 0b101 and entry.vk >> 6 == 0b000000:
                op = ALUOp.SHIFT_RIGHT
            elif entry.fn3 == 0b101 and entry.vk >> 6 == 0b010000:
                op = ALUOp.AR_SHIFT_RIGHT
            if op is None:
                raise NotImplementedError(
                    f"immediate operation fn7 {entry.fn7} fn3 {entry.fn3}"
                )
            self._issue(alu_id, entry, rs_id, op, entry.vk)
            return alu_id + 1

        if entry.opcode == OP_ARITH:
            alu_id = self._claim_alu(start)
            if alu_id is None:
                return start
            if entry.fn3 == 0b000:
                b = entry.vk if entry.fn7 == 0b0000000 else -entry.vk
                self._issue(alu_id, entry, rs_id, ALUOp.ADD, b)
            elif entry.fn3 in _REG_OPS:
                self._issue(alu_id, entry, rs_id, _REG_OPS[entry.fn3], entry.vk)
            else:
                raise NotImplementedError(f"register operation fn3 {entry.fn3}")
            return alu_id + 1

        if entry.opcode == OP_BRANCH:
            compare = _BRANCHES.get(entry.fn3)
            if compare is None:
                raise NotImplementedError(f"branch fn3 {entry.fn3}")
            jump = compare(entry.vj & _WORD, entry.vk & _WORD)
            latch = self.rob.now.slots[entry.rob_id]
            latch.value.state = RoBState.FINISH
            latch.value.mem_dest = int(jump)
            latch.mark()
            entry.busy = False
            self.rs.now[rs_id].set(entry)
            return start

        raise NotImplementedError(f"opcode {entry.opcode}")

    def run_rs(self) -> None:
        """Collect finished operands, then start every station that was ready."""
        for now_latch, pre_latch in zip(self.rs.now, self.rs.pre):
            rsi, rso = now_latch.value, pre_latch.value
            if not (rso.busy and rso.state is RSState.PREPARE):
                continue
            if rso.qj not in (_FREE, _INVALID):
                source = self.rob.pre.slots[rso.qj].value
                if source.state is RoBState.FINISH:
                    rsi.vj, rsi.qj = source.value, _FREE
            if rso.qk not in (_FREE, _INVALID):
                source = self.rob.pre.slots[rso.qk].value
                if source.state is RoBState.FINISH:
                    rsi.vk, rsi.qk = source.value, _FREE
            if rsi.qj == _FREE and rsi.qk == _FREE:
                rsi.state = RSState.READY
            now_latch.mark()

        start = 0
        for rs_id, pre_latch in enumerate(self.rs.pre):
            entry = pre_latch.value
            if entry.busy and entry.state is RSState.READY:
                start = self.exec_rs(entry, rs_id, start)

    def _read(self, entry: LSBEntry) -> int:
        mem, addr = self.memory, entry.addr
        if entry.store_length == 0:
            value = mem[addr]
            return sign_from(value, 7) if entry.sign else value
        if entry.store_length == 1:
            value = mem[addr] | mem[addr + 1] << 8
            return sign_from(value, 15) if entry.sign else value
        if entry.store_length == 2:
            return mem.read_word(addr)
        raise ValueError(f"unexpected access length {entry.store_length}")

    def run_lsb(self) -> None:
        """Serve the load/store at the head of the queue."""
        if self.lsb.pre.is_empty():
            return
        head = self.lsb.pre.front().value
        if head.state is LSBState.READY:
            front = self.lsb.now.front()
            front.value = RSEntry() if False else LSBEntry(**vars(head))
            entry = front.value
            if entry.type is LSBType.LOAD:
                self.update_rob(entry.rob_id, self._read(entry))
                self.lsb.now.advance_head()
            elif entry.type is LSBType.STORE:
                rob_latch = self.rob.now.slots[entry.rob_id]
                rob_latch.value.state = RoBState.FINISH
                rob_latch.mark()
                entry.state = LSBState.EXECUTING
                front.mark()
        elif head.state is LSBState.DONE:
            self.lsb.now.advance_head()

    def run_rob(self) -> None:
        """Commit the entry at the head of the reorder buffer if it is finished."""
        if self.rob.pre.is_empty():
            return
        entry = self.rob.pre.front().value
        if entry.state is not RoBState.FINISH:
            self.log.debug(f"Stuck at [{self.rob.pre.head}, {self.rob.pre.tail})")
            return
        rob_id = self.rob.pre.head
        self.log.debug(f"Commiting PC {entry.pc:X}")

        if entry.type is RoBType.REG:
            self.rob.now.advance_head()
            reg = self.rf.pre[entry.dest].value
            if reg.depend_rob == rob_id and reg.busy:
                self.log.debug(self.log.red(f"Set Reg[{entry.dest}] as {entry.value:X}"))
                self.rf.update_value(entry.dest, entry.value)
            else:
                # Keep the value even when nothing waits on it, for recovery after a flush.
                self.rf.modify_value_only(entry.dest, entry.value)
        elif entry.type is RoBType.MEM:
            lsb_id = entry.value
            store = self.lsb.pre.slots[lsb_id].value
            if store.state is not LSBState.EXECUTING:
                return
            self.rob.now.advance_head()
            for offset in range(1 << min(store.store_length, 2)):
                self.memory[store.addr + offset] = store.store_value >> (8 * offset)
            slot = self.lsb.now.slots[lsb_id]
            slot.value.state = LSBState.DONE
            slot.mark()
        elif entry.type is RoBType.END:
            self.finish = True
            self.exit_code = self.rf.now[10].value.value & 0xFF
            self._emit(f"{self.exit_code}\n")
        elif entry.type is RoBType.BRANCH:
            self.rob.now.advance_head()
            if entry.mem_dest == entry.dest:
                self.log.debug(f"Prediction success! (goto {entry.pc:X} if fail)")
                return
            self.log.debug(f"Prediction fail! goto {entry.pc:X}")
            self.fnpc = entry.pc
            self.flush = True

    def flush_state(self) -> None:
        """Discard all speculative work and restart fetching at the recovery address."""
        for latch in self.rs.now:
            latch.set(RSEntry())
        self.rob.now.head = self.rob.now.tail = 0
        for latch in self.rob.now.slots:
            latch.set(RoBEntry())
        for latch in self.alu.now:
            latch.set(ALUUnit())
        self.lsb.now.head = self.lsb.now.tail = 0
        for latch in self.lsb.now.slots:
            latch.set(LSBEntry())
        for latch in self.rf.now:
            latch.value.busy = False
            latch.mark()
        self.flush = False
        self.pc = self.fnpc

    def commit_latches(self) -> None:
        """Move this cycle's changed state into the previous-cycle copies."""
        for now, pre in zip(self.rs.now, self.rs.pre):
            now.give(pre)
        for queue in (self.rob, self.lsb):
            queue.pre.tail = queue.now.tail
            queue.pre.head = queue.now.head
            for now, pre in zip(queue.now.slots, queue.pre.slots):
                now.give(pre)
        for now, pre in zip(self.rf.now, self.rf.pre):
            now.give(pre)
        for now, pre in zip(self.alu.now, self.alu.pre):
            now.give(pre)
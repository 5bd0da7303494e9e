"""The out-of-order CPU: instruction issue on top of the pipeline core."""

from __future__ import annotations

from typing import Optional, TextIO

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
    to_signed,
)
from .memory import Memory
from .pipeline import Core
from .units import (
    LSBEntry,
    LSBState,
    LSBType,
    PredictionContext,
    Predictor,
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
END_OF_PROGRAM = 0x0FF00513


class CPU(Core, Visitor):
    """Fetches, decodes and issues instructions into the pipeline, one cycle per step."""

    def __init__(
        self,
        memory: Memory,
        predictor: Optional[Predictor] = None,
        out: Optional[TextIO] = None,
    ) -> None:
        super().__init__(memory, predictor)
        self.out = out

    def run(self) -> Optional[int]:
        """Step until the end marker commits; return the exit byte."""
        while not self.finish:
            self.step()
        return self.exit_code

    def step(self) -> None:
        """Advance the machine by one clock cycle."""
        self.clk += 1
        self.npc = (self.pc + 4) & _WORD
        self.run_rs()
        self.run_rob()
        self.run_decoder()
        self.run_alu()
        self.run_lsb()
        self.pc = self.npc
        if self.flush:
            self.flush_state()
        self.commit_latches()

    def _stall(self) -> None:
        self.npc = self.pc

    def _allocate_rob(self, entry: RoBEntry) -> int:
        rob_id = self.rob.now.advance_tail()
        self.rob.now.slots[rob_id].set(entry)
        return rob_id

    def run_decoder(self) -> None:
        """Fetch the word at the program counter and issue it if there is room."""
        self.valid_rs = self.rs.empty_slot()
        if self.valid_rs is None or self.rob.pre.is_full():
            self._stall()
            self.log.error("No valid RS" if self.valid_rs is None else "RoB full")
            return
        cmd = self.memory.read_word(self.pc)
        if cmd == END_OF_PROGRAM:
            self._allocate_rob(
                RoBEntry(
                    type=RoBType.END,
                    dest=0,
                    mem_dest=_WORD,
                    store_length=0xFF,
                    value=_WORD,
                    pc=self.pc,
                    state=RoBState.FINISH,
                )
            )
            self._stall()
            return
        try:
            ins = dispatch(cmd)
        except DecodeError as exc:
            self.log.error(f"Fail to dispatch cmd {cmd:X}: {exc}")
            self._stall()
            return
        ins.accept(self)

    def fill_rs_j(self, rs_id: int, reg: int) -> None:
        """Give station ``rs_id`` its first operand or the entry it waits for."""
        entry = self.rs.now[rs_id].value
        source = self.rf.pre[reg].value
        if source.busy:
            entry.qj = source.depend_rob
        else:
            entry.qj = _FREE
            entry.vj = source.value
        self.rs.now[rs_id].mark()

    def fill_rs_k(self, rs_id: int, reg: int) -> None:
        """Give station ``rs_id`` its second operand or the entry it waits for."""
        entry = self.rs.now[rs_id].value
        source = self.rf.pre[reg].value
        if source.busy:
            entry.qk = source.depend_rob
        else:
            entry.qk = _FREE
            entry.vk = source.value
        self.rs.now[rs_id].mark()

    def visit_u(self, ins: UType) -> None:
        if self.rob.pre.is_full():
            self._stall()
            return
        if ins.opcode == OP_LUI:
            rob_id = self._allocate_rob(
                RoBEntry(RoBType.REG, ins.rd, _WORD, 0xFF, ins.imm, self.pc, RoBState.FINISH)
            )
            self.rf.rename(ins.rd, rob_id)
        elif ins.opcode == OP_AUIPC:
            rob_id = self._allocate_rob(
                RoBEntry(RoBType.REG, ins.rd, _WORD, 0xFF, 0, self.pc, RoBState.EXECUTING)
            )
            self.rs.now[self.valid_rs].set(
                RSEntry(
                    busy=True,
                    opcode=ins.opcode,
                    fn3=-1,
                    fn7=-1,
                    rob_id=rob_id,
                    result=0,
                    vj=self.pc,
                    vk=ins.imm,
                    qj=_FREE,
                    qk=_FREE,
                    a=0,
                    state=RSState.READY,
                )
            )
            self.rf.rename(ins.rd, rob_id)
        else:
            raise NotImplementedError(f"Unrecognized U code {ins.opcode}")

    def visit_j(self, ins: JType) -> None:
        if ins.opcode != OP_JAL:
            raise NotImplementedError(f"Unrecognized J code {ins.opcode}")
        if self.rob.pre.is_full():
            self._stall()
            return
        rob_id = self._allocate_rob(
            RoBEntry(
                RoBType.REG, ins.rd, _WORD, 0xFF, (self.pc + 4) & _WORD, self.pc, RoBState.FINISH
            )
        )
        self.rf.rename(ins.rd, rob_id)
        self.npc = (self.pc + ins.imm) & _WORD

    def _issue_jalr(self, ins: IType) -> None:
        base = self.rf.pre[ins.rs1].value
        if base.busy:
            self._stall()
            return
        ins.sign()
        self.npc = (base.value + ins.imm) & ~1 & _WORD
        rob_id = self._allocate_rob(
            RoBEntry(
                RoBType.REG, ins.rd, _WORD, 0xFF, (self.pc + 4) & _WORD, self.pc, RoBState.FINISH
            )
        )
        self.rf.rename(ins.rd, rob_id)

    def _issue_load(self, ins: IType) -> None:
        if self.lsb.pre.is_full():
            self._stall()
            return
        lsb_id = self.lsb.now.advance_tail()
        ins.sign()
        rob_id = self._allocate_rob(
            RoBEntry(RoBType.REG, ins.rd, _WORD, 0xFF, 0, self.pc, RoBState.EXECUTING)
        )
        self.rs.now[self.valid_rs].set(
            RSEntry(
                busy=True,
                opcode=ins.opcode,
                fn3=ins.fn3,
                fn7=-1,
                rob_id=lsb_id,
                result=0,
                vj=0,
                vk=ins.imm,
                qj=_INVALID,
                qk=_FREE,
                a=0,
                state=RSState.PREPARE,
            )
        )
        entry = self.rs.now[self.valid_rs].value
        base = self.rf.pre[ins.rs1].value
        if base.busy:
            entry.qj = base.depend_rob
            self.log.debug(f"PC {self.pc:X} Waiting for {base.depend_rob}")
        else:
            entry.state = RSState.READY
            entry.qj = _FREE
            entry.vj = base.value
        self.lsb.now.slots[lsb_id].set(
            LSBEntry(
                type=LSBType.LOAD,
                busy=True,
                rob_id=rob_id,
                addr=_WORD,
                store_length=ins.fn3 & 0b011,
                sign=not ins.fn3 & 0b100,
                state=LSBState.PREPARE,
                store_value=_WORD,
            )
        )
        self.rf.rename(ins.rd, rob_id)

    def _issue_arith_imm(self, ins: IType) -> None:
        ins.sign()
        rob_id = self._allocate_rob(
            RoBEntry(RoBType.REG, ins.rd, _WORD, 0xFF, _WORD, self.pc, RoBState.EXECUTING)
        )
        self.rs.now[self.valid_rs].set(
            RSEntry(
                busy=True,
                opcode=ins.opcode,
                fn3=ins.fn3,
                fn7=-1,
                rob_id=rob_id,
                result=_WORD,
                vj=_WORD,
                vk=ins.imm,
                qj=_INVALID,
                qk=_FREE,
                a=_WORD,
                state=RSState.PREPARE,
            )
        )
        self.fill_rs_j(self.valid_rs, ins.rs1)
        self.rf.rename(ins.rd, rob_id)

    def visit_i(self, ins: IType) -> None:
        if self.rob.pre.is_full():
            self._stall()
            return
        if ins.opcode == OP_JALR and ins.fn3 == 0b000:
            self._issue_jalr(ins)
        elif ins.opcode == OP_LOAD:
            self._issue_load(ins)
        elif ins.opcode == OP_ARITH_IMM:
            self._issue_arith_imm(ins)
        else:
            raise NotImplementedError(f"Unrecognized I code {ins.opcode} fn3 {ins.fn3}")

    def visit_s(self, ins: SType) -> None:
        if ins.opcode != OP_STORE:
            raise NotImplementedError(f"Unrecognized S code {ins.opcode}")
        if ins.fn3 > 2:
            raise NotImplementedError(f"Unsupported store width fn3 {ins.fn3}")
        if self.lsb.pre.is_full():
            self._stall()
            return
        lsb_id = self.lsb.now.advance_tail()
        ins.sign()
        rob_id = self._allocate_rob(
            RoBEntry(RoBType.MEM, 0, _WORD, ins.fn3, lsb_id, self.pc, RoBState.EXECUTING)
        )
        self.rs.now[self.valid_rs].set(
            RSEntry(
                busy=True,
                opcode=ins.opcode,
                fn3=ins.fn3,
                fn7=-1,
                rob_id=lsb_id,
                result=0,
                vj=0,
                vk=0,
                qj=_INVALID,
                qk=_INVALID,
                a=ins.imm,
                state=RSState.PREPARE,
            )
        )
        self.fill_rs_j(self.valid_rs, ins.rs1)
        self.fill_rs_k(self.valid_rs, ins.rs2)
        self.lsb.now.slots[lsb_id].set(
            LSBEntry(
                type=LSBType.STORE,
                busy=True,
                rob_id=rob_id,
                addr=_WORD,
                store_length=ins.fn3,
                sign=False,
                state=LSBState.PREPARE,
                store_value=_WORD,
            )
        )

    def visit_r(self, ins: RType) -> None:
        if ins.opcode != OP_ARITH:
            raise NotImplementedError(f"Unrecognized R code {ins.opcode}")
        if self.rob.pre.is_full():
            self._stall()
            return
        rob_id = self._allocate_rob(
            RoBEntry(RoBType.REG, ins.rd, _WORD, 0xFF, _WORD, self.pc, RoBState.EXECUTING)
        )
        self.rs.now[self.valid_rs].set(
            RSEntry(
                busy=True,
                opcode=ins.opcode,
                fn3=ins.fn3,
                fn7=ins.fn7,
                rob_id=rob_id,
                result=_WORD,
                vj=_WORD,
                vk=_WORD,
                qj=_INVALID,
                qk=_INVALID,
                a=_WORD,
                state=RSState.PREPARE,
            )
        )
        self.fill_rs_j(self.valid_rs, ins.rs1)
        self.fill_rs_k(self.valid_rs, ins.rs2)
        self.rf.rename(ins.rd, rob_id)

    def visit_b(self, ins: BType) -> None:
        ins.sign()
        if ins.opcode != OP_BRANCH:
            raise NotImplementedError(f"Unrecognized B code {ins.opcode}")
        if self.rob.pre.is_full():
            self._stall()
            return
        target = (self.pc + ins.imm) & _WORD
        rob_id = self._allocate_rob(
            RoBEntry(RoBType.BRANCH, 0, _WORD, 0xFF, ins.imm, target, RoBState.EXECUTING)
        )
        ctx = PredictionContext(pc=self.pc, offset=to_signed(ins.imm))
        if self.predictor(ctx):
            self.npc = target
            entry = self.rob.now.slots[rob_id].value
            entry.dest = 1  # predicted taken
            entry.pc = (self.pc + 4) & _WORD  # recovery address on a wrong guess
        self.rs.now[self.valid_rs].set(
            RSEntry(
                busy=True,
                opcode=ins.opcode,
                fn3=ins.fn3,
                fn7=-1,
                rob_id=rob_id,
                result=_WORD,
                vj=_WORD,
                vk=_WORD,
                qj=_INVALID,
                qk=_INVALID,
                a=_WORD,
                state=RSState.PREPARE,
            )
        )
        self.fill_rs_j(self.valid_rs, ins.rs1)
        self.fill_rs_k(self.valid_rs, ins.rs2)

    def visit_ecall(self, ins: Ecall) -> None:
        if ins.kind != 1:
            return
        parts = [
            f"[{reg.depend_rob}] " if reg.busy else f"{reg.value:X} "
            for reg in (latch.value for latch in self.rf.now)
        ]
        self._emit("ebreak... args: " + "".join(parts) + "\n")


def simulate(memory: Memory) -> Optional[int]:
    """Run ``memory`` on the out-of-order CPU and return the exit byte."""
    return CPU(memory).run()
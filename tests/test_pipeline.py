import copy
import io

import pytest

from rvsim.instructions import OP_ARITH, OP_ARITH_IMM, OP_AUIPC, OP_BRANCH, OP_LOAD, OP_STORE
from rvsim.memory import Memory
from rvsim.pipeline import Core
from rvsim.registers import RenameEntry
from rvsim.units import (
    LSB_DELAY,
    ALUOp,
    ALUUnit,
    LSBEntry,
    LSBState,
    LSBType,
    ReservationStations,
    RoBEntry,
    RoBState,
    RoBType,
    RSEntry,
    RSState,
)

FREE = ReservationStations.FREE_ID


@pytest.fixture
def core():
    c = Core(Memory())
    c.out = io.StringIO()
    return c


def ready(opcode, rob_id, vj=0, vk=0, fn3=0, fn7=0, a=0):
    return RSEntry(
        busy=True, opcode=opcode, fn3=fn3, fn7=fn7, rob_id=rob_id,
        vj=vj, vk=vk, qj=FREE, qk=FREE, a=a, state=RSState.READY,
    )


def reg_entry(core, rob_id):
    core.rob.now.slots[rob_id].value = RoBEntry(type=RoBType.REG, state=RoBState.EXECUTING)


def run_alu_op(core, opcode, vj, vk, fn3=0, fn7=0):
    reg_entry(core, 0)
    entry = ready(opcode, 0, vj, vk, fn3, fn7)
    core.exec_rs(entry, 0, 0)
    unit = core.alu.now[0].value
    core.exec_alu(unit)
    return unit, core.rob.now.slots[0].value.value


def test_update_rob_finishes_and_wakes_station(core):
    reg_entry(core, 2)
    waiting = RSEntry(busy=True, state=RSState.PREPARE, qj=2, qk=FREE)
    core.rs.pre[0].value = waiting
    core.rs.now[0].value = copy.copy(waiting)
    core.update_rob(2, 1234)
    station = core.rs.now[0].value
    assert station.vj == 1234
    assert station.qj == FREE
    assert station.state is RSState.READY
    assert core.rob.now.slots[2].value.state is RoBState.FINISH


def test_update_rob_rejects_non_register_entry(core):
    core.rob.now.slots[1].value = RoBEntry(type=RoBType.BRANCH)
    with pytest.raises(ValueError):
        core.update_rob(1, 5)


def test_add_then_sub_round_trip(core):
    unit, total = run_alu_op(core, OP_ARITH, 1000, 234)
    assert unit.op is ALUOp.ADD
    _, back = run_alu_op(core, OP_ARITH, total, 234, fn7=0b0100000)
    assert back == 1000


def test_xor_round_trip(core):
    _, mixed = run_alu_op(core, OP_ARITH, 0x1234, 0xFF0F, fn3=0b100)
    _, back = run_alu_op(core, OP_ARITH, mixed, 0xFF0F, fn3=0b100)
    assert back == 0x1234


def test_shift_left_then_right_round_trip(core):
    _, shifted = run_alu_op(core, OP_ARITH_IMM, 0x123, 4, fn3=0b001)
    unit, back = run_alu_op(core, OP_ARITH_IMM, shifted, 4, fn3=0b101)
    assert unit.op is ALUOp.SHIFT_RIGHT
    assert back == 0x123


def test_arithmetic_shift_keeps_all_ones(core):
    unit, result = run_alu_op(core, OP_ARITH_IMM, 0xFFFFFFFF, 0x404, fn3=0b101)
    assert unit.op is ALUOp.AR_SHIFT_RIGHT
    assert result == 0xFFFFFFFF


def test_unsupported_register_op_raises(core):
    with pytest.raises(NotImplementedError):
        core.exec_rs(ready(OP_ARITH, 0, fn3=0b010), 0, 0)


def test_auipc_issues_add(core):
    entry = ready(OP_AUIPC, 3, vj=0x100, vk=0x2000)
    start = core.exec_rs(entry, 0, 0)
    unit = core.alu.now[start - 1].value
    assert (unit.op, unit.a, unit.b, unit.rob_id) == (ALUOp.ADD, 0x100, 0x2000, 3)
    assert core.rs.now[0].value.state is RSState.EXECUTING
    assert not core.rs.now[0].value.busy


def test_no_free_alu_keeps_station(core):
    for latch in core.alu.pre:
        latch.value.busy = True
    entry = ready(OP_ARITH, 0, 1, 2)
    assert core.exec_rs(entry, 0, 0) == 0
    assert not core.alu.now[0].value.busy
    assert not core.rs.now[0].changed


def test_run_rs_uses_distinct_alus(core):
    core.rs.pre[0].value = ready(OP_ARITH, 5, 1, 2)
    core.rs.pre[1].value = ready(OP_ARITH, 6, 3, 4)
    core.run_rs()
    assert core.alu.now[0].value.rob_id == 5
    assert core.alu.now[1].value.rob_id == 6


def test_run_rs_collects_finished_operand(core):
    core.rob.pre.slots[4].value = RoBEntry(type=RoBType.REG, state=RoBState.FINISH, value=55)
    waiting = RSEntry(busy=True, state=RSState.PREPARE, qj=4, qk=FREE)
    core.rs.pre[0].value = waiting
    core.rs.now[0].value = copy.copy(waiting)
    core.run_rs()
    assert core.rs.now[0].value.vj == 55
    assert core.rs.now[0].value.state is RSState.READY


def test_branch_outcomes(core):
    core.exec_rs(ready(OP_BRANCH, 1, 7, 7, fn3=0b000), 0, 0)
    assert core.rob.now.slots[1].value.mem_dest
    assert core.rob.now.slots[1].value.state is RoBState.FINISH
    core.exec_rs(ready(OP_BRANCH, 2, 0xFFFFFFFF, 1, fn3=0b100), 0, 0)
    assert core.rob.now.slots[2].value.mem_dest
    core.exec_rs(ready(OP_BRANCH, 3, 0xFFFFFFFF, 1, fn3=0b110), 0, 0)
    assert not core.rob.now.slots[3].value.mem_dest


def test_load_and_store_stations_fill_buffer(core):
    core.exec_rs(ready(OP_LOAD, 1, vj=0x200, vk=0), 0, 0)
    assert core.lsb.now.slots[1].value.addr == 0x200
    assert core.lsb.now.slots[1].value.state is LSBState.READY
    assert core.lsb.counter == LSB_DELAY
    core.exec_rs(ready(OP_STORE, 2, vj=0x300, vk=99, a=0), 1, 0)
    slot = core.lsb.now.slots[2].value
    assert (slot.addr, slot.store_value, slot.state) == (0x300, 99, LSBState.READY)
    assert not core.rs.now[1].value.busy


def test_commit_register(core):
    core.rob.pre.slots[0].value = RoBEntry(type=RoBType.REG, dest=5, value=99, state=RoBState.FINISH)
    core.rob.pre.tail = 1
    core.rf.pre[5].value = RenameEntry(0, True, 0)
    core.run_rob()
    assert core.rob.now.head == 1
    assert core.rf.now[5].value.value == 99
    assert not core.rf.now[5].value.busy


def test_unfinished_head_is_not_committed(core):
    core.rob.pre.slots[0].value = RoBEntry(type=RoBType.REG, state=RoBState.EXECUTING)
    core.rob.pre.tail = 1
    core.run_rob()
    assert core.rob.now.head == core.rob.pre.head


def test_end_prints_low_byte(core):
    core.rob.pre.slots[0].value = RoBEntry(type=RoBType.END, state=RoBState.FINISH)
    core.rob.pre.tail = 1
    core.rf.now[10].value.value = 42
    core.run_rob()
    assert core.finish
    assert core.out.getvalue() == "42\n"


def test_branch_misprediction_requests_flush(core):
    core.rob.pre.slots[0].value = RoBEntry(
        type=RoBType.BRANCH, dest=1, mem_dest=0, pc=0x100, state=RoBState.FINISH
    )
    core.rob.pre.tail = 1
    core.run_rob()
    assert core.flush
    assert core.fnpc == 0x100


def test_branch_prediction_success(core):
    core.rob.pre.slots[0].value = RoBEntry(
        type=RoBType.BRANCH, dest=1, mem_dest=1, pc=0x100, state=RoBState.FINISH
    )
    core.rob.pre.tail = 1
    core.run_rob()
    assert not core.flush


def test_store_commit_then_load_round_trip(core):
    core.lsb.pre.slots[3].value = LSBEntry(
        type=LSBType.STORE, addr=0x1000, store_length=2,
        state=LSBState.EXECUTING, store_value=0xDEADBEEF,
    )
    core.rob.pre.slots[0].value = RoBEntry(type=RoBType.MEM, value=3, state=RoBState.FINISH)
    core.rob.pre.tail = 1
    core.run_rob()
    assert core.memory.read_word(0x1000) == 0xDEADBEEF
    assert core.lsb.now.slots[3].value.state is LSBState.DONE

    reg_entry(core, 1)
    core.lsb.pre.slots[0].value = LSBEntry(
        type=LSBType.LOAD, rob_id=1, addr=0x1000, store_length=2, state=LSBState.READY
    )
    core.lsb.pre.tail = 1
    core.run_lsb()
    assert core.rob.now.slots[1].value.value == 0xDEADBEEF
    assert core.lsb.now.head == 1


def test_signed_and_unsigned_byte_load(core):
    core.memory[0x20] = 0x80
    reg_entry(core, 1)
    core.lsb.pre.slots[0].value = LSBEntry(
        type=LSBType.LOAD, rob_id=1, addr=0x20, store_length=0, sign=True, state=LSBState.READY
    )
    core.lsb.pre.tail = 1
    core.run_lsb()
    assert core.rob.now.slots[1].value.value == 0xFFFFFF80

    other = Core(core.memory)
    reg_entry(other, 1)
    other.lsb.pre.slots[0].value = LSBEntry(
        type=LSBType.LOAD, rob_id=1, addr=0x20, store_length=0, sign=False, state=LSBState.READY
    )
    other.lsb.pre.tail = 1
    other.run_lsb()
    assert other.rob.now.slots[1].value.value == core.memory[0x20]


def test_store_at_head_marks_rob_finished(core):
    core.rob.now.slots[2].value = RoBEntry(type=RoBType.MEM, state=RoBState.EXECUTING)
    core.lsb.pre.slots[0].value = LSBEntry(type=LSBType.STORE, rob_id=2, state=LSBState.READY)
    core.lsb.pre.tail = 1
    core.run_lsb()
    assert core.rob.now.slots[2].value.state is RoBState.FINISH
    assert core.lsb.now.front().value.state is LSBState.EXECUTING
    assert core.lsb.now.head == core.lsb.pre.head


def test_done_entry_is_retired(core):
    core.lsb.pre.slots[0].value = LSBEntry(type=LSBType.STORE, state=LSBState.DONE)
    core.lsb.pre.tail = 1
    core.run_lsb()
    assert core.lsb.now.head == core.lsb.pre.tail


def test_flush_state_clears_speculation(core):
    core.rob.now.advance_tail()
    core.rs.now[0].set(ready(OP_ARITH, 0, 1, 2))
    core.alu.now[0].set(ALUUnit(busy=True))
    core.rf.now[3].set(RenameEntry(7, True, 0))
    core.fnpc = 0x400
    core.flush = True
    core.flush_state()
    assert core.rob.now.is_empty()
    assert not core.rs.now[0].value.busy
    assert not core.alu.now[0].value.busy
    assert not core.rf.now[3].value.busy
    assert core.rf.now[3].value.value == 7
    assert core.pc == core.fnpc
    assert not core.flush


def test_commit_latches_copies_changed_state(core):
    entry = ready(OP_ARITH, 4, 1, 2)
    core.rs.now[0].set(entry)
    core.rob.now.advance_tail()
    core.commit_latches()
    assert core.rs.pre[0].value == entry
    assert core.rob.pre.tail == core.rob.now.tail
    assert not core.rs.now[0].changed
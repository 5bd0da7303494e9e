"""State of the out-of-order units: stations, reorder buffer, ALUs, load/store buffer."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Optional

from .latch import Latch, RingQueue

RS_SIZE = 8
ROB_SIZE = 20
ALU_SIZE = 8
LSB_SIZE = 8
LSB_DELAY = 3


class RSState(Enum):
    PREPARE = 0
    READY = 1
    EXECUTING = 2
    DONE = 3


@dataclass
class RSEntry:
    busy: bool = False
    opcode: int = 0
    fn3: int = 0
    fn7: int = 0
    rob_id: int = 0  # load/store buffer slot for memory instructions
    result: int = 0
    vj: int = 0
    vk: int = 0
    qj: int = 0
    qk: int = 0
    a: int = 0
    state: RSState = RSState.PREPARE


class ReservationStations:
    """Reservation stations in current (``now``) and previous-cycle (``pre``) form."""

    PC_ID = 32
    FREE_ID = 255
    INVALID_ID = 254

    def __init__(self) -> None:
        self.now = [Latch(RSEntry()) for _ in range(RS_SIZE)]
        self.pre = [Latch(RSEntry()) for _ in range(RS_SIZE)]

    def empty_slot(self) -> Optional[int]:
        """Return the first station free last cycle, or None."""
        return next(
            (i for i, latch in enumerate(self.pre) if not latch.value.busy), None
        )


class RoBType(Enum):
    BRANCH = 0
    MEM = 1
    REG = 2
    END = 3


class RoBState(Enum):
    BUSY = 0
    READY = 1
    EXECUTING = 2
    FINISH = 3


@dataclass
class RoBEntry:
    type: RoBType = RoBType.BRANCH
    dest: int = 0
    mem_dest: int = 0
    store_length: int = 0  # 0 byte, 1 half word, 2 word
    value: int = 0
    pc: int = 0
    state: RoBState = RoBState.BUSY


def _rob_slot() -> Latch:
    return Latch(RoBEntry())


class ReorderBuffer:
    """The reorder buffer queue in current and previous-cycle form."""

    def __init__(self) -> None:
        self.now = RingQueue(ROB_SIZE, _rob_slot)
        self.pre = RingQueue(ROB_SIZE, _rob_slot)


class ALUOp(IntEnum):
    ADD = 0
    XOR = 1
    SHIFT_LEFT = 2
    SHIFT_RIGHT = 3
    AR_SHIFT_RIGHT = 4
    LAND = 5
    LOR = 6
    LXOR = 7


@dataclass
class ALUUnit:
    busy: bool = False
    rob_id: int = 0
    op: ALUOp = ALUOp.ADD
    a: int = 0
    b: int = 0


class ALU:
    """A bank of ALU units in current and previous-cycle form."""

    def __init__(self) -> None:
        self.now = [Latch(ALUUnit()) for _ in range(ALU_SIZE)]
        self.pre = [Latch(ALUUnit()) for _ in range(ALU_SIZE)]

    def valid_id(self, start: int) -> Optional[int]:
        """Return the first unit at or after ``start`` idle last cycle, or None."""
        return next(
            (i for i in range(start, ALU_SIZE) if not self.pre[i].value.busy), None
        )


class LSBType(Enum):
    LOAD = 0
    STORE = 1


class LSBState(Enum):
    PREPARE = 0
    READY = 1
    EXECUTING = 2
    DONE = 3


@dataclass
class LSBEntry:
    type: LSBType = LSBType.LOAD
    busy: bool = False
    rob_id: int = 0
    addr: int = 0
    store_length: int = 0  # 0 byte, 1 half word, 2 word
    sign: bool = False
    state: LSBState = LSBState.PREPARE
    store_value: int = 0


def _lsb_slot() -> Latch:
    return Latch(LSBEntry())


class LoadStoreBuffer:
    """The load/store queue in current and previous-cycle form."""

    def __init__(self) -> None:
        self.counter = 0
        self.now = RingQueue(LSB_SIZE, _lsb_slot)
        self.pre = RingQueue(LSB_SIZE, _lsb_slot)


@dataclass
class PredictionContext:
    qj: int = -1
    qk: int = -1
    pc: int = 0
    offset: int = 0


class Predictor(ABC):
    """Decides whether a conditional branch is taken."""

    @abstractmethod
    def __call__(self, ctx: PredictionContext) -> bool:
        """Return True to predict the branch as taken."""


@dataclass
class NaivePredictor(Predictor):
    """Gives the same fixed prediction for every branch; taken by default."""

    taken: bool = True

    def __call__(self, ctx: PredictionContext) -> bool:
        return self.taken
"""Architectural registers and the renaming table used by the pipeline."""

from __future__ import annotations

from dataclasses import dataclass

from .latch import Latch

REGISTER_COUNT = 32
_WORD_MASK = 0xFFFFFFFF


def reg_index(value: int) -> int:
    """Validate a register number."""
    if not 0 <= value < REGISTER_COUNT:
        raise ValueError(f"register index out of range: {value}")
    return value


class RegisterFile:
    """Thirty-two 32-bit registers; x0 always reads as zero."""

    def __init__(self) -> None:
        self._regs = [0] * REGISTER_COUNT

    def __getitem__(self, index: int) -> int:
        index = reg_index(index)
        return 0 if index == 0 else self._regs[index]

    def __setitem__(self, index: int, value: int) -> None:
        index = reg_index(index)
        if index:
            self._regs[index] = value & _WORD_MASK


@dataclass
class RenameEntry:
    value: int = 0
    busy: bool = False
    depend_rob: int = -1


class RenameTable:
    """Register values with the reorder-buffer entry each one waits for."""

    def __init__(self) -> None:
        self.pre = [Latch(RenameEntry()) for _ in range(REGISTER_COUNT)]
        self.now = [Latch(RenameEntry()) for _ in range(REGISTER_COUNT)]

    def rename(self, index: int, rob_id: int) -> None:
        """Make register ``index`` wait for reorder-buffer entry ``rob_id``."""
        if reg_index(index):
            current = self.now[index].value.value
            self.now[index].set(RenameEntry(current, True, rob_id))

    def update_value(self, index: int, value: int) -> None:
        """Write a committed value and clear the dependency."""
        if reg_index(index):
            self.now[index].set(RenameEntry(value & _WORD_MASK, False, -1))

    def modify_value_only(self, index: int, value: int) -> None:
        """Write a value while keeping the current dependency."""
        if reg_index(index):
            self.now[index].value.value = value & _WORD_MASK
            self.now[index].mark()
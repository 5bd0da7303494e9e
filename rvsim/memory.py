"""Sparse byte-addressed memory and the hex image loader."""

from __future__ import annotations

from typing import IO, Iterator

from .log import Logger

_ADDR_MASK = 0xFFFFFFFF
_HEX_DIGITS = {c: int(c, 16) for c in "0123456789ABCDEF"}


class Memory:
    """A 32-bit address space of bytes; unwritten bytes read as zero."""

    def __init__(self) -> None:
        self._bytes: dict[int, int] = {}

    def __getitem__(self, address: int) -> int:
        return self._bytes.get(address & _ADDR_MASK, 0)

    def __setitem__(self, address: int, value: int) -> None:
        self._bytes[address & _ADDR_MASK] = value & 0xFF

    def __len__(self) -> int:
        return len(self._bytes)

    def __iter__(self) -> Iterator[int]:
        return iter(sorted(self._bytes))

    def read_word(self, address: int) -> int:
        """Read a little-endian 32-bit word."""
        return (
            self[address]
            | self[address + 1] << 8
            | self[address + 2] << 16
            | self[address + 3] << 24
        )


def parse_hex(text: str) -> Memory:
    """Build memory from a hex image: ``@XXXXXXXX`` sets the address, digit pairs are bytes.

    Only upper-case hex digits are recognised; other characters are skipped.
    """
    logger = Logger()
    memory = Memory()
    where = 0
    chars = iter(text)
    for ch in chars:
        if ch == "@":
            pos = 0
            for _ in range(8):
                pos = (pos << 4) | _HEX_DIGITS.get(next(chars, ""), 0)
            logger.info(f"Jump to {pos:X}")
            where = pos
        elif ch in _HEX_DIGITS:
            low = _HEX_DIGITS.get(next(chars, ""), 0)
            memory[where] = _HEX_DIGITS[ch] << 4 | low
            where = (where + 1) & _ADDR_MASK
    return memory


def load_hex(stream: IO) -> Memory:
    """Read a hex image from a text or binary stream."""
    data = stream.read()
    if isinstance(data, bytes):
        data = data.decode("latin-1")
    return parse_hex(data)
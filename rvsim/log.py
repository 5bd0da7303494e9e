"""Minimal leveled logger writing to standard error."""

from __future__ import annotations

import sys
from typing import TextIO


class Logger:
    """Writes tagged lines; warn and debug lines appear only when enabled."""

    def __init__(self, enabled: bool = False, stream: TextIO | None = None) -> None:
        self.enabled = enabled
        self.stream = stream

    def _write(self, tag: str, message: str) -> None:
        stream = self.stream if self.stream is not None else sys.stderr
        stream.write(f"[{tag}] {message}\n")
        stream.flush()

    def warn(self, message: str) -> None:
        if self.enabled:
            self._write("WARN", message)

    def info(self, message: str) -> None:
        self._write("INFO", message)

    def debug(self, message: str) -> None:
        if self.enabled:
            self._write("DEBUG", message)

    def error(self, message: str) -> None:
        self._write("ERROR", message)

    def red(self, text: str) -> str:
        """Wrap ``text`` in terminal escape codes for red output."""
        return "\033[31m" + text + "\033[0m"
"""Command-line entry point: run a hex memory image on the CPU."""

from __future__ import annotations

import sys

from .cpu import simulate
from .memory import load_hex


def main(argv=None) -> int:
    """Load an image from the named file, or standard input, and run it."""
    args = sys.argv[1:] if argv is None else list(argv)
    if len(args) > 1:
        sys.stderr.write("Unexpected argc!\n")
        return 1
    if args:
        with open(args[0], encoding="latin-1") as stream:
            memory = load_hex(stream)
    else:
        memory = load_hex(sys.stdin)
    simulate(memory)
    return 0


if __name__ == "__main__":
    sys.exit(main())
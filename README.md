# rvsim

A simulator for RV32I programs. It models an out-of-order core in the style of
Tomasulo's algorithm, with reservation stations, a reorder buffer, ALUs, a
load/store buffer and a branch predictor, and steps it one clock cycle at a
time. It also contains a simple in-order interpreter.

## Installing

```
pip install .
```

## Running a program

Programs are given as a hex memory image: `@XXXXXXXX` (eight upper-case hex
digits) sets the load address, and each following pair of upper-case hex digits
is one byte, written at consecutive addresses. Any other character is skipped.

```
rvsim program.data
```

With no argument, the image is read from standard input:

```
rvsim < program.data
```

More than one argument is an error (exit status 1).

A program stops when it reaches the word `0x0ff00513` (`li a0, 255`). When that
marker commits, the low byte of register `a0` is printed to standard output.
Diagnostics (`[INFO]`, `[ERROR]`) go to standard error.

## Using it from Python

```python
from rvsim.memory import load_hex
from rvsim.cpu import CPU, simulate

with open("program.data") as stream:
    memory = load_hex(stream)

exit_byte = simulate(memory)  # prints and returns the low byte of a0
```

- `rvsim.memory.parse_hex(text)` / `load_hex(stream)` build a `Memory`, a sparse
  32-bit byte address space where unwritten bytes read as zero.
- `rvsim.cpu.CPU(memory, predictor=None, out=None)` is the out-of-order core;
  `step()` advances one clock cycle and `run()` steps until the end marker and
  returns the exit byte. Output goes to `out`, or standard output.
- `rvsim.units.Predictor` is the branch-predictor interface; the default
  `NaivePredictor` predicts every branch as taken. A mispredicted branch
  flushes the pipeline when it commits.
- `rvsim.toy.ToySimulator(memory, trace_steps=50, out=None)` and
  `rvsim.toy.run_toy(memory)` run the same image in order, one instruction per
  step. The interpreter prints a register trace line for each of its first
  `trace_steps` instructions, then the exit byte.
- `rvsim.instructions.dispatch(cmd)` decodes a 32-bit word into a `UType`,
  `JType`, `IType`, `BType`, `SType`, `RType` or `Ecall`, and raises
  `DecodeError` for an unknown opcode.

## Supported instructions

The out-of-order core handles `lui`, `auipc`, `jal`, `jalr`, the loads `lb`,
`lh`, `lw`, `lbu`, `lhu`, the stores `sb`, `sh`, `sw`, all six conditional
branches, `addi`, `xori`, `ori`, `andi`, `slli`, `srli`, `srai`, and the
register operations `add`, `sub`, `xor`, `or` and `and`. `ebreak` prints the
register file; `ecall` has no effect.

The in-order interpreter additionally handles `slti` (compared as unsigned
words) and `sll`, but not `srl`, `sra`, `and`, or the `ecall`/`ebreak` words.

## What it does not do

- Other RV32I operations (`slt`, `sltu`, `sltiu`, `srl`, `sra` and the like),
  compressed instructions and extensions such as M are not supported. An
  unsupported operation raises `NotImplementedError`; a word that cannot be
  decoded makes the out-of-order core stall at that address, logging an error
  each cycle.
- There are no system calls and no input or output devices: the only program
  output is the final byte of `a0`.

## Running the tests

```
pip install .[test]
pytest
```
[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "rvsim"
version = "0.1.0"
description = "A cycle-stepped out-of-order RV32I simulator using Tomasulo's algorithm"
requires-python = ">=3.10"
dependencies = []
keywords = ["riscv", "rv32i", "simulator", "tomasulo", "out-of-order", "cpu"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Education",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Emulators",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
rvsim = "rvsim.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["rvsim"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

"""Cycle-stepped out-of-order RV32I simulator with an in-order interpreter."""

__version__ = "0.1.0"
__all__ = ["__version__"]
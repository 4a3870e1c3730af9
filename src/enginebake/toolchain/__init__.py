"""Toolchain collaborators that turn a filtered tree into binaries."""

from .base import CompileRequest, Toolchain
from .cargo import CargoToolchain
from .inprocess import InProcessToolchain

__all__ = ["CargoToolchain", "CompileRequest", "InProcessToolchain", "Toolchain"]

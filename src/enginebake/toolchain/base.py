"""Typed interfaces for the compiler toolchain collaborator."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from enginebake.models import BuildType, VariantId


@dataclass(frozen=True, slots=True)
class CompileRequest:
    variant: VariantId
    build_type: BuildType
    source: Path
    output_dir: Path
    targets: tuple[str, ...]
    flags: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)


class Toolchain(Protocol):
    name: str

    def build(self, request: CompileRequest) -> dict[str, Path]:
        """Compile every requested target and return ``{target: binary path}``."""

    def check(self, request: CompileRequest) -> None:
        """Run the toolchain's built-in test step for the request."""

    def closure(self, package: str) -> Path:
        """Return the root directory of a dependency package closure."""

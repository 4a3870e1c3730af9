"""In-process toolchain for testing and development.

Produces deterministic placeholder binaries without invoking cargo. The
placeholders start with the ELF magic and carry their link settings as
``key=value`` lines, so the fixup stage can patch and inspect them exactly
like real executables. Suitable for:
- Unit tests that verify the pipeline
- Development machines without the engine's native dependencies
"""

from __future__ import annotations

import hashlib
import threading
from dataclasses import dataclass, field
from pathlib import Path

from enginebake.errors import BuildError
from enginebake.toolchain.base import CompileRequest

ELF_MAGIC = b"\x7fELF"
PLACEHOLDER_MARKER = "enginebake-placeholder"
DEFAULT_INTERPRETER = "/lib64/ld-linux-x86-64.so.2"


def render_placeholder(fields: dict[str, str]) -> bytes:
    lines = [PLACEHOLDER_MARKER, *(f"{key}={value}" for key, value in fields.items())]
    return ELF_MAGIC + b"\n" + ("\n".join(lines) + "\n").encode("utf-8")


def parse_placeholder(payload: bytes) -> dict[str, str] | None:
    if not payload.startswith(ELF_MAGIC + b"\n"):
        return None
    lines = payload[len(ELF_MAGIC) + 1 :].decode("utf-8", errors="replace").splitlines()
    if not lines or lines[0] != PLACEHOLDER_MARKER:
        return None
    fields: dict[str, str] = {}
    for line in lines[1:]:
        key, _, value = line.partition("=")
        fields[key] = value
    return fields


@dataclass(slots=True)
class InProcessToolchain:
    """Toolchain that writes placeholder artifacts in-process."""

    store: Path
    name: str = "inprocess"
    fail_variants: tuple[str, ...] = ()
    checks: list[str] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def build(self, request: CompileRequest) -> dict[str, Path]:
        if request.variant in self.fail_variants:
            raise BuildError(
                "Simulated compile failure.",
                context={"operation": "build", "variant": request.variant},
            )
        bin_dir = request.output_dir / "bin"
        bin_dir.mkdir(parents=True, exist_ok=True)
        source_digest = _tree_digest(request.source)
        produced: dict[str, Path] = {}
        for target in request.targets:
            path = bin_dir / target
            path.write_bytes(
                render_placeholder(
                    {
                        "name": target,
                        "variant": request.variant,
                        "build_type": request.build_type,
                        "flags": " ".join(request.flags),
                        "env": ",".join(f"{k}={v}" for k, v in sorted(request.env.items())),
                        "source": source_digest,
                        "interpreter": DEFAULT_INTERPRETER,
                        "rpath": "",
                    }
                )
            )
            path.chmod(0o755)
            produced[target] = path
        return produced

    def check(self, request: CompileRequest) -> None:
        with self._lock:
            self.checks.append(request.variant)

    def closure(self, package: str) -> Path:
        root = self.store / package
        with self._lock:
            if root.is_dir():
                return root
            (root / "bin").mkdir(parents=True, exist_ok=True)
            tool = root / "bin" / package
            tool.write_text(f"#!/bin/sh\n# {package}\n", encoding="utf-8")
            tool.chmod(0o755)
            if package.startswith("lib"):
                (root / "lib").mkdir(exist_ok=True)
                (root / "lib" / f"{package}.so").write_bytes(
                    render_placeholder({"name": f"{package}.so", "interpreter": "", "rpath": ""})
                )
        return root


def _tree_digest(root: Path) -> str:
    hasher = hashlib.sha256()
    if not root.is_dir():
        return hasher.hexdigest()
    for path in sorted(p for p in root.rglob("*") if p.is_file()):
        hasher.update(path.relative_to(root).as_posix().encode("utf-8") + b"\0")
        hasher.update(hashlib.sha256(path.read_bytes()).digest())
    return hasher.hexdigest()

"""Post-build binary fixup for running artifacts inside minimal images.

Produced binaries reference the build environment's dynamic linker and
library layout. Fixup points the ELF interpreter at the toolchain-provided
loader and the runtime search path at the directory that holds the bundled
native libraries in the image.
"""

from __future__ import annotations

import shutil
import subprocess
from collections.abc import Iterable
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Protocol

from enginebake.errors import ConfigurationError, FixupError
from enginebake.models import Artifact, StageFailure
from enginebake.observability import StructuredLogger
from enginebake.toolchain.inprocess import ELF_MAGIC, parse_placeholder, render_placeholder


class Patcher(Protocol):
    def patch(self, path: Path, *, interpreter: str, rpath: str) -> None:
        """Rewrite the interpreter and runtime search path of *path* in place."""


@dataclass(slots=True)
class PatchelfPatcher:
    tool: str = "patchelf"

    def patch(self, path: Path, *, interpreter: str, rpath: str) -> None:
        if shutil.which(self.tool) is None:
            raise FixupError(
                f"Fixup requires `{self.tool}` in PATH.",
                hint="Run inside the project build shell.",
                context={"operation": "fixup", "path": str(path)},
            )
        command = [self.tool, "--set-interpreter", interpreter, "--set-rpath", rpath, str(path)]
        result = subprocess.run(command, capture_output=True, text=True, check=False)
        if result.returncode != 0:
            raise FixupError(
                "patchelf failed to rewrite the binary.",
                context={
                    "operation": "fixup",
                    "path": str(path),
                    "returncode": str(result.returncode),
                    "stderr": result.stderr[-2000:] if result.stderr else "",
                },
            )


@dataclass(slots=True)
class InProcessPatcher:
    """Patcher for placeholder binaries written by the in-process toolchain."""

    def patch(self, path: Path, *, interpreter: str, rpath: str) -> None:
        fields = parse_placeholder(path.read_bytes())
        if fields is None:
            raise FixupError(
                "In-process patcher can only rewrite placeholder binaries.",
                context={"operation": "fixup", "path": str(path)},
            )
        fields["interpreter"] = interpreter
        fields["rpath"] = rpath
        path.write_bytes(render_placeholder(fields))


def read_interpreter(toolchain_root: Path) -> str:
    """Read the dynamic linker path a compiler wrapper advertises."""
    marker = toolchain_root / "nix-support" / "dynamic-linker"
    try:
        interpreter = marker.read_text(encoding="utf-8").strip()
    except FileNotFoundError as exc:
        raise ConfigurationError(
            "Toolchain does not advertise a dynamic linker.",
            hint="Point NIX_CC at the compiler wrapper or pass an interpreter explicitly.",
            context={"operation": "resolve_context", "path": str(marker)},
        ) from exc
    if not interpreter:
        raise ConfigurationError(
            "Toolchain dynamic linker file is empty.",
            context={"operation": "resolve_context", "path": str(marker)},
        )
    return interpreter


def fixup_artifact(
    artifact: Artifact,
    lib_dir: str,
    *,
    interpreter: str,
    patcher: Patcher,
) -> Artifact:
    context = {"operation": "fixup", "variant": artifact.variant, "artifact": artifact.name}
    if not artifact.path.is_file():
        raise FixupError(
            "Binary to fix up was not found at its expected output path.",
            context={**context, "path": str(artifact.path)},
        )
    with artifact.path.open("rb") as handle:
        magic = handle.read(len(ELF_MAGIC))
    if magic != ELF_MAGIC:
        raise FixupError(
            "Binary to fix up is not an ELF executable.",
            context={**context, "path": str(artifact.path)},
        )
    try:
        patcher.patch(artifact.path, interpreter=interpreter, rpath=lib_dir)
    except OSError as exc:
        raise FixupError(
            "Binary could not be rewritten.",
            context={**context, "path": str(artifact.path), "error": str(exc)},
        ) from exc
    return replace(artifact, interpreter=interpreter, rpath=lib_dir, fixed=True)


def fixup_artifacts(
    artifacts: Iterable[Artifact],
    lib_dir: str,
    *,
    interpreter: str,
    patcher: Patcher,
    targets: tuple[str, ...] = (),
    logger: StructuredLogger | None = None,
) -> tuple[tuple[Artifact, ...], tuple[StageFailure, ...]]:
    """Fix up each artifact independently.

    Only artifacts named in *targets* are patched (all of them when *targets*
    is empty); the rest pass through unchanged. A failing artifact is reported
    and dropped without affecting its siblings.
    """
    fixed: list[Artifact] = []
    failures: list[StageFailure] = []
    for artifact in artifacts:
        if targets and artifact.name not in targets:
            fixed.append(artifact)
            continue
        try:
            fixed.append(
                fixup_artifact(artifact, lib_dir, interpreter=interpreter, patcher=patcher)
            )
        except FixupError as exc:
            failures.append(
                StageFailure(
                    kind="artifact",
                    identifier=f"{artifact.variant}/{artifact.name}",
                    code=exc.code,
                    message=exc.message,
                    context=exc.context,
                )
            )
            if logger is not None:
                logger.log(
                    operation="fixup",
                    stage="fixup",
                    variant=artifact.variant,
                    level="error",
                    message="Artifact fixup failed.",
                    extra={"artifact": artifact.name, "code": exc.code},
                )
            continue
        if logger is not None:
            logger.log(
                operation="fixup",
                stage="fixup",
                variant=artifact.variant,
                message="Fixed interpreter and rpath.",
                extra={"artifact": artifact.name, "rpath": lib_dir},
            )
    return tuple(fixed), tuple(failures)

"""Cargo toolchain: compiles the engine workspace with ``cargo build``.

Compiler flags are passed through ``RUSTFLAGS`` so that instrumentation flags
reach every crate, and ``CARGO_TARGET_DIR`` is pinned under the variant's
output directory so concurrent variants never share a target directory.
"""

from __future__ import annotations

import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from enginebake.errors import BuildError, ConfigurationError
from enginebake.toolchain.base import CompileRequest


@dataclass(slots=True)
class CargoToolchain:
    store: Path
    tool: str = "cargo"
    name: str = "cargo"

    def build(self, request: CompileRequest) -> dict[str, Path]:
        self._ensure_prerequisites(request)
        command = self._command("build", request)
        self._run(command, request, operation="build")

        profile_dir = self._target_dir(request) / request.build_type
        bin_dir = request.output_dir / "bin"
        bin_dir.mkdir(parents=True, exist_ok=True)
        produced: dict[str, Path] = {}
        for target in request.targets:
            built = profile_dir / target
            if not built.exists():
                raise BuildError(
                    "cargo finished without producing a requested binary.",
                    hint="Check that the target is a [[bin]] of the workspace.",
                    context={
                        "operation": "build",
                        "variant": request.variant,
                        "target": target,
                        "path": str(built),
                    },
                )
            destination = bin_dir / target
            shutil.copy2(built, destination)
            produced[target] = destination
        return produced

    def check(self, request: CompileRequest) -> None:
        self._ensure_prerequisites(request)
        self._run(self._command("test", request), request, operation="check")

    def closure(self, package: str) -> Path:
        path = self.store / package
        if not path.is_dir():
            raise ConfigurationError(
                "Dependency closure is not available in the store.",
                hint="Build or fetch the package into the store before running the pipeline.",
                context={"operation": "closure", "package": package, "store": str(self.store)},
            )
        return path

    def _command(self, subcommand: str, request: CompileRequest) -> tuple[str, ...]:
        args = [self.tool, subcommand, "--locked"]
        if request.build_type == "release":
            args.append("--release")
        for target in request.targets:
            args.extend(["--bin", target])
        return tuple(args)

    def _target_dir(self, request: CompileRequest) -> Path:
        return request.output_dir / "target"

    def _run(self, command: tuple[str, ...], request: CompileRequest, *, operation: str) -> None:
        env = dict(os.environ)
        env.update(request.env)
        env["CARGO_TARGET_DIR"] = str(self._target_dir(request))
        if request.flags:
            env["RUSTFLAGS"] = " ".join(request.flags)
        result = subprocess.run(
            list(command),
            cwd=str(request.source),
            env=env,
            capture_output=True,
            text=True,
            check=False,
        )
        if result.returncode != 0:
            raise BuildError(
                f"cargo {operation} failed.",
                hint="Check compiler output for the failing crate.",
                context={
                    "operation": operation,
                    "variant": request.variant,
                    "command": " ".join(command),
                    "returncode": str(result.returncode),
                    "stderr": result.stderr[-2000:] if result.stderr else "",
                },
            )

    def _ensure_prerequisites(self, request: CompileRequest) -> None:
        if shutil.which(self.tool) is None:
            raise BuildError(
                f"Cargo toolchain requires `{self.tool}` in PATH.",
                hint="Run inside the project build shell or install a Rust toolchain.",
                context={"operation": "prepare", "variant": request.variant},
            )

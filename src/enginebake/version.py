"""Version metadata and the per-invocation build context."""

from __future__ import annotations

import os
import shutil
import subprocess
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path

from enginebake.errors import ConfigurationError
from enginebake.fixup import read_interpreter
from enginebake.models import BuildContext
from enginebake.observability import StructuredLogger
from enginebake.toolchain.inprocess import DEFAULT_INTERPRETER

GIT_DESCRIBE = ("git", "describe", "--always", "--long", "--tags", "--dirty")
GIT_SHORT_REV = ("git", "rev-parse", "--short=12", "HEAD")


def git_version(repo_root: str | Path) -> str:
    """Derive a stable version string from the repository's git state."""
    root = Path(repo_root)
    if shutil.which("git") is None:
        raise ConfigurationError(
            "Version detection requires `git` in PATH.",
            hint="Pass an explicit version instead.",
            context={"operation": "version", "repo_root": str(root)},
        )
    last_stderr = ""
    for command in (GIT_DESCRIBE, GIT_SHORT_REV):
        result = subprocess.run(
            list(command),
            cwd=str(root),
            capture_output=True,
            text=True,
            check=False,
        )
        version = result.stdout.strip()
        if result.returncode == 0 and version:
            return version
        last_stderr = result.stderr.strip()
    raise ConfigurationError(
        "Could not derive a version from source control.",
        hint="Run inside a git checkout with at least one commit, or pass a version.",
        context={"operation": "version", "repo_root": str(root), "stderr": last_stderr[:2000]},
    )


def resolve_context(
    repo_root: str | Path,
    *,
    version: str | None = None,
    created: str | None = None,
    interpreter: str | None = None,
    env: Mapping[str, str] | None = None,
    logger: StructuredLogger | None = None,
) -> BuildContext:
    """Compute the values every variant and image of one invocation shares.

    Header and tool locations come from *env* (default: the process
    environment): ``LIBCLANG_PATH`` for the C compatibility layer,
    ``PROTOC``/``PROTOC_INCLUDE`` for the schema compiler. ``PROTOC`` falls back
    to the ``protoc`` found in PATH.
    """
    source_env = os.environ if env is None else env
    shared: dict[str, str] = {}
    for key in ("LIBCLANG_PATH", "PROTOC", "PROTOC_INCLUDE"):
        value = source_env.get(key)
        if value:
            shared[key] = value
    if "PROTOC" not in shared and env is None:
        protoc = shutil.which("protoc")
        if protoc is not None:
            shared["PROTOC"] = protoc
    if logger is not None:
        for key in ("LIBCLANG_PATH", "PROTOC", "PROTOC_INCLUDE"):
            if key not in shared:
                logger.log(
                    operation="resolve_context",
                    stage="context",
                    level="warning",
                    message="Shared build location is not set.",
                    extra={"variable": key},
                )

    if interpreter is None:
        nix_cc = source_env.get("NIX_CC")
        interpreter = read_interpreter(Path(nix_cc)) if nix_cc else DEFAULT_INTERPRETER

    return BuildContext(
        version=version or git_version(repo_root),
        created=created or datetime.now(UTC).replace(microsecond=0).isoformat(),
        interpreter=interpreter,
        env=shared,
    )

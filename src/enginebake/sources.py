"""Source selection: reduce a monorepo to the whitelisted build subtree."""

from __future__ import annotations

import hashlib
import os
import shutil
from pathlib import Path, PurePosixPath

from enginebake.errors import ConfigurationError
from enginebake.models import FilteredTree, SourceWhitelist
from enginebake.observability import StructuredLogger


def validate_whitelist(whitelist: SourceWhitelist) -> None:
    if not whitelist.prefixes:
        raise ConfigurationError(
            "Source whitelist is empty.",
            hint="List at least one root-relative prefix, e.g. 'Cargo.toml'.",
            context={"operation": "select_sources"},
        )
    for prefix in whitelist.prefixes:
        if not prefix:
            raise ConfigurationError(
                "Source whitelist contains an empty prefix.",
                hint="An empty prefix would select the whole tree; list subtrees explicitly.",
                context={"operation": "select_sources"},
            )
        posix = PurePosixPath(prefix)
        if posix.is_absolute() or ".." in posix.parts:
            raise ConfigurationError(
                "Source whitelist prefixes must be relative to the repository root.",
                context={"operation": "select_sources", "prefix": prefix},
            )


def select_sources(
    repo_root: str | Path,
    whitelist: SourceWhitelist,
    destination: str | Path,
    *,
    logger: StructuredLogger | None = None,
) -> FilteredTree:
    """Copy every whitelisted file under *repo_root* into *destination*.

    A file is selected iff its root-relative POSIX path matches one of the
    whitelist prefixes. Prefixes that select nothing are tolerated so optional
    subtrees can stay listed; they are reported as warnings.
    """
    validate_whitelist(whitelist)
    root = Path(repo_root)
    if not root.is_dir():
        raise ConfigurationError(
            "Repository root does not exist.",
            context={"operation": "select_sources", "repo_root": str(root)},
        )
    output = Path(destination)
    resolved_root = root.resolve()
    resolved_output = output.resolve()
    if resolved_output == resolved_root or resolved_output in resolved_root.parents:
        raise ConfigurationError(
            "Source destination would replace the repository it selects from.",
            hint="Choose an output directory outside the repository root's ancestry.",
            context={
                "operation": "select_sources",
                "repo_root": str(root),
                "destination": str(output),
            },
        )
    if output.exists():
        shutil.rmtree(output)
    output.mkdir(parents=True)

    selected = sorted(_iter_matching_files(root, whitelist, exclude=output.resolve()))
    hasher = hashlib.sha256()
    for relative in selected:
        source = root / relative
        target = output / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, target)
        hasher.update(relative.encode("utf-8") + b"\0")
        hasher.update(hashlib.sha256(source.read_bytes()).digest())

    if logger is not None:
        for prefix in whitelist.prefixes:
            if not any(SourceWhitelist((prefix,), whitelist.match).matches(f) for f in selected):
                logger.log(
                    operation="select_sources",
                    stage="select",
                    level="warning",
                    message="Whitelist prefix matched no files.",
                    extra={"prefix": prefix},
                )
        logger.log(
            operation="select_sources",
            stage="select",
            message="Selected source tree.",
            extra={"files": len(selected), "match": whitelist.match},
        )

    return FilteredTree(root=output, files=tuple(selected), digest=hasher.hexdigest())


def _iter_matching_files(root: Path, whitelist: SourceWhitelist, *, exclude: Path):
    for dirpath, dirnames, filenames in os.walk(root):
        current = Path(dirpath)
        dirnames[:] = sorted(d for d in dirnames if (current / d).resolve() != exclude)
        for filename in filenames:
            path = current / filename
            if path.is_symlink() and not path.exists():
                continue
            relative = path.relative_to(root).as_posix()
            if whitelist.matches(relative):
                yield relative

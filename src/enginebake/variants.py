"""Variant matrix: specialise the base spec and build each variant."""

from __future__ import annotations

import shutil
from collections.abc import Iterable, Mapping
from pathlib import Path

from enginebake.errors import BuildError, ConfigurationError
from enginebake.models import (
    VARIANT_IDS,
    Artifact,
    BaseSpec,
    BuildContext,
    FilteredTree,
    VariantId,
    VariantOverride,
    VariantSpec,
)
from enginebake.observability import StructuredLogger
from enginebake.toolchain.base import CompileRequest, Toolchain


def effective_dependencies(
    base: Mapping[str, str],
    override: Mapping[str, str],
) -> dict[str, str]:
    """Overlay *override* on *base*; an overridden family is replaced whole."""
    merged = dict(base)
    merged.update(override)
    return dict(sorted(merged.items()))


def merge_override(base: BaseSpec, override: VariantOverride) -> VariantSpec:
    if override.identifier not in VARIANT_IDS:
        raise ConfigurationError(
            "Unknown variant identifier.",
            hint=f"Use one of: {', '.join(VARIANT_IDS)}.",
            context={"operation": "merge_override", "variant": str(override.identifier)},
        )
    dependencies = effective_dependencies(base.dependencies, override.dependencies)
    _ensure_single_linkage(override.identifier, dependencies)

    flags = base.flags if override.flags is None else override.flags
    env = dict(base.env)
    env.update(override.env)
    build_type = override.build_type
    if build_type is None:
        build_type = "release" if override.identifier == "release" else "debug"
    check_enabled = base.check_enabled if override.check_enabled is None else override.check_enabled

    return VariantSpec(
        identifier=override.identifier,
        build_type=build_type,
        targets=base.targets,
        dependencies=dependencies,
        flags=(*flags, *override.extra_flags),
        env=dict(sorted(env.items())),
        dependency_env=dict(base.dependency_env),
        check_enabled=check_enabled,
        fixup_targets=base.fixup_targets,
    )


def derive_variants(
    base: BaseSpec,
    overrides: Iterable[VariantOverride],
) -> dict[VariantId, VariantSpec]:
    variants: dict[VariantId, VariantSpec] = {}
    for override in overrides:
        if override.identifier in variants:
            raise ConfigurationError(
                "Variant is declared more than once.",
                context={"operation": "derive_variants", "variant": override.identifier},
            )
        variants[override.identifier] = merge_override(base, override)
    return variants


def build_variant(
    tree: FilteredTree,
    variant: VariantSpec,
    context: BuildContext,
    toolchain: Toolchain,
    output_dir: Path,
    *,
    logger: StructuredLogger | None = None,
) -> tuple[Artifact, ...]:
    """Compile *variant* from *tree* and return one artifact per target."""
    variant_dir = output_dir / variant.identifier
    variant_dir.mkdir(parents=True, exist_ok=True)

    env = dict(context.env)
    for family, variable in sorted(variant.dependency_env.items()):
        package = variant.dependencies.get(family)
        if package is None:
            raise ConfigurationError(
                "Dependency environment names a family the variant does not link.",
                context={"operation": "build", "variant": variant.identifier, "family": family},
            )
        env[variable] = str(toolchain.closure(package))
    env.update(variant.env)

    request = CompileRequest(
        variant=variant.identifier,
        build_type=variant.build_type,
        source=tree.root,
        output_dir=variant_dir,
        targets=variant.target_names,
        flags=variant.flags,
        env=env,
    )
    _log(logger, variant, "build_start", "Starting variant build.", {"toolchain": toolchain.name})
    produced = toolchain.build(request)
    missing = [name for name in variant.target_names if name not in produced]
    if missing:
        raise BuildError(
            "Toolchain did not produce every requested binary.",
            context={
                "operation": "build",
                "variant": variant.identifier,
                "missing": ",".join(missing),
            },
        )
    if variant.check_enabled:
        _log(logger, variant, "check", "Running toolchain check step.")
        toolchain.check(request)

    lib_dir = _bundle_libraries(variant, toolchain, variant_dir / "lib")
    artifacts = tuple(
        Artifact(
            name=name,
            path=produced[name],
            variant=variant.identifier,
            version=context.version,
            lib_dir=lib_dir,
        )
        for name in variant.target_names
    )
    _log(
        logger,
        variant,
        "build_complete",
        "Completed variant build.",
        {"artifacts": [artifact.name for artifact in artifacts], "spec_digest": variant.digest()},
    )
    return artifacts


def _bundle_libraries(variant: VariantSpec, toolchain: Toolchain, lib_dir: Path) -> Path:
    lib_dir.mkdir(parents=True, exist_ok=True)
    for package in sorted(set(variant.dependencies.values())):
        package_lib = toolchain.closure(package) / "lib"
        if not package_lib.is_dir():
            continue
        for shared_object in sorted(package_lib.glob("*.so*")):
            shutil.copy2(shared_object, lib_dir / shared_object.name)
    return lib_dir


def _ensure_single_linkage(identifier: str, dependencies: Mapping[str, str]) -> None:
    """Reject empty packages and a package linked under two families.

    The family key is the unit of uniqueness: packages are compared by name
    only, so two builds of one library (``libspdk`` and ``libspdk-dev``) must
    share a family for the override to replace one with the other.
    """
    seen: dict[str, str] = {}
    for family, package in dependencies.items():
        if not package:
            raise ConfigurationError(
                "Dependency family has no package.",
                context={"operation": "merge_override", "variant": identifier, "family": family},
            )
        if package in seen:
            raise ConfigurationError(
                "Package is linked under two dependency families.",
                hint="Each native dependency may be linked once per variant.",
                context={
                    "operation": "merge_override",
                    "variant": identifier,
                    "package": package,
                    "families": f"{seen[package]},{family}",
                },
            )
        seen[package] = family


def _log(
    logger: StructuredLogger | None,
    variant: VariantSpec,
    operation: str,
    message: str,
    extra: dict[str, object] | None = None,
) -> None:
    if logger is None:
        return
    logger.log(
        operation=operation,
        stage="build",
        variant=variant.identifier,
        message=message,
        extra=extra,
    )

"""Core typed dataclasses for variant specs, artifacts and image descriptors."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Literal

import cbor2

VariantId = Literal["release", "debug", "adhoc", "coverage"]
BuildType = Literal["release", "debug"]
MatchMode = Literal["prefix", "segment"]
LayeringKind = Literal["flat", "layered"]
FailureKind = Literal["variant", "artifact", "image"]

VARIANT_IDS: tuple[VariantId, ...] = ("release", "debug", "adhoc", "coverage")

# containerd misbehaves with too many layers: https://github.com/containerd/containerd/issues/4684
DEFAULT_MAX_LAYERS = 42

CUSTOMISATION_ITEM = "customisation"


@dataclass(frozen=True, slots=True)
class BuildTarget:
    name: str
    entrypoint: str

    @classmethod
    def binary(cls, name: str) -> BuildTarget:
        return cls(name=name, entrypoint=f"/bin/{name}")


@dataclass(frozen=True, slots=True)
class SourceWhitelist:
    """Ordered allow-list of root-relative path prefixes."""

    prefixes: tuple[str, ...]
    match: MatchMode = "prefix"

    def matches(self, relative: str) -> bool:
        return any(self._match_one(prefix, relative) for prefix in self.prefixes)

    def _match_one(self, prefix: str, relative: str) -> bool:
        if self.match == "prefix":
            # Plain string prefix: "csi" also selects "csi-legacy/" and "cside/".
            return relative.startswith(prefix)
        prefix_parts = PurePosixPath(prefix).parts
        return PurePosixPath(relative).parts[: len(prefix_parts)] == prefix_parts


@dataclass(frozen=True, slots=True)
class FilteredTree:
    root: Path
    files: tuple[str, ...]
    digest: str


@dataclass(frozen=True, slots=True)
class BaseSpec:
    """Build inputs shared by every variant."""

    name: str
    targets: tuple[BuildTarget, ...]
    dependencies: Mapping[str, str] = field(default_factory=dict)
    flags: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    dependency_env: Mapping[str, str] = field(default_factory=dict)
    check_enabled: bool = False
    fixup_targets: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class VariantOverride:
    """Per-variant structural override; ``None`` inherits from the base spec."""

    identifier: VariantId
    build_type: BuildType | None = None
    dependencies: Mapping[str, str] = field(default_factory=dict)
    flags: tuple[str, ...] | None = None
    extra_flags: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    check_enabled: bool | None = None


@dataclass(frozen=True, slots=True)
class VariantSpec:
    identifier: VariantId
    build_type: BuildType
    targets: tuple[BuildTarget, ...]
    dependencies: Mapping[str, str]
    flags: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    dependency_env: Mapping[str, str] = field(default_factory=dict)
    check_enabled: bool = False
    fixup_targets: tuple[str, ...] = ()

    @property
    def target_names(self) -> tuple[str, ...]:
        return tuple(target.name for target in self.targets)

    def payload(self) -> dict[str, Any]:
        return {
            "identifier": self.identifier,
            "build_type": self.build_type,
            "targets": [target.name for target in self.targets],
            "dependencies": dict(sorted(self.dependencies.items())),
            "flags": list(self.flags),
            "env": dict(sorted(self.env.items())),
            "dependency_env": dict(sorted(self.dependency_env.items())),
            "check_enabled": self.check_enabled,
            "fixup_targets": list(self.fixup_targets),
        }

    def digest(self) -> str:
        canonical = json.dumps(self.payload(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True, slots=True)
class BuildContext:
    """Per-invocation values shared read-only by every pipeline branch."""

    version: str
    created: str
    interpreter: str
    env: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Artifact:
    name: str
    path: Path
    variant: VariantId
    version: str
    lib_dir: Path | None = None
    interpreter: str | None = None
    rpath: str | None = None
    fixed: bool = False


@dataclass(frozen=True, slots=True)
class LayeringMode:
    kind: LayeringKind = "flat"
    max_layers: int | None = None

    @classmethod
    def flat(cls) -> LayeringMode:
        return cls(kind="flat")

    @classmethod
    def layered(cls, max_layers: int = DEFAULT_MAX_LAYERS) -> LayeringMode:
        return cls(kind="layered", max_layers=max_layers)


@dataclass(frozen=True, slots=True)
class ImageSpec:
    name: str
    variant: VariantId
    entrypoint: tuple[str, ...] = ()
    exposed_ports: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    extra_dirs: tuple[str, ...] = ()
    tools: tuple[str, ...] = ("busybox",)
    include_iscsiadm: bool = False
    layering: LayeringMode = field(default_factory=LayeringMode.flat)


@dataclass(frozen=True, slots=True)
class ContentItem:
    """One unit of image content plus the names of the items it depends on."""

    name: str
    files: tuple[tuple[str, Path], ...] = ()
    generated: tuple[tuple[str, str], ...] = ()
    directories: tuple[str, ...] = ()
    references: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ImageDescriptor:
    name: str
    tag: str
    created: str
    config: Mapping[str, Any]
    contents: tuple[ContentItem, ...]
    layering: LayeringMode

    @property
    def reference(self) -> str:
        return f"{self.name}:{self.tag}"

    def item(self, name: str) -> ContentItem:
        for item in self.contents:
            if item.name == name:
                return item
        raise KeyError(name)

    def to_json(self, path: str | Path | None = None) -> str:
        encoded = json.dumps(self._payload(), indent=2, sort_keys=True) + "\n"
        if path is not None:
            Path(path).write_text(encoded, encoding="utf-8")
        return encoded

    def to_cbor(self, path: str | Path | None = None) -> bytes:
        encoded = cbor2.dumps(self._payload(), canonical=True)
        if path is not None:
            Path(path).write_bytes(encoded)
        return encoded

    def _payload(self) -> dict[str, object]:
        return {
            "name": self.name,
            "tag": self.tag,
            "created": self.created,
            "config": _plain(self.config),
            "layering": {"kind": self.layering.kind, "max_layers": self.layering.max_layers},
            "contents": [
                {
                    "name": item.name,
                    "files": sorted(
                        [image_path for image_path, _ in item.files]
                        + [image_path for image_path, _ in item.generated]
                    ),
                    "directories": list(item.directories),
                    "references": list(item.references),
                }
                for item in self.contents
            ],
        }


@dataclass(frozen=True, slots=True)
class Layer:
    index: int
    items: tuple[str, ...]
    size: int
    digest: str


@dataclass(frozen=True, slots=True)
class StageFailure:
    kind: FailureKind
    identifier: str
    code: str
    message: str
    context: Mapping[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind,
            "identifier": self.identifier,
            "code": self.code,
            "message": self.message,
            "context": dict(self.context),
        }


def _plain(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k): _plain(v) for k, v in sorted(value.items())}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


__all__ = [
    "Artifact",
    "BaseSpec",
    "BuildContext",
    "BuildTarget",
    "BuildType",
    "CUSTOMISATION_ITEM",
    "ContentItem",
    "DEFAULT_MAX_LAYERS",
    "FailureKind",
    "FilteredTree",
    "ImageDescriptor",
    "ImageSpec",
    "Layer",
    "LayeringKind",
    "LayeringMode",
    "MatchMode",
    "SourceWhitelist",
    "StageFailure",
    "VARIANT_IDS",
    "VariantId",
    "VariantOverride",
    "VariantSpec",
]

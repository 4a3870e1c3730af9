"""Pipeline configuration: the default engine matrix and JSON loading."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, cast

from enginebake.composer import DEFAULT_PATH_TOOLS
from enginebake.errors import ConfigurationError
from enginebake.models import (
    VARIANT_IDS,
    BaseSpec,
    BuildTarget,
    ImageSpec,
    LayeringMode,
    SourceWhitelist,
    VariantId,
    VariantOverride,
)

DEFAULT_WHITELIST = (
    ".git",
    "Cargo.lock",
    "Cargo.toml",
    "cli",
    "composer",
    "csi",
    "devinfo",
    "jsonrpc",
    "mayastor",
    "mbus-api",
    "nvmeadm",
    "rpc",
    "spdk-rs",
    "sysfs",
)

DEFAULT_TARGETS = ("mayastor", "mayastor-client", "mayastor-csi")

DEFAULT_DEPENDENCIES = {
    "aio": "libaio",
    "bsd": "libbsd",
    "numa": "numactl",
    "pcap": "libpcap",
    "spdk": "libspdk",
    "ssl": "openssl",
    "udev": "libudev",
    "uring": "liburing",
    "util-linux": "utillinux",
}

ENGINE_PORT = "10124/tcp"


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    whitelist: SourceWhitelist
    base: BaseSpec
    variants: tuple[VariantOverride, ...]
    images: tuple[ImageSpec, ...]
    runtime_lib_dir: str = "/lib"
    path_tools: tuple[str, ...] = DEFAULT_PATH_TOOLS

    def image(self, name: str) -> ImageSpec:
        for image in self.images:
            if image.name == name:
                return image
        raise ConfigurationError(
            "Unknown image.",
            context={"operation": "select_images", "image": name},
        )


def default_config() -> PipelineConfig:
    base = BaseSpec(
        name="mayastor",
        targets=tuple(BuildTarget.binary(name) for name in DEFAULT_TARGETS),
        dependencies=dict(DEFAULT_DEPENDENCIES),
        dependency_env={"spdk": "SPDK_PATH"},
        fixup_targets=DEFAULT_TARGETS,
    )
    variants = (
        VariantOverride(identifier="release", build_type="release", dependencies={"spdk": "libspdk"}),
        VariantOverride(identifier="debug", build_type="debug", dependencies={"spdk": "libspdk-dev"}),
        # Unoptimised engine code against the optimised SPDK build.
        VariantOverride(identifier="adhoc", build_type="debug", dependencies={"spdk": "libspdk"}),
        VariantOverride(
            identifier="coverage",
            build_type="debug",
            dependencies={"spdk": "libspdk-dev"},
            extra_flags=("-C", "instrument-coverage"),
            env={"LLVM_PROFILE_FILE": "mayastor-%p-%m.profraw"},
            check_enabled=True,
        ),
    )
    engine = {"entrypoint": ("/bin/mayastor",), "exposed_ports": (ENGINE_PORT,)}
    csi = {"entrypoint": ("/bin/mayastor-csi",), "include_iscsiadm": True}
    images = (
        ImageSpec(name="mayadata/mayastor", variant="release", **engine),
        ImageSpec(name="mayadata/mayastor-dev", variant="debug", **engine),
        ImageSpec(name="mayadata/mayastor-adhoc", variant="adhoc", **engine),
        ImageSpec(
            name="mayadata/mayastor-csi",
            variant="release",
            layering=LayeringMode.layered(),
            **csi,
        ),
        ImageSpec(name="mayadata/mayastor-csi-dev", variant="debug", **csi),
        ImageSpec(
            name="mayadata/mayastor-client",
            variant="release",
            entrypoint=("/bin/mayastor-client",),
        ),
    )
    return PipelineConfig(
        whitelist=SourceWhitelist(DEFAULT_WHITELIST),
        base=base,
        variants=variants,
        images=images,
    )


def validate_config(config: PipelineConfig) -> None:
    declared = [override.identifier for override in config.variants]
    if not config.base.targets:
        raise ConfigurationError(
            "Base spec declares no build targets.",
            context={"operation": "validate_config"},
        )
    target_names = {target.name for target in config.base.targets}
    unknown_fixups = sorted(set(config.base.fixup_targets) - target_names)
    if unknown_fixups:
        raise ConfigurationError(
            "Fixup targets must be build targets.",
            context={"operation": "validate_config", "targets": ",".join(unknown_fixups)},
        )
    seen: set[str] = set()
    for image in config.images:
        if image.name in seen:
            raise ConfigurationError(
                "Image is declared more than once.",
                context={"operation": "validate_config", "image": image.name},
            )
        seen.add(image.name)
        if image.variant not in declared:
            raise ConfigurationError(
                "Image uses a variant that is not declared.",
                hint=f"Declared variants: {', '.join(declared) or 'none'}.",
                context={
                    "operation": "validate_config",
                    "image": image.name,
                    "variant": image.variant,
                },
            )


def load_config(path: str | Path) -> PipelineConfig:
    """Read a JSON pipeline configuration; omitted sections keep their defaults."""
    config_path = Path(path)
    try:
        raw = config_path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ConfigurationError(
            "Configuration file does not exist.",
            context={"operation": "load_config", "path": str(config_path)},
        ) from exc
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(
            "Invalid configuration JSON.",
            hint=str(exc),
            context={"operation": "load_config", "path": str(config_path)},
        ) from exc
    if not isinstance(payload, dict):
        raise ConfigurationError("Invalid configuration payload type.")
    return parse_config(payload)


def parse_config(payload: dict[str, Any]) -> PipelineConfig:
    defaults = default_config()
    whitelist = defaults.whitelist
    if "whitelist" in payload:
        section = _required_dict(payload, "whitelist")
        whitelist = SourceWhitelist(
            prefixes=_str_tuple(section, "prefixes"),
            match=cast(Any, _choice(section, "match", ("prefix", "segment"), default="prefix")),
        )
    base = _parse_base(_required_dict(payload, "base")) if "base" in payload else defaults.base
    variants = defaults.variants
    if "variants" in payload:
        variants = tuple(_parse_variant(item) for item in _required_list(payload, "variants"))
    images = defaults.images
    if "images" in payload:
        images = tuple(_parse_image(item) for item in _required_list(payload, "images"))
    config = PipelineConfig(
        whitelist=whitelist,
        base=base,
        variants=variants,
        images=images,
        runtime_lib_dir=_optional_str(payload, "runtime_lib_dir") or defaults.runtime_lib_dir,
        path_tools=_str_tuple(payload, "path_tools") if "path_tools" in payload else defaults.path_tools,
    )
    validate_config(config)
    return config


def config_payload(config: PipelineConfig) -> dict[str, Any]:
    base = config.base
    return {
        "whitelist": {"prefixes": list(config.whitelist.prefixes), "match": config.whitelist.match},
        "base": {
            "name": base.name,
            "targets": [target.name for target in base.targets],
            "dependencies": dict(sorted(base.dependencies.items())),
            "flags": list(base.flags),
            "env": dict(sorted(base.env.items())),
            "dependency_env": dict(sorted(base.dependency_env.items())),
            "check_enabled": base.check_enabled,
            "fixup_targets": list(base.fixup_targets),
        },
        "variants": [
            {
                "identifier": override.identifier,
                "build_type": override.build_type,
                "dependencies": dict(sorted(override.dependencies.items())),
                "flags": None if override.flags is None else list(override.flags),
                "extra_flags": list(override.extra_flags),
                "env": dict(sorted(override.env.items())),
                "check_enabled": override.check_enabled,
            }
            for override in config.variants
        ],
        "images": [
            {
                "name": image.name,
                "variant": image.variant,
                "entrypoint": list(image.entrypoint),
                "exposed_ports": list(image.exposed_ports),
                "env": dict(sorted(image.env.items())),
                "extra_dirs": list(image.extra_dirs),
                "tools": list(image.tools),
                "include_iscsiadm": image.include_iscsiadm,
                "layering": {
                    "kind": image.layering.kind,
                    "max_layers": image.layering.max_layers,
                },
            }
            for image in config.images
        ],
        "runtime_lib_dir": config.runtime_lib_dir,
        "path_tools": list(config.path_tools),
    }


def _parse_base(section: dict[str, Any]) -> BaseSpec:
    return BaseSpec(
        name=_required_str(section, "name"),
        targets=tuple(BuildTarget.binary(name) for name in _str_tuple(section, "targets")),
        dependencies=_str_map(section, "dependencies"),
        flags=_str_tuple(section, "flags"),
        env=_str_map(section, "env"),
        dependency_env=_str_map(section, "dependency_env"),
        check_enabled=_optional_bool(section, "check_enabled") or False,
        fixup_targets=_str_tuple(section, "fixup_targets"),
    )


def _parse_variant(item: Any) -> VariantOverride:
    if not isinstance(item, dict):
        raise ConfigurationError("Invalid variant entry in configuration.")
    identifier = cast(VariantId, _choice(item, "identifier", VARIANT_IDS))
    build_type = item.get("build_type")
    if build_type is not None and build_type not in ("release", "debug"):
        raise ConfigurationError(
            "Invalid configuration `build_type` value.",
            context={"variant": identifier},
        )
    flags = item.get("flags")
    return VariantOverride(
        identifier=identifier,
        build_type=build_type,
        dependencies=_str_map(item, "dependencies"),
        flags=None if flags is None else _str_tuple(item, "flags"),
        extra_flags=_str_tuple(item, "extra_flags"),
        env=_str_map(item, "env"),
        check_enabled=_optional_bool(item, "check_enabled"),
    )


def _parse_image(item: Any) -> ImageSpec:
    if not isinstance(item, dict):
        raise ConfigurationError("Invalid image entry in configuration.")
    layering = LayeringMode.flat()
    if "layering" in item:
        section = _required_dict(item, "layering")
        kind = _choice(section, "kind", ("flat", "layered"))
        if kind == "layered":
            max_layers = section.get("max_layers", LayeringMode.layered().max_layers)
            if not isinstance(max_layers, int) or isinstance(max_layers, bool):
                raise ConfigurationError("Invalid configuration `max_layers` value.")
            layering = LayeringMode.layered(max_layers)
    return ImageSpec(
        name=_required_str(item, "name"),
        variant=cast(VariantId, _choice(item, "variant", VARIANT_IDS)),
        entrypoint=_str_tuple(item, "entrypoint"),
        exposed_ports=_str_tuple(item, "exposed_ports"),
        env=_str_map(item, "env"),
        extra_dirs=_str_tuple(item, "extra_dirs"),
        tools=_str_tuple(item, "tools") if "tools" in item else ("busybox",),
        include_iscsiadm=_optional_bool(item, "include_iscsiadm") or False,
        layering=layering,
    )


def _required_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigurationError(f"Invalid configuration `{key}` value.")
    return value


def _optional_str(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigurationError(f"Invalid configuration `{key}` value.")
    return value


def _optional_bool(payload: dict[str, Any], key: str) -> bool | None:
    value = payload.get(key)
    if value is not None and not isinstance(value, bool):
        raise ConfigurationError(f"Invalid configuration `{key}` value.")
    return value


def _choice(
    payload: dict[str, Any],
    key: str,
    choices: tuple[str, ...],
    *,
    default: str | None = None,
) -> str:
    value = payload.get(key, default)
    if value not in choices:
        raise ConfigurationError(
            f"Invalid configuration `{key}` value.",
            hint=f"Use one of: {', '.join(choices)}.",
        )
    return cast(str, value)


def _required_dict(payload: dict[str, Any], key: str) -> dict[str, Any]:
    value = payload.get(key)
    if not isinstance(value, dict):
        raise ConfigurationError(f"Invalid configuration `{key}` value.")
    return value


def _required_list(payload: dict[str, Any], key: str) -> list[Any]:
    value = payload.get(key)
    if not isinstance(value, list):
        raise ConfigurationError(f"Invalid configuration `{key}` value.")
    return value


def _str_tuple(payload: dict[str, Any], key: str) -> tuple[str, ...]:
    value = payload.get(key, [])
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigurationError(f"Invalid configuration `{key}` value.")
    return tuple(value)


def _str_map(payload: dict[str, Any], key: str) -> dict[str, str]:
    value = payload.get(key, {})
    if not isinstance(value, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in value.items()
    ):
        raise ConfigurationError(f"Invalid configuration `{key}` value.")
    return dict(value)

"""Image composition: turn variant artifacts and tools into an image descriptor."""

from __future__ import annotations

import textwrap
from collections.abc import Mapping, Sequence
from pathlib import Path

from enginebake.errors import ConfigurationError
from enginebake.models import (
    CUSTOMISATION_ITEM,
    Artifact,
    BuildContext,
    ContentItem,
    ImageDescriptor,
    ImageSpec,
)
from enginebake.observability import StructuredLogger

# Tools whose bin directories make up the base PATH of every image.
DEFAULT_PATH_TOOLS = ("busybox", "xfsprogs", "e2fsprogs", "util-linux")

RUNTIME_DIRS = ("tmp", "var/tmp")

ISCSIADM_WRAPPER_NAME = "mayastor-iscsiadm"
ISCSIADM_WRAPPER = textwrap.dedent("""\
    #!/bin/sh
    chroot /host /usr/bin/env -i PATH="/sbin:/bin:/usr/bin" iscsiadm "$@"
""")


def iscsiadm_wrapper() -> ContentItem:
    """Wrapper that runs the host's iscsiadm in a chroot with a clean environment."""
    return ContentItem(
        name=ISCSIADM_WRAPPER_NAME,
        generated=((f"/bin/{ISCSIADM_WRAPPER_NAME}", ISCSIADM_WRAPPER),),
        references=("busybox",),
    )


def tool_item(name: str, root: Path) -> ContentItem:
    files = tuple(
        (f"/{path.relative_to(root).as_posix()}", path)
        for path in sorted(root.rglob("*"))
        if path.is_file()
    )
    return ContentItem(name=name, files=files)


def compose_path(tools: Mapping[str, Path], path_tools: Sequence[str]) -> str:
    entries: list[str] = []
    for name in path_tools:
        root = tools[name]
        for bin_dir in ("bin", "sbin"):
            entry = f"/{bin_dir}"
            if (root / bin_dir).is_dir() and entry not in entries:
                entries.append(entry)
    return ":".join(entries) or "/bin"


def compose_image(
    spec: ImageSpec,
    artifacts: Sequence[Artifact],
    aux_tools: Mapping[str, Path],
    context: BuildContext,
    *,
    path_tools: Sequence[str] = DEFAULT_PATH_TOOLS,
    runtime_lib_dir: str = "/lib",
    logger: StructuredLogger | None = None,
) -> ImageDescriptor:
    """Assemble the descriptor for *spec* from its variant's artifacts.

    *aux_tools* maps tool names to the root of their dependency closure. The
    image always carries the base toolset, every PATH tool, the variant's
    binaries with their bundled libraries, and the runtime temp directories.
    """
    _validate_artifacts(spec, artifacts, context)
    tool_names = list(dict.fromkeys([*spec.tools, *path_tools]))
    missing_tools = [name for name in tool_names if name not in aux_tools]
    if missing_tools:
        raise ConfigurationError(
            "Image needs tools whose closures were not supplied.",
            context={"operation": "compose", "image": spec.name, "tools": ",".join(missing_tools)},
        )

    contents: list[ContentItem] = [tool_item(name, aux_tools[name]) for name in tool_names]
    contents.extend(_artifact_items(artifacts, runtime_lib_dir))
    if spec.include_iscsiadm:
        contents.append(iscsiadm_wrapper())
    contents.append(
        ContentItem(
            name=CUSTOMISATION_ITEM,
            directories=tuple(dict.fromkeys([*RUNTIME_DIRS, *spec.extra_dirs])),
        )
    )

    provided = {image_path for item in contents for image_path, _ in (*item.files, *item.generated)}
    if spec.entrypoint and spec.entrypoint[0] not in provided:
        raise ConfigurationError(
            "Image entrypoint is not provided by the image content.",
            context={"operation": "compose", "image": spec.name, "entrypoint": spec.entrypoint[0]},
        )

    config: dict[str, object] = {
        "Env": [
            f"PATH={compose_path(aux_tools, path_tools)}",
            *(f"{key}={value}" for key, value in sorted(spec.env.items())),
        ],
    }
    if spec.exposed_ports:
        config["ExposedPorts"] = {port: {} for port in spec.exposed_ports}
    if spec.entrypoint:
        config["Entrypoint"] = list(spec.entrypoint)

    descriptor = ImageDescriptor(
        name=spec.name,
        tag=context.version,
        created=context.created,
        config=config,
        contents=tuple(contents),
        layering=spec.layering,
    )
    if logger is not None:
        logger.log(
            operation="compose",
            stage="compose",
            image=spec.name,
            variant=spec.variant,
            message="Composed image descriptor.",
            extra={"reference": descriptor.reference, "items": len(descriptor.contents)},
        )
    return descriptor


def _artifact_items(artifacts: Sequence[Artifact], runtime_lib_dir: str) -> list[ContentItem]:
    items: list[ContentItem] = []
    lib_items: dict[str, ContentItem] = {}
    for artifact in artifacts:
        references: tuple[str, ...] = ()
        if artifact.lib_dir is not None and artifact.lib_dir.is_dir():
            lib_name = f"{artifact.variant}/lib"
            if lib_name not in lib_items:
                libs = tuple(
                    (f"{runtime_lib_dir.rstrip('/')}/{path.name}", path)
                    for path in sorted(artifact.lib_dir.iterdir())
                    if path.is_file()
                )
                lib_items[lib_name] = ContentItem(name=lib_name, files=libs)
            if lib_items[lib_name].files:
                references = (lib_name,)
        items.append(
            ContentItem(
                name=f"{artifact.variant}/{artifact.name}",
                files=((f"/bin/{artifact.name}", artifact.path),),
                references=references,
            )
        )
    return [*(item for item in lib_items.values() if item.files), *items]


def _validate_artifacts(spec: ImageSpec, artifacts: Sequence[Artifact], context: BuildContext) -> None:
    if not artifacts:
        raise ConfigurationError(
            "Image variant produced no artifacts.",
            context={"operation": "compose", "image": spec.name, "variant": spec.variant},
        )
    for artifact in artifacts:
        if artifact.variant != spec.variant or artifact.version != context.version:
            raise ConfigurationError(
                "Artifact does not belong to this image's variant and version.",
                context={
                    "operation": "compose",
                    "image": spec.name,
                    "artifact": artifact.name,
                    "variant": artifact.variant,
                    "version": artifact.version,
                },
            )

"""Layer placement for composed images.

Layered images get one natural layer per content item, most-referenced items
first, with the customisation layer (runtime directories) last. When that
exceeds the layer bound, the smallest layer is merged into its smaller
neighbour until the bound holds.

The placement is not balanced: typically a few layers of negligible size sit
next to one big layer holding everything else.
"""

from __future__ import annotations

import hashlib
from collections import Counter
from collections.abc import Sequence

from enginebake.errors import LayeringError
from enginebake.models import CUSTOMISATION_ITEM, ContentItem, ImageDescriptor, Layer
from enginebake.observability import StructuredLogger


def plan_layers(
    descriptor: ImageDescriptor,
    *,
    logger: StructuredLogger | None = None,
) -> tuple[Layer, ...]:
    mode = descriptor.layering
    if mode.kind == "flat":
        groups = [list(descriptor.contents)]
        max_layers = 1
    else:
        if mode.max_layers is None or mode.max_layers < 1:
            raise LayeringError(
                "Layered images need a positive layer bound.",
                context={
                    "operation": "layer",
                    "image": descriptor.name,
                    "max_layers": str(mode.max_layers),
                },
            )
        max_layers = mode.max_layers
        groups = natural_layers(descriptor.contents)

    sizes = [sum(_item_size(descriptor.name, item) for item in group) for group in groups]
    natural_count = len(groups)
    groups, sizes = coalesce(groups, sizes, max_layers)
    if len(groups) > max_layers:
        raise LayeringError(
            "Layer count exceeds the bound after coalescing.",
            context={
                "operation": "layer",
                "image": descriptor.name,
                "layers": str(len(groups)),
                "max_layers": str(max_layers),
            },
        )

    layers = tuple(
        Layer(
            index=index,
            items=tuple(item.name for item in group),
            size=size,
            digest=_layer_digest(group),
        )
        for index, (group, size) in enumerate(zip(groups, sizes, strict=True))
    )
    if logger is not None:
        logger.log(
            operation="layer",
            stage="layer",
            image=descriptor.name,
            message="Planned image layers.",
            extra={
                "mode": mode.kind,
                "natural_layers": natural_count,
                "layers": len(layers),
                "max_layers": max_layers,
            },
        )
    return layers


def natural_layers(contents: Sequence[ContentItem]) -> list[list[ContentItem]]:
    popularity = Counter(ref for item in contents for ref in item.references)
    body = sorted(
        (item for item in contents if item.name != CUSTOMISATION_ITEM),
        key=lambda item: (-popularity[item.name], item.name),
    )
    groups = [[item] for item in body]
    customisation = [item for item in contents if item.name == CUSTOMISATION_ITEM]
    if customisation:
        groups.append(customisation)
    return groups or [[]]


def coalesce(
    groups: list[list[ContentItem]],
    sizes: list[int],
    max_layers: int,
) -> tuple[list[list[ContentItem]], list[int]]:
    """Merge the smallest layer into its smaller neighbour until within bound."""
    groups = [list(group) for group in groups]
    sizes = list(sizes)
    while len(groups) > max(max_layers, 1):
        smallest = min(range(len(groups)), key=lambda index: (sizes[index], index))
        if smallest == 0:
            neighbour = 1
        elif smallest == len(groups) - 1:
            neighbour = smallest - 1
        elif sizes[smallest - 1] <= sizes[smallest + 1]:
            neighbour = smallest - 1
        else:
            neighbour = smallest + 1
        low, high = sorted((smallest, neighbour))
        groups[low] = groups[low] + groups[high]
        sizes[low] += sizes[high]
        del groups[high]
        del sizes[high]
    return groups, sizes


def _item_size(image: str, item: ContentItem) -> int:
    size = sum(len(text.encode("utf-8")) for _, text in item.generated)
    for image_path, host_path in item.files:
        try:
            size += host_path.stat().st_size
        except FileNotFoundError as exc:
            raise LayeringError(
                "Image content file is missing.",
                context={
                    "operation": "layer",
                    "image": image,
                    "item": item.name,
                    "path": image_path,
                },
            ) from exc
    return size


def _layer_digest(group: Sequence[ContentItem]) -> str:
    entries: list[str] = []
    for item in group:
        for image_path, host_path in item.files:
            entries.append(f"f {image_path} {hashlib.sha256(host_path.read_bytes()).hexdigest()}")
        for image_path, text in item.generated:
            entries.append(f"f {image_path} {hashlib.sha256(text.encode('utf-8')).hexdigest()}")
        for directory in item.directories:
            entries.append(f"d {directory}")
    canonical = "\n".join(sorted(entries))
    return "sha256:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()

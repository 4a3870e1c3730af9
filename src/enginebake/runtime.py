"""Container-runtime collaborator: serialise planned images to disk.

``ArchiveImageWriter`` produces a docker-archive style directory
(``manifest.json``, ``config.json`` and one tarball per layer) that
``docker load`` style tooling can consume. Tarballs are written with fixed
ownership and timestamps so identical inputs give identical layer bytes.
"""

from __future__ import annotations

import hashlib
import io
import json
import tarfile
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Protocol

from enginebake.models import ContentItem, ImageDescriptor, Layer
from enginebake.observability import StructuredLogger


class ImageWriter(Protocol):
    def write(self, descriptor: ImageDescriptor, layers: Sequence[Layer]) -> Path:
        """Write the image and return the path of the loadable artifact."""


@dataclass(slots=True)
class ArchiveImageWriter:
    root: Path
    architecture: str = "amd64"
    logger: StructuredLogger | None = None

    def write(self, descriptor: ImageDescriptor, layers: Sequence[Layer]) -> Path:
        image_dir = self.root / descriptor.name / descriptor.tag
        image_dir.mkdir(parents=True, exist_ok=True)

        layer_files: list[str] = []
        diff_ids: list[str] = []
        for layer in layers:
            items = [descriptor.item(name) for name in layer.items]
            payload = _layer_tarball(items)
            filename = f"layer-{layer.index}.tar"
            (image_dir / filename).write_bytes(payload)
            layer_files.append(filename)
            diff_ids.append("sha256:" + hashlib.sha256(payload).hexdigest())

        config = {
            "architecture": self.architecture,
            "os": "linux",
            "created": descriptor.created,
            "config": json.loads(json.dumps(dict(descriptor.config))),
            "rootfs": {"type": "layers", "diff_ids": diff_ids},
        }
        _write_json(image_dir / "config.json", config)
        _write_json(
            image_dir / "manifest.json",
            [{"Config": "config.json", "RepoTags": [descriptor.reference], "Layers": layer_files}],
        )
        descriptor.to_json(image_dir / "descriptor.json")

        if self.logger is not None:
            self.logger.log(
                operation="write_image",
                stage="write",
                image=descriptor.name,
                message="Wrote image archive.",
                extra={"path": str(image_dir), "layers": len(layer_files)},
            )
        return image_dir


def _layer_tarball(items: Sequence[ContentItem]) -> bytes:
    entries: dict[str, tuple[str, bytes | None, int]] = {}
    for item in items:
        for directory in item.directories:
            _add_parents(entries, directory)
            entries[_clean(directory)] = ("dir", None, 0o755)
        for image_path, host_path in item.files:
            _add_parents(entries, image_path)
            entries[_clean(image_path)] = (
                "file",
                host_path.read_bytes(),
                host_path.stat().st_mode & 0o777,
            )
        for image_path, text in item.generated:
            _add_parents(entries, image_path)
            entries[_clean(image_path)] = ("file", text.encode("utf-8"), 0o755)

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w", format=tarfile.PAX_FORMAT) as archive:
        for name in sorted(entries):
            kind, data, mode = entries[name]
            info = tarfile.TarInfo(name)
            info.mode = mode
            info.mtime = 0
            info.uid = info.gid = 0
            info.uname = info.gname = ""
            if kind == "dir":
                info.type = tarfile.DIRTYPE
                archive.addfile(info)
            else:
                content = data or b""
                info.size = len(content)
                archive.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


def _add_parents(entries: dict[str, tuple[str, bytes | None, int]], image_path: str) -> None:
    for parent in reversed(PurePosixPath(_clean(image_path)).parents):
        name = parent.as_posix()
        if name != "." and name not in entries:
            entries[name] = ("dir", None, 0o755)


def _clean(image_path: str) -> str:
    return image_path.strip("/")


def _write_json(path: Path, payload: object) -> None:
    path.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")

import io
import json
import tarfile
from pathlib import Path

from enginebake.layering import plan_layers
from enginebake.models import CUSTOMISATION_ITEM, ContentItem, ImageDescriptor, LayeringMode
from enginebake.observability import StructuredLogger
from enginebake.runtime import ArchiveImageWriter


def _descriptor(tmp_path: Path, layering: LayeringMode) -> ImageDescriptor:
    binary = tmp_path / "mayastor-csi"
    binary.write_bytes(b"\x7fELF\nplaceholder\n")
    binary.chmod(0o755)
    return ImageDescriptor(
        name="mayadata/mayastor-csi",
        tag="v0.8.0-12-g1a2b3c4",
        created="2021-03-01T12:00:00+00:00",
        config={"Env": ["PATH=/bin"], "Entrypoint": ["/bin/mayastor-csi"]},
        contents=(
            ContentItem(name="release/mayastor-csi", files=(("/bin/mayastor-csi", binary),)),
            ContentItem(
                name="mayastor-iscsiadm",
                generated=(("/bin/mayastor-iscsiadm", "#!/bin/sh\n"),),
            ),
            ContentItem(name=CUSTOMISATION_ITEM, directories=("tmp", "var/tmp")),
        ),
        layering=layering,
    )


def _members(path: Path) -> dict[str, tarfile.TarInfo]:
    with tarfile.open(path) as archive:
        return {member.name: member for member in archive.getmembers()}


def test_archive_layout_and_manifest(tmp_path: Path) -> None:
    descriptor = _descriptor(tmp_path, LayeringMode.layered(2))
    layers = plan_layers(descriptor)
    logger = StructuredLogger()

    image_dir = ArchiveImageWriter(tmp_path / "images", logger=logger).write(descriptor, layers)

    assert image_dir == tmp_path / "images" / "mayadata/mayastor-csi" / "v0.8.0-12-g1a2b3c4"
    manifest = json.loads((image_dir / "manifest.json").read_text(encoding="utf-8"))
    assert manifest == [
        {
            "Config": "config.json",
            "RepoTags": ["mayadata/mayastor-csi:v0.8.0-12-g1a2b3c4"],
            "Layers": ["layer-0.tar", "layer-1.tar"],
        }
    ]
    config = json.loads((image_dir / "config.json").read_text(encoding="utf-8"))
    assert config["created"] == "2021-03-01T12:00:00+00:00"
    assert config["config"]["Entrypoint"] == ["/bin/mayastor-csi"]
    assert len(config["rootfs"]["diff_ids"]) == 2
    assert (image_dir / "descriptor.json").is_file()
    assert logger.records_for_image("mayadata/mayastor-csi")[0]["extra"]["layers"] == 2


def test_layer_tarballs_hold_files_and_directories(tmp_path: Path) -> None:
    descriptor = _descriptor(tmp_path, LayeringMode.flat())

    image_dir = ArchiveImageWriter(tmp_path / "images").write(descriptor, plan_layers(descriptor))

    members = _members(image_dir / "layer-0.tar")
    assert sorted(members) == [
        "bin",
        "bin/mayastor-csi",
        "bin/mayastor-iscsiadm",
        "tmp",
        "var",
        "var/tmp",
    ]
    assert members["tmp"].isdir()
    assert members["bin/mayastor-iscsiadm"].mode == 0o755
    assert members["bin/mayastor-csi"].mtime == 0
    assert members["bin/mayastor-csi"].uid == 0
    with tarfile.open(image_dir / "layer-0.tar") as archive:
        extracted = archive.extractfile("bin/mayastor-iscsiadm")
        assert extracted is not None
        assert extracted.read() == b"#!/bin/sh\n"


def test_layer_bytes_are_reproducible(tmp_path: Path) -> None:
    descriptor = _descriptor(tmp_path, LayeringMode.layered(3))
    layers = plan_layers(descriptor)

    first = ArchiveImageWriter(tmp_path / "first").write(descriptor, layers)
    second = ArchiveImageWriter(tmp_path / "second").write(descriptor, layers)

    for index in range(len(layers)):
        payload = (first / f"layer-{index}.tar").read_bytes()
        assert payload == (second / f"layer-{index}.tar").read_bytes()
        with tarfile.open(fileobj=io.BytesIO(payload)) as archive:
            assert archive.getnames()

import json
from collections.abc import Sequence
from pathlib import Path

import pytest

from enginebake.config import default_config
from enginebake.errors import ConfigurationError, FixupError
from enginebake.fixup import InProcessPatcher, Patcher
from enginebake.models import BuildContext, ImageDescriptor, Layer
from enginebake.observability import StructuredLogger
from enginebake.pipeline import Pipeline
from enginebake.toolchain import CompileRequest
from enginebake.toolchain.inprocess import InProcessToolchain, parse_placeholder


def _pipeline(
    tmp_path: Path,
    toolchain: InProcessToolchain | None = None,
    patcher: Patcher | None = None,
) -> Pipeline:
    return Pipeline(
        config=default_config(),
        toolchain=toolchain or InProcessToolchain(store=tmp_path / "store"),
        patcher=patcher or InProcessPatcher(),
        logger=StructuredLogger(),
        max_workers=4,
    )


def test_full_matrix_builds_every_variant_and_image(
    repo: Path, tmp_path: Path, context: BuildContext
) -> None:
    toolchain = InProcessToolchain(store=tmp_path / "store")
    pipeline = _pipeline(tmp_path, toolchain=toolchain)

    report = pipeline.run(repo, tmp_path / "out", context=context)

    assert report.ok
    assert report.exit_code == 0
    assert sorted(report.variants) == ["adhoc", "coverage", "debug", "release"]
    assert sorted(report.images) == [
        "mayadata/mayastor",
        "mayadata/mayastor-adhoc",
        "mayadata/mayastor-client",
        "mayadata/mayastor-csi",
        "mayadata/mayastor-csi-dev",
        "mayadata/mayastor-dev",
    ]
    versions = {
        artifact.version for outcome in report.variants.values() for artifact in outcome.artifacts
    }
    assert versions == {context.version}
    assert {outcome.descriptor.tag for outcome in report.images.values()} == {context.version}
    assert toolchain.checks == ["coverage"]

    engine = report.images["mayadata/mayastor"]
    assert len(engine.layers) == 1
    assert (engine.path / "manifest.json").is_file()
    csi = report.images["mayadata/mayastor-csi"]
    assert 1 <= len(csi.layers) <= 42

    mayastor = report.variants["release"].artifacts[0]
    fields = parse_placeholder(mayastor.path.read_bytes())
    assert fields is not None
    assert fields["interpreter"] == context.interpreter
    assert fields["rpath"] == "/lib"


def test_report_is_written(repo: Path, tmp_path: Path, context: BuildContext) -> None:
    report = _pipeline(tmp_path).run(repo, tmp_path / "out", context=context)

    assert report.report_path == tmp_path / "out" / "report.json"
    payload = json.loads(report.report_path.read_text(encoding="utf-8"))
    assert payload["version"] == context.version
    assert payload["ok"] is True
    assert payload["variants"]["coverage"]["dependencies"]["spdk"] == "libspdk-dev"
    assert payload["images"]["mayadata/mayastor-csi"]["layering"] == "layered"
    assert payload["failures"] == []
    assert any(record["operation"] == "select_sources" for record in payload["logs"])


def test_failing_variant_is_reported_while_siblings_complete(
    repo: Path, tmp_path: Path, context: BuildContext
) -> None:
    toolchain = InProcessToolchain(store=tmp_path / "store", fail_variants=("debug",))

    report = _pipeline(tmp_path, toolchain=toolchain).run(repo, tmp_path / "out", context=context)

    assert not report.ok
    assert report.exit_code == 1
    assert sorted(report.variants) == ["adhoc", "coverage", "release"]
    assert [(failure.kind, failure.identifier, failure.code) for failure in report.failures] == [
        ("image", "mayadata/mayastor-csi-dev", "E_BUILD"),
        ("image", "mayadata/mayastor-dev", "E_BUILD"),
        ("variant", "debug", "E_BUILD"),
    ]
    assert "mayadata/mayastor" in report.images
    assert "mayadata/mayastor-adhoc" in report.images


def test_failing_fixup_is_reported_per_artifact(
    repo: Path, tmp_path: Path, context: BuildContext
) -> None:
    class RejectingPatcher:
        def patch(self, path: Path, *, interpreter: str, rpath: str) -> None:
            if path.name == "mayastor":
                raise FixupError("patch rejected", context={"path": str(path)})
            InProcessPatcher().patch(path, interpreter=interpreter, rpath=rpath)

    report = _pipeline(tmp_path, patcher=RejectingPatcher()).run(
        repo, tmp_path / "out", variants=["release"], context=context
    )

    assert report.failures_of("artifact")[0].identifier == "release/mayastor"
    assert [artifact.name for artifact in report.variants["release"].artifacts] == [
        "mayastor-client",
        "mayastor-csi",
    ]
    image_failures = {failure.identifier: failure.code for failure in report.failures_of("image")}
    assert image_failures == {"mayadata/mayastor": "E_CONFIGURATION"}
    assert sorted(report.images) == ["mayadata/mayastor-client", "mayadata/mayastor-csi"]


def test_image_selection_builds_only_needed_variants(
    repo: Path, tmp_path: Path, context: BuildContext
) -> None:
    report = _pipeline(tmp_path).run(
        repo, tmp_path / "out", images=["mayadata/mayastor-client"], context=context
    )

    assert list(report.variants) == ["release"]
    assert list(report.images) == ["mayadata/mayastor-client"]


def test_variant_selection_builds_its_images(
    repo: Path, tmp_path: Path, context: BuildContext
) -> None:
    report = _pipeline(tmp_path).run(repo, tmp_path / "out", variants=["debug"], context=context)

    assert list(report.variants) == ["debug"]
    assert sorted(report.images) == ["mayadata/mayastor-csi-dev", "mayadata/mayastor-dev"]


def test_unknown_selection_is_a_configuration_error(
    repo: Path, tmp_path: Path, context: BuildContext
) -> None:
    with pytest.raises(ConfigurationError):
        _pipeline(tmp_path).run(repo, tmp_path / "out", variants=["nightly"], context=context)
    with pytest.raises(ConfigurationError):
        _pipeline(tmp_path).run(repo, tmp_path / "out", images=["mayadata/moac"], context=context)


def test_logs_are_attributable(repo: Path, tmp_path: Path, context: BuildContext) -> None:
    pipeline = _pipeline(tmp_path)

    pipeline.run(repo, tmp_path / "out", variants=["release"], context=context)

    assert pipeline.logger.records_for_variant("release")
    assert pipeline.logger.records_for_image("mayadata/mayastor-csi")
    assert {record["operation"] for record in pipeline.logger.records_for_image("mayadata/mayastor")} >= {
        "compose",
        "layer",
        "write_image",
    }


def test_io_error_in_one_variant_is_reported_and_siblings_complete(
    repo: Path, tmp_path: Path, context: BuildContext
) -> None:
    class FullDiskToolchain(InProcessToolchain):
        def build(self, request: CompileRequest) -> dict[str, Path]:
            if request.variant == "debug":
                raise OSError(28, "No space left on device")
            return InProcessToolchain.build(self, request)

    toolchain = FullDiskToolchain(store=tmp_path / "store")

    report = _pipeline(tmp_path, toolchain=toolchain).run(repo, tmp_path / "out", context=context)

    assert report.exit_code == 1
    variant_failures = report.failures_of("variant")
    assert [(failure.identifier, failure.code) for failure in variant_failures] == [("debug", "E_BUILD")]
    assert "No space left on device" in variant_failures[0].context["error"]
    assert sorted(report.variants) == ["adhoc", "coverage", "release"]
    assert "mayadata/mayastor" in report.images
    assert (tmp_path / "out" / "report.json").is_file()


def test_io_error_while_writing_an_image_is_reported(
    repo: Path, tmp_path: Path, context: BuildContext
) -> None:
    class ReadOnlyWriter:
        def write(self, descriptor: ImageDescriptor, layers: Sequence[Layer]) -> Path:
            raise PermissionError(13, "Permission denied", descriptor.name)

    pipeline = _pipeline(tmp_path)
    pipeline.writer = ReadOnlyWriter()

    report = pipeline.run(
        repo, tmp_path / "out", images=["mayadata/mayastor-client"], context=context
    )

    assert [(failure.kind, failure.identifier, failure.code) for failure in report.failures] == [
        ("image", "mayadata/mayastor-client", "E_BUILD")
    ]
    assert report.variants["release"].artifacts
    assert (tmp_path / "out" / "report.json").is_file()


def test_every_image_entrypoint_is_fixed_up(
    repo: Path, tmp_path: Path, context: BuildContext
) -> None:
    config = default_config()

    report = _pipeline(tmp_path).run(repo, tmp_path / "out", context=context)

    assert report.ok
    for image in config.images:
        binary = image.entrypoint[0].rsplit("/", 1)[-1]
        artifacts = {artifact.name: artifact for artifact in report.variants[image.variant].artifacts}
        entrypoint = artifacts[binary]
        assert entrypoint.fixed is True, image.name
        fields = parse_placeholder(entrypoint.path.read_bytes())
        assert fields is not None
        assert fields["interpreter"] == context.interpreter
        assert fields["rpath"] == config.runtime_lib_dir

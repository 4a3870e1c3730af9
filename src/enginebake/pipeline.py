"""Pipeline orchestration: select, build, fix up, compose, layer and write.

Source selection and the build context are computed once. Each variant's
build and fixup chain then runs on a bounded worker pool, followed by one
compose/layer/write task per image. Failures are recorded per variant,
artifact or image; sibling branches keep running.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from enginebake.composer import compose_image
from enginebake.config import PipelineConfig, validate_config
from enginebake.errors import BuildError, ConfigurationError, EngineBakeError, ErrorCode
from enginebake.fixup import PatchelfPatcher, Patcher, fixup_artifacts
from enginebake.layering import plan_layers
from enginebake.models import (
    Artifact,
    BuildContext,
    FailureKind,
    FilteredTree,
    ImageDescriptor,
    ImageSpec,
    Layer,
    StageFailure,
    VariantSpec,
)
from enginebake.observability import StructuredLogger
from enginebake.runtime import ArchiveImageWriter, ImageWriter
from enginebake.sources import select_sources
from enginebake.toolchain.base import Toolchain
from enginebake.variants import build_variant, derive_variants
from enginebake.version import resolve_context


@dataclass(frozen=True, slots=True)
class VariantOutcome:
    spec: VariantSpec
    artifacts: tuple[Artifact, ...]


@dataclass(frozen=True, slots=True)
class ImageOutcome:
    descriptor: ImageDescriptor
    layers: tuple[Layer, ...]
    path: Path


@dataclass(slots=True)
class PipelineReport:
    version: str
    variants: dict[str, VariantOutcome] = field(default_factory=dict)
    images: dict[str, ImageOutcome] = field(default_factory=dict)
    failures: list[StageFailure] = field(default_factory=list)
    logs: list[dict[str, Any]] = field(default_factory=list)
    report_path: Path | None = None

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    def failures_of(self, kind: FailureKind) -> list[StageFailure]:
        return [failure for failure in self.failures if failure.kind == kind]

    def to_json(self, path: str | Path | None = None) -> str:
        encoded = json.dumps(self._payload(), indent=2, sort_keys=True) + "\n"
        if path is not None:
            output = Path(path)
            output.parent.mkdir(parents=True, exist_ok=True)
            output.write_text(encoded, encoding="utf-8")
        return encoded

    def _payload(self) -> dict[str, object]:
        return {
            "version": self.version,
            "ok": self.ok,
            "variants": {
                identifier: {
                    "build_type": outcome.spec.build_type,
                    "dependencies": dict(sorted(outcome.spec.dependencies.items())),
                    "spec_digest": outcome.spec.digest(),
                    "artifacts": [
                        {
                            "name": artifact.name,
                            "path": str(artifact.path),
                            "version": artifact.version,
                            "fixed": artifact.fixed,
                            "interpreter": artifact.interpreter,
                            "rpath": artifact.rpath,
                        }
                        for artifact in outcome.artifacts
                    ],
                }
                for identifier, outcome in sorted(self.variants.items())
            },
            "images": {
                name: {
                    "reference": outcome.descriptor.reference,
                    "layering": outcome.descriptor.layering.kind,
                    "layers": [
                        {
                            "index": layer.index,
                            "digest": layer.digest,
                            "size": layer.size,
                            "items": list(layer.items),
                        }
                        for layer in outcome.layers
                    ],
                    "path": str(outcome.path),
                }
                for name, outcome in sorted(self.images.items())
            },
            "failures": [failure.to_dict() for failure in self.failures],
            "logs": self.logs,
        }


@dataclass(slots=True)
class Pipeline:
    config: PipelineConfig
    toolchain: Toolchain
    patcher: Patcher = field(default_factory=PatchelfPatcher)
    writer: ImageWriter | None = None
    logger: StructuredLogger = field(default_factory=StructuredLogger)
    max_workers: int | None = None

    def run(
        self,
        repo_root: str | Path,
        output_dir: str | Path,
        *,
        variants: Sequence[str] | None = None,
        images: Sequence[str] | None = None,
        context: BuildContext | None = None,
    ) -> PipelineReport:
        validate_config(self.config)
        selected_images = self._select_images(variants, images)
        selected_variants = self._select_variants(variants, images, selected_images)
        specs = derive_variants(
            self.config.base,
            (o for o in self.config.variants if o.identifier in selected_variants),
        )

        destination = Path(output_dir)
        destination.mkdir(parents=True, exist_ok=True)
        tree = select_sources(
            repo_root,
            self.config.whitelist,
            destination / "source",
            logger=self.logger,
        )
        if context is None:
            context = resolve_context(repo_root, logger=self.logger)
        writer = self.writer or ArchiveImageWriter(destination / "images", logger=self.logger)
        report = PipelineReport(version=context.version)

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            variant_futures = {
                pool.submit(self._run_variant, tree, spec, context, destination / "variants"): identifier
                for identifier, spec in specs.items()
            }
            for future in as_completed(variant_futures):
                identifier = variant_futures[future]
                try:
                    artifacts, failures = future.result()
                except EngineBakeError as exc:
                    self._record(report, "variant", identifier, exc)
                    continue
                report.variants[identifier] = VariantOutcome(spec=specs[identifier], artifacts=artifacts)
                report.failures.extend(failures)

            image_futures: dict[Future[ImageOutcome], str] = {}
            for image_spec in selected_images:
                outcome = report.variants.get(image_spec.variant)
                if outcome is None:
                    report.failures.append(
                        StageFailure(
                            kind="image",
                            identifier=image_spec.name,
                            code=ErrorCode.BUILD.value,
                            message="Image variant was not built.",
                            context={
                                "operation": "compose",
                                "image": image_spec.name,
                                "variant": image_spec.variant,
                            },
                        )
                    )
                    continue
                image_future = pool.submit(self._run_image, image_spec, outcome.artifacts, context, writer)
                image_futures[image_future] = image_spec.name
            for image_future in as_completed(image_futures):
                name = image_futures[image_future]
                try:
                    report.images[name] = image_future.result()
                except EngineBakeError as exc:
                    self._record(report, "image", name, exc)

        report.failures.sort(key=lambda failure: (failure.kind, failure.identifier))
        report.logs = self.logger.snapshot()
        report.report_path = destination / "report.json"
        report.to_json(report.report_path)
        return report

    def _run_variant(
        self,
        tree: FilteredTree,
        spec: VariantSpec,
        context: BuildContext,
        output_dir: Path,
    ) -> tuple[tuple[Artifact, ...], tuple[StageFailure, ...]]:
        try:
            artifacts = build_variant(
                tree, spec, context, self.toolchain, output_dir, logger=self.logger
            )
        except OSError as exc:
            raise BuildError(
                "Variant build failed with an I/O error.",
                context={"operation": "build", "variant": spec.identifier, "error": str(exc)},
            ) from exc
        return fixup_artifacts(
            artifacts,
            self.config.runtime_lib_dir,
            interpreter=context.interpreter,
            patcher=self.patcher,
            targets=spec.fixup_targets,
            logger=self.logger,
        )

    def _run_image(
        self,
        spec: ImageSpec,
        artifacts: tuple[Artifact, ...],
        context: BuildContext,
        writer: ImageWriter,
    ) -> ImageOutcome:
        try:
            return self._assemble_image(spec, artifacts, context, writer)
        except OSError as exc:
            raise BuildError(
                "Image assembly failed with an I/O error.",
                context={"operation": "compose", "image": spec.name, "error": str(exc)},
            ) from exc

    def _assemble_image(
        self,
        spec: ImageSpec,
        artifacts: tuple[Artifact, ...],
        context: BuildContext,
        writer: ImageWriter,
    ) -> ImageOutcome:
        tools = {
            name: self.toolchain.closure(name)
            for name in dict.fromkeys([*spec.tools, *self.config.path_tools])
        }
        descriptor = compose_image(
            spec,
            artifacts,
            tools,
            context,
            path_tools=self.config.path_tools,
            runtime_lib_dir=self.config.runtime_lib_dir,
            logger=self.logger,
        )
        layers = plan_layers(descriptor, logger=self.logger)
        path = writer.write(descriptor, layers)
        return ImageOutcome(descriptor=descriptor, layers=layers, path=path)

    def _select_images(
        self,
        variants: Sequence[str] | None,
        images: Sequence[str] | None,
    ) -> list[ImageSpec]:
        if images is not None:
            return [self.config.image(name) for name in dict.fromkeys(images)]
        if variants is not None:
            return [image for image in self.config.images if image.variant in variants]
        return list(self.config.images)

    def _select_variants(
        self,
        variants: Sequence[str] | None,
        images: Sequence[str] | None,
        selected_images: list[ImageSpec],
    ) -> set[str]:
        declared = {override.identifier for override in self.config.variants}
        if variants is None:
            if images is not None:
                return {image.variant for image in selected_images}
            return declared
        unknown = sorted(set(variants) - declared)
        if unknown:
            raise ConfigurationError(
                "Requested variants are not declared.",
                context={"operation": "select_variants", "variants": ",".join(unknown)},
            )
        return set(variants)

    def _record(
        self,
        report: PipelineReport,
        kind: FailureKind,
        identifier: str,
        exc: EngineBakeError,
    ) -> None:
        report.failures.append(
            StageFailure(
                kind=kind,
                identifier=identifier,
                code=exc.code,
                message=exc.message,
                context=exc.context,
            )
        )
        self.logger.log(
            operation="pipeline",
            stage=kind,
            variant=identifier if kind == "variant" else None,
            image=identifier if kind == "image" else None,
            level="error",
            message=exc.message,
            extra={"code": exc.code},
        )

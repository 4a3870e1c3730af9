"""Build the full engine matrix with cargo and write every image archive."""

from pathlib import Path

from enginebake import Pipeline, default_config
from enginebake.fixup import PatchelfPatcher
from enginebake.toolchain import CargoToolchain


def build_release_matrix() -> None:
    pipeline = Pipeline(
        config=default_config(),
        toolchain=CargoToolchain(store=Path("/var/lib/enginebake/store")),
        patcher=PatchelfPatcher(),
        max_workers=4,
    )
    report = pipeline.run(Path("."), Path("build"))

    for failure in report.failures:
        print(f"{failure.kind} {failure.identifier}: {failure.message}")
    for _, outcome in sorted(report.images.items()):
        print(f"{outcome.descriptor.reference} -> {outcome.path} ({len(outcome.layers)} layers)")


if __name__ == "__main__":
    build_release_matrix()

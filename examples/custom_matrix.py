"""Dry-run a trimmed matrix with placeholder binaries.

Only the debug variant is built, and its CSI image is assembled with a small
layer bound. Useful for checking a configuration without a Rust toolchain.
"""

from dataclasses import replace
from pathlib import Path

from enginebake import BuildContext, LayeringMode, Pipeline, default_config
from enginebake.fixup import InProcessPatcher
from enginebake.toolchain import InProcessToolchain


def dry_run_debug_images() -> None:
    config = default_config()
    images = tuple(
        replace(image, layering=LayeringMode.layered(4)) if image.name.endswith("csi-dev") else image
        for image in config.images
    )
    pipeline = Pipeline(
        config=replace(config, images=images),
        toolchain=InProcessToolchain(store=Path("build/store")),
        patcher=InProcessPatcher(),
    )
    report = pipeline.run(
        Path("."),
        Path("build/dry-run"),
        variants=["debug"],
        context=BuildContext(
            version="dry-run",
            created="1970-01-01T00:00:01+00:00",
            interpreter="/lib64/ld-linux-x86-64.so.2",
        ),
    )
    print(report.to_json())


if __name__ == "__main__":
    dry_run_debug_images()

"""Command line entry point for the build and image pipeline."""

from __future__ import annotations

import argparse
import json
import os
import sys
from collections.abc import Sequence
from dataclasses import replace
from pathlib import Path

from enginebake.config import PipelineConfig, config_payload, default_config, load_config
from enginebake.errors import EngineBakeError
from enginebake.fixup import InProcessPatcher, PatchelfPatcher
from enginebake.models import SourceWhitelist
from enginebake.observability import StructuredLogger
from enginebake.pipeline import Pipeline, PipelineReport
from enginebake.toolchain import CargoToolchain, InProcessToolchain
from enginebake.version import resolve_context


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="enginebake",
        description="Build storage-engine variants and assemble their container images.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    build = sub.add_parser("build", help="Run the variant and image pipeline.")
    build.add_argument("--repo", type=Path, default=Path("."), help="Repository root.")
    build.add_argument("--out", type=Path, default=Path("build"), help="Output directory.")
    build.add_argument("--config", type=Path, help="JSON pipeline configuration.")
    build.add_argument("--variant", action="append", dest="variants", help="Variant to build.")
    build.add_argument("--image", action="append", dest="images", help="Image to assemble.")
    build.add_argument("--jobs", type=_positive_int, default=os.cpu_count(), help="Worker pool size.")
    build.add_argument("--version", dest="version", help="Override the git-derived version.")
    build.add_argument("--created", help="Image creation timestamp (default: build time).")
    build.add_argument(
        "--segment-match",
        action="store_true",
        help="Match whitelist prefixes on path-segment boundaries.",
    )
    build.add_argument("--toolchain", choices=("cargo", "inprocess"), default="cargo")
    build.add_argument(
        "--store",
        type=Path,
        default=os.environ.get("ENGINEBAKE_STORE"),
        help="Directory holding dependency closures (default: <out>/store).",
    )
    build.add_argument("--log-file", type=Path, help="Write structured logs as JSON lines.")

    show = sub.add_parser("show-config", help="Print the effective configuration.")
    show.add_argument("--config", type=Path, help="JSON pipeline configuration.")
    return parser


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}") from exc
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        if args.command == "show-config":
            config = load_config(args.config) if args.config else default_config()
            print(json.dumps(config_payload(config), indent=2, sort_keys=True))
            return 0
        report = _run_build(args)
    except EngineBakeError as exc:
        print(f"error [{exc.code}]: {exc}", file=sys.stderr)
        return 2
    _print_summary(report)
    return report.exit_code


def _run_build(args: argparse.Namespace) -> PipelineReport:
    config: PipelineConfig = load_config(args.config) if args.config else default_config()
    if args.segment_match:
        config = replace(config, whitelist=SourceWhitelist(config.whitelist.prefixes, "segment"))

    store = Path(args.store) if args.store else args.out / "store"
    logger = StructuredLogger()
    if args.toolchain == "inprocess":
        pipeline = Pipeline(
            config=config,
            toolchain=InProcessToolchain(store=store),
            patcher=InProcessPatcher(),
            logger=logger,
            max_workers=args.jobs,
        )
    else:
        pipeline = Pipeline(
            config=config,
            toolchain=CargoToolchain(store=store),
            patcher=PatchelfPatcher(),
            logger=logger,
            max_workers=args.jobs,
        )

    context = resolve_context(args.repo, version=args.version, created=args.created, logger=logger)
    try:
        return pipeline.run(
            args.repo,
            args.out,
            variants=args.variants,
            images=args.images,
            context=context,
        )
    finally:
        if args.log_file is not None:
            logger.to_json_lines(args.log_file)


def _print_summary(report: PipelineReport) -> None:
    for identifier, outcome in sorted(report.variants.items()):
        print(f"ok    variant {identifier}: {len(outcome.artifacts)} artifact(s)")
    for _, image in sorted(report.images.items()):
        print(f"ok    image {image.descriptor.reference}: {len(image.layers)} layer(s) -> {image.path}")
    for failure in report.failures:
        print(f"FAIL  {failure.kind} {failure.identifier} [{failure.code}]: {failure.message}")
    if report.report_path is not None:
        print(f"report: {report.report_path}")

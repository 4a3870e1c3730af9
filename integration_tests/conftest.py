"""Shared helpers for integration tests."""

from __future__ import annotations

import textwrap
from pathlib import Path


def write_crate(root: Path, binaries: tuple[str, ...]) -> Path:
    """Write a minimal cargo package with one ``[[bin]]`` per name."""
    root.mkdir(parents=True, exist_ok=True)
    manifest = [
        "[package]",
        'name = "engine-fixture"',
        'version = "0.1.0"',
        'edition = "2021"',
        "",
    ]
    for name in binaries:
        manifest.extend(["[[bin]]", f'name = "{name}"', f'path = "src/{name}.rs"', ""])
        source = root / "src" / f"{name}.rs"
        source.parent.mkdir(parents=True, exist_ok=True)
        source.write_text(
            textwrap.dedent(f"""\
                fn main() {{
                    println!("{name}");
                }}
            """),
            encoding="utf-8",
        )
    (root / "Cargo.toml").write_text("\n".join(manifest), encoding="utf-8")
    (root / "Cargo.lock").write_text(
        textwrap.dedent("""\
            # This file is automatically @generated by Cargo.
            # It is not intended for manual editing.
            version = 3

            [[package]]
            name = "engine-fixture"
            version = "0.1.0"
        """),
        encoding="utf-8",
    )
    return root

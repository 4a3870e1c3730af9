"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from enginebake.models import BuildContext
from enginebake.toolchain.inprocess import DEFAULT_INTERPRETER, InProcessToolchain

REPO_FILES = {
    ".git/HEAD": "ref: refs/heads/develop\n",
    "Cargo.toml": "[workspace]\nmembers = [\"mayastor\", \"csi\", \"cli\"]\n",
    "Cargo.lock": "# lock\n",
    "mayastor/src/main.rs": "fn main() {}\n",
    "csi/src/main.rs": "fn main() {}\n",
    "cli/src/main.rs": "fn main() {}\n",
    "doc/design.md": "# design\n",
    "chart/values.yaml": "image: mayastor\n",
}


def write_tree(root: Path, files: dict[str, str]) -> Path:
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    return root


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    """A small monorepo with whitelisted and unrelated subtrees."""
    return write_tree(tmp_path / "repo", REPO_FILES)


@pytest.fixture
def toolchain(tmp_path: Path) -> InProcessToolchain:
    return InProcessToolchain(store=tmp_path / "store")


@pytest.fixture
def context() -> BuildContext:
    return BuildContext(
        version="v0.8.0-12-g1a2b3c4",
        created="2021-03-01T12:00:00+00:00",
        interpreter=DEFAULT_INTERPRETER,
        env={"PROTOC": "/usr/bin/protoc"},
    )

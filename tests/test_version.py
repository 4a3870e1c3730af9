import subprocess
from pathlib import Path

import pytest

from enginebake.errors import ConfigurationError
from enginebake.observability import StructuredLogger
from enginebake.toolchain.inprocess import DEFAULT_INTERPRETER
from enginebake.version import GIT_DESCRIBE, GIT_SHORT_REV, git_version, resolve_context


def _fake_git(monkeypatch: pytest.MonkeyPatch, results: dict[tuple[str, ...], tuple[int, str]]) -> list[tuple[str, ...]]:
    calls: list[tuple[str, ...]] = []

    def fake_run(command: list[str], **_: object) -> subprocess.CompletedProcess[str]:
        calls.append(tuple(command))
        returncode, stdout = results[tuple(command)]
        return subprocess.CompletedProcess(command, returncode, stdout=stdout, stderr="fatal: no tags")

    monkeypatch.setattr("enginebake.version.shutil.which", lambda _: "/usr/bin/git")
    monkeypatch.setattr("enginebake.version.subprocess.run", fake_run)
    return calls


def test_git_version_uses_describe(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    calls = _fake_git(monkeypatch, {GIT_DESCRIBE: (0, "v0.8.0-12-g1a2b3c4\n")})

    assert git_version(tmp_path) == "v0.8.0-12-g1a2b3c4"
    assert calls == [GIT_DESCRIBE]


def test_git_version_falls_back_to_short_revision(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    calls = _fake_git(
        monkeypatch,
        {GIT_DESCRIBE: (128, ""), GIT_SHORT_REV: (0, "1a2b3c4d5e6f\n")},
    )

    assert git_version(tmp_path) == "1a2b3c4d5e6f"
    assert calls == [GIT_DESCRIBE, GIT_SHORT_REV]


def test_git_version_fails_without_commits(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    _fake_git(monkeypatch, {GIT_DESCRIBE: (128, ""), GIT_SHORT_REV: (128, "")})

    with pytest.raises(ConfigurationError) as excinfo:
        git_version(tmp_path)

    assert excinfo.value.context["stderr"] == "fatal: no tags"


def test_git_version_requires_git(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr("enginebake.version.shutil.which", lambda _: None)

    with pytest.raises(ConfigurationError):
        git_version(tmp_path)


def test_resolve_context_with_explicit_values(tmp_path: Path) -> None:
    logger = StructuredLogger()

    context = resolve_context(
        tmp_path,
        version="v1.0.0",
        created="2021-03-01T12:00:00+00:00",
        env={"LIBCLANG_PATH": "/clang/lib", "PROTOC": "/bin/protoc", "UNRELATED": "x"},
        logger=logger,
    )

    assert context.version == "v1.0.0"
    assert context.created == "2021-03-01T12:00:00+00:00"
    assert context.interpreter == DEFAULT_INTERPRETER
    assert context.env == {"LIBCLANG_PATH": "/clang/lib", "PROTOC": "/bin/protoc"}
    warnings = [record["extra"]["variable"] for record in logger.records if record["level"] == "warning"]
    assert warnings == ["PROTOC_INCLUDE"]


def test_resolve_context_reads_interpreter_from_compiler_wrapper(tmp_path: Path) -> None:
    support = tmp_path / "cc" / "nix-support"
    support.mkdir(parents=True)
    (support / "dynamic-linker").write_text("/nix/store/glibc/lib/ld.so\n", encoding="utf-8")

    context = resolve_context(tmp_path, version="v1", env={"NIX_CC": str(tmp_path / "cc")})

    assert context.interpreter == "/nix/store/glibc/lib/ld.so"


def test_resolve_context_defaults_creation_time_and_version(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    _fake_git(monkeypatch, {GIT_DESCRIBE: (0, "v2.0.0-0-gabcdef0\n")})

    context = resolve_context(tmp_path, env={})

    assert context.version == "v2.0.0-0-gabcdef0"
    assert context.created.endswith("+00:00")
    assert "." not in context.created

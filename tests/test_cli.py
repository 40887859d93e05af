"""Tests for the sandpit CLI."""

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from sandpit import __version__
from sandpit.cli import cli, main


def _project(tmp_path: Path) -> Path:
    tmp_path.mkdir(parents=True, exist_ok=True)
    (tmp_path / "package.json").write_text(json.dumps({"name": "app", "dependencies": {"react": "^18"}}))
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "App.tsx").write_text("import React from 'react';\nimport { create } from 'zustand';\n")
    return tmp_path


def test_version() -> None:
    result = CliRunner().invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_main_entry_point(capsys) -> None:
    with pytest.raises(SystemExit) as exc:
        main(["--version"])
    assert exc.value.code == 0
    assert __version__ in capsys.readouterr().out


def test_scan_lists_missing(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli, ["scan", str(_project(tmp_path))])
    assert result.exit_code == 0, result.output
    assert "zustand" in result.output
    assert "1 undeclared" in result.output
    # scan never writes the manifest
    assert "zustand" not in (tmp_path / "package.json").read_text()


def test_exec_propagates_exit_code(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli, ["exec", str(tmp_path), "--", "sh", "-c", "echo hi; exit 4"])
    assert result.exit_code == 4
    assert "hi" in result.output


def test_exec_timeout(tmp_path: Path) -> None:
    result = CliRunner().invoke(cli, ["exec", str(tmp_path), "--timeout-ms", "100", "--", "sleep", "5"])
    assert result.exit_code == 124


def test_cache_stats_and_clear(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("SANDPIT_CACHE_DIR", str(tmp_path / "cache"))
    runner = CliRunner()
    result = runner.invoke(cli, ["cache", str(tmp_path)])
    assert result.exit_code == 0, result.output
    assert "sandpit:install-cache" in result.output
    result = runner.invoke(cli, ["cache", str(tmp_path), "--clear"])
    assert result.exit_code == 0
    assert "cleared" in result.output


def test_prepare_failure_exits_nonzero(tmp_path: Path, monkeypatch) -> None:
    project = _project(tmp_path / "proj")
    monkeypatch.setenv("SANDPIT_CACHE_DIR", str(tmp_path / "cache"))
    monkeypatch.setenv("SANDPIT_INSTALL_COMMAND", "sh -c 'echo installing; exit 7'")
    result = CliRunner().invoke(cli, ["prepare", str(project)])
    assert result.exit_code == 7
    assert "installing" in result.output
    assert "zustand" in (project / "package.json").read_text()

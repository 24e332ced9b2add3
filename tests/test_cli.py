"""CLI tests: argument parsing, exit codes and the happy paths of each command."""
from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest
from git import Repo

from git_autosync.cli import main

from conftest import BRANCH, remote_head


def _run(*args: str) -> subprocess.CompletedProcess[str]:
    """Run the git-autosync CLI in a subprocess and capture output."""
    return subprocess.run(
        [sys.executable, "-m", "git_autosync", *args],
        capture_output=True,
        text=True,
        env=os.environ.copy(),
    )


def _exit_code(argv) -> int:
    with pytest.raises(SystemExit) as exc:
        main(argv)
    return exc.value.code


def test_help_exits_zero():
    cp = _run("--help")
    assert cp.returncode == 0
    assert "usage:" in cp.stdout.lower()
    for command in ("setup", "watch", "sync", "config"):
        assert command in cp.stdout


def test_setup_requires_identity():
    cp = _run("setup", "--directory", "somewhere")
    assert cp.returncode == 2
    assert "--author" in cp.stderr


def test_setup_creates_repository(tmp_path: Path, capsys):
    workdir = tmp_path / "notes"

    assert _exit_code(["setup", "-d", str(workdir), "-a", "Alice", "-e", "alice@example.com"]) == 0

    assert "Initialized" in capsys.readouterr().out
    repo = Repo(workdir)
    assert len(list(repo.iter_commits())) == 1


def test_sync_pushes_local_changes(clone_factory, seeded_remote, capsys):
    ctx = clone_factory("alice")
    (ctx.path / "cli.txt").write_text("from the cli\n")

    assert _exit_code(["sync", "-d", str(ctx.path)]) == 0

    assert "In sync" in capsys.readouterr().out
    assert remote_head(seeded_remote).message == "Add cli.txt"


def test_sync_json_reports_outcome(clone_factory, capsys):
    ctx = clone_factory("alice")

    assert _exit_code(["sync", "-d", str(ctx.path), "--json"]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["outcome"] == "ok"
    assert payload["analysis"] == "up_to_date"
    assert payload["conflicts"] == []
    assert payload["error"] is None


def test_sync_conflict_exits_two(clone_factory, coordinator_factory, capsys):
    alice = clone_factory("alice")
    bob = clone_factory("bob")
    (alice.path / "f.txt").write_text("alice\n")
    coordinator_factory(alice).run_cycle()
    (bob.path / "f.txt").write_text("bob\n")

    assert _exit_code(["sync", "-d", str(bob.path)]) == 2

    assert "f.txt" in capsys.readouterr().err


def test_sync_outside_repository_exits_one(tmp_path: Path, capsys):
    plain = tmp_path / "plain"
    plain.mkdir()

    assert _exit_code(["sync", "-d", str(plain)]) == 1
    assert "not a git repository" in capsys.readouterr().err


def test_sync_reports_unknown_branch(clone_factory, capsys):
    ctx = clone_factory("alice")
    assert _exit_code(["sync", "-d", str(ctx.path), "-b", "other"]) == 1
    assert "expected 'other'" in capsys.readouterr().err


def test_watch_rejects_non_positive_interval(clone_factory, capsys):
    ctx = clone_factory("alice")
    assert _exit_code(["watch", "-d", str(ctx.path), "-q", "0"]) == 1
    assert "--quiet-interval" in capsys.readouterr().err


def test_config_show_json(tmp_path: Path, capsys):
    project = tmp_path / "project"
    (project / ".git-autosync").mkdir(parents=True)
    (project / ".git-autosync" / "config.toml").write_text('[sync]\nremote = "backup"\n')

    assert _exit_code(["config", "show", "-d", str(project), "--json"]) == 0

    data = json.loads(capsys.readouterr().out)
    assert data["sync"]["remote"] == "backup"
    assert data["sync"]["branch"] == BRANCH


def test_config_show_toml(tmp_path: Path, capsys):
    assert _exit_code(["config", "show", "-d", str(tmp_path)]) == 0
    out = capsys.readouterr().out
    assert "[sync]" in out
    assert 'remote = "origin"' in out


def test_config_show_sources(tmp_path: Path, isolated_home, capsys):
    (isolated_home / ".git-autosync").mkdir()
    (isolated_home / ".git-autosync" / "config.toml").write_text("")

    assert _exit_code(["config", "show", "-d", str(tmp_path), "--sources"]) == 0

    out = capsys.readouterr().out
    assert f"✓ user config: {isolated_home / '.git-autosync' / 'config.toml'}" in out
    assert "- project config: (not applicable)" in out
    assert "✗ credentials:" in out


def test_config_show_invalid_exits_one(tmp_path: Path, capsys):
    project = tmp_path / "project"
    (project / ".git-autosync").mkdir(parents=True)
    (project / ".git-autosync" / "config.toml").write_text("[sync\n")

    assert _exit_code(["config", "show", "-d", str(project)]) == 1
    assert "Config error" in capsys.readouterr().err


def test_config_init_writes_user_file(isolated_home, capsys):
    assert _exit_code(["config", "init"]) == 0
    target = isolated_home / ".git-autosync" / "config.toml"
    assert target.exists()
    assert "quiet_interval" in target.read_text()

    # Refuses to clobber without --force
    assert _exit_code(["config", "init"]) == 1
    assert _exit_code(["config", "init", "--force"]) == 0


def test_config_init_project(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert _exit_code(["config", "init", "--project"]) == 0
    assert (tmp_path / ".git-autosync" / "config.toml").exists()

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

import pytest
from git import Repo


def pytest_sessionstart(session):  # type: ignore[override]
    root = Path(__file__).resolve().parents[1]
    src = root / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))
    # Ensure console scripts load in editable style as well
    os.environ.setdefault("PYTHONPATH", str(src))


BRANCH = "master"


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep user config, credentials, global git config and log files out of $HOME."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
    monkeypatch.delenv("GIT_CONFIG_GLOBAL", raising=False)
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_AUTOSYNC_LOG_DISABLE_FILE", "1")
    for name in list(os.environ):
        if name.startswith("GIT_AUTOSYNC_") and name != "GIT_AUTOSYNC_LOG_DISABLE_FILE":
            monkeypatch.delenv(name, raising=False)
    for name in ("GITHUB_TOKEN", "GH_TOKEN"):
        monkeypatch.delenv(name, raising=False)
    from git_autosync.config_loader import clear_config_cache

    clear_config_cache()
    yield home
    clear_config_cache()


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop handlers bound to a previous test's captured streams."""
    import git_autosync.observability as obs

    logger = logging.getLogger(obs.LOGGER_NAME)
    logger.handlers.clear()
    obs._logger_initialized = False
    yield
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()
    obs._logger_initialized = False


def init_repo(path: Path, *, bare: bool = False) -> Repo:
    """git init with HEAD on master regardless of init.defaultBranch."""
    repo = Repo.init(path, bare=bare, mkdir=True)
    repo.git.symbolic_ref("HEAD", f"refs/heads/{BRANCH}")
    return repo


def commit_file(repo: Repo, name: str, content: str, message: str | None = None) -> str:
    """Write, stage and commit one file with plain GitPython."""
    path = Path(repo.working_tree_dir) / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    repo.index.add([name])
    return repo.index.commit(message or f"edit {name}").hexsha


@pytest.fixture
def bare_remote(tmp_path) -> Path:
    path = tmp_path / "remote.git"
    init_repo(path, bare=True)
    return path


@pytest.fixture
def seeded_remote(tmp_path, bare_remote) -> Path:
    """Bare remote whose master holds f.txt and b.txt."""
    from git_autosync.bootstrap import setup_repository

    seed = tmp_path / "seed"
    init_repo(seed)
    setup_repository(seed, "Seeder", "seed@example.com")
    repo = Repo(seed)
    (seed / "f.txt").write_text("hello\n")
    (seed / "b.txt").write_text("bee\n")
    repo.index.add(["f.txt", "b.txt"])
    repo.index.commit("seed")
    repo.create_remote("origin", bare_remote.as_posix())
    repo.remotes.origin.push(f"refs/heads/{BRANCH}:refs/heads/{BRANCH}")
    return bare_remote


@pytest.fixture
def clone_factory(tmp_path, seeded_remote):
    """Clone the seeded remote into tmp_path/<name> and open a context on it."""
    from git_autosync.bootstrap import configure_identity
    from git_autosync.context import open_context

    def _clone(name: str):
        workdir = tmp_path / name
        repo = Repo.clone_from(seeded_remote.as_posix(), workdir, branch=BRANCH)
        configure_identity(repo, name.title(), f"{name}@example.com")
        return open_context(workdir, "origin", BRANCH)

    return _clone


@pytest.fixture
def coordinator_factory():
    from git_autosync.coordinator import RemoteSyncCoordinator
    from git_autosync.credentials import CredentialProvider

    def _make(ctx):
        return RemoteSyncCoordinator(ctx, CredentialProvider(), timeout=60)

    return _make


def remote_head(remote: Path):
    return Repo(remote).commit(BRANCH)

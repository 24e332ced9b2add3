from __future__ import annotations

import threading
import time

import pytest

from git_autosync.config_schema import AutosyncConfig
from git_autosync.daemon import AutosyncDaemon, build_coordinator
from git_autosync.errors import AutosyncError, BackendError
from git_autosync.lock import DaemonLock

from conftest import BRANCH, remote_head


def _wait_for(predicate, timeout: float = 15.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.1)
    return False


@pytest.fixture
def fast_config() -> AutosyncConfig:
    config = AutosyncConfig.default()
    config.watch.quiet_interval = 0.3
    config.git.timeout = 60
    return config


def test_daemon_syncs_edits_until_stopped(clone_factory, seeded_remote, fast_config):
    ctx = clone_factory("alice")
    coordinator = build_coordinator(ctx.path, fast_config)
    daemon = AutosyncDaemon(coordinator, fast_config)
    errors: list = []

    def run():
        try:
            daemon.run()
        except Exception as e:  # pragma: no cover - surfaced by the assert below
            errors.append(e)

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    try:
        lock_path = ctx.git_dir / "autosync.lock"
        assert _wait_for(lock_path.exists)
        assert _wait_for(daemon.watcher._observer.is_alive)
        # Give the observer a moment to register its watches
        time.sleep(0.3)

        (ctx.path / "daemon.txt").write_text("watched\n")

        assert _wait_for(lambda: "daemon.txt" in remote_head(seeded_remote).tree)
        assert remote_head(seeded_remote).message == "Add daemon.txt"
    finally:
        daemon.stop()
        thread.join(timeout=10)

    assert not thread.is_alive()
    assert errors == []
    assert not (ctx.git_dir / "autosync.lock").exists()


def test_startup_reconcile_pulls_remote_changes(clone_factory, coordinator_factory, fast_config):
    alice = clone_factory("alice")
    bob = clone_factory("bob")
    (alice.path / "early.txt").write_text("before bob started\n")
    coordinator_factory(alice).run_cycle()

    daemon = AutosyncDaemon(build_coordinator(bob.path, fast_config), fast_config)
    outcome = daemon.reconcile()

    assert outcome is not None and outcome.ok
    assert (bob.path / "early.txt").exists()


def test_second_daemon_is_refused(clone_factory, fast_config):
    ctx = clone_factory("alice")
    daemon = AutosyncDaemon(build_coordinator(ctx.path, fast_config), fast_config)

    with DaemonLock.for_git_dir(ctx.git_dir):
        with pytest.raises(AutosyncError, match="already holds"):
            daemon.run()


def test_build_coordinator_uses_config_defaults(clone_factory, fast_config):
    ctx = clone_factory("alice")
    coordinator = build_coordinator(ctx.path, fast_config)

    assert coordinator.ctx.remote == "origin"
    assert coordinator.ctx.branch == BRANCH
    assert coordinator.timeout == 60


def test_build_coordinator_rejects_unknown_remote(clone_factory, fast_config):
    ctx = clone_factory("alice")
    with pytest.raises(BackendError):
        build_coordinator(ctx.path, fast_config, remote="upstream")


def test_build_coordinator_rejects_other_branch(clone_factory, fast_config):
    ctx = clone_factory("alice")
    with pytest.raises(BackendError, match="expected 'trunk'"):
        build_coordinator(ctx.path, fast_config, branch="trunk")

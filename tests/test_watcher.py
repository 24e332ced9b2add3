from __future__ import annotations

import shutil
import threading
import time
from pathlib import Path

import pytest
from watchdog.events import DirDeletedEvent, FileModifiedEvent, FileMovedEvent

from git_autosync.errors import WatcherFailure
from git_autosync.watcher import ChangeWatcher, Debouncer, TriggerChannel, _ChangeHandler

from conftest import remote_head


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestTriggerChannel:
    def test_duplicate_sends_coalesce(self):
        channel = TriggerChannel()
        assert channel.send() is True
        assert channel.send() is False

        assert channel.receive(timeout=0.01) is True
        assert channel.receive(timeout=0.01) is False

    def test_close_wakes_receiver(self):
        channel = TriggerChannel()
        threading.Timer(0.05, channel.close).start()

        assert channel.receive(timeout=5) is False
        assert channel.closed
        assert channel.send() is False

    def test_failure_is_raised_to_receiver(self):
        channel = TriggerChannel()
        channel.send()
        channel.close(WatcherFailure("gone"))

        with pytest.raises(WatcherFailure, match="gone"):
            channel.receive(timeout=0.01)


class TestDebouncer:
    def test_emits_once_after_quiet_period(self):
        clock = FakeClock()
        emitted = []
        debouncer = Debouncer(2.0, lambda: emitted.append(clock.now), clock=clock)

        debouncer.poke()
        clock.now = 1.0
        assert debouncer.fire_if_due() is False
        clock.now = 2.0
        assert debouncer.fire_if_due() is True
        clock.now = 10.0
        assert debouncer.fire_if_due() is False

        assert emitted == [2.0]

    def test_new_event_resets_timer(self):
        clock = FakeClock()
        emitted = []
        debouncer = Debouncer(2.0, lambda: emitted.append(clock.now), clock=clock)

        debouncer.poke()
        clock.now = 1.5
        debouncer.poke()
        clock.now = 3.0
        assert debouncer.fire_if_due() is False
        assert debouncer.time_until_due() == pytest.approx(0.5)
        clock.now = 3.5
        assert debouncer.fire_if_due() is True

        assert emitted == [3.5]

    def test_idle_debouncer_has_nothing_due(self):
        debouncer = Debouncer(1.0, lambda: None, clock=FakeClock())
        assert debouncer.time_until_due() is None


class TestChangeHandler:
    def _handler(self, root: Path, changes: list, deletions: list, patterns=("*.swp",)):
        return _ChangeHandler(
            git_dir=root / ".git",
            ignore_patterns=patterns,
            on_change=lambda: changes.append(1),
            on_root_deleted=lambda: deletions.append(1),
            root=root,
        )

    def test_git_directory_events_are_ignored(self, tmp_path: Path):
        changes: list = []
        handler = self._handler(tmp_path, changes, [])

        handler.dispatch(FileModifiedEvent(str(tmp_path / ".git" / "index")))
        handler.dispatch(FileModifiedEvent(str(tmp_path / ".git" / "refs" / "heads" / "master")))

        assert changes == []

    def test_ignore_patterns_match_file_names(self, tmp_path: Path):
        changes: list = []
        handler = self._handler(tmp_path, changes, [])

        handler.dispatch(FileModifiedEvent(str(tmp_path / ".notes.txt.swp")))
        assert changes == []

        handler.dispatch(FileModifiedEvent(str(tmp_path / "notes.txt")))
        assert changes == [1]

    def test_move_out_of_ignored_name_counts(self, tmp_path: Path):
        changes: list = []
        handler = self._handler(tmp_path, changes, [])

        handler.dispatch(FileMovedEvent(str(tmp_path / "a.swp"), str(tmp_path / "a.txt")))

        assert changes == [1]

    def test_root_deletion_is_reported(self, tmp_path: Path):
        deletions: list = []
        handler = self._handler(tmp_path, [], deletions)

        handler.dispatch(DirDeletedEvent(str(tmp_path)))

        assert deletions == [1]


def _receive_trigger(channel: TriggerChannel, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if channel.receive(timeout=0.2):
            return True
    return False


def test_burst_of_changes_yields_one_sync(clone_factory, coordinator_factory, seeded_remote):
    ctx = clone_factory("alice")
    quiet_interval = 0.3
    channel = TriggerChannel()
    sends: list = []
    send = channel.send

    def counting_send() -> bool:
        sends.append(time.monotonic())
        return send()

    channel.send = counting_send  # type: ignore[method-assign]
    watcher = ChangeWatcher(ctx.path, channel, git_dir=ctx.git_dir, quiet_interval=quiet_interval)
    watcher.start()
    try:
        (ctx.path / "a.txt").write_text("a\n")
        (ctx.path / "b.txt").unlink()

        assert _receive_trigger(channel)
        # The burst settled into a single trigger; nothing else follows it
        assert channel.receive(timeout=quiet_interval * 3) is False
        assert len(sends) == 1
        outcome = coordinator_factory(ctx).run_cycle()
    finally:
        watcher.stop()

    assert outcome.pushed
    message = remote_head(seeded_remote).message
    assert "Add a.txt" in message
    assert "Remove b.txt" in message


def test_removed_root_closes_channel_with_failure(tmp_path: Path):
    root = tmp_path / "watched"
    root.mkdir()
    channel = TriggerChannel()
    watcher = ChangeWatcher(root, channel, quiet_interval=0.1)
    watcher.start()
    try:
        shutil.rmtree(root)
        deadline = time.monotonic() + 10
        with pytest.raises(WatcherFailure):
            while time.monotonic() < deadline:
                channel.receive(timeout=0.2)
    finally:
        watcher.stop()

    assert channel.closed


def test_missing_root_fails_to_start(tmp_path: Path):
    watcher = ChangeWatcher(tmp_path / "nope", TriggerChannel())
    with pytest.raises(WatcherFailure):
        watcher.start()

"""Filesystem observation with debouncing.

Raw watchdog events arrive at arbitrary frequency (an editor saving a file
can produce half a dozen). They are folded into a single trigger once the
tree has been quiet for ``quiet_interval`` seconds, and triggers are delivered
through a capacity-one TriggerChannel so the consumer never sees more than one
pending "resync needed" signal.
"""

from __future__ import annotations

import fnmatch
import os
import threading
import time
from pathlib import Path
from typing import Callable, Iterable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .errors import WatcherFailure
from .observability import log_debug, log_error, log_info


# How often the worker checks that the observer is still alive
HEALTH_INTERVAL = 1.0

# Event types that do not change content
_PASSIVE_EVENTS = frozenset({"opened", "closed_no_write"})


class TriggerChannel:
    """Capacity-one, coalescing signal from the watcher to the coordinator."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._pending = False
        self._closed = False
        self._failure: Optional[WatcherFailure] = None

    def send(self) -> bool:
        """Request a resync. Returns False if it coalesced with a pending one."""
        with self._cond:
            if self._closed:
                return False
            coalesced = self._pending
            self._pending = True
            self._cond.notify_all()
            return not coalesced

    def close(self, failure: Optional[WatcherFailure] = None) -> None:
        with self._cond:
            self._closed = True
            if failure is not None and self._failure is None:
                self._failure = failure
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def receive(self, timeout: Optional[float] = None) -> bool:
        """Wait for a trigger.

        Returns True when a trigger was taken, False on timeout or clean close.

        Raises:
            WatcherFailure: If the channel was closed because the watcher died
        """
        with self._cond:
            self._cond.wait_for(lambda: self._pending or self._closed, timeout=timeout)
            if self._failure is not None:
                raise self._failure
            if self._pending:
                self._pending = False
                return True
            return False


class Debouncer:
    """Timer-reset-on-event: ``fire_if_due`` emits once the quiet interval has passed."""

    def __init__(
        self,
        quiet_interval: float,
        emit: Callable[[], None],
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.quiet_interval = quiet_interval
        self.wake = threading.Event()
        self._emit = emit
        self._clock = clock
        self._lock = threading.Lock()
        self._last_event: Optional[float] = None

    def poke(self) -> None:
        with self._lock:
            self._last_event = self._clock()
        self.wake.set()

    def time_until_due(self) -> Optional[float]:
        """Seconds until the next emit, or None if no events are pending."""
        with self._lock:
            if self._last_event is None:
                return None
            return max(0.0, self._last_event + self.quiet_interval - self._clock())

    def fire_if_due(self) -> bool:
        with self._lock:
            if self._last_event is None:
                return False
            if self._clock() - self._last_event < self.quiet_interval:
                return False
            self._last_event = None
        self._emit()
        return True


class _ChangeHandler(FileSystemEventHandler):
    def __init__(
        self,
        git_dir: Path,
        ignore_patterns: Iterable[str],
        on_change: Callable[[], None],
        on_root_deleted: Callable[[], None],
        root: Path,
    ) -> None:
        super().__init__()
        self._git_dir = str(git_dir)
        self._root = str(root)
        self._patterns = tuple(ignore_patterns)
        self._on_change = on_change
        self._on_root_deleted = on_root_deleted

    def _ignored(self, path: str) -> bool:
        if path == self._git_dir or path.startswith(self._git_dir + os.sep):
            return True
        name = os.path.basename(path)
        return any(fnmatch.fnmatch(name, pattern) for pattern in self._patterns)

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in _PASSIVE_EVENTS:
            return
        src = os.fsdecode(event.src_path)
        if event.event_type == "deleted" and src == self._root:
            self._on_root_deleted()
            return
        paths = [src]
        dest = getattr(event, "dest_path", "")
        if dest:
            paths.append(os.fsdecode(dest))
        if all(self._ignored(path) for path in paths):
            return
        log_debug("fs event", type=event.event_type, path=src)
        self._on_change()


class ChangeWatcher:
    """Recursive watchdog observer feeding debounced triggers into a channel."""

    def __init__(
        self,
        root: Path,
        channel: TriggerChannel,
        *,
        git_dir: Optional[Path] = None,
        quiet_interval: float = 2.0,
        ignore_patterns: Iterable[str] = (),
    ) -> None:
        self.root = Path(root)
        self.channel = channel
        self._debouncer = Debouncer(quiet_interval, self._emit)
        self._handler = _ChangeHandler(
            git_dir=Path(git_dir) if git_dir else self.root / ".git",
            ignore_patterns=ignore_patterns,
            on_change=self._debouncer.poke,
            on_root_deleted=lambda: self._fail("watched directory was removed"),
            root=self.root,
        )
        self._observer = Observer()
        self._stop = threading.Event()
        self._worker: Optional[threading.Thread] = None

    def _emit(self) -> None:
        if self.channel.send():
            log_debug("sync triggered", root=str(self.root))

    def _fail(self, reason: str) -> None:
        log_error("Watcher failed", root=str(self.root), reason=reason)
        self.channel.close(WatcherFailure(f"{reason}: {self.root}"))
        self._stop.set()
        self._debouncer.wake.set()

    def _healthy(self) -> bool:
        return self._observer.is_alive() and self.root.is_dir()

    def start(self) -> None:
        """Begin observing.

        Raises:
            WatcherFailure: If the notification source cannot be set up
        """
        if not self.root.is_dir():
            raise WatcherFailure(f"cannot watch {self.root}: not a directory")
        try:
            self._observer.schedule(self._handler, str(self.root), recursive=True)
            self._observer.start()
        except OSError as e:
            raise WatcherFailure(f"cannot watch {self.root}: {e}") from e

        self._worker = threading.Thread(
            target=self._worker_loop,
            name=f"git-autosync-debounce-{id(self)}",
            daemon=True,
        )
        self._worker.start()
        log_info("Watching for changes", root=str(self.root), quiet_interval=self._debouncer.quiet_interval)

    def stop(self) -> None:
        self._stop.set()
        self._debouncer.wake.set()
        if self._observer.is_alive():
            self._observer.stop()
            self._observer.join(timeout=2.0)
        if self._worker is not None and self._worker.is_alive():
            self._worker.join(timeout=2.0)

    def _worker_loop(self) -> None:
        while not self._stop.is_set():
            due = self._debouncer.time_until_due()
            timeout = HEALTH_INTERVAL if due is None else min(due, HEALTH_INTERVAL)
            self._debouncer.wake.wait(timeout=timeout)
            self._debouncer.wake.clear()
            if self._stop.is_set():
                return
            if not self._healthy():
                self._fail("filesystem notifications stopped")
                return
            self._debouncer.fire_if_due()

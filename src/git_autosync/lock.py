from __future__ import annotations

import getpass
import os
from datetime import datetime, timezone
from pathlib import Path

from .errors import AutosyncError


LOCK_FILENAME = "autosync.lock"


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to someone else
        return True
    except OSError:
        return False
    return True


class DaemonLock:
    """Exclusive lock file marking a directory as watched by one daemon.

    The lock lives inside the repository's git directory and records the
    holder's pid. It is held for the daemon's whole lifetime, so staleness is
    decided by whether the recorded pid is still running rather than by age.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.acquired = False

    @classmethod
    def for_git_dir(cls, git_dir: Path) -> "DaemonLock":
        return cls(Path(git_dir) / LOCK_FILENAME)

    def _write_metadata(self) -> None:
        try:
            user = getpass.getuser()
        except (KeyError, OSError):
            user = "unknown"
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        self.path.write_text(
            f"pid={os.getpid()} time={timestamp} user={user}\n",
            encoding="utf-8",
        )

    def holder(self) -> dict | None:
        """Metadata of the current holder (pid, time, user), or None if unlocked."""
        try:
            content = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        info: dict = {}
        for part in content.split():
            if "=" in part:
                key, value = part.split("=", 1)
                info[key] = value
        if "pid" in info:
            try:
                info["pid"] = int(info["pid"])
            except ValueError:
                info.pop("pid")
        return info or None

    def _is_stale(self) -> bool:
        info = self.holder()
        if not info or "pid" not in info:
            return True
        return not _pid_alive(info["pid"])

    def acquire(self) -> bool:
        """Take the lock; a lock left by a dead process is broken first."""
        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if not self._is_stale():
                    return False
                self.path.unlink(missing_ok=True)
                continue
            os.close(fd)
            self._write_metadata()
            self.acquired = True
            return True
        return False

    def release(self) -> None:
        if self.acquired:
            self.path.unlink(missing_ok=True)
            self.acquired = False

    def __enter__(self):
        if not self.acquire():
            holder = self.holder() or {}
            raise AutosyncError(
                f"another git-autosync daemon (pid {holder.get('pid', '?')}) "
                f"already holds {self.path}"
            )
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False

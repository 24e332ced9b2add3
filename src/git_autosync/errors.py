"""Exception hierarchy for git-autosync.

Cycle-level errors (``BackendError`` and its subclasses, ``UnclassifiedStatus``)
abort the current sync cycle only. ``WatcherFailure`` and errors raised during
setup are fatal to the daemon.
"""

from __future__ import annotations

from typing import Optional, Sequence


class AutosyncError(Exception):
    """Base exception for git-autosync."""
    pass


class ConfigError(AutosyncError):
    """Configuration loading or validation error."""
    pass


class BackendError(AutosyncError):
    """A git operation failed (object I/O, ref update, transport)."""

    def __init__(self, operation: str, message: str, *, path: Optional[str] = None):
        self.operation = operation
        self.path = path
        detail = f"{operation} failed: {message}"
        if path:
            detail = f"{operation} failed for {path}: {message}"
        super().__init__(detail)


class CredentialError(BackendError):
    """Authentication against the remote was refused or unavailable."""
    pass


class UnclassifiedStatus(AutosyncError):
    """A working-tree path is in a state the scanner cannot reconcile."""

    def __init__(self, path: str, code: str):
        self.path = path
        self.code = code
        super().__init__(f"unhandled git status {code!r} for {path}")


class MergeConflict(AutosyncError):
    """A three-way merge left conflicting paths that need manual resolution."""

    def __init__(self, paths: Sequence[str]):
        self.paths = list(paths)
        joined = ", ".join(self.paths) if self.paths else "<unknown>"
        super().__init__(f"merge halted on conflicting paths: {joined}")


class WatcherFailure(AutosyncError):
    """The filesystem notification source became unusable."""
    pass


class SyncInProgress(AutosyncError):
    """A sync cycle was requested while another one is still running."""
    pass

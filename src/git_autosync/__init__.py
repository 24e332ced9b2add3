"""git-autosync: keep a working directory continuously in sync with a git remote."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("git-autosync")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"  # Fallback for editable installs without metadata

from .context import RepositoryContext, open_context  # noqa: F401
from .coordinator import RemoteSyncCoordinator, SyncOutcome, SyncState  # noqa: F401
from .errors import AutosyncError  # noqa: F401
from .status import ChangeBatch, ChangeKind, ChangeRecord  # noqa: F401

__all__ = [
    "AutosyncError",
    "ChangeBatch",
    "ChangeKind",
    "ChangeRecord",
    "RemoteSyncCoordinator",
    "RepositoryContext",
    "SyncOutcome",
    "SyncState",
    "open_context",
    "__version__",
]

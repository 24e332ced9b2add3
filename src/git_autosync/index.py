"""Apply a ChangeBatch to the staging index.

All records are applied to one in-memory IndexFile which is written to disk
once, after the whole batch. A crash part-way leaves the on-disk index as it
was before the batch; the next scan recomputes whatever is still missing.
"""

from __future__ import annotations

from git import GitCommandError

from .context import RepositoryContext
from .errors import BackendError
from .observability import log_debug
from .status import ChangeBatch


# Index entries are keyed by (path, stage); stages 1-3 only exist mid-conflict
_STAGES = (0, 1, 2, 3)


def apply_batch(ctx: RepositoryContext, batch: ChangeBatch) -> None:
    """Stage additions/modifications and drop deletions, then persist the index.

    Applying the same batch twice leaves the index exactly as applying it once.

    Raises:
        BackendError: If a path cannot be read or the index cannot be written
    """
    if not batch:
        return

    index = ctx.repo.index
    removed = batch.removed_paths
    staged = batch.staged_paths

    for path in removed:
        for stage in _STAGES:
            index.entries.pop((path, stage), None)

    if staged:
        try:
            index.add(staged, write=False)
        except FileNotFoundError as e:
            # The file vanished between scan and stage; the next cycle sees it as deleted
            raise BackendError("stage", "path disappeared before staging", path=e.filename)
        except (GitCommandError, OSError) as e:
            raise BackendError("stage", str(e))

    try:
        # Drop the cached TREE extension; it no longer matches the entries
        index.write(ignore_extension_data=True)
    except OSError as e:
        raise BackendError("write index", str(e))

    log_debug("index updated", staged=len(staged), removed=len(removed))

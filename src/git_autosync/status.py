"""Working-tree drift detection.

The scanner asks git for every path whose working-tree or index content
differs from HEAD and sorts each one into the three kinds of change the
daemon knows how to stage. Anything else (renames recorded in the index,
unmerged paths) is refused with ``UnclassifiedStatus``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Tuple

from git import GitCommandError

from .context import RepositoryContext
from .errors import BackendError, UnclassifiedStatus
from .observability import log_debug


# Two-letter porcelain codes git uses for unmerged paths
UNMERGED_CODES = frozenset({"DD", "AU", "UD", "UA", "DU", "AA", "UU"})


class ChangeKind(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass(frozen=True, order=True)
class ChangeRecord:
    path: str
    kind: ChangeKind = field(compare=False)


@dataclass(frozen=True)
class ChangeBatch:
    """Path-ordered, duplicate-free set of changes for one sync cycle."""

    records: Tuple[ChangeRecord, ...] = ()

    def __post_init__(self) -> None:
        ordered = tuple(sorted(self.records))
        paths = [record.path for record in ordered]
        if len(paths) != len(set(paths)):
            raise ValueError("ChangeBatch paths must be unique")
        object.__setattr__(self, "records", ordered)

    @classmethod
    def of(cls, records: Iterable[ChangeRecord]) -> "ChangeBatch":
        return cls(tuple(records))

    def __iter__(self) -> Iterator[ChangeRecord]:
        return iter(self.records)

    def __len__(self) -> int:
        return len(self.records)

    def __bool__(self) -> bool:
        return bool(self.records)

    def paths(self, *kinds: ChangeKind) -> List[str]:
        return [record.path for record in self.records if not kinds or record.kind in kinds]

    @property
    def staged_paths(self) -> List[str]:
        """Paths whose current content must be added to the index."""
        return self.paths(ChangeKind.ADDED, ChangeKind.MODIFIED)

    @property
    def removed_paths(self) -> List[str]:
        """Paths that must be dropped from the index."""
        return self.paths(ChangeKind.DELETED)


def classify(code: str, path: str) -> ChangeKind:
    """Map a porcelain v1 XY code onto a ChangeKind.

    X is the index column, Y the working-tree column.

    Raises:
        UnclassifiedStatus: For renames, copies, unmerged or unknown codes
    """
    if code == "??":
        return ChangeKind.ADDED
    if code in UNMERGED_CODES or len(code) != 2:
        raise UnclassifiedStatus(path, code)

    index_state, tree_state = code[0], code[1]
    if index_state in "RC":
        raise UnclassifiedStatus(path, code)
    if tree_state == "D" and index_state in " AMT":
        return ChangeKind.DELETED
    if index_state == "D" and tree_state == " ":
        return ChangeKind.DELETED
    if index_state == "A" and tree_state in " MT":
        return ChangeKind.ADDED
    if index_state in " MT" and tree_state in " MT":
        return ChangeKind.MODIFIED
    raise UnclassifiedStatus(path, code)


def _porcelain_entries(ctx: RepositoryContext) -> List[Tuple[str, str]]:
    try:
        raw = ctx.repo.git.status("--porcelain=v1", "-z", "--untracked-files=all")
    except GitCommandError as e:
        raise BackendError("status", str(e.stderr or e).strip())

    entries: List[Tuple[str, str]] = []
    tokens = iter(raw.split("\0"))
    for token in tokens:
        if not token:
            continue
        code, path = token[:2], token[3:]
        if code[0] in "RC":
            # The original path of a rename/copy follows as its own token
            next(tokens, None)
        entries.append((code, path))
    return entries


def scan(ctx: RepositoryContext) -> ChangeBatch:
    """Return every path that differs between the working tree and index/HEAD.

    Raises:
        UnclassifiedStatus: If any path is in a state the daemon cannot stage
        BackendError: If git status itself fails
    """
    kinds: Dict[str, ChangeKind] = {}
    for code, path in _porcelain_entries(ctx):
        kind = classify(code, path)
        log_debug("status entry", path=path, code=code, kind=kind.value)
        previous = kinds.get(path)
        if previous is not None:
            # `git rm --cached`: a staged deletion plus the same file untracked.
            # The content is still on disk, so it is staged again.
            if {previous, kind} != {ChangeKind.DELETED, ChangeKind.ADDED}:
                raise UnclassifiedStatus(path, code)
            kind = ChangeKind.ADDED
        kinds[path] = kind
    return ChangeBatch.of(ChangeRecord(path=path, kind=kind) for path, kind in kinds.items())


def conflicted_paths(ctx: RepositoryContext) -> List[str]:
    """Paths the index holds as unmerged (conflict stages 1-3)."""
    try:
        blobs = ctx.repo.index.unmerged_blobs()
    except (GitCommandError, OSError) as e:
        raise BackendError("read index", str(e))
    return sorted(blobs)


def has_conflicts(ctx: RepositoryContext) -> bool:
    return bool(conflicted_paths(ctx))

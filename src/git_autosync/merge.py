"""Reconcile the local branch with the fetched remote tip.

``analyze`` classifies the relationship between the two tips; ``resolve``
acts on it:

- UP_TO_DATE: nothing to do (the remote tip is already part of local history)
- UNBORN: the branch has no local commit yet; it starts at the remote tip
- FAST_FORWARD: the branch moves to the remote tip, working tree forced to match
- DIVERGED: three-way merge; a clean result becomes a two-parent merge commit,
  conflicts halt with markers left in the working tree for the operator

A halted merge keeps git's MERGE_HEAD so ``conclude_merge`` can finish it once
the operator has resolved and staged every conflicted path.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

from git import GitCommandError, Head
from git.exc import BadName, BadObject

from .commit import CommitDescriptor, author_identity, create_commit
from .context import RepositoryContext
from .errors import BackendError
from .observability import log_action, log_warning
from .status import conflicted_paths, scan


class MergeKind(str, Enum):
    UP_TO_DATE = "up_to_date"
    FAST_FORWARD = "fast_forward"
    DIVERGED = "diverged"
    UNBORN = "unborn"


class ResultKind(str, Enum):
    NOTHING = "nothing"
    FAST_FORWARDED = "fast_forwarded"
    MERGED = "merged"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class MergeAnalysis:
    kind: MergeKind
    local_id: Optional[str] = None
    remote_id: Optional[str] = None


@dataclass(frozen=True)
class MergeResult:
    kind: ResultKind
    commit_id: Optional[str] = None
    conflicts: Tuple[str, ...] = ()


def analyze(ctx: RepositoryContext, remote_id: Optional[str]) -> MergeAnalysis:
    """Compare local HEAD with the fetched remote tip.

    A remote tip that is already an ancestor of HEAD (local strictly ahead)
    is UP_TO_DATE: there is nothing to merge, only something to push.
    """
    local_id = ctx.head_commit_id()
    if local_id is None:
        return MergeAnalysis(MergeKind.UNBORN, None, remote_id)
    if remote_id is None or remote_id == local_id:
        return MergeAnalysis(MergeKind.UP_TO_DATE, local_id, remote_id)

    try:
        if ctx.repo.is_ancestor(remote_id, local_id):
            return MergeAnalysis(MergeKind.UP_TO_DATE, local_id, remote_id)
        if ctx.repo.is_ancestor(local_id, remote_id):
            return MergeAnalysis(MergeKind.FAST_FORWARD, local_id, remote_id)
    except GitCommandError as e:
        raise BackendError("merge analysis", str(e.stderr or e).strip())
    return MergeAnalysis(MergeKind.DIVERGED, local_id, remote_id)


def _branch_head(ctx: RepositoryContext) -> Optional[Head]:
    return next((head for head in ctx.repo.heads if head.name == ctx.branch), None)


def _ignored_paths_in_the_way(ctx: RepositoryContext, target_id: str) -> List[str]:
    """Ignored local files at paths the target commit adds to the tree."""
    repo = ctx.repo
    try:
        if repo.head.is_valid():
            listing = repo.git.diff("--name-only", "-z", "--no-renames", "--diff-filter=A", repo.head.commit.hexsha, target_id)
        else:
            listing = repo.git.ls_tree("-r", "--name-only", "-z", target_id)
    except GitCommandError as e:
        raise BackendError("fast-forward", str(e.stderr or e).strip())

    present = [path for path in listing.split("\0") if path and os.path.lexists(ctx.path / path)]
    if not present:
        return []
    return sorted(repo.ignored(*present))


def fast_forward(ctx: RepositoryContext, target_id: str) -> MergeResult:
    """Point the branch at target_id and force the working tree to match it.

    Refuses when the working tree has drifted since the cycle's scan; the
    forced checkout would otherwise discard those edits. Likewise when
    the target starts tracking a path that exists here as an ignored file.
    """
    repo = ctx.repo
    if repo.head.is_valid() and scan(ctx):
        raise BackendError("fast-forward", "working tree changed during sync; deferring to the next cycle")
    try:
        target = repo.commit(target_id)
    except (BadName, BadObject, ValueError) as e:
        raise BackendError("fast-forward", str(e))

    clobbered = _ignored_paths_in_the_way(ctx, target.hexsha)
    if clobbered:
        raise BackendError(
            "fast-forward",
            f"incoming commit tracks {len(clobbered)} locally ignored file(s); move them aside to continue",
            path=clobbered[0],
        )

    try:
        head = _branch_head(ctx)
        if head is None:
            head = repo.create_head(ctx.branch, target)
        else:
            head.set_commit(target, logmsg=f"autosync: fast-forward to {target.hexsha[:12]}")
        repo.head.reference = head
        repo.head.reset(index=True, working_tree=True)
    except (GitCommandError, BadName, BadObject, ValueError) as e:
        raise BackendError("fast-forward", str(e))

    log_action("git.fast_forward", repo=str(ctx.path), target=target.hexsha[:12])
    return MergeResult(ResultKind.FAST_FORWARDED, target.hexsha)


def three_way_merge(ctx: RepositoryContext, analysis: MergeAnalysis) -> MergeResult:
    """Merge the remote tip into HEAD against their merge base.

    On a clean result HEAD becomes a merge commit whose parents are
    (local tip, remote tip). On conflict no commit is made; the conflicted
    paths are left unmerged in the index with markers in the working tree.
    """
    repo = ctx.repo
    remote_id = analysis.remote_id
    if remote_id is None or analysis.local_id is None:
        raise BackendError("merge", "three-way merge needs both a local and a remote tip")

    try:
        bases = repo.merge_base(analysis.local_id, remote_id)
    except GitCommandError as e:
        raise BackendError("merge base", str(e.stderr or e).strip())

    message = f"Merge {ctx.remote}/{ctx.branch} into {ctx.branch}"
    args: List[str] = ["--no-ff", "--no-edit", "-m", message]
    if not bases:
        # Histories with no common ancestor merge against an empty base
        args.append("--allow-unrelated-histories")

    try:
        repo.git.merge(*args, remote_id)
    except GitCommandError as e:
        conflicts = conflicted_paths(ctx)
        if not conflicts:
            raise BackendError("merge", str(e.stderr or e).strip())
        log_warning(
            "Merge halted on conflicts; resolve and stage them to resume syncing",
            repo=str(ctx.path),
            conflicts=conflicts,
        )
        log_action(
            "git.merge",
            outcome="conflict",
            repo=str(ctx.path),
            local=analysis.local_id[:12],
            remote=remote_id[:12],
            conflicts=conflicts,
        )
        return MergeResult(ResultKind.CONFLICT, None, tuple(conflicts))

    merged = repo.head.commit
    log_action(
        "git.merge",
        repo=str(ctx.path),
        commit=merged.hexsha[:12],
        base=bases[0].hexsha[:12] if bases else None,
    )
    return MergeResult(ResultKind.MERGED, merged.hexsha)


def resolve(ctx: RepositoryContext, analysis: MergeAnalysis) -> MergeResult:
    if analysis.kind is MergeKind.UP_TO_DATE:
        return MergeResult(ResultKind.NOTHING, analysis.local_id)
    if analysis.kind is MergeKind.UNBORN:
        if analysis.remote_id is None:
            return MergeResult(ResultKind.NOTHING)
        return fast_forward(ctx, analysis.remote_id)
    if analysis.kind is MergeKind.FAST_FORWARD:
        return fast_forward(ctx, analysis.remote_id)
    return three_way_merge(ctx, analysis)


def _merge_state_files(git_dir: Path) -> Tuple[Path, Path, Path]:
    return git_dir / "MERGE_HEAD", git_dir / "MERGE_MSG", git_dir / "MERGE_MODE"


def merge_in_progress(ctx: RepositoryContext) -> bool:
    return (ctx.git_dir / "MERGE_HEAD").exists()


def conclude_merge(ctx: RepositoryContext) -> Optional[str]:
    """Commit an operator-resolved merge with parents (HEAD, MERGE_HEAD).

    Returns the merge commit id, or None when no merge is pending or
    conflicts remain unresolved.
    """
    merge_head, merge_msg, merge_mode = _merge_state_files(ctx.git_dir)
    if not merge_head.exists() or conflicted_paths(ctx):
        return None

    head_id = ctx.head_commit_id()
    merge_ids = [line.strip() for line in merge_head.read_text(encoding="utf-8").splitlines() if line.strip()]
    message = f"Merge {ctx.remote}/{ctx.branch} into {ctx.branch}"
    if merge_msg.exists():
        kept = [
            line for line in merge_msg.read_text(encoding="utf-8").splitlines()
            if not line.startswith("#")
        ]
        message = "\n".join(kept).strip() or message

    actor = author_identity(ctx)
    parents = ([head_id] if head_id else []) + merge_ids
    commit_id = create_commit(
        ctx,
        CommitDescriptor(
            message=message,
            author_name=actor.name,
            author_email=actor.email,
            parent_ids=tuple(parents),
        ),
    )
    for state_file in (merge_head, merge_msg, merge_mode):
        state_file.unlink(missing_ok=True)

    log_action("git.merge.conclude", repo=str(ctx.path), commit=commit_id[:12], parents=len(parents))
    return commit_id

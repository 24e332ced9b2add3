"""The sync cycle state machine.

One RemoteSyncCoordinator exists per RepositoryContext. Each trigger runs one
cycle to completion:

    IDLE -> SCANNING -> (no drift: IDLE)
         -> STAGING -> COMMITTING -> FETCHING -> ANALYZING
         -> MERGING (fast-forward / three-way, CONFLICT -> HALTED)
         -> PUSHING -> IDLE

Local drift is committed before the remote is consulted, so a fast-forward or
merge never has uncommitted edits to trample. While the index holds unmerged
paths from a halted merge every cycle stops at HALTED; once the operator has
resolved and staged them the merge is concluded and syncing resumes.

Errors raised by git abort the cycle only: they are logged and reported in the
SyncOutcome, and the next trigger starts from scratch. There is no retry loop.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from git import GitCommandError, PushInfo
from git.exc import BadName

from .commit import commit_index, index_matches_head, summarize
from .context import RepositoryContext
from .credentials import CredentialProvider
from .errors import BackendError, CredentialError, MergeConflict, SyncInProgress, UnclassifiedStatus
from .index import apply_batch
from .merge import MergeKind, ResultKind, analyze, conclude_merge, merge_in_progress, resolve
from .observability import log_debug, log_error, log_info, log_warning, timeit
from .status import conflicted_paths, scan
from .watcher import TriggerChannel


# Fetch errors that mean "the remote has no such branch yet"
_MISSING_REMOTE_REF = (
    "couldn't find remote ref",
    "could not find remote ref",
    "does not match any",
)


class SyncState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    STAGING = "staging"
    COMMITTING = "committing"
    FETCHING = "fetching"
    ANALYZING = "analyzing"
    MERGING = "merging"
    PUSHING = "pushing"
    HALTED = "halted"


@dataclass
class SyncOutcome:
    committed: bool = False
    pushed: bool = False
    conflict: bool = False
    state: SyncState = SyncState.IDLE
    analysis: Optional[MergeKind] = None
    conflicts: Tuple[str, ...] = ()
    changes: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and not self.conflict

    def raise_for_conflict(self) -> None:
        """Raise MergeConflict if the cycle halted on conflicting paths."""
        if self.conflict:
            raise MergeConflict(self.conflicts)

    def summary(self) -> dict:
        outcome = "ok"
        if self.error is not None:
            outcome = "error"
        elif self.conflict:
            outcome = "conflict"
        elif not self.committed and not self.pushed and self.analysis is None:
            outcome = "noop"
        return {
            "outcome": outcome,
            "committed": self.committed,
            "pushed": self.pushed,
            "conflict": self.conflict,
            "state": self.state.value,
            "analysis": self.analysis.value if self.analysis else None,
            "changes": self.changes,
        }


class RemoteSyncCoordinator:
    """Drives scan, stage, commit, fetch, merge and push for one repository.

    Thread Safety:
        At most one cycle runs at a time. A second caller entering
        ``run_cycle`` while a cycle is active gets SyncInProgress rather than
        queueing behind it; the watcher's coalescing channel is the queue.
    """

    def __init__(
        self,
        ctx: RepositoryContext,
        credentials: CredentialProvider,
        *,
        timeout: Optional[float] = None,
    ):
        self.ctx = ctx
        self.credentials = credentials
        self.timeout = timeout
        self._cycle_lock = threading.Lock()
        self._state = SyncState.IDLE

    @property
    def state(self) -> SyncState:
        return self._state

    def _enter(self, state: SyncState, outcome: SyncOutcome) -> None:
        self._state = state
        outcome.state = state
        log_debug("sync state", state=state.value, repo=str(self.ctx.path))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run_cycle(self, *, reconcile: bool = False) -> SyncOutcome:
        """Run one sync cycle to completion.

        Args:
            reconcile: Fetch, merge and push even if the working tree is clean
                (used once at startup to line local and remote up)

        Raises:
            SyncInProgress: If another cycle is running on this coordinator
        """
        if not self._cycle_lock.acquire(blocking=False):
            raise SyncInProgress(f"sync already running for {self.ctx.path}")
        try:
            with timeit("sync.cycle", repo=str(self.ctx.path), reconcile=reconcile) as info:
                outcome = SyncOutcome()
                try:
                    self._run(outcome, reconcile)
                except UnclassifiedStatus as e:
                    outcome.error = str(e)
                    log_error(
                        "Working tree holds a change that cannot be synced automatically",
                        repo=str(self.ctx.path),
                        path=e.path,
                        code=e.code,
                    )
                except CredentialError as e:
                    outcome.error = str(e)
                    log_error("Authentication failed", repo=str(self.ctx.path), operation=e.operation, cause=str(e))
                except BackendError as e:
                    outcome.error = str(e)
                    log_error("Sync cycle aborted", repo=str(self.ctx.path), operation=e.operation, path=e.path, cause=str(e))
                info.update(outcome.summary())
            return outcome
        finally:
            if self._state is not SyncState.HALTED:
                self._state = SyncState.IDLE
            self._cycle_lock.release()

    def serve(
        self,
        channel: TriggerChannel,
        stop: threading.Event,
        *,
        poll_interval: float = 0.5,
    ) -> None:
        """Consume triggers until stopped or the channel closes.

        Raises:
            WatcherFailure: When the watcher closes the channel with a failure
        """
        while not stop.is_set():
            if not channel.receive(timeout=poll_interval):
                if channel.closed:
                    return
                continue
            self.run_cycle()

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def _run(self, outcome: SyncOutcome, reconcile: bool) -> None:
        ctx = self.ctx

        self._enter(SyncState.SCANNING, outcome)
        conflicts = conflicted_paths(ctx)
        if conflicts:
            self._enter(SyncState.HALTED, outcome)
            outcome.conflict = True
            outcome.conflicts = tuple(conflicts)
            log_warning("Unresolved merge conflicts; skipping sync", repo=str(ctx.path), conflicts=conflicts)
            return

        if merge_in_progress(ctx):
            self._enter(SyncState.COMMITTING, outcome)
            if conclude_merge(ctx):
                outcome.committed = True
                # The concluded merge still has to reach the remote
                reconcile = True
            self._enter(SyncState.SCANNING, outcome)

        batch = scan(ctx)
        outcome.changes = len(batch)
        if not batch and not reconcile:
            self._enter(SyncState.IDLE, outcome)
            return

        if batch:
            self._enter(SyncState.STAGING, outcome)
            apply_batch(ctx, batch)
            self._enter(SyncState.COMMITTING, outcome)
            if index_matches_head(ctx):
                # Staging restored what HEAD already records (e.g. after `git rm --cached`)
                log_debug("index matches HEAD; nothing to commit", repo=str(ctx.path))
            else:
                commit_index(ctx, summarize(batch))
                outcome.committed = True

        self._enter(SyncState.FETCHING, outcome)
        remote_id = self.fetch()

        self._enter(SyncState.ANALYZING, outcome)
        analysis = analyze(ctx, remote_id)
        outcome.analysis = analysis.kind
        log_debug("merge analysis", kind=analysis.kind.value, local=analysis.local_id, remote=analysis.remote_id)

        if analysis.kind is not MergeKind.UP_TO_DATE:
            self._enter(SyncState.MERGING, outcome)
            result = resolve(ctx, analysis)
            if result.kind is ResultKind.CONFLICT:
                self._enter(SyncState.HALTED, outcome)
                outcome.conflict = True
                outcome.conflicts = result.conflicts
                return

        head_id = ctx.head_commit_id()
        if head_id is None or head_id == remote_id:
            # Nothing local the remote does not already have
            self._enter(SyncState.IDLE, outcome)
            return

        self._enter(SyncState.PUSHING, outcome)
        self.push()
        outcome.pushed = True
        self._enter(SyncState.IDLE, outcome)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def fetch(self) -> Optional[str]:
        """Fetch the branch into its tracking ref and return the remote tip.

        Returns None when the remote does not have the branch yet.
        """
        ctx = self.ctx
        env = self.credentials.environment(ctx.remote_url())
        refspec = f"+{ctx.branch_ref}:{ctx.tracking_ref}"
        log_debug("GIT_OP_START: fetch", remote=ctx.remote, refspec=refspec)
        try:
            with ctx.repo.git.custom_environment(**env):
                ctx.repo.remote(ctx.remote).fetch(refspec=refspec, kill_after_timeout=self.timeout)
        except GitCommandError as e:
            error_text = str(e).lower()
            if any(token in error_text for token in _MISSING_REMOTE_REF):
                log_info("Remote has no branch yet", remote=ctx.remote, branch=ctx.branch)
                return None
            raise self.credentials.translate("fetch", e)
        log_debug("GIT_OP_END: fetch")

        try:
            return ctx.repo.commit(ctx.tracking_ref).hexsha
        except (BadName, ValueError) as e:
            raise BackendError("fetch", f"tracking ref {ctx.tracking_ref} missing after fetch: {e}")

    def push(self) -> None:
        """Push the local branch to the same-named remote branch.

        A failure leaves the local commit in place; it is valid on its own and
        goes out with the next successful push.
        """
        ctx = self.ctx
        env = self.credentials.environment(ctx.remote_url())
        refspec = f"{ctx.branch_ref}:{ctx.branch_ref}"
        log_debug("GIT_OP_START: push", remote=ctx.remote, refspec=refspec)
        try:
            with ctx.repo.git.custom_environment(**env):
                results = ctx.repo.remote(ctx.remote).push(refspec=refspec, kill_after_timeout=self.timeout)
        except GitCommandError as e:
            raise self.credentials.translate("push", e)

        failed = [info for info in results if info.flags & PushInfo.ERROR]
        if failed or not results:
            summary = "; ".join(info.summary.strip() for info in failed) or "no push result reported"
            error = getattr(results, "error", None)
            if isinstance(error, GitCommandError):
                raise self.credentials.translate("push", error)
            raise BackendError("push", summary)
        log_debug("GIT_OP_END: push")

"""The per-directory repository handle shared by every component."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from git import Repo
from git.exc import InvalidGitRepositoryError, NoSuchPathError

from .errors import BackendError
from .observability import log_action


@dataclass(frozen=True)
class RepositoryContext:
    """Immutable run configuration plus the opened repository.

    Attributes:
        path: Working directory being synchronized
        remote: Name of the git remote (e.g. "origin")
        branch: Short branch name (e.g. "master")
        repo: Opened GitPython repository; components borrow it, never copy it
    """

    path: Path
    remote: str
    branch: str
    repo: Repo

    @property
    def branch_ref(self) -> str:
        return f"refs/heads/{self.branch}"

    @property
    def tracking_ref(self) -> str:
        return f"refs/remotes/{self.remote}/{self.branch}"

    @property
    def git_dir(self) -> Path:
        return Path(self.repo.git_dir)

    def head_commit_id(self) -> Optional[str]:
        """Hex id of the commit HEAD points to, or None on an unborn branch."""
        if not self.repo.head.is_valid():
            return None
        return self.repo.head.commit.hexsha

    def remote_url(self) -> str:
        try:
            return self.repo.remote(self.remote).url
        except ValueError as e:
            raise BackendError("remote lookup", str(e))


def open_repository(path: Path) -> Repo:
    """Open an existing repository rooted at path.

    Raises:
        BackendError: If path does not exist or is not a git working tree
    """
    try:
        return Repo(path)
    except (InvalidGitRepositoryError, NoSuchPathError) as e:
        raise BackendError("open repository", f"not a git repository: {e}", path=str(path))


def open_or_init_repository(path: Path) -> Repo:
    """Open the repository at path, initializing a new one if there is none."""
    try:
        return Repo(path)
    except (InvalidGitRepositoryError, NoSuchPathError):
        pass
    try:
        repo = Repo.init(path, mkdir=True)
    except OSError as e:
        raise BackendError("init repository", str(e), path=str(path))
    log_action("repo.init", repo=str(path))
    return repo


def ensure_on_branch(ctx: RepositoryContext) -> None:
    """Make sure commits land on ctx.branch.

    An unborn HEAD is simply pointed at the configured branch. A HEAD that
    already has history on another branch is refused rather than switched,
    since switching would rewrite the working tree behind the user's back.
    """
    repo = ctx.repo
    if repo.head.is_detached:
        raise BackendError("check branch", "HEAD is detached", path=str(ctx.path))
    current = repo.head.reference.name
    if current == ctx.branch:
        return
    if repo.head.is_valid():
        raise BackendError(
            "check branch",
            f"HEAD is on branch {current!r}, expected {ctx.branch!r}",
            path=str(ctx.path),
        )
    repo.git.symbolic_ref("HEAD", ctx.branch_ref)


def open_context(path: Path, remote: str, branch: str) -> RepositoryContext:
    """Open path and bind it to remote/branch for the daemon's lifetime."""
    path = Path(path).expanduser().resolve()
    repo = open_repository(path)
    if repo.bare:
        raise BackendError("open repository", "bare repositories have no working tree", path=str(path))
    ctx = RepositoryContext(path=Path(repo.working_tree_dir), remote=remote, branch=branch, repo=repo)
    # Validate the remote exists up front so a typo is a setup error
    ctx.remote_url()
    ensure_on_branch(ctx)
    return ctx

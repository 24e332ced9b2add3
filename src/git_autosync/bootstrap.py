"""One-time repository preparation for the ``setup`` command."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from git import Repo

from .commit import INITIAL_COMMIT_MESSAGE, CommitDescriptor, create_commit
from .context import RepositoryContext, open_or_init_repository
from .errors import BackendError
from .observability import log_action


def configure_identity(repo: Repo, author: str, email: str) -> None:
    """Write user.name/user.email into the repository's own git config."""
    if not author.strip() or not email.strip():
        raise BackendError("configure identity", "author name and email must not be empty")
    try:
        with repo.config_writer(config_level="repository") as config:
            config.set_value("user", "name", author)
            config.set_value("user", "email", email)
    except OSError as e:
        raise BackendError("configure identity", str(e))


def setup_repository(directory: Path, author: str, email: str) -> Optional[str]:
    """Open or initialize a repository and give it an author and a first commit.

    The initial commit records whatever the index holds, which for a fresh
    repository is the empty tree, and has no parents. A repository that
    already has history is left alone apart from the identity.

    Returns:
        The initial commit id, or None when the branch already had commits
    """
    directory = Path(directory).expanduser().resolve()
    repo = open_or_init_repository(directory)
    if repo.bare:
        raise BackendError("setup", "bare repositories have no working tree", path=str(directory))

    configure_identity(repo, author, email)

    if repo.head.is_valid():
        log_action("repo.setup", repo=str(directory), initial_commit=None)
        return None
    if repo.head.is_detached:
        raise BackendError("setup", "HEAD is detached", path=str(directory))

    ctx = RepositoryContext(
        path=Path(repo.working_tree_dir),
        remote="",
        branch=repo.head.reference.name,
        repo=repo,
    )
    commit_id = create_commit(
        ctx,
        CommitDescriptor(
            message=INITIAL_COMMIT_MESSAGE,
            author_name=author,
            author_email=email,
        ),
    )
    log_action("repo.setup", repo=str(directory), initial_commit=commit_id[:12])
    return commit_id

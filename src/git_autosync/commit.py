"""Turn the staging index into a commit on the current branch."""

from __future__ import annotations

import configparser
from collections import Counter
from dataclasses import dataclass, field
from typing import List, Sequence

from git import Actor, Commit, GitCommandError
from git.exc import BadName, BadObject

from .context import RepositoryContext
from .errors import BackendError
from .observability import log_action
from .status import ChangeBatch, ChangeKind, ChangeRecord


INITIAL_COMMIT_MESSAGE = "Initial commit"

_VERBS = {
    ChangeKind.ADDED: "Add",
    ChangeKind.MODIFIED: "Update",
    ChangeKind.DELETED: "Remove",
}

_TALLY_LABELS = (
    (ChangeKind.ADDED, "added"),
    (ChangeKind.MODIFIED, "modified"),
    (ChangeKind.DELETED, "removed"),
)


@dataclass(frozen=True)
class CommitDescriptor:
    message: str
    author_name: str
    author_email: str
    parent_ids: Sequence[str] = field(default_factory=tuple)


def describe_change(record: ChangeRecord) -> str:
    return f"{_VERBS[record.kind]} {record.path}"


def summarize(batch: ChangeBatch) -> str:
    """Build a commit message covering every record in the batch.

    A single change becomes the subject line. Several changes get a counted
    subject and an itemized body, one line per path.
    """
    records = list(batch)
    if not records:
        return "Empty commit"
    if len(records) == 1:
        return describe_change(records[0])

    counts = Counter(record.kind for record in records)
    tally = ", ".join(
        f"{counts[kind]} {label}" for kind, label in _TALLY_LABELS if counts[kind]
    )
    lines = [f"Sync {len(records)} files ({tally})", ""]
    lines.extend(f"- {describe_change(record)}" for record in records)
    return "\n".join(lines)


def author_identity(ctx: RepositoryContext) -> Actor:
    """Read user.name/user.email from the repository's effective git config.

    Raises:
        BackendError: If either value is not configured
    """
    reader = ctx.repo.config_reader()
    values = {}
    for key in ("name", "email"):
        try:
            values[key] = str(reader.get_value("user", key))
        except (configparser.NoSectionError, configparser.NoOptionError):
            raise BackendError(
                "read author identity",
                f"user.{key} is not configured; run `git-autosync setup` first",
            )
    return Actor(values["name"], values["email"])


def describe(ctx: RepositoryContext, message: str) -> CommitDescriptor:
    """Descriptor for a commit on top of HEAD (no parents on an unborn branch)."""
    actor = author_identity(ctx)
    head_id = ctx.head_commit_id()
    parents: List[str] = [head_id] if head_id else []
    return CommitDescriptor(
        message=message,
        author_name=actor.name,
        author_email=actor.email,
        parent_ids=tuple(parents),
    )


def create_commit(ctx: RepositoryContext, descriptor: CommitDescriptor) -> str:
    """Write the index as a tree and commit it, advancing the current branch.

    Returns:
        Hex id of the new commit
    """
    repo = ctx.repo
    actor = Actor(descriptor.author_name, descriptor.author_email)
    try:
        tree = repo.index.write_tree()
        parents = [repo.commit(parent_id) for parent_id in descriptor.parent_ids]
        commit = Commit.create_from_tree(
            repo,
            tree,
            descriptor.message,
            parent_commits=parents,
            head=True,
            author=actor,
            committer=actor,
        )
    except (GitCommandError, BadName, BadObject, ValueError, OSError) as e:
        raise BackendError("commit", str(e))

    log_action(
        "git.commit",
        repo=str(ctx.path),
        commit=commit.hexsha[:12],
        parents=len(parents),
        subject=descriptor.message.splitlines()[0] if descriptor.message else "",
    )
    return commit.hexsha


def commit_index(ctx: RepositoryContext, message: str) -> str:
    """Commit the current index on top of HEAD with the configured author."""
    return create_commit(ctx, describe(ctx, message))


def index_matches_head(ctx: RepositoryContext) -> bool:
    """True when committing the index would record HEAD's tree unchanged."""
    repo = ctx.repo
    if not repo.head.is_valid():
        return False
    try:
        return repo.index.write_tree().hexsha == repo.head.commit.tree.hexsha
    except (GitCommandError, ValueError, OSError) as e:
        raise BackendError("write tree", str(e))

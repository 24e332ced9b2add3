"""Pydantic models for ``config.toml``.

Every field has a default, so an empty file (or no file at all) is a valid
configuration. Path settings that point nowhere only warn: the daemon may be
configured before the key or log directory exists.
"""

from __future__ import annotations

import warnings
from pathlib import Path
from typing import List, Literal

from pydantic import BaseModel, Field, field_validator

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]


def _check_path(value: str, *, expect: Literal["file", "dir"], label: str, must_exist: bool) -> str:
    if not value:
        return value
    path = Path(value).expanduser()
    if not path.exists():
        if must_exist:
            warnings.warn(f"{label} {value} does not exist", UserWarning)
        return value
    is_right_kind = path.is_file() if expect == "file" else path.is_dir()
    if not is_right_kind:
        warnings.warn(f"{label} {value} is not a {'file' if expect == 'file' else 'directory'}", UserWarning)
    return value


class SyncConfig(BaseModel):
    """Which remote branch the working directory tracks."""

    remote: str = Field(default="origin", description="Remote fetched from and pushed to")
    branch: str = Field(default="master", description="Branch kept in sync (short name)")

    @field_validator("branch")
    @classmethod
    def check_branch(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("branch must not be empty")
        if v.startswith("refs/"):
            raise ValueError("branch must be a short name, not a full ref")
        return v


class WatchConfig(BaseModel):
    quiet_interval: float = Field(
        default=2.0,
        gt=0,
        description="Seconds without filesystem events before a sync is triggered",
    )
    ignore_patterns: List[str] = Field(
        default_factory=lambda: ["*.swp", "*.swx", "*~", ".#*", "4913"],
        description="Glob patterns whose events never trigger a sync (editor temp files)",
    )


class GitConfig(BaseModel):
    """Transport settings for fetch and push."""

    ssh_key: str = Field(default="", description="Private key for SSH remotes; empty uses ssh-agent")
    timeout: float = Field(default=120.0, gt=0, description="Seconds before a fetch or push is abandoned")

    @field_validator("ssh_key")
    @classmethod
    def check_ssh_key(cls, v: str) -> str:
        return _check_path(v, expect="file", label="SSH key", must_exist=True)


class LoggingConfig(BaseModel):
    level: LogLevel = Field(default="INFO", description="Threshold for the session log file")
    console_level: LogLevel = Field(default="INFO", description="Threshold for messages echoed to stderr")
    dir: str = Field(default="", description="Where session logs go; empty means ~/.git-autosync/logs")
    max_bytes: int = Field(default=10 * 1024 * 1024, ge=0, description="Rotate the session log past this size")
    backup_count: int = Field(default=5, ge=0, description="Rotated session logs kept")
    disable_file: bool = Field(default=False, description="Log to stderr only")

    @field_validator("dir")
    @classmethod
    def check_log_dir(cls, v: str) -> str:
        # Created on first use when missing
        return _check_path(v, expect="dir", label="Log directory", must_exist=False)


class AutosyncConfig(BaseModel):
    version: int = Field(default=1, ge=1, description="config.toml format version")
    sync: SyncConfig = Field(default_factory=SyncConfig)
    watch: WatchConfig = Field(default_factory=WatchConfig)
    git: GitConfig = Field(default_factory=GitConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> "AutosyncConfig":
        return cls()

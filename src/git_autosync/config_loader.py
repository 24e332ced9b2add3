"""Resolve the effective AutosyncConfig for a watched directory.

Layers, lowest priority first:

1. schema defaults
2. ``~/.git-autosync/config.toml``
3. ``.git-autosync/config.toml`` in the directory or the nearest parent holding one
4. ``GIT_AUTOSYNC_*`` environment variables

Tables merge key by key; any other value (lists included) replaces the lower
layer's value outright.
"""

from __future__ import annotations

import copy
import os
import sys
import threading
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib  # type: ignore

from pydantic import ValidationError

from .config_schema import AutosyncConfig
from .errors import ConfigError


CONFIG_DIRNAME = ".git-autosync"
CONFIG_FILENAME = "config.toml"
CREDENTIALS_FILENAME = "credentials.toml"

# (section, field) each variable overrides; values are coerced by the schema
ENV_FIELDS: Dict[str, Tuple[str, str]] = {
    "GIT_AUTOSYNC_REMOTE": ("sync", "remote"),
    "GIT_AUTOSYNC_BRANCH": ("sync", "branch"),
    "GIT_AUTOSYNC_QUIET_INTERVAL": ("watch", "quiet_interval"),
    "GIT_AUTOSYNC_SSH_KEY": ("git", "ssh_key"),
    "GIT_AUTOSYNC_GIT_TIMEOUT": ("git", "timeout"),
    "GIT_AUTOSYNC_LOG_LEVEL": ("logging", "level"),
    "GIT_AUTOSYNC_LOG_DIR": ("logging", "dir"),
    "GIT_AUTOSYNC_LOG_MAX_BYTES": ("logging", "max_bytes"),
    "GIT_AUTOSYNC_LOG_BACKUP_COUNT": ("logging", "backup_count"),
    "GIT_AUTOSYNC_LOG_DISABLE_FILE": ("logging", "disable_file"),
}


@dataclass(frozen=True)
class ConfigSource:
    """One file that may contribute to the configuration."""

    name: str
    path: Optional[Path]

    @property
    def present(self) -> bool:
        return self.path is not None and self.path.is_file()


def user_config_dir() -> Path:
    return Path.home() / CONFIG_DIRNAME


def find_project_config_dir(directory: Optional[Path] = None) -> Optional[Path]:
    """Nearest ``.git-autosync`` directory at or above ``directory``.

    The per-user directory in $HOME does not count as a project directory.
    """
    start = (directory or Path.cwd()).resolve()
    home_dir = user_config_dir()
    for candidate in (start, *start.parents):
        found = candidate / CONFIG_DIRNAME
        if found != home_dir and found.is_dir():
            return found
    return None


def config_sources(directory: Optional[Path] = None) -> List[ConfigSource]:
    """Every config file location, in increasing priority, plus credentials."""
    project_dir = find_project_config_dir(directory)
    return [
        ConfigSource("user config", user_config_dir() / CONFIG_FILENAME),
        ConfigSource("project config", project_dir / CONFIG_FILENAME if project_dir else None),
        ConfigSource("credentials", user_config_dir() / CREDENTIALS_FILENAME),
    ]


def _read_layer(path: Path) -> Dict[str, Any]:
    try:
        with path.open("rb") as fh:
            return tomllib.load(fh)
    except OSError as e:
        raise ConfigError(f"cannot read {path}: {e}")
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{path} is not valid TOML: {e}")


def merge_layer(target: Dict[str, Any], layer: Dict[str, Any]) -> Dict[str, Any]:
    """Fold ``layer`` into ``target`` in place and return ``target``."""
    for key, value in layer.items():
        current = target.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merge_layer(current, value)
        else:
            target[key] = copy.deepcopy(value)
    return target


def environment_layer(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    env = os.environ if environ is None else environ
    layer: Dict[str, Any] = {}
    for name, (section, field) in ENV_FIELDS.items():
        if name in env:
            layer.setdefault(section, {})[field] = env[name]
    return layer


def load_config(directory: Optional[Path] = None, *, use_env: bool = True) -> AutosyncConfig:
    """Build the configuration for ``directory`` from every layer.

    An unreadable user file is skipped with a warning; a broken project file
    or a value the schema rejects is a ConfigError.
    """
    merged: Dict[str, Any] = {}
    user_source, project_source, _ = config_sources(directory)

    if user_source.present:
        try:
            merge_layer(merged, _read_layer(user_source.path))
        except ConfigError as e:
            warnings.warn(f"Skipping invalid user config: {e}", UserWarning)

    if project_source.present:
        try:
            merge_layer(merged, _read_layer(project_source.path))
        except ConfigError as e:
            raise ConfigError(f"Invalid project config: {e}")

    if use_env:
        merge_layer(merged, environment_layer())

    try:
        return AutosyncConfig.model_validate(merged)
    except ValidationError as e:
        raise ConfigError(f"Config validation failed:\n{e}")


_cache: Dict[Optional[Path], AutosyncConfig] = {}
_cache_lock = threading.Lock()


def get_config(directory: Optional[Path] = None, *, reload: bool = False) -> AutosyncConfig:
    """Cached ``load_config``, one entry per resolved directory."""
    key = directory.resolve() if directory is not None else None
    with _cache_lock:
        if reload or key not in _cache:
            _cache[key] = load_config(directory)
        return _cache[key]


def clear_config_cache() -> None:
    with _cache_lock:
        _cache.clear()

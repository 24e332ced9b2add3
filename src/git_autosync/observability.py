"""Logging for git-autosync.

Everything goes through one named logger. Each daemon session writes its own
rotating file under ``~/.git-autosync/logs`` and echoes warnings to stderr.
Actions (a sync cycle, a push, a merge) are logged as single JSON lines so a
session can be grepped or loaded with ``jq``.

Until ``configure_logging`` is called the logger sets itself up from
``GIT_AUTOSYNC_LOG_*`` environment variables.
"""

from __future__ import annotations

import json
import logging
import os
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional


LOGGER_NAME = "git_autosync"

ENV_LOG_DIR = "GIT_AUTOSYNC_LOG_DIR"
ENV_LOG_LEVEL = "GIT_AUTOSYNC_LOG_LEVEL"
ENV_LOG_MAX_BYTES = "GIT_AUTOSYNC_LOG_MAX_BYTES"
ENV_LOG_BACKUP_COUNT = "GIT_AUTOSYNC_LOG_BACKUP_COUNT"
ENV_LOG_DISABLE_FILE = "GIT_AUTOSYNC_LOG_DISABLE_FILE"

_TRUTHY = ("1", "true", "yes")
_LINE_FORMAT = "[%(levelname)s %(asctime)s] %(message)s"
_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

_logger_initialized = False
_session_stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d_%H%M%S")


def _level_named(name: Optional[str], fallback: int = logging.INFO) -> int:
    level = logging.getLevelName((name or "").upper())
    return level if isinstance(level, int) else fallback


def _get_log_level() -> int:
    return _level_named(os.getenv(ENV_LOG_LEVEL))


def _default_log_dir() -> Path:
    return Path.home() / ".git-autosync" / "logs"


def _get_log_file_path(log_dir: Optional[Path] = None) -> Optional[Path]:
    """Session log file in ``log_dir``; None while file logging is disabled."""
    if os.getenv(ENV_LOG_DISABLE_FILE, "").lower() in _TRUTHY:
        return None
    if log_dir is None:
        env_dir = os.getenv(ENV_LOG_DIR)
        log_dir = Path(env_dir) if env_dir else _default_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / f"autosync_{_session_stamp}.log"


@dataclass
class LogSettings:
    level: int = logging.INFO
    console_level: int = logging.WARNING
    log_file: Optional[Path] = None
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 5

    @classmethod
    def from_env(cls) -> "LogSettings":
        defaults = cls()
        return cls(
            level=_get_log_level(),
            log_file=_get_log_file_path(),
            max_bytes=int(os.getenv(ENV_LOG_MAX_BYTES, defaults.max_bytes)),
            backup_count=int(os.getenv(ENV_LOG_BACKUP_COUNT, defaults.backup_count)),
        )

    def apply(self, logger: logging.Logger) -> logging.Logger:
        for old in list(logger.handlers):
            logger.removeHandler(old)
            old.close()
        logger.setLevel(self.level)
        formatter = logging.Formatter(_LINE_FORMAT, datefmt=_DATE_FORMAT)

        handlers: list[logging.Handler] = []
        if self.log_file is not None:
            to_file = RotatingFileHandler(
                str(self.log_file),
                maxBytes=self.max_bytes,
                backupCount=self.backup_count,
                encoding="utf-8",
            )
            to_file.setLevel(self.level)
            handlers.append(to_file)
        to_stderr = logging.StreamHandler()
        to_stderr.setLevel(max(self.level, self.console_level))
        handlers.append(to_stderr)

        for handler in handlers:
            handler.setFormatter(formatter)
            logger.addHandler(handler)
        return logger


def _get_logger() -> logging.Logger:
    global _logger_initialized
    logger = logging.getLogger(LOGGER_NAME)
    if not _logger_initialized:
        _logger_initialized = True
        LogSettings.from_env().apply(logger)
    return logger


def configure_logging(
    *,
    level: str = "INFO",
    log_dir: Optional[Path] = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    disable_file: bool = False,
    console_level: str = "WARNING",
) -> logging.Logger:
    """Rebuild the handlers from resolved ``[logging]`` configuration."""
    global _logger_initialized
    settings = LogSettings(
        level=_level_named(level),
        console_level=_level_named(console_level, logging.WARNING),
        log_file=None if disable_file else _get_log_file_path(log_dir),
        max_bytes=max_bytes,
        backup_count=backup_count,
    )
    _logger_initialized = True
    return settings.apply(logging.getLogger(LOGGER_NAME))


def _dumps(data: Dict[str, Any]) -> str:
    return json.dumps(data, separators=(",", ":"), sort_keys=True, default=str)


def _emit(level: int, message: str, fields: Dict[str, Any]) -> None:
    logger = _get_logger()
    if not logger.isEnabledFor(level):
        return
    logger.log(level, f"{message} {_dumps(fields)}" if fields else message)


def log_action(
    action: str,
    *,
    outcome: str = "ok",
    duration_ms: Optional[float] = None,
    repo: Optional[str] = None,
    **fields: Any,
) -> None:
    """Log one JSON line describing an action.

    Args:
        action: Dotted action name, e.g. "sync.cycle" or "git.push"
        outcome: "ok", "error", "conflict", "noop", ...
        duration_ms: Wall time of the action, when measured
        repo: Working directory the action ran against
        **fields: Extra keys; non-JSON values are stringified
    """
    payload: Dict[str, Any] = {
        "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "action": action,
        "outcome": outcome,
    }
    if duration_ms is not None:
        payload["duration_ms"] = round(duration_ms, 2)
    if repo is not None:
        payload["repo"] = repo
    payload.update(fields)
    _emit(logging.INFO, _dumps(payload), {})


def log_debug(message: str, **fields: Any) -> None:
    _emit(logging.DEBUG, message, fields)


def log_info(message: str, **fields: Any) -> None:
    _emit(logging.INFO, message, fields)


def log_warning(message: str, **fields: Any) -> None:
    _emit(logging.WARNING, message, fields)


def log_error(message: str, **fields: Any) -> None:
    _emit(logging.ERROR, message, fields)


@contextmanager
def timeit(action: str, *, repo: Optional[str] = None, **fields: Any):
    """Log ``action`` with its duration when the block exits.

    The block may fill the yielded dict; its keys land in the log line and an
    "outcome" entry replaces the default "ok". An exception is logged with
    outcome "error" and the exception type, then re-raised.
    """
    started = time.perf_counter()
    extra: Dict[str, Any] = {}
    try:
        yield extra
    except Exception as exc:
        elapsed = (time.perf_counter() - started) * 1000.0
        log_action(action, outcome="error", duration_ms=elapsed, repo=repo, error=type(exc).__name__, **fields)
        raise
    elapsed = (time.perf_counter() - started) * 1000.0
    merged = {**fields, **extra}
    outcome = merged.pop("outcome", "ok")
    log_action(action, outcome=outcome, duration_ms=elapsed, repo=repo, **merged)

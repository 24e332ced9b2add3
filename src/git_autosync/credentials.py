"""Credential resolution for fetch and push.

git-autosync never handles secrets itself during a transfer. Instead the
CredentialProvider prepares the environment git's own transports read:

- SSH remotes authenticate through ssh-agent (the user name embedded in the
  remote URL selects the account) or an explicit private key.
- HTTPS remotes get a token through an inline ``credential.helper``.

Prompts are disabled so a missing credential fails the cycle instead of
hanging the daemon.
"""

from __future__ import annotations

import os
import stat
import sys
import warnings
from pathlib import Path
from typing import Dict, Mapping, Optional

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib  # type: ignore

from git import GitCommandError
from pydantic import BaseModel, Field, ValidationError

from .config_loader import CREDENTIALS_FILENAME, user_config_dir
from .errors import BackendError, ConfigError, CredentialError


# Token lookup order for HTTPS remotes
TOKEN_ENV_VARS = ("GIT_AUTOSYNC_TOKEN", "GITHUB_TOKEN", "GH_TOKEN")

# Fragments of git/ssh stderr that mean "who you are was refused"
_CREDENTIAL_TOKENS = (
    "permission denied",
    "authentication failed",
    "could not read username",
    "could not read password",
    "host key verification failed",
    "invalid username or password",
    "terminal prompts disabled",
    "access denied",
)

# Inline credential helper; reads the secret from the environment so it never
# appears on a command line
_CREDENTIAL_HELPER = (
    "!f() { test \"$1\" = get || exit 0; "
    "echo username=\"$GIT_AUTOSYNC_HTTP_USER\"; "
    "echo password=\"$GIT_AUTOSYNC_HTTP_TOKEN\"; }; f"
)


class SshCredentials(BaseModel):
    """SSH authentication settings."""

    key: str = Field(
        default="",
        description="Path to SSH private key (empty = ssh-agent)",
    )


class HttpsCredentials(BaseModel):
    """HTTPS authentication settings."""

    username: str = Field(
        default="x-access-token",
        description="User name sent with the token",
    )
    token: str = Field(
        default="",
        description="Personal access token",
    )


class Credentials(BaseModel):
    """All git-autosync credentials."""

    ssh: SshCredentials = Field(default_factory=SshCredentials)
    https: HttpsCredentials = Field(default_factory=HttpsCredentials)


def _get_user_credentials_path() -> Path:
    """Get path to user credentials file."""
    return user_config_dir() / CREDENTIALS_FILENAME


def _warn_if_exposed(path: Path) -> None:
    """Warn when a credentials file is readable by group or others."""
    if os.name != "posix":
        return
    try:
        mode = path.stat().st_mode
    except OSError:
        return
    if mode & (stat.S_IRGRP | stat.S_IROTH):
        warnings.warn(
            f"Credentials file {path} is readable by other users; "
            "consider chmod 600.",
            UserWarning,
        )


def load_credentials(path: Optional[Path] = None) -> Credentials:
    """Load credentials from TOML, returning empty credentials if absent.

    Raises:
        ConfigError: If the file exists but cannot be parsed or validated
    """
    path = path or _get_user_credentials_path()
    if not path.exists():
        return Credentials()

    _warn_if_exposed(path)
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}")

    try:
        return Credentials.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid credentials file {path}:\n{e}")


def is_credential_failure(error_text: str) -> bool:
    lowered = error_text.lower()
    return any(token in lowered for token in _CREDENTIAL_TOKENS)


class CredentialProvider:
    """Supplies authentication for every network operation of a repository.

    One instance is handed to the RemoteSyncCoordinator and consulted
    uniformly by fetch and push.
    """

    def __init__(
        self,
        *,
        ssh_key_path: Optional[Path] = None,
        token: Optional[str] = None,
        username: str = "x-access-token",
        base_env: Optional[Mapping[str, str]] = None,
    ):
        self.ssh_key_path = ssh_key_path
        self.token = token or None
        self.username = username
        self._base_env = dict(base_env if base_env is not None else os.environ)

    @classmethod
    def from_sources(
        cls,
        *,
        ssh_key: str = "",
        credentials: Optional[Credentials] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> "CredentialProvider":
        """Resolve credentials with precedence: config > credentials file > environment."""
        env = dict(env if env is not None else os.environ)
        credentials = credentials or Credentials()

        key = ssh_key or credentials.ssh.key
        token = credentials.https.token
        if not token:
            token = next((env[name] for name in TOKEN_ENV_VARS if env.get(name)), "")

        return cls(
            ssh_key_path=Path(key).expanduser() if key else None,
            token=token,
            username=credentials.https.username,
            base_env=env,
        )

    def environment(self, remote_url: str) -> Dict[str, str]:
        """Build the environment for a git transport call against remote_url."""
        env = dict(self._base_env)
        # Fail fast instead of hanging on an interactive prompt
        env["GIT_TERMINAL_PROMPT"] = "0"
        env.setdefault("GCM_INTERACTIVE", "never")

        if remote_url.startswith(("http://", "https://")):
            if self.token:
                # An empty value resets any helpers inherited from git config
                env["GIT_CONFIG_COUNT"] = "2"
                env["GIT_CONFIG_KEY_0"] = "credential.helper"
                env["GIT_CONFIG_VALUE_0"] = ""
                env["GIT_CONFIG_KEY_1"] = "credential.helper"
                env["GIT_CONFIG_VALUE_1"] = _CREDENTIAL_HELPER
                env["GIT_AUTOSYNC_HTTP_USER"] = self.username
                env["GIT_AUTOSYNC_HTTP_TOKEN"] = self.token
        elif self.ssh_key_path:
            env["GIT_SSH_COMMAND"] = (
                f"ssh -i {self.ssh_key_path} -o IdentitiesOnly=yes -o BatchMode=yes"
            )
        else:
            # Keys come from ssh-agent; BatchMode keeps ssh from prompting
            env.setdefault("GIT_SSH_COMMAND", "ssh -o BatchMode=yes")

        return env

    def translate(self, operation: str, error: GitCommandError) -> BackendError:
        """Map a failed transport call onto the error taxonomy."""
        text = str(error.stderr or "") or str(error)
        message = text.strip() or f"git exited with status {error.status}"
        if is_credential_failure(text):
            return CredentialError(operation, message)
        return BackendError(operation, message)

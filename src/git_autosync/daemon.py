"""Long-running ``watch`` mode.

The daemon owns one RepositoryContext for its whole life. Startup order:

1. open the repository and bind it to remote/branch (fatal on failure)
2. take the per-repository DaemonLock
3. run one reconciling cycle so local and remote agree before watching
4. start the ChangeWatcher and consume its triggers on the main thread

SIGINT/SIGTERM are observed between cycles; a cycle in flight always runs to
completion.
"""

from __future__ import annotations

import signal
import threading
from pathlib import Path
from typing import Optional

from .config_schema import AutosyncConfig
from .context import RepositoryContext, open_context
from .coordinator import RemoteSyncCoordinator, SyncOutcome
from .credentials import CredentialProvider, load_credentials
from .errors import SyncInProgress
from .lock import DaemonLock
from .observability import log_action, log_info, log_warning
from .watcher import ChangeWatcher, TriggerChannel


def build_coordinator(
    directory: Path,
    config: AutosyncConfig,
    *,
    remote: Optional[str] = None,
    branch: Optional[str] = None,
) -> RemoteSyncCoordinator:
    """Open directory and assemble a coordinator from the resolved config.

    Raises:
        BackendError: If the repository, remote or branch is unusable
        ConfigError: If the credentials file is invalid
    """
    ctx = open_context(
        directory,
        remote=remote or config.sync.remote,
        branch=branch or config.sync.branch,
    )
    credentials = CredentialProvider.from_sources(
        ssh_key=config.git.ssh_key,
        credentials=load_credentials(),
    )
    return RemoteSyncCoordinator(ctx, credentials, timeout=config.git.timeout)


class AutosyncDaemon:
    """Watches one working tree and keeps it in sync until stopped."""

    def __init__(self, coordinator: RemoteSyncCoordinator, config: AutosyncConfig):
        self.coordinator = coordinator
        self.config = config
        self.channel = TriggerChannel()
        self._stop_event = threading.Event()
        self.watcher = ChangeWatcher(
            self.ctx.path,
            self.channel,
            git_dir=self.ctx.git_dir,
            quiet_interval=config.watch.quiet_interval,
            ignore_patterns=config.watch.ignore_patterns,
        )

    @property
    def ctx(self) -> RepositoryContext:
        return self.coordinator.ctx

    def _setup_signals(self) -> None:
        # signal.signal only works from the main thread
        if threading.current_thread() is not threading.main_thread():
            return
        for sig in (signal.SIGTERM, signal.SIGINT):
            signal.signal(sig, self._handle_signal)

    def _handle_signal(self, signum, frame):
        log_info("Received signal, stopping", signal=signal.Signals(signum).name)
        self.stop()

    def stop(self) -> None:
        self._stop_event.set()
        self.channel.close()

    def reconcile(self) -> Optional[SyncOutcome]:
        try:
            outcome = self.coordinator.run_cycle(reconcile=True)
        except SyncInProgress:
            return None
        if not outcome.ok:
            log_warning(
                "Startup reconciliation did not complete; continuing to watch",
                repo=str(self.ctx.path),
                error=outcome.error,
                conflicts=list(outcome.conflicts),
            )
        return outcome

    def run(self) -> None:
        """Block until stopped by a signal or a watcher failure.

        Raises:
            AutosyncError: If another daemon already watches this repository
            WatcherFailure: If filesystem observation cannot start or dies
        """
        with DaemonLock.for_git_dir(self.ctx.git_dir):
            self._setup_signals()
            log_action(
                "daemon.start",
                repo=str(self.ctx.path),
                remote=self.ctx.remote,
                branch=self.ctx.branch,
            )
            self.reconcile()
            if self._stop_event.is_set():
                return
            self.watcher.start()
            try:
                self.coordinator.serve(self.channel, self._stop_event)
            finally:
                self.watcher.stop()
                log_action("daemon.stop", repo=str(self.ctx.path))

#!/usr/bin/env python3
"""git-autosync CLI - keep a working directory in sync with a git remote."""
from __future__ import annotations

import argparse
import sys

# Fail fast on unsupported interpreter version
if sys.version_info < (3, 10):
    print(f"git-autosync requires Python 3.10+; found {sys.version.split()[0]}", file=sys.stderr)
    sys.exit(1)


def _render_toml(config) -> str:
    import tomlkit

    doc = tomlkit.document()
    doc.add(tomlkit.comment(" git-autosync configuration"))
    doc.add(tomlkit.nl())
    for section, values in config.model_dump().items():
        if isinstance(values, dict):
            table = tomlkit.table()
            for key, val in values.items():
                table.add(key, val)
            doc.add(section, table)
        else:
            doc.add(section, values)
    return tomlkit.dumps(doc)


def _configure_logging(directory):
    from pathlib import Path

    from .config_loader import get_config
    from .observability import configure_logging

    config = get_config(directory)
    configure_logging(
        level=config.logging.level,
        log_dir=Path(config.logging.dir).expanduser() if config.logging.dir else None,
        max_bytes=config.logging.max_bytes,
        backup_count=config.logging.backup_count,
        disable_file=config.logging.disable_file,
        console_level=config.logging.console_level,
    )
    return config


def main(argv: list[str] | None = None) -> None:
    ap = argparse.ArgumentParser(
        prog="git-autosync",
        description="Commit, pull and push a working directory automatically",
    )

    sub = ap.add_subparsers(dest="cmd")

    p_setup = sub.add_parser("setup", help="Initialize a repository for syncing")
    p_setup.add_argument("-d", "--directory", required=True, help="Working directory")
    p_setup.add_argument("-a", "--author", required=True, help="Commit author name")
    p_setup.add_argument("-e", "--email", required=True, help="Commit author email")

    p_watch = sub.add_parser("watch", help="Watch a directory and sync every change")
    p_watch.add_argument("-d", "--directory", required=True, help="Working directory")
    p_watch.add_argument("-r", "--remote", help="Remote name (default: from config, origin)")
    p_watch.add_argument("-b", "--branch", help="Branch name (default: from config, master)")
    p_watch.add_argument(
        "-q", "--quiet-interval", type=float,
        help="Seconds without changes before syncing (default: from config, 2.0)",
    )

    p_sync = sub.add_parser("sync", help="Run one sync cycle and exit")
    p_sync.add_argument("-d", "--directory", default=".", help="Working directory (default: .)")
    p_sync.add_argument("-r", "--remote", help="Remote name (default: from config)")
    p_sync.add_argument("-b", "--branch", help="Branch name (default: from config)")
    p_sync.add_argument("--json", dest="as_json", action="store_true", help="Print the outcome as JSON")

    p_config = sub.add_parser("config", help="Configuration management")
    config_sub = p_config.add_subparsers(dest="config_cmd")

    p_config_init = config_sub.add_parser("init", help="Write a config file with default values")
    p_config_init.add_argument("--project", action="store_true", help="Create .git-autosync/config.toml in the current directory")
    p_config_init.add_argument("--force", action="store_true", help="Overwrite an existing file")

    p_config_show = config_sub.add_parser("show", help="Show resolved configuration")
    p_config_show.add_argument("-d", "--directory", help="Directory to resolve project config from")
    p_config_show.add_argument("--json", dest="as_json", action="store_true", help="Output as JSON")
    p_config_show.add_argument("--sources", action="store_true", help="Show config file locations")

    args = ap.parse_args(argv)

    if not args.cmd:
        ap.print_help()
        sys.exit(0)

    from pathlib import Path

    from .errors import AutosyncError

    if args.cmd == "setup":
        from .bootstrap import setup_repository

        try:
            _configure_logging(Path(args.directory))
            commit_id = setup_repository(Path(args.directory), args.author, args.email)
        except AutosyncError as e:
            print(f"❌ Setup failed: {e}", file=sys.stderr)
            sys.exit(1)
        if commit_id:
            print(f"✅ Initialized {args.directory} (initial commit {commit_id[:12]})")
        else:
            print(f"✅ Configured {args.directory} (existing history kept)")
        sys.exit(0)

    if args.cmd == "watch":
        from .daemon import AutosyncDaemon, build_coordinator
        from .errors import WatcherFailure

        directory = Path(args.directory)
        try:
            config = _configure_logging(directory)
            if args.quiet_interval is not None:
                if args.quiet_interval <= 0:
                    print("❌ --quiet-interval must be positive", file=sys.stderr)
                    sys.exit(1)
                watch = config.watch.model_copy(update={"quiet_interval": args.quiet_interval})
                config = config.model_copy(update={"watch": watch})
            coordinator = build_coordinator(directory, config, remote=args.remote, branch=args.branch)
            daemon = AutosyncDaemon(coordinator, config)
            daemon.run()
        except WatcherFailure as e:
            print(f"❌ Watcher stopped: {e}", file=sys.stderr)
            sys.exit(1)
        except AutosyncError as e:
            print(f"❌ {e}", file=sys.stderr)
            sys.exit(1)
        sys.exit(0)

    if args.cmd == "sync":
        import json as json_module

        from .daemon import build_coordinator

        directory = Path(args.directory)
        try:
            config = _configure_logging(directory)
            coordinator = build_coordinator(directory, config, remote=args.remote, branch=args.branch)
            outcome = coordinator.run_cycle(reconcile=True)
        except AutosyncError as e:
            print(f"❌ {e}", file=sys.stderr)
            sys.exit(1)

        if args.as_json:
            payload = outcome.summary()
            payload["conflicts"] = list(outcome.conflicts)
            payload["error"] = outcome.error
            print(json_module.dumps(payload, indent=2))
        elif outcome.error:
            print(f"❌ Sync failed: {outcome.error}", file=sys.stderr)
        elif outcome.conflict:
            print("⚠️  Merge stopped on conflicts; resolve and stage them:", file=sys.stderr)
            for path in outcome.conflicts:
                print(f"   {path}", file=sys.stderr)
        else:
            parts = []
            if outcome.committed:
                parts.append("committed")
            if outcome.analysis is not None:
                parts.append(f"remote {outcome.analysis.value.replace('_', ' ')}")
            if outcome.pushed:
                parts.append("pushed")
            print(f"✅ In sync ({', '.join(parts) or 'nothing to do'})")

        if outcome.error:
            sys.exit(1)
        sys.exit(2 if outcome.conflict else 0)

    if args.cmd == "config":
        sys.exit(_config_command(args))

    ap.print_help()
    sys.exit(1)


def _config_command(args) -> int:
    import json
    from pathlib import Path

    from .config_loader import CONFIG_DIRNAME, CONFIG_FILENAME, config_sources, load_config
    from .config_schema import AutosyncConfig
    from .errors import ConfigError

    if args.config_cmd == "init":
        if args.project:
            target, scope = Path.cwd() / CONFIG_DIRNAME / CONFIG_FILENAME, "project"
        else:
            target, scope = config_sources()[0].path, "user"
        if target.exists() and not args.force:
            print(f"❌ {target} exists; pass --force to replace it", file=sys.stderr)
            return 1
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(_render_toml(AutosyncConfig.default()), encoding="utf-8")
        print(f"✅ Wrote {scope} config to {target}")
        return 0

    if args.config_cmd == "show":
        directory = Path(args.directory) if args.directory else None
        if args.sources:
            print("Config sources, lowest priority first:")
            for source in config_sources(directory):
                if source.present:
                    print(f"  ✓ {source.name}: {source.path}")
                elif source.path:
                    print(f"  ✗ {source.name}: {source.path} (not found)")
                else:
                    print(f"  - {source.name}: (not applicable)")
            print("GIT_AUTOSYNC_* environment variables take precedence over every file.")
            return 0
        try:
            config = load_config(directory)
        except ConfigError as e:
            print(f"❌ Config error: {e}", file=sys.stderr)
            return 1
        print(json.dumps(config.model_dump(), indent=2) if args.as_json else _render_toml(config))
        return 0

    print("Usage: git-autosync config {init|show}")
    return 0


if __name__ == "__main__":
    main()

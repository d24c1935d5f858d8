#!/usr/bin/env python3
"""
r8-lifecycle CLI

Command-line interface for backups, restores and unattended updates of an
n8n docker-compose deployment.
"""

import argparse
import logging
import shutil
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from common.config import DeploymentConfig, load_config
from common.exceptions import (
    ConfigError, ConfirmationRequired, DependencyError, InvalidBundle,
    LifecycleError, LockContention,
)
from common.logging_config import setup_logging
from common.resources import install_termination_handlers
from runtime.compose import ComposeRuntime
from runtime.kv import RedisStore
from runtime.postgres import PostgresStore
from snapshots.capture import SnapshotCapture
from snapshots.catalog import SnapshotCatalog
from snapshots.models import ArtifactKind, format_size
from snapshots.restore import RestoreExecutor, RestoreOptions
from snapshots.sources import DataSource, default_sources

from .health import HealthProbe, HttpHealthCheck
from .lock import ExecutionLock
from .notify import NotificationSink
from .orchestrator import RunPhase, UpdateOrchestrator

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_MISSING_DEPENDENCY = 3


@dataclass
class Components:
    """Everything a command needs, wired from one configuration."""
    config: DeploymentConfig
    runtime: ComposeRuntime
    sources: List[DataSource]
    capture: SnapshotCapture
    catalog: SnapshotCatalog
    probe: HealthProbe
    restore: RestoreExecutor
    sink: NotificationSink
    lock: ExecutionLock
    orchestrator: UpdateOrchestrator


def build_components(config: DeploymentConfig) -> Components:
    """Wire the lifecycle components from configuration."""
    runtime = ComposeRuntime(config)
    sources = default_sources(config, PostgresStore(runtime, config), RedisStore(config))

    http_checks = {}
    if config.n8n_health_url:
        http_checks["n8n"] = HttpHealthCheck(config.n8n_health_url)

    probe = HealthProbe(runtime, http_checks=http_checks)
    catalog = SnapshotCatalog(config.backup_dir, sources)
    capture = SnapshotCapture(config, runtime, sources)
    restore = RestoreExecutor(config, catalog, runtime, probe, sources)
    sink = NotificationSink.from_config(config.notifications)
    lock = ExecutionLock(config.lock_file)
    orchestrator = UpdateOrchestrator(
        config, runtime, capture, catalog, restore, probe, sink, lock
    )
    return Components(
        config=config,
        runtime=runtime,
        sources=sources,
        capture=capture,
        catalog=catalog,
        probe=probe,
        restore=restore,
        sink=sink,
        lock=lock,
        orchestrator=orchestrator,
    )


def confirm_prompt(prompt: str) -> bool:
    """Ask the operator; anything but 'y' is a no."""
    try:
        response = input(f"\n{prompt} [y/N] ")
    except EOFError:
        return False
    return response.strip().lower() == "y"


def phase_callback(phase: RunPhase, message: str):
    """Display run progress."""
    print(f"  -> {phase.value}{f': {message}' if message else ''}", flush=True)


def cmd_capture(args, components: Components) -> int:
    """Capture a new bundle."""
    with components.lock.acquire():
        bundle = components.capture.capture(args.name, source_filter=args.only)

    if not bundle.is_complete:
        print(f"Bundle {bundle.id} is PARTIAL and was quarantined in {bundle.path}")
        for source, error in bundle.failures.items():
            print(f"  {source}: {error}")
        return EXIT_FAILURE

    print(f"Bundle created: {bundle.id} ({bundle.size_str})")
    for artifact in bundle.artifacts:
        print(f"  {artifact.path:24s} {format_size(artifact.size):>10s}  sha256:{artifact.checksum[:12]}")
    return EXIT_OK


def cmd_list(args, components: Components) -> int:
    """List bundles, newest first."""
    bundles = components.catalog.list()
    if not bundles:
        print("No bundles found.")
        return EXIT_OK

    marker = components.catalog.last_pre_update()
    print(f"Bundles in {components.config.backup_dir}:\n")
    for bundle in bundles:
        flag = "  [last pre-update]" if bundle.id == marker else ""
        print(f"  {bundle.id}{flag}")
        print(f"    Created: {bundle.created_at:%Y-%m-%d %H:%M:%S} ({bundle.age_str})")
        print(f"    Status: {bundle.status.value}, {len(bundle.artifacts)} artifacts, {bundle.size_str}")
    return EXIT_OK


def cmd_validate(args, components: Components) -> int:
    """Validate a bundle."""
    result = components.catalog.validate(args.bundle, verify_checksums=args.deep)
    if result.valid:
        print(f"{args.bundle}: valid")
        return EXIT_OK

    print(f"{args.bundle}: INVALID")
    for issue in result.issues:
        print(f"  - {issue}")
    return EXIT_FAILURE


def restore_options(args) -> RestoreOptions:
    if args.data_only:
        return RestoreOptions.only(ArtifactKind.FILESYSTEM_ARCHIVE)
    if args.db_only:
        return RestoreOptions.only(ArtifactKind.RELATIONAL_DUMP)
    if args.config_only:
        return RestoreOptions.only(ArtifactKind.CONFIG_COPY)
    return RestoreOptions(
        skip_data=args.skip_data,
        skip_db=args.skip_db,
        skip_kv=args.skip_kv,
        skip_config=args.skip_config,
    )


def cmd_restore(args, components: Components) -> int:
    """Restore a bundle into the live deployment."""
    bundle_id = args.bundle or components.catalog.last_pre_update()
    if not bundle_id:
        latest = components.catalog.latest()
        bundle_id = latest.id if latest else None
    if not bundle_id:
        print("No bundle to restore. Run 'r8-lifecycle list' to see bundles.")
        return EXIT_FAILURE

    print(f"Target bundle: {bundle_id}")
    if not args.force:
        print("\n[WARNING] Services will be stopped and current data replaced.")
        print("Previous data is kept in timestamped .backup.* sidecars until the restore succeeds.")

    try:
        with components.lock.acquire():
            result = components.restore.restore(
                bundle_id,
                options=restore_options(args),
                force=args.force,
                confirm=confirm_prompt,
            )
    except ConfirmationRequired:
        print("Restore cancelled.")
        return EXIT_FAILURE

    if result.success:
        print(f"\nRestored {', '.join(result.restored)} from {bundle_id}")
        return EXIT_OK

    print(f"\nRestore failed at step '{result.failed_step}': {result.error}")
    if result.restored:
        print(f"Already restored: {', '.join(result.restored)}")
    if result.sidecars:
        print("Previous data preserved in:")
        for sidecar in result.sidecars:
            print(f"  {sidecar}")
    return EXIT_FAILURE


def cmd_prune(args, components: Components) -> int:
    """Delete bundles past the retention period."""
    days = args.days if args.days is not None else components.config.retention_days
    with components.lock.acquire():
        deleted = components.catalog.prune(days, prefix=args.prefix)

    if not deleted:
        print("Nothing to prune.")
    else:
        print(f"Deleted {len(deleted)} bundles older than {days} days:")
        for bundle_id in deleted:
            print(f"  {bundle_id}")
    return EXIT_OK


def cmd_check(args, components: Components) -> int:
    """Check for newer images."""
    print("Checking for updates...")
    changes = components.orchestrator.check()
    if not changes:
        print("\nAll images are up to date.")
        return EXIT_OK

    print(f"\n{len(changes)} images have updates:\n")
    for change in changes:
        print(f"  {change.describe()}")
    return EXIT_OK


def cmd_apply(args, components: Components) -> int:
    """Run one update: backup, apply, verify, rollback on failure."""
    orchestrator = components.orchestrator
    orchestrator.set_progress_callback(phase_callback)

    print("Starting update run...")
    run = orchestrator.run(
        force=args.force,
        rollback_on_failure=False if args.no_rollback else None,
    )
    print()
    print(run.summary())
    return EXIT_OK if run.succeeded else EXIT_FAILURE


def cmd_status(args, components: Components) -> int:
    """Show lock holder, last run and stack health."""
    owner = components.lock.read_owner()
    if owner:
        print(f"Lock: held by pid {owner.pid} on {owner.hostname or 'unknown host'} since {owner.created_at}")
    else:
        print("Lock: free")

    last = components.orchestrator.last_run()
    if last:
        print()
        print(last.summary())
    else:
        print("\nNo update run recorded.")

    latest = components.catalog.latest()
    print(f"\nLatest bundle: {latest.id if latest else 'none'}")

    statuses = components.probe.statuses(components.config.services)
    print("\nServices:")
    for service, status in statuses.items():
        print(f"  {service}: {status.value}")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="r8-lifecycle",
        description="n8n deployment backup, restore and update system",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  r8-lifecycle capture                     # Back up everything
  r8-lifecycle capture --only postgres     # Database only
  r8-lifecycle list                        # List bundles
  r8-lifecycle restore ID --db-only        # Restore only the database
  r8-lifecycle prune --days 30             # Apply retention
  r8-lifecycle apply                       # Update with backup and rollback
  r8-lifecycle status                      # Lock, last run and health
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument("-p", "--project-dir", type=Path, default=Path.cwd(),
                        help="docker-compose project directory (default: current directory)")
    parser.add_argument("--env-file", type=Path, help="Env file (default: PROJECT_DIR/.env)")
    parser.add_argument("--json-logs", action="store_true", help="JSON format for the log file")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # capture command
    capture_parser = subparsers.add_parser("capture", help="Create a backup bundle")
    capture_parser.add_argument("-n", "--name", default="manual", help="Bundle name (default: manual)")
    capture_parser.add_argument("--only", action="append", metavar="SOURCE",
                                help="Only capture this source (repeatable)")
    capture_parser.set_defaults(func=cmd_capture, needs_docker=True)

    # list command
    list_parser = subparsers.add_parser("list", help="List bundles")
    list_parser.set_defaults(func=cmd_list, needs_docker=False)

    # validate command
    validate_parser = subparsers.add_parser("validate", help="Validate a bundle")
    validate_parser.add_argument("bundle", help="Bundle id")
    validate_parser.add_argument("--deep", action="store_true", help="Also verify checksums")
    validate_parser.set_defaults(func=cmd_validate, needs_docker=False)

    # restore command
    restore_parser = subparsers.add_parser("restore", help="Restore a bundle")
    restore_parser.add_argument("bundle", nargs="?",
                                help="Bundle id (default: last pre-update bundle, else newest)")
    restore_parser.add_argument("-f", "--force", "-y", "--yes", dest="force", action="store_true",
                                help="Skip confirmation")
    restore_parser.add_argument("--skip-data", action="store_true", help="Keep the n8n data directory")
    restore_parser.add_argument("--skip-db", action="store_true", help="Keep the database")
    restore_parser.add_argument("--skip-kv", action="store_true", help="Keep the redis data")
    restore_parser.add_argument("--skip-config", action="store_true", help="Keep config files")
    only = restore_parser.add_mutually_exclusive_group()
    only.add_argument("--data-only", action="store_true", help="Restore only the n8n data directory")
    only.add_argument("--db-only", action="store_true", help="Restore only the database")
    only.add_argument("--config-only", action="store_true", help="Restore only config files")
    restore_parser.set_defaults(func=cmd_restore, needs_docker=True)

    # prune command
    prune_parser = subparsers.add_parser("prune", help="Delete old bundles")
    prune_parser.add_argument("--days", type=int, help="Retention in days (default: BACKUP_RETENTION_DAYS)")
    prune_parser.add_argument("--prefix", help="Only prune bundles whose id starts with this")
    prune_parser.set_defaults(func=cmd_prune, needs_docker=False)

    # check command
    check_parser = subparsers.add_parser("check", help="Check for image updates")
    check_parser.set_defaults(func=cmd_check, needs_docker=True)

    # apply command
    apply_parser = subparsers.add_parser("apply", help="Update with backup and automatic rollback")
    apply_parser.add_argument("--force", action="store_true",
                              help="Apply even without new images or with auto-update disabled")
    apply_parser.add_argument("--no-rollback", action="store_true",
                              help="Don't roll back when verification fails")
    apply_parser.set_defaults(func=cmd_apply, needs_docker=True)

    # status command
    status_parser = subparsers.add_parser("status", help="Show lock, last run and health")
    status_parser.set_defaults(func=cmd_status, needs_docker=True)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_USAGE

    try:
        config = load_config(args.project_dir, env_file=args.env_file)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_USAGE

    level = logging.DEBUG if args.verbose else logging.INFO
    setup_logging(level=level, log_file=config.log_file, json_logs=args.json_logs)
    install_termination_handlers()

    if args.needs_docker and shutil.which("docker") is None:
        print("docker is not installed or not on PATH.", file=sys.stderr)
        return EXIT_MISSING_DEPENDENCY

    components = build_components(config)
    if args.needs_docker and not components.runtime.is_available():
        print("docker daemon is not reachable.", file=sys.stderr)
        return EXIT_MISSING_DEPENDENCY

    try:
        return args.func(args, components)
    except LockContention as e:
        print(f"Another operation is running (pid {e.owner_pid}). Try again later.", file=sys.stderr)
        return EXIT_FAILURE
    except InvalidBundle as e:
        print(f"Bundle {e.details.get('bundle_id')} is invalid:", file=sys.stderr)
        for issue in e.issues:
            print(f"  - {issue}", file=sys.stderr)
        return EXIT_FAILURE
    except DependencyError as e:
        print(str(e), file=sys.stderr)
        return EXIT_MISSING_DEPENDENCY
    except LifecycleError as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {e.message}", file=sys.stderr)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())

# retention_engine/cli/retention.py
"""
CLI commands for retention cleanup.

Usage:
    python -m retention_engine.cli.retention list-policies
    python -m retention_engine.cli.retention status
    python -m retention_engine.cli.retention cleanup notifications --dry-run
    python -m retention_engine.cli.retention cleanup notifications --confirm
    python -m retention_engine.cli.retention run-round --round 1
    python -m retention_engine.cli.retention drain
"""

import argparse
import sys

from dotenv import load_dotenv

load_dotenv()


def get_db_session():
    """Get a database session."""
    from retention_engine.database import get_session_factory

    return get_session_factory()()


def build_executor(args):
    """Registry from --registry (or RETENTION_REGISTRY) wrapped in an executor."""
    from retention_engine.config import get_settings
    from retention_engine.services.retention import CleanupExecutor, LockCoordinator, load_registry

    settings = get_settings()
    path = args.registry or settings.RETENTION_REGISTRY
    if not path:
        print("Error: no registry given. Use --registry module:attribute or set RETENTION_REGISTRY")
        sys.exit(1)

    registry = load_registry(path)
    locks = LockCoordinator(namespace=settings.RETENTION_LOCK_NAMESPACE, backend=settings.RETENTION_LOCK_BACKEND)
    return CleanupExecutor(registry, locks=locks)


def _print_result(table, result):
    if result is None:
        print(f"{table}: no retention policy")
        return

    data = result.to_dict()
    if data.get("skipped"):
        print(f"{table}: skipped ({data['reason']})")
        return

    label = "expired" if data["dry_run"] else "removed"
    line = f"{table}: {data['count']} {label}"
    if "failed" in data:
        line += f", {data['failed']} refused"
    if data.get("remaining"):
        line += " (backlog remains)"
    print(line)


def cmd_list_policies(args):
    """List all registered retention policies."""
    executor = build_executor(args)

    print("\n=== Retention Policies ===\n")
    for policy in executor.registry:
        info = policy.describe()
        print(f"{info['table']} ({info['entity']})")
        print(f"  Strategy: {info['strategy']}")
        print(f"  Period: {policy.period} on {info['column']}")
        print(f"  Batch limit: {info['batch_limit']}")
        print(f"  Filter: {info['has_filter']}  Guard: {info['has_guard']}")
        print()


def cmd_status(args):
    """Show lock guarantee and expired counts per entity type."""
    from retention_engine.services.retention import expired_count

    executor = build_executor(args)
    db = get_db_session()
    try:
        now = executor.clock()
        backend = executor.locks.backend_for(db)

        print("\n=== Retention Status ===\n")
        print(f"Lock backend: {backend.name} ({executor.locks.guarantee_for(db)})")
        if not backend.cross_process:
            print("  Warning: cleanups from separate processes are not mutually excluded")

        print("\nExpired rows:")
        for policy in executor.registry:
            print(f"  {policy.table_name}: {expired_count(db, policy, now)}")
        print()
    finally:
        db.close()


def cmd_cleanup(args):
    """Run cleanup for one entity type."""
    from retention_engine.errors import RetentionError

    executor = build_executor(args)

    if not args.dry_run and not args.confirm:
        print("Error: cleanup requires --confirm flag for non-dry-run operations")
        print("Use --dry-run to preview how many rows are expired")
        sys.exit(1)

    db = get_db_session()
    try:
        print(f"\n{'DRY RUN - ' if args.dry_run else ''}Cleaning up {args.table}...\n")
        try:
            result = executor.run(db, args.table, dry_run=args.dry_run)
        except RetentionError as e:
            print(f"Error: {e}")
            sys.exit(1)

        _print_result(args.table, result)
        if result is None:
            sys.exit(1)
    finally:
        db.close()


def _make_scheduler(args, executor):
    from retention_engine.config import get_settings
    from retention_engine.database import get_session_factory
    from retention_engine.services.retention import BacklogScheduler

    return BacklogScheduler(
        executor,
        get_session_factory(),
        max_rounds=get_settings().RETENTION_MAX_ROUNDS,
    )


def _print_round(result):
    print(f"Round {result.round}: {result.outcome.value}")
    for table, cleanup in result.results.items():
        print("  ", end="")
        _print_result(table, cleanup)
    for table, message in result.errors.items():
        print(f"  {table}: ERROR {message}")


def cmd_run_round(args):
    """Run a single backlog round (no automatic follow-up)."""
    executor = build_executor(args)
    scheduler = _make_scheduler(args, executor)

    result = scheduler.run_backlog_round(args.round)
    _print_round(result)

    if result.next_round is not None:
        print(f"\nExpired rows remain; run round {result.next_round} next.")
    if result.errors:
        sys.exit(1)


def cmd_drain(args):
    """Run backlog rounds until drained or capped."""
    executor = build_executor(args)
    scheduler = _make_scheduler(args, executor)

    rounds = scheduler.drain()
    for result in rounds:
        _print_round(result)

    if any(result.errors for result in rounds):
        sys.exit(1)


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Retention Engine CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Show registered policies
  python -m retention_engine.cli.retention --registry myapp.retention:registry list-policies

  # Preview how many rows are expired
  python -m retention_engine.cli.retention cleanup notifications --dry-run

  # Remove one batch
  python -m retention_engine.cli.retention cleanup notifications --confirm

  # Work off the whole backlog (bounded by RETENTION_MAX_ROUNDS)
  python -m retention_engine.cli.retention drain
        """,
    )
    parser.add_argument("--registry", help="Registry import path (default: RETENTION_REGISTRY)")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")

    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list-policies", help="List registered policies")
    list_parser.set_defaults(func=cmd_list_policies)

    status_parser = subparsers.add_parser("status", help="Show lock guarantee and expired counts")
    status_parser.set_defaults(func=cmd_status)

    cleanup_parser = subparsers.add_parser("cleanup", help="Run cleanup for one table")
    cleanup_parser.add_argument("table", help="Table name of the entity type")
    cleanup_parser.add_argument("--dry-run", action="store_true", help="Count only, don't remove")
    cleanup_parser.add_argument("--confirm", action="store_true", help="Confirm removal")
    cleanup_parser.set_defaults(func=cmd_cleanup)

    round_parser = subparsers.add_parser("run-round", help="Run one backlog round")
    round_parser.add_argument("--round", type=int, default=1, help="Round number (default: 1)")
    round_parser.set_defaults(func=cmd_run_round)

    drain_parser = subparsers.add_parser("drain", help="Run backlog rounds until drained or capped")
    drain_parser.set_defaults(func=cmd_drain)

    args = parser.parse_args(argv)

    from retention_engine.config import get_settings
    from retention_engine.logging_config import configure_logging

    settings = get_settings()
    configure_logging(json_format=settings.LOG_JSON, level=args.log_level or settings.LOG_LEVEL)

    args.func(args)


if __name__ == "__main__":
    main()

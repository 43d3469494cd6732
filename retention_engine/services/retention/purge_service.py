# retention_engine/services/retention/purge_service.py
"""
Cleanup executor.

Handles:
- Policy lookup and lock acquisition per entity type
- Dry runs (count only, no mutation)
- Destroy: row-by-row ORM deletes with guard / veto accounting
- Delete all: one bulk DELETE of up to batch_limit identifiers
- Archive: delegated to archive_service
- The `remaining` flag that drives the backlog scheduler
"""

import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.orm import Session

from retention_engine.errors import RemovalRefused
from retention_engine.logging_config import ProgressTracker, log_cleanup, retention_logger
from retention_engine.services.retention.archive_service import archive_expired, validate_archive_table
from retention_engine.services.retention.expiration import expired_count, expired_query
from retention_engine.services.retention.lock_service import LockCoordinator
from retention_engine.services.retention.policy_service import CleanupStrategy, PolicyRegistry, RetentionPolicy
from retention_engine.services.retention.results import CleanupResult

logger = logging.getLogger(__name__)

# Rows fetched per keyset page while destroying
DESTROY_PAGE_SIZE = 1000


def utcnow() -> datetime:
    return datetime.now(UTC)


def _remove_row(db: Session, policy: RetentionPolicy, row: Any) -> bool:
    """
    Remove one row through the ORM and commit.

    Returns False when the policy guard declines or a host hook raises
    RemovalRefused; the row is left in place. Other errors roll back and
    propagate.
    """
    row_id = getattr(row, policy.identifier_key)
    if policy.guard is not None and not policy.guard(row):
        retention_logger.debug(
            "row_removal_refused",
            f"Guard declined removal of {policy.table_name} row {row_id}",
            table=policy.table_name,
        )
        return False

    try:
        db.delete(row)
        db.commit()
    except RemovalRefused as e:
        db.rollback()
        retention_logger.debug(
            "row_removal_refused",
            f"Removal of {policy.table_name} row {row_id} refused: {e}",
            table=policy.table_name,
            reason=str(e),
        )
        return False
    except Exception:
        db.rollback()
        raise

    return True


def destroy_expired(db: Session, policy: RetentionPolicy, now: datetime, total: int | None = None) -> CleanupResult:
    """
    Remove expired rows one at a time, oldest identifier first.

    Stops once destroyed + failed reaches batch_limit. Each removal commits
    on its own, so partial progress survives a later failure.
    """
    pk = policy.identifier
    destroyed = 0
    failed = 0
    last_id = None
    page_size = min(DESTROY_PAGE_SIZE, policy.batch_limit)

    tracker = ProgressTracker(
        total=min(total if total is not None else policy.batch_limit, policy.batch_limit),
        stage=f"destroy:{policy.table_name}",
    )

    while destroyed + failed < policy.batch_limit:
        query = expired_query(db, policy, now)
        if last_id is not None:
            query = query.filter(pk > last_id)
        ids = [row_id for (row_id,) in query.with_entities(pk).order_by(pk).limit(page_size).all()]

        if not ids:
            break

        for row_id in ids:
            if destroyed + failed >= policy.batch_limit:
                break
            last_id = row_id

            row = db.get(policy.entity, row_id)
            if row is None:
                # Removed by someone else since the page was read
                continue

            if _remove_row(db, policy, row):
                destroyed += 1
                tracker.increment(success=True)
            else:
                failed += 1
                tracker.increment(success=False)

    tracker.finish()
    return CleanupResult(count=destroyed, failed=failed, dry_run=False)


def delete_all_expired(db: Session, policy: RetentionPolicy, now: datetime) -> CleanupResult:
    """
    Bulk delete up to batch_limit expired rows.

    No guards, hooks or ORM cascades run. No DELETE is issued when
    nothing is expired.
    """
    pk = policy.identifier
    ids = [
        row_id
        for (row_id,) in expired_query(db, policy, now)
        .with_entities(pk)
        .order_by(pk)
        .limit(policy.batch_limit)
        .all()
    ]

    if not ids:
        return CleanupResult(count=0, dry_run=False)

    try:
        deleted = db.query(policy.entity).filter(pk.in_(ids)).delete(synchronize_session=False)
        db.commit()
    except Exception:
        db.rollback()
        raise

    return CleanupResult(count=deleted, dry_run=False)


class CleanupExecutor:
    """
    Runs the configured strategy for one entity type under its lock.

    Usage:
        executor = CleanupExecutor(registry)
        result = executor.run(db, Notification)
        if result and result.remaining:
            ...
    """

    def __init__(
        self,
        registry: PolicyRegistry,
        locks: LockCoordinator | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.locks = locks or LockCoordinator()
        self.clock = clock

    def run(
        self,
        db: Session,
        entity: type | str,
        dry_run: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> CleanupResult | None:
        """
        Clean up one entity type.

        Returns None when the entity type has no registered policy, a
        skipped result when its lock is held elsewhere, otherwise the
        strategy's result with `remaining` set.

        Raises ArchiveTableMissing / ArchiveTransactionError (archive) or
        any store error; the lock is released first.
        """
        policy = self.registry.lookup(entity)
        if policy is None:
            return None

        return self.locks.with_lock(
            db,
            policy.table_name,
            lambda: self._perform(db, policy, dry_run, cancel_event),
        )

    def dry_run(self, db: Session, entity: type | str) -> CleanupResult | None:
        return self.run(db, entity, dry_run=True)

    def _perform(
        self,
        db: Session,
        policy: RetentionPolicy,
        dry_run: bool,
        cancel_event: threading.Event | None,
    ) -> CleanupResult:
        now = self.clock()

        with log_cleanup(policy.table_name, policy.strategy.value, dry_run=dry_run) as metrics:
            total_expired = expired_count(db, policy, now)

            if dry_run:
                retention_logger.info(
                    "dry_run_completed",
                    f"Dry run for {policy.table_name}: {total_expired} expired rows",
                    table=policy.table_name,
                    count=total_expired,
                    dry_run=True,
                )
                return CleanupResult(count=total_expired, dry_run=True)

            if policy.strategy == CleanupStrategy.DESTROY:
                result = destroy_expired(db, policy, now, total=total_expired)
            elif policy.strategy == CleanupStrategy.DELETE_ALL:
                result = delete_all_expired(db, policy, now)
            else:
                validate_archive_table(db, policy)
                archived = archive_expired(db, policy, now, cancel_event=cancel_event)
                result = CleanupResult(count=archived, dry_run=False)

            # Refused rows stay in place and do not count as backlog
            result.remaining = total_expired > result.count + (result.failed or 0)
            metrics["count"] = result.count

        retention_logger.info(
            "cleanup_completed",
            f"Cleaned up {result.count} {policy.table_name} rows"
            + (f" ({result.failed} refused)" if result.failed else "")
            + (" - backlog remains" if result.remaining else ""),
            table=policy.table_name,
            strategy=policy.strategy.value,
            count=result.count,
            failed=result.failed,
            remaining=result.remaining,
            dry_run=False,
            duration_ms=metrics.get("duration_ms"),
        )
        return result

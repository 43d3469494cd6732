# retention_engine/services/retention/archive_service.py
"""
Archive coordinator for the archive strategy.

Handles:
- Checking that `<table>_archive` exists before touching any row
- Copying expired rows (minus the primary key) into the archive table
- Deleting the originals in the same transaction as the copy
- Chunked processing so a failure only rolls back the current chunk
"""

import logging
import threading
from datetime import datetime
from typing import Any

from sqlalchemy import MetaData, Table, inspect, insert
from sqlalchemy.orm import Session

from retention_engine.errors import ArchiveTableMissing, ArchiveTransactionError
from retention_engine.logging_config import ProgressTracker, retention_logger
from retention_engine.services.retention.expiration import expired_query
from retention_engine.services.retention.policy_service import RetentionPolicy

logger = logging.getLogger(__name__)

# Rows read (and committed) per transaction
ARCHIVE_CHUNK_SIZE = 500
# Rows per INSERT statement, bounds statement size
ARCHIVE_INSERT_BATCH_SIZE = 50

ARCHIVED_AT_COLUMN = "archived_at"


def archive_table_name(policy: RetentionPolicy) -> str:
    return f"{policy.table_name}_archive"


def validate_archive_table(db: Session, policy: RetentionPolicy) -> None:
    """Raise ArchiveTableMissing if the destination table is absent."""
    archive_table = archive_table_name(policy)
    schema = policy.entity.__table__.schema

    if not inspect(db.connection()).has_table(archive_table, schema=schema):
        raise ArchiveTableMissing(policy.table_name, archive_table)


def _reflect_archive_table(db: Session, policy: RetentionPolicy) -> Table:
    return Table(
        archive_table_name(policy),
        MetaData(),
        schema=policy.entity.__table__.schema,
        autoload_with=db.connection(),
    )


def _archive_values(policy: RetentionPolicy, row: Any) -> dict:
    """Column name -> value for every non-primary-key column of the row."""
    values = {}
    for attr in inspect(policy.entity).column_attrs:
        column = attr.columns[0]
        if column.primary_key:
            continue
        values[column.name] = getattr(row, attr.key)
    return values


def _needs_archived_at(archive_table: Table, values: dict) -> bool:
    column = archive_table.c.get(ARCHIVED_AT_COLUMN)
    return column is not None and column.server_default is None and ARCHIVED_AT_COLUMN not in values


def _insert_archive_rows(db: Session, archive_table: Table, rows: list[dict]) -> None:
    for start in range(0, len(rows), ARCHIVE_INSERT_BATCH_SIZE):
        db.execute(insert(archive_table).values(rows[start : start + ARCHIVE_INSERT_BATCH_SIZE]))


def archive_expired(
    db: Session,
    policy: RetentionPolicy,
    now: datetime,
    cancel_event: threading.Event | None = None,
) -> int:
    """
    Move up to batch_limit expired rows into the archive table.

    Each chunk of min(ARCHIVE_CHUNK_SIZE, batch_limit) rows is copied and
    deleted in one transaction. A failing chunk is rolled back and raised
    as ArchiveTransactionError; chunks committed before it stay committed.

    Setting cancel_event stops the loop before the next chunk starts.

    Returns the number of rows archived.
    """
    archive_table = _reflect_archive_table(db, policy)
    stamp_archived_at = None  # decided on the first chunk

    pk = policy.identifier
    pk_key = policy.identifier_key
    chunk_size = min(ARCHIVE_CHUNK_SIZE, policy.batch_limit)
    total_archived = 0
    last_id = None
    chunk_number = 0

    tracker = ProgressTracker(total=policy.batch_limit, stage=f"archive:{policy.table_name}", log_every=chunk_size)

    while total_archived < policy.batch_limit:
        if cancel_event is not None and cancel_event.is_set():
            retention_logger.info(
                "archive_cancelled",
                f"Archive of {policy.table_name} cancelled after {total_archived} rows",
                table=policy.table_name,
                archived=total_archived,
            )
            break

        query = expired_query(db, policy, now)
        if last_id is not None:
            query = query.filter(pk > last_id)
        batch = query.order_by(pk).limit(chunk_size).all()

        if not batch:
            break

        remaining = policy.batch_limit - total_archived
        if len(batch) > remaining:
            batch = batch[:remaining]

        chunk_number += 1
        ids = [getattr(row, pk_key) for row in batch]

        try:
            rows = [_archive_values(policy, row) for row in batch]
            if stamp_archived_at is None:
                stamp_archived_at = _needs_archived_at(archive_table, rows[0])
            if stamp_archived_at:
                for values in rows:
                    values[ARCHIVED_AT_COLUMN] = now

            _insert_archive_rows(db, archive_table, rows)
            db.query(policy.entity).filter(pk.in_(ids)).delete(synchronize_session=False)
            db.commit()
        except Exception as e:
            db.rollback()
            retention_logger.error(
                "archive_chunk_rolled_back",
                f"Archive chunk {chunk_number} of {policy.table_name} rolled back: {e}",
                table=policy.table_name,
                chunk=chunk_number,
                archived=total_archived,
                error=str(e),
            )
            raise ArchiveTransactionError(
                policy.table_name,
                total_archived,
                f"Archiving {policy.table_name} failed in chunk {chunk_number} "
                f"({total_archived} rows committed before the failure): {e}",
            ) from e

        total_archived += len(batch)
        last_id = ids[-1]
        tracker.increment(amount=len(batch))

        retention_logger.debug(
            "archive_chunk_committed",
            f"Archived chunk {chunk_number} of {policy.table_name} ({len(batch)} rows)",
            table=policy.table_name,
            chunk=chunk_number,
            count=len(batch),
            archived=total_archived,
        )

    tracker.finish()
    return total_archived

# retention_engine/services/retention/lock_service.py
"""
Advisory locking around cleanup invocations.

Only one cleanup per entity type may run at a time. Acquisition is
try-once: a held lock turns the invocation into a skipped result, it
never waits and never retries.

Backends:
- PostgreSQL: pg_try_advisory_lock / pg_advisory_unlock on an integer key
- MySQL / MariaDB: GET_LOCK(name, 0) / RELEASE_LOCK(name)
- Anything else: an in-process lock table. This only excludes concurrent
  invocations inside one Python process; separate processes sharing the
  database are NOT excluded (cross_process=False).

Database locks are session-scoped, so they are taken on a dedicated
connection checked out from the session's engine. Commits made by the
cleanup body return the session's own connection to the pool, which
would otherwise strand the lock on a pooled connection.
"""

import logging
import threading
import zlib
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import TypeVar

from sqlalchemy import text
from sqlalchemy.engine import Connection
from sqlalchemy.orm import Session

from retention_engine.logging_config import retention_logger
from retention_engine.services.retention.results import CleanupResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_NAMESPACE = "retention_engine"


def retention_lock_key(namespace: str, table_name: str) -> int:
    """31-bit non-negative key for an entity type's lock.

    Collisions only cause a spurious skip, never concurrent cleanup.
    """
    return zlib.crc32(f"{namespace}:{table_name}".encode("utf-8")) & 0x7FFFFFFF


# -----------------------------------------------------------------------------
# Backends
# -----------------------------------------------------------------------------


class LockBackend(ABC):
    """A non-blocking, entity-type-scoped lock."""

    name: str = "abstract"
    cross_process: bool = False

    def __init__(self, namespace: str = DEFAULT_NAMESPACE):
        self.namespace = namespace

    @abstractmethod
    def hold(self, db: Session, table_name: str):
        """Context manager yielding True if the lock was acquired."""


class DatabaseLockBackend(LockBackend):
    """Session-scoped database lock held on a dedicated connection."""

    cross_process = True

    @abstractmethod
    def try_lock(self, conn: Connection, table_name: str) -> bool: ...

    @abstractmethod
    def unlock(self, conn: Connection, table_name: str) -> None: ...

    @contextmanager
    def hold(self, db: Session, table_name: str) -> Iterator[bool]:
        conn = db.get_bind().engine.connect()
        try:
            locked = self.try_lock(conn, table_name)
            conn.commit()
            if not locked:
                yield False
                return

            try:
                yield True
            finally:
                self.unlock(conn, table_name)
                conn.commit()
        finally:
            conn.close()


class PostgresAdvisoryLock(DatabaseLockBackend):
    name = "postgres_advisory"

    def key_for(self, table_name: str) -> int:
        return retention_lock_key(self.namespace, table_name)

    def try_lock(self, conn: Connection, table_name: str) -> bool:
        return bool(
            conn.execute(
                text("SELECT pg_try_advisory_lock(:key)"),
                {"key": self.key_for(table_name)},
            ).scalar()
        )

    def unlock(self, conn: Connection, table_name: str) -> None:
        released = conn.execute(
            text("SELECT pg_advisory_unlock(:key)"),
            {"key": self.key_for(table_name)},
        ).scalar()
        if not released:
            logger.warning(f"Advisory lock for {table_name} was not held at release time")


class MySQLNamedLock(DatabaseLockBackend):
    name = "mysql_named"

    def lock_name(self, table_name: str) -> str:
        # MySQL caps lock names at 64 characters
        return f"{self.namespace}_{table_name}"[:64]

    def try_lock(self, conn: Connection, table_name: str) -> bool:
        result = conn.execute(
            text("SELECT GET_LOCK(:name, 0)"),
            {"name": self.lock_name(table_name)},
        ).scalar()
        return result == 1

    def unlock(self, conn: Connection, table_name: str) -> None:
        conn.execute(text("SELECT RELEASE_LOCK(:name)"), {"name": self.lock_name(table_name)})


class InProcessLockTable(LockBackend):
    """
    One threading.Lock per entity type, owned by this instance.

    No cross-process guarantee: two processes cleaning the same table
    will not see each other.
    """

    name = "in_process"
    cross_process = False

    def __init__(self, namespace: str = DEFAULT_NAMESPACE):
        super().__init__(namespace)
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock_for(self, table_name: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(table_name)
            if lock is None:
                lock = self._locks[table_name] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, db: Session, table_name: str) -> Iterator[bool]:
        lock = self.lock_for(table_name)
        if not lock.acquire(blocking=False):
            yield False
            return

        try:
            yield True
        finally:
            lock.release()


# -----------------------------------------------------------------------------
# Coordinator
# -----------------------------------------------------------------------------


class LockCoordinator:
    """
    Picks a lock backend for the session's dialect and runs work under it.

    backend:
        "auto"       - advisory lock when the dialect has one, else in-process
        "advisory"   - require a database lock (ValueError on other dialects)
        "in_process" - always use the in-process lock table
    """

    def __init__(self, namespace: str = DEFAULT_NAMESPACE, backend: str = "auto"):
        if backend not in ("auto", "advisory", "in_process"):
            raise ValueError(f"Unknown lock backend: {backend}. Available: auto, advisory, in_process")

        self.namespace = namespace
        self.backend = backend
        self.in_process = InProcessLockTable(namespace)
        self._postgres = PostgresAdvisoryLock(namespace)
        self._mysql = MySQLNamedLock(namespace)

    def backend_for(self, db: Session) -> LockBackend:
        if self.backend == "in_process":
            return self.in_process

        dialect = db.get_bind().dialect.name
        if dialect == "postgresql":
            return self._postgres
        if dialect in ("mysql", "mariadb"):
            return self._mysql

        if self.backend == "advisory":
            raise ValueError(f"Dialect '{dialect}' has no advisory lock support")
        return self.in_process

    def guarantee_for(self, db: Session) -> str:
        """'cross_process' or 'in_process' - which exclusion the caller gets."""
        return "cross_process" if self.backend_for(db).cross_process else "in_process"

    def with_lock(self, db: Session, table_name: str, body: Callable[[], T]) -> T | CleanupResult:
        """
        Run body() while holding the entity type's lock.

        Returns a skipped CleanupResult immediately if the lock is held
        elsewhere. The lock is released on every exit path of body().
        """
        backend = self.backend_for(db)

        with backend.hold(db, table_name) as acquired:
            if not acquired:
                retention_logger.info(
                    "cleanup_skipped",
                    f"Skipped {table_name}: lock held by another cleanup",
                    table=table_name,
                    reason="locked",
                    lock_backend=backend.name,
                    lock_key=retention_lock_key(self.namespace, table_name),
                )
                return CleanupResult.skipped_result()

            return body()

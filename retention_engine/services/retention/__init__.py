# retention_engine/services/retention/__init__.py
"""
Retention engine services.

Components:
- policy_service: Policy registry and validation
- expiration: Expired-row predicate and counts
- lock_service: Advisory / in-process locking per entity type
- purge_service: Cleanup executor (destroy, delete_all)
- archive_service: Transactional archive-then-delete
- scheduler: Bounded backlog rounds
"""

from retention_engine.services.retention.archive_service import (
    ARCHIVE_CHUNK_SIZE,
    ARCHIVE_INSERT_BATCH_SIZE,
    archive_expired,
    archive_table_name,
    validate_archive_table,
)
from retention_engine.services.retention.expiration import (
    expiration_cutoff,
    expired_count,
    expired_query,
)
from retention_engine.services.retention.lock_service import (
    InProcessLockTable,
    LockCoordinator,
    MySQLNamedLock,
    PostgresAdvisoryLock,
    retention_lock_key,
)
from retention_engine.services.retention.policy_service import (
    DEFAULT_BATCH_LIMIT,
    MINIMUM_RETENTION_PERIOD,
    CleanupStrategy,
    PolicyRegistry,
    RetentionPolicy,
    load_registry,
)
from retention_engine.services.retention.purge_service import (
    CleanupExecutor,
    delete_all_expired,
    destroy_expired,
)
from retention_engine.services.retention.results import CleanupResult
from retention_engine.services.retention.scheduler import (
    MAX_ROUNDS,
    BacklogScheduler,
    RoundOutcome,
    RoundResult,
)

__all__ = [
    # Policy
    "PolicyRegistry",
    "RetentionPolicy",
    "CleanupStrategy",
    "load_registry",
    "MINIMUM_RETENTION_PERIOD",
    "DEFAULT_BATCH_LIMIT",
    # Expiration
    "expiration_cutoff",
    "expired_query",
    "expired_count",
    # Locking
    "LockCoordinator",
    "PostgresAdvisoryLock",
    "MySQLNamedLock",
    "InProcessLockTable",
    "retention_lock_key",
    # Cleanup
    "CleanupExecutor",
    "CleanupResult",
    "destroy_expired",
    "delete_all_expired",
    # Archive
    "archive_expired",
    "archive_table_name",
    "validate_archive_table",
    "ARCHIVE_CHUNK_SIZE",
    "ARCHIVE_INSERT_BATCH_SIZE",
    # Scheduler
    "BacklogScheduler",
    "RoundResult",
    "RoundOutcome",
    "MAX_ROUNDS",
]

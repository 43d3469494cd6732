# retention_engine/services/retention/policy_service.py
"""
Retention policy registry.

Holds one validated RetentionPolicy per entity type. Validation happens
in full before anything is stored, so an entity type either has a
complete policy or none at all.
"""

import dataclasses
import importlib
import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any

from sqlalchemy import Date, DateTime, inspect
from sqlalchemy.exc import NoInspectionAvailable
from sqlalchemy.sql import ClauseElement

from retention_engine.errors import ConfigurationError

logger = logging.getLogger(__name__)

MINIMUM_RETENTION_PERIOD = timedelta(hours=1)
DEFAULT_BATCH_LIMIT = 10_000
DEFAULT_COLUMN = "created_at"


class CleanupStrategy(str, Enum):
    """How expired rows are removed."""

    DESTROY = "destroy"  # Row by row through the ORM, honoring guards
    DELETE_ALL = "delete_all"  # One bulk DELETE, no per-row checks
    ARCHIVE = "archive"  # Copy into <table>_archive, then delete


@dataclass(frozen=True)
class RetentionPolicy:
    """A validated retention policy for one entity type."""

    entity: type
    period: timedelta
    strategy: CleanupStrategy
    column: str
    filter: Callable[[type], ClauseElement] | ClauseElement | None = None
    batch_limit: int = DEFAULT_BATCH_LIMIT
    guard: Callable[[Any], bool] | None = None

    @property
    def table_name(self) -> str:
        return self.entity.__table__.name

    @property
    def identifier_key(self) -> str:
        """Attribute name of the entity's primary key."""
        mapper = inspect(self.entity)
        return mapper.get_property_by_column(mapper.primary_key[0]).key

    @property
    def identifier(self):
        return getattr(self.entity, self.identifier_key)

    @property
    def timestamp(self):
        return getattr(self.entity, self.column)

    def filter_clause(self) -> ClauseElement | None:
        """Evaluate the optional filter into a SQL restriction."""
        if self.filter is None:
            return None
        if isinstance(self.filter, ClauseElement):
            return self.filter
        return self.filter(self.entity)

    def describe(self) -> dict:
        """Plain-dict view for status endpoints and the CLI."""
        return {
            "entity": self.entity.__name__,
            "table": self.table_name,
            "period_seconds": int(self.period.total_seconds()),
            "strategy": self.strategy.value,
            "column": self.column,
            "batch_limit": self.batch_limit,
            "has_filter": self.filter is not None,
            "has_guard": self.guard is not None,
        }


def _mapper_for(entity: Any):
    try:
        return inspect(entity)
    except NoInspectionAvailable:
        raise ConfigurationError(f"{entity!r} is not a mapped entity type") from None


def _validate_column(entity: type, column: str) -> None:
    mapper = _mapper_for(entity)
    table_name = entity.__table__.name

    attr = mapper.column_attrs.get(column)
    if attr is None:
        raise ConfigurationError(f"Unknown column '{column}' for {table_name}")

    column_type = attr.columns[0].type
    if not isinstance(column_type, (DateTime, Date)):
        raise ConfigurationError(f"Column '{column}' on {table_name} is not a timestamp column ({column_type})")


def _validate_strategy(strategy: Any) -> CleanupStrategy:
    try:
        return CleanupStrategy(strategy)
    except ValueError:
        raise ConfigurationError(
            f"Unknown strategy '{strategy}'. Must be 'destroy', 'delete_all', or 'archive'"
        ) from None


def _validate_period(period: Any) -> None:
    if not isinstance(period, timedelta):
        raise ConfigurationError(f"Retention period must be a timedelta, got {period!r}")
    if period < MINIMUM_RETENTION_PERIOD:
        raise ConfigurationError(
            f"Retention period must be at least {MINIMUM_RETENTION_PERIOD}. "
            "A very short period risks accidental mass deletion."
        )


def _validate_batch_limit(batch_limit: Any) -> None:
    # bool is an int subclass; True is not a batch size
    if isinstance(batch_limit, bool) or not isinstance(batch_limit, int) or batch_limit <= 0:
        raise ConfigurationError(f"batch_limit must be a positive integer, got {batch_limit!r}")


def _validate_callables(filter: Any, guard: Any) -> None:
    if filter is not None and not (isinstance(filter, ClauseElement) or callable(filter)):
        raise ConfigurationError(f"filter must be a SQL clause or a callable returning one, got {filter!r}")
    if guard is not None and not callable(guard):
        raise ConfigurationError(f"guard must be callable, got {guard!r}")


def _validate_identifier(entity: type) -> None:
    mapper = _mapper_for(entity)
    if len(mapper.primary_key) != 1:
        raise ConfigurationError(
            f"{entity.__table__.name} must have a single-column primary key for retention cleanup"
        )


def build_policy(
    entity: type,
    period: timedelta,
    strategy: CleanupStrategy | str = CleanupStrategy.DESTROY,
    column: str = DEFAULT_COLUMN,
    filter: Callable[[type], ClauseElement] | ClauseElement | None = None,
    batch_limit: int = DEFAULT_BATCH_LIMIT,
    guard: Callable[[Any], bool] | None = None,
) -> RetentionPolicy:
    """
    Validate arguments and build a RetentionPolicy.

    Checks run in a fixed order (column, strategy, period, batch_limit)
    and the first failure raises ConfigurationError.
    """
    column = str(column)
    _validate_column(entity, column)
    strategy = _validate_strategy(strategy)
    _validate_period(period)
    _validate_batch_limit(batch_limit)
    _validate_callables(filter, guard)
    _validate_identifier(entity)

    return RetentionPolicy(
        entity=entity,
        period=period,
        strategy=strategy,
        column=column,
        filter=filter,
        batch_limit=batch_limit,
        guard=guard,
    )


class PolicyRegistry:
    """
    Mapping of entity type to its retention policy.

    Keyed by table name; lookups accept either the mapped class or the
    table name. Iteration follows registration order.
    """

    def __init__(self):
        self._policies: dict[str, RetentionPolicy] = {}

    def register(
        self,
        entity: type,
        period: timedelta,
        strategy: CleanupStrategy | str = CleanupStrategy.DESTROY,
        column: str = DEFAULT_COLUMN,
        filter: Callable[[type], ClauseElement] | ClauseElement | None = None,
        batch_limit: int = DEFAULT_BATCH_LIMIT,
        guard: Callable[[Any], bool] | None = None,
    ) -> RetentionPolicy:
        """
        Register (or replace) the retention policy for an entity type.

        Raises ConfigurationError before storing anything if validation fails.
        """
        policy = build_policy(
            entity,
            period,
            strategy=strategy,
            column=column,
            filter=filter,
            batch_limit=batch_limit,
            guard=guard,
        )
        self._policies[policy.table_name] = policy

        logger.info(
            f"Registered retention policy for {policy.table_name}: "
            f"{policy.strategy.value} after {policy.period} on {policy.column} "
            f"(batch_limit={policy.batch_limit})"
        )
        return policy

    def update(self, entity: type | str, /, **changes: Any) -> RetentionPolicy:
        """
        Replace fields of an existing policy (operator use).

        The merged policy is fully re-validated; on failure the previous
        policy stays in place.
        """
        current = self.lookup(entity)
        if current is None:
            raise KeyError(f"No retention policy registered for {entity!r}")

        updatable = {f.name for f in dataclasses.fields(RetentionPolicy)} - {"entity"}
        unknown = set(changes) - updatable
        if unknown:
            raise ConfigurationError(f"Cannot update policy fields: {sorted(unknown)}")

        merged = {f.name: getattr(current, f.name) for f in dataclasses.fields(RetentionPolicy)}
        merged.update(changes)
        policy = build_policy(**merged)
        self._policies[policy.table_name] = policy

        logger.info(f"Updated retention policy for {policy.table_name}: {sorted(changes)}")
        return policy

    def unregister(self, entity: type | str) -> RetentionPolicy | None:
        return self._policies.pop(self._key(entity), None)

    def lookup(self, entity: type | str) -> RetentionPolicy | None:
        return self._policies.get(self._key(entity))

    def __iter__(self) -> Iterator[RetentionPolicy]:
        return iter(list(self._policies.values()))

    def __len__(self) -> int:
        return len(self._policies)

    def __contains__(self, entity: object) -> bool:
        return self.lookup(entity) is not None

    @staticmethod
    def _key(entity: type | str) -> str:
        if isinstance(entity, str):
            return entity
        table = getattr(entity, "__table__", None)
        if table is None:
            return repr(entity)
        return table.name


def load_registry(path: str) -> PolicyRegistry:
    """
    Import a host registry from a 'package.module:attribute' path.

    The attribute may be a PolicyRegistry or a zero-argument callable
    returning one.
    """
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ConfigurationError(f"Registry path must look like 'package.module:attribute', got '{path}'")

    module = importlib.import_module(module_name)
    try:
        registry = getattr(module, attribute)
    except AttributeError:
        raise ConfigurationError(f"Module '{module_name}' has no attribute '{attribute}'") from None

    if callable(registry) and not isinstance(registry, PolicyRegistry):
        registry = registry()

    if not isinstance(registry, PolicyRegistry):
        raise ConfigurationError(f"'{path}' is not a PolicyRegistry")
    return registry

# retention_engine/errors.py
"""Exceptions raised by the retention engine."""


class RetentionError(Exception):
    """Base class for retention engine errors."""


class ConfigurationError(RetentionError, ValueError):
    """A retention policy failed validation at registration time."""


class ArchiveTableMissing(RetentionError):
    """The `<table>_archive` destination does not exist."""

    def __init__(self, table_name: str, archive_table: str):
        self.table_name = table_name
        self.archive_table = archive_table
        super().__init__(
            f"Archive table '{archive_table}' does not exist. "
            f"Create it with every column of '{table_name}' except the primary key, "
            f"plus an 'archived_at' timestamp."
        )


class ArchiveTransactionError(RetentionError):
    """An archive chunk failed and was rolled back.

    Chunks committed before the failure stay committed; `archived` is
    their row count.
    """

    def __init__(self, table_name: str, archived: int, message: str):
        self.table_name = table_name
        self.archived = archived
        super().__init__(message)


class RemovalRefused(RetentionError):
    """Raised by a host hook to veto the removal of a single row."""

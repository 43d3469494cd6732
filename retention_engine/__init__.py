"""
Policy-driven expiration of relational rows.

Each ORM entity type registers one retention policy; the engine removes
expired rows by destroy, bulk delete, or archive-then-delete under an
advisory lock, and a bounded backlog loop keeps re-running cleanup until
the batch limits stop leaving work behind.
"""

__version__ = "0.1.0"

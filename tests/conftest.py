# tests/conftest.py
"""
Pytest configuration and fixtures.

Store behaviour is exercised against a real SQLite file per test so that
commits and rollbacks are observable from fresh sessions.
"""

import os

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

# Set test environment
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from sample_models import FIXED_NOW, Base, build_registry  # noqa: E402

from retention_engine.services.retention import (  # noqa: E402
    CleanupExecutor,
    LockCoordinator,
)


@pytest.fixture
def engine(tmp_path):
    """SQLite engine with the sample schema."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'retention.db'}",
        connect_args={"check_same_thread": False},
        future=True,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def registry():
    """Registry mirroring a typical host setup."""
    return build_registry()


@pytest.fixture
def locks():
    return LockCoordinator(namespace="test")


@pytest.fixture
def executor(registry, locks):
    return CleanupExecutor(registry, locks=locks, clock=lambda: FIXED_NOW)


@pytest.fixture
def count_rows(db):
    """Count rows of a table (or mapped class) with a fresh read."""

    def _count(target) -> int:
        table = getattr(target, "__table__", target)
        db.expire_all()
        return db.execute(select(func.count()).select_from(table)).scalar()

    return _count

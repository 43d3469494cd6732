# retention_engine/database.py
from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from retention_engine.config import get_settings


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    """
    Engine for the configured DATABASE_URL.

    Created lazily so importing the engine never requires a database.
    """
    return create_engine(
        get_settings().DATABASE_URL,
        future=True,
        echo=False,  # set True if you want to see SQL in terminal
    )


@lru_cache(maxsize=1)
def get_session_factory() -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=get_engine(),
        future=True,
    )

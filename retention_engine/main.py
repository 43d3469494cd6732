# retention_engine/main.py
"""
Admin API application.

Usage:
    uvicorn --factory retention_engine.main:create_app

The host's registry is loaded from RETENTION_REGISTRY unless one is passed in.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from fastapi import FastAPI
from sqlalchemy.orm import Session

from retention_engine.routers import admin_retention
from retention_engine.services.retention import (
    CleanupExecutor,
    LockCoordinator,
    PolicyRegistry,
    load_registry,
)

logger = logging.getLogger(__name__)


def create_app(
    registry: PolicyRegistry | None = None,
    session_factory: Callable[[], Session] | None = None,
    locks: LockCoordinator | None = None,
    max_rounds: int | None = None,
    admin_api_key: str | None = None,
) -> FastAPI:
    """
    Build the admin API around a registry and a session factory.

    Anything not passed in comes from Settings.
    """
    settings = None
    if any(value is None for value in (registry, session_factory, locks, max_rounds, admin_api_key)):
        from retention_engine.config import get_settings

        settings = get_settings()

    if registry is None:
        if not settings.RETENTION_REGISTRY:
            raise RuntimeError("RETENTION_REGISTRY is not set and no registry was passed to create_app()")
        registry = load_registry(settings.RETENTION_REGISTRY)

    if session_factory is None:
        from retention_engine.database import get_session_factory

        session_factory = get_session_factory()

    if locks is None:
        locks = LockCoordinator(
            namespace=settings.RETENTION_LOCK_NAMESPACE,
            backend=settings.RETENTION_LOCK_BACKEND,
        )

    if max_rounds is None:
        max_rounds = settings.RETENTION_MAX_ROUNDS

    if admin_api_key is None:
        admin_api_key = settings.ADMIN_API_KEY

    app = FastAPI(title="Retention Engine Admin")
    app.state.registry = registry
    app.state.session_factory = session_factory
    app.state.executor = CleanupExecutor(registry, locks=locks)
    app.state.max_rounds = max_rounds
    app.state.admin_api_key = admin_api_key

    app.include_router(admin_retention.router)

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok", "service": "retention-engine", "policies": len(registry)}

    logger.info(f"Retention admin API ready with {len(registry)} policies")
    return app

# retention_engine/auth.py
"""Admin authentication for the retention endpoints."""

import os
import secrets

from fastapi import Header, HTTPException, Request


def _expected_admin_key(request: Request) -> str | None:
    # create_app() may pin a key; otherwise read the environment per request
    return getattr(request.app.state, "admin_api_key", None) or os.getenv("ADMIN_API_KEY")


def require_admin_key(
    request: Request,
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> None:
    """Validate the X-API-Key header. Fails closed when no key is configured."""
    expected_key = _expected_admin_key(request)

    if not expected_key:
        raise HTTPException(
            status_code=500,
            detail="Server misconfiguration: admin authentication not configured",
        )

    if not x_api_key or not secrets.compare_digest(x_api_key, expected_key):
        raise HTTPException(status_code=401, detail="Invalid or missing API key")

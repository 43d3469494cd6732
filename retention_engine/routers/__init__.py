"""
API routers.
"""

from retention_engine.routers import admin_retention

__all__ = ["admin_retention"]

"""API v1 module."""

from idehub.api.v1.dashboard import router as dashboard_router
from idehub.api.v1.health import router as health_router
from idehub.api.v1.instances import router as instances_router

__all__ = [
    "dashboard_router",
    "health_router",
    "instances_router",
]

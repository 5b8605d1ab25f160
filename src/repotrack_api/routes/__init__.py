"""API routes for repotrack."""

from repotrack_api.routes.projects import router as projects_router
from repotrack_api.routes.prometheus import router as metrics_router
from repotrack_api.routes.system import router as system_router

__all__ = [
    "metrics_router",
    "projects_router",
    "system_router",
]

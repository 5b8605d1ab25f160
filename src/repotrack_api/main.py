"""ASGI application.

Run with ``uvicorn repotrack_api.main:app`` or ``python -m repotrack_api.main``.
With ``REPOTRACK_WORKER_ENABLED=false`` the process serves HTTP only and
refreshes are left to ``repotrack-worker`` processes.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from repotrack_api import __version__
from repotrack_api.config import settings
from repotrack_api.dependencies import get_job_worker, get_queue_backend, shutdown_dependencies
from repotrack_api.error_handling import install_error_handling
from repotrack_api.errors import QueueUnavailableError
from repotrack_api.observability import MetricsMiddleware, configure_logging
from repotrack_api.routes import metrics_router, projects_router, system_router
from repotrack_api.storage.db import get_db, reset_db

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    await get_db()

    queue = await get_queue_backend()
    try:
        await queue.ping()
    except QueueUnavailableError as e:
        # Serve anyway; refreshes report scheduled=false until it recovers
        logger.warning("Starting with queue backend unavailable: %s", e.message)

    if settings.worker_enabled:
        (await get_job_worker()).start()
    else:
        logger.info("In-process worker disabled, expecting external workers")

    try:
        yield
    finally:
        await shutdown_dependencies()
        await reset_db()


def create_app() -> FastAPI:
    """Build the application with routers, middleware and error handling."""
    application = FastAPI(
        title="repotrack API",
        description="Track GitHub repository stars, forks and open issues",
        version=__version__,
        lifespan=lifespan,
    )

    install_error_handling(application)
    application.add_middleware(MetricsMiddleware)
    # Credentials stay off with a wildcard origin
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    for router in (projects_router, system_router):
        application.include_router(router, prefix="/v1")
    application.include_router(metrics_router)

    @application.get("/health", tags=["system"])
    async def health() -> dict[str, str]:
        return {"status": "healthy", "version": __version__}

    return application


configure_logging(settings)
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("repotrack_api.main:app", host=settings.host, port=settings.port, reload=settings.debug)

"""FastAPI dependency injection."""

from typing import Annotated

from fastapi import Header

from repotrack_api.config import settings
from repotrack_api.domain.enums import JobKind
from repotrack_api.errors import UnauthorizedError
from repotrack_api.queue.backend import QueueBackend
from repotrack_api.queue.factory import create_queue_backend
from repotrack_api.services.github_fetcher import GitHubFetcher
from repotrack_api.services.job_worker import JobWorker
from repotrack_api.services.project_service import ProjectService
from repotrack_api.services.reconciler import Reconciler
from repotrack_api.storage.dao import ProjectDAO
from repotrack_api.storage.db import get_db

# Singletons
_queue_backend: QueueBackend | None = None
_github_fetcher: GitHubFetcher | None = None
_project_service: ProjectService | None = None
_reconciler: Reconciler | None = None
_job_worker: JobWorker | None = None


async def get_current_user_id(
    x_user_id: Annotated[str | None, Header(alias="X-User-ID")] = None,
) -> str:
    """Caller identity, set by the authenticating proxy in front of the API."""
    if not x_user_id or not x_user_id.strip():
        raise UnauthorizedError("Missing X-User-ID header")
    return x_user_id.strip()


async def get_project_dao() -> ProjectDAO:
    """Get Project DAO."""
    db = await get_db()
    return ProjectDAO(db)


async def get_queue_backend() -> QueueBackend:
    """Get the queue backend singleton (SQLite or Redis per REPOTRACK_QUEUE_URL)."""
    global _queue_backend
    if _queue_backend is None:
        db = await get_db()
        _queue_backend = create_queue_backend(settings, db)
    return _queue_backend


def get_github_fetcher() -> GitHubFetcher:
    """Get the GitHub fetcher singleton."""
    global _github_fetcher
    if _github_fetcher is None:
        _github_fetcher = GitHubFetcher()
    return _github_fetcher


async def get_project_service() -> ProjectService:
    """Get the project service singleton."""
    global _project_service
    if _project_service is None:
        _project_service = ProjectService(
            await get_project_dao(),
            get_github_fetcher(),
            await get_queue_backend(),
        )
    return _project_service


async def get_reconciler() -> Reconciler:
    """Get the refresh job handler."""
    global _reconciler
    if _reconciler is None:
        _reconciler = Reconciler(await get_project_dao(), get_github_fetcher())
    return _reconciler


async def get_job_worker() -> JobWorker:
    """Get the job worker singleton with all handlers registered."""
    global _job_worker
    if _job_worker is None:
        reconciler = await get_reconciler()
        _job_worker = JobWorker(
            queue=await get_queue_backend(),
            handlers={JobKind.PROJECT_REFRESH: reconciler.handle_job},
        )
    return _job_worker


async def shutdown_dependencies() -> None:
    """Stop the worker and release network clients."""
    global _queue_backend, _github_fetcher, _project_service, _reconciler, _job_worker
    if _job_worker is not None:
        await _job_worker.stop()
    if _queue_backend is not None:
        await _queue_backend.close()
    if _github_fetcher is not None:
        await _github_fetcher.aclose()
    _queue_backend = None
    _github_fetcher = None
    _project_service = None
    _reconciler = None
    _job_worker = None

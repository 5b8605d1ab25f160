"""Project management service."""

from __future__ import annotations

import logging

from repotrack_api.config import settings
from repotrack_api.domain.enums import JobKind
from repotrack_api.domain.models import (
    Project,
    ProjectMutationResult,
    RefreshJobPayload,
    RefreshScheduling,
)
from repotrack_api.errors import DuplicateProjectError, ProjectNotFoundError, QueueUnavailableError
from repotrack_api.observability.metrics import ENQUEUE_FAILURES
from repotrack_api.queue.backend import QueueBackend
from repotrack_api.services.github_fetcher import GitHubFetcher
from repotrack_api.storage.dao import ProjectDAO
from repotrack_api.utils.github_url import canonical_repo_url, parse_repository_path

logger = logging.getLogger(__name__)


class ProjectService:
    """Service for tracking repositories on behalf of users.

    Adding a project fetches GitHub synchronously so the first response
    already carries real numbers; every later refresh happens on the job
    queue. A queue outage never fails the request: the primary action is
    kept and the result reports ``refresh.scheduled=False``.
    """

    def __init__(
        self,
        dao: ProjectDAO,
        fetcher: GitHubFetcher,
        queue: QueueBackend,
        *,
        max_attempts: int | None = None,
    ):
        self.dao = dao
        self.fetcher = fetcher
        self.queue = queue
        self.max_attempts = max_attempts or settings.refresh_max_attempts

    async def add_project(self, user_id: str, repo_path: str) -> ProjectMutationResult:
        """Start tracking a repository.

        Raises:
            InvalidPathError: The path does not name one repository.
            DuplicateProjectError: The user already tracks it.
            FetchError: GitHub could not confirm the repository (e.g.
                RepoNotFoundError). Nothing is persisted.
        """
        owner, repo = parse_repository_path(repo_path)

        existing = await self.dao.find_by_owner_repo_for_user(user_id, owner, repo)
        if existing:
            raise DuplicateProjectError(owner, repo)

        logger.info("Validating repository %s/%s on GitHub", owner, repo)
        snapshot = await self.fetcher.fetch(owner, repo)

        project = await self.dao.create(
            user_id=user_id,
            owner=owner,
            name=repo,
            url=canonical_repo_url(owner, repo),
            stars=snapshot.stars,
            forks=snapshot.forks,
            open_issues=snapshot.open_issues,
            github_created_at=snapshot.github_created_at,
            raw_snapshot=snapshot.to_stored_snapshot(),
        )

        refresh = await self._schedule_refresh(project)
        logger.info(
            "Added project %s/%s for user %s (refresh scheduled=%s)",
            owner,
            repo,
            user_id,
            refresh.scheduled,
        )
        message = "Project added successfully"
        if not refresh.scheduled:
            message += ", but background refresh could not be scheduled"
        return ProjectMutationResult(project=project, refresh=refresh, message=message)

    async def request_update(self, user_id: str, project_id: str) -> ProjectMutationResult:
        """Queue a refresh of one project and return its current state.

        Raises:
            ProjectNotFoundError: No such project for this user.
        """
        project = await self.get_project(user_id, project_id)
        refresh = await self._schedule_refresh(project)

        if refresh.scheduled:
            message = "Project update queued. Data will be refreshed shortly."
        else:
            message = "Background job service temporarily unavailable. Please try again later."
        return ProjectMutationResult(project=project, refresh=refresh, message=message)

    async def delete_project(self, user_id: str, project_id: str) -> None:
        """Stop tracking a project.

        Jobs already queued for it are left alone; they find no row and
        complete as no-ops.

        Raises:
            ProjectNotFoundError: No such project for this user.
        """
        deleted = await self.dao.delete_for_user(project_id, user_id)
        if not deleted:
            raise ProjectNotFoundError(project_id)
        logger.info("Deleted project %s for user %s", project_id, user_id)

    async def get_project(self, user_id: str, project_id: str) -> Project:
        project = await self.dao.get_for_user(project_id, user_id)
        if not project:
            raise ProjectNotFoundError(project_id)
        return project

    async def list_projects(self, user_id: str) -> list[Project]:
        return await self.dao.list_for_user(user_id)

    async def _schedule_refresh(self, project: Project) -> RefreshScheduling:
        payload = RefreshJobPayload(project_id=project.id, owner=project.owner, repo=project.name)
        try:
            job = await self.queue.enqueue(
                kind=JobKind.PROJECT_REFRESH,
                ref_id=project.id,
                payload=payload.model_dump(),
                max_attempts=self.max_attempts,
            )
        except QueueUnavailableError as e:
            ENQUEUE_FAILURES.labels(kind=JobKind.PROJECT_REFRESH.value).inc()
            logger.error(
                "Failed to queue refresh for project %s (%s/%s): %s",
                project.id,
                project.owner,
                project.name,
                e.message,
            )
            return RefreshScheduling(scheduled=False, detail=e.message)

        logger.debug("Queued refresh job %s for project %s", job.id, project.id)
        return RefreshScheduling(scheduled=True, job_id=job.id)

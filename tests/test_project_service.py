"""Tests for ProjectService, including the add-then-refresh flow."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from conftest import GitHubStub

from repotrack_api.domain.enums import JobKind, JobStatus
from repotrack_api.errors import (
    DuplicateProjectError,
    InvalidPathError,
    ProjectNotFoundError,
    QueueUnavailableError,
    RepoNotFoundError,
)
from repotrack_api.queue.backend import QueueBackend
from repotrack_api.queue.sqlite_backend import SQLiteQueueBackend
from repotrack_api.services.github_fetcher import GitHubFetcher
from repotrack_api.services.job_worker import JobWorker
from repotrack_api.services.project_service import ProjectService
from repotrack_api.services.reconciler import Reconciler
from repotrack_api.storage.dao import ProjectDAO


@pytest.fixture
def service(
    project_dao: ProjectDAO, fetcher: GitHubFetcher, sqlite_queue: SQLiteQueueBackend
) -> ProjectService:
    return ProjectService(project_dao, fetcher, sqlite_queue, max_attempts=3)


class TestAddProject:
    @pytest.mark.asyncio
    async def test_add_then_refresh(
        self,
        github: GitHubStub,
        service: ProjectService,
        project_dao: ProjectDAO,
        fetcher: GitHubFetcher,
        sqlite_queue: SQLiteQueueBackend,
    ) -> None:
        """Adding stores real numbers; only the worker sets last_refreshed_at."""
        github.repository(
            "facebook", "react", stars=200000, open_issues_count=1200, open_pull_requests=200
        )

        result = await service.add_project("user-1", "https://github.com/facebook/react")

        project = result.project
        assert project.stars == 200000
        assert project.open_issues == 1000
        assert project.url == "https://github.com/facebook/react"
        assert project.last_refreshed_at is None
        assert result.refresh.scheduled is True
        assert result.refresh.job_id is not None

        job = await sqlite_queue.get(result.refresh.job_id)
        assert job is not None
        assert job.kind == JobKind.PROJECT_REFRESH
        assert job.ref_id == project.id
        assert job.payload == {"project_id": project.id, "owner": "facebook", "repo": "react"}
        assert job.max_attempts == 3

        github.repository(
            "facebook", "react", stars=200005, open_issues_count=1200, open_pull_requests=200
        )
        reconciler = Reconciler(project_dao, fetcher)
        worker = JobWorker(
            queue=sqlite_queue,
            handlers={JobKind.PROJECT_REFRESH: reconciler.handle_job},
            worker_id="worker-test",
        )
        await worker.run_once()

        refreshed = await service.get_project("user-1", project.id)
        assert refreshed.stars == 200005
        assert refreshed.last_refreshed_at is not None
        finished = await sqlite_queue.get(job.id)
        assert finished is not None
        assert finished.status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_duplicate_is_rejected(
        self, github: GitHubStub, service: ProjectService
    ) -> None:
        github.repository("facebook", "react")
        await service.add_project("user-1", "facebook/react")
        requests_before = len(github.requests)

        with pytest.raises(DuplicateProjectError):
            await service.add_project("user-1", "https://github.com/Facebook/React")

        # Rejected before any GitHub call
        assert len(github.requests) == requests_before

    @pytest.mark.asyncio
    async def test_two_users_track_same_repo(
        self, github: GitHubStub, service: ProjectService
    ) -> None:
        github.repository("facebook", "react")

        first = await service.add_project("alice", "facebook/react")
        second = await service.add_project("bob", "facebook/react")

        assert first.project.id != second.project.id
        assert [p.id for p in await service.list_projects("alice")] == [first.project.id]
        assert [p.id for p in await service.list_projects("bob")] == [second.project.id]

    @pytest.mark.asyncio
    async def test_invalid_path(self, github: GitHubStub, service: ProjectService) -> None:
        with pytest.raises(InvalidPathError):
            await service.add_project("user-1", "not-a-repo")

        assert github.requests == []

    @pytest.mark.asyncio
    async def test_missing_repository_is_not_stored(
        self, github: GitHubStub, service: ProjectService, sqlite_queue: SQLiteQueueBackend
    ) -> None:
        github.reply("/repos/octo/missing", 404, json={"message": "Not Found"})

        with pytest.raises(RepoNotFoundError):
            await service.add_project("user-1", "octo/missing")

        assert await service.list_projects("user-1") == []
        assert (await sqlite_queue.get_stats()).pending_count == 0

    @pytest.mark.asyncio
    async def test_queue_outage_keeps_project(
        self, github: GitHubStub, project_dao: ProjectDAO, fetcher: GitHubFetcher
    ) -> None:
        """The add succeeds and reports that no refresh was scheduled."""
        github.repository("facebook", "react")
        queue = AsyncMock(spec=QueueBackend)
        queue.enqueue.side_effect = QueueUnavailableError("Queue backend did not respond in time")
        service = ProjectService(project_dao, fetcher, queue)

        result = await service.add_project("user-1", "facebook/react")

        assert result.refresh.scheduled is False
        assert result.refresh.job_id is None
        assert result.refresh.detail == "Queue backend did not respond in time"
        assert "could not be scheduled" in result.message
        assert await project_dao.get(result.project.id) is not None


class TestRequestUpdate:
    @pytest.mark.asyncio
    async def test_request_update_queues_refresh(
        self, github: GitHubStub, service: ProjectService
    ) -> None:
        github.repository("facebook", "react")
        added = await service.add_project("user-1", "facebook/react")

        result = await service.request_update("user-1", added.project.id)

        assert result.refresh.scheduled is True
        # The add already queued a refresh that has not run yet
        assert result.refresh.job_id == added.refresh.job_id
        assert result.project.id == added.project.id

    @pytest.mark.asyncio
    async def test_request_update_for_other_user(
        self, github: GitHubStub, service: ProjectService
    ) -> None:
        github.repository("facebook", "react")
        added = await service.add_project("alice", "facebook/react")

        with pytest.raises(ProjectNotFoundError):
            await service.request_update("bob", added.project.id)

    @pytest.mark.asyncio
    async def test_request_update_with_queue_down(
        self, github: GitHubStub, project_dao: ProjectDAO, fetcher: GitHubFetcher
    ) -> None:
        github.repository("facebook", "react")
        queue = AsyncMock(spec=QueueBackend)
        queue.enqueue.side_effect = QueueUnavailableError()
        service = ProjectService(project_dao, fetcher, queue)
        added = await service.add_project("user-1", "facebook/react")

        result = await service.request_update("user-1", added.project.id)

        assert result.refresh.scheduled is False
        assert "temporarily unavailable" in result.message


class TestDeleteProject:
    @pytest.mark.asyncio
    async def test_delete_then_refresh_is_noop(
        self,
        github: GitHubStub,
        service: ProjectService,
        project_dao: ProjectDAO,
        fetcher: GitHubFetcher,
        sqlite_queue: SQLiteQueueBackend,
    ) -> None:
        """A refresh already queued for a deleted project completes without effect."""
        github.repository("facebook", "react")
        added = await service.add_project("user-1", "facebook/react")

        await service.delete_project("user-1", added.project.id)

        reconciler = Reconciler(project_dao, fetcher)
        worker = JobWorker(
            queue=sqlite_queue,
            handlers={JobKind.PROJECT_REFRESH: reconciler.handle_job},
            worker_id="worker-test",
        )
        await worker.run_once()

        assert await project_dao.get(added.project.id) is None
        assert added.refresh.job_id is not None
        job = await sqlite_queue.get(added.refresh.job_id)
        assert job is not None
        assert job.status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_delete_unknown_project(self, service: ProjectService) -> None:
        with pytest.raises(ProjectNotFoundError):
            await service.delete_project("user-1", "missing")

    @pytest.mark.asyncio
    async def test_delete_other_users_project(
        self, github: GitHubStub, service: ProjectService
    ) -> None:
        github.repository("facebook", "react")
        added = await service.add_project("alice", "facebook/react")

        with pytest.raises(ProjectNotFoundError):
            await service.delete_project("bob", added.project.id)

        assert (await service.get_project("alice", added.project.id)).id == added.project.id

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Any

import pytest
from conftest import GitHubStub

from repotrack_api.domain.enums import JobKind, JobStatus, StallOutcome
from repotrack_api.domain.models import Job, QueueStats
from repotrack_api.errors import (
    JobPayloadError,
    RateLimitedError,
    RepoNotFoundError,
    TransientError,
)
from repotrack_api.queue.sqlite_backend import SQLiteQueueBackend
from repotrack_api.services.github_fetcher import GitHubFetcher
from repotrack_api.services.job_worker import JobHandler, JobWorker
from repotrack_api.services.reconciler import Reconciler
from repotrack_api.storage.dao import ProjectDAO

REFRESH = JobKind.PROJECT_REFRESH


class _Recorder:
    """Collects lifecycle hook calls."""

    def __init__(self) -> None:
        self.completed: list[str] = []
        self.failed: list[tuple[str, bool]] = []
        self.stalled: list[tuple[str, StallOutcome]] = []

    def on_completed(self, job: Job) -> None:
        self.completed.append(job.id)

    def on_failed(self, job: Job, error: str, will_retry: bool) -> None:
        self.failed.append((error, will_retry))

    def on_stalled(self, job: Job, outcome: StallOutcome) -> None:
        self.stalled.append((job.id, outcome))


def _worker(
    queue: Any,
    handler: JobHandler | None,
    recorder: _Recorder | None = None,
    **kwargs: Any,
) -> JobWorker:
    recorder = recorder or _Recorder()
    options: dict[str, Any] = {
        "poll_interval_seconds": 0.01,
        "stall_check_interval_seconds": 0.05,
        "job_timeout_seconds": 5.0,
        "backoff_base_seconds": 0,
        "backoff_max_seconds": 0,
        "worker_id": "worker-test",
    }
    options.update(kwargs)
    return JobWorker(
        queue=queue,
        handlers={REFRESH: handler} if handler else {},
        on_completed=recorder.on_completed,
        on_failed=recorder.on_failed,
        on_stalled=recorder.on_stalled,
        **options,
    )


@pytest.mark.asyncio
async def test_run_once_completes_job(sqlite_queue: SQLiteQueueBackend) -> None:
    seen: list[dict[str, Any]] = []

    async def handler(job: Job) -> None:
        seen.append(job.payload)

    recorder = _Recorder()
    worker = _worker(sqlite_queue, handler, recorder)
    job = await sqlite_queue.enqueue(kind=REFRESH, ref_id="p-1", payload={"x": 1})

    processed = await worker.run_once()

    assert processed is not None
    assert processed.id == job.id
    assert seen == [{"x": 1}]
    assert recorder.completed == [job.id]
    stored = await sqlite_queue.get(job.id)
    assert stored is not None
    assert stored.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_run_once_with_empty_queue(sqlite_queue: SQLiteQueueBackend) -> None:
    async def handler(job: Job) -> None:
        raise AssertionError("should not run")

    worker = _worker(sqlite_queue, handler)

    assert await worker.run_once() is None


@pytest.mark.asyncio
async def test_transient_failure_retries_until_exhausted(
    sqlite_queue: SQLiteQueueBackend,
) -> None:
    calls = 0

    async def handler(job: Job) -> None:
        nonlocal calls
        calls += 1
        raise TransientError("GitHub returned 502", upstream_status=502)

    recorder = _Recorder()
    worker = _worker(sqlite_queue, handler, recorder)
    job = await sqlite_queue.enqueue(kind=REFRESH, ref_id="p-1", max_attempts=3)

    for _ in range(3):
        assert await worker.run_once() is not None
    assert await worker.run_once() is None

    assert calls == 3
    assert [will_retry for _, will_retry in recorder.failed] == [True, True, False]
    stored = await sqlite_queue.get(job.id)
    assert stored is not None
    assert stored.status == JobStatus.FAILED
    assert stored.last_error is not None
    assert stored.last_error.startswith("UPSTREAM_TRANSIENT")


@pytest.mark.asyncio
async def test_non_retryable_failure_is_final(sqlite_queue: SQLiteQueueBackend) -> None:
    async def handler(job: Job) -> None:
        raise RepoNotFoundError("octo", "gone")

    recorder = _Recorder()
    worker = _worker(sqlite_queue, handler, recorder)
    job = await sqlite_queue.enqueue(kind=REFRESH, ref_id="p-1", max_attempts=3)

    await worker.run_once()

    stored = await sqlite_queue.get(job.id)
    assert stored is not None
    assert stored.status == JobStatus.FAILED
    assert stored.attempts == 1
    assert recorder.failed == [(stored.last_error, False)]


@pytest.mark.asyncio
async def test_payload_error_is_final(sqlite_queue: SQLiteQueueBackend) -> None:
    async def handler(job: Job) -> None:
        raise JobPayloadError("Refresh job payload is malformed")

    worker = _worker(sqlite_queue, handler)
    job = await sqlite_queue.enqueue(kind=REFRESH, ref_id="p-1", max_attempts=3)

    await worker.run_once()

    stored = await sqlite_queue.get(job.id)
    assert stored is not None
    assert stored.status == JobStatus.FAILED


@pytest.mark.asyncio
async def test_rate_limit_delays_retry(sqlite_queue: SQLiteQueueBackend) -> None:
    """Retry-After from GitHub is a lower bound on the backoff."""

    async def handler(job: Job) -> None:
        raise RateLimitedError(upstream_status=429, retry_after_seconds=60)

    worker = _worker(sqlite_queue, handler)
    job = await sqlite_queue.enqueue(kind=REFRESH, ref_id="p-1", max_attempts=3)

    await worker.run_once()

    stored = await sqlite_queue.get(job.id)
    assert stored is not None
    assert stored.status == JobStatus.PENDING
    assert stored.available_at is not None
    assert (stored.available_at - datetime.now(UTC)).total_seconds() > 50
    assert await worker.run_once() is None


@pytest.mark.asyncio
async def test_unexpected_exception_is_retried(sqlite_queue: SQLiteQueueBackend) -> None:
    async def handler(job: Job) -> None:
        raise RuntimeError("bug")

    worker = _worker(sqlite_queue, handler)
    job = await sqlite_queue.enqueue(kind=REFRESH, ref_id="p-1", max_attempts=2)

    await worker.run_once()

    stored = await sqlite_queue.get(job.id)
    assert stored is not None
    assert stored.status == JobStatus.PENDING
    assert stored.last_error == "RuntimeError: bug"


@pytest.mark.asyncio
async def test_handler_timeout_is_retried(sqlite_queue: SQLiteQueueBackend) -> None:
    async def handler(job: Job) -> None:
        await asyncio.sleep(5)

    worker = _worker(sqlite_queue, handler, job_timeout_seconds=0.05)
    job = await sqlite_queue.enqueue(kind=REFRESH, ref_id="p-1", max_attempts=2)

    await worker.run_once()

    stored = await sqlite_queue.get(job.id)
    assert stored is not None
    assert stored.status == JobStatus.PENDING
    assert stored.last_error is not None
    assert "timed out" in stored.last_error


@pytest.mark.asyncio
async def test_missing_handler_fails_job(sqlite_queue: SQLiteQueueBackend) -> None:
    worker = _worker(sqlite_queue, None)
    job = await sqlite_queue.enqueue(kind=REFRESH, ref_id="p-1", max_attempts=3)

    await worker.run_once()

    stored = await sqlite_queue.get(job.id)
    assert stored is not None
    assert stored.status == JobStatus.FAILED


@pytest.mark.asyncio
async def test_check_stalled_requeues_abandoned_job(sqlite_queue: SQLiteQueueBackend) -> None:
    done: list[str] = []

    async def handler(job: Job) -> None:
        done.append(job.id)

    recorder = _Recorder()
    worker = _worker(sqlite_queue, handler, recorder)
    job = await sqlite_queue.enqueue(kind=REFRESH, ref_id="p-1", max_attempts=3)
    # Another worker claimed the job and died
    await sqlite_queue.dequeue(worker_id="dead-worker", visibility_timeout_seconds=-1)

    reclaimed = await worker.check_stalled()

    assert [(j.id, outcome) for j, outcome in reclaimed] == [(job.id, StallOutcome.REQUEUED)]
    assert recorder.stalled == [(job.id, StallOutcome.REQUEUED)]

    await worker.run_once()
    assert done == [job.id]
    stored = await sqlite_queue.get(job.id)
    assert stored is not None
    assert stored.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_started_worker_processes_jobs(sqlite_queue: SQLiteQueueBackend) -> None:
    processed = asyncio.Event()

    async def handler(job: Job) -> None:
        processed.set()

    worker = _worker(sqlite_queue, handler)
    job = await sqlite_queue.enqueue(kind=REFRESH, ref_id="p-1")

    worker.start()
    try:
        await asyncio.wait_for(processed.wait(), timeout=2)
        for _ in range(100):
            stored = await sqlite_queue.get(job.id)
            if stored and stored.status == JobStatus.COMPLETED:
                break
            await asyncio.sleep(0.01)
        assert worker.is_running is True
    finally:
        await worker.stop()

    assert worker.is_running is False
    stored = await sqlite_queue.get(job.id)
    assert stored is not None
    assert stored.status == JobStatus.COMPLETED


class _FlakyQueue:
    def __init__(self) -> None:
        self.calls = 0

    async def dequeue(self, *, worker_id: str, visibility_timeout_seconds: float) -> None:
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("boom")
        return None

    async def reclaim_stalled(self) -> list[Any]:
        return []

    async def cleanup_completed(self, *, older_than_hours: float) -> int:
        return 0

    async def get_stats(self) -> QueueStats:
        return QueueStats()


@pytest.mark.asyncio
async def test_worker_survives_dequeue_exception() -> None:
    queue = _FlakyQueue()
    worker = _worker(queue, None)

    worker.start()

    for _ in range(50):
        if queue.calls >= 2:
            break
        await asyncio.sleep(0.01)

    assert worker.is_running is True
    await worker.stop()


@pytest.mark.asyncio
async def test_refresh_failing_upstream_ends_failed_without_touching_project(
    sqlite_queue: SQLiteQueueBackend,
    project_dao: ProjectDAO,
    fetcher: GitHubFetcher,
    github: GitHubStub,
) -> None:
    project = await project_dao.create(
        user_id="user-1",
        owner="octo",
        name="widgets",
        url="https://github.com/octo/widgets",
        stars=10,
        forks=2,
        open_issues=3,
        github_created_at=1369412154,
    )
    github.reply("/repos/octo/widgets", 502, json={"message": "bad gateway"})
    recorder = _Recorder()
    worker = _worker(sqlite_queue, Reconciler(project_dao, fetcher).handle_job, recorder)
    job = await sqlite_queue.enqueue(
        kind=REFRESH,
        ref_id=project.id,
        payload={"project_id": project.id, "owner": "octo", "repo": "widgets"},
        max_attempts=3,
    )

    for _ in range(3):
        assert await worker.run_once() is not None
    assert await worker.run_once() is None

    assert [will_retry for _, will_retry in recorder.failed] == [True, True, False]
    final = await sqlite_queue.get(job.id)
    assert final is not None
    assert final.status == JobStatus.FAILED
    assert final.attempts == 3
    assert github.paths().count("/repos/octo/widgets") == 3

    stored = await project_dao.get(project.id)
    assert stored is not None
    assert (stored.stars, stored.forks, stored.open_issues) == (10, 2, 3)
    assert stored.last_refreshed_at is None

"""Queue-backed job worker.

This module polls a `QueueBackend` for jobs and runs the handler registered
for each job kind.

A job is acknowledged only after its handler returns, so a worker that dies
mid-job leaves a lock behind that the stall check later reclaims. Retryable
failures go back to the queue with exponential backoff; anything else is final.
At most ``max_concurrent`` handlers run at once per worker.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime

from repotrack_api.config import settings
from repotrack_api.domain.enums import JobKind, JobStatus, StallOutcome
from repotrack_api.domain.models import Job
from repotrack_api.errors import (
    FetchError,
    JobPayloadError,
    QueueUnavailableError,
    RateLimitedError,
)
from repotrack_api.observability.logging import get_logger
from repotrack_api.observability.metrics import (
    JOB_DURATION,
    JOB_STALLED_TOTAL,
    JOB_TOTAL,
    QUEUE_LATENCY,
    record_queue_stats,
)
from repotrack_api.queue.backend import QueueBackend, exponential_backoff

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Awaitable[object]]
CompletedHook = Callable[[Job], None]
FailedHook = Callable[[Job, str, bool], None]
StalledHook = Callable[[Job, StallOutcome], None]


# Lifecycle events carry job fields as structured keys
events = get_logger("repotrack_api.jobs")


def _job_fields(job: Job) -> dict[str, object]:
    return {
        "job_id": job.id,
        "kind": job.kind.value,
        "ref_id": job.ref_id,
        "attempts": job.attempts,
        "max_attempts": job.max_attempts,
    }


def log_completed(job: Job) -> None:
    events.info("job_completed", **_job_fields(job))


def log_failed(job: Job, error: str, will_retry: bool) -> None:
    if will_retry:
        events.warning("job_retry_scheduled", error=error, **_job_fields(job))
    else:
        events.error("job_failed", error=error, **_job_fields(job))


def log_stalled(job: Job, outcome: StallOutcome) -> None:
    events.warning("job_stalled", outcome=outcome.value, stalls=job.stalls, **_job_fields(job))


class JobWorker:
    """Background worker that polls the queue and executes handlers."""

    def __init__(
        self,
        *,
        queue: QueueBackend,
        handlers: Mapping[JobKind, JobHandler],
        max_concurrent: int | None = None,
        poll_interval_seconds: float | None = None,
        visibility_timeout_seconds: float | None = None,
        stall_check_interval_seconds: float | None = None,
        job_timeout_seconds: float | None = None,
        backoff_base_seconds: float | None = None,
        backoff_max_seconds: float | None = None,
        worker_id: str | None = None,
        on_completed: CompletedHook = log_completed,
        on_failed: FailedHook = log_failed,
        on_stalled: StalledHook = log_stalled,
    ) -> None:
        self._queue = queue
        self._handlers = dict(handlers)
        self._max_concurrent = max_concurrent or settings.worker_concurrency
        self._poll_interval_seconds = poll_interval_seconds or settings.worker_poll_interval_seconds
        self._visibility_timeout_seconds = (
            visibility_timeout_seconds or settings.worker_visibility_timeout_seconds
        )
        self._stall_check_interval_seconds = (
            stall_check_interval_seconds or settings.worker_stall_check_interval_seconds
        )
        self._job_timeout_seconds = job_timeout_seconds or settings.job_timeout_seconds
        self._backoff_base_seconds = (
            backoff_base_seconds
            if backoff_base_seconds is not None
            else settings.refresh_backoff_base_seconds
        )
        self._backoff_max_seconds = (
            backoff_max_seconds
            if backoff_max_seconds is not None
            else settings.refresh_backoff_max_seconds
        )
        self._worker_id = worker_id or f"{settings.worker_id_prefix}-{uuid.uuid4().hex[:12]}"

        self._on_completed = on_completed
        self._on_failed = on_failed
        self._on_stalled = on_stalled

        self._semaphore = asyncio.Semaphore(self._max_concurrent)
        self._loop_task: asyncio.Task[None] | None = None
        self._health_task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

        # job id -> handler task
        self._running: dict[str, asyncio.Task[None]] = {}

    @property
    def worker_id(self) -> str:
        return self._worker_id

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self) -> None:
        """Start the polling loop and the stall check."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._loop_task = asyncio.create_task(self._run_loop())
        self._health_task = asyncio.create_task(self._health_loop())
        logger.info("JobWorker started (%s)", self._worker_id)

    async def stop(self) -> None:
        """Stop the worker.

        Jobs still running are cancelled without an ack; their locks expire
        and the stall check hands them to another worker.
        """
        self._stop_event.set()

        for task in (self._loop_task, self._health_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        for task in list(self._running.values()):
            if not task.done():
                task.cancel()
        if self._running:
            await asyncio.gather(*self._running.values(), return_exceptions=True)
        self._running.clear()
        logger.info("JobWorker stopped (%s)", self._worker_id)

    async def run_once(self) -> Job | None:
        """Claim one job and process it inline.

        Returns:
            The job that was processed, or None if nothing was available.
        """
        job = await self._queue.dequeue(
            worker_id=self._worker_id,
            visibility_timeout_seconds=self._visibility_timeout_seconds,
        )
        if job:
            await self._execute_job(job)
        return job

    async def check_stalled(self) -> list[tuple[Job, StallOutcome]]:
        """Reclaim jobs whose lock expired and report them through the hook."""
        reclaimed = await self._queue.reclaim_stalled()
        for job, outcome in reclaimed:
            JOB_STALLED_TOTAL.labels(outcome=outcome.value).inc()
            self._on_stalled(job, outcome)
        return reclaimed

    def _prune_finished(self) -> None:
        self._running = {job_id: t for job_id, t in self._running.items() if not t.done()}

    async def _claim_and_dispatch(self) -> bool:
        """Start one job in the background. False when there was nothing to start."""
        try:
            job = await self._queue.dequeue(
                worker_id=self._worker_id,
                visibility_timeout_seconds=self._visibility_timeout_seconds,
            )
        except QueueUnavailableError as e:
            logger.warning("Queue unavailable while polling: %s", e.message)
            return False
        except Exception:
            logger.exception("Unexpected error while polling the queue")
            return False
        if job is None:
            return False
        self._running[job.id] = asyncio.create_task(self._execute_job(job))
        return True

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self._prune_finished()
            # Claim back-to-back while there is work and spare capacity
            if len(self._running) < self._max_concurrent and await self._claim_and_dispatch():
                continue
            await asyncio.sleep(self._poll_interval_seconds)

    async def _health_loop(self) -> None:
        """Reclaim stalled jobs, prune old ones and refresh queue gauges."""
        while not self._stop_event.is_set():
            try:
                await self.check_stalled()
                removed = await self._queue.cleanup_completed(
                    older_than_hours=settings.queue_cleanup_older_than_hours
                )
                if removed:
                    logger.info("Removed %s finished job(s)", removed)
                await self._update_queue_size_metrics()
            except QueueUnavailableError as e:
                logger.warning("Queue unavailable during health check: %s", e.message)
            except Exception:
                logger.exception("Unexpected error during health check")
            await asyncio.sleep(self._stall_check_interval_seconds)

    async def _update_queue_size_metrics(self) -> None:
        record_queue_stats(await self._queue.get_stats())

    async def _execute_job(self, job: Job) -> None:
        """Execute a single job with concurrency control."""
        queue_latency = self._calculate_queue_latency(job)
        if queue_latency is not None:
            QUEUE_LATENCY.labels(kind=job.kind.value).observe(queue_latency)

        start_time = time.monotonic()

        async with self._semaphore:
            handler = self._handlers.get(job.kind)
            if not handler:
                status = await self._fail(
                    job, f"No handler registered for job kind: {job.kind.value}", retry=False
                )
                self._record_job_metrics(job, start_time, status)
                return

            try:
                await asyncio.wait_for(handler(job), timeout=self._job_timeout_seconds)
            except asyncio.CancelledError:
                logger.warning("Job %s interrupted, left for stall recovery", job.id)
                raise
            except TimeoutError:
                status = await self._fail(
                    job, f"Job timed out after {self._job_timeout_seconds}s", retry=True
                )
            except FetchError as e:
                floor = e.retry_after_seconds if isinstance(e, RateLimitedError) else None
                status = await self._fail(
                    job, f"{e.code}: {e.message}", retry=e.retryable, floor_seconds=floor
                )
            except JobPayloadError as e:
                status = await self._fail(job, f"{e.code}: {e.message}", retry=False)
            except Exception as e:
                logger.exception("Job %s raised unexpectedly: %s", job.id, e)
                status = await self._fail(job, f"{type(e).__name__}: {e}", retry=True)
            else:
                status = await self._complete(job)

        self._record_job_metrics(job, start_time, status)

    async def _complete(self, job: Job) -> str:
        try:
            acked = await self._queue.complete(job.id, worker_id=self._worker_id)
        except QueueUnavailableError as e:
            logger.warning("Could not ack job %s, it will be redelivered: %s", job.id, e.message)
            return "unacked"
        if not acked:
            return "unacked"
        self._on_completed(job)
        return "completed"

    async def _fail(
        self,
        job: Job,
        error: str,
        *,
        retry: bool,
        floor_seconds: float | None = None,
    ) -> str:
        delay = exponential_backoff(
            job.attempts,
            base_seconds=self._backoff_base_seconds,
            max_seconds=self._backoff_max_seconds,
            floor_seconds=floor_seconds,
        )
        try:
            new_status = await self._queue.fail(
                job.id,
                error=error,
                retry=retry,
                retry_delay_seconds=delay,
                worker_id=self._worker_id,
            )
        except QueueUnavailableError as e:
            logger.warning(
                "Could not record failure of job %s, it will be redelivered: %s", job.id, e.message
            )
            return "unacked"
        if new_status is None:
            return "unacked"

        will_retry = new_status == JobStatus.PENDING
        self._on_failed(job, error, will_retry)
        return "retried" if will_retry else "failed"

    def _calculate_queue_latency(self, job: Job) -> float | None:
        """Calculate how long the job waited since it became available."""
        since = job.available_at or job.created_at
        if since is None:
            return None
        try:
            now = datetime.now(since.tzinfo or UTC)
            return max((now - since).total_seconds(), 0.0)
        except (ValueError, TypeError):
            return None

    def _record_job_metrics(self, job: Job, start_time: float, status: str) -> None:
        """Record job execution metrics."""
        duration = time.monotonic() - start_time
        JOB_DURATION.labels(kind=job.kind.value, status=status).observe(duration)
        JOB_TOTAL.labels(kind=job.kind.value, status=status).inc()

"""Abstract queue backend interface for job processing.

This module defines the interface shared by the SQLite and Redis queue
backends, so the request layer and the worker do not care where jobs live.

Delivery guarantees:
- At-least-once: a claimed job holds a lock until ``locked_until``. A job
  whose lock expires without an ack is stalled, and `reclaim_stalled` hands it
  out again. Handlers must be idempotent.
- Bounded retries: ``fail(retry=True)`` requeues while attempts remain,
  otherwise the job ends FAILED.
- Coalescing: enqueueing while a PENDING job exists for the same
  ``(kind, ref_id)`` returns that job.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable
from typing import Any

from repotrack_api.domain.enums import JobKind, JobStatus, StallOutcome
from repotrack_api.domain.models import Job, QueueStats
from repotrack_api.errors import QueueUnavailableError


class QueueBackend(ABC):
    """Abstract base class for queue backends.

    Every operation raises `QueueUnavailableError` when the backend cannot
    be reached or does not answer within ``operation_timeout_seconds``.
    """

    def __init__(self, *, operation_timeout_seconds: float = 5.0) -> None:
        self._operation_timeout_seconds = operation_timeout_seconds

    @abstractmethod
    async def enqueue(
        self,
        *,
        kind: JobKind,
        ref_id: str,
        payload: dict[str, Any] | None = None,
        max_attempts: int = 1,
        delay_seconds: float = 0,
    ) -> Job:
        """Add a job to the queue, or return the pending job it coalesces into.

        Args:
            kind: Type of job (e.g., project.refresh)
            ref_id: Reference ID linking to the entity (e.g., project_id)
            payload: Optional JSON-serializable payload
            max_attempts: Maximum number of delivery attempts
            delay_seconds: Delay before job becomes available (default: 0)

        Returns:
            The pending Job record.
        """

    @abstractmethod
    async def dequeue(
        self,
        *,
        worker_id: str,
        visibility_timeout_seconds: float = 120,
    ) -> Job | None:
        """Atomically claim the next available job.

        Args:
            worker_id: Unique identifier for the claiming worker
            visibility_timeout_seconds: How long the claim holds before the
                job counts as stalled

        Returns:
            The claimed Job, or None if no jobs are available.
        """

    @abstractmethod
    async def complete(self, job_id: str, *, worker_id: str | None = None) -> bool:
        """Acknowledge a job.

        Returns:
            False if the ack was ignored because the job is no longer
            claimed by ``worker_id``.
        """

    @abstractmethod
    async def fail(
        self,
        job_id: str,
        *,
        error: str,
        retry: bool = True,
        retry_delay_seconds: float = 10,
        worker_id: str | None = None,
    ) -> JobStatus | None:
        """Mark a job as failed.

        If retry is True and attempts remain, the job is requeued after
        ``retry_delay_seconds``.

        Returns:
            The job's new status (PENDING or FAILED), or None if ignored.
        """

    @abstractmethod
    async def reclaim_stalled(self) -> list[tuple[Job, StallOutcome]]:
        """Requeue (or fail, on the last attempt) jobs whose lock expired."""

    @abstractmethod
    async def get(self, job_id: str) -> Job | None:
        """Get a job by ID."""

    @abstractmethod
    async def get_latest_by_ref(self, *, kind: JobKind, ref_id: str) -> Job | None:
        """Get the most recent job for a reference ID."""

    @abstractmethod
    async def get_stats(self) -> QueueStats:
        """Get queue statistics."""

    @abstractmethod
    async def cleanup_completed(self, *, older_than_hours: float) -> int:
        """Delete completed and failed jobs older than the given age.

        Returns:
            Number of jobs removed.
        """

    @abstractmethod
    async def ping(self) -> bool:
        """Check that the backend answers."""

    async def close(self) -> None:
        """Release backend resources."""
        return None

    async def _guarded[T](
        self,
        operation: Awaitable[T],
        *,
        errors: tuple[type[BaseException], ...],
    ) -> T:
        """Await a backend call with the operation timeout.

        Timeouts and the backend's own connection errors become
        `QueueUnavailableError`.
        """
        try:
            return await asyncio.wait_for(operation, timeout=self._operation_timeout_seconds)
        except TimeoutError as e:
            raise QueueUnavailableError("Queue backend did not respond in time") from e
        except errors as e:
            raise QueueUnavailableError(f"Queue backend error: {e}") from e


def exponential_backoff(
    attempt: int,
    *,
    base_seconds: float,
    max_seconds: float,
    floor_seconds: float | None = None,
) -> float:
    """Delay before the next attempt after ``attempt`` failed.

    ``min(base * 2**(attempt-1), max)``, raised to ``floor_seconds`` when an
    upstream hint (e.g. Retry-After) asks for longer.
    """
    delay = min(base_seconds * (2 ** max(attempt - 1, 0)), max_seconds)
    if floor_seconds is not None:
        delay = max(delay, floor_seconds)
    return delay


class QueueBackendType:
    """Queue backend type identifiers."""

    SQLITE = "sqlite"
    REDIS = "redis"


def parse_queue_url(url: str) -> tuple[str, dict[str, str]]:
    """Parse a queue URL into backend type and connection params.

    Supported formats:
    - sqlite:// (uses the project database)
    - redis://[:password@]host[:port][/db]
    - rediss://... (TLS)

    Returns:
        Tuple of (backend_type, connection_params)
    """
    if url.startswith("sqlite://"):
        return QueueBackendType.SQLITE, {}

    if url.startswith(("redis://", "rediss://")):
        return QueueBackendType.REDIS, {"url": url}

    raise ValueError(f"Unsupported queue URL format: {url}")

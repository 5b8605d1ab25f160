"""SQLite-backed queue implementation.

This module provides the default QueueBackend, wrapping JobDAO so jobs live in
the same database file as projects.

Design notes:
- IMMEDIATE transactions for atomic job claiming and stall reclaiming
- Delayed jobs via the available_at column
- Visibility timeout via the locked_until column
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

import aiosqlite

from repotrack_api.domain.enums import JobKind, JobStatus, StallOutcome
from repotrack_api.domain.models import Job, QueueStats
from repotrack_api.queue.backend import QueueBackend
from repotrack_api.storage.dao import JobDAO
from repotrack_api.storage.db import Database

logger = logging.getLogger(__name__)

_ERRORS: tuple[type[BaseException], ...] = (aiosqlite.Error,)


class SQLiteQueueBackend(QueueBackend):
    """SQLite-backed queue implementation."""

    def __init__(self, db: Database, *, operation_timeout_seconds: float = 5.0) -> None:
        """Initialize the SQLite queue backend.

        Args:
            db: Database connection wrapper
            operation_timeout_seconds: Upper bound for a single queue call
        """
        super().__init__(operation_timeout_seconds=operation_timeout_seconds)
        self._db = db
        self._jobs = JobDAO(db)

    async def enqueue(
        self,
        *,
        kind: JobKind,
        ref_id: str,
        payload: dict[str, Any] | None = None,
        max_attempts: int = 1,
        delay_seconds: float = 0,
    ) -> Job:
        available_at = None
        if delay_seconds > 0:
            available_at = datetime.now(UTC) + timedelta(seconds=delay_seconds)
        return await self._guarded(
            self._jobs.create(
                kind=kind,
                ref_id=ref_id,
                payload=payload,
                max_attempts=max_attempts,
                available_at=available_at,
            ),
            errors=_ERRORS,
        )

    async def dequeue(
        self,
        *,
        worker_id: str,
        visibility_timeout_seconds: float = 120,
    ) -> Job | None:
        return await self._guarded(
            self._jobs.claim_next(
                locked_by=worker_id,
                visibility_timeout_seconds=visibility_timeout_seconds,
            ),
            errors=_ERRORS,
        )

    async def complete(self, job_id: str, *, worker_id: str | None = None) -> bool:
        acked = await self._guarded(
            self._jobs.complete(job_id, locked_by=worker_id), errors=_ERRORS
        )
        if not acked:
            logger.warning("Ignored ack for job %s (no longer held by %s)", job_id, worker_id)
        return acked

    async def fail(
        self,
        job_id: str,
        *,
        error: str,
        retry: bool = True,
        retry_delay_seconds: float = 10,
        worker_id: str | None = None,
    ) -> JobStatus | None:
        status = await self._guarded(
            self._jobs.fail(
                job_id,
                error=error,
                retry=retry,
                retry_delay_seconds=retry_delay_seconds,
                locked_by=worker_id,
            ),
            errors=_ERRORS,
        )
        if status is None:
            logger.warning("Ignored failure for job %s (no longer held by %s)", job_id, worker_id)
        return status

    async def reclaim_stalled(self) -> list[tuple[Job, StallOutcome]]:
        return await self._guarded(self._jobs.reclaim_stalled(), errors=_ERRORS)

    async def get(self, job_id: str) -> Job | None:
        return await self._guarded(self._jobs.get(job_id), errors=_ERRORS)

    async def get_latest_by_ref(self, *, kind: JobKind, ref_id: str) -> Job | None:
        return await self._guarded(
            self._jobs.get_latest_by_ref(kind=kind, ref_id=ref_id), errors=_ERRORS
        )

    async def get_stats(self) -> QueueStats:
        return await self._guarded(self._jobs.get_stats(), errors=_ERRORS)

    async def cleanup_completed(self, *, older_than_hours: float) -> int:
        cutoff = datetime.now(UTC) - timedelta(hours=older_than_hours)
        return await self._guarded(self._jobs.cleanup_finished(older_than=cutoff), errors=_ERRORS)

    async def ping(self) -> bool:
        async def _select_one() -> bool:
            cursor = await self._db.connection.execute("SELECT 1")
            return await cursor.fetchone() is not None

        return await self._guarded(_select_one(), errors=_ERRORS)

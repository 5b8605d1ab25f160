"""Data Access Objects for repotrack storage."""

from __future__ import annotations

import builtins
import json
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

import aiosqlite

from repotrack_api.domain.enums import JobKind, JobStatus, StallOutcome
from repotrack_api.domain.models import Job, Project, QueueStats
from repotrack_api.errors import DuplicateProjectError
from repotrack_api.storage.db import Database
from repotrack_api.storage.row_mapping import row_to_model


def generate_id() -> str:
    """Generate a unique ID."""
    return str(uuid.uuid4())


def to_iso(value: datetime) -> str:
    """Serialize a timestamp so that string order matches time order."""
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def now_iso() -> str:
    """Get current time as ISO string."""
    return to_iso(datetime.now(UTC))


class ProjectDAO:
    """DAO for Project."""

    def __init__(self, db: Database):
        self.db = db

    async def find_by_owner_repo_for_user(
        self, user_id: str, owner: str, name: str
    ) -> Project | None:
        """Find the caller's project for a repository, ignoring case."""
        cursor = await self.db.connection.execute(
            """
            SELECT * FROM projects
            WHERE user_id = ?
              AND owner = ? COLLATE NOCASE
              AND name = ? COLLATE NOCASE
            LIMIT 1
            """,
            (user_id, owner, name),
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return self._row_to_model(row)

    async def get(self, id: str) -> Project | None:
        """Get a project by ID."""
        cursor = await self.db.connection.execute("SELECT * FROM projects WHERE id = ?", (id,))
        row = await cursor.fetchone()
        if not row:
            return None
        return self._row_to_model(row)

    async def get_for_user(self, id: str, user_id: str) -> Project | None:
        """Get a project by ID if it belongs to the user."""
        cursor = await self.db.connection.execute(
            "SELECT * FROM projects WHERE id = ? AND user_id = ?",
            (id, user_id),
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return self._row_to_model(row)

    async def list_for_user(self, user_id: str) -> builtins.list[Project]:
        """List a user's projects, newest first."""
        cursor = await self.db.connection.execute(
            "SELECT * FROM projects WHERE user_id = ? ORDER BY created_at DESC",
            (user_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_model(row) for row in rows]

    async def create(
        self,
        *,
        user_id: str,
        owner: str,
        name: str,
        url: str,
        stars: int,
        forks: int,
        open_issues: int,
        github_created_at: int,
        raw_snapshot: dict[str, Any] | None = None,
    ) -> Project:
        """Create a new project.

        ``last_refreshed_at`` is left unset; only the refresh job sets it.

        Raises:
            DuplicateProjectError: If the user already tracks this repository.
        """
        id = generate_id()
        now = now_iso()

        try:
            async with self.db.transaction() as conn:
                await conn.execute(
                    """
                    INSERT INTO projects
                    (id, user_id, owner, name, url, stars, forks, open_issues,
                     github_created_at, last_refreshed_at, raw_snapshot,
                     created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        id,
                        user_id,
                        owner,
                        name,
                        url,
                        stars,
                        forks,
                        open_issues,
                        github_created_at,
                        None,
                        json.dumps(raw_snapshot) if raw_snapshot is not None else None,
                        now,
                        now,
                    ),
                )
        except aiosqlite.IntegrityError as e:
            raise DuplicateProjectError(owner, name) from e

        return Project(
            id=id,
            user_id=user_id,
            owner=owner,
            name=name,
            url=url,
            stars=stars,
            forks=forks,
            open_issues=open_issues,
            github_created_at=github_created_at,
            last_refreshed_at=None,
            raw_snapshot=raw_snapshot,
            created_at=datetime.fromisoformat(now),
            updated_at=datetime.fromisoformat(now),
        )

    async def update_metrics(
        self,
        id: str,
        *,
        stars: int,
        forks: int,
        open_issues: int,
        github_created_at: int,
        raw_snapshot: dict[str, Any],
        refreshed_at: datetime | None = None,
    ) -> bool:
        """Write a fresh metrics snapshot in one statement.

        Returns:
            False if the project no longer exists.
        """
        now = now_iso()
        refreshed = to_iso(refreshed_at) if refreshed_at else now
        async with self.db.transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE projects
                SET stars = ?,
                    forks = ?,
                    open_issues = ?,
                    github_created_at = ?,
                    raw_snapshot = ?,
                    last_refreshed_at = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    stars,
                    forks,
                    open_issues,
                    github_created_at,
                    json.dumps(raw_snapshot),
                    refreshed,
                    now,
                    id,
                ),
            )
        return cursor.rowcount > 0

    async def delete_for_user(self, id: str, user_id: str) -> bool:
        """Delete a project owned by the user."""
        async with self.db.transaction() as conn:
            cursor = await conn.execute(
                "DELETE FROM projects WHERE id = ? AND user_id = ?",
                (id, user_id),
            )
        return cursor.rowcount > 0

    def _row_to_model(self, row: Any) -> Project:
        return row_to_model(Project, row, json_fields={"raw_snapshot"})


class JobDAO:
    """DAO for persistent jobs (SQLite-backed queue)."""

    def __init__(self, db: Database):
        self.db = db

    async def create(
        self,
        *,
        kind: JobKind,
        ref_id: str,
        payload: dict[str, Any] | None = None,
        max_attempts: int = 1,
        available_at: datetime | None = None,
        coalesce: bool = True,
    ) -> Job:
        """Create a new job in PENDING state.

        With ``coalesce``, a job for the same reference that is pending, due now
        and not yet attempted absorbs the request instead: its payload is
        replaced and it is returned. Delayed jobs and scheduled retries do not.
        """
        now = now_iso()
        payload_str = json.dumps(payload or {})
        available_at_iso = to_iso(available_at) if available_at else now

        async with self.db.transaction() as conn:
            existing_id: str | None = None
            if coalesce:
                cursor = await conn.execute(
                    """
                    SELECT id FROM jobs
                    WHERE kind = ? AND ref_id = ? AND status = ?
                      AND attempts = 0
                      AND available_at <= ?
                    ORDER BY created_at ASC
                    LIMIT 1
                    """,
                    (kind.value, ref_id, JobStatus.PENDING.value, now),
                )
                row = await cursor.fetchone()
                if row:
                    existing_id = row["id"]

            if existing_id:
                job_id = existing_id
                await conn.execute(
                    "UPDATE jobs SET payload = ?, updated_at = ? WHERE id = ?",
                    (payload_str, now, job_id),
                )
            else:
                job_id = generate_id()
                await conn.execute(
                    """
                    INSERT INTO jobs (
                        id, kind, ref_id, status, payload,
                        attempts, max_attempts, stalls,
                        available_at, locked_at, locked_until, locked_by,
                        last_error, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, 0, ?, 0, ?, NULL, NULL, NULL, NULL, ?, ?)
                    """,
                    (
                        job_id,
                        kind.value,
                        ref_id,
                        JobStatus.PENDING.value,
                        payload_str,
                        max_attempts,
                        available_at_iso,
                        now,
                        now,
                    ),
                )

        created = await self.get(job_id)
        if not created:
            raise RuntimeError(f"Job not found after create: {job_id}")
        return created

    async def get(self, job_id: str) -> Job | None:
        cursor = await self.db.connection.execute("SELECT * FROM jobs WHERE id = ?", (job_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        return self._row_to_model(row)

    async def claim_next(
        self,
        *,
        locked_by: str,
        visibility_timeout_seconds: float,
    ) -> Job | None:
        """Atomically claim the next available pending job.

        The claim holds until ``locked_until``; after that the stall check
        may hand the job to another worker.
        """
        now_dt = datetime.now(UTC)
        now = to_iso(now_dt)
        locked_until = to_iso(now_dt + timedelta(seconds=visibility_timeout_seconds))

        async with self.db.transaction() as conn:
            cursor = await conn.execute(
                """
                SELECT id FROM jobs
                WHERE status = ?
                  AND available_at <= ?
                ORDER BY available_at ASC, created_at ASC
                LIMIT 1
                """,
                (JobStatus.PENDING.value, now),
            )
            row = await cursor.fetchone()
            if not row:
                return None

            job_id = row["id"]
            await conn.execute(
                """
                UPDATE jobs
                SET status = ?,
                    attempts = attempts + 1,
                    locked_at = ?,
                    locked_until = ?,
                    locked_by = ?,
                    updated_at = ?
                WHERE id = ?
                  AND status = ?
                """,
                (
                    JobStatus.ACTIVE.value,
                    now,
                    locked_until,
                    locked_by,
                    now,
                    job_id,
                    JobStatus.PENDING.value,
                ),
            )

        return await self.get(job_id)

    async def complete(self, job_id: str, *, locked_by: str | None = None) -> bool:
        """Mark an active job completed and release the lock.

        Returns:
            False if the job is not active or is locked by another worker,
            e.g. after its lock expired and it was handed out again.
        """
        now = now_iso()
        query = """
            UPDATE jobs
            SET status = ?,
                locked_at = NULL,
                locked_until = NULL,
                locked_by = NULL,
                last_error = NULL,
                updated_at = ?
            WHERE id = ? AND status = ?
        """
        params: list[Any] = [JobStatus.COMPLETED.value, now, job_id, JobStatus.ACTIVE.value]
        if locked_by is not None:
            query += " AND locked_by = ?"
            params.append(locked_by)

        async with self.db.transaction() as conn:
            cursor = await conn.execute(query, params)
        return cursor.rowcount > 0

    async def fail(
        self,
        job_id: str,
        *,
        error: str,
        retry: bool = True,
        retry_delay_seconds: float = 10,
        locked_by: str | None = None,
    ) -> JobStatus | None:
        """Record a failure and requeue if allowed and attempts remain.

        Returns:
            The job's new status, or None if the failure was not recorded
            because the job is no longer held by ``locked_by``.
        """
        now_dt = datetime.now(UTC)
        now = to_iso(now_dt)

        async with self.db.transaction() as conn:
            cursor = await conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,))
            row = await cursor.fetchone()
            if not row or row["status"] != JobStatus.ACTIVE.value:
                return None
            if locked_by is not None and row["locked_by"] != locked_by:
                return None

            if retry and row["attempts"] < row["max_attempts"]:
                available_at = to_iso(now_dt + timedelta(seconds=retry_delay_seconds))
                await conn.execute(
                    """
                    UPDATE jobs
                    SET status = ?,
                        available_at = ?,
                        locked_at = NULL,
                        locked_until = NULL,
                        locked_by = NULL,
                        last_error = ?,
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (JobStatus.PENDING.value, available_at, error, now, job_id),
                )
                return JobStatus.PENDING

            await conn.execute(
                """
                UPDATE jobs
                SET status = ?,
                    locked_at = NULL,
                    locked_until = NULL,
                    locked_by = NULL,
                    last_error = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (JobStatus.FAILED.value, error, now, job_id),
            )
            return JobStatus.FAILED

    async def reclaim_stalled(self) -> builtins.list[tuple[Job, StallOutcome]]:
        """Release active jobs whose lock expired.

        A stalled job with attempts left goes back to PENDING immediately;
        one that used its last attempt is marked FAILED.
        """
        now = now_iso()
        results: builtins.list[tuple[str, StallOutcome]] = []

        async with self.db.transaction() as conn:
            cursor = await conn.execute(
                """
                SELECT id, attempts, max_attempts FROM jobs
                WHERE status = ? AND locked_until < ?
                ORDER BY locked_until ASC
                """,
                (JobStatus.ACTIVE.value, now),
            )
            rows = await cursor.fetchall()

            for row in rows:
                if row["attempts"] < row["max_attempts"]:
                    await conn.execute(
                        """
                        UPDATE jobs
                        SET status = ?,
                            stalls = stalls + 1,
                            available_at = ?,
                            locked_at = NULL,
                            locked_until = NULL,
                            locked_by = NULL,
                            last_error = ?,
                            updated_at = ?
                        WHERE id = ?
                        """,
                        (JobStatus.PENDING.value, now, "Job stalled", now, row["id"]),
                    )
                    results.append((row["id"], StallOutcome.REQUEUED))
                else:
                    await conn.execute(
                        """
                        UPDATE jobs
                        SET status = ?,
                            stalls = stalls + 1,
                            locked_at = NULL,
                            locked_until = NULL,
                            locked_by = NULL,
                            last_error = ?,
                            updated_at = ?
                        WHERE id = ?
                        """,
                        (
                            JobStatus.FAILED.value,
                            "Job stalled on its final attempt",
                            now,
                            row["id"],
                        ),
                    )
                    results.append((row["id"], StallOutcome.FAILED))

        reclaimed: builtins.list[tuple[Job, StallOutcome]] = []
        for job_id, outcome in results:
            job = await self.get(job_id)
            if job:
                reclaimed.append((job, outcome))
        return reclaimed

    async def get_latest_by_ref(self, *, kind: JobKind, ref_id: str) -> Job | None:
        """Get the most recent job for a referenced record."""
        cursor = await self.db.connection.execute(
            """
            SELECT * FROM jobs
            WHERE kind = ? AND ref_id = ?
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (kind.value, ref_id),
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return self._row_to_model(row)

    async def get_stats(self) -> QueueStats:
        """Count jobs per status."""
        cursor = await self.db.connection.execute(
            "SELECT status, COUNT(*) AS count FROM jobs GROUP BY status"
        )
        rows = await cursor.fetchall()
        counts: dict[str, int] = {row["status"]: row["count"] for row in rows}

        cursor = await self.db.connection.execute(
            "SELECT MIN(created_at) AS oldest FROM jobs WHERE status = ?",
            (JobStatus.PENDING.value,),
        )
        row = await cursor.fetchone()
        oldest = row["oldest"] if row else None

        return QueueStats(
            pending_count=counts.get(JobStatus.PENDING.value, 0),
            active_count=counts.get(JobStatus.ACTIVE.value, 0),
            completed_count=counts.get(JobStatus.COMPLETED.value, 0),
            failed_count=counts.get(JobStatus.FAILED.value, 0),
            oldest_pending_at=datetime.fromisoformat(oldest) if oldest else None,
        )

    async def cleanup_finished(self, *, older_than: datetime) -> int:
        """Delete completed and failed jobs last touched before ``older_than``."""
        async with self.db.transaction() as conn:
            cursor = await conn.execute(
                """
                DELETE FROM jobs
                WHERE status IN (?, ?)
                  AND updated_at < ?
                """,
                (JobStatus.COMPLETED.value, JobStatus.FAILED.value, to_iso(older_than)),
            )
        return cursor.rowcount

    def _row_to_model(self, row: Any) -> Job:
        return row_to_model(Job, row, json_fields={"payload"})

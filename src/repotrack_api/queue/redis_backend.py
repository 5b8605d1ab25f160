"""Redis-backed queue implementation.

This module provides a Redis-based implementation of the QueueBackend
interface, enabling distributed job processing across multiple worker
processes.

Design notes:
- Sorted sets order pending jobs by availability and running jobs by lock
  expiry
- Every state transition is a Lua script, so claim, ack, fail and reclaim
  are atomic against each other
- Job data stored in Redis hashes; empty strings stand for unset fields

Redis data structures:
- repotrack:queue:jobs:{job_id} - Hash with job data
- repotrack:queue:pending - Sorted set (score = available_at timestamp)
- repotrack:queue:running - Sorted set (score = locked_until timestamp)
- repotrack:queue:completed / failed - Sorted sets (score = finished timestamp)
- repotrack:queue:pending_by_ref - Hash "{kind}:{ref_id}" -> pending job id
- repotrack:queue:by_ref:{kind}:{ref_id} - Sorted set (score = created_at)
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from datetime import UTC, datetime
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from repotrack_api.domain.enums import JobKind, JobStatus, StallOutcome
from repotrack_api.domain.models import Job, QueueStats
from repotrack_api.queue.backend import QueueBackend
from repotrack_api.storage.row_mapping import row_to_model

logger = logging.getLogger(__name__)

# Redis key prefixes
KEY_PREFIX = "repotrack:queue"
KEY_JOBS = f"{KEY_PREFIX}:jobs"
KEY_PENDING = f"{KEY_PREFIX}:pending"
KEY_RUNNING = f"{KEY_PREFIX}:running"
KEY_COMPLETED = f"{KEY_PREFIX}:completed"
KEY_FAILED = f"{KEY_PREFIX}:failed"
KEY_PENDING_BY_REF = f"{KEY_PREFIX}:pending_by_ref"
KEY_BY_REF = f"{KEY_PREFIX}:by_ref"

_ERRORS: tuple[type[BaseException], ...] = (RedisError,)

_OPTIONAL_FIELDS = ("available_at", "locked_at", "locked_until", "locked_by", "last_error")

# Lua script for enqueue with coalescing
ENQUEUE_SCRIPT = """
-- KEYS[1] = pending set
-- KEYS[2] = pending-by-ref hash
-- KEYS[3] = job hash prefix
-- KEYS[4] = by-ref set for this reference
-- ARGV[1] = ref field ("{kind}:{ref_id}")
-- ARGV[2] = new job id
-- ARGV[3] = kind
-- ARGV[4] = ref_id
-- ARGV[5] = payload JSON
-- ARGV[6] = max_attempts
-- ARGV[7] = available_at timestamp
-- ARGV[8] = available_at ISO
-- ARGV[9] = now timestamp
-- ARGV[10] = now ISO

-- Only a fresh job that is already due absorbs the request
local existing = redis.call('HGET', KEYS[2], ARGV[1])
if existing then
    local existing_key = KEYS[3] .. ':' .. existing
    local state = redis.call('HMGET', existing_key, 'status', 'attempts')
    local due_at = redis.call('ZSCORE', KEYS[1], existing)
    if state[1] == 'pending' and state[2] == '0'
        and due_at and tonumber(due_at) <= tonumber(ARGV[9]) then
        redis.call('HSET', existing_key, 'payload', ARGV[5], 'updated_at', ARGV[10])
        return existing
    end
end

local job_key = KEYS[3] .. ':' .. ARGV[2]
redis.call('HSET', job_key,
    'id', ARGV[2], 'kind', ARGV[3], 'ref_id', ARGV[4], 'status', 'pending',
    'payload', ARGV[5], 'attempts', '0', 'max_attempts', ARGV[6], 'stalls', '0',
    'available_at', ARGV[8], 'locked_at', '', 'locked_until', '', 'locked_by', '',
    'last_error', '', 'created_at', ARGV[10], 'updated_at', ARGV[10])
redis.call('ZADD', KEYS[1], ARGV[7], ARGV[2])
redis.call('HSET', KEYS[2], ARGV[1], ARGV[2])
redis.call('ZADD', KEYS[4], ARGV[9], ARGV[2])
return ARGV[2]
"""

# Lua script for atomic dequeue operation
DEQUEUE_SCRIPT = """
-- KEYS[1] = pending set
-- KEYS[2] = running set
-- KEYS[3] = job hash prefix
-- KEYS[4] = pending-by-ref hash
-- ARGV[1] = current timestamp
-- ARGV[2] = worker_id
-- ARGV[3] = locked_until timestamp
-- ARGV[4] = current ISO
-- ARGV[5] = locked_until ISO

local result = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, 1)
if #result == 0 then
    return nil
end

local job_id = result[1]
local job_key = KEYS[3] .. ':' .. job_id

redis.call('ZREM', KEYS[1], job_id)
redis.call('ZADD', KEYS[2], ARGV[3], job_id)

-- A claimed job no longer absorbs new enqueues
local ref = redis.call('HMGET', job_key, 'kind', 'ref_id')
local ref_field = tostring(ref[1]) .. ':' .. tostring(ref[2])
if redis.call('HGET', KEYS[4], ref_field) == job_id then
    redis.call('HDEL', KEYS[4], ref_field)
end

redis.call('HSET', job_key, 'status', 'active', 'locked_by', ARGV[2],
    'locked_at', ARGV[4], 'locked_until', ARGV[5], 'updated_at', ARGV[4])
redis.call('HINCRBY', job_key, 'attempts', 1)

return job_id
"""

# Lua script for acknowledging a job
COMPLETE_SCRIPT = """
-- KEYS[1] = running set
-- KEYS[2] = completed set
-- KEYS[3] = job hash prefix
-- ARGV[1] = job_id
-- ARGV[2] = worker_id ('' = any)
-- ARGV[3] = current timestamp
-- ARGV[4] = current ISO

local job_key = KEYS[3] .. ':' .. ARGV[1]
local state = redis.call('HMGET', job_key, 'status', 'locked_by')
if state[1] ~= 'active' then
    return 0
end
if ARGV[2] ~= '' and state[2] ~= ARGV[2] then
    return 0
end

redis.call('ZREM', KEYS[1], ARGV[1])
redis.call('ZADD', KEYS[2], ARGV[3], ARGV[1])
redis.call('HSET', job_key, 'status', 'completed', 'locked_at', '', 'locked_until', '',
    'locked_by', '', 'last_error', '', 'updated_at', ARGV[4])
return 1
"""

# Lua script for recording a failure
FAIL_SCRIPT = """
-- KEYS[1] = running set
-- KEYS[2] = pending set
-- KEYS[3] = failed set
-- KEYS[4] = job hash prefix
-- KEYS[5] = pending-by-ref hash
-- ARGV[1] = job_id
-- ARGV[2] = worker_id ('' = any)
-- ARGV[3] = error
-- ARGV[4] = retry ('1' or '0')
-- ARGV[5] = retry available_at timestamp
-- ARGV[6] = retry available_at ISO
-- ARGV[7] = current timestamp
-- ARGV[8] = current ISO

local job_key = KEYS[4] .. ':' .. ARGV[1]
local state = redis.call('HMGET', job_key, 'status', 'locked_by', 'attempts', 'max_attempts',
    'kind', 'ref_id')
if state[1] ~= 'active' then
    return ''
end
if ARGV[2] ~= '' and state[2] ~= ARGV[2] then
    return ''
end

redis.call('ZREM', KEYS[1], ARGV[1])

if ARGV[4] == '1' and tonumber(state[3]) < tonumber(state[4]) then
    redis.call('ZADD', KEYS[2], ARGV[5], ARGV[1])
    redis.call('HSET', job_key, 'status', 'pending', 'available_at', ARGV[6],
        'locked_at', '', 'locked_until', '', 'locked_by', '',
        'last_error', ARGV[3], 'updated_at', ARGV[8])
    redis.call('HSETNX', KEYS[5], state[5] .. ':' .. state[6], ARGV[1])
    return 'pending'
end

redis.call('ZADD', KEYS[3], ARGV[7], ARGV[1])
redis.call('HSET', job_key, 'status', 'failed', 'locked_at', '', 'locked_until', '',
    'locked_by', '', 'last_error', ARGV[3], 'updated_at', ARGV[8])
return 'failed'
"""

# Lua script for reclaiming stalled jobs
RECLAIM_SCRIPT = """
-- KEYS[1] = running set
-- KEYS[2] = pending set
-- KEYS[3] = failed set
-- KEYS[4] = job hash prefix
-- KEYS[5] = pending-by-ref hash
-- ARGV[1] = current timestamp
-- ARGV[2] = current ISO
-- ARGV[3] = batch size

local result = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', '(' .. ARGV[1],
    'LIMIT', 0, tonumber(ARGV[3]))
local reclaimed = {}

for _, job_id in ipairs(result) do
    local job_key = KEYS[4] .. ':' .. job_id
    redis.call('ZREM', KEYS[1], job_id)
    local state = redis.call('HMGET', job_key, 'attempts', 'max_attempts', 'kind', 'ref_id')
    if state[1] then
        redis.call('HINCRBY', job_key, 'stalls', 1)
        if tonumber(state[1]) < tonumber(state[2]) then
            redis.call('ZADD', KEYS[2], ARGV[1], job_id)
            redis.call('HSET', job_key, 'status', 'pending', 'available_at', ARGV[2],
                'locked_at', '', 'locked_until', '', 'locked_by', '',
                'last_error', 'Job stalled', 'updated_at', ARGV[2])
            redis.call('HSETNX', KEYS[5], state[3] .. ':' .. state[4], job_id)
            table.insert(reclaimed, job_id)
            table.insert(reclaimed, 'requeued')
        else
            redis.call('ZADD', KEYS[3], ARGV[1], job_id)
            redis.call('HSET', job_key, 'status', 'failed',
                'locked_at', '', 'locked_until', '', 'locked_by', '',
                'last_error', 'Job stalled on its final attempt', 'updated_at', ARGV[2])
            table.insert(reclaimed, job_id)
            table.insert(reclaimed, 'failed')
        end
    end
end

return reclaimed
"""


def _generate_id() -> str:
    """Generate a unique job ID."""
    return str(uuid.uuid4())


def _timestamp_to_iso(ts: float) -> str:
    """Convert timestamp to the ISO format used by the SQLite backend."""
    return datetime.fromtimestamp(ts, UTC).isoformat(timespec="microseconds")


def _ref_field(kind: JobKind, ref_id: str) -> str:
    return f"{kind.value}:{ref_id}"


class RedisQueueBackend(QueueBackend):
    """Redis-backed queue implementation.

    Provides a distributed queue using Redis data structures:
    - Sorted sets for delayed job ordering and lock expiry
    - Lua scripts for atomic state transitions
    - Visibility timeout for job reliability
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        operation_timeout_seconds: float = 5.0,
        reclaim_batch_size: int = 100,
    ) -> None:
        """Initialize the Redis queue backend.

        Args:
            url: Redis URL (redis:// or rediss://)
            operation_timeout_seconds: Upper bound for a single queue call
            reclaim_batch_size: Max stalled jobs handled per reclaim pass
        """
        super().__init__(operation_timeout_seconds=operation_timeout_seconds)
        self._url = url
        self._reclaim_batch_size = reclaim_batch_size
        self._redis: aioredis.Redis | None = None
        self._scripts: dict[str, Any] = {}

    def _get_redis(self) -> aioredis.Redis:
        """Get or create the Redis client.

        The client connects lazily, so a down server surfaces on first use.
        """
        if self._redis is None:
            self._redis = aioredis.from_url(
                self._url,
                decode_responses=True,
                socket_timeout=self._operation_timeout_seconds,
                socket_connect_timeout=self._operation_timeout_seconds,
            )
            self._scripts = {
                "enqueue": self._redis.register_script(ENQUEUE_SCRIPT),
                "dequeue": self._redis.register_script(DEQUEUE_SCRIPT),
                "complete": self._redis.register_script(COMPLETE_SCRIPT),
                "fail": self._redis.register_script(FAIL_SCRIPT),
                "reclaim": self._redis.register_script(RECLAIM_SCRIPT),
            }
        return self._redis

    def _script(self, name: str) -> Any:
        self._get_redis()
        return self._scripts[name]

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self._scripts = {}

    async def enqueue(
        self,
        *,
        kind: JobKind,
        ref_id: str,
        payload: dict[str, Any] | None = None,
        max_attempts: int = 1,
        delay_seconds: float = 0,
    ) -> Job:
        now = time.time()
        available_at = now + max(delay_seconds, 0)
        ref_field = _ref_field(kind, ref_id)
        script = self._script("enqueue")

        job_id = await self._guarded(
            script(
                keys=[KEY_PENDING, KEY_PENDING_BY_REF, KEY_JOBS, f"{KEY_BY_REF}:{ref_field}"],
                args=[
                    ref_field,
                    _generate_id(),
                    kind.value,
                    ref_id,
                    json.dumps(payload or {}),
                    str(max_attempts),
                    str(available_at),
                    _timestamp_to_iso(available_at),
                    str(now),
                    _timestamp_to_iso(now),
                ],
            ),
            errors=_ERRORS,
        )
        job = await self.get(job_id)
        if not job:
            raise RuntimeError(f"Job not found after enqueue: {job_id}")
        return job

    async def dequeue(
        self,
        *,
        worker_id: str,
        visibility_timeout_seconds: float = 120,
    ) -> Job | None:
        now = time.time()
        locked_until = now + visibility_timeout_seconds
        script = self._script("dequeue")

        job_id = await self._guarded(
            script(
                keys=[KEY_PENDING, KEY_RUNNING, KEY_JOBS, KEY_PENDING_BY_REF],
                args=[
                    str(now),
                    worker_id,
                    str(locked_until),
                    _timestamp_to_iso(now),
                    _timestamp_to_iso(locked_until),
                ],
            ),
            errors=_ERRORS,
        )
        if not job_id:
            return None
        return await self.get(job_id)

    async def complete(self, job_id: str, *, worker_id: str | None = None) -> bool:
        now = time.time()
        script = self._script("complete")
        acked = await self._guarded(
            script(
                keys=[KEY_RUNNING, KEY_COMPLETED, KEY_JOBS],
                args=[job_id, worker_id or "", str(now), _timestamp_to_iso(now)],
            ),
            errors=_ERRORS,
        )
        if not acked:
            logger.warning("Ignored ack for job %s (no longer held by %s)", job_id, worker_id)
        return bool(acked)

    async def fail(
        self,
        job_id: str,
        *,
        error: str,
        retry: bool = True,
        retry_delay_seconds: float = 10,
        worker_id: str | None = None,
    ) -> JobStatus | None:
        now = time.time()
        available_at = now + max(retry_delay_seconds, 0)
        script = self._script("fail")
        status = await self._guarded(
            script(
                keys=[KEY_RUNNING, KEY_PENDING, KEY_FAILED, KEY_JOBS, KEY_PENDING_BY_REF],
                args=[
                    job_id,
                    worker_id or "",
                    error,
                    "1" if retry else "0",
                    str(available_at),
                    _timestamp_to_iso(available_at),
                    str(now),
                    _timestamp_to_iso(now),
                ],
            ),
            errors=_ERRORS,
        )
        if not status:
            logger.warning("Ignored failure for job %s (no longer held by %s)", job_id, worker_id)
            return None
        return JobStatus(status)

    async def reclaim_stalled(self) -> list[tuple[Job, StallOutcome]]:
        now = time.time()
        script = self._script("reclaim")
        flat = await self._guarded(
            script(
                keys=[KEY_RUNNING, KEY_PENDING, KEY_FAILED, KEY_JOBS, KEY_PENDING_BY_REF],
                args=[str(now), _timestamp_to_iso(now), str(self._reclaim_batch_size)],
            ),
            errors=_ERRORS,
        )

        reclaimed: list[tuple[Job, StallOutcome]] = []
        for job_id, outcome in zip(flat[0::2], flat[1::2], strict=True):
            job = await self.get(job_id)
            if job:
                reclaimed.append((job, StallOutcome(outcome)))
        return reclaimed

    async def get(self, job_id: str) -> Job | None:
        redis = self._get_redis()
        job_data = await self._guarded(redis.hgetall(f"{KEY_JOBS}:{job_id}"), errors=_ERRORS)
        if not job_data:
            return None
        return self._dict_to_job(job_data)

    async def get_latest_by_ref(self, *, kind: JobKind, ref_id: str) -> Job | None:
        redis = self._get_redis()
        job_ids = await self._guarded(
            redis.zrevrange(f"{KEY_BY_REF}:{_ref_field(kind, ref_id)}", 0, 0), errors=_ERRORS
        )
        if not job_ids:
            return None
        return await self.get(job_ids[0])

    async def get_stats(self) -> QueueStats:
        redis = self._get_redis()

        async def _collect() -> QueueStats:
            async with redis.pipeline(transaction=False) as pipe:
                pipe.zcard(KEY_PENDING)
                pipe.zcard(KEY_RUNNING)
                pipe.zcard(KEY_COMPLETED)
                pipe.zcard(KEY_FAILED)
                pipe.zrange(KEY_PENDING, 0, 0)
                pending, running, completed, failed, head = await pipe.execute()

            oldest: datetime | None = None
            if head:
                created = await redis.hget(f"{KEY_JOBS}:{head[0]}", "created_at")
                oldest = datetime.fromisoformat(created) if created else None

            return QueueStats(
                pending_count=pending,
                active_count=running,
                completed_count=completed,
                failed_count=failed,
                oldest_pending_at=oldest,
            )

        return await self._guarded(_collect(), errors=_ERRORS)

    async def cleanup_completed(self, *, older_than_hours: float) -> int:
        redis = self._get_redis()
        cutoff = time.time() - older_than_hours * 3600

        async def _cleanup() -> int:
            removed = 0
            for finished_key in (KEY_COMPLETED, KEY_FAILED):
                job_ids = await redis.zrangebyscore(finished_key, "-inf", f"({cutoff}")
                for job_id in job_ids:
                    job_key = f"{KEY_JOBS}:{job_id}"
                    kind, ref_id = await redis.hmget(job_key, "kind", "ref_id")
                    async with redis.pipeline() as pipe:
                        pipe.zrem(finished_key, job_id)
                        pipe.delete(job_key)
                        if kind and ref_id:
                            pipe.zrem(f"{KEY_BY_REF}:{kind}:{ref_id}", job_id)
                        await pipe.execute()
                    removed += 1
            return removed

        return await self._guarded(_cleanup(), errors=_ERRORS)

    async def ping(self) -> bool:
        redis = self._get_redis()
        return bool(await self._guarded(redis.ping(), errors=_ERRORS))

    def _dict_to_job(self, data: dict[str, str]) -> Job:
        """Convert a Redis hash to a Job model."""
        return row_to_model(Job, data, json_fields={"payload"}, empty_as_none=_OPTIONAL_FIELDS)

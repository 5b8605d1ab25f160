"""Job queue backends."""

from repotrack_api.queue.backend import (
    QueueBackend,
    QueueBackendType,
    exponential_backoff,
    parse_queue_url,
)
from repotrack_api.queue.factory import create_queue_backend
from repotrack_api.queue.redis_backend import RedisQueueBackend
from repotrack_api.queue.sqlite_backend import SQLiteQueueBackend

__all__ = [
    "QueueBackend",
    "QueueBackendType",
    "RedisQueueBackend",
    "SQLiteQueueBackend",
    "create_queue_backend",
    "exponential_backoff",
    "parse_queue_url",
]

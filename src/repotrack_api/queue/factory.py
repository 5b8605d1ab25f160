"""Queue backend selection."""

from __future__ import annotations

import logging

from repotrack_api.config import Settings
from repotrack_api.queue.backend import QueueBackend, QueueBackendType, parse_queue_url
from repotrack_api.queue.redis_backend import RedisQueueBackend
from repotrack_api.queue.sqlite_backend import SQLiteQueueBackend
from repotrack_api.storage.db import Database

logger = logging.getLogger(__name__)


def create_queue_backend(settings: Settings, db: Database) -> QueueBackend:
    """Build the queue backend named by ``settings.queue_url``.

    Args:
        settings: Application settings.
        db: Project database, used by the SQLite backend.
    """
    backend_type, params = parse_queue_url(settings.queue_url or "sqlite://")

    if backend_type == QueueBackendType.REDIS:
        logger.info("Using Redis queue backend")
        return RedisQueueBackend(
            params["url"],
            operation_timeout_seconds=settings.queue_timeout_seconds,
        )

    logger.info("Using SQLite queue backend (%s)", db.path)
    return SQLiteQueueBackend(db, operation_timeout_seconds=settings.queue_timeout_seconds)

"""Prometheus scrape endpoint."""

import logging

from fastapi import APIRouter, Depends, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from repotrack_api.dependencies import get_queue_backend
from repotrack_api.errors import QueueUnavailableError
from repotrack_api.observability.metrics import record_queue_stats
from repotrack_api.queue.backend import QueueBackend

logger = logging.getLogger(__name__)

router = APIRouter(tags=["prometheus"])


@router.get("/metrics", include_in_schema=False)
async def prometheus_metrics(queue: QueueBackend = Depends(get_queue_backend)) -> Response:
    # Gauges are refreshed per scrape since workers may live in other processes
    try:
        record_queue_stats(await queue.get_stats())
    except QueueUnavailableError as e:
        logger.warning("Queue stats unavailable for scrape, serving last values: %s", e.message)
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

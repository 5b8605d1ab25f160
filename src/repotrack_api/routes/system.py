"""System routes for queue and upstream status."""

from fastapi import APIRouter, Depends

from repotrack_api.dependencies import get_github_fetcher, get_queue_backend
from repotrack_api.domain.models import QueueStats, RateLimitStatus
from repotrack_api.queue.backend import QueueBackend
from repotrack_api.services.github_fetcher import GitHubFetcher

router = APIRouter(prefix="/system", tags=["system"])


@router.get("/queue", response_model=QueueStats)
async def get_queue_stats(
    queue: QueueBackend = Depends(get_queue_backend),
) -> QueueStats:
    """Job counts per state. Answers 503 when the queue backend is down."""
    return await queue.get_stats()


@router.get("/github/rate-limit", response_model=RateLimitStatus)
async def get_github_rate_limit(
    fetcher: GitHubFetcher = Depends(get_github_fetcher),
) -> RateLimitStatus:
    """Remaining GitHub API quota for the configured token."""
    return await fetcher.get_rate_limit()

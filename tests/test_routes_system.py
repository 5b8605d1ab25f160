from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from repotrack_api.dependencies import get_github_fetcher, get_queue_backend
from repotrack_api.domain.models import QueueStats, RateLimitStatus
from repotrack_api.error_handling import install_error_handling
from repotrack_api.errors import QueueUnavailableError
from repotrack_api.observability import MetricsMiddleware
from repotrack_api.queue.backend import QueueBackend
from repotrack_api.routes import metrics_router, system_router
from repotrack_api.services.github_fetcher import GitHubFetcher


@pytest.fixture
def queue() -> AsyncMock:
    backend = AsyncMock(spec=QueueBackend)
    backend.get_stats.return_value = QueueStats(pending_count=2, active_count=1, failed_count=3)
    return backend


@pytest.fixture
def fetcher() -> AsyncMock:
    return AsyncMock(spec=GitHubFetcher)


@pytest.fixture
def client(queue: AsyncMock, fetcher: AsyncMock) -> TestClient:
    app = FastAPI()
    install_error_handling(app)
    app.add_middleware(MetricsMiddleware)
    app.include_router(system_router, prefix="/v1")
    app.include_router(metrics_router)
    app.dependency_overrides[get_queue_backend] = lambda: queue
    app.dependency_overrides[get_github_fetcher] = lambda: fetcher
    return TestClient(app)


def test_queue_stats(client: TestClient) -> None:
    resp = client.get("/v1/system/queue")

    assert resp.status_code == 200
    body = resp.json()
    assert body["pending_count"] == 2
    assert body["active_count"] == 1
    assert body["failed_count"] == 3


def test_queue_stats_when_queue_down(client: TestClient, queue: AsyncMock) -> None:
    queue.get_stats.side_effect = QueueUnavailableError()

    resp = client.get("/v1/system/queue")

    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "QUEUE_UNAVAILABLE"


def test_github_rate_limit(client: TestClient, fetcher: AsyncMock) -> None:
    fetcher.get_rate_limit.return_value = RateLimitStatus(
        limit=60, remaining=59, used=1, reset_at=datetime(2026, 1, 1, tzinfo=UTC)
    )

    resp = client.get("/v1/system/github/rate-limit")

    assert resp.status_code == 200
    assert resp.json()["remaining"] == 59


def test_metrics_exposes_queue_and_http_series(client: TestClient) -> None:
    client.get("/v1/system/queue")

    resp = client.get("/metrics")

    assert resp.status_code == 200
    assert 'repotrack_queue_size{state="pending"} 2.0' in resp.text
    assert "repotrack_http_requests_total{" in resp.text


def test_metrics_survives_queue_outage(client: TestClient, queue: AsyncMock) -> None:
    queue.get_stats.side_effect = QueueUnavailableError()

    resp = client.get("/metrics")

    assert resp.status_code == 200
    assert "repotrack_http_requests_total" in resp.text

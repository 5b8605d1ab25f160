"""Pytest configuration and fixtures."""

import os
import tempfile
from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any

# Settings create their data directory on import; keep it out of $HOME.
os.environ.setdefault("REPOTRACK_DATA_DIR", tempfile.mkdtemp(prefix="repotrack-tests-"))
os.environ.setdefault("REPOTRACK_WORKER_ENABLED", "false")

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from repotrack_api.queue.sqlite_backend import SQLiteQueueBackend  # noqa: E402
from repotrack_api.services.github_fetcher import GitHubFetcher  # noqa: E402
from repotrack_api.storage.dao import ProjectDAO  # noqa: E402
from repotrack_api.storage.db import Database  # noqa: E402

API_URL = "https://api.github.com"

Responder = Callable[[httpx.Request], httpx.Response]


def repo_json(
    owner: str = "facebook",
    name: str = "react",
    *,
    stars: int = 200000,
    forks: int = 40000,
    open_issues_count: int = 1200,
    created_at: str = "2013-05-24T16:15:54Z",
) -> dict[str, Any]:
    """Minimal GET /repos/{owner}/{repo} body."""
    return {
        "id": 10270250,
        "name": name,
        "full_name": f"{owner}/{name}",
        "owner": {"login": owner},
        "html_url": f"https://github.com/{owner}/{name}",
        "description": "A test repository",
        "language": "JavaScript",
        "default_branch": "main",
        "stargazers_count": stars,
        "forks_count": forks,
        "open_issues_count": open_issues_count,
        "created_at": created_at,
    }


def pulls_link_header(owner: str, name: str, last_page: int) -> str:
    base = f"{API_URL}/repos/{owner}/{name}/pulls?state=open&per_page=1"
    return f'<{base}&page=2>; rel="next", <{base}&page={last_page}>; rel="last"'


class GitHubStub:
    """Routes requests by URL path to canned responses and records them."""

    def __init__(self) -> None:
        self.routes: dict[str, Responder] = {}
        self.requests: list[httpx.Request] = []

    def reply(
        self,
        path: str,
        status_code: int = 200,
        *,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        def responder(request: httpx.Request) -> httpx.Response:
            return httpx.Response(status_code, json=json, headers=headers)

        self.routes[path] = responder

    def raise_for(self, path: str, exc_factory: Callable[[httpx.Request], Exception]) -> None:
        def responder(request: httpx.Request) -> httpx.Response:
            raise exc_factory(request)

        self.routes[path] = responder

    def repository(
        self,
        owner: str = "facebook",
        name: str = "react",
        *,
        open_pull_requests: int = 0,
        **fields: Any,
    ) -> None:
        """Serve a repository and its open pull request count."""
        self.reply(f"/repos/{owner}/{name}", json=repo_json(owner, name, **fields))
        if open_pull_requests > 1:
            self.reply(
                f"/repos/{owner}/{name}/pulls",
                json=[{"number": 1}],
                headers={"Link": pulls_link_header(owner, name, open_pull_requests)},
            )
        else:
            self.reply(
                f"/repos/{owner}/{name}/pulls",
                json=[{"number": 1}] * open_pull_requests,
            )

    @staticmethod
    def repo_body(owner: str = "facebook", name: str = "react", **fields: Any) -> dict[str, Any]:
        return repo_json(owner, name, **fields)

    @staticmethod
    def pulls_link(owner: str, name: str, last_page: int) -> str:
        return pulls_link_header(owner, name, last_page)

    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        responder = self.routes.get(request.url.path)
        if responder is None:
            return httpx.Response(404, json={"message": "Not Found"})
        return responder(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest_asyncio.fixture
async def test_db(tmp_path: Path) -> AsyncGenerator[Database]:
    """Create a temporary test database."""
    db_path = tmp_path / "test.db"
    db = Database(db_path=db_path)
    await db.connect()
    await db.initialize()
    yield db
    await db.disconnect()


@pytest.fixture
def project_dao(test_db: Database) -> ProjectDAO:
    return ProjectDAO(test_db)


@pytest.fixture
def sqlite_queue(test_db: Database) -> SQLiteQueueBackend:
    return SQLiteQueueBackend(test_db)


@pytest.fixture
def github() -> GitHubStub:
    return GitHubStub()


@pytest_asyncio.fixture
async def fetcher(github: GitHubStub) -> AsyncGenerator[GitHubFetcher]:
    client = GitHubFetcher(
        token="test-token",
        api_url=API_URL,
        timeout_seconds=5.0,
        user_agent="repotrack-tests",
        transport=github.transport,
    )
    yield client
    await client.aclose()

"""GitHub REST client that reads repository metrics.

One `fetch` makes exactly one attempt per sub-resource: retrying is the job
queue's business. Failures are classified into the `FetchError` hierarchy so
callers branch on ``kind`` and never on message text.
"""

from __future__ import annotations

import logging
import time
from datetime import UTC, datetime
from typing import Any

import httpx

from repotrack_api.config import settings
from repotrack_api.domain.models import RateLimitStatus, RepoSnapshot
from repotrack_api.errors import (
    FetchError,
    RateLimitedError,
    RepoNotFoundError,
    TransientError,
    UpstreamUnauthorizedError,
)
from repotrack_api.observability.metrics import GITHUB_REQUEST_DURATION, GITHUB_REQUESTS_TOTAL

logger = logging.getLogger(__name__)


class GitHubFetcher:
    """Reads stars, forks and open issue counts for one repository."""

    API_VERSION = "2022-11-28"
    ACCEPT_JSON = "application/vnd.github+json"

    def __init__(
        self,
        *,
        token: str | None = None,
        api_url: str | None = None,
        timeout_seconds: float | None = None,
        user_agent: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._token = token if token is not None else settings.github_token
        self._api_url = api_url or settings.github_api_url
        self._timeout_seconds = timeout_seconds or settings.github_timeout_seconds
        self._user_agent = user_agent or settings.github_user_agent
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> GitHubFetcher:
        self._ensure_client()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def fetch(self, owner: str, repo: str) -> RepoSnapshot:
        """Fetch current metrics for ``owner/repo``.

        Raises:
            RepoNotFoundError: 404 on the repository call.
            UpstreamUnauthorizedError: 401 on the repository call.
            RateLimitedError: 403 or 429 on the repository call.
            TransientError: Timeouts, network errors, 5xx, malformed bodies.
        """
        response = await self._get("repository", f"/repos/{owner}/{repo}")
        self._raise_for_status(response, owner, repo)
        data = self._json(response)

        open_prs = await self._count_open_pull_requests(owner, repo)

        try:
            total_open = int(data["open_issues_count"])
            return RepoSnapshot(
                owner=data["owner"]["login"],
                name=data["name"],
                full_name=data.get("full_name") or f"{owner}/{repo}",
                html_url=data.get("html_url") or f"https://github.com/{owner}/{repo}",
                stars=data["stargazers_count"],
                forks=data["forks_count"],
                open_issues_and_prs=total_open,
                open_pull_requests=open_prs,
                open_issues=actual_open_issues(total_open, open_prs),
                created_at=data["created_at"],
                description=data.get("description"),
                language=data.get("language"),
                default_branch=data.get("default_branch"),
                raw=data,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise TransientError(
                f"Malformed repository response for {owner}/{repo}: {e}",
                upstream_status=response.status_code,
            ) from e

    async def get_rate_limit(self) -> RateLimitStatus:
        """Read the core API quota for the configured credentials."""
        response = await self._get("rate_limit", "/rate_limit")
        if response.status_code == 401:
            raise UpstreamUnauthorizedError()
        if response.status_code != 200:
            raise TransientError(
                f"GitHub rate limit endpoint returned {response.status_code}",
                upstream_status=response.status_code,
            )

        data = self._json(response)
        try:
            core = data["resources"]["core"]
            return RateLimitStatus(
                limit=core["limit"],
                remaining=core["remaining"],
                used=core.get("used", core["limit"] - core["remaining"]),
                reset_at=datetime.fromtimestamp(int(core["reset"]), UTC),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise TransientError(f"Malformed rate limit response: {e}") from e

    async def _count_open_pull_requests(self, owner: str, repo: str) -> int:
        """Count open PRs with a single one-item page.

        With ``per_page=1`` the page number of the ``rel="last"`` link equals
        the number of open PRs. Without a Link header there is at most one
        page and the list length is the count. Any failure counts as 0.
        """
        try:
            response = await self._get(
                "pulls",
                f"/repos/{owner}/{repo}/pulls",
                params={"state": "open", "per_page": 1},
            )
            if response.status_code != 200:
                raise TransientError(
                    f"Pull request listing returned {response.status_code}",
                    upstream_status=response.status_code,
                )

            last = response.links.get("last")
            if last and last.get("url"):
                page = httpx.URL(last["url"]).params.get("page")
                if page is not None:
                    return int(page)

            items = self._json(response)
            if not isinstance(items, list):
                raise TransientError("Pull request listing is not a list")
            return len(items)
        except (FetchError, ValueError) as e:
            logger.warning("Could not count open PRs for %s/%s, assuming 0: %s", owner, repo, e)
            return 0

    async def _get(
        self,
        resource: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        client = self._ensure_client()
        start = time.monotonic()
        try:
            response = await client.get(path, params=params)
        except httpx.TimeoutException as e:
            GITHUB_REQUESTS_TOTAL.labels(resource=resource, outcome="timeout").inc()
            raise TransientError(f"GitHub request timed out: {path}") from e
        except httpx.HTTPError as e:
            GITHUB_REQUESTS_TOTAL.labels(resource=resource, outcome="network_error").inc()
            raise TransientError(f"GitHub request failed: {e}") from e
        finally:
            GITHUB_REQUEST_DURATION.labels(resource=resource).observe(time.monotonic() - start)

        GITHUB_REQUESTS_TOTAL.labels(resource=resource, outcome=str(response.status_code)).inc()
        return response

    def _raise_for_status(self, response: httpx.Response, owner: str, repo: str) -> None:
        status = response.status_code
        if status == 200:
            return
        if status == 404:
            raise RepoNotFoundError(owner, repo)
        if status == 401:
            raise UpstreamUnauthorizedError()
        if status in (403, 429):
            retry_after = compute_retry_after(response.headers)
            logger.warning(
                "GitHub rate limit encountered for %s/%s (status=%s, retry_after=%s)",
                owner,
                repo,
                status,
                retry_after,
            )
            raise RateLimitedError(upstream_status=status, retry_after_seconds=retry_after)
        raise TransientError(
            f"GitHub returned {status} for {owner}/{repo}",
            upstream_status=status,
        )

    def _json(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise TransientError(
                "GitHub returned a body that is not JSON", upstream_status=response.status_code
            ) from e

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client:
            return self._client

        headers = {
            "Accept": self.ACCEPT_JSON,
            "User-Agent": self._user_agent,
            "X-GitHub-Api-Version": self.API_VERSION,
        }
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        self._client = httpx.AsyncClient(
            base_url=self._api_url,
            headers=headers,
            timeout=self._timeout_seconds,
            # Renamed and transferred repositories answer with 301
            follow_redirects=True,
            transport=self._transport,
        )
        return self._client


def actual_open_issues(open_issues_and_prs: int, open_pull_requests: int) -> int:
    """GitHub counts PRs as issues; subtract them, never going below zero."""
    return max(0, open_issues_and_prs - open_pull_requests)


def compute_retry_after(headers: httpx.Headers) -> float | None:
    """Seconds GitHub asks us to wait, from Retry-After or X-RateLimit-Reset."""
    retry_after = headers.get("retry-after")
    if retry_after is not None:
        try:
            return max(float(retry_after), 0.0)
        except ValueError:
            pass

    reset_raw = headers.get("x-ratelimit-reset")
    if reset_raw is not None:
        try:
            return float(max(int(reset_raw) - int(time.time()), 0))
        except ValueError:
            pass

    return None

"""Exceptions shared by the routes, the GitHub fetcher and the refresh worker.

Each class fixes a stable ``code`` and an HTTP ``status_code`` as class
attributes; `repotrack_api.error_handling` turns them into the JSON error
envelope. Callers branch on ``code`` (or on the class), never on the message.
"""

from __future__ import annotations

from typing import Any

from repotrack_api.domain.enums import FetchErrorKind


class RepoTrackError(Exception):
    """Base for every error the API reports on purpose.

    Plain attributes rather than a frozen dataclass: Starlette and asyncio set
    ``__traceback__`` and ``__context__`` while the exception propagates.
    """

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details

    def __str__(self) -> str:
        return self.message


class BadRequestError(RepoTrackError):
    code = "VALIDATION_ERROR"
    status_code = 400


class UnauthorizedError(RepoTrackError):
    code = "UNAUTHORIZED"
    status_code = 401

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message)


class NotFoundError(RepoTrackError):
    code = "NOT_FOUND"
    status_code = 404


class ConflictError(RepoTrackError):
    code = "CONFLICT"
    status_code = 409


class InvalidPathError(BadRequestError):
    """Repository path could not be parsed into owner/repo."""

    code = "INVALID_PATH"

    def __init__(self, repo_path: str) -> None:
        super().__init__(
            'Invalid repository path. Expected format: "owner/repo" or '
            '"https://github.com/owner/repo"',
            details={"repo_path": repo_path},
        )


class DuplicateProjectError(ConflictError):
    code = "DUPLICATE_PROJECT"

    def __init__(self, owner: str, repo: str) -> None:
        super().__init__(
            "This repository is already added to your projects",
            details={"owner": owner, "repo": repo},
        )


class ProjectNotFoundError(NotFoundError):
    """No project with this id exists for the caller."""

    code = "PROJECT_NOT_FOUND"

    def __init__(self, project_id: str) -> None:
        super().__init__("Project not found", details={"project_id": project_id})


class QueueUnavailableError(RepoTrackError):
    """The queue backend could not be reached or did not answer in time."""

    code = "QUEUE_UNAVAILABLE"
    status_code = 503

    def __init__(self, message: str = "Background job service temporarily unavailable") -> None:
        super().__init__(message)


class JobPayloadError(RepoTrackError):
    """A job payload is missing required fields. Never retried."""

    code = "JOB_PAYLOAD_INVALID"


# GitHub fetch errors


class FetchError(RepoTrackError):
    """A failed call to the GitHub API.

    ``kind`` is what callers switch on. ``retryable`` tells the queue whether
    another attempt can change the outcome.
    """

    kind: FetchErrorKind = FetchErrorKind.TRANSIENT
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        upstream_status: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        merged = dict(details or {})
        if upstream_status is not None:
            merged["upstream_status"] = upstream_status
        super().__init__(message, details=merged or None)
        self.upstream_status = upstream_status

    @property
    def retryable(self) -> bool:
        return self.kind in (FetchErrorKind.TRANSIENT, FetchErrorKind.RATE_LIMITED)


class RepoNotFoundError(FetchError):
    """The repository does not exist or is invisible to our credentials."""

    kind = FetchErrorKind.NOT_FOUND
    code = "REPO_NOT_FOUND"
    status_code = 404

    def __init__(self, owner: str, repo: str) -> None:
        super().__init__(
            f"Repository {owner}/{repo} not found",
            upstream_status=404,
            details={"owner": owner, "repo": repo},
        )


class UpstreamUnauthorizedError(FetchError):
    """GitHub rejected our credentials."""

    kind = FetchErrorKind.UNAUTHORIZED
    code = "UPSTREAM_UNAUTHORIZED"

    def __init__(self, message: str = "GitHub API authentication failed") -> None:
        super().__init__(message, upstream_status=401)


class RateLimitedError(FetchError):
    """GitHub signalled a primary or secondary rate limit."""

    kind = FetchErrorKind.RATE_LIMITED
    code = "RATE_LIMITED"
    status_code = 503

    def __init__(
        self,
        message: str = "GitHub API rate limit exceeded or access forbidden",
        *,
        upstream_status: int | None = None,
        retry_after_seconds: float | None = None,
    ) -> None:
        details = {}
        if retry_after_seconds is not None:
            details["retry_after_seconds"] = retry_after_seconds
        super().__init__(message, upstream_status=upstream_status, details=details)
        self.retry_after_seconds = retry_after_seconds


class TransientError(FetchError):
    """Network failure, timeout, 5xx or an unreadable response."""

    kind = FetchErrorKind.TRANSIENT
    code = "UPSTREAM_TRANSIENT"

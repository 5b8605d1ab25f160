"""Pydantic domain models for repotrack API."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from repotrack_api.domain.enums import JobKind, JobStatus, ReconcileOutcome

# ============================================================
# Project
# ============================================================


class ProjectCreate(BaseModel):
    """Request for tracking a new repository."""

    repo_path: str = Field(
        ...,
        min_length=1,
        description='Repository path, e.g. "facebook/react" or "https://github.com/facebook/react"',
    )


class Project(BaseModel):
    """A repository tracked by one user."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    owner: str
    name: str
    url: str
    stars: int = Field(default=0, ge=0)
    forks: int = Field(default=0, ge=0)
    open_issues: int = Field(default=0, ge=0, description="Open issues, pull requests excluded")
    github_created_at: int = Field(..., description="Upstream creation time, seconds since epoch")
    last_refreshed_at: datetime | None = None
    raw_snapshot: dict[str, Any] | None = None
    created_at: datetime
    updated_at: datetime


class RefreshScheduling(BaseModel):
    """Whether a background refresh was queued for a request."""

    scheduled: bool
    job_id: str | None = None
    detail: str | None = None


class ProjectMutationResult(BaseModel):
    """Response for add-project and request-update."""

    project: Project
    refresh: RefreshScheduling
    message: str


# ============================================================
# GitHub
# ============================================================


class RepoSnapshot(BaseModel):
    """Normalized view of one GitHub repository at fetch time."""

    owner: str
    name: str
    full_name: str
    html_url: str
    stars: int = Field(ge=0)
    forks: int = Field(ge=0)
    open_issues_and_prs: int = Field(ge=0, description="GitHub's open_issues_count")
    open_pull_requests: int = Field(ge=0)
    open_issues: int = Field(ge=0, description="Issues only")
    created_at: datetime
    description: str | None = None
    language: str | None = None
    default_branch: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)

    @property
    def github_created_at(self) -> int:
        """Upstream creation time as seconds since epoch."""
        return int(self.created_at.timestamp())

    def to_stored_snapshot(self) -> dict[str, Any]:
        """Blob stored on the project row for diagnostics."""
        return {
            "repository": self.raw,
            "open_pull_requests": self.open_pull_requests,
            "actual_open_issues": self.open_issues,
        }


class RateLimitStatus(BaseModel):
    """Core API rate-limit status reported by GitHub."""

    limit: int
    remaining: int
    used: int
    reset_at: datetime


# ============================================================
# Jobs
# ============================================================


class Job(BaseModel):
    """A queued unit of background work."""

    id: str
    kind: JobKind
    ref_id: str
    status: JobStatus
    payload: dict[str, Any] = Field(default_factory=dict)
    attempts: int = 0
    max_attempts: int = 1
    stalls: int = 0
    available_at: datetime | None = None
    locked_at: datetime | None = None
    locked_until: datetime | None = None
    locked_by: str | None = None
    last_error: str | None = None
    created_at: datetime
    updated_at: datetime


class RefreshJobPayload(BaseModel):
    """Payload of a project refresh job.

    Owner and repo are denormalized at enqueue time so the fetch targets the
    repository the user asked for even if the row changes while the job waits.
    """

    project_id: str
    owner: str
    repo: str


class ReconcileResult(BaseModel):
    """What a reconciliation did."""

    project_id: str
    outcome: ReconcileOutcome
    reason: str | None = None


class QueueStats(BaseModel):
    """Queue statistics for observability."""

    pending_count: int = Field(default=0, description="Jobs waiting to be processed")
    active_count: int = Field(default=0, description="Jobs currently claimed by a worker")
    completed_count: int = Field(default=0, description="Acknowledged jobs")
    failed_count: int = Field(default=0, description="Jobs that exhausted their attempts")
    oldest_pending_at: datetime | None = Field(None, description="Age marker of the backlog")

"""Domain models for repotrack API."""

from repotrack_api.domain.enums import (
    FetchErrorKind,
    JobKind,
    JobStatus,
    ReconcileOutcome,
    StallOutcome,
)
from repotrack_api.domain.models import (
    Job,
    Project,
    ProjectCreate,
    ProjectMutationResult,
    QueueStats,
    RateLimitStatus,
    ReconcileResult,
    RefreshJobPayload,
    RefreshScheduling,
    RepoSnapshot,
)

__all__ = [
    "FetchErrorKind",
    "Job",
    "JobKind",
    "JobStatus",
    "Project",
    "ProjectCreate",
    "ProjectMutationResult",
    "QueueStats",
    "RateLimitStatus",
    "ReconcileOutcome",
    "ReconcileResult",
    "RefreshJobPayload",
    "RefreshScheduling",
    "RepoSnapshot",
    "StallOutcome",
]

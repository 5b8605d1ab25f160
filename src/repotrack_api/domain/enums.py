"""Enums for repotrack domain models."""

from enum import Enum


class JobKind(str, Enum):
    """Kind of background job."""

    PROJECT_REFRESH = "project.refresh"  # Refetch GitHub metrics for one project


class JobStatus(str, Enum):
    """Job lifecycle status."""

    PENDING = "pending"  # Waiting in queue (new, retrying or reclaimed after a stall)
    ACTIVE = "active"  # Claimed by a worker
    COMPLETED = "completed"  # Acknowledged by the worker
    FAILED = "failed"  # Attempts exhausted or non-retryable failure


class FetchErrorKind(str, Enum):
    """Classification of GitHub fetch failures."""

    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"


class ReconcileOutcome(str, Enum):
    """Terminal result of reconciling one refresh job."""

    UPDATED = "updated"
    SKIPPED_DELETED = "skipped_deleted"  # Project row no longer exists
    SKIPPED_UNTRACKABLE = "skipped_untrackable"  # Repo gone or credentials rejected


class StallOutcome(str, Enum):
    """What the health check did with a stalled job."""

    REQUEUED = "requeued"
    FAILED = "failed"

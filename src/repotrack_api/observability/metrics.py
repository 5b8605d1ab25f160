"""Prometheus collectors.

Names are ``repotrack_<area>_<what>[_<unit>]``. Label values are kept to small
closed sets (job kind, job status, GitHub resource, route template).
"""

from prometheus_client import Counter, Gauge, Histogram

from repotrack_api.domain.enums import JobStatus
from repotrack_api.domain.models import QueueStats

_FAST_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
_UPSTREAM_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)
_WAIT_BUCKETS = (0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0)

# Refresh queue

QUEUE_SIZE = Gauge(
    "repotrack_queue_size",
    "Jobs currently held by the queue, per state",
    ["state"],
)
QUEUE_LATENCY = Histogram(
    "repotrack_queue_latency_seconds",
    "Delay between a job becoming available and a worker starting it",
    ["kind"],
    buckets=_WAIT_BUCKETS,
)
ENQUEUE_FAILURES = Counter(
    "repotrack_enqueue_failures_total",
    "Refreshes not scheduled because the queue was unreachable",
    ["kind"],
)

# Job execution; status is completed, retried, failed or unacked

JOB_DURATION = Histogram(
    "repotrack_job_duration_seconds",
    "Wall time spent running a job handler",
    ["kind", "status"],
    buckets=_UPSTREAM_BUCKETS,
)
JOB_TOTAL = Counter(
    "repotrack_jobs_total",
    "Job executions by outcome",
    ["kind", "status"],
)
JOB_STALLED_TOTAL = Counter(
    "repotrack_jobs_stalled_total",
    "Locks that expired before the job was acknowledged",
    ["outcome"],
)

# GitHub REST API

GITHUB_REQUESTS_TOTAL = Counter(
    "repotrack_github_requests_total",
    "GitHub API calls by resource and outcome",
    ["resource", "outcome"],
)
GITHUB_REQUEST_DURATION = Histogram(
    "repotrack_github_request_duration_seconds",
    "GitHub API call latency",
    ["resource"],
    buckets=_UPSTREAM_BUCKETS,
)

# Inbound HTTP

HTTP_REQUEST_DURATION = Histogram(
    "repotrack_http_request_duration_seconds",
    "Time to serve an HTTP request",
    ["method", "endpoint", "status_code"],
    buckets=_FAST_BUCKETS,
)
HTTP_REQUESTS_TOTAL = Counter(
    "repotrack_http_requests_total",
    "HTTP requests served",
    ["method", "endpoint", "status_code"],
)


def record_queue_stats(stats: QueueStats) -> None:
    """Copy a stats snapshot into the ``repotrack_queue_size`` gauge."""
    counts = {
        JobStatus.PENDING: stats.pending_count,
        JobStatus.ACTIVE: stats.active_count,
        JobStatus.COMPLETED: stats.completed_count,
        JobStatus.FAILED: stats.failed_count,
    }
    for state, count in counts.items():
        QUEUE_SIZE.labels(state=state.value).set(count)

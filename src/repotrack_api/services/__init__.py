"""Services for repotrack API."""

from repotrack_api.services.github_fetcher import GitHubFetcher
from repotrack_api.services.job_worker import JobWorker
from repotrack_api.services.project_service import ProjectService
from repotrack_api.services.reconciler import Reconciler

__all__ = [
    "GitHubFetcher",
    "JobWorker",
    "ProjectService",
    "Reconciler",
]

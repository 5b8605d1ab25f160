"""Applies a fresh GitHub snapshot to one project row."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from repotrack_api.domain.enums import ReconcileOutcome
from repotrack_api.domain.models import Job, ReconcileResult, RefreshJobPayload
from repotrack_api.errors import (
    JobPayloadError,
    RateLimitedError,
    RepoNotFoundError,
    TransientError,
    UpstreamUnauthorizedError,
)
from repotrack_api.services.github_fetcher import GitHubFetcher
from repotrack_api.storage.dao import ProjectDAO

logger = logging.getLogger(__name__)


class Reconciler:
    """Refresh job handler.

    The outcome is terminal unless a retryable fetch error escapes, which the
    worker turns into a delayed retry. Only the row named by ``project_id`` is
    ever written.
    """

    def __init__(self, project_dao: ProjectDAO, fetcher: GitHubFetcher):
        self.project_dao = project_dao
        self.fetcher = fetcher

    async def handle_job(self, job: Job) -> None:
        """Job worker entry point."""
        await self.reconcile(job.payload)

    async def reconcile(self, raw_payload: dict[str, Any]) -> ReconcileResult:
        """Reconcile one project with GitHub.

        Raises:
            JobPayloadError: Payload is missing project_id, owner or repo.
            TransientError: Upstream failure worth retrying.
            RateLimitedError: Upstream asked us to back off.
        """
        try:
            payload = RefreshJobPayload.model_validate(raw_payload)
        except ValidationError as e:
            raise JobPayloadError(
                "Refresh job payload is malformed", details={"payload": raw_payload}
            ) from e

        project = await self.project_dao.get(payload.project_id)
        if project is None:
            logger.info(
                "Project %s was deleted before refresh, skipping", payload.project_id
            )
            return ReconcileResult(
                project_id=payload.project_id,
                outcome=ReconcileOutcome.SKIPPED_DELETED,
                reason="project not found",
            )

        try:
            snapshot = await self.fetcher.fetch(payload.owner, payload.repo)
        except (RepoNotFoundError, UpstreamUnauthorizedError) as e:
            logger.warning(
                "Cannot refresh project %s (%s/%s): %s",
                payload.project_id,
                payload.owner,
                payload.repo,
                e.message,
            )
            return ReconcileResult(
                project_id=payload.project_id,
                outcome=ReconcileOutcome.SKIPPED_UNTRACKABLE,
                reason=e.code,
            )
        except (TransientError, RateLimitedError):
            logger.info(
                "Refresh of %s/%s hit a retryable error", payload.owner, payload.repo
            )
            raise

        updated = await self.project_dao.update_metrics(
            payload.project_id,
            stars=snapshot.stars,
            forks=snapshot.forks,
            open_issues=snapshot.open_issues,
            github_created_at=snapshot.github_created_at,
            raw_snapshot=snapshot.to_stored_snapshot(),
            refreshed_at=datetime.now(UTC),
        )
        if not updated:
            logger.info(
                "Project %s was deleted during refresh, skipping", payload.project_id
            )
            return ReconcileResult(
                project_id=payload.project_id,
                outcome=ReconcileOutcome.SKIPPED_DELETED,
                reason="project deleted during fetch",
            )

        logger.info(
            "Refreshed %s/%s: stars=%s forks=%s open_issues=%s",
            payload.owner,
            payload.repo,
            snapshot.stars,
            snapshot.forks,
            snapshot.open_issues,
        )
        return ReconcileResult(project_id=payload.project_id, outcome=ReconcileOutcome.UPDATED)

"""Project routes."""

from fastapi import APIRouter, Depends, Response

from repotrack_api.dependencies import get_current_user_id, get_project_service
from repotrack_api.domain.models import Project, ProjectCreate, ProjectMutationResult
from repotrack_api.services.project_service import ProjectService

router = APIRouter(prefix="/projects", tags=["projects"])


@router.post("", response_model=ProjectMutationResult, status_code=201)
async def add_project(
    data: ProjectCreate,
    user_id: str = Depends(get_current_user_id),
    project_service: ProjectService = Depends(get_project_service),
) -> ProjectMutationResult:
    """Track a GitHub repository.

    The repository is fetched synchronously, so a missing repo is reported
    here (404) and never stored. A background refresh is queued afterwards;
    if the queue is down the project is still added and
    ``refresh.scheduled`` is false.
    """
    return await project_service.add_project(user_id, data.repo_path)


@router.get("", response_model=list[Project])
async def list_projects(
    user_id: str = Depends(get_current_user_id),
    project_service: ProjectService = Depends(get_project_service),
) -> list[Project]:
    """List the caller's projects, newest first."""
    return await project_service.list_projects(user_id)


@router.get("/{project_id}", response_model=Project)
async def get_project(
    project_id: str,
    user_id: str = Depends(get_current_user_id),
    project_service: ProjectService = Depends(get_project_service),
) -> Project:
    """Get one project."""
    return await project_service.get_project(user_id, project_id)


@router.put("/{project_id}", response_model=ProjectMutationResult, status_code=202)
async def request_update(
    project_id: str,
    user_id: str = Depends(get_current_user_id),
    project_service: ProjectService = Depends(get_project_service),
) -> ProjectMutationResult:
    """Queue a refresh from GitHub. Poll the project to see new numbers."""
    return await project_service.request_update(user_id, project_id)


@router.delete("/{project_id}", status_code=204)
async def delete_project(
    project_id: str,
    user_id: str = Depends(get_current_user_id),
    project_service: ProjectService = Depends(get_project_service),
) -> Response:
    """Stop tracking a project."""
    await project_service.delete_project(user_id, project_id)
    return Response(status_code=204)

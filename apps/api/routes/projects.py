"""Project routes — create, list, get, delete, save/rebuild, build history, restore.

All routes are protected — require a valid JWT token.
Users can only access their OWN projects.
"""

import uuid

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from logging import getLogger

from apps.api.auth import get_current_user
from apps.api.config import settings
from apps.api.database import get_db
from apps.api.dependencies import get_build_pipeline, get_object_storage
from apps.api.exceptions import (
    ForbiddenException,
    InfrastructureError,
    NotFoundException,
    PagewrightException,
)
from apps.api.models.build import BuildStatus
from apps.api.models.project import Project
from apps.api.models.user import User
from apps.api.repositories import build_repo, project_file_repo, project_repo
from apps.api.schemas.build import (
    BuildListResponse,
    BuildResponse,
    ProjectFileResponse,
    ProjectFilesResponse,
    SaveRequest,
    SaveResponse,
)
from apps.api.schemas.project import (
    ProjectCreate,
    ProjectDetailResponse,
    ProjectListResponse,
    ProjectResponse,
)
from apps.api.services.build_pipeline import BuildPipeline, merge_with_latest
from apps.api.services.build_store import legacy_locator
from apps.api.services.materializer import SourceFile, TEMPLATES
from apps.api.services.object_storage import ObjectStorage

router = APIRouter(prefix="/projects", tags=["projects"])

logger = getLogger(__name__)


# ── Helper ────────────────────────────────────────────

def _preview_url(project: Project) -> str:
    return f"{settings.preview_route_prefix}/{project.owner_id}/{project.id}"


async def _get_user_project(
    project_id: uuid.UUID,
    current_user: User,
    db: AsyncSession,
) -> Project:
    """Fetch a project and verify the current user owns it."""
    project = await project_repo.get_with_active_build(db, project_id)
    if not project:
        raise NotFoundException("Project", str(project_id))
    if project.owner_id != current_user.id:
        raise ForbiddenException("You don't have access to this project")
    return project


def _project_to_detail(project: Project) -> ProjectDetailResponse:
    active = project.active_build
    return ProjectDetailResponse(
        id=project.id,
        created_at=project.created_at,
        updated_at=project.updated_at,
        name=project.name,
        description=project.description,
        template=project.template,
        owner_id=project.owner_id,
        build_counter=project.build_counter,
        active_build_id=project.active_build_id,
        active_build=BuildResponse.model_validate(active) if active else None,
        preview_url=_preview_url(project) if active else None,
    )


# ── Routes ────────────────────────────────────────────

@router.post("", response_model=ProjectResponse, status_code=201)
async def create_project(
    body: ProjectCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Create an empty project. Its first save produces build v1.

    Example:
        POST /projects
        { "name": "coffee-shop", "description": "A landing page for a coffee shop" }
    """
    if body.template not in TEMPLATES:
        raise PagewrightException(
            f"Unknown template '{body.template}'",
            status_code=400,
            details={"available": sorted(TEMPLATES)},
        )
    project = await project_repo.create(
        db,
        name=body.name,
        description=body.description,
        template=body.template,
        owner_id=current_user.id,
    )
    return ProjectResponse.model_validate(project)


@router.get("", response_model=ProjectListResponse)
async def list_projects(
    skip: int = Query(default=0, ge=0, description="Number of projects to skip"),
    limit: int = Query(default=20, ge=1, le=100, description="Max projects to return"),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """List all projects owned by the current user.

    Supports pagination:
        GET /projects?skip=0&limit=20   → first 20 projects
        GET /projects?skip=20&limit=20  → next 20 projects
    """
    projects = await project_repo.get_by_owner(db, current_user.id, skip=skip, limit=limit)
    total = await project_repo.count_by_owner(db, current_user.id)

    return ProjectListResponse(
        projects=[ProjectResponse.model_validate(p) for p in projects],
        total=total,
    )


@router.get("/{project_id}", response_model=ProjectDetailResponse)
async def get_project(
    project_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get a project with the build its preview currently serves.

    Returns 404 if not found, 403 if you don't own it.
    """
    project = await _get_user_project(project_id, current_user, db)
    return _project_to_detail(project)


@router.delete("/{project_id}", status_code=204)
async def delete_project(
    project_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    storage: ObjectStorage = Depends(get_object_storage),
):
    """Delete a project, its build history and every published artifact.

    Returns 204 No Content on success (no response body).
    """
    project = await _get_user_project(project_id, current_user, db)
    prefix = legacy_locator(project.owner_id, project.id)

    await project_repo.delete(db, project)

    # Rows are gone; leftover objects are unreachable, so a storage hiccup is not fatal
    try:
        await storage.delete_prefix(prefix)
    except InfrastructureError as e:
        logger.warning("Artifact cleanup failed for %s (objects left behind): %s", prefix, e)


@router.post("/{project_id}/save", response_model=SaveResponse)
async def save_project(
    project_id: uuid.UUID,
    body: SaveRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    pipeline: BuildPipeline = Depends(get_build_pipeline),
):
    """Rebuild the project with edited files and publish a new version.

    Submitted files are merged over the latest saved source tree, built in a
    fresh sandbox and published as build v<n+1>. Progress is published on the
    status channel under body.request_id (or this request's X-Request-ID).

    Errors:
        422 — typecheck/compile failed, details carry the diagnostics
        500 — sandbox, install or storage failure
    """
    project = await _get_user_project(project_id, current_user, db)
    request_id = body.request_id or getattr(request.state, "request_id", None)

    edits = [SourceFile(path=f.path, content=f.content) for f in body.files]
    files = await merge_with_latest(db, project.id, edits)

    result = await pipeline.run(
        db,
        project,
        current_user.id,
        files,
        prompt=project.description or "",
        request_id=request_id,
    )
    return SaveResponse(**result.to_dict())


@router.get("/{project_id}/files", response_model=ProjectFilesResponse)
async def get_project_files(
    project_id: uuid.UUID,
    build_version: int | None = Query(default=None, ge=1, description="Source tree of a specific build"),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Source files of a project.

    Without build_version: the newest content of every path.
    With build_version: exactly the tree that build was made from.
    """
    project = await _get_user_project(project_id, current_user, db)

    if build_version is not None:
        build = await build_repo.get_by_version(db, project.id, build_version)
        if build is None:
            raise NotFoundException("Build", f"v{build_version}")
        rows = await project_file_repo.get_by_build(db, build.id)
    else:
        rows = await project_file_repo.get_latest(db, project.id)

    return ProjectFilesResponse(
        files=[ProjectFileResponse.model_validate(r) for r in rows],
        build_version=build_version,
    )


@router.get("/{project_id}/builds", response_model=BuildListResponse)
async def list_builds(
    project_id: uuid.UUID,
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Build history, newest version first."""
    project = await _get_user_project(project_id, current_user, db)
    builds = await build_repo.list_by_project(db, project.id, skip=skip, limit=limit)
    return BuildListResponse(
        builds=[BuildResponse.model_validate(b) for b in builds],
        active_build_id=project.active_build_id,
    )


@router.post("/{project_id}/builds/{version}/restore", response_model=ProjectDetailResponse)
async def restore_build(
    project_id: uuid.UUID,
    version: int,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Point the project's preview back at an earlier build.

    Nothing is rebuilt or copied: the old build is still at its own locator.
    The next successful save becomes the head again.
    """
    project = await _get_user_project(project_id, current_user, db)
    build = await build_repo.get_by_version(db, project.id, version)
    if build is None:
        raise NotFoundException("Build", f"v{version}")
    if build.status != BuildStatus.COMPLETED:
        raise PagewrightException(
            f"Build v{version} is {build.status.value} and cannot be restored",
            status_code=409,
            details={"version": version, "status": build.status.value},
        )

    await build_repo.set_active(db, project, build)
    logger.info("Project %s restored to build v%d", project.id, version)

    project = await project_repo.get_with_active_build(db, project.id)
    return _project_to_detail(project)

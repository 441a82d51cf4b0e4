"""Preview route — serves a project's published build to the browser.

Not authenticated: previews are embedded in iframes and shared by link.
The project id is an unguessable UUID and must belong to the user id in
the path.

    GET /preview/{user_id}/{project_id}?path=assets/app.js&t=<cachebust>&v=<version>
"""

import uuid
from logging import getLogger

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession

from apps.api.config import settings
from apps.api.database import get_db
from apps.api.dependencies import get_preview_proxy
from apps.api.exceptions import NotFoundException, PagewrightException
from apps.api.models.build import BuildStatus
from apps.api.repositories import build_repo, project_repo
from apps.api.services.build_store import legacy_locator
from apps.api.services.preview_proxy import PreviewProxy

router = APIRouter(prefix=settings.preview_route_prefix, tags=["preview"])

logger = getLogger(__name__)


def _parse_uuid(value: str, resource: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        raise NotFoundException(resource, value)


async def resolve_locator(
    db: AsyncSession, user_id: str, project_id: str, version: int | None = None
) -> str:
    """Which storage prefix a preview request reads from.

    1. ?v=<n> → that build, if it completed
    2. the project's head build (latest, or the one restored)
    3. the newest completed build, if no head is set
    4. the unversioned prefix of projects published before versioning
    """
    owner_id = _parse_uuid(user_id, "User")
    project = await project_repo.get_with_active_build(db, _parse_uuid(project_id, "Project"))
    if project is None or project.owner_id != owner_id:
        raise NotFoundException("Project", project_id)

    if version is not None:
        build = await build_repo.get_by_version(db, project.id, version)
        if build is None or build.status != BuildStatus.COMPLETED or not build.storage_locator:
            raise NotFoundException("Build", f"v{version}")
        return build.storage_locator

    head = project.active_build
    if head is not None and head.status == BuildStatus.COMPLETED and head.storage_locator:
        return head.storage_locator

    latest = await build_repo.get_latest_completed(db, project.id)
    if latest is not None and latest.storage_locator:
        return latest.storage_locator

    return legacy_locator(project.owner_id, project.id)


@router.get("/{user_id}/{project_id}")
async def serve_preview(
    user_id: str,
    project_id: str,
    path: str | None = Query(default=None, description="File inside the build, default index.html"),
    t: str | None = Query(default=None, description="Cache-busting token, carried into rewritten URLs"),
    v: int | None = Query(default=None, ge=1, description="Serve a specific build version"),
    db: AsyncSession = Depends(get_db),
    proxy: PreviewProxy = Depends(get_preview_proxy),
):
    """Serve one file of a build, rewritten so it works under this route.

    Unknown non-asset paths get index.html (client-side routing);
    unknown asset paths are 404.
    """
    try:
        locator = await resolve_locator(db, user_id, project_id, v)
        asset = await proxy.serve(
            user_id,
            project_id,
            requested_path=path,
            locator=locator,
            cache_bust=t,
            version=v,
        )
    except PagewrightException:
        raise
    except Exception:
        logger.exception("Preview failed for %s/%s path=%s", user_id, project_id, path)
        return JSONResponse(
            status_code=500,
            content={"error": {"message": "Failed to serve preview", "details": {}}},
        )

    return Response(content=asset.body, media_type=asset.content_type, headers=asset.headers)

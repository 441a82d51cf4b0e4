"""Project schemas for request validation and response serialization."""

import uuid

from pydantic import BaseModel, Field

from apps.api.schemas.base import BaseResponse
from apps.api.schemas.build import BuildResponse


# ── Request Schemas ────────────────────────────────────

class ProjectCreate(BaseModel):
    """Data to create a project. Code generation fills it in afterwards."""
    name: str = Field(min_length=1, max_length=255)
    description: str | None = Field(default=None, description="The prompt the app is generated from")
    template: str = Field(default="vite-react", description="Project template, e.g. vite-react")


# ── Response Schemas ───────────────────────────────────

class ProjectResponse(BaseResponse):
    """Project data returned by the API."""
    name: str
    description: str | None = None
    template: str
    owner_id: uuid.UUID
    build_counter: int
    active_build_id: uuid.UUID | None = None


class ProjectDetailResponse(ProjectResponse):
    """A project plus the build its preview currently serves."""
    active_build: BuildResponse | None = None
    preview_url: str | None = None


class ProjectListResponse(BaseModel):
    """Paginated list of projects."""
    projects: list[ProjectResponse]
    total: int

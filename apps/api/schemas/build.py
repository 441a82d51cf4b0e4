"""Build, source file and save schemas."""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from apps.api.models.build import BuildStatus
from apps.api.schemas.base import BaseResponse, BaseSchema


# ── Request Schemas ────────────────────────────────────

class FileInput(BaseModel):
    """One generated or edited source file."""
    path: str = Field(min_length=1, max_length=500, description="Relative path, e.g. src/App.tsx")
    content: str

    @field_validator("path")
    @classmethod
    def reject_traversal(cls, value: str) -> str:
        if ".." in value.replace("\\", "/").split("/"):
            raise ValueError("path must stay inside the project")
        return value


class SaveRequest(BaseModel):
    """Files to (re)build. Paths not listed keep their latest saved content."""
    files: list[FileInput] = Field(min_length=1)
    request_id: str | None = Field(default=None, description="Status channel id to publish progress under")


# ── Response Schemas ───────────────────────────────────

class BuildResponse(BaseResponse):
    """One versioned build of a project."""
    project_id: uuid.UUID
    version: int
    status: BuildStatus
    build_hash: str | None = None
    storage_locator: str | None = None
    has_issues: bool
    error: str | None = None
    finished_at: datetime | None = None


class BuildListResponse(BaseModel):
    builds: list[BuildResponse]
    active_build_id: uuid.UUID | None = None


class SaveResponse(BaseModel):
    """Result of a successful save. Field names match what the editor expects."""
    success: bool = True
    url: str
    buildHash: str
    hasIssues: bool = False
    version: int


class ProjectFileResponse(BaseSchema):
    path: str
    content: str
    size: int
    build_id: uuid.UUID | None = None


class ProjectFilesResponse(BaseModel):
    files: list[ProjectFileResponse]
    build_version: int | None = None

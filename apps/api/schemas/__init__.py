from apps.api.schemas.base import BaseSchema, BaseResponse
from apps.api.schemas.build import (
    FileInput, SaveRequest, BuildResponse, BuildListResponse, SaveResponse,
    ProjectFileResponse, ProjectFilesResponse,
)
from apps.api.schemas.project import ProjectCreate, ProjectResponse, ProjectDetailResponse, ProjectListResponse
from apps.api.schemas.status import StatusUpdateResponse, StatusHistoryResponse


__all__ = [
    # Base
    "BaseSchema", "BaseResponse",
    # Build
    "FileInput", "SaveRequest", "BuildResponse", "BuildListResponse", "SaveResponse",
    "ProjectFileResponse", "ProjectFilesResponse",
    # Project
    "ProjectCreate", "ProjectResponse", "ProjectDetailResponse", "ProjectListResponse",
    # Status
    "StatusUpdateResponse", "StatusHistoryResponse",
]

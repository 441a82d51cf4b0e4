from apps.api.models.base import BaseModel
from apps.api.models.user import User
from apps.api.models.project import Project
from apps.api.models.build import Build, BuildStatus
from apps.api.models.project_file import ProjectFile

__all__ = [
    "BaseModel",
    "User",
    "Project",
    "Build", "BuildStatus",
    "ProjectFile",
]

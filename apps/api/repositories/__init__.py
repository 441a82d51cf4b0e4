from apps.api.repositories.base import BaseRepository
from apps.api.repositories.user import UserRepository, user_repo
from apps.api.repositories.project import ProjectRepository, project_repo
from apps.api.repositories.build import BuildRepository, build_repo
from apps.api.repositories.project_file import ProjectFileRepository, project_file_repo

__all__ = [
    "BaseRepository",
    "UserRepository", "user_repo",
    "ProjectRepository", "project_repo",
    "BuildRepository", "build_repo",
    "ProjectFileRepository", "project_file_repo",
]

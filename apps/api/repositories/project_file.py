"""Source snapshot repository — the file tree behind each build."""

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from apps.api.models.project_file import ProjectFile
from apps.api.repositories.base import BaseRepository


class ProjectFileRepository(BaseRepository[ProjectFile]):
    def __init__(self):
        super().__init__(ProjectFile)

    async def add_snapshot(
        self,
        db: AsyncSession,
        project_id: uuid.UUID,
        build_id: uuid.UUID,
        files: list[tuple[str, str]],
    ) -> int:
        """Insert one row per (path, content). Returns the number of rows written."""
        db.add_all(
            ProjectFile(
                project_id=project_id,
                build_id=build_id,
                path=path,
                content=content,
                size=len(content.encode("utf-8")),
            )
            for path, content in files
        )
        await db.commit()
        return len(files)

    async def get_by_build(self, db: AsyncSession, build_id: uuid.UUID) -> list[ProjectFile]:
        result = await db.execute(
            select(ProjectFile)
            .where(ProjectFile.build_id == build_id)
            .order_by(ProjectFile.path)
        )
        return list(result.scalars().all())

    async def get_latest(self, db: AsyncSession, project_id: uuid.UUID) -> list[ProjectFile]:
        """Newest row for every path the project has ever had.

        Postgres DISTINCT ON keeps the first row per path in the ORDER BY,
        which is the most recent one.
        """
        result = await db.execute(
            select(ProjectFile)
            .where(ProjectFile.project_id == project_id)
            .distinct(ProjectFile.path)
            .order_by(ProjectFile.path, ProjectFile.created_at.desc())
        )
        return list(result.scalars().all())


# Singleton instance
project_file_repo = ProjectFileRepository()

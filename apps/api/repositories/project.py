"""Project repository with project-specific database operations."""

import uuid

from sqlalchemy import select, func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from apps.api.models.project import Project
from apps.api.repositories.base import BaseRepository


class ProjectRepository(BaseRepository[Project]):
    def __init__(self):
        super().__init__(Project)

    async def get_by_owner(
        self, db: AsyncSession, owner_id: uuid.UUID, skip: int = 0, limit: int = 100
    ) -> list[Project]:
        """Get all projects owned by a specific user."""
        result = await db.execute(
            select(Project)
            .where(Project.owner_id == owner_id)
            .offset(skip)
            .limit(limit)
            .order_by(Project.created_at.desc())
        )
        return list(result.scalars().all())

    async def count_by_owner(self, db: AsyncSession, owner_id: uuid.UUID) -> int:
        """Count projects owned by a user."""
        result = await db.execute(
            select(func.count()).select_from(Project).where(Project.owner_id == owner_id)
        )
        return result.scalar_one()

    async def get_with_active_build(self, db: AsyncSession, project_id: uuid.UUID) -> Project | None:
        """Get a project with the build its preview currently points at."""
        result = await db.execute(
            select(Project)
            .where(Project.id == project_id)
            .options(selectinload(Project.active_build))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def next_build_version(self, db: AsyncSession, project_id: uuid.UUID) -> int:
        """Atomically bump and return the project's build counter.

        A single UPDATE ... RETURNING, so two concurrent saves on the same
        project always get distinct versions. Not committed here: the caller
        commits it together with the Build row that uses the number.
        """
        result = await db.execute(
            update(Project)
            .where(Project.id == project_id)
            .values(build_counter=Project.build_counter + 1)
            .returning(Project.build_counter)
        )
        version = result.scalar_one_or_none()
        if version is None:
            raise LookupError(f"Project {project_id} does not exist")
        return version


# Singleton instance
project_repo = ProjectRepository()

"""Shared repository plumbing.

Builds and snapshot rows are append-only and have their own write paths
(BuildRepository.create_building/finalize, ProjectFileRepository.add_snapshot).
What is left here is what every table needs: lookup by id, insert, delete.
"""

import uuid
from typing import Generic, TypeVar, Type

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from apps.api.models.base import BaseModel

ModelType = TypeVar("ModelType", bound=BaseModel)


class BaseRepository(Generic[ModelType]):
    """Repository for one mapped model. Subclasses are used as module singletons:

        class ProjectRepository(BaseRepository[Project]):
            def __init__(self):
                super().__init__(Project)

        project_repo = ProjectRepository()
    """

    def __init__(self, model: Type[ModelType]):
        self.model = model

    async def get_by_id(self, db: AsyncSession, id: uuid.UUID) -> ModelType | None:
        result = await db.execute(select(self.model).where(self.model.id == id))
        return result.scalar_one_or_none()

    async def create(self, db: AsyncSession, **kwargs) -> ModelType:
        """Insert a row and return it with server defaults (created_at, counters) loaded."""
        instance = self.model(**kwargs)
        db.add(instance)
        await db.commit()
        await db.refresh(instance)
        return instance

    async def delete(self, db: AsyncSession, instance: ModelType) -> None:
        # Child rows (builds, project_files) go with ON DELETE CASCADE
        await db.delete(instance)
        await db.commit()

"""Build repository — versioned, append-only build records.

A build row is created in BUILDING state, then finalized exactly once.
Nothing here ever deletes a build: a new save makes a new row and the old
ones stay addressable by version.
"""

import uuid
from datetime import datetime

from sqlalchemy import select, update, or_, func
from sqlalchemy.ext.asyncio import AsyncSession

from apps.api.exceptions import BuildAlreadyFinalized
from apps.api.models.build import Build, BuildStatus
from apps.api.models.project import Project
from apps.api.repositories.base import BaseRepository
from apps.api.repositories.project import project_repo


class BuildRepository(BaseRepository[Build]):
    def __init__(self):
        super().__init__(Build)

    async def create_building(
        self, db: AsyncSession, project_id: uuid.UUID, user_id: uuid.UUID
    ) -> Build:
        """Reserve the next version for a project and insert a BUILDING row.

        The counter bump and the insert share one transaction; the unique
        (project_id, version) constraint backs up the atomic increment.
        """
        version = await project_repo.next_build_version(db, project_id)
        build = Build(
            project_id=project_id,
            user_id=user_id,
            version=version,
            status=BuildStatus.BUILDING,
        )
        db.add(build)
        await db.commit()
        await db.refresh(build)
        return build

    async def finalize(
        self,
        db: AsyncSession,
        build_id: uuid.UUID,
        status: BuildStatus,
        build_hash: str | None = None,
        storage_locator: str | None = None,
        has_issues: bool = False,
        error: str | None = None,
    ) -> Build:
        """Move a build out of BUILDING. Raises BuildAlreadyFinalized on a second call.

        The WHERE status = 'building' guard makes this a compare-and-set, so
        two racing finalizers cannot both win.
        """
        if status == BuildStatus.BUILDING:
            raise ValueError("finalize() needs a terminal status")

        result = await db.execute(
            update(Build)
            .where(Build.id == build_id, Build.status == BuildStatus.BUILDING)
            .values(
                status=status,
                build_hash=build_hash,
                storage_locator=storage_locator,
                has_issues=has_issues,
                error=error,
                finished_at=func.now(),
            )
            .returning(Build.id)
        )
        if result.scalar_one_or_none() is None:
            await db.rollback()
            raise BuildAlreadyFinalized(str(build_id))
        await db.commit()

        refreshed = await db.execute(
            select(Build)
            .where(Build.id == build_id)
            .execution_options(populate_existing=True)
        )
        return refreshed.scalar_one()

    async def promote_if_newer(self, db: AsyncSession, build: Build) -> bool:
        """Point the project head at this build unless a newer one already won.

        Two concurrent saves can both complete; whichever has the higher
        version stays the default preview. Returns True if promoted.
        """
        head_version = (
            select(Build.version)
            .where(Build.id == Project.active_build_id)
            .scalar_subquery()
        )
        result = await db.execute(
            update(Project)
            .where(
                Project.id == build.project_id,
                or_(Project.active_build_id.is_(None), head_version < build.version),
            )
            .values(active_build_id=build.id)
            .returning(Project.id)
        )
        promoted = result.scalar_one_or_none() is not None
        await db.commit()
        return promoted

    async def set_active(self, db: AsyncSession, project: Project, build: Build) -> Project:
        """Pin the project head to a specific build (used by restore)."""
        project.active_build_id = build.id
        await db.commit()
        await db.refresh(project)
        return project

    async def list_by_project(
        self, db: AsyncSession, project_id: uuid.UUID, skip: int = 0, limit: int = 50
    ) -> list[Build]:
        """Build history, newest version first."""
        result = await db.execute(
            select(Build)
            .where(Build.project_id == project_id)
            .order_by(Build.version.desc())
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_by_version(
        self, db: AsyncSession, project_id: uuid.UUID, version: int
    ) -> Build | None:
        result = await db.execute(
            select(Build).where(Build.project_id == project_id, Build.version == version)
        )
        return result.scalar_one_or_none()

    async def get_latest_completed(self, db: AsyncSession, project_id: uuid.UUID) -> Build | None:
        """Highest-version completed build, used when the head pointer is unset."""
        result = await db.execute(
            select(Build)
            .where(Build.project_id == project_id, Build.status == BuildStatus.COMPLETED)
            .order_by(Build.version.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_stale_building(self, db: AsyncSession, older_than: datetime) -> list[Build]:
        """Builds still BUILDING that were created before older_than (abandoned by a dead worker)."""
        result = await db.execute(
            select(Build)
            .where(Build.status == BuildStatus.BUILDING, Build.created_at < older_than)
            .order_by(Build.created_at)
        )
        return list(result.scalars().all())


# Singleton instance
build_repo = BuildRepository()

"""Build store — versioned build records plus their artifacts in object storage.

Every build gets its own locator "{user_id}/{project_id}/v{version}", so a
new save never overwrites an older build's files. A locator is only written
to the build row by finalize(), after every object has been uploaded: a row
either points at a complete artifact or at nothing.
"""

import base64
import hashlib
import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from apps.api.models.build import Build, BuildStatus
from apps.api.repositories.build import build_repo
from apps.api.repositories.project_file import project_file_repo
from apps.api.services.build_runner import ArtifactFile
from apps.api.services.materializer import SourceFile
from apps.api.services.object_storage import ObjectStorage, guess_content_type

logger = logging.getLogger(__name__)


def compute_build_hash(files: list[ArtifactFile]) -> str:
    """sha256 over the artifact set, independent of collection order.

    Files are sorted by path and serialized as "path:base64(content)" lines,
    so identical output from two builds always hashes the same.
    """
    lines = [
        f"{f.relative_path}:{base64.b64encode(f.content).decode('ascii')}"
        for f in sorted(files, key=lambda f: f.relative_path)
    ]
    return hashlib.sha256("\n".join(lines).encode("utf-8")).hexdigest()


def artifact_locator(user_id: uuid.UUID | str, project_id: uuid.UUID | str, version: int) -> str:
    return f"{user_id}/{project_id}/v{version}"


def legacy_locator(user_id: uuid.UUID | str, project_id: uuid.UUID | str) -> str:
    """Unversioned prefix used by projects published before builds were versioned."""
    return f"{user_id}/{project_id}"


class BuildStore:
    def __init__(self, storage: ObjectStorage):
        self.storage = storage

    async def create_build_record(
        self, db: AsyncSession, project_id: uuid.UUID, user_id: uuid.UUID
    ) -> Build:
        build = await build_repo.create_building(db, project_id, user_id)
        logger.info("Build %s created: project=%s version=%d", build.id, project_id, build.version)
        return build

    async def persist_source_snapshot(
        self, db: AsyncSession, build: Build, files: list[SourceFile]
    ) -> int:
        """Store the source tree behind a build. Binary files are not snapshotted."""
        rows = []
        for source in files:
            if isinstance(source.content, bytes):
                try:
                    content = source.content.decode("utf-8")
                except UnicodeDecodeError:
                    logger.debug("Skipping binary file in snapshot: %s", source.path)
                    continue
            else:
                content = source.content
            rows.append((source.path, content))
        return await project_file_repo.add_snapshot(db, build.project_id, build.id, rows)

    async def upload_artifact(
        self,
        user_id: uuid.UUID,
        project_id: uuid.UUID,
        version: int,
        files: list[ArtifactFile],
    ) -> tuple[str, str]:
        """Upload every artifact file under a fresh versioned prefix.

        Returns (locator, build_hash). Any failed upload raises StorageError;
        the caller must then finalize the build as failed.
        """
        locator = artifact_locator(user_id, project_id, version)
        for artifact in files:
            await self.storage.upload(
                f"{locator}/{artifact.relative_path}",
                artifact.content,
                content_type=guess_content_type(artifact.relative_path),
            )
        build_hash = compute_build_hash(files)
        logger.info("Uploaded %d files to %s (hash %s)", len(files), locator, build_hash[:12])
        return locator, build_hash

    async def finalize(
        self,
        db: AsyncSession,
        build_id: uuid.UUID,
        status: BuildStatus,
        locator: str | None = None,
        build_hash: str | None = None,
        has_issues: bool = False,
        error: str | None = None,
    ) -> Build:
        build = await build_repo.finalize(
            db,
            build_id,
            status,
            build_hash=build_hash,
            storage_locator=locator,
            has_issues=has_issues,
            error=error,
        )
        logger.info("Build %s finalized: %s", build_id, status.value)
        return build

    async def promote(self, db: AsyncSession, build: Build) -> bool:
        promoted = await build_repo.promote_if_newer(db, build)
        if not promoted:
            logger.info("Build v%d not promoted; a newer build is already the head", build.version)
        return promoted

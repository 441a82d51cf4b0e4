"""Build pipeline — one save or generation, from source files to a live preview.

Flow:
    status → sandbox_session() → materialize → build → (sandbox closed)
           → create build row → snapshot sources → upload artifact
           → finalize(completed) → promote to project head

The Build row is only created once the sandbox produced a servable artifact,
so a failed install or a compile error leaves no trace in the build history.
From the moment the row exists, any failure finalizes it as FAILED before
the error propagates: no build is ever left in BUILDING.
"""

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from apps.api.config import settings
from apps.api.exceptions import BuildAlreadyFinalized, CodeError, InfrastructureError
from apps.api.models.build import Build, BuildStatus
from apps.api.models.project import Project
from apps.api.repositories.project_file import project_file_repo
from apps.api.services.build_runner import (
    ArtifactLimitExceeded,
    BuildOutcome,
    BuildRunner,
    CompileFailed,
    InstallFailed,
    NoEntryDocument,
    RepairHook,
    Success,
    TypecheckFailed,
)
from apps.api.services.build_store import BuildStore
from apps.api.services.materializer import (
    MaterializeConfig,
    ProjectMaterializer,
    SourceFile,
    get_template,
    normalize_source_path,
)
from apps.api.services.object_storage import ObjectStorage
from apps.api.services.sandbox import SandboxProvider, sandbox_session
from apps.api.services.status_channel import StatusChannel

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    build_id: uuid.UUID
    version: int
    url: str
    build_hash: str
    has_issues: bool
    promoted: bool

    def to_dict(self) -> dict:
        return {
            "success": True,
            "url": self.url,
            "buildHash": self.build_hash,
            "hasIssues": self.has_issues,
            "version": self.version,
        }


def raise_for_outcome(outcome: BuildOutcome) -> Success:
    """Turn a non-success BuildOutcome into the matching exception."""
    if isinstance(outcome, Success):
        return outcome
    if isinstance(outcome, InstallFailed):
        raise InfrastructureError(
            "Dependency installation failed",
            details={"stage": "install", "output": outcome.reason},
        )
    if isinstance(outcome, TypecheckFailed):
        raise CodeError("typecheck", "Type check failed", diagnostics=outcome.diagnostics)
    if isinstance(outcome, CompileFailed):
        raise CodeError("compile", "Build failed", diagnostics=outcome.reason)
    if isinstance(outcome, NoEntryDocument):
        raise InfrastructureError(
            "Build produced no entry document",
            details={"stage": "collect", "found": outcome.found[:20]},
        )
    if isinstance(outcome, ArtifactLimitExceeded):
        raise InfrastructureError(
            f"Build produced {outcome.count} files, more than the limit of {outcome.limit}",
            details={"stage": "collect", "count": outcome.count, "limit": outcome.limit},
        )
    raise InfrastructureError(f"Unknown build outcome: {type(outcome).__name__}")


async def merge_with_latest(
    db: AsyncSession, project_id: uuid.UUID, edits: list[SourceFile]
) -> list[SourceFile]:
    """Overlay edited files on the project's most recent source tree.

    Saves usually send only the files that changed; the build needs all of them.
    """
    merged: dict[str, SourceFile] = {
        row.path: SourceFile(path=row.path, content=row.content)
        for row in await project_file_repo.get_latest(db, project_id)
    }
    for edit in edits:
        path = normalize_source_path(edit.path)
        merged[path] = SourceFile(path=path, content=edit.content)
    return [merged[path] for path in sorted(merged)]


class BuildPipeline:
    def __init__(
        self,
        provider: SandboxProvider,
        storage: ObjectStorage,
        status: StatusChannel,
        materializer: ProjectMaterializer | None = None,
        runner: BuildRunner | None = None,
        route_prefix: str | None = None,
    ):
        self.provider = provider
        self.store = BuildStore(storage)
        self.status = status
        self.materializer = materializer or ProjectMaterializer()
        self.runner = runner or BuildRunner()
        self.route_prefix = (route_prefix or settings.preview_route_prefix).rstrip("/")

    async def _publish(
        self, request_id: str | None, step: str, message: str, progress: int | None = None
    ) -> None:
        # Progress is best-effort; a status store outage must not fail a build
        try:
            await self.status.publish(request_id, step, message, progress)
        except Exception:
            logger.warning("Could not publish status %s for %s", step, request_id, exc_info=True)

    def preview_url(self, user_id: uuid.UUID, project_id: uuid.UUID, version: int) -> str:
        return f"{self.route_prefix}/{user_id}/{project_id}?v={version}"

    async def run(
        self,
        db: AsyncSession,
        project: Project,
        user_id: uuid.UUID,
        files: list[SourceFile],
        prompt: str = "",
        request_id: str | None = None,
        repair: RepairHook | None = None,
    ) -> PipelineResult:
        template = get_template(project.template)

        await self._publish(request_id, "sandbox", "Creating sandbox", 5)
        try:
            async with sandbox_session(self.provider) as session:
                await self._publish(request_id, "files", f"Writing {len(files)} project files", 15)
                await self.materializer.materialize(
                    session, template.name, MaterializeConfig(files=files, prompt=prompt)
                )
                await self._publish(request_id, "build", "Installing dependencies and building", 30)
                outcome = await self.runner.build(session, template, repair=repair)
            success = raise_for_outcome(outcome)
        except (InfrastructureError, CodeError) as e:
            await self._publish(request_id, "error", e.message)
            raise

        await self._publish(request_id, "upload", "Publishing build", 80)
        build = await self.store.create_build_record(db, project.id, user_id)
        try:
            await self.store.persist_source_snapshot(db, build, files)
            locator, build_hash = await self.store.upload_artifact(
                user_id, project.id, build.version, success.artifact_files
            )
            build = await self.store.finalize(
                db,
                build.id,
                BuildStatus.COMPLETED,
                locator=locator,
                build_hash=build_hash,
                has_issues=success.has_issues,
            )
        except Exception as e:
            await self._mark_failed(db, build, e)
            await self._publish(request_id, "error", "Publishing the build failed")
            raise

        promoted = await self.store.promote(db, build)
        await self._publish(request_id, "complete", f"Build v{build.version} is live", 100)

        return PipelineResult(
            build_id=build.id,
            version=build.version,
            url=self.preview_url(user_id, project.id, build.version),
            build_hash=build_hash,
            has_issues=success.has_issues,
            promoted=promoted,
        )

    async def _mark_failed(self, db: AsyncSession, build: Build, error: Exception) -> None:
        """Finalize as FAILED without hiding the error that got us here."""
        await db.rollback()
        try:
            await self.store.finalize(db, build.id, BuildStatus.FAILED, error=str(error)[:2000])
        except BuildAlreadyFinalized:
            logger.warning("Build %s was already finalized when marking it failed", build.id)
        except Exception:
            logger.exception("Could not mark build %s as failed", build.id)

"""Build runner — install → typecheck → compile → collect, inside one sandbox.

Each step runs only if the previous one succeeded. The process exit code
decides success. The one exception is the small allowlist in
TEXT_FAILURE_PATTERNS: toolchains that are known to print a real error and
still exit 0. Those patterns are checked in exactly one place,
`step_failed()`, and nowhere else.

Outcomes:
    Success(artifact_files, type_errors)   → publishable; has_issues if type errors remain
    InstallFailed(reason)                  → infrastructure, abort
    TypecheckFailed(diagnostics)           → code error, repairable
    CompileFailed(reason)                  → code error, repairable
    NoEntryDocument(found)                 → toolchain exited cleanly but produced nothing servable
    ArtifactLimitExceeded(count, limit)    → more output files than max_artifact_files, nothing collected
"""

import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from apps.api.config import settings
from apps.api.services.materializer import ProjectTemplate
from apps.api.services.sandbox import ExecResult, SandboxSession

logger = logging.getLogger(__name__)

# Diagnostics longer than this are cut from the front; the tail has the errors
MAX_DIAGNOSTIC_CHARS = 4000

TEXT_FAILURE_PATTERNS: dict[str, re.Pattern] = {
    # `tsc` piped through npx has been seen to report TS errors with exit 0
    "typecheck": re.compile(r"\berror TS\d+:"),
    # vite/rollup print these on some resolution failures before exiting 0
    "compile": re.compile(r"error during build|Rollup failed to resolve import"),
}


@dataclass
class ArtifactFile:
    relative_path: str
    content: bytes


class BuildOutcome:
    """Base class for the six possible results of BuildRunner.build()."""
    ok = False


@dataclass
class Success(BuildOutcome):
    artifact_files: list[ArtifactFile]
    type_errors: str = ""
    ok = True

    @property
    def has_issues(self) -> bool:
        return bool(self.type_errors)


@dataclass
class InstallFailed(BuildOutcome):
    reason: str


@dataclass
class TypecheckFailed(BuildOutcome):
    diagnostics: str


@dataclass
class CompileFailed(BuildOutcome):
    reason: str


@dataclass
class NoEntryDocument(BuildOutcome):
    found: list[str] = field(default_factory=list)


@dataclass
class ArtifactLimitExceeded(BuildOutcome):
    count: int
    limit: int


# Called with the session and the latest diagnostics; writes fixes into the
# sandbox and returns True if it changed anything worth re-checking.
RepairHook = Callable[[SandboxSession, str], Awaitable[bool]]


def tail(output: str, limit: int = MAX_DIAGNOSTIC_CHARS) -> str:
    output = output.strip()
    if len(output) <= limit:
        return output
    return "…" + output[-limit:]


def step_failed(stage: str, result: ExecResult) -> bool:
    """Exit code first; then the stage's documented text pattern, if it has one."""
    if result.exit_code != 0:
        return True
    pattern = TEXT_FAILURE_PATTERNS.get(stage)
    return bool(pattern and pattern.search(result.output))


class BuildRunner:
    def __init__(
        self,
        allow_type_errors: bool | None = None,
        max_repair_attempts: int | None = None,
        max_artifact_files: int | None = None,
    ):
        self.allow_type_errors = (
            settings.allow_type_errors if allow_type_errors is None else allow_type_errors
        )
        self.max_repair_attempts = (
            settings.max_repair_attempts if max_repair_attempts is None else max_repair_attempts
        )
        self.max_artifact_files = max_artifact_files or settings.max_artifact_files

    async def build(
        self,
        session: SandboxSession,
        template: ProjectTemplate,
        repair: RepairHook | None = None,
    ) -> BuildOutcome:
        # ── 1. Install ────────────────────────────────
        result = await session.run(template.install_command, timeout=settings.sandbox_install_timeout)
        if step_failed("install", result):
            logger.error("Dependency install failed (exit %d)", result.exit_code)
            return InstallFailed(reason=tail(result.output))

        # ── 2. Typecheck (with optional repair) ───────
        type_errors = await self._typecheck(session, template, repair)
        if type_errors and not self.allow_type_errors:
            return TypecheckFailed(diagnostics=type_errors)
        if type_errors:
            logger.warning("Type errors remain; compiling anyway")

        # ── 3. Compile ────────────────────────────────
        await session.run(f"rm -rf {template.build_dir}")
        result = await session.run(template.build_command, timeout=settings.sandbox_build_timeout)
        if step_failed("compile", result):
            logger.error("Compilation failed (exit %d)", result.exit_code)
            return CompileFailed(reason=tail(result.output))
        session.mark_built()

        # ── 4. Collect ────────────────────────────────
        paths = await session.list_files(template.build_dir)
        if template.entry_document not in paths:
            logger.error(
                "Build produced no %s (found %d files)", template.entry_document, len(paths)
            )
            return NoEntryDocument(found=paths)

        # A partial artifact is never published, so too many files fails the build
        if len(paths) > self.max_artifact_files:
            logger.error(
                "Artifact has %d files, limit is %d", len(paths), self.max_artifact_files
            )
            return ArtifactLimitExceeded(count=len(paths), limit=self.max_artifact_files)

        artifact_files = []
        for rel_path in paths:
            content = await session.read_file(f"{template.build_dir}/{rel_path}")
            artifact_files.append(ArtifactFile(relative_path=rel_path, content=content))

        logger.info("Collected %d artifact files", len(artifact_files))
        return Success(artifact_files=artifact_files, type_errors=type_errors)

    async def _typecheck(
        self,
        session: SandboxSession,
        template: ProjectTemplate,
        repair: RepairHook | None,
    ) -> str:
        """Run the type checker, repairing between attempts. Returns remaining diagnostics."""
        attempts = 0
        while True:
            result = await session.run(template.typecheck_command)
            if not step_failed("typecheck", result):
                return ""
            # A failed run with no output still counts as a failure
            diagnostics = tail(result.output) or (
                f"{template.typecheck_command} exited with {result.exit_code}"
            )
            if repair is None or attempts >= self.max_repair_attempts:
                return diagnostics
            attempts += 1
            logger.info("Typecheck failed; repair attempt %d/%d", attempts, self.max_repair_attempts)
            if not await repair(session, diagnostics):
                return diagnostics


# Singleton instance
build_runner = BuildRunner()

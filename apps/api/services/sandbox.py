"""Sandbox sessions — one disposable container per pipeline invocation.

This is the infrastructure edge of the build pipeline. It handles:
- Provisioning a fresh container from a known base image
- Writing source files into its workspace
- Running shell commands (combined stdout/stderr + exit code)
- Listing and downloading build outputs
- Destroying the container, always, exactly once

Nothing survives between invocations: every save/generation opens its own
session and the scoped helper `sandbox_session()` tears it down on exit,
whatever happened inside.

Architecture:
    BuildPipeline → sandbox_session() → SandboxSession → SandboxProvider → Docker Engine
"""

import asyncio
import io
import logging
import posixpath
import tarfile
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import Enum

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from apps.api.config import settings
from apps.api.exceptions import SandboxError

logger = logging.getLogger(__name__)

MANAGED_LABEL = "pagewright.managed"
CREATED_AT_LABEL = "pagewright.created_at"


@dataclass
class ExecResult:
    """Result of running a shell command inside a sandbox."""
    exit_code: int
    output: str  # stdout and stderr interleaved, as a terminal would show them

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class SandboxInfo:
    """A sandbox the provider knows about, used by the orphan reaper."""
    id: str
    created_at: float  # epoch seconds


class SandboxState(str, Enum):
    CREATED = "created"
    POPULATED = "populated"
    BUILT = "built"
    DESTROYED = "destroyed"


# ── Provider boundary ─────────────────────────────────

class SandboxProvider(ABC):
    """The six operations the pipeline needs from a compute sandbox.

    Implementations must return correct exit codes and keep written files
    for the lifetime of the sandbox. Nothing else is assumed.
    """

    @abstractmethod
    async def create(self, image: str, workspace: str) -> str:
        """Provision a sandbox and return its opaque handle."""
        ...

    @abstractmethod
    async def write_file(self, handle: str, path: str, data: bytes) -> None:
        ...

    @abstractmethod
    async def run(self, handle: str, command: str, workdir: str, timeout: int) -> ExecResult:
        ...

    @abstractmethod
    async def list_files(self, handle: str, root: str) -> list[str]:
        """Absolute paths of every regular file under root; empty if root does not exist."""
        ...

    @abstractmethod
    async def read_file(self, handle: str, path: str) -> bytes:
        ...

    @abstractmethod
    async def destroy(self, handle: str) -> None:
        ...

    async def list_managed(self) -> list[SandboxInfo]:
        """Sandboxes created by this service that still exist."""
        return []


class DockerSandboxProvider(SandboxProvider):
    """Docker-backed sandboxes.

    Every blocking Docker SDK call runs in a worker thread via
    asyncio.to_thread() so the event loop keeps serving previews.
    """

    def __init__(self, base_url: str | None = None):
        self._base_url = base_url or settings.docker_host
        self._client: docker.DockerClient | None = None

    def _get_client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.DockerClient(base_url=self._base_url)
        return self._client

    async def create(self, image: str, workspace: str) -> str:
        try:
            container = await asyncio.to_thread(self._create_container, image, workspace)
        except (DockerException, ImageNotFound) as e:
            raise SandboxError(f"Sandbox creation failed: {e}") from e
        return container.id

    async def write_file(self, handle: str, path: str, data: bytes) -> None:
        try:
            await asyncio.to_thread(self._put_file, handle, path, data)
        except DockerException as e:
            raise SandboxError(f"Failed to write {path}: {e}") from e

    async def run(self, handle: str, command: str, workdir: str, timeout: int) -> ExecResult:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._exec_in_container, handle, command, workdir),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Command timed out after %ds: %s", timeout, command)
            return ExecResult(exit_code=-1, output=f"Command timed out after {timeout} seconds")
        except DockerException as e:
            raise SandboxError(f"Failed to run command: {e}") from e

    async def list_files(self, handle: str, root: str) -> list[str]:
        # A root that was never created (e.g. no build output) lists as empty
        exists = await self.run(
            handle, f"test -d {root}", workdir="/", timeout=settings.sandbox_command_timeout
        )
        if not exists.ok:
            return []
        result = await self.run(
            handle, f"find {root} -type f", workdir="/", timeout=settings.sandbox_command_timeout
        )
        if not result.ok:
            raise SandboxError(f"Failed to list {root}: {result.output.strip()}")
        return [line for line in result.output.splitlines() if line.strip()]

    async def read_file(self, handle: str, path: str) -> bytes:
        try:
            return await asyncio.to_thread(self._get_file, handle, path)
        except NotFound as e:
            raise FileNotFoundError(path) from e
        except DockerException as e:
            raise SandboxError(f"Failed to read {path}: {e}") from e

    async def destroy(self, handle: str) -> None:
        await asyncio.to_thread(self._destroy_container, handle)

    async def list_managed(self) -> list[SandboxInfo]:
        return await asyncio.to_thread(self._list_managed)

    # ── Private helpers: blocking Docker calls ───────

    def _create_container(self, image: str, workspace: str):
        client = self._get_client()
        self._ensure_network()

        container = client.containers.run(
            image=image,
            command=["sleep", "infinity"],  # Keep the container alive for exec calls
            detach=True,
            working_dir=workspace,
            nano_cpus=settings.sandbox_cpu_count * 1_000_000_000,
            mem_limit=settings.sandbox_mem_limit,
            privileged=False,
            network=settings.sandbox_network,
            labels={
                MANAGED_LABEL: "true",
                CREATED_AT_LABEL: str(int(time.time())),
            },
        )
        logger.info("Sandbox container created: %s (%s)", container.short_id, image)
        return container

    def _put_file(self, handle: str, path: str, data: bytes) -> None:
        """Ship one file as a single-member tar; extraction creates parent dirs."""
        container = self._get_client().containers.get(handle)
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            info = tarfile.TarInfo(name=path.lstrip("/"))
            info.size = len(data)
            info.mtime = int(time.time())
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
        buffer.seek(0)
        if not container.put_archive("/", buffer.getvalue()):
            raise SandboxError(f"Sandbox rejected upload of {path}")

    def _get_file(self, handle: str, path: str) -> bytes:
        container = self._get_client().containers.get(handle)
        stream, _stat = container.get_archive(path)
        raw = b"".join(stream)
        with tarfile.open(fileobj=io.BytesIO(raw)) as tar:
            for member in tar.getmembers():
                if member.isfile():
                    extracted = tar.extractfile(member)
                    if extracted is not None:
                        return extracted.read()
        raise FileNotFoundError(path)

    def _exec_in_container(self, handle: str, command: str, workdir: str) -> ExecResult:
        container = self._get_client().containers.get(handle)
        exec_result = container.exec_run(
            cmd=["sh", "-c", command],
            workdir=workdir,
            demux=False,  # Keep stdout/stderr interleaved
        )
        output = (exec_result.output or b"").decode("utf-8", errors="replace")
        return ExecResult(exit_code=exec_result.exit_code, output=output)

    def _destroy_container(self, handle: str) -> None:
        try:
            container = self._get_client().containers.get(handle)
            container.remove(force=True)
            logger.info("Sandbox container removed: %s", handle[:12])
        except NotFound:
            logger.warning("Sandbox container %s already removed", handle[:12])

    def _list_managed(self) -> list[SandboxInfo]:
        containers = self._get_client().containers.list(
            all=True, filters={"label": f"{MANAGED_LABEL}=true"}
        )
        sandboxes = []
        for container in containers:
            created = container.labels.get(CREATED_AT_LABEL, "0")
            try:
                created_at = float(created)
            except ValueError:
                created_at = 0.0
            sandboxes.append(SandboxInfo(id=container.id, created_at=created_at))
        return sandboxes

    def _ensure_network(self) -> None:
        """Create the sandbox Docker network if it doesn't exist."""
        client = self._get_client()
        try:
            client.networks.get(settings.sandbox_network)
        except NotFound:
            try:
                client.networks.create(
                    settings.sandbox_network,
                    driver="bridge",
                    labels={MANAGED_LABEL: "true"},
                )
                logger.info("Created Docker network: %s", settings.sandbox_network)
            except APIError as e:
                # Another invocation created it between get() and create()
                if e.status_code != 409:
                    raise


# ── Session ───────────────────────────────────────────

class SandboxSession:
    """One open sandbox, exclusively owned by one pipeline invocation.

    Paths given to write_file/read_file/list_files are relative to the
    workspace root; anything resolving outside it is rejected.
    """

    def __init__(self, provider: SandboxProvider, handle: str, workspace_root: str):
        self._provider = provider
        self.id = handle
        self.workspace_root = workspace_root
        self.state = SandboxState.CREATED

    @classmethod
    async def open(
        cls,
        provider: SandboxProvider,
        image: str | None = None,
        workspace_root: str | None = None,
    ) -> "SandboxSession":
        workspace = workspace_root or settings.sandbox_workspace
        handle = await provider.create(image or settings.sandbox_image, workspace)
        logger.info("Sandbox session opened: %s", handle[:12])
        return cls(provider, handle, workspace)

    def _resolve(self, path: str) -> str:
        """Map a workspace-relative path to an absolute one inside the sandbox.

        Accepts "src/App.tsx", "./src/App.tsx" and "/workspace/src/App.tsx".
        Rejects "../../etc/passwd" and "/etc/shadow".
        """
        root = self.workspace_root
        if path.startswith(root):
            resolved = posixpath.normpath(path)
        else:
            resolved = posixpath.normpath(posixpath.join(root, path))
        if resolved != root and not resolved.startswith(root + "/"):
            raise ValueError(f"Path escapes the workspace: {path}")
        return resolved

    def _ensure_open(self) -> None:
        if self.state == SandboxState.DESTROYED:
            raise SandboxError(f"Sandbox {self.id[:12]} is already destroyed")

    async def write_file(self, path: str, content: bytes | str) -> None:
        self._ensure_open()
        data = content.encode("utf-8") if isinstance(content, str) else content
        await self._provider.write_file(self.id, self._resolve(path), data)
        if self.state == SandboxState.CREATED:
            self.state = SandboxState.POPULATED

    async def run(self, command: str, timeout: int | None = None) -> ExecResult:
        """Run a shell command with the workspace as working directory."""
        self._ensure_open()
        return await self._provider.run(
            self.id,
            command,
            workdir=self.workspace_root,
            timeout=timeout or settings.sandbox_command_timeout,
        )

    async def list_files(self, root_dir: str) -> list[str]:
        """Regular files under root_dir, relative to it, sorted."""
        self._ensure_open()
        root = self._resolve(root_dir)
        prefix = root.rstrip("/") + "/"
        paths = await self._provider.list_files(self.id, root)
        return sorted(p[len(prefix):] for p in paths if p.startswith(prefix))

    async def read_file(self, path: str) -> bytes:
        self._ensure_open()
        return await self._provider.read_file(self.id, self._resolve(path))

    def mark_built(self) -> None:
        self.state = SandboxState.BUILT

    async def close(self) -> None:
        """Destroy the sandbox. Safe to call twice; the second call does nothing."""
        if self.state == SandboxState.DESTROYED:
            logger.warning("Sandbox %s closed more than once", self.id[:12])
            return
        self.state = SandboxState.DESTROYED
        await self._provider.destroy(self.id)
        logger.info("Sandbox session closed: %s", self.id[:12])


@asynccontextmanager
async def sandbox_session(
    provider: SandboxProvider, image: str | None = None
) -> AsyncIterator[SandboxSession]:
    """Acquire a sandbox, hand it to the caller, always release it.

    Usage:
        async with sandbox_session(provider) as session:
            await session.write_file("package.json", manifest)
            result = await session.run("npm install")

    Teardown failures are logged and swallowed so they never mask the
    error that ended the block (or turn a success into a failure).
    """
    session = await SandboxSession.open(provider, image=image)
    try:
        yield session
    finally:
        try:
            await session.close()
        except Exception:
            logger.exception("Failed to destroy sandbox %s", session.id[:12])


async def reap_orphaned_sandboxes(provider: SandboxProvider, max_age_minutes: int) -> list[str]:
    """Destroy managed sandboxes older than max_age_minutes.

    Sessions close themselves, so anything this old leaked from a crashed
    worker. Returns the ids that were removed.
    """
    cutoff = time.time() - max_age_minutes * 60
    removed = []
    for sandbox in await provider.list_managed():
        if sandbox.created_at >= cutoff:
            continue
        try:
            await provider.destroy(sandbox.id)
            removed.append(sandbox.id)
        except Exception:
            logger.exception("Failed to reap sandbox %s", sandbox.id[:12])
    if removed:
        logger.info("Reaped %d orphaned sandbox(es)", len(removed))
    return removed


# Singleton instance
sandbox_provider = DockerSandboxProvider()

"""Build pipeline — ordering of sandbox, storage and build-row transitions."""
import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from apps.api.exceptions import BuildAlreadyFinalized, CodeError, InfrastructureError, StorageError
from apps.api.models.build import BuildStatus
from apps.api.services import build_pipeline as pipeline_module
from apps.api.services import build_store as build_store_module
from apps.api.services.build_pipeline import BuildPipeline, merge_with_latest, raise_for_outcome
from apps.api.services.build_runner import ArtifactLimitExceeded, BuildRunner, CompileFailed, InstallFailed, NoEntryDocument, Success
from apps.api.services.materializer import SourceFile, get_template
from apps.api.services.sandbox import ExecResult

TEMPLATE = get_template("vite-react")

APP_TSX = "export default function App() { return <h1>Hello</h1> }\n"


def _project():
    project = MagicMock()
    project.id = uuid.uuid4()
    project.template = "vite-react"
    return project


def _build(project_id, version=1, status=BuildStatus.BUILDING):
    build = MagicMock()
    build.id = uuid.uuid4()
    build.project_id = project_id
    build.version = version
    build.status = status
    return build


@pytest.fixture
def repos():
    """Patch the repositories the build store talks to."""
    with patch.object(build_store_module.build_repo, "create_building", new_callable=AsyncMock) as create, \
         patch.object(build_store_module.build_repo, "finalize", new_callable=AsyncMock) as finalize, \
         patch.object(build_store_module.build_repo, "promote_if_newer", new_callable=AsyncMock) as promote, \
         patch.object(build_store_module.project_file_repo, "add_snapshot", new_callable=AsyncMock) as snapshot:
        promote.return_value = True
        snapshot.return_value = 1
        yield MagicMock(create=create, finalize=finalize, promote=promote, snapshot=snapshot)


def _pipeline(sandbox_provider, object_storage, status_channel, **runner_kwargs):
    return BuildPipeline(
        provider=sandbox_provider,
        storage=object_storage,
        status=status_channel,
        runner=BuildRunner(**runner_kwargs) if runner_kwargs else None,
        route_prefix="/preview",
    )


@pytest.mark.asyncio
async def test_successful_save_publishes_and_promotes(
    repos, sandbox_provider, object_storage, s3_client, status_channel
):
    project = _project()
    user_id = uuid.uuid4()
    build = _build(project.id, version=3)
    repos.create.return_value = build
    repos.finalize.side_effect = lambda db, build_id, status, **kw: _build(project.id, 3, status)

    pipeline = _pipeline(sandbox_provider, object_storage, status_channel)
    result = await pipeline.run(
        AsyncMock(), project, user_id, [SourceFile("src/App.tsx", APP_TSX)], request_id="req-1"
    )

    assert result.version == 3
    assert result.url == f"/preview/{user_id}/{project.id}?v=3"
    assert result.promoted
    assert set(result.to_dict()) == {"success", "url", "buildHash", "hasIssues", "version"}

    repos.finalize.assert_awaited_once()
    args, kwargs = repos.finalize.call_args
    assert args[2] == BuildStatus.COMPLETED
    assert kwargs["storage_locator"] == f"{user_id}/{project.id}/v3"
    assert kwargs["build_hash"] == result.build_hash
    repos.promote.assert_awaited_once()

    assert f"{user_id}/{project.id}/v3/index.html" in s3_client.objects
    assert sandbox_provider.destroyed == sandbox_provider.created

    latest = await status_channel.latest("req-1")
    assert latest.step == "complete"
    assert latest.progress == 100


@pytest.mark.asyncio
async def test_install_failure_leaves_no_build_row(
    repos, sandbox_provider, object_storage, s3_client, status_channel
):
    sandbox_provider.failures[TEMPLATE.install_command] = ExecResult(1, "npm ERR! 404 left-pad")
    pipeline = _pipeline(sandbox_provider, object_storage, status_channel)

    with pytest.raises(InfrastructureError) as exc_info:
        await pipeline.run(AsyncMock(), _project(), uuid.uuid4(), [], request_id="req-2")

    assert exc_info.value.details["stage"] == "install"
    repos.create.assert_not_awaited()
    repos.finalize.assert_not_awaited()
    assert s3_client.objects == {}
    assert sandbox_provider.destroyed == sandbox_provider.created
    assert (await status_channel.latest("req-2")).step == "error"


@pytest.mark.asyncio
async def test_compile_error_is_a_code_error(repos, sandbox_provider, object_storage, status_channel):
    sandbox_provider.failures[TEMPLATE.build_command] = ExecResult(1, "Rollup failed to resolve import \"x\"")
    pipeline = _pipeline(sandbox_provider, object_storage, status_channel)

    with pytest.raises(CodeError) as exc_info:
        await pipeline.run(AsyncMock(), _project(), uuid.uuid4(), [])

    assert exc_info.value.status_code == 422
    assert exc_info.value.stage == "compile"
    assert "Rollup failed" in exc_info.value.diagnostics
    repos.create.assert_not_awaited()


@pytest.mark.asyncio
async def test_upload_failure_finalizes_failed_and_reraises(
    repos, sandbox_provider, object_storage, status_channel
):
    project = _project()
    build = _build(project.id)
    repos.create.return_value = build
    db = AsyncMock()
    pipeline = _pipeline(sandbox_provider, object_storage, status_channel)

    with patch.object(object_storage, "upload", new_callable=AsyncMock, side_effect=StorageError("bucket gone")):
        with pytest.raises(StorageError):
            await pipeline.run(db, project, uuid.uuid4(), [SourceFile("src/App.tsx", APP_TSX)])

    db.rollback.assert_awaited()
    repos.finalize.assert_awaited_once()
    args, kwargs = repos.finalize.call_args
    assert args[1] == build.id
    assert args[2] == BuildStatus.FAILED
    assert "bucket gone" in kwargs["error"]
    repos.promote.assert_not_awaited()


@pytest.mark.asyncio
async def test_failed_marking_does_not_mask_original_error(
    repos, sandbox_provider, object_storage, status_channel
):
    project = _project()
    repos.create.return_value = _build(project.id)
    repos.snapshot.side_effect = RuntimeError("snapshot insert failed")
    repos.finalize.side_effect = BuildAlreadyFinalized("x")
    pipeline = _pipeline(sandbox_provider, object_storage, status_channel)

    with pytest.raises(RuntimeError, match="snapshot insert failed"):
        await pipeline.run(AsyncMock(), project, uuid.uuid4(), [SourceFile("src/App.tsx", APP_TSX)])


@pytest.mark.asyncio
async def test_status_outage_does_not_fail_the_build(repos, sandbox_provider, object_storage):
    project = _project()
    repos.create.return_value = _build(project.id)
    repos.finalize.side_effect = lambda db, build_id, status, **kw: _build(project.id, 1, status)
    status = MagicMock()
    status.publish = AsyncMock(side_effect=ConnectionError("redis down"))

    pipeline = BuildPipeline(provider=sandbox_provider, storage=object_storage, status=status)
    result = await pipeline.run(AsyncMock(), project, uuid.uuid4(), [], request_id="req-3")

    assert result.version == 1


@pytest.mark.asyncio
async def test_not_promoted_when_newer_build_is_head(
    repos, sandbox_provider, object_storage, status_channel
):
    project = _project()
    repos.create.return_value = _build(project.id, version=4)
    repos.finalize.side_effect = lambda db, build_id, status, **kw: _build(project.id, 4, status)
    repos.promote.return_value = False
    pipeline = _pipeline(sandbox_provider, object_storage, status_channel)

    result = await pipeline.run(AsyncMock(), project, uuid.uuid4(), [])

    assert not result.promoted
    assert result.to_dict()["success"] is True


def test_raise_for_outcome_mapping():
    success = Success(artifact_files=[])
    assert raise_for_outcome(success) is success

    with pytest.raises(InfrastructureError):
        raise_for_outcome(InstallFailed("npm ERR!"))
    with pytest.raises(InfrastructureError):
        raise_for_outcome(NoEntryDocument(found=["main.js"]))
    with pytest.raises(InfrastructureError) as limit_info:
        raise_for_outcome(ArtifactLimitExceeded(count=601, limit=500))
    assert limit_info.value.details == {"stage": "collect", "count": 601, "limit": 500}
    with pytest.raises(CodeError) as exc_info:
        raise_for_outcome(CompileFailed("error during build"))
    assert exc_info.value.details == {"stage": "compile", "diagnostics": "error during build"}


@pytest.mark.asyncio
async def test_merge_with_latest_overlays_edits():
    saved = [MagicMock(path="src/App.tsx", content="old"), MagicMock(path="src/main.tsx", content="main")]
    with patch.object(pipeline_module.project_file_repo, "get_latest", new_callable=AsyncMock, return_value=saved):
        merged = await merge_with_latest(
            AsyncMock(), uuid.uuid4(), [SourceFile("./src/App.tsx", "new"), SourceFile("app/x.ts", "x")]
        )

    assert [(f.path, f.content) for f in merged] == [
        ("src/App.tsx", "new"),
        ("src/main.tsx", "main"),
        ("src/x.ts", "x"),
    ]

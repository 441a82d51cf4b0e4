"""Build store — content hash, versioned uploads, snapshot and finalize pass-through."""
import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from apps.api.models.build import Build, BuildStatus
from apps.api.services import build_store as build_store_module
from apps.api.services.build_runner import ArtifactFile
from apps.api.services.build_store import BuildStore, artifact_locator, compute_build_hash
from apps.api.services.materializer import SourceFile


def test_hash_is_order_independent():
    a = [ArtifactFile("index.html", b"<html>"), ArtifactFile("assets/app.js", b"js")]
    b = list(reversed(a))
    assert compute_build_hash(a) == compute_build_hash(b)
    assert len(compute_build_hash(a)) == 64


def test_hash_changes_with_content_and_path():
    base = [ArtifactFile("index.html", b"<html>")]
    assert compute_build_hash(base) != compute_build_hash([ArtifactFile("index.html", b"<html >")])
    assert compute_build_hash(base) != compute_build_hash([ArtifactFile("home.html", b"<html>")])


def test_hash_handles_binary_content():
    files = [ArtifactFile("logo.png", bytes(range(256)))]
    assert compute_build_hash(files) == compute_build_hash(list(files))


@pytest.mark.asyncio
async def test_upload_artifact_writes_under_versioned_locator(object_storage, s3_client):
    user_id, project_id = uuid.uuid4(), uuid.uuid4()
    files = [ArtifactFile("index.html", b"<html>"), ArtifactFile("assets/app.js", b"js")]

    locator, build_hash = await BuildStore(object_storage).upload_artifact(user_id, project_id, 3, files)

    assert locator == f"{user_id}/{project_id}/v3"
    assert locator == artifact_locator(user_id, project_id, 3)
    assert build_hash == compute_build_hash(files)
    assert s3_client.objects[f"{locator}/index.html"] == (b"<html>", "text/html")
    assert s3_client.objects[f"{locator}/assets/app.js"][1] in ("application/javascript", "text/javascript")


@pytest.mark.asyncio
async def test_new_version_never_overwrites_old(object_storage, s3_client):
    user_id, project_id = uuid.uuid4(), uuid.uuid4()
    store = BuildStore(object_storage)
    await store.upload_artifact(user_id, project_id, 1, [ArtifactFile("index.html", b"one")])
    await store.upload_artifact(user_id, project_id, 2, [ArtifactFile("index.html", b"two")])
    assert s3_client.objects[f"{user_id}/{project_id}/v1/index.html"][0] == b"one"
    assert s3_client.objects[f"{user_id}/{project_id}/v2/index.html"][0] == b"two"


@pytest.mark.asyncio
async def test_persist_source_snapshot_skips_binary(object_storage):
    db = MagicMock(spec=AsyncSession)
    build = MagicMock(spec=Build)
    build.id = uuid.uuid4()
    build.project_id = uuid.uuid4()
    files = [
        SourceFile("src/App.tsx", "export default 1"),
        SourceFile("public/logo.png", b"\x89PNG\r\n\x1a\n\xff"),
        SourceFile("src/data.json", b'{"a": 1}'),
    ]
    with patch.object(build_store_module.project_file_repo, "add_snapshot", new_callable=AsyncMock, return_value=2) as add:
        written = await BuildStore(object_storage).persist_source_snapshot(db, build, files)
    assert written == 2
    rows = add.call_args[0][3]
    assert rows == [("src/App.tsx", "export default 1"), ("src/data.json", '{"a": 1}')]


@pytest.mark.asyncio
async def test_finalize_passes_locator_and_hash(object_storage):
    db = MagicMock(spec=AsyncSession)
    build_id = uuid.uuid4()
    finalized = MagicMock(spec=Build)
    with patch.object(build_store_module.build_repo, "finalize", new_callable=AsyncMock, return_value=finalized) as fin:
        out = await BuildStore(object_storage).finalize(
            db, build_id, BuildStatus.COMPLETED, locator="u/p/v1", build_hash="abc", has_issues=True
        )
    assert out is finalized
    fin.assert_awaited_once_with(
        db,
        build_id,
        BuildStatus.COMPLETED,
        build_hash="abc",
        storage_locator="u/p/v1",
        has_issues=True,
        error=None,
    )

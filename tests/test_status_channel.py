"""Status channel — memory store, publish rules, eviction, sweeper, polling route."""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from apps.api.services.status_channel import (
    MemoryStatusStore,
    RedisStatusStore,
    StatusChannel,
    StatusSweeper,
    StatusUpdate,
    create_status_store,
)


@pytest.mark.asyncio
async def test_publish_then_latest_and_history():
    channel = StatusChannel(MemoryStatusStore())
    await channel.publish("req-1", "sandbox", "Creating sandbox", 5)
    await channel.publish("req-1", "build", "Building", 30)
    latest = await channel.latest("req-1")
    assert latest.step == "build"
    assert latest.progress == 30
    history = await channel.history("req-1")
    assert [u.step for u in history] == ["sandbox", "build"]
    assert history[0].timestamp <= history[1].timestamp


@pytest.mark.asyncio
async def test_publish_without_request_id_is_noop():
    store = MemoryStatusStore()
    channel = StatusChannel(store)
    await channel.publish(None, "build", "ignored")
    await channel.publish("", "build", "ignored")
    assert store._logs == {}


@pytest.mark.asyncio
async def test_progress_is_clamped():
    channel = StatusChannel(MemoryStatusStore())
    await channel.publish("req-1", "a", "over", 150)
    assert (await channel.latest("req-1")).progress == 100
    await channel.publish("req-1", "b", "under", -5)
    assert (await channel.latest("req-1")).progress == 0


@pytest.mark.asyncio
async def test_log_is_capped_to_most_recent_entries():
    channel = StatusChannel(MemoryStatusStore(max_entries=50))
    for i in range(60):
        await channel.publish("req-1", f"step-{i}", "msg")
    history = await channel.history("req-1")
    assert len(history) == 50
    assert history[0].step == "step-10"
    assert history[-1].step == "step-59"


@pytest.mark.asyncio
async def test_unknown_request_id_returns_nothing():
    channel = StatusChannel(MemoryStatusStore())
    assert await channel.latest("missing") is None
    assert await channel.history("missing") == []


@pytest.mark.asyncio
async def test_clear_removes_whole_log():
    channel = StatusChannel(MemoryStatusStore())
    await channel.publish("req-1", "a", "msg")
    await channel.clear("req-1")
    assert await channel.history("req-1") == []


@pytest.mark.asyncio
async def test_evict_idle_drops_only_stale_logs():
    store = MemoryStatusStore()
    await store.append("old", StatusUpdate(step="a", message="m", timestamp=1_000))
    channel = StatusChannel(store)
    await channel.publish("fresh", "a", "m")
    removed = await store.evict_idle(max_idle_seconds=3600)
    assert removed == 1
    assert await store.latest("old") is None
    assert await store.latest("fresh") is not None


@pytest.mark.asyncio
async def test_sweeper_sweep_once_uses_idle_seconds():
    store = MagicMock()
    store.evict_idle = AsyncMock(return_value=2)
    sweeper = StatusSweeper(store, idle_seconds=120, interval_seconds=1)
    assert await sweeper.sweep_once() == 2
    store.evict_idle.assert_awaited_once_with(120)


@pytest.mark.asyncio
async def test_sweeper_start_and_stop():
    sweeper = StatusSweeper(MemoryStatusStore(), idle_seconds=1, interval_seconds=3600)
    sweeper.start()
    assert sweeper._task is not None
    await sweeper.stop()
    assert sweeper._task is None
    # Stopping twice is harmless
    await sweeper.stop()


def test_status_update_dict_omits_missing_progress():
    update = StatusUpdate(step="a", message="m", timestamp=1)
    assert update.to_dict() == {"step": "a", "message": "m", "timestamp": 1}
    assert StatusUpdate.from_dict({"step": "a", "message": "m", "timestamp": 1, "progress": 5}).progress == 5


def test_create_status_store_backends():
    assert isinstance(create_status_store("memory"), MemoryStatusStore)
    assert isinstance(create_status_store("redis", redis_url="redis://localhost:6379/0"), RedisStatusStore)
    with pytest.raises(ValueError):
        create_status_store("redis")
    with pytest.raises(ValueError):
        create_status_store("kafka")


@pytest.mark.asyncio
async def test_redis_store_append_trims_and_expires():
    store = RedisStatusStore("redis://localhost:6379/0", max_entries=50, idle_seconds=3600)
    pipe = MagicMock()
    pipe.execute = AsyncMock()
    pipe_ctx = MagicMock()
    pipe_ctx.__aenter__ = AsyncMock(return_value=pipe)
    pipe_ctx.__aexit__ = AsyncMock(return_value=False)
    fake_redis = MagicMock()
    fake_redis.pipeline.return_value = pipe_ctx
    with patch.object(store, "_get_redis", new_callable=AsyncMock, return_value=fake_redis):
        await store.append("req-1", StatusUpdate(step="a", message="m", timestamp=1))
    pipe.rpush.assert_called_once()
    assert pipe.rpush.call_args[0][0] == "status:req-1"
    pipe.ltrim.assert_called_once_with("status:req-1", -50, -1)
    pipe.expire.assert_called_once_with("status:req-1", 3600)
    pipe.execute.assert_awaited_once()


# ── Polling route ─────────────────────────────────────

def test_status_route_requires_request_id(client: TestClient):
    r = client.get("/generate/status")
    assert r.status_code == 400
    assert r.json()["error"]["message"] == "requestId is required"


def test_status_route_unknown_id(client: TestClient):
    data = client.get("/generate/status?requestId=nope").json()
    assert data["step"] == "unknown"
    assert data["message"] == "Status not found"


@pytest.mark.asyncio
async def test_status_route_latest_and_all(client: TestClient, status_channel: StatusChannel):
    await status_channel.publish("req-9", "files", "Writing files", 15)
    await status_channel.publish("req-9", "build", "Building", 30)

    latest = client.get("/generate/status?requestId=req-9").json()
    assert latest["step"] == "build"
    assert latest["progress"] == 30

    everything = client.get("/generate/status?requestId=req-9&all=true").json()
    assert [s["step"] for s in everything["statuses"]] == ["files", "build"]


@pytest.mark.asyncio
async def test_status_route_omits_missing_progress(client: TestClient, status_channel: StatusChannel):
    await status_channel.publish("req-10", "error", "Type check failed")

    latest = client.get("/generate/status?requestId=req-10").json()
    assert latest["step"] == "error"
    assert "progress" not in latest

    everything = client.get("/generate/status?requestId=req-10&all=1").json()
    assert everything == {"statuses": [latest]}


def test_status_route_empty_history(client: TestClient):
    assert client.get("/generate/status?requestId=none-yet&all=true").json() == {"statuses": []}

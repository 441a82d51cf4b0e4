"""Pytest fixtures for API and internal tests.

Uses a minimal app with no-op lifespan to avoid Postgres, Redis, Docker and S3.
Sandboxes and the bucket are in-memory fakes; auth and DB can be overridden per test.
"""
from contextlib import asynccontextmanager
from unittest.mock import MagicMock
import uuid

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from apps.api.exceptions import PagewrightException, pagewright_exception_handler
from apps.api.middleware import RequestIDMiddleware
from apps.api.models.user import User
from apps.api.routes import health, preview, projects, status
from apps.api.services.object_storage import ObjectStorage
from apps.api.services.status_channel import MemoryStatusStore, StatusChannel
from tests.fakes import FakeS3Client, FakeSandboxProvider


@asynccontextmanager
async def noop_lifespan(app: FastAPI):
    """Minimal lifespan for tests — no Redis, Docker, S3 or status sweeper."""
    yield


@pytest.fixture
def sandbox_provider() -> FakeSandboxProvider:
    return FakeSandboxProvider()


@pytest.fixture
def s3_client() -> FakeS3Client:
    return FakeS3Client()


@pytest.fixture
def object_storage(s3_client: FakeS3Client) -> ObjectStorage:
    return ObjectStorage(bucket="test-builds", client=s3_client)


@pytest.fixture
def status_channel() -> StatusChannel:
    return StatusChannel(MemoryStatusStore(max_entries=50))


@pytest.fixture
def test_app(
    sandbox_provider: FakeSandboxProvider,
    object_storage: ObjectStorage,
    status_channel: StatusChannel,
) -> FastAPI:
    """FastAPI app with every router and in-memory services on app.state."""
    app = FastAPI(lifespan=noop_lifespan)
    app.add_middleware(RequestIDMiddleware)
    app.add_exception_handler(PagewrightException, pagewright_exception_handler)
    app.include_router(health.router)
    app.include_router(projects.router)
    app.include_router(preview.router)
    app.include_router(status.router)
    app.state.status_channel = status_channel
    app.state.sandbox_provider = sandbox_provider
    app.state.object_storage = object_storage
    return app


@pytest.fixture
def client(test_app: FastAPI) -> TestClient:
    """TestClient for the minimal test app."""
    return TestClient(test_app)


@pytest.fixture
def owner_user() -> User:
    """Active user that owns the projects under test."""
    u = MagicMock(spec=User)
    u.id = uuid.uuid4()
    u.email = "owner@test.com"
    u.is_active = True
    return u


@pytest.fixture
def other_user() -> User:
    """Active user that owns nothing."""
    u = MagicMock(spec=User)
    u.id = uuid.uuid4()
    u.email = "other@test.com"
    u.is_active = True
    return u

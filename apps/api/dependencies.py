"""Service dependencies resolved from app.state.

The lifespan in main.py puts one status channel, one sandbox provider and
one object storage client on app.state. Routes ask for them through these
functions, so tests can swap any of them with app.dependency_overrides.
"""

from fastapi import Depends, Request

from apps.api.config import settings
from apps.api.services.build_pipeline import BuildPipeline
from apps.api.services.object_storage import ObjectStorage
from apps.api.services.preview_proxy import PreviewProxy
from apps.api.services.sandbox import SandboxProvider
from apps.api.services.status_channel import StatusChannel


def get_status_channel(request: Request) -> StatusChannel:
    return request.app.state.status_channel


def get_sandbox_provider(request: Request) -> SandboxProvider:
    return request.app.state.sandbox_provider


def get_object_storage(request: Request) -> ObjectStorage:
    return request.app.state.object_storage


def get_build_pipeline(
    provider: SandboxProvider = Depends(get_sandbox_provider),
    storage: ObjectStorage = Depends(get_object_storage),
    status: StatusChannel = Depends(get_status_channel),
) -> BuildPipeline:
    return BuildPipeline(provider=provider, storage=storage, status=status)


def get_preview_proxy(storage: ObjectStorage = Depends(get_object_storage)) -> PreviewProxy:
    return PreviewProxy(storage, route_prefix=settings.preview_route_prefix)

from fastapi import APIRouter, Depends

from apps.api.config import settings
from apps.api.dependencies import get_status_channel
from apps.api.services.status_channel import StatusChannel

router = APIRouter()

@router.get("/health")
async def health_check(channel: StatusChannel = Depends(get_status_channel)):
    """ Health check endpoint

    Returns service status, name, version and which status backend is in use.
    Used by Docker, Kubernetes, and load balancers to verify the service is alive.
    """
    return {
        "status": "ok",
        "name": settings.app_name,
        "version": settings.app_version,
        "status_backend": type(channel.store).__name__,
    }

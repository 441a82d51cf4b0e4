"""Status route — the frontend polls this while a save or generation runs.

    GET /generate/status?requestId=abc123          → latest update
    GET /generate/status?requestId=abc123&all=true → every retained update
"""

import time

from fastapi import APIRouter, Depends, Query

from apps.api.dependencies import get_status_channel
from apps.api.exceptions import PagewrightException
from apps.api.schemas.status import StatusHistoryResponse, StatusUpdateResponse
from apps.api.services.status_channel import StatusChannel

router = APIRouter(prefix="/generate", tags=["status"])


@router.get(
    "/status",
    response_model=StatusUpdateResponse | StatusHistoryResponse,
    response_model_exclude_none=True,  # "progress" is omitted, not null, when unset
)
async def get_status(
    request_id: str | None = Query(default=None, alias="requestId"),
    all_updates: bool = Query(default=False, alias="all"),
    channel: StatusChannel = Depends(get_status_channel),
):
    """Latest (or full) progress log for a request id.

    An unknown id is not an error: the request may not have published yet,
    or its log was evicted after going idle.
    """
    if not request_id:
        raise PagewrightException("requestId is required", status_code=400)

    if all_updates:
        updates = await channel.history(request_id)
        return StatusHistoryResponse(
            statuses=[StatusUpdateResponse(**u.to_dict()) for u in updates]
        )

    update = await channel.latest(request_id)
    if update is None:
        return StatusUpdateResponse(
            step="unknown",
            message="Status not found",
            timestamp=int(time.time() * 1000),
        )
    return StatusUpdateResponse(**update.to_dict())

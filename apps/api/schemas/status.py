"""Status channel schemas — the polling payload the frontend reads."""

from pydantic import BaseModel, Field


class StatusUpdateResponse(BaseModel):
    step: str
    message: str
    timestamp: int = Field(description="Epoch milliseconds")
    progress: int | None = Field(default=None, ge=0, le=100)


class StatusHistoryResponse(BaseModel):
    statuses: list[StatusUpdateResponse]

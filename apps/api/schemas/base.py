"""Base schemas shared by project, build and snapshot responses."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict


class BaseSchema(BaseModel):
    """Readable straight from ORM rows: BuildResponse.model_validate(build)."""

    model_config = ConfigDict(from_attributes=True)


class BaseResponse(BaseSchema):
    """Columns every table carries (see models.base.BaseModel)."""

    id: uuid.UUID
    created_at: datetime
    updated_at: datetime

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import String, Text, ForeignKey, Enum as SAEnum, Integer, Boolean, DateTime, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from apps.api.models.base import BaseModel


class BuildStatus(str, Enum):
    """Lifecycle of a build row. Moves out of BUILDING exactly once."""
    BUILDING = "building"
    COMPLETED = "completed"
    FAILED = "failed"


class Build(BaseModel):
    __tablename__ = "builds"
    __table_args__ = (
        UniqueConstraint("project_id", "version", name="uq_builds_project_version"),
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(SAEnum(BuildStatus), default=BuildStatus.BUILDING, nullable=False)

    # Filled in by finalize() once every artifact object is uploaded
    build_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)       # sha256 hex
    storage_locator: Mapped[str | None] = mapped_column(String(500), nullable=True)  # e.g. "{user}/{project}/v3"
    has_issues: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)  # Compiled with type errors
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    project_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), index=True, nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)

    # Relationships
    project: Mapped["Project"] = relationship(back_populates="builds", foreign_keys=[project_id])
    files: Mapped[list["ProjectFile"]] = relationship(back_populates="build")

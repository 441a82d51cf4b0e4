import uuid

from sqlalchemy import String, Text, ForeignKey, Integer, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from apps.api.models.base import BaseModel


class ProjectFile(BaseModel):
    """One source file as it was when a build was made.

    Rows are never updated: every build writes its full source tree, so the
    current state of a path is simply its newest row.
    """

    __tablename__ = "project_files"
    __table_args__ = (
        Index("ix_project_files_project_path_created", "project_id", "path", "created_at"),
    )

    path: Mapped[str] = mapped_column(String(500), nullable=False)  # e.g. "src/App.tsx"
    content: Mapped[str] = mapped_column(Text, nullable=False)
    size: Mapped[int] = mapped_column(Integer, default=0, nullable=False)  # Bytes, utf-8 encoded

    project_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    build_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("builds.id", ondelete="CASCADE"), index=True, nullable=True
    )

    build: Mapped["Build | None"] = relationship(back_populates="files")

import uuid

from sqlalchemy import String, Text, ForeignKey, Integer
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from apps.api.models.base import BaseModel


class Project(BaseModel):
    __tablename__ = "projects"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)  # The prompt the app was generated from
    template: Mapped[str] = mapped_column(String(50), default="vite-react", nullable=False)

    # Monotonic counter handed out to builds: bumped atomically, never reused
    build_counter: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)

    # The build the preview serves by default (latest completed, or a restored one)
    active_build_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("builds.id", use_alter=True, name="fk_projects_active_build_id"),
        nullable=True,
    )

    # Owner
    owner_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False)

    # Relationships
    owner: Mapped["User"] = relationship(back_populates="projects")
    builds: Mapped[list["Build"]] = relationship(
        back_populates="project",
        foreign_keys="Build.project_id",
        order_by="Build.version.desc()",
        passive_deletes=True,  # builds.project_id is ON DELETE CASCADE
    )
    active_build: Mapped["Build | None"] = relationship(foreign_keys=[active_build_id], post_update=True)

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from apps.api.models.base import BaseModel


class User(BaseModel):
    """Identity of a project owner.

    Sign-up and login live in the auth service; this table only mirrors the
    ids that appear in verified tokens so projects and builds can point at them.
    """

    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)

    projects: Mapped[list["Project"]] = relationship(back_populates="owner")

"""create users, projects, builds and project_files

Revision ID: 3b7e1f0c9a21
Revises:
Create Date: 2026-10-19 10:12:41.402118

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '3b7e1f0c9a21'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

build_status = sa.Enum("BUILDING", "COMPLETED", "FAILED", name="buildstatus")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    """Upgrade schema - project, versioned build and source snapshot tables."""
    op.create_table(
        "users",
        *_timestamps(),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("full_name", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "projects",
        *_timestamps(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("template", sa.String(50), nullable=False, server_default="vite-react"),
        sa.Column("build_counter", sa.Integer, nullable=False, server_default="0"),
        sa.Column("active_build_id", UUID(as_uuid=True), nullable=True),
        sa.Column("owner_id", UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
    )

    op.create_table(
        "builds",
        *_timestamps(),
        sa.Column("version", sa.Integer, nullable=False),
        sa.Column("status", build_status, nullable=False),
        sa.Column("build_hash", sa.String(64), nullable=True),
        sa.Column("storage_locator", sa.String(500), nullable=True),
        sa.Column("has_issues", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "project_id", UUID(as_uuid=True),
            sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("user_id", UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.UniqueConstraint("project_id", "version", name="uq_builds_project_version"),
    )
    op.create_index("ix_builds_project_id", "builds", ["project_id"])

    # projects ↔ builds reference each other, so this FK goes in after both tables exist
    op.create_foreign_key(
        "fk_projects_active_build_id", "projects", "builds", ["active_build_id"], ["id"]
    )

    op.create_table(
        "project_files",
        *_timestamps(),
        sa.Column("path", sa.String(500), nullable=False),
        sa.Column("content", sa.Text, nullable=False),
        sa.Column("size", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "project_id", UUID(as_uuid=True),
            sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "build_id", UUID(as_uuid=True),
            sa.ForeignKey("builds.id", ondelete="CASCADE"), nullable=True,
        ),
    )
    op.create_index("ix_project_files_build_id", "project_files", ["build_id"])
    op.create_index(
        "ix_project_files_project_path_created",
        "project_files",
        ["project_id", "path", "created_at"],
    )


def downgrade() -> None:
    """Downgrade schema - drop everything created above."""
    op.drop_table("project_files")
    op.drop_constraint("fk_projects_active_build_id", "projects", type_="foreignkey")
    op.drop_table("builds")
    op.drop_table("projects")
    op.drop_table("users")
    build_status.drop(op.get_bind(), checkfirst=True)

"""Create projects, characters and generation_tasks tables.

The generation_tasks table is the Task Store:
    - id: application-assigned task id (or backfilled external id)
    - provider_job_id: provider job handle, set on submit acknowledgement
    - status: taskstatus enum (queued, processing, completed, failed)
    - provider_url / permanent_url: transient and migrated result URLs
    - Composite index on (project_id, created_at) for project listings
    - Composite index on (character_id, type, status) for reference lookups

Revision ID: 001_create_orchestration_tables
Revises:
Create Date: 2026-10-18

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_create_orchestration_tables"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

task_status = sa.Enum("queued", "processing", "completed", "failed", name="taskstatus")
task_type = sa.Enum("shot_generation", "character_reference", name="tasktype")
identity_status = sa.Enum("pending", "registered", name="identitystatus")


def upgrade() -> None:
    """Create orchestration tables with indexes."""
    op.create_table(
        "projects",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False, server_default=""),
        sa.Column("aspect_ratio", sa.String(10), nullable=False, server_default="16:9"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_projects_user_id", "projects", ["user_id"])

    op.create_table(
        "characters",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("project_id", sa.String(64), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("appearance", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("reference_images", sa.JSON(), nullable=True),
        sa.Column("reference_video_url", sa.String(1024), nullable=True),
        sa.Column("provider_identity_code", sa.String(128), nullable=True),
        sa.Column("identity_status", identity_status, nullable=False, server_default="pending"),
        sa.Column("identity_task_id", sa.String(64), nullable=True),
        sa.Column("identity_error", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["project_id"],
            ["projects.id"],
            name="fk_characters_project_id",
            ondelete="CASCADE",
        ),
    )
    op.create_index("ix_characters_project_id", "characters", ["project_id"])

    op.create_table(
        "generation_tasks",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("provider_job_id", sa.String(128), nullable=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("project_id", sa.String(64), nullable=False),
        sa.Column("scene_id", sa.String(64), nullable=True),
        sa.Column("shot_id", sa.String(64), nullable=True),
        sa.Column("character_id", sa.String(64), nullable=True),
        sa.Column("shot_ids", sa.JSON(), nullable=True),
        sa.Column("type", task_type, nullable=False, server_default="shot_generation"),
        sa.Column("status", task_status, nullable=False, server_default="queued"),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("model", sa.String(64), nullable=False, server_default=""),
        sa.Column("prompt", sa.Text(), nullable=False, server_default=""),
        sa.Column("target_duration", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("target_size", sa.String(20), nullable=False, server_default=""),
        sa.Column("point_cost", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("provider_url", sa.String(1024), nullable=True),
        sa.Column("permanent_url", sa.String(1024), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["project_id"],
            ["projects.id"],
            name="fk_generation_tasks_project_id",
            ondelete="CASCADE",
        ),
        sa.CheckConstraint("progress >= 0 AND progress <= 100", name="ck_generation_tasks_progress"),
    )
    op.create_index("ix_generation_tasks_user_id", "generation_tasks", ["user_id"])
    op.create_index("ix_generation_tasks_status", "generation_tasks", ["status"])
    op.create_index(
        "ix_generation_tasks_provider_job_id", "generation_tasks", ["provider_job_id"]
    )
    op.create_index(
        "ix_generation_tasks_project_id_created_at",
        "generation_tasks",
        ["project_id", "created_at"],
    )
    op.create_index(
        "ix_generation_tasks_character_id_type_status",
        "generation_tasks",
        ["character_id", "type", "status"],
    )


def downgrade() -> None:
    """Drop orchestration tables and enum types."""
    op.drop_table("generation_tasks")
    op.drop_table("characters")
    op.drop_table("projects")
    task_status.drop(op.get_bind(), checkfirst=True)
    task_type.drop(op.get_bind(), checkfirst=True)
    identity_status.drop(op.get_bind(), checkfirst=True)

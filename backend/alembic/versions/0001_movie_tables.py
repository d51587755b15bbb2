"""create users, credit ledger, generation requests, movie projects/scenes, cron locks

Revision ID: 0001_movie_tables
Revises:
Create Date: 2026-10-19 10:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "0001_movie_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("balance_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lifetime_purchased_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("balance_credits >= 0", name="ck_users_balance_non_negative"),
    )

    op.create_table(
        "credit_transactions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("reference", sa.String(128), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_credit_transactions_user_id", "credit_transactions", ["user_id"])

    op.create_table(
        "generation_requests",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("provider_request_id", sa.String(128), nullable=False),
        sa.Column("model", sa.String(50), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("mode", sa.String(32), nullable=False, server_default="text-to-video"),
        sa.Column("image_url", sa.Text(), nullable=True),
        sa.Column("status", sa.String(30), nullable=False, server_default="pending"),
        sa.Column("video_url", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("credit_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_generation_requests_provider_request_id", "generation_requests", ["provider_request_id"])

    op.create_table(
        "movie_projects",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("source_text", sa.Text(), nullable=False),
        sa.Column("model", sa.String(50), nullable=False, server_default="kling-2.6"),
        sa.Column("style", sa.String(50), nullable=True),
        sa.Column("voice_id", sa.String(100), nullable=True),
        sa.Column("aspect_ratio", sa.String(10), nullable=False, server_default="16:9"),
        sa.Column("target_duration_minutes", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("status", sa.String(30), nullable=False, server_default="draft"),
        sa.Column("total_scenes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_scene", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("completed_scenes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("estimated_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("spent_credits", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("final_video_url", sa.Text(), nullable=True),
        sa.Column("total_duration_seconds", sa.Float(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("script_data", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_movie_projects_status_updated", "movie_projects", ["status", "updated_at"])
    op.create_index("ix_movie_projects_user_status", "movie_projects", ["user_id", "status"])

    op.create_table(
        "movie_scenes",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("project_id", sa.Integer(), sa.ForeignKey("movie_projects.id", ondelete="CASCADE"), nullable=False),
        sa.Column("scene_number", sa.Integer(), nullable=False),
        sa.Column("scene_title", sa.String(200), nullable=True),
        sa.Column("video_prompt", sa.Text(), nullable=False),
        sa.Column("narration_text", sa.Text(), nullable=True),
        sa.Column("status", sa.String(30), nullable=False, server_default="pending"),
        sa.Column(
            "ai_generation_id", sa.Integer(),
            sa.ForeignKey("generation_requests.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("video_url", sa.Text(), nullable=True),
        sa.Column("public_video_url", sa.Text(), nullable=True),
        sa.Column("last_frame_url", sa.Text(), nullable=True),
        sa.Column("duration_seconds", sa.Float(), nullable=True),
        sa.Column("credit_cost", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("project_id", "scene_number", name="uq_movie_scenes_project_number"),
        sa.CheckConstraint("retry_count >= 0 AND retry_count <= 3", name="ck_movie_scenes_retry_count"),
    )
    op.create_index("ix_movie_scenes_project_id", "movie_scenes", ["project_id"])

    op.create_table(
        "cron_locks",
        sa.Column("job_name", sa.Text(), primary_key=True),
        sa.Column("lock_id", sa.Text(), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_cron_locks_expires_at", "cron_locks", ["expires_at"])


def downgrade() -> None:
    op.drop_index("ix_cron_locks_expires_at", table_name="cron_locks")
    op.drop_table("cron_locks")
    op.drop_index("ix_movie_scenes_project_id", table_name="movie_scenes")
    op.drop_table("movie_scenes")
    op.drop_index("ix_movie_projects_user_status", table_name="movie_projects")
    op.drop_index("ix_movie_projects_status_updated", table_name="movie_projects")
    op.drop_table("movie_projects")
    op.drop_index("ix_generation_requests_provider_request_id", table_name="generation_requests")
    op.drop_table("generation_requests")
    op.drop_index("ix_credit_transactions_user_id", table_name="credit_transactions")
    op.drop_table("credit_transactions")
    op.drop_table("users")

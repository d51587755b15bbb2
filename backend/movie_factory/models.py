from __future__ import annotations

from datetime import datetime
from enum import Enum

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship as sa_relationship

from .db import Base


def relationship(*args, **kwargs):
    """Wrap SQLAlchemy relationship to forbid lazy loading by default."""
    kwargs.setdefault("lazy", "raise")
    return sa_relationship(*args, **kwargs)


class ProjectStatus(str, Enum):
    draft = "draft"
    script_generating = "script_generating"
    script_ready = "script_ready"
    generating = "generating"
    paused = "paused"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


class SceneStatus(str, Enum):
    pending = "pending"
    generating = "generating"
    narrating = "narrating"
    merging = "merging"
    completed = "completed"
    failed = "failed"
    skipped = "skipped"


class GenerationStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    expired = "expired"


class User(Base):
    __tablename__ = "users"
    __table_args__ = (sa.CheckConstraint("balance_credits >= 0", name="ck_users_balance_non_negative"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(sa.String(255), nullable=False, unique=True)
    balance_credits: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0")
    lifetime_purchased_credits: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0")
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )

    movie_projects: Mapped[list["MovieProject"]] = relationship(back_populates="user", passive_deletes=True)


class CreditTransaction(Base):
    __tablename__ = "credit_transactions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    type: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    amount: Mapped[int] = mapped_column(sa.Integer(), nullable=False)
    balance_after: Mapped[int] = mapped_column(sa.Integer(), nullable=False)
    reference: Mapped[str | None] = mapped_column(sa.String(128), nullable=True)
    reason: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )


class GenerationRequest(Base):
    """Provider-side generation job as seen by this system."""

    __tablename__ = "generation_requests"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    provider_request_id: Mapped[str] = mapped_column(sa.String(128), nullable=False, index=True)
    model: Mapped[str] = mapped_column(sa.String(50), nullable=False)
    prompt: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    mode: Mapped[str] = mapped_column(sa.String(32), nullable=False, server_default="text-to-video")
    image_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    status: Mapped[str] = mapped_column(sa.String(30), nullable=False, server_default=GenerationStatus.pending.value)
    video_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    error_message: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    credit_amount: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0")
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)


class MovieProject(Base):
    __tablename__ = "movie_projects"
    __table_args__ = (
        sa.Index("ix_movie_projects_status_updated", "status", "updated_at"),
        sa.Index("ix_movie_projects_user_status", "user_id", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    title: Mapped[str] = mapped_column(sa.String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    source_text: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    model: Mapped[str] = mapped_column(sa.String(50), nullable=False, server_default="kling-2.6")
    style: Mapped[str | None] = mapped_column(sa.String(50), nullable=True)
    voice_id: Mapped[str | None] = mapped_column(sa.String(100), nullable=True)
    aspect_ratio: Mapped[str] = mapped_column(sa.String(10), nullable=False, server_default="16:9")
    target_duration_minutes: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="10")
    status: Mapped[str] = mapped_column(sa.String(30), nullable=False, server_default=ProjectStatus.draft.value)
    total_scenes: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0")
    current_scene: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0")
    completed_scenes: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0")
    estimated_credits: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0")
    spent_credits: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0")
    final_video_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    total_duration_seconds: Mapped[float | None] = mapped_column(sa.Float(), nullable=True)
    error_message: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    script_data: Mapped[dict | None] = mapped_column(sa.JSON(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    user: Mapped[User] = relationship(back_populates="movie_projects")
    scenes: Mapped[list["MovieScene"]] = relationship(
        back_populates="project",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="MovieScene.scene_number",
    )


class MovieScene(Base):
    __tablename__ = "movie_scenes"
    __table_args__ = (
        sa.UniqueConstraint("project_id", "scene_number", name="uq_movie_scenes_project_number"),
        sa.CheckConstraint("retry_count >= 0 AND retry_count <= 3", name="ck_movie_scenes_retry_count"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(sa.ForeignKey("movie_projects.id", ondelete="CASCADE"), nullable=False, index=True)
    scene_number: Mapped[int] = mapped_column(sa.Integer(), nullable=False)
    scene_title: Mapped[str | None] = mapped_column(sa.String(200), nullable=True)
    video_prompt: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    narration_text: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    status: Mapped[str] = mapped_column(sa.String(30), nullable=False, server_default=SceneStatus.pending.value)
    ai_generation_id: Mapped[int | None] = mapped_column(
        sa.ForeignKey("generation_requests.id", ondelete="SET NULL"), nullable=True
    )
    video_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    public_video_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    last_frame_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    duration_seconds: Mapped[float | None] = mapped_column(sa.Float(), nullable=True)
    credit_cost: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0")
    retry_count: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0")
    error_message: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    project: Mapped[MovieProject] = relationship(back_populates="scenes")


class CronLock(Base):
    __tablename__ = "cron_locks"

    job_name: Mapped[str] = mapped_column(sa.Text(), primary_key=True)
    lock_id: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, index=True)

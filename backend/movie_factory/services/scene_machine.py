"""
Scene lifecycle.

    pending -> generating -> [narrating -> merging ->] completed
    generating -> pending                 (provider failure, retry_count + 1)
    pending -> failed                     (retry_count >= MAX_RETRIES)
    anything but completed -> skipped     (project cancelled)

Every transition is an UPDATE conditioned on the current status. A transition
that matches no row returns False: the scene moved under us and the caller
drops the step. Nothing here commits.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from movie_factory.models import MovieScene, SceneStatus

logger = logging.getLogger(__name__)

MAX_RETRIES = 3


@dataclass(frozen=True)
class SceneOutput:
    """Everything recorded on a scene when it completes."""

    video_url: str
    public_video_url: str | None
    last_frame_url: str | None
    duration_seconds: float


def retries_exhausted(retry_count: int) -> bool:
    return retry_count >= MAX_RETRIES


async def _transition(
    session: AsyncSession,
    scene_id: int,
    sources: Iterable[SceneStatus],
    target: SceneStatus,
    *conditions,
    **values,
) -> bool:
    source_values = [s.value for s in sources]
    result = await session.execute(
        update(MovieScene)
        .where(MovieScene.id == scene_id, MovieScene.status.in_(source_values), *conditions)
        .values(status=target.value, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        logger.debug(f"[scene] Scene {scene_id}: {source_values} -> {target.value} rejected")
        return False
    return True


async def mark_generating(session: AsyncSession, scene_id: int, *, generation_id: int, credit_cost: int) -> bool:
    return await _transition(
        session, scene_id, [SceneStatus.pending], SceneStatus.generating,
        ai_generation_id=generation_id,
        credit_cost=credit_cost,
        error_message=None,
    )


async def mark_narrating(session: AsyncSession, scene_id: int, *, video_url: str) -> bool:
    return await _transition(
        session, scene_id, [SceneStatus.generating], SceneStatus.narrating,
        video_url=video_url,
    )


async def mark_merging(
    session: AsyncSession,
    scene_id: int,
    *,
    video_url: str | None = None,
    note: str | None = None,
) -> bool:
    values: dict = {}
    if video_url:
        values["video_url"] = video_url
    if note:
        values["error_message"] = note
    return await _transition(session, scene_id, [SceneStatus.narrating], SceneStatus.merging, **values)


async def mark_completed(
    session: AsyncSession,
    scene_id: int,
    output: SceneOutput,
    *,
    from_status: SceneStatus,
    now: datetime | None = None,
) -> bool:
    if from_status not in (SceneStatus.generating, SceneStatus.merging):
        raise ValueError(f"Scene cannot complete from '{from_status.value}'")
    return await _transition(
        session, scene_id, [from_status], SceneStatus.completed,
        video_url=output.video_url,
        public_video_url=output.public_video_url,
        last_frame_url=output.last_frame_url,
        duration_seconds=output.duration_seconds,
        completed_at=now or datetime.now(timezone.utc),
    )


async def record_generation_failure(session: AsyncSession, scene_id: int, reason: str) -> bool:
    """Send a failed generation back to pending for another attempt.

    Credits debited for the failed attempt stay spent; the provider accepted
    the job. Refunds are only issued on the submit path.
    """
    return await _transition(
        session, scene_id, [SceneStatus.generating], SceneStatus.pending,
        MovieScene.retry_count < MAX_RETRIES,
        retry_count=MovieScene.retry_count + 1,
        ai_generation_id=None,
        error_message=reason[:1000],
    )


async def record_submit_failure(session: AsyncSession, scene_id: int, reason: str) -> bool:
    return await _transition(
        session, scene_id, [SceneStatus.pending], SceneStatus.pending,
        MovieScene.retry_count < MAX_RETRIES,
        retry_count=MovieScene.retry_count + 1,
        error_message=reason[:1000],
    )


async def mark_failed(session: AsyncSession, scene_id: int, reason: str) -> bool:
    return await _transition(
        session, scene_id, [SceneStatus.pending], SceneStatus.failed,
        MovieScene.retry_count >= MAX_RETRIES,
        error_message=reason[:1000],
    )


async def skip_unfinished(session: AsyncSession, project_id: int) -> int:
    result = await session.execute(
        update(MovieScene)
        .where(
            MovieScene.project_id == project_id,
            MovieScene.status != SceneStatus.completed.value,
        )
        .values(status=SceneStatus.skipped.value)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


async def edit_pending_scene(session: AsyncSession, project_id: int, scene_number: int, **fields) -> bool:
    """Rewrite prompt/narration/title of a scene that has not been generated yet."""
    result = await session.execute(
        update(MovieScene)
        .where(
            MovieScene.project_id == project_id,
            MovieScene.scene_number == scene_number,
            MovieScene.status == SceneStatus.pending.value,
        )
        .values(**fields)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0

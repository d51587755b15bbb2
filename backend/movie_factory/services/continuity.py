"""
Continuity resolver: which frame (if any) a scene is generated from.

Scene 1 is always text-to-video. Scene N > 1 starts from the last frame of
scene N-1 when that scene completed and its frame was extracted; otherwise
it falls back to text-to-video.
"""
from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from movie_factory.models import MovieScene, SceneStatus

logger = logging.getLogger(__name__)


def reference_frame_from(previous: MovieScene | None) -> str | None:
    if previous is None:
        return None
    if previous.status != SceneStatus.completed.value:
        return None
    return previous.last_frame_url or None


async def resolve_reference_frame(session: AsyncSession, project_id: int, scene_number: int) -> str | None:
    if scene_number <= 1:
        return None

    previous = await session.scalar(
        select(MovieScene).where(
            MovieScene.project_id == project_id,
            MovieScene.scene_number == scene_number - 1,
        )
    )
    frame = reference_frame_from(previous)
    if frame is None:
        logger.info(
            f"[continuity] Project {project_id} scene {scene_number}: no frame from scene "
            f"{scene_number - 1}, using text-to-video"
        )
    return frame

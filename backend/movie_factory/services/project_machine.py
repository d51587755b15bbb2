"""
Project lifecycle.

    draft | script_ready -> script_generating -> script_ready (or back to draft)
    script_ready -> generating <-> paused
    generating | paused -> cancelled
    generating -> completed | failed

Transitions are compare-and-swap UPDATEs on ``status``. A transition whose
source status no longer matches returns False and changes nothing; callers
treat that as "guard rejected", not as an error. This is what keeps a stale
orchestrator run (lock expired mid-batch) from double-processing a project.

The scene machine talks to this module only through explicit calls:
``on_scene_failed`` and ``on_all_scenes_complete``. Nothing here commits.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable

import sqlalchemy as sa
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from movie_factory.models import MovieProject, MovieScene, ProjectStatus
from movie_factory.services import scene_machine
from movie_factory.services.credit_ledger import CreditLedger
from movie_factory.settings import Settings, get_settings

logger = logging.getLogger(__name__)

DELETABLE_STATUSES = {
    ProjectStatus.draft,
    ProjectStatus.script_ready,
    ProjectStatus.completed,
    ProjectStatus.failed,
    ProjectStatus.cancelled,
}


class StartRejected(Exception):
    """A business precondition for starting generation is not met."""


async def _transition(
    session: AsyncSession,
    project_id: int,
    sources: Iterable[ProjectStatus],
    target: ProjectStatus,
    *conditions,
    **values,
) -> bool:
    source_values = [s.value for s in sources]
    result = await session.execute(
        update(MovieProject)
        .where(MovieProject.id == project_id, MovieProject.status.in_(source_values), *conditions)
        .values(status=target.value, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        logger.debug(f"[project] Project {project_id}: {source_values} -> {target.value} rejected")
        return False
    logger.info(f"[project] Project {project_id} -> {target.value}")
    return True


# ── Script ───────────────────────────────────────────────────

async def begin_script_generation(session: AsyncSession, project_id: int) -> bool:
    return await _transition(
        session, project_id,
        [ProjectStatus.draft, ProjectStatus.script_ready], ProjectStatus.script_generating,
        error_message=None,
    )


async def mark_script_ready(
    session: AsyncSession,
    project_id: int,
    *,
    total_scenes: int,
    estimated_credits: int,
    script_data: dict | None = None,
) -> bool:
    return await _transition(
        session, project_id,
        [ProjectStatus.script_generating], ProjectStatus.script_ready,
        total_scenes=total_scenes,
        estimated_credits=estimated_credits,
        script_data=script_data,
        current_scene=0,
        completed_scenes=0,
    )


async def revert_script_failure(session: AsyncSession, project_id: int, reason: str) -> bool:
    return await _transition(
        session, project_id,
        [ProjectStatus.script_generating], ProjectStatus.draft,
        error_message=reason[:1000],
    )


# ── Generation control ───────────────────────────────────────

async def _check_concurrency(session: AsyncSession, project: MovieProject, settings: Settings) -> None:
    active = await session.scalar(
        select(func.count(MovieProject.id)).where(
            MovieProject.user_id == project.user_id,
            MovieProject.status == ProjectStatus.generating.value,
            MovieProject.id != project.id,
        )
    ) or 0
    if active >= settings.movie_max_concurrent_per_user:
        raise StartRejected(
            f"Maximum {settings.movie_max_concurrent_per_user} concurrent movie generations allowed. "
            f"Wait for a project to finish or pause one."
        )


async def start_generation(
    session: AsyncSession,
    project_id: int,
    *,
    settings: Settings | None = None,
) -> bool:
    """script_ready -> generating, pointer at scene 1.

    Raises StartRejected when the owner lacks credits, already runs the
    maximum number of generating projects, or the project has no scenes.
    Returns False when the project is no longer script_ready.
    """
    settings = settings or get_settings()
    project = await session.get(MovieProject, project_id)
    if project is None:
        raise LookupError(f"Project {project_id} not found")
    if project.status != ProjectStatus.script_ready.value:
        return False

    scene_count = await session.scalar(
        select(func.count(MovieScene.id)).where(MovieScene.project_id == project_id)
    ) or 0
    if scene_count == 0:
        raise StartRejected("No scenes found. Generate a script first.")

    await _check_concurrency(session, project, settings)

    balance = await CreditLedger(session).balance(project.user_id)
    if balance < settings.movie_min_start_credits:
        raise StartRejected("Insufficient credits to start generation. Credits are deducted per scene.")

    return await _transition(
        session, project_id,
        [ProjectStatus.script_ready], ProjectStatus.generating,
        total_scenes=scene_count,
        current_scene=1,
        completed_scenes=0,
        spent_credits=0,
        error_message=None,
    )


async def pause(session: AsyncSession, project_id: int, *, reason: str | None = None) -> bool:
    """generating -> paused. Progress fields are left untouched."""
    return await _transition(
        session, project_id,
        [ProjectStatus.generating], ProjectStatus.paused,
        error_message=reason,
    )


async def resume(session: AsyncSession, project_id: int, *, settings: Settings | None = None) -> bool:
    """paused -> generating, continuing from ``current_scene``.

    The per-user concurrency cap applies as on start: StartRejected when the
    owner already runs the maximum number of generating projects.
    """
    settings = settings or get_settings()
    project = await session.get(MovieProject, project_id, populate_existing=True)
    if project is None:
        raise LookupError(f"Project {project_id} not found")
    if project.status != ProjectStatus.paused.value:
        return False
    await _check_concurrency(session, project, settings)
    return await _transition(
        session, project_id,
        [ProjectStatus.paused], ProjectStatus.generating,
        error_message=None,
    )


async def cancel(session: AsyncSession, project_id: int) -> bool:
    """generating | paused -> cancelled; every unfinished scene becomes skipped.

    An in-flight provider request is not aborted. The next poll ignores it
    because the project is no longer generating.
    """
    cancelled = await _transition(
        session, project_id,
        [ProjectStatus.generating, ProjectStatus.paused], ProjectStatus.cancelled,
    )
    if cancelled:
        skipped = await scene_machine.skip_unfinished(session, project_id)
        logger.info(f"[project] Project {project_id} cancelled, {skipped} scenes skipped")
    return cancelled


# ── Progress (called by the orchestrator) ────────────────────

async def record_scene_completed(
    session: AsyncSession,
    project_id: int,
    *,
    scene_number: int,
    credit_cost: int,
) -> bool:
    """Count scene ``scene_number`` as done and move the pointer past it.

    Conditioned on the project still generating with its pointer at that
    scene, so a scene is never counted twice.
    """
    return await _transition(
        session, project_id,
        [ProjectStatus.generating], ProjectStatus.generating,
        MovieProject.current_scene == scene_number,
        completed_scenes=MovieProject.completed_scenes + 1,
        spent_credits=MovieProject.spent_credits + credit_cost,
        current_scene=sa.case(
            (MovieProject.current_scene < MovieProject.total_scenes, MovieProject.current_scene + 1),
            else_=MovieProject.current_scene,
        ),
    )


async def advance_current_scene(session: AsyncSession, project_id: int, *, scene_number: int) -> bool:
    return await _transition(
        session, project_id,
        [ProjectStatus.generating], ProjectStatus.generating,
        MovieProject.current_scene == scene_number,
        MovieProject.current_scene < MovieProject.total_scenes,
        current_scene=MovieProject.current_scene + 1,
    )


async def fail(session: AsyncSession, project_id: int, reason: str) -> bool:
    return await _transition(
        session, project_id,
        [ProjectStatus.generating], ProjectStatus.failed,
        error_message=reason[:1000],
    )


async def on_scene_failed(session: AsyncSession, project_id: int, *, scene_number: int, reason: str) -> bool:
    return await fail(
        session, project_id,
        f"Scene {scene_number} failed after {scene_machine.MAX_RETRIES} retries: {reason}",
    )


async def on_all_scenes_complete(
    session: AsyncSession,
    project_id: int,
    *,
    completed_scenes: int,
    final_video_url: str | None,
    total_duration_seconds: float | None,
    now: datetime | None = None,
) -> bool:
    return await _transition(
        session, project_id,
        [ProjectStatus.generating], ProjectStatus.completed,
        completed_scenes=completed_scenes,
        final_video_url=final_video_url,
        total_duration_seconds=total_duration_seconds,
        completed_at=now or datetime.now(timezone.utc),
        error_message=None,
    )

"""
Movie project lifecycle endpoints.

Guard rejections (the project is not in a status the action accepts) are
409, business preconditions are 400, unknown ids are 404.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from .db import get_session
from .models import MovieProject, MovieScene, ProjectStatus, User
from .schemas import (
    MovieProjectCreate,
    MovieProjectDetail,
    MovieProjectRead,
    PauseRequest,
    SceneEditRequest,
    ScriptResponse,
)
from .services import project_machine, scene_machine
from .services.script_generator import ScriptGenerationError, generate_project_script

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/movies", tags=["movies"])

SessionDep = Depends(get_session)

EDITABLE_STATUSES = {ProjectStatus.script_ready.value, ProjectStatus.paused.value}


async def _get_project(session: AsyncSession, project_id: int, *, with_scenes: bool = False) -> MovieProject:
    query = select(MovieProject).where(MovieProject.id == project_id).execution_options(populate_existing=True)
    if with_scenes:
        query = query.options(selectinload(MovieProject.scenes))
    project = await session.scalar(query)
    if not project:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")
    return project


def _conflict(project_id: int, action: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=f"Project {project_id} cannot {action} from its current status",
    )


@router.post("/projects", response_model=MovieProjectRead, status_code=status.HTTP_201_CREATED)
async def create_project(data: MovieProjectCreate, session: AsyncSession = SessionDep):
    if not await session.get(User, data.user_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    project = MovieProject(**data.model_dump(), status=ProjectStatus.draft.value)
    session.add(project)
    await session.commit()
    await session.refresh(project)
    logger.info(f"[movies] Project {project.id} created for user {data.user_id}")
    return project


@router.get("/projects/{project_id}", response_model=MovieProjectDetail)
async def get_project(project_id: int, session: AsyncSession = SessionDep):
    return await _get_project(session, project_id, with_scenes=True)


@router.post("/projects/{project_id}/generate-script", response_model=ScriptResponse)
async def generate_script(project_id: int, session: AsyncSession = SessionDep):
    project = await _get_project(session, project_id)
    if project.status not in (ProjectStatus.draft.value, ProjectStatus.script_ready.value):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Cannot generate script for project in '{project.status}' status",
        )
    if not await project_machine.begin_script_generation(session, project_id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Script generation already in progress")
    await session.commit()

    try:
        script = await generate_project_script(session, project_id)
    except ScriptGenerationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Script generation failed: {exc}",
        )

    project = await _get_project(session, project_id)
    return ScriptResponse(
        total_scenes=script.total_scenes,
        estimated_duration_seconds=script.estimated_duration_seconds,
        estimated_credits=project.estimated_credits,
        summary=script.summary,
    )


@router.patch("/projects/{project_id}/scenes")
async def edit_scenes(project_id: int, data: SceneEditRequest, session: AsyncSession = SessionDep):
    """Edit prompts before starting, or while paused. Generated scenes are left alone."""
    project = await _get_project(session, project_id)
    if project.status not in EDITABLE_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Cannot edit scenes when project is in '{project.status}' status",
        )

    updated = 0
    errors = []
    for edit in data.scenes:
        fields = edit.changes()
        if not fields:
            continue
        if await scene_machine.edit_pending_scene(session, project_id, edit.scene_number, **fields):
            updated += 1
        else:
            errors.append(f"Scene {edit.scene_number}: not found or already generated")
    await session.commit()

    logger.info(f"[movies] Project {project_id}: {updated} scenes edited")
    return {"ok": True, "updated": updated, "errors": errors}


@router.post("/projects/{project_id}/start", response_model=MovieProjectRead)
async def start_project(project_id: int, session: AsyncSession = SessionDep):
    await _get_project(session, project_id)
    try:
        started = await project_machine.start_generation(session, project_id)
    except project_machine.StartRejected as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if not started:
        raise _conflict(project_id, "start")
    await session.commit()
    return await _get_project(session, project_id)


@router.post("/projects/{project_id}/pause", response_model=MovieProjectRead)
async def pause_project(project_id: int, data: PauseRequest | None = None, session: AsyncSession = SessionDep):
    await _get_project(session, project_id)
    if not await project_machine.pause(session, project_id, reason=data.reason if data else None):
        raise _conflict(project_id, "pause")
    await session.commit()
    return await _get_project(session, project_id)


@router.post("/projects/{project_id}/resume", response_model=MovieProjectRead)
async def resume_project(project_id: int, session: AsyncSession = SessionDep):
    await _get_project(session, project_id)
    try:
        resumed = await project_machine.resume(session, project_id)
    except project_machine.StartRejected as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if not resumed:
        raise _conflict(project_id, "resume")
    await session.commit()
    return await _get_project(session, project_id)


@router.post("/projects/{project_id}/cancel", response_model=MovieProjectRead)
async def cancel_project(project_id: int, session: AsyncSession = SessionDep):
    await _get_project(session, project_id)
    if not await project_machine.cancel(session, project_id):
        raise _conflict(project_id, "cancel")
    await session.commit()
    return await _get_project(session, project_id)


@router.delete("/projects/{project_id}")
async def delete_project(project_id: int, session: AsyncSession = SessionDep):
    project = await _get_project(session, project_id)
    deletable = [s.value for s in project_machine.DELETABLE_STATUSES]
    if project.status not in deletable:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Cannot delete project in '{project.status}' status. Cancel it first.",
        )
    await session.execute(delete(MovieScene).where(MovieScene.project_id == project_id))
    result = await session.execute(
        delete(MovieProject)
        .where(MovieProject.id == project_id, MovieProject.status.in_(deletable))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await session.rollback()
        raise _conflict(project_id, "be deleted")
    await session.commit()
    logger.info(f"[movies] Project {project_id} deleted")
    return {"ok": True, "id": project_id}

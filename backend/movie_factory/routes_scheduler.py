"""
Scheduler API Routes

Status and manual control of the in-process orchestrator scheduler.
"""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel

from .services.scheduler import scheduler_service

router = APIRouter(prefix="/api/scheduler", tags=["scheduler"])


class SchedulerStatus(BaseModel):
    running: bool
    jobs_count: int
    jobs: list[dict]


@router.get("/status", response_model=SchedulerStatus)
async def get_scheduler_status():
    jobs = scheduler_service.get_jobs()
    return SchedulerStatus(
        running=scheduler_service.is_running(),
        jobs_count=len(jobs),
        jobs=jobs,
    )


@router.post("/start", response_model=dict)
async def start_scheduler():
    if scheduler_service.is_running():
        return {"status": "already_running"}
    scheduler_service.start()
    return {"status": "started", "jobs": scheduler_service.get_jobs()}


@router.post("/stop", response_model=dict)
async def stop_scheduler():
    if not scheduler_service.is_running():
        return {"status": "already_stopped"}
    scheduler_service.stop()
    return {"status": "stopped"}


@router.post("/jobs/{job_id}/run", response_model=dict)
async def run_job_now(job_id: str):
    """Run a job immediately, outside its schedule."""
    result = await scheduler_service.run_now(job_id)
    if "error" in result:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=result["error"])
    return result

"""
Scheduler Service

Runs the movie scene orchestrator on a fixed interval inside the API process.

Several backend instances may run the same job; the orchestrator's own
distributed lock makes every tick but one a no-op. Controlled by
SCHEDULER_ENABLED env (default: true).
"""
from __future__ import annotations

import logging
from typing import Any, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from movie_factory.services.notify import notify_error
from movie_factory.services.scene_processor import JOB_NAME, SceneProcessor, build_scene_processor
from movie_factory.settings import get_settings

logger = logging.getLogger("scheduler")


class SchedulerService:
    """Interval scheduler for the orchestrator."""

    _instance: "SchedulerService | None" = None

    def __init__(self, processor_factory: Callable[[], SceneProcessor] = build_scene_processor):
        self.scheduler = AsyncIOScheduler()
        self._processor_factory = processor_factory
        self._running = False

    @classmethod
    def get_instance(cls) -> "SchedulerService":
        """Get singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def start(self):
        """Start the scheduler (respects SCHEDULER_ENABLED env)."""
        settings = get_settings()
        if not settings.scheduler_enabled:
            logger.info("Scheduler DISABLED by SCHEDULER_ENABLED=false, skipping start")
            return

        if self._running:
            return

        self.scheduler.add_job(
            self._run_process_movie_scenes,
            IntervalTrigger(minutes=settings.movie_process_interval_minutes),
            id=JOB_NAME,
            name="Advance movie scene pipelines",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        self.scheduler.start()
        self._running = True
        logger.info(
            "Scheduler started (%s every %d min)", JOB_NAME, settings.movie_process_interval_minutes,
        )

    def stop(self):
        """Stop the scheduler."""
        if not self._running:
            return
        self.scheduler.shutdown(wait=False)
        self._running = False
        logger.info("Scheduler stopped")

    def is_running(self) -> bool:
        return self._running

    async def _run_process_movie_scenes(self) -> dict[str, Any]:
        report = await self._processor_factory().step()
        if report.skipped:
            logger.debug("[%s] Lock held by another run, skipping tick", JOB_NAME)
        else:
            logger.info(
                "[%s] Completed: %d projects, %d processed, %d errors",
                JOB_NAME, report.projects, report.processed, report.errors,
            )
        return report.to_dict()

    def get_jobs(self) -> list[dict]:
        """Get list of all scheduled jobs."""
        jobs = []
        for job in self.scheduler.get_jobs():
            next_run = job.next_run_time
            jobs.append({
                "id": job.id,
                "name": job.name,
                "next_run": next_run.isoformat() if next_run else None,
                "trigger": str(job.trigger),
            })
        return jobs

    async def run_now(self, job_id: str) -> dict:
        """Run a job immediately."""
        if job_id != JOB_NAME:
            return {"error": f"Job {job_id} not found"}
        try:
            result = await self._run_process_movie_scenes()
            return {"ok": True, "result": result}
        except Exception as e:
            logger.error("Failed to run job %s: %s", job_id, e)
            await notify_error(f"Scheduler job {job_id} failed", str(e))
            return {"error": str(e)}


# Global instance
scheduler_service = SchedulerService.get_instance()

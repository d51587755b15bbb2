"""
Movie scene orchestrator.

``SceneProcessor.step`` is invoked periodically (APScheduler tick, Celery beat
task or the cron HTTP endpoint). Each run:

1. takes the ``process_movie_scenes`` lock (busy -> skipped, no side effects);
2. selects up to ``MOVIE_BATCH_SIZE`` generating projects, least recently
   touched first;
3. advances each project by exactly one step of the scene at its
   ``current_scene`` pointer, in its own session;
4. releases the lock, whatever happened.

Every state change goes through the project/scene machines, so a stale run
whose lock expired only ever gets guard rejections.

Refunds: credits are debited before submit. They are returned only when
nothing reached the provider (submit raised) or when the scene left
``pending`` while we were submitting. Failures reported by the provider after
dispatch keep the charge.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from movie_factory.db import AsyncSessionLocal, SessionFactory
from movie_factory.models import (
    GenerationRequest,
    GenerationStatus,
    MovieProject,
    MovieScene,
    ProjectStatus,
    SceneStatus,
)
from movie_factory.services import continuity, notify, project_machine, scene_machine, video_models
from movie_factory.services.credit_ledger import CreditLedger, InsufficientCredits
from movie_factory.services.distributed_lock import DatabaseLock, RedisLock, build_lock
from movie_factory.services.generation_provider import (
    POLL_COMPLETED,
    POLL_PENDING,
    GenerationInput,
    GenerationProvider,
    ProviderError,
    build_provider,
)
from movie_factory.services.narration import NARRATION_FAILED_NOTE, Narrator, build_narrator, narration_requested
from movie_factory.services.scene_storage import LocalSceneStorage, SceneStorage, StorageError
from movie_factory.settings import Settings, get_settings

logger = logging.getLogger(__name__)

JOB_NAME = "process_movie_scenes"
INSUFFICIENT_CREDITS_MESSAGE = "Insufficient credits. Add more credits and resume."
GENERATION_FAILED_REASON = "video generation did not succeed"
FRAME_OFFSET_SEC = 0.1

IDLE_ACTIONS = {"waiting", "rejected", "idle"}


@dataclass(frozen=True)
class ProjectView:
    id: int
    user_id: int
    title: str
    model: str
    style: str | None
    voice_id: str | None
    aspect_ratio: str
    status: str
    total_scenes: int
    current_scene: int
    completed_scenes: int

    @classmethod
    def of(cls, row: MovieProject) -> "ProjectView":
        return cls(
            row.id, row.user_id, row.title, row.model, row.style, row.voice_id, row.aspect_ratio,
            row.status, row.total_scenes, row.current_scene, row.completed_scenes,
        )


@dataclass(frozen=True)
class SceneView:
    id: int
    scene_number: int
    status: str
    video_prompt: str
    narration_text: str | None
    ai_generation_id: int | None
    credit_cost: int
    retry_count: int
    video_url: str | None
    error_message: str | None

    @classmethod
    def of(cls, row: MovieScene) -> "SceneView":
        return cls(
            row.id, row.scene_number, row.status, row.video_prompt, row.narration_text,
            row.ai_generation_id, row.credit_cost, row.retry_count, row.video_url, row.error_message,
        )


@dataclass
class StepResult:
    project_id: int
    action: str
    scene_number: int | None = None
    project_status: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ProcessReport:
    ok: bool = True
    skipped: bool = False
    reason: str | None = None
    projects: int = 0
    processed: int = 0
    completed: int = 0
    failed: int = 0
    paused: int = 0
    errors: int = 0
    results: list[StepResult] = field(default_factory=list)

    def record(self, result: StepResult) -> None:
        self.results.append(result)
        if result.action == "error":
            self.errors += 1
            return
        if result.action not in IDLE_ACTIONS:
            self.processed += 1
        if result.project_status == ProjectStatus.completed.value:
            self.completed += 1
        elif result.project_status == ProjectStatus.failed.value:
            self.failed += 1
        elif result.project_status == ProjectStatus.paused.value:
            self.paused += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "skipped": self.skipped,
            "reason": self.reason,
            "projects": self.projects,
            "processed": self.processed,
            "completed": self.completed,
            "failed": self.failed,
            "paused": self.paused,
            "errors": self.errors,
            "results": [r.to_dict() for r in self.results],
        }


class SceneProcessor:
    def __init__(
        self,
        session_factory: SessionFactory,
        provider: GenerationProvider,
        storage: SceneStorage,
        lock: DatabaseLock | RedisLock,
        narrator: Narrator | None = None,
        settings: Settings | None = None,
    ):
        self.session_factory = session_factory
        self.provider = provider
        self.storage = storage
        self.lock = lock
        self.narrator = narrator
        self.settings = settings or get_settings()

    async def step(self, now: datetime | None = None) -> ProcessReport:
        now = now or datetime.now(timezone.utc)
        report = ProcessReport()

        handle = await self.lock.acquire(JOB_NAME, self.settings.movie_lock_ttl_sec, now=now)
        if handle is None:
            logger.info("[movie_scenes] Another run holds the lock, skipping")
            report.skipped = True
            report.reason = "lock_held"
            return report

        try:
            project_ids = await self._select_projects()
            report.projects = len(project_ids)
            if not project_ids:
                logger.debug("[movie_scenes] No generating projects")
                return report

            if self.settings.movie_max_parallel > 1:
                semaphore = asyncio.Semaphore(self.settings.movie_max_parallel)

                async def _guarded(pid: int) -> StepResult:
                    async with semaphore:
                        return await self._run_project(pid, now)

                results = await asyncio.gather(*(_guarded(pid) for pid in project_ids))
            else:
                results = [await self._run_project(pid, now) for pid in project_ids]

            for result in results:
                report.record(result)
            logger.info(
                f"[movie_scenes] Run done: projects={report.projects} processed={report.processed} "
                f"completed={report.completed} failed={report.failed} paused={report.paused} errors={report.errors}"
            )
        finally:
            await self.lock.release(handle)
        return report

    async def _select_projects(self) -> list[int]:
        async with self.session_factory() as session:
            rows = await session.scalars(
                select(MovieProject.id)
                .where(MovieProject.status == ProjectStatus.generating.value)
                .order_by(MovieProject.updated_at.asc(), MovieProject.id.asc())
                .limit(self.settings.movie_batch_size)
            )
            return list(rows)

    async def _run_project(self, project_id: int, now: datetime) -> StepResult:
        try:
            async with self.session_factory() as session:
                return await self.process_project(session, project_id, now)
        except Exception as exc:
            logger.exception(f"[movie_scenes] Project {project_id}: unexpected error")
            return StepResult(project_id, "error", error=str(exc)[:500])

    async def process_project(self, session: AsyncSession, project_id: int, now: datetime) -> StepResult:
        """One scene transition for one project."""
        row = await session.get(MovieProject, project_id, populate_existing=True)
        if row is None or row.status != ProjectStatus.generating.value:
            return StepResult(project_id, "rejected")
        project = ProjectView.of(row)

        if project.total_scenes > 0 and project.completed_scenes >= project.total_scenes:
            return await self._finalize(session, project, now)

        scene_row = await session.scalar(
            select(MovieScene)
            .where(MovieScene.project_id == project.id, MovieScene.scene_number == project.current_scene)
            .execution_options(populate_existing=True)
        )
        if scene_row is None:
            return await self._fail_project(
                session, project, None, f"Scene {project.current_scene} not found",
            )
        scene = SceneView.of(scene_row)

        if scene.status == SceneStatus.pending.value:
            return await self._handle_pending(session, project, scene, now)
        if scene.status == SceneStatus.generating.value:
            return await self._handle_generating(session, project, scene, now)
        if scene.status == SceneStatus.narrating.value:
            return await self._handle_narrating(session, project, scene)
        if scene.status == SceneStatus.merging.value:
            return await self._complete_scene(
                session, project, scene, scene.video_url, from_status=SceneStatus.merging, now=now,
            )
        if scene.status == SceneStatus.completed.value:
            return await self._handle_completed(session, project, scene, now)
        if scene.status == SceneStatus.failed.value:
            return await self._fail_project(session, project, scene, GENERATION_FAILED_REASON)
        return StepResult(project.id, "idle", scene.scene_number)

    # ── pending ─────────────────────────────────────────────

    async def _handle_pending(
        self, session: AsyncSession, project: ProjectView, scene: SceneView, now: datetime
    ) -> StepResult:
        if scene_machine.retries_exhausted(scene.retry_count):
            if not await scene_machine.mark_failed(session, scene.id, scene.error_message or GENERATION_FAILED_REASON):
                return StepResult(project.id, "rejected", scene.scene_number)
            return await self._fail_project(session, project, scene, GENERATION_FAILED_REASON)

        cost = video_models.scene_credit_cost(project.model)
        reference = f"movie:{project.id}:scene:{scene.scene_number}"
        image_url = await continuity.resolve_reference_frame(session, project.id, scene.scene_number)
        ledger = CreditLedger(session)

        try:
            await ledger.debit(
                project.user_id, cost, reason=f"Movie scene {scene.scene_number}", reference=reference,
            )
        except InsufficientCredits as exc:
            await session.rollback()
            logger.info(f"[movie_scenes] Project {project.id}: {exc}, pausing")
            paused = await project_machine.pause(session, project.id, reason=INSUFFICIENT_CREDITS_MESSAGE)
            await session.commit()
            if not paused:
                return StepResult(project.id, "rejected", scene.scene_number)
            await notify.notify_project_paused(project.id, project.title, INSUFFICIENT_CREDITS_MESSAGE)
            return StepResult(project.id, "paused", scene.scene_number, ProjectStatus.paused.value)
        await session.commit()

        request = GenerationInput(
            model=project.model,
            prompt=scene.video_prompt,
            style=project.style,
            aspect_ratio=project.aspect_ratio,
            image_url=image_url,
            webhook_url=self.settings.webhook_url,
        )
        try:
            request_id = await self.provider.submit(request)
        except Exception as exc:
            # Nothing was dispatched: the charge goes back.
            reason = str(exc) or exc.__class__.__name__
            logger.warning(f"[movie_scenes] Project {project.id} scene {scene.scene_number}: submit failed: {reason}")
            await ledger.credit(
                project.user_id, cost,
                reason=f"Refund: movie scene {scene.scene_number} submission failed",
                reference=reference,
            )
            await scene_machine.record_submit_failure(session, scene.id, reason)
            await session.commit()
            return StepResult(project.id, "submit_failed", scene.scene_number, error=reason[:500])

        generation = GenerationRequest(
            user_id=project.user_id,
            provider_request_id=request_id,
            model=project.model,
            prompt=scene.video_prompt[:2000],
            mode=request.mode,
            image_url=image_url,
            status=GenerationStatus.pending.value,
            credit_amount=cost,
        )
        session.add(generation)
        await session.flush()
        generation_id = generation.id

        if not await scene_machine.mark_generating(session, scene.id, generation_id=generation_id, credit_cost=cost):
            await ledger.credit(
                project.user_id, cost,
                reason=f"Refund: movie scene {scene.scene_number} no longer pending",
                reference=reference,
            )
            await session.commit()
            return StepResult(project.id, "rejected", scene.scene_number)

        await session.commit()
        logger.info(
            f"[movie_scenes] Scene {scene.scene_number}/{project.total_scenes} submitted for project "
            f"{project.id} ({request.mode}, request={request_id})"
        )
        return StepResult(project.id, "submitted", scene.scene_number)

    # ── generating ──────────────────────────────────────────

    async def _handle_generating(
        self, session: AsyncSession, project: ProjectView, scene: SceneView, now: datetime
    ) -> StepResult:
        generation = None
        if scene.ai_generation_id is not None:
            generation = await session.get(GenerationRequest, scene.ai_generation_id, populate_existing=True)
        if generation is None:
            return await self._retry(session, project, scene, "Generation record not found")

        status = generation.status
        video_url = generation.video_url
        error = generation.error_message

        if status in (GenerationStatus.pending.value, GenerationStatus.processing.value):
            # Fallback for a missed webhook.
            try:
                poll = await self.provider.poll(generation.model, generation.provider_request_id)
            except ProviderError as exc:
                logger.warning(f"[movie_scenes] Project {project.id} scene {scene.scene_number}: poll failed: {exc}")
                return StepResult(project.id, "waiting", scene.scene_number)

            if poll.state == POLL_PENDING:
                if status == GenerationStatus.pending.value:
                    generation.status = GenerationStatus.processing.value
                    await session.commit()
                return StepResult(project.id, "waiting", scene.scene_number)

            if poll.state == POLL_COMPLETED and poll.video_url:
                generation.status = GenerationStatus.completed.value
                generation.video_url = poll.video_url
                generation.completed_at = now
                status, video_url = GenerationStatus.completed.value, poll.video_url
            else:
                generation.status = GenerationStatus.failed.value
                generation.error_message = poll.error
                generation.completed_at = now
                status, error = GenerationStatus.failed.value, poll.error
            await session.commit()

        if status == GenerationStatus.completed.value and video_url:
            if narration_requested(project.voice_id, scene.narration_text, self.narrator):
                if not await scene_machine.mark_narrating(session, scene.id, video_url=video_url):
                    return StepResult(project.id, "rejected", scene.scene_number)
                await session.commit()
                return StepResult(project.id, "narrating", scene.scene_number)
            return await self._complete_scene(
                session, project, scene, video_url, from_status=SceneStatus.generating, now=now,
            )

        return await self._retry(session, project, scene, error or "Video generation failed or timed out")

    async def _retry(self, session: AsyncSession, project: ProjectView, scene: SceneView, reason: str) -> StepResult:
        if not await scene_machine.record_generation_failure(session, scene.id, reason):
            return StepResult(project.id, "rejected", scene.scene_number)
        await session.commit()
        logger.warning(
            f"[movie_scenes] Project {project.id} scene {scene.scene_number}: attempt "
            f"{scene.retry_count + 1} failed ({reason}), back to pending"
        )
        return StepResult(project.id, "retry", scene.scene_number, error=reason[:500])

    # ── narrating ───────────────────────────────────────────

    async def _handle_narrating(self, session: AsyncSession, project: ProjectView, scene: SceneView) -> StepResult:
        video_url = scene.video_url
        note = None
        if narration_requested(project.voice_id, scene.narration_text, self.narrator) and video_url:
            try:
                video_url = await self.narrator.narrate(
                    video_url=video_url,
                    text=scene.narration_text,
                    voice_id=project.voice_id,
                    project_id=project.id,
                    scene_number=scene.scene_number,
                )
            except Exception as exc:
                logger.warning(
                    f"[movie_scenes] Project {project.id} scene {scene.scene_number}: narration failed: {exc}"
                )
                video_url = scene.video_url
                note = NARRATION_FAILED_NOTE

        if not await scene_machine.mark_merging(session, scene.id, video_url=video_url, note=note):
            return StepResult(project.id, "rejected", scene.scene_number)
        await session.commit()
        return StepResult(project.id, "merging", scene.scene_number)

    # ── completion ──────────────────────────────────────────

    async def _complete_scene(
        self,
        session: AsyncSession,
        project: ProjectView,
        scene: SceneView,
        video_url: str | None,
        *,
        from_status: SceneStatus,
        now: datetime,
    ) -> StepResult:
        if not video_url:
            raise RuntimeError(f"Scene {scene.scene_number} has no video to complete")

        duration = video_models.scene_duration(project.model)
        public_url = None
        try:
            public_url = await self.storage.persist_scene(project.id, scene.scene_number, video_url)
        except (StorageError, OSError) as exc:
            logger.warning(f"[movie_scenes] Project {project.id} scene {scene.scene_number}: persist failed: {exc}")

        last_frame_url = None
        try:
            last_frame_url = await self.storage.extract_last_frame(
                project.id, scene.scene_number, public_url or video_url, max(duration - FRAME_OFFSET_SEC, 0),
            )
        except (StorageError, OSError) as exc:
            logger.warning(
                f"[movie_scenes] Project {project.id} scene {scene.scene_number}: frame extraction failed, "
                f"next scene falls back to text-to-video: {exc}"
            )

        if not await project_machine.record_scene_completed(
            session, project.id, scene_number=scene.scene_number, credit_cost=scene.credit_cost,
        ):
            return StepResult(project.id, "rejected", scene.scene_number)
        output = scene_machine.SceneOutput(
            video_url=video_url,
            public_video_url=public_url,
            last_frame_url=last_frame_url,
            duration_seconds=duration,
        )
        if not await scene_machine.mark_completed(session, scene.id, output, from_status=from_status, now=now):
            await session.rollback()
            return StepResult(project.id, "rejected", scene.scene_number)
        await session.commit()

        completed = project.completed_scenes + 1
        logger.info(
            f"[movie_scenes] Scene {scene.scene_number}/{project.total_scenes} completed for project "
            f"{project.id} ({completed}/{project.total_scenes})"
        )
        if completed >= project.total_scenes:
            return await self._finalize(session, project, now)
        return StepResult(project.id, "scene_completed", scene.scene_number)

    async def _handle_completed(
        self, session: AsyncSession, project: ProjectView, scene: SceneView, now: datetime
    ) -> StepResult:
        if project.completed_scenes >= project.total_scenes:
            return await self._finalize(session, project, now)
        if not await project_machine.advance_current_scene(session, project.id, scene_number=scene.scene_number):
            logger.warning(
                f"[movie_scenes] Project {project.id}: scene {scene.scene_number} completed but pointer "
                f"cannot advance ({project.completed_scenes}/{project.total_scenes})"
            )
            return StepResult(project.id, "rejected", scene.scene_number)
        await session.commit()
        return StepResult(project.id, "advanced", scene.scene_number)

    async def _finalize(self, session: AsyncSession, project: ProjectView, now: datetime) -> StepResult:
        rows = (
            await session.execute(
                select(
                    MovieScene.scene_number,
                    MovieScene.public_video_url,
                    MovieScene.video_url,
                    MovieScene.duration_seconds,
                )
                .where(MovieScene.project_id == project.id, MovieScene.status == SceneStatus.completed.value)
                .order_by(MovieScene.scene_number.asc())
            )
        ).all()
        if len(rows) < project.total_scenes:
            logger.warning(
                f"[movie_scenes] Project {project.id}: {len(rows)}/{project.total_scenes} scenes completed, "
                f"not finalizing"
            )
            return StepResult(project.id, "waiting")

        final_url = None
        try:
            final_url = await self.storage.assemble_movie(project.id, [r.public_video_url or r.video_url for r in rows])
        except (StorageError, OSError) as exc:
            logger.warning(f"[movie_scenes] Project {project.id}: assembly failed, completing without final movie: {exc}")

        total_duration = sum(r.duration_seconds or video_models.DEFAULT_SCENE_SECONDS for r in rows)
        if not await project_machine.on_all_scenes_complete(
            session, project.id,
            completed_scenes=len(rows),
            final_video_url=final_url,
            total_duration_seconds=total_duration,
            now=now,
        ):
            return StepResult(project.id, "rejected")
        await session.commit()
        logger.info(f"[movie_scenes] Project {project.id} completed: {len(rows)} scenes, {total_duration:.0f}s")
        await notify.notify_project_completed(project.id, project.title, final_url)
        return StepResult(project.id, "project_completed", project_status=ProjectStatus.completed.value)

    async def _fail_project(
        self, session: AsyncSession, project: ProjectView, scene: SceneView | None, reason: str
    ) -> StepResult:
        scene_number = scene.scene_number if scene else project.current_scene
        if scene is None:
            failed = await project_machine.fail(session, project.id, reason)
        else:
            failed = await project_machine.on_scene_failed(
                session, project.id, scene_number=scene_number, reason=reason,
            )
        if not failed:
            await session.rollback()
            return StepResult(project.id, "rejected", scene_number)
        await session.commit()
        logger.error(f"[movie_scenes] Project {project.id} failed at scene {scene_number}: {reason}")
        await notify.notify_project_failed(project.id, project.title, f"Scene {scene_number}: {reason}")
        return StepResult(project.id, "project_failed", scene_number, ProjectStatus.failed.value)


def build_scene_processor(
    settings: Settings | None = None,
    session_factory: SessionFactory | None = None,
) -> SceneProcessor:
    settings = settings or get_settings()
    session_factory = session_factory or AsyncSessionLocal
    storage = LocalSceneStorage(settings)
    return SceneProcessor(
        session_factory=session_factory,
        provider=build_provider(settings),
        storage=storage,
        lock=build_lock(session_factory, settings),
        narrator=build_narrator(settings, storage),
        settings=settings,
    )

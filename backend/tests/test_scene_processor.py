"""
Orchestrator runs against a real database with fake provider/storage.

Each ``step`` call is one cron tick; a scene needs one tick to submit and one
to complete, so a five scene movie finishes in ten ticks.
"""
import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select, update

from conftest import NOW, FakeNarrator
from movie_factory.models import CreditTransaction, GenerationRequest, MovieScene
from movie_factory.services import project_machine
from movie_factory.services.credit_ledger import CreditLedger
from movie_factory.services.generation_provider import POLL_FAILED, POLL_PENDING, GenerationPoll, ProviderError
from movie_factory.services.narration import NARRATION_FAILED_NOTE
from movie_factory.services.scene_processor import (
    INSUFFICIENT_CREDITS_MESSAGE,
    JOB_NAME,
    ProcessReport,
    SceneProcessor,
    StepResult,
)


async def run_ticks(processor, count):
    reports = []
    for i in range(count):
        reports.append(await processor.step(NOW + timedelta(minutes=2 * i)))
    return reports


async def assert_ledger_consistent(loaders, project_id):
    project = await loaders.project(project_id)
    scenes = await loaders.scenes(project_id)
    completed = [s for s in scenes if s.status == "completed"]
    assert project.completed_scenes == len(completed)
    assert project.spent_credits == sum(s.credit_cost for s in completed)


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_five_scene_movie(self, seed, processor, provider, storage, loaders):
        user_id, project_id = await seed(balance=100, scenes=5)

        reports = await run_ticks(processor, 10)

        project = await loaders.project(project_id)
        assert project.status == "completed"
        assert project.completed_scenes == 5
        assert project.spent_credits == 35
        assert project.final_video_url == f"https://files.test/movies/{project_id}/final.mp4"
        assert project.total_duration_seconds == 25.0
        assert (await loaders.user(user_id)).balance_credits == 65
        assert len(provider.submitted) == 5
        assert storage.assembled == [
            (project_id, [f"https://files.test/movies/{project_id}/scene_{n:03d}.mp4" for n in range(1, 6)])
        ]
        assert reports[-1].completed == 1
        assert [r.action for r in reports[-1].results] == ["project_completed"]
        await assert_ledger_consistent(loaders, project_id)

    @pytest.mark.asyncio
    async def test_scenes_chain_through_last_frames(self, seed, processor, provider, loaders):
        _, project_id = await seed(scenes=3)

        await run_ticks(processor, 6)

        assert provider.submitted[0].image_url is None
        assert provider.submitted[0].mode == "text-to-video"
        assert provider.submitted[1].image_url == f"https://files.test/movies/{project_id}/frames/scene_001.jpg"
        assert provider.submitted[2].image_url == f"https://files.test/movies/{project_id}/frames/scene_002.jpg"
        assert provider.submitted[1].mode == "image-to-video"

    @pytest.mark.asyncio
    async def test_frame_failure_falls_back_to_text_to_video(self, seed, processor, provider, storage, loaders):
        _, project_id = await seed(scenes=2)
        storage.frame_fails = True

        await run_ticks(processor, 4)

        assert provider.submitted[1].image_url is None
        assert (await loaders.project(project_id)).status == "completed"

    @pytest.mark.asyncio
    async def test_frame_is_grabbed_just_before_clip_end(self, seed, processor, storage):
        await seed(scenes=1, model="kling-2.6")

        await run_ticks(processor, 2)

        assert storage.frames[0][3] == pytest.approx(4.9)

    @pytest.mark.asyncio
    async def test_assembly_failure_still_completes(self, seed, processor, storage, loaders):
        _, project_id = await seed(scenes=2)
        storage.assemble_fails = True

        await run_ticks(processor, 4)

        project = await loaders.project(project_id)
        assert project.status == "completed"
        assert project.final_video_url is None

    @pytest.mark.asyncio
    async def test_pending_poll_waits(self, seed, processor, provider, session_factory):
        _, project_id = await seed(scenes=1)
        provider.poll_results = [GenerationPoll(POLL_PENDING), ProviderError("502 from queue")]

        await processor.step(NOW)
        waiting = await processor.step(NOW)
        flaky = await processor.step(NOW)

        assert [r.action for r in waiting.results] == ["waiting"]
        assert [r.action for r in flaky.results] == ["waiting"]
        assert waiting.processed == 0
        async with session_factory() as s:
            generation = (await s.scalars(select(GenerationRequest))).one()
        assert generation.status == "processing"

    @pytest.mark.asyncio
    async def test_webhook_result_is_used_without_polling(self, seed, processor, provider, session_factory, loaders):
        _, project_id = await seed(scenes=1)
        await processor.step(NOW)
        async with session_factory() as s:
            await s.execute(
                update(GenerationRequest).values(status="completed", video_url="https://cdn.test/hook.mp4")
            )
            await s.commit()

        await processor.step(NOW)

        assert provider.polls == []
        scene = (await loaders.scenes(project_id))[0]
        assert scene.video_url == "https://cdn.test/hook.mp4"


class TestCredits:
    @pytest.mark.asyncio
    async def test_insufficient_credits_pause_then_resume(
        self, seed, processor, provider, session_factory, loaders,
    ):
        user_id, project_id = await seed(balance=10, scenes=3)

        reports = await run_ticks(processor, 3)

        project = await loaders.project(project_id)
        assert project.status == "paused"
        assert project.error_message == INSUFFICIENT_CREDITS_MESSAGE
        assert (project.current_scene, project.completed_scenes) == (2, 1)
        assert reports[-1].paused == 1
        assert (await loaders.user(user_id)).balance_credits == 3
        assert (await processor.step(NOW)).projects == 0

        async with session_factory() as s:
            await CreditLedger(s).credit(user_id, 50, reason="Top up", kind="purchase")
            assert await project_machine.resume(s, project_id)
            await s.commit()

        await run_ticks(processor, 4)

        project = await loaders.project(project_id)
        assert project.status == "completed"
        assert project.spent_credits == 21
        assert len(provider.submitted) == 3
        await assert_ledger_consistent(loaders, project_id)

    @pytest.mark.asyncio
    async def test_submit_failure_is_refunded_and_retried(
        self, seed, processor, provider, session_factory, loaders,
    ):
        user_id, project_id = await seed(balance=20, scenes=1)
        provider.submit_errors = [ProviderError("queue unavailable")]

        first = await processor.step(NOW)

        assert [r.action for r in first.results] == ["submit_failed"]
        assert (await loaders.user(user_id)).balance_credits == 20
        scene = (await loaders.scenes(project_id))[0]
        assert (scene.status, scene.retry_count) == ("pending", 1)
        async with session_factory() as s:
            amounts = [t.amount for t in await s.scalars(select(CreditTransaction).order_by(CreditTransaction.id))]
        assert amounts == [-7, 7]

        await run_ticks(processor, 2)
        assert (await loaders.project(project_id)).status == "completed"
        assert (await loaders.user(user_id)).balance_credits == 13

    @pytest.mark.asyncio
    async def test_provider_failure_after_dispatch_keeps_the_charge(self, seed, processor, provider, loaders):
        user_id, project_id = await seed(balance=50, scenes=1)
        provider.poll_results = [GenerationPoll(POLL_FAILED, error="content policy")]

        await run_ticks(processor, 2)

        scene = (await loaders.scenes(project_id))[0]
        assert (scene.status, scene.retry_count, scene.error_message) == ("pending", 1, "content policy")
        assert (await loaders.user(user_id)).balance_credits == 43


class TestFailures:
    @pytest.mark.asyncio
    async def test_scene_fails_after_three_attempts(self, seed, processor, provider, loaders):
        user_id, project_id = await seed(balance=100, scenes=2)
        provider.poll_default = GenerationPoll(POLL_FAILED, error="render crashed")

        reports = await run_ticks(processor, 7)

        assert len(provider.submitted) == 3
        scenes = await loaders.scenes(project_id)
        assert (scenes[0].status, scenes[0].retry_count) == ("failed", 3)
        assert scenes[1].status == "pending"
        project = await loaders.project(project_id)
        assert project.status == "failed"
        assert project.error_message.startswith("Scene 1 failed after 3 retries")
        assert reports[-1].failed == 1
        assert (await loaders.user(user_id)).balance_credits == 100 - 21

    @pytest.mark.asyncio
    async def test_missing_scene_fails_project(self, seed, processor, session_factory, loaders):
        _, project_id = await seed(scenes=2)
        async with session_factory() as s:
            await s.execute(update(MovieScene).where(MovieScene.scene_number == 1).values(scene_number=7))
            await s.commit()

        await processor.step(NOW)

        project = await loaders.project(project_id)
        assert project.status == "failed"
        assert "Scene 1 not found" in project.error_message

    @pytest.mark.asyncio
    async def test_one_broken_project_does_not_stop_the_batch(self, seed, processor, storage, loaders, lock):
        _, broken = await seed(scenes=1)
        _, healthy = await seed(scenes=1)
        storage.explode_for = {broken}

        await processor.step(NOW)
        report = await processor.step(NOW)

        assert report.errors == 1
        assert report.completed == 1
        assert (await loaders.project(healthy)).status == "completed"
        assert (await loaders.project(broken)).status == "generating"
        # Lock was released despite the error.
        handle = await lock.acquire(JOB_NAME, 60, now=NOW)
        assert handle is not None

    @pytest.mark.asyncio
    async def test_batch_size_and_parallelism_limits(self, seed, session_factory, provider, storage, lock, settings):
        class RecordingProcessor(SceneProcessor):
            active = 0
            peak = 0

            async def process_project(self, session, project_id, now):
                self.active += 1
                self.peak = max(self.peak, self.active)
                await asyncio.sleep(0.01)
                self.active -= 1
                return StepResult(project_id, "submitted", 1)

        processor = RecordingProcessor(
            session_factory, provider, storage, lock,
            settings=settings.model_copy(update={"movie_max_parallel": 2, "movie_batch_size": 3}),
        )
        for _ in range(4):
            await seed(scenes=1)

        report = await processor.step(NOW)

        assert report.projects == 3
        assert report.processed == 3
        assert processor.peak == 2


class TestControl:
    @pytest.mark.asyncio
    async def test_busy_lock_skips_the_run(self, seed, processor, provider, lock):
        await seed(scenes=1)
        await lock.acquire(JOB_NAME, 300, now=NOW)

        report = await processor.step(NOW + timedelta(seconds=30))

        assert report.skipped is True
        assert report.reason == "lock_held"
        assert provider.submitted == []

    @pytest.mark.asyncio
    async def test_cancel_mid_generation(self, seed, processor, provider, session_factory, loaders):
        _, project_id = await seed(scenes=3)
        await run_ticks(processor, 3)
        async with session_factory() as s:
            assert await project_machine.cancel(s, project_id)
            await s.commit()

        report = await processor.step(NOW)

        assert report.projects == 0
        assert provider.polls == ["req-1"]
        statuses = [s.status for s in await loaders.scenes(project_id)]
        assert statuses == ["completed", "skipped", "skipped"]
        assert (await loaders.project(project_id)).status == "cancelled"

    @pytest.mark.asyncio
    async def test_pause_resume_continues_from_pointer(self, seed, processor, provider, session_factory, loaders):
        _, project_id = await seed(scenes=3)
        await run_ticks(processor, 2)
        async with session_factory() as s:
            await project_machine.pause(s, project_id)
            await s.commit()

        assert (await processor.step(NOW)).projects == 0

        async with session_factory() as s:
            await project_machine.resume(s, project_id)
            await s.commit()
        await run_ticks(processor, 4)

        project = await loaders.project(project_id)
        assert project.status == "completed"
        assert [r.prompt for r in provider.submitted] == [
            "Shot 1: rain on neon streets",
            "Shot 2: rain on neon streets",
            "Shot 3: rain on neon streets",
        ]
        await assert_ledger_consistent(loaders, project_id)


class TestNarration:
    @pytest.mark.asyncio
    async def test_narrated_scene(self, seed, session_factory, provider, storage, lock, settings, loaders):
        narrator = FakeNarrator()
        processor = SceneProcessor(session_factory, provider, storage, lock, narrator=narrator, settings=settings)
        _, project_id = await seed(scenes=1, voice_id="voice-1", narration="The city floods.")

        reports = await run_ticks(processor, 4)

        assert [r.results[0].action for r in reports] == ["submitted", "narrating", "merging", "project_completed"]
        assert narrator.calls == [(project_id, 1, "The city floods.")]
        scene = (await loaders.scenes(project_id))[0]
        assert scene.video_url == "https://cdn.test/req-1_narrated.mp4"

    @pytest.mark.asyncio
    async def test_narration_failure_degrades(self, seed, session_factory, provider, storage, lock, settings, loaders):
        processor = SceneProcessor(
            session_factory, provider, storage, lock, narrator=FakeNarrator(fail=True), settings=settings,
        )
        _, project_id = await seed(scenes=1, voice_id="voice-1", narration="The city floods.")

        await run_ticks(processor, 4)

        scene = (await loaders.scenes(project_id))[0]
        assert scene.status == "completed"
        assert scene.video_url == "https://cdn.test/req-1.mp4"
        assert scene.error_message == NARRATION_FAILED_NOTE
        assert (await loaders.project(project_id)).status == "completed"

    @pytest.mark.asyncio
    async def test_no_voice_skips_narration(self, seed, session_factory, provider, storage, lock, settings):
        narrator = FakeNarrator()
        processor = SceneProcessor(session_factory, provider, storage, lock, narrator=narrator, settings=settings)
        await seed(scenes=1, narration="The city floods.")

        reports = await run_ticks(processor, 2)

        assert reports[1].results[0].action == "project_completed"
        assert narrator.calls == []


def test_report_counts():
    report = ProcessReport()
    report.record(StepResult(1, "submitted", 1))
    report.record(StepResult(2, "waiting", 3))
    report.record(StepResult(3, "project_failed", 2, "failed"))
    report.record(StepResult(4, "error", error="boom"))

    data = report.to_dict()
    assert (data["processed"], data["failed"], data["errors"]) == (2, 1, 1)
    assert data["results"][3] == {
        "project_id": 4, "action": "error", "scene_number": None, "project_status": None, "error": "boom",
    }

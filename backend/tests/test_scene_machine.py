"""Scene lifecycle transitions against a real database."""
import pytest
from sqlalchemy import select

from movie_factory.models import MovieScene, SceneStatus
from movie_factory.services import scene_machine
from movie_factory.services.scene_machine import SceneOutput

OUTPUT = SceneOutput(
    video_url="https://cdn.test/1.mp4",
    public_video_url="https://files.test/movies/1/scene_001.mp4",
    last_frame_url="https://files.test/movies/1/frames/scene_001.jpg",
    duration_seconds=5.0,
)


async def _scene(session, project_id, number=1) -> MovieScene:
    return await session.scalar(
        select(MovieScene)
        .where(MovieScene.project_id == project_id, MovieScene.scene_number == number)
        .execution_options(populate_existing=True)
    )


@pytest.fixture
def scene_of(session):
    async def _get(project_id, number=1):
        return await _scene(session, project_id, number)
    return _get


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_pending_to_completed(self, seed, session, scene_of):
        _, project_id = await seed(scenes=1)
        scene = await scene_of(project_id)

        assert await scene_machine.mark_generating(session, scene.id, generation_id=None, credit_cost=7)
        assert await scene_machine.mark_completed(session, scene.id, OUTPUT, from_status=SceneStatus.generating)
        await session.commit()

        scene = await scene_of(project_id)
        assert scene.status == SceneStatus.completed.value
        assert scene.credit_cost == 7
        assert scene.last_frame_url == OUTPUT.last_frame_url
        assert scene.completed_at is not None

    @pytest.mark.asyncio
    async def test_narration_stages(self, seed, session, scene_of):
        _, project_id = await seed(scenes=1)
        scene = await scene_of(project_id)

        await scene_machine.mark_generating(session, scene.id, generation_id=None, credit_cost=7)
        assert await scene_machine.mark_narrating(session, scene.id, video_url="https://cdn.test/raw.mp4")
        assert await scene_machine.mark_merging(
            session, scene.id, note="Narration failed, using video without voiceover",
        )
        await session.commit()

        scene = await scene_of(project_id)
        assert scene.status == SceneStatus.merging.value
        assert scene.video_url == "https://cdn.test/raw.mp4"
        assert scene.error_message.startswith("Narration failed")

    @pytest.mark.asyncio
    async def test_cannot_complete_from_pending(self, seed, session, scene_of):
        _, project_id = await seed(scenes=1)
        scene = await scene_of(project_id)

        assert not await scene_machine.mark_completed(session, scene.id, OUTPUT, from_status=SceneStatus.generating)
        with pytest.raises(ValueError):
            await scene_machine.mark_completed(session, scene.id, OUTPUT, from_status=SceneStatus.pending)


class TestRetries:
    @pytest.mark.asyncio
    async def test_generation_failure_returns_to_pending(self, seed, session, scene_of):
        _, project_id = await seed(scenes=1)
        scene = await scene_of(project_id)

        await scene_machine.mark_generating(session, scene.id, generation_id=None, credit_cost=7)
        assert await scene_machine.record_generation_failure(session, scene.id, "timeout")
        await session.commit()

        scene = await scene_of(project_id)
        assert (scene.status, scene.retry_count, scene.error_message) == ("pending", 1, "timeout")

    @pytest.mark.asyncio
    async def test_retry_count_is_bounded(self, seed, session, scene_of):
        _, project_id = await seed(scenes=1)
        scene = await scene_of(project_id)

        for _ in range(scene_machine.MAX_RETRIES):
            assert await scene_machine.record_submit_failure(session, scene.id, "provider down")
        assert not await scene_machine.record_submit_failure(session, scene.id, "provider down")
        await session.commit()

        scene = await scene_of(project_id)
        assert scene.retry_count == scene_machine.MAX_RETRIES
        assert scene_machine.retries_exhausted(scene.retry_count)

    @pytest.mark.asyncio
    async def test_mark_failed_requires_exhausted_retries(self, seed, session, scene_of):
        _, project_id = await seed(scenes=1)
        scene = await scene_of(project_id)

        assert not await scene_machine.mark_failed(session, scene.id, "boom")
        for _ in range(scene_machine.MAX_RETRIES):
            await scene_machine.record_submit_failure(session, scene.id, "boom")
        assert await scene_machine.mark_failed(session, scene.id, "boom")
        await session.commit()

        assert (await scene_of(project_id)).status == SceneStatus.failed.value


@pytest.mark.asyncio
async def test_skip_unfinished_keeps_completed_scenes(seed, session, scene_of):
    _, project_id = await seed(scenes=3)
    first = await scene_of(project_id, 1)
    await scene_machine.mark_generating(session, first.id, generation_id=None, credit_cost=7)
    await scene_machine.mark_completed(session, first.id, OUTPUT, from_status=SceneStatus.generating)

    assert await scene_machine.skip_unfinished(session, project_id) == 2
    await session.commit()

    statuses = [(await scene_of(project_id, n)).status for n in (1, 2, 3)]
    assert statuses == ["completed", "skipped", "skipped"]

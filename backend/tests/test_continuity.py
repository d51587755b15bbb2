import pytest
from sqlalchemy import update

from movie_factory.models import MovieScene, SceneStatus
from movie_factory.services.continuity import reference_frame_from, resolve_reference_frame

FRAME = "https://files.test/movies/1/frames/scene_001.jpg"


def test_reference_frame_needs_a_completed_previous_scene():
    done = MovieScene(status=SceneStatus.completed.value, last_frame_url=FRAME)
    running = MovieScene(status=SceneStatus.generating.value, last_frame_url=FRAME)
    no_frame = MovieScene(status=SceneStatus.completed.value, last_frame_url=None)

    assert reference_frame_from(done) == FRAME
    assert reference_frame_from(running) is None
    assert reference_frame_from(no_frame) is None
    assert reference_frame_from(None) is None


@pytest.mark.asyncio
async def test_first_scene_is_always_text_to_video(seed, session):
    _, project_id = await seed(scenes=2)
    assert await resolve_reference_frame(session, project_id, 1) is None


@pytest.mark.asyncio
async def test_uses_frame_of_previous_scene(seed, session):
    _, project_id = await seed(scenes=3)
    await session.execute(
        update(MovieScene)
        .where(MovieScene.project_id == project_id, MovieScene.scene_number == 1)
        .values(status=SceneStatus.completed.value, last_frame_url=FRAME)
    )
    await session.commit()

    assert await resolve_reference_frame(session, project_id, 2) == FRAME
    # Scene 2 has no frame yet, so scene 3 falls back.
    assert await resolve_reference_frame(session, project_id, 3) is None

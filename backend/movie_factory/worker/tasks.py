"""
Celery tasks for the movie orchestrator.

Main task: movies.process_scenes, which runs one SceneProcessor.step in a
synchronous Celery worker context using asyncio.run().
"""
from __future__ import annotations

import asyncio
import logging

from movie_factory.worker.celery_app import celery_app

logger = logging.getLogger(__name__)


async def _process_scenes_async() -> dict:
    """Run one orchestrator step on an engine owned by this event loop."""
    from movie_factory.db import make_engine, make_session_factory
    from movie_factory.services.scene_processor import build_scene_processor
    from movie_factory.settings import get_settings

    settings = get_settings()
    engine = make_engine(settings.async_database_url)
    session_factory = make_session_factory(engine)
    try:
        report = await build_scene_processor(settings, session_factory).step()
        return report.to_dict()
    finally:
        await engine.dispose()


@celery_app.task(bind=True, name="movies.process_scenes", queue="movies", ignore_result=False)
def process_scenes(self) -> dict:
    """Celery task: advance every generating movie project by one step.

    Not retried: the next beat tick is the retry.
    """
    logger.info(f"[worker] movies.process_scenes started (celery_id={self.request.id})")
    try:
        result = asyncio.run(_process_scenes_async())
    except Exception as e:
        logger.error(f"[worker] movies.process_scenes failed: {e}")
        raise
    if result.get("skipped"):
        logger.info("[worker] movies.process_scenes skipped: lock held")
    else:
        logger.info(
            f"[worker] movies.process_scenes done: projects={result['projects']} "
            f"processed={result['processed']} errors={result['errors']}"
        )
    return result

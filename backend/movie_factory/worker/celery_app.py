"""
Celery application for the movie orchestrator.

Broker/backend: Redis (REDIS_URL env).
Default queue: movies. Beat fires ``movies.process_scenes`` every
MOVIE_PROCESS_INTERVAL_MINUTES; overlapping runs are absorbed by the
orchestrator lock.
"""
from celery import Celery

from movie_factory.settings import get_settings

settings = get_settings()

celery_app = Celery(
    "movie_factory",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    # A run must finish inside the lock TTL; the hard limit sits just above it.
    task_time_limit=settings.movie_lock_ttl_sec + 60,
    task_soft_time_limit=settings.movie_lock_ttl_sec,
    task_default_queue="movies",
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    result_expires=24 * 3600,
    beat_schedule={
        "process-movie-scenes": {
            "task": "movies.process_scenes",
            "schedule": settings.movie_process_interval_minutes * 60.0,
            "options": {"queue": "movies", "expires": settings.movie_process_interval_minutes * 60},
        },
    },
)

celery_app.autodiscover_tasks(["movie_factory.worker"])

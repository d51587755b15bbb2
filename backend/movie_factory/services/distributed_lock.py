"""
Distributed lock for cron-style jobs.

Two backends share one contract:

- DatabaseLock: a row in ``cron_locks`` keyed uniquely by job name.
  Acquisition deletes an expired row for the job (crash recovery) and then
  performs a single INSERT; a uniqueness violation means another run holds
  the lock.
- RedisLock: ``SET lock:{job} <lock_id> NX PX <ttl>``; Redis expires the key.

Expiry is wall-clock only. There is no lease renewal, so a run must finish
within its TTL; CAS guards on project/scene rows cover the overlap when it
does not.

A failed acquisition is not an error: ``acquire`` returns None.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import redis.asyncio as aioredis
from sqlalchemy import delete, insert
from sqlalchemy.exc import IntegrityError

from movie_factory.db import SessionFactory
from movie_factory.models import CronLock
from movie_factory.settings import Settings, get_settings

logger = logging.getLogger(__name__)

_redis_client: aioredis.Redis | None = None

# Delete the key only if it still carries our lock id.
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


@dataclass(frozen=True)
class LockHandle:
    job_name: str
    lock_id: str
    acquired_at: datetime
    expires_at: datetime


def _new_lock_id(job_name: str) -> str:
    return f"{job_name}-{uuid.uuid4().hex}"


class DatabaseLock:
    """Lock backed by the ``cron_locks`` table."""

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    async def acquire(self, job_name: str, ttl_sec: int, *, now: datetime | None = None) -> LockHandle | None:
        now = now or datetime.now(timezone.utc)
        handle = LockHandle(
            job_name=job_name,
            lock_id=_new_lock_id(job_name),
            acquired_at=now,
            expires_at=now + timedelta(seconds=ttl_sec),
        )

        async with self._session_factory() as session:
            reclaimed = await session.execute(
                delete(CronLock).where(CronLock.job_name == job_name, CronLock.expires_at < now)
            )
            if reclaimed.rowcount:
                logger.warning(f"[lock] Reclaimed expired lock for '{job_name}'")
            try:
                await session.execute(
                    insert(CronLock).values(
                        job_name=handle.job_name,
                        lock_id=handle.lock_id,
                        acquired_at=handle.acquired_at,
                        expires_at=handle.expires_at,
                    )
                )
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info(f"[lock] '{job_name}' is held by another run")
                return None

        logger.info(f"[lock] Acquired '{job_name}' (lock_id={handle.lock_id[-8:]}, ttl={ttl_sec}s)")
        return handle

    async def release(self, handle: LockHandle) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(CronLock).where(
                    CronLock.job_name == handle.job_name,
                    CronLock.lock_id == handle.lock_id,
                )
            )
            await session.commit()

        if result.rowcount:
            logger.info(f"[lock] Released '{handle.job_name}' (lock_id={handle.lock_id[-8:]})")
            return True
        logger.warning(
            f"[lock] Release '{handle.job_name}': lock_id {handle.lock_id[-8:]} not found "
            f"(expired and reclaimed by another run)"
        )
        return False


def _get_redis() -> aioredis.Redis:
    """Get or create a shared async Redis client."""
    global _redis_client
    if _redis_client is None:
        settings = get_settings()
        _redis_client = aioredis.from_url(
            settings.redis_url,
            decode_responses=True,
        )
    return _redis_client


def _lock_key(job_name: str) -> str:
    return f"lock:{job_name}"


class RedisLock:
    """Lock backed by a single Redis key with native expiry."""

    def __init__(self, client: aioredis.Redis | None = None):
        self._client = client

    @property
    def client(self) -> aioredis.Redis:
        return self._client or _get_redis()

    async def acquire(self, job_name: str, ttl_sec: int, *, now: datetime | None = None) -> LockHandle | None:
        now = now or datetime.now(timezone.utc)
        lock_id = _new_lock_id(job_name)
        acquired = await self.client.set(_lock_key(job_name), lock_id, nx=True, px=ttl_sec * 1000)
        if not acquired:
            logger.info(f"[lock] '{job_name}' is held by another run (redis)")
            return None
        logger.info(f"[lock] Acquired '{job_name}' via redis (lock_id={lock_id[-8:]}, ttl={ttl_sec}s)")
        return LockHandle(job_name, lock_id, now, now + timedelta(seconds=ttl_sec))

    async def release(self, handle: LockHandle) -> bool:
        removed = await self.client.eval(_RELEASE_SCRIPT, 1, _lock_key(handle.job_name), handle.lock_id)
        if removed:
            logger.info(f"[lock] Released '{handle.job_name}' via redis")
            return True
        logger.warning(f"[lock] Release '{handle.job_name}': key gone or owned by another run (redis)")
        return False


def build_lock(session_factory: SessionFactory, settings: Settings | None = None) -> DatabaseLock | RedisLock:
    settings = settings or get_settings()
    backend = settings.movie_lock_backend.lower()
    if backend == "redis":
        return RedisLock()
    if backend != "database":
        raise ValueError(f"Unknown lock backend: {settings.movie_lock_backend}")
    return DatabaseLock(session_factory)

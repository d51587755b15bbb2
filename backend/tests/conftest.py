import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

import base64
import itertools
import time
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from sqlalchemy import select

from movie_factory.db import Base, make_engine, make_session_factory
from movie_factory.models import MovieProject, MovieScene, User
from movie_factory.services.distributed_lock import DatabaseLock
from movie_factory.services.generation_provider import (
    POLL_COMPLETED,
    GenerationInput,
    GenerationPoll,
    GenerationProvider,
)
from movie_factory.services.narration import NarrationError, Narrator
from movie_factory.services.scene_processor import SceneProcessor
from movie_factory.services.scene_storage import SceneStorage, StorageError
from movie_factory.services.webhook_signature import signed_message
from movie_factory.settings import get_settings

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

_emails = itertools.count(1)


class FakeProvider(GenerationProvider):
    """Records submissions; polls complete unless told otherwise."""

    def __init__(self):
        self.submitted: list[GenerationInput] = []
        self.polls: list[str] = []
        self.submit_errors: list[Exception] = []
        self.poll_results: list[GenerationPoll] = []
        self.poll_default: GenerationPoll | None = None

    async def submit(self, request: GenerationInput) -> str:
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        self.submitted.append(request)
        return f"req-{len(self.submitted)}"

    async def poll(self, model: str, request_id: str) -> GenerationPoll:
        self.polls.append(request_id)
        if self.poll_results:
            result = self.poll_results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        if self.poll_default is not None:
            return self.poll_default
        return GenerationPoll(POLL_COMPLETED, video_url=f"https://cdn.test/{request_id}.mp4")


class FakeStorage(SceneStorage):
    def __init__(self):
        self.persisted: list[tuple[int, int, str]] = []
        self.frames: list[tuple[int, int, str, float]] = []
        self.assembled: list[tuple[int, list[str]]] = []
        self.persist_fails = False
        self.frame_fails = False
        self.assemble_fails = False
        self.explode_for: set[int] = set()

    async def persist_scene(self, project_id, scene_number, video_url):
        if project_id in self.explode_for:
            raise RuntimeError(f"disk on fire for project {project_id}")
        if self.persist_fails:
            raise StorageError("upload failed")
        self.persisted.append((project_id, scene_number, video_url))
        return f"https://files.test/movies/{project_id}/scene_{scene_number:03d}.mp4"

    async def extract_last_frame(self, project_id, scene_number, video_url, at_seconds):
        if self.frame_fails:
            raise StorageError("ffmpeg failed")
        self.frames.append((project_id, scene_number, video_url, at_seconds))
        return f"https://files.test/movies/{project_id}/frames/scene_{scene_number:03d}.jpg"

    async def assemble_movie(self, project_id, video_urls):
        if self.assemble_fails:
            raise StorageError("concat failed")
        self.assembled.append((project_id, list(video_urls)))
        return f"https://files.test/movies/{project_id}/final.mp4"


class FakeNarrator(Narrator):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: list[tuple[int, int, str]] = []

    async def narrate(self, *, video_url, text, voice_id, project_id, scene_number):
        self.calls.append((project_id, scene_number, text))
        if self.fail:
            raise NarrationError("tts unavailable")
        return video_url.replace(".mp4", "_narrated.mp4")


def jwk_for(private_key: Ed25519PrivateKey) -> dict:
    raw = private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    return {"kty": "OKP", "crv": "Ed25519", "kid": "k1", "x": base64.urlsafe_b64encode(raw).rstrip(b"=").decode()}


def fal_headers(private_key: Ed25519PrivateKey, body: bytes, *, timestamp: int | None = None) -> dict:
    """Headers fal sends with a webhook, signed over ``body``."""
    ts = str(int(time.time()) if timestamp is None else timestamp)
    signature = private_key.sign(signed_message("fal-req-1", "fal-user", ts, body))
    return {
        "x-fal-webhook-request-id": "fal-req-1",
        "x-fal-webhook-user-id": "fal-user",
        "x-fal-webhook-timestamp": ts,
        "x-fal-webhook-signature": signature.hex(),
    }


@pytest.fixture
def settings(tmp_path):
    return get_settings().model_copy(update={
        "data_dir": str(tmp_path / "data"),
        "public_base_url": "http://testserver",
        "movie_lock_ttl_sec": 300,
        "movie_batch_size": 10,
        "movie_max_parallel": 1,
        "cron_secret": None,
    })


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'movies.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def lock(session_factory):
    return DatabaseLock(session_factory)


@pytest.fixture
def processor(session_factory, provider, storage, lock, settings):
    return SceneProcessor(session_factory, provider, storage, lock, settings=settings)


@pytest.fixture
def seed(session_factory):
    """Create a user and a project with ``scenes`` pending scenes. Commits."""

    async def _seed(
        *,
        balance: int = 100,
        scenes: int = 5,
        status: str = "generating",
        model: str = "kling-2.6",
        current_scene: int = 1,
        voice_id: str | None = None,
        narration: str | None = None,
        user_id: int | None = None,
    ) -> tuple[int, int]:
        async with session_factory() as s:
            if user_id is None:
                user = User(email=f"user{next(_emails)}@test", balance_credits=balance)
                s.add(user)
                await s.flush()
                user_id = user.id
            project = MovieProject(
                user_id=user_id,
                title="The Courier",
                source_text="A courier crosses a flooded city.",
                model=model,
                voice_id=voice_id,
                status=status,
                total_scenes=scenes,
                current_scene=current_scene if status == "generating" else 0,
            )
            s.add(project)
            await s.flush()
            for n in range(1, scenes + 1):
                s.add(MovieScene(
                    project_id=project.id,
                    scene_number=n,
                    scene_title=f"Scene {n}",
                    video_prompt=f"Shot {n}: rain on neon streets",
                    narration_text=narration,
                ))
            await s.commit()
            return user_id, project.id

    return _seed


async def load_project(session_factory, project_id: int) -> MovieProject:
    async with session_factory() as s:
        return await s.get(MovieProject, project_id)


async def load_scenes(session_factory, project_id: int) -> list[MovieScene]:
    async with session_factory() as s:
        rows = await s.scalars(
            select(MovieScene).where(MovieScene.project_id == project_id).order_by(MovieScene.scene_number)
        )
        return list(rows)


async def load_user(session_factory, user_id: int) -> User:
    async with session_factory() as s:
        return await s.get(User, user_id)


@pytest.fixture
def loaders(session_factory):
    class _Loaders:
        async def project(self, project_id):
            return await load_project(session_factory, project_id)

        async def scenes(self, project_id):
            return await load_scenes(session_factory, project_id)

        async def user(self, user_id):
            return await load_user(session_factory, user_id)

    return _Loaders()

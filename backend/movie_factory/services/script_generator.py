"""
Script provider interface: source text in, ordered scene list out.

Swap the concrete implementation to connect a real model. The stub splits
the source text into evenly sized chunks and is deterministic.
"""
from __future__ import annotations

import logging
import math
import re
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from movie_factory.models import MovieProject, MovieScene
from movie_factory.services import project_machine, video_models
from movie_factory.settings import Settings, get_settings

logger = logging.getLogger(__name__)

MAX_SOURCE_CHARS = 80_000
NARRATION_CREDITS_PER_SCENE = 1


class ScriptGenerationError(Exception):
    """The provider could not produce a usable script."""


@dataclass
class ScriptScene:
    scene_number: int
    scene_title: str
    video_prompt: str
    narration_text: str | None = None


@dataclass
class MovieScript:
    scenes: list[ScriptScene] = field(default_factory=list)
    summary: str = ""
    estimated_duration_seconds: float = 0.0
    model: str = "stub"

    @property
    def total_scenes(self) -> int:
        return len(self.scenes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "scenes": [asdict(s) for s in self.scenes],
            "total_scenes": self.total_scenes,
            "estimated_duration_seconds": self.estimated_duration_seconds,
            "summary": self.summary,
            "model": self.model,
        }


class ScriptProvider(ABC):
    """Abstract script provider. Implement `generate` to plug in a real model."""

    @abstractmethod
    async def generate(
        self,
        source_text: str,
        *,
        model: str,
        style: str | None = None,
        has_narration: bool = False,
        aspect_ratio: str = "16:9",
        target_duration_minutes: int = 10,
    ) -> MovieScript:
        ...


def _sentences(text: str) -> list[str]:
    parts = re.split(r"(?<=[.!?])\s+|\n{2,}", text.strip())
    return [p.strip() for p in parts if p and p.strip()]


class StubScriptProvider(ScriptProvider):
    """Deterministic stub: one scene per chunk of source sentences."""

    async def generate(
        self,
        source_text: str,
        *,
        model: str,
        style: str | None = None,
        has_narration: bool = False,
        aspect_ratio: str = "16:9",
        target_duration_minutes: int = 10,
    ) -> MovieScript:
        sentences = _sentences(source_text)
        if not sentences:
            raise ScriptGenerationError("Script contains no scenes")

        scene_seconds = video_models.scene_duration(model)
        target_scenes = max(1, math.ceil(target_duration_minutes * 60 / scene_seconds))
        count = min(target_scenes, len(sentences))
        per_scene = math.ceil(len(sentences) / count)

        scenes = []
        for i in range(0, len(sentences), per_scene):
            chunk = " ".join(sentences[i:i + per_scene])
            number = len(scenes) + 1
            scenes.append(ScriptScene(
                scene_number=number,
                scene_title=chunk[:50],
                video_prompt=f"{style + ' shot, ' if style else ''}{chunk}"[:800],
                narration_text=chunk[:300] if has_narration else None,
            ))

        return MovieScript(
            scenes=scenes,
            summary=sentences[0][:200],
            estimated_duration_seconds=len(scenes) * scene_seconds,
            model="stub-v1",
        )


def estimate_credits(total_scenes: int, model: str, has_narration: bool) -> int:
    per_scene = video_models.scene_credit_cost(model)
    narration = NARRATION_CREDITS_PER_SCENE if has_narration else 0
    return total_scenes * (per_scene + narration)


async def generate_project_script(
    session: AsyncSession,
    project_id: int,
    *,
    provider: ScriptProvider | None = None,
    settings: Settings | None = None,
) -> MovieScript:
    """Write a fresh scene list for a project already in script_generating.

    On failure the project goes back to draft with the error recorded, and
    ScriptGenerationError is raised. Commits.
    """
    settings = settings or get_settings()
    provider = provider or get_script_provider()

    project = await session.get(MovieProject, project_id)
    if project is None:
        raise LookupError(f"Project {project_id} not found")
    source_text = project.source_text
    if len(source_text) > MAX_SOURCE_CHARS:
        source_text = source_text[:MAX_SOURCE_CHARS] + "\n\n[Text truncated due to length]"
    has_narration = bool(project.voice_id)
    model = project.model

    try:
        script = await provider.generate(
            source_text,
            model=model,
            style=project.style,
            has_narration=has_narration,
            aspect_ratio=project.aspect_ratio,
            target_duration_minutes=project.target_duration_minutes,
        )
        if not script.scenes:
            raise ScriptGenerationError("Script contains no scenes")
    except ScriptGenerationError as exc:
        logger.warning(f"[script] Project {project_id}: generation failed: {exc}")
        await project_machine.revert_script_failure(session, project_id, str(exc))
        await session.commit()
        raise

    if script.total_scenes > settings.movie_max_scenes:
        logger.info(f"[script] Project {project_id}: truncating {script.total_scenes} scenes to {settings.movie_max_scenes}")
        script.scenes = script.scenes[:settings.movie_max_scenes]
    for number, scene in enumerate(script.scenes, start=1):
        scene.scene_number = number

    await session.execute(delete(MovieScene).where(MovieScene.project_id == project_id))
    session.add_all([
        MovieScene(
            project_id=project_id,
            scene_number=scene.scene_number,
            scene_title=(scene.scene_title or None) and scene.scene_title[:200],
            video_prompt=scene.video_prompt,
            narration_text=scene.narration_text,
        )
        for scene in script.scenes
    ])
    await session.flush()

    estimated = estimate_credits(script.total_scenes, model, has_narration)
    if not await project_machine.mark_script_ready(
        session, project_id,
        total_scenes=script.total_scenes,
        estimated_credits=estimated,
        script_data=script.to_dict(),
    ):
        await session.rollback()
        raise ScriptGenerationError("Project left script_generating during generation")
    await session.commit()
    logger.info(f"[script] Project {project_id}: {script.total_scenes} scenes, ~{estimated} credits")
    return script


# Singleton, replace with a real provider implementation
_provider: ScriptProvider = StubScriptProvider()


def get_script_provider() -> ScriptProvider:
    return _provider

"""
Narration stage.

A narrator turns a scene clip plus narration text into a voiced clip and
returns the new video url. ``NARRATOR=edge_tts`` voices scenes with Microsoft
Edge TTS (the project's ``voice_id`` is the Edge voice name, e.g.
``en-US-GuyNeural``) and replaces the clip's audio track with ffmpeg.
``NARRATOR=none`` disables the stage.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import edge_tts
from edge_tts.exceptions import EdgeTTSException

from movie_factory.services.scene_storage import LocalSceneStorage, StorageError, run_ffmpeg, scene_filename
from movie_factory.settings import Settings, get_settings

logger = logging.getLogger(__name__)

NARRATION_FAILED_NOTE = "Narration failed, using video without voiceover"


class NarrationError(Exception):
    pass


class Narrator(ABC):
    @abstractmethod
    async def narrate(
        self,
        *,
        video_url: str,
        text: str,
        voice_id: str,
        project_id: int,
        scene_number: int,
    ) -> str:
        ...


def narration_requested(voice_id: str | None, narration_text: str | None, narrator: Narrator | None) -> bool:
    return bool(narrator and voice_id and narration_text and narration_text.strip())


def voiced_filename(scene_number: int) -> str:
    return f"scene_{scene_number:03d}_voiced.mp4"


class EdgeTtsNarrator(Narrator):
    """Microsoft Edge TTS (free) voiceover, muxed over the clip."""

    def __init__(self, storage: LocalSceneStorage, settings: Settings | None = None):
        self.storage = storage
        self.settings = settings or get_settings()

    async def narrate(
        self,
        *,
        video_url: str,
        text: str,
        voice_id: str,
        project_id: int,
        scene_number: int,
    ) -> str:
        project_dir = self.storage.project_dir(project_id)
        audio_path = project_dir / "voice" / f"scene_{scene_number:03d}.mp3"
        audio_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            communicate = edge_tts.Communicate(text, voice_id)
            await communicate.save(str(audio_path))
        except (EdgeTTSException, OSError) as exc:
            raise NarrationError(f"TTS failed for scene {scene_number}: {exc}") from exc

        try:
            source = await self.storage.source_file(video_url, project_dir / scene_filename(scene_number))
            output_path = project_dir / voiced_filename(scene_number)
            await run_ffmpeg(
                [
                    self.settings.ffmpeg_bin, "-y",
                    "-i", str(source),
                    "-i", str(audio_path),
                    "-map", "0:v:0",
                    "-map", "1:a:0",
                    "-c:v", "copy",
                    "-c:a", "aac",
                    "-b:a", "192k",
                    "-shortest",
                    str(output_path),
                ],
                self.settings.ffmpeg_timeout_sec,
            )
        except StorageError as exc:
            raise NarrationError(f"Audio replace failed for scene {scene_number}: {exc}") from exc

        logger.info(f"[narration] Project {project_id} scene {scene_number} voiced with {voice_id}")
        return self.storage.public_url(output_path)


def build_narrator(settings: Settings | None = None, storage: LocalSceneStorage | None = None) -> Narrator | None:
    settings = settings or get_settings()
    name = settings.narrator.lower()
    if name in ("", "none"):
        return None
    if name == "edge_tts":
        return EdgeTtsNarrator(storage or LocalSceneStorage(settings), settings)
    raise ValueError(f"Unknown narrator: {settings.narrator}")

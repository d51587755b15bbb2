"""
Scene storage: durable copies of generated clips, continuity frames and the
assembled movie.

Layout under ``DATA_DIR``::

    movies/{project_id}/scene_001.mp4
    movies/{project_id}/frames/scene_001.jpg
    movies/{project_id}/final.mp4

Files are served by ``routes_files`` at ``/files/movies/...``.
"""
from __future__ import annotations

import asyncio
import logging
import shutil
from abc import ABC, abstractmethod
from pathlib import Path

import httpx

from movie_factory.settings import Settings, get_settings

logger = logging.getLogger(__name__)

MIN_VIDEO_BYTES = 1024


class StorageError(Exception):
    """A storage step (download, ffmpeg, write) failed."""


def scene_filename(scene_number: int) -> str:
    return f"scene_{scene_number:03d}.mp4"


def frame_filename(scene_number: int) -> str:
    return f"scene_{scene_number:03d}.jpg"


class SceneStorage(ABC):
    @abstractmethod
    async def persist_scene(self, project_id: int, scene_number: int, video_url: str) -> str:
        """Copy a provider clip to permanent storage. Returns its public url."""

    @abstractmethod
    async def extract_last_frame(
        self, project_id: int, scene_number: int, video_url: str, at_seconds: float
    ) -> str:
        """Grab a still near the end of the clip. Returns its public url."""

    @abstractmethod
    async def assemble_movie(self, project_id: int, video_urls: list[str]) -> str:
        """Concatenate scene clips in order. Returns the final movie url."""


async def run_ffmpeg(cmd: list[str], timeout_sec: int) -> None:
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise StorageError(f"Cannot run {cmd[0]}: {exc}") from exc
    try:
        _, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_sec)
    except asyncio.TimeoutError as exc:
        proc.kill()
        await proc.wait()
        raise StorageError(f"ffmpeg timed out after {timeout_sec}s") from exc

    if proc.returncode != 0:
        stderr_dec = stderr.decode(errors="ignore") if stderr else ""
        raise StorageError(
            f"Command failed with code {proc.returncode}: {' '.join(cmd[:5])}...; "
            f"stderr: {stderr_dec[-400:]}"
        )


class LocalSceneStorage(SceneStorage):
    """Stores files on local disk; ffmpeg does frame grabs and concatenation."""

    def __init__(self, settings: Settings | None = None, *, client: httpx.AsyncClient | None = None):
        self.settings = settings or get_settings()
        self.root = Path(self.settings.data_dir) / "movies"
        self._client = client

    def project_dir(self, project_id: int) -> Path:
        return self.root / str(project_id)

    def public_url(self, path: Path) -> str:
        rel = path.relative_to(self.root).as_posix()
        return f"{self.settings.public_base_url.rstrip('/')}/files/movies/{rel}"

    def local_path(self, url: str) -> Path | None:
        """Map one of our own public urls back to a file on disk."""
        prefix = f"{self.settings.public_base_url.rstrip('/')}/files/movies/"
        if not url.startswith(prefix):
            return None
        return self.root / url[len(prefix):]

    async def _download(self, url: str, dest: Path) -> None:
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            if self._client is not None:
                resp = await self._client.get(url, follow_redirects=True)
            else:
                async with httpx.AsyncClient(timeout=self.settings.download_timeout_sec) as client:
                    resp = await client.get(url, follow_redirects=True)
        except httpx.HTTPError as exc:
            raise StorageError(f"Download {url} failed: {exc}") from exc

        if resp.status_code >= 400:
            raise StorageError(f"Download {url} -> {resp.status_code}")
        if len(resp.content) < MIN_VIDEO_BYTES:
            raise StorageError(f"Download {url}: file too small ({len(resp.content)} bytes)")
        dest.write_bytes(resp.content)

    async def source_file(self, url: str, fallback: Path) -> Path:
        """Local file for ``url``: our own files are used in place, others are downloaded."""
        local = self.local_path(url)
        if local is not None and local.exists():
            return local
        await self._download(url, fallback)
        return fallback

    async def persist_scene(self, project_id: int, scene_number: int, video_url: str) -> str:
        dest = self.project_dir(project_id) / scene_filename(scene_number)
        source = await self.source_file(video_url, dest)
        if source != dest:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, dest)
        logger.info(f"[storage] Project {project_id} scene {scene_number} saved to {dest}")
        return self.public_url(dest)

    async def extract_last_frame(
        self, project_id: int, scene_number: int, video_url: str, at_seconds: float
    ) -> str:
        project_dir = self.project_dir(project_id)
        source = await self.source_file(video_url, project_dir / scene_filename(scene_number))
        dest = project_dir / "frames" / frame_filename(scene_number)
        dest.parent.mkdir(parents=True, exist_ok=True)
        await run_ffmpeg(
            [
                self.settings.ffmpeg_bin, "-y",
                "-ss", f"{max(at_seconds, 0):.2f}",
                "-i", str(source),
                "-frames:v", "1",
                "-q:v", "2",
                str(dest),
            ],
            self.settings.ffmpeg_timeout_sec,
        )
        if not dest.exists():
            raise StorageError(f"Frame extraction produced no file for scene {scene_number}")
        return self.public_url(dest)

    async def assemble_movie(self, project_id: int, video_urls: list[str]) -> str:
        if not video_urls:
            raise StorageError(f"Project {project_id}: no scene videos to assemble")

        project_dir = self.project_dir(project_id)
        sources = [
            await self.source_file(url, project_dir / scene_filename(i))
            for i, url in enumerate(video_urls, start=1)
        ]
        concat_list = project_dir / "concat.txt"
        concat_list.write_text("".join(f"file '{p.resolve()}'\n" for p in sources))
        dest = project_dir / "final.mp4"
        base = [self.settings.ffmpeg_bin, "-y", "-f", "concat", "-safe", "0", "-i", str(concat_list)]
        timeout = self.settings.ffmpeg_timeout_sec

        try:
            await run_ffmpeg(base + ["-c", "copy", str(dest)], timeout)
        except StorageError:
            logger.warning(f"[storage] Project {project_id}: stream copy failed, re-encoding")
            await run_ffmpeg(
                base + ["-c:v", "libx264", "-preset", "fast", "-crf", "23", "-c:a", "aac", str(dest)],
                timeout,
            )
        finally:
            concat_list.unlink(missing_ok=True)

        logger.info(f"[storage] Project {project_id}: final movie assembled from {len(sources)} scenes")
        return self.public_url(dest)

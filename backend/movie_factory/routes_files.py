from __future__ import annotations

import re
from pathlib import Path

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse

from .settings import Settings, get_settings

MOVIE_FILE_PATTERN = re.compile(r"^(scene_\d{3}(_voiced)?\.mp4|final\.mp4)$")
FRAME_FILE_PATTERN = re.compile(r"^scene_\d{3}\.jpg$")

router = APIRouter(prefix="/files", tags=["files"])


def _movies_dir(settings: Settings) -> Path:
    return Path(settings.data_dir) / "movies"


def _serve(path: Path) -> FileResponse:
    if not path.exists() or not path.is_file():
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(path)


@router.get("/movies/{project_id}/{filename}")
async def get_movie_file(project_id: int, filename: str, settings: Settings = Depends(get_settings)):
    if not MOVIE_FILE_PATTERN.match(filename):
        raise HTTPException(status_code=404, detail="File not allowed")
    return _serve(_movies_dir(settings) / str(project_id) / filename)


@router.get("/movies/{project_id}/frames/{filename}")
async def get_frame_file(project_id: int, filename: str, settings: Settings = Depends(get_settings)):
    if not FRAME_FILE_PATTERN.match(filename):
        raise HTTPException(status_code=404, detail="File not allowed")
    return _serve(_movies_dir(settings) / str(project_id) / "frames" / filename)

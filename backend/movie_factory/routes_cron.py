"""
HTTP trigger for the movie orchestrator, for external schedulers.

GET or POST /api/cron/process-movie-scenes with
``Authorization: Bearer <CRON_SECRET>``. A skipped run (lock held) is still
a 200 with ``skipped: true``.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, HTTPException, status
from fastapi.responses import JSONResponse

from .services import notify
from .services.scene_processor import SceneProcessor, build_scene_processor
from .settings import Settings, get_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cron", tags=["cron"])


def get_scene_processor() -> SceneProcessor:
    return build_scene_processor()


def verify_cron_auth(
    authorization: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    if not settings.cron_secret:
        return
    if authorization != f"Bearer {settings.cron_secret}":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


@router.api_route("/process-movie-scenes", methods=["GET", "POST"], dependencies=[Depends(verify_cron_auth)])
async def process_movie_scenes(processor: SceneProcessor = Depends(get_scene_processor)):
    try:
        report = await processor.step()
    except Exception as exc:
        logger.exception("[cron] process-movie-scenes failed")
        await notify.notify_error("Cron process-movie-scenes failed", str(exc))
        return JSONResponse({"ok": False, "error": "Unexpected error"}, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)
    return report.to_dict()

"""
Provider completion webhook.

Records the outcome on the matching GenerationRequest; the orchestrator
picks it up on its next run. Requests must carry a valid fal ED25519
signature (403 otherwise) unless FAL_WEBHOOK_VERIFY=false. Unknown or already
settled requests are acknowledged with 200 so the provider stops retrying.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session
from .models import GenerationRequest, GenerationStatus
from .schemas import GenerationWebhook
from .services.webhook_signature import JwksCache, get_jwks_cache, verify_signature
from .settings import Settings, get_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/movies/generations", tags=["webhooks"])

SessionDep = Depends(get_session)

OPEN_STATUSES = [GenerationStatus.pending.value, GenerationStatus.processing.value]


async def verify_fal_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    jwks: JwksCache = Depends(get_jwks_cache),
) -> None:
    if not settings.fal_webhook_verify:
        return
    body = await request.body()
    keys = await jwks.keys()
    if not verify_signature(request.headers, body, keys, max_skew_sec=settings.fal_webhook_max_skew_sec):
        logger.warning(f"[webhook] Invalid signature from {request.client.host if request.client else '?'}, rejecting")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid signature")


@router.post("/webhook", dependencies=[Depends(verify_fal_webhook)])
async def generation_webhook(data: GenerationWebhook, session: AsyncSession = SessionDep):
    now = datetime.now(timezone.utc)
    video_url = data.video_url
    if data.status.upper() == "OK" and video_url:
        values = {"status": GenerationStatus.completed.value, "video_url": video_url, "completed_at": now}
    else:
        error = data.error or ("No video in payload" if data.status.upper() == "OK" else "Generation failed")
        values = {"status": GenerationStatus.failed.value, "error_message": error[:1000], "completed_at": now}

    result = await session.execute(
        update(GenerationRequest)
        .where(
            GenerationRequest.provider_request_id == data.request_id,
            GenerationRequest.status.in_(OPEN_STATUSES),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await session.commit()

    if result.rowcount == 0:
        logger.warning(f"[webhook] Unknown or settled request_id {data.request_id}")
        return {"ok": True, "updated": False}
    logger.info(f"[webhook] Generation {data.request_id} -> {values['status']}")
    return {"ok": True, "updated": True}

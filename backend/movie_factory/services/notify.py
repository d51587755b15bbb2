"""
Operator notifications for movie pipelines (Telegram, throttled).

Env:
  TELEGRAM_BOT_TOKEN, TELEGRAM_CHAT_ID

The same alert key is sent at most once per 15 minutes. Sending never raises:
a failed alert is logged and the pipeline carries on.
"""
from __future__ import annotations

import html
import logging
import time
from typing import Any

import httpx

from movie_factory.settings import get_settings

logger = logging.getLogger(__name__)

THROTTLE_SEC = 15 * 60
_LEVEL_ICONS = {"error": "🔴", "warn": "🟡", "info": "🟢"}

_throttle: dict[str, float] = {}


def _should_send(key: str) -> bool:
    now = time.monotonic()
    for stale in [k for k, sent in _throttle.items() if now - sent >= THROTTLE_SEC]:
        del _throttle[stale]
    if now - _throttle.get(key, float("-inf")) < THROTTLE_SEC:
        return False
    _throttle[key] = now
    return True


def reset_throttle() -> None:
    _throttle.clear()


async def _send_telegram(text: str) -> bool:
    settings = get_settings()
    if not settings.telegram_bot_token or not settings.telegram_chat_id:
        logger.debug("[notify] Telegram not configured, skipping")
        return False
    url = f"https://api.telegram.org/bot{settings.telegram_bot_token}/sendMessage"
    try:
        async with httpx.AsyncClient(timeout=10) as client:
            r = await client.post(url, json={
                "chat_id": settings.telegram_chat_id,
                "text": text[:4000],
                "parse_mode": "HTML",
                "disable_web_page_preview": True,
            })
    except httpx.HTTPError as e:
        logger.warning(f"[notify] Telegram send failed: {e}")
        return False
    if r.status_code != 200:
        logger.warning(f"[notify] Telegram API {r.status_code}: {r.text[:200]}")
        return False
    return True


async def _alert(level: str, title: str, payload: Any = None, *, key: str | None = None) -> bool:
    if not _should_send(f"{level}:{key or title}"):
        logger.debug(f"[notify] throttled {level}: {title}")
        return False
    body = f"{_LEVEL_ICONS[level]} <b>{html.escape(title)}</b>"
    if payload:
        body += f"\n<pre>{html.escape(str(payload)[:500])}</pre>"
    return await _send_telegram(body)


async def notify_error(title: str, payload: Any = None) -> bool:
    return await _alert("error", title, payload)


async def notify_project_failed(project_id: int, title: str, reason: str) -> bool:
    return await _alert(
        "error", f"Movie #{project_id} failed: {title}", reason, key=f"project:{project_id}",
    )


async def notify_project_completed(project_id: int, title: str, final_video_url: str | None) -> bool:
    return await _alert(
        "info",
        f"Movie #{project_id} completed: {title}",
        final_video_url or "final movie not assembled",
        key=f"project:{project_id}",
    )


async def notify_project_paused(project_id: int, title: str, reason: str) -> bool:
    return await _alert(
        "warn", f"Movie #{project_id} paused: {title}", reason, key=f"project:{project_id}",
    )

"""
Video generation provider interface.

The orchestrator treats generation as an opaque async job: ``submit`` returns
a provider request id, ``poll`` reports pending / completed / failed. The fal
queue provider is the production implementation; the stub completes every
job on the first poll and is used for local runs.
"""
from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx

from movie_factory.services import video_models
from movie_factory.settings import Settings, get_settings

logger = logging.getLogger(__name__)

POLL_PENDING = "pending"
POLL_COMPLETED = "completed"
POLL_FAILED = "failed"


class ProviderError(Exception):
    """The provider could not accept or report on a request."""


@dataclass(frozen=True)
class GenerationInput:
    model: str
    prompt: str
    style: str | None = None
    aspect_ratio: str = "16:9"
    image_url: str | None = None
    webhook_url: str | None = None

    @property
    def mode(self) -> str:
        return "image-to-video" if self.image_url else "text-to-video"


@dataclass(frozen=True)
class GenerationPoll:
    state: str
    video_url: str | None = None
    error: str | None = None


class GenerationProvider(ABC):
    """Abstract generation provider."""

    @abstractmethod
    async def submit(self, request: GenerationInput) -> str:
        ...

    @abstractmethod
    async def poll(self, model: str, request_id: str) -> GenerationPoll:
        ...


class FalGenerationProvider(GenerationProvider):
    """fal.ai queue REST API."""

    def __init__(self, settings: Settings | None = None, *, client: httpx.AsyncClient | None = None):
        self.settings = settings or get_settings()
        self._client = client

    def _headers(self) -> dict[str, str]:
        if not self.settings.fal_key:
            raise ProviderError("FAL_KEY missing")
        return {"Authorization": f"Key {self.settings.fal_key}", "Content-Type": "application/json"}

    def _model(self, key: str) -> video_models.VideoModel:
        model = video_models.get_model(key)
        if model is None:
            raise ProviderError(f"Unknown model: {key}")
        return model

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict:
        headers = self._headers()
        try:
            if self._client is not None:
                resp = await self._client.request(method, url, headers=headers, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self.settings.provider_timeout_sec) as client:
                    resp = await client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise ProviderError(f"{method} {url} failed: {exc}") from exc

        if resp.status_code >= 400:
            raise ProviderError(f"{method} {url} -> {resp.status_code}: {resp.text[:400]}")
        try:
            return resp.json()
        except ValueError as exc:
            raise ProviderError(f"{method} {url}: invalid JSON") from exc

    async def submit(self, request: GenerationInput) -> str:
        model = self._model(request.model)
        try:
            body = video_models.build_input(
                request.model,
                request.prompt,
                style=request.style,
                aspect_ratio=request.aspect_ratio,
                image_url=request.image_url,
            )
        except ValueError as exc:
            raise ProviderError(str(exc)) from exc

        base = self.settings.fal_queue_url.rstrip("/")
        url = f"{base}/{model.provider_id(request.mode)}"
        params = {"fal_webhook": request.webhook_url} if request.webhook_url else None
        data = await self._request("POST", url, json=body, params=params)

        request_id = data.get("request_id")
        if not request_id:
            raise ProviderError(f"Submit to {model.key} returned no request_id")
        logger.info(f"[fal] Submitted {model.key} ({request.mode}) -> {request_id}")
        return request_id

    async def poll(self, model: str, request_id: str) -> GenerationPoll:
        config = self._model(model)
        base = self.settings.fal_queue_url.rstrip("/")
        # Status lives under the base app id, without the mode suffix.
        app_id = "/".join(config.model_id.split("/")[:2])
        data = await self._request("GET", f"{base}/{app_id}/requests/{request_id}/status")

        status = (data.get("status") or "").upper()
        if status in ("IN_QUEUE", "IN_PROGRESS"):
            return GenerationPoll(POLL_PENDING)
        if status != "COMPLETED":
            return GenerationPoll(POLL_FAILED, error=data.get("error") or f"Unexpected status: {status or 'UNKNOWN'}")

        if data.get("error"):
            return GenerationPoll(POLL_FAILED, error=str(data["error"]))

        response_url = data.get("response_url") or f"{base}/{app_id}/requests/{request_id}"
        result = await self._request("GET", response_url)
        video_url = (result.get("video") or {}).get("url")
        if not video_url:
            return GenerationPoll(POLL_FAILED, error="Completed without a video url")
        return GenerationPoll(POLL_COMPLETED, video_url=video_url)


class StubGenerationProvider(GenerationProvider):
    """Deterministic stub: every request completes on its first poll."""

    def __init__(self, base_url: str = "https://stub.local/videos"):
        self.base_url = base_url.rstrip("/")
        self.submitted: list[GenerationInput] = []

    async def submit(self, request: GenerationInput) -> str:
        self.submitted.append(request)
        return f"stub-{uuid.uuid4().hex[:12]}"

    async def poll(self, model: str, request_id: str) -> GenerationPoll:
        return GenerationPoll(POLL_COMPLETED, video_url=f"{self.base_url}/{request_id}.mp4")


def build_provider(settings: Settings | None = None) -> GenerationProvider:
    settings = settings or get_settings()
    name = settings.generation_provider.lower()
    if name == "fal":
        return FalGenerationProvider(settings)
    if name == "stub":
        return StubGenerationProvider()
    raise ValueError(f"Unknown generation provider: {settings.generation_provider}")

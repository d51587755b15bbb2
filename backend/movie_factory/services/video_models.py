"""Catalog of supported video models: provider ids, per-scene cost, clip length."""
from __future__ import annotations

import math
from dataclasses import dataclass

DEFAULT_SCENE_CREDITS = 7
DEFAULT_SCENE_SECONDS = 5.0
CENTS_PER_CREDIT = 5


@dataclass(frozen=True)
class VideoModel:
    key: str
    model_id: str
    cost_cents: int
    duration_seconds: float
    resolution: str

    @property
    def scene_credits(self) -> int:
        return math.ceil(self.cost_cents / CENTS_PER_CREDIT)

    def provider_id(self, mode: str) -> str:
        if mode != "image-to-video":
            return self.model_id
        if "text-to-video" in self.model_id:
            return self.model_id.replace("text-to-video", "image-to-video")
        return f"{self.model_id}/image-to-video"


MODELS: dict[str, VideoModel] = {
    "hailuo-2.3": VideoModel("hailuo-2.3", "fal-ai/minimax/hailuo-2.3/pro/text-to-video", 49, 6.0, "1080p"),
    "kling-2.6": VideoModel("kling-2.6", "fal-ai/kling-video/v2.6/pro/text-to-video", 35, 5.0, "720p"),
    "veo3-fast": VideoModel("veo3-fast", "fal-ai/veo3/fast", 80, 8.0, "720p"),
    "sora-2": VideoModel("sora-2", "fal-ai/sora-2/text-to-video", 80, 8.0, "720p"),
}

STYLE_PREFIXES: dict[str, str] = {
    "cinematic": "cinematic film style,",
    "anime": "anime style,",
    "realistic": "photorealistic,",
    "abstract": "abstract art style,",
    "noir": "film noir style, black and white,",
    "retro": "retro VHS style,",
    "neon": "neon-lit cyberpunk style,",
}

NEGATIVE_PROMPT = "blurry, low quality, distorted, watermark, text overlay"


def get_model(key: str) -> VideoModel | None:
    return MODELS.get(key)


def is_valid_model(key: str) -> bool:
    return key in MODELS


def scene_credit_cost(key: str) -> int:
    model = get_model(key)
    return model.scene_credits if model else DEFAULT_SCENE_CREDITS


def scene_duration(key: str) -> float:
    model = get_model(key)
    return model.duration_seconds if model else DEFAULT_SCENE_SECONDS


def styled_prompt(prompt: str, style: str | None) -> str:
    prefix = STYLE_PREFIXES.get(style or "")
    return f"{prefix} {prompt}" if prefix else prompt


def build_input(key: str, prompt: str, *, style: str | None = None, aspect_ratio: str = "16:9",
                image_url: str | None = None) -> dict:
    """Model-specific request body for the fal queue API."""
    text = styled_prompt(prompt, style)
    if key == "hailuo-2.3":
        body: dict = {"prompt": text, "prompt_optimizer": True}
    elif key == "kling-2.6":
        body = {"prompt": text, "negative_prompt": NEGATIVE_PROMPT, "aspect_ratio": aspect_ratio, "duration": "5"}
    elif key == "veo3-fast":
        body = {"prompt": text, "negative_prompt": NEGATIVE_PROMPT, "aspect_ratio": aspect_ratio, "duration": "8s"}
    elif key == "sora-2":
        body = {"prompt": text, "aspect_ratio": aspect_ratio, "duration": 8}
    else:
        raise ValueError(f"Unknown model: {key}")
    if image_url:
        body["image_url"] = image_url
    return body

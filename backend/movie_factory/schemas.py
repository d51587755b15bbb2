from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from .models import ProjectStatus, SceneStatus
from .services.video_models import STYLE_PREFIXES, is_valid_model

ASPECT_RATIOS = {"16:9", "9:16", "1:1"}


class MovieProjectCreate(BaseModel):
    user_id: int
    title: str = Field(min_length=1, max_length=200)
    description: str | None = None
    source_text: str = Field(min_length=1)
    model: str = "kling-2.6"
    style: str | None = None
    voice_id: str | None = None
    aspect_ratio: str = "16:9"
    target_duration_minutes: int = Field(default=10, ge=1, le=60)

    @field_validator("title")
    @classmethod
    def strip_title(cls, value: str) -> str:
        return value.strip()

    @field_validator("model")
    @classmethod
    def known_model(cls, value: str) -> str:
        if not is_valid_model(value):
            raise ValueError(f"Unknown model: {value}")
        return value

    @field_validator("style")
    @classmethod
    def known_style(cls, value: str | None) -> str | None:
        if value and value not in STYLE_PREFIXES:
            raise ValueError(f"Unknown style: {value}")
        return value or None

    @field_validator("aspect_ratio")
    @classmethod
    def known_aspect_ratio(cls, value: str) -> str:
        if value not in ASPECT_RATIOS:
            raise ValueError(f"Unsupported aspect ratio: {value}")
        return value


class MovieSceneRead(BaseModel):
    id: int
    scene_number: int
    scene_title: str | None = None
    video_prompt: str
    narration_text: str | None = None
    status: SceneStatus
    credit_cost: int
    retry_count: int
    video_url: str | None = None
    public_video_url: str | None = None
    last_frame_url: str | None = None
    duration_seconds: float | None = None
    error_message: str | None = None
    completed_at: datetime | None = None

    class Config:
        from_attributes = True


class MovieProjectRead(BaseModel):
    id: int
    user_id: int
    title: str
    description: str | None = None
    model: str
    style: str | None = None
    voice_id: str | None = None
    aspect_ratio: str
    target_duration_minutes: int
    status: ProjectStatus
    total_scenes: int
    current_scene: int
    completed_scenes: int
    estimated_credits: int
    spent_credits: int
    final_video_url: str | None = None
    total_duration_seconds: float | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None

    class Config:
        from_attributes = True


class MovieProjectDetail(MovieProjectRead):
    scenes: list[MovieSceneRead] = []


class PauseRequest(BaseModel):
    reason: str | None = None


class ScriptResponse(BaseModel):
    success: bool = True
    total_scenes: int
    estimated_duration_seconds: float
    estimated_credits: int
    summary: str


class GenerationWebhook(BaseModel):
    request_id: str
    status: str
    payload: dict | None = None
    error: str | None = None

    @property
    def video_url(self) -> str | None:
        video = (self.payload or {}).get("video") or {}
        return video.get("url") if isinstance(video, dict) else None


class SceneEdit(BaseModel):
    scene_number: int = Field(ge=1)
    video_prompt: str | None = Field(default=None, min_length=1, max_length=2000)
    narration_text: str | None = Field(default=None, max_length=1000)
    scene_title: str | None = Field(default=None, max_length=200)

    @field_validator("video_prompt")
    @classmethod
    def prompt_not_blank(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            raise ValueError("video_prompt cannot be blank")
        return value

    def changes(self) -> dict:
        """Only the fields the client sent; a prompt is never cleared."""
        fields = self.model_dump(exclude_unset=True, exclude={"scene_number"})
        if fields.get("video_prompt") is None:
            fields.pop("video_prompt", None)
        return fields


class SceneEditRequest(BaseModel):
    scenes: list[SceneEdit] = Field(min_length=1, max_length=150)

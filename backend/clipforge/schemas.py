from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator, model_validator

from .models import AspectRatio, Platform, SourceKind


class ContentRead(BaseModel):
    id: int
    user_id: str
    title: str
    description: str | None = None
    source_kind: SourceKind
    source_locator: str | None = None
    media_url: str | None = None
    duration: float | None = None
    status: str
    transcript: str | None = None
    transcript_segments: list[dict] | None = None
    language: str | None = None
    error_stage: str | None = None
    error_message: str | None = None
    processing_started_at: datetime | None = None
    processing_finished_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    class Config:
        from_attributes = True


class ContentSummary(BaseModel):
    id: int
    title: str
    source_kind: SourceKind
    status: str
    duration: float | None = None
    created_at: datetime | None = None

    class Config:
        from_attributes = True


class ImportUrlRequest(BaseModel):
    url: str
    source_type: SourceKind
    title: str | None = None


class ClipRead(BaseModel):
    id: int
    content_id: int
    title: str
    start_time: float
    end_time: float
    start_segment_index: int | None = None
    end_segment_index: int | None = None
    aspect_ratio: str
    requested_aspect_ratio: str | None = None
    status: str
    file_url: str | None = None
    thumbnail_url: str | None = None
    viral_score: int | None = None
    reason: str | None = None
    origin: str
    error_message: str | None = None
    created_at: datetime | None = None

    class Config:
        from_attributes = True


class ClipCreate(BaseModel):
    content_id: int
    title: str = Field(min_length=1, max_length=255)
    start_time: float = Field(ge=0)
    end_time: float = Field(gt=0)
    aspect_ratio: AspectRatio = AspectRatio.portrait
    render_now: bool = False

    @model_validator(mode="after")
    def check_range(self):
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be greater than start_time")
        return self


class RenderRequest(BaseModel):
    aspect_ratio: AspectRatio | None = None
    discard_previous: bool = False


class GeneratedContentRead(BaseModel):
    id: int
    content_id: int | None = None
    clip_id: int | None = None
    type: str
    platform: str | None = None
    content: str
    metadata: dict | None = Field(default=None, validation_alias="metadata_json")
    status: str
    scheduled_at: datetime | None = None
    published_at: datetime | None = None
    published_url: str | None = None
    created_at: datetime | None = None

    class Config:
        from_attributes = True


class GenerateRequest(BaseModel):
    content_id: int
    platforms: list[Platform] = Field(min_length=1)
    tone_of_voice: str = "professional"
    include_hashtags: bool = True
    include_emojis: bool = True
    include_quotes: bool = True
    quote_count: int = Field(default=5, ge=0, le=20)
    clip_id: int | None = None


class GenerateResponse(BaseModel):
    success: bool
    content_id: int
    generated: list[GeneratedContentRead]
    quotes: list[GeneratedContentRead]
    succeeded: list[str]
    failed: dict[str, str]


class RegenerateRequest(BaseModel):
    custom_prompt: str | None = Field(default=None, max_length=2000)


class ScheduleRequest(BaseModel):
    platform: Platform
    scheduled_at: datetime
    generated_content_id: int | None = None
    content: str | None = None

    @model_validator(mode="after")
    def check_source(self):
        if self.generated_content_id is None and not (self.content or "").strip():
            raise ValueError("generated_content_id or content is required")
        return self


class ScheduledPostRead(BaseModel):
    id: int
    generated_content_id: int
    platform: str
    scheduled_for: datetime
    status: str
    error: str | None = None
    published_url: str | None = None
    published_at: datetime | None = None
    content: str | None = None

    class Config:
        from_attributes = True


class PublishNowRequest(BaseModel):
    generated_content_id: int
    platform: Platform | None = None


class UsageRead(BaseModel):
    user_id: str
    plan: str
    usage: int
    limit: int | None
    remaining: int | None
    unlimited: bool
    period_start: datetime | None = None


class PlanUpdate(BaseModel):
    plan: str

    @field_validator("plan")
    @classmethod
    def normalize_plan(cls, value: str) -> str:
        return value.strip().lower()

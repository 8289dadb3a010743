from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship as sa_relationship, validates

from .db import Base
from .errors import IllegalTransition
from .state import (
    CLIP_MACHINE,
    CONTENT_MACHINE,
    GENERATED_CONTENT_MACHINE,
    SCHEDULED_POST_MACHINE,
    ClipStatus,
    ContentStatus,
    GeneratedContentStatus,
    ScheduledPostStatus,
)


def relationship(*args, **kwargs):
    """Wrap SQLAlchemy relationship to forbid lazy loading by default."""
    kwargs.setdefault("lazy", "raise")
    return sa_relationship(*args, **kwargs)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SourceKind(str, Enum):
    upload = "upload"
    youtube = "youtube"
    tiktok = "tiktok"
    url = "url"


class AspectRatio(str, Enum):
    landscape = "16:9"
    portrait = "9:16"
    square = "1:1"
    vertical = "4:5"


class Platform(str, Enum):
    twitter = "twitter"
    linkedin = "linkedin"
    instagram = "instagram"
    tiktok = "tiktok"
    youtube = "youtube"
    blog = "blog"
    newsletter = "newsletter"


class Plan(str, Enum):
    free = "free"
    starter = "starter"
    pro = "pro"
    agency = "agency"


UNLIMITED = -1

PLAN_LIMITS: dict[str, int] = {
    Plan.free.value: 3,
    Plan.starter.value: 10,
    Plan.pro.value: 50,
    Plan.agency.value: UNLIMITED,
}


def _check_status(machine, current, value):
    machine.check(current, value)
    return value.value if isinstance(value, Enum) else value


class Content(Base):
    __tablename__ = "contents"
    __state_machine__ = CONTENT_MACHINE

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    title: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    source_kind: Mapped[SourceKind] = mapped_column(sa.String(16), nullable=False)
    source_locator: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    storage_key: Mapped[str | None] = mapped_column(sa.String(512), nullable=True)
    media_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    duration: Mapped[float | None] = mapped_column(sa.Float(), nullable=True)
    status: Mapped[ContentStatus] = mapped_column(sa.String(16), nullable=False, index=True)
    transcript: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    transcript_segments: Mapped[list | None] = mapped_column(sa.JSON(), nullable=True)
    transcript_checkpoint: Mapped[dict | None] = mapped_column(sa.JSON(), nullable=True)
    language: Mapped[str | None] = mapped_column(sa.String(16), nullable=True)
    pipeline_run_id: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    celery_task_id: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    error_stage: Mapped[str | None] = mapped_column(sa.String(16), nullable=True)
    error_message: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    processing_started_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    processing_finished_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow, server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow, server_default=sa.func.now(), onupdate=utcnow, nullable=False
    )

    clips: Mapped[list["Clip"]] = relationship(back_populates="content", passive_deletes=True)

    @validates("status")
    def _validate_status(self, key, value):
        return _check_status(CONTENT_MACHINE, self.status, value)


class Clip(Base):
    __tablename__ = "clips"
    __state_machine__ = CLIP_MACHINE

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    content_id: Mapped[int] = mapped_column(sa.ForeignKey("contents.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    title: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    start_time: Mapped[float] = mapped_column(sa.Float(), nullable=False)
    end_time: Mapped[float] = mapped_column(sa.Float(), nullable=False)
    start_segment_index: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    end_segment_index: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    aspect_ratio: Mapped[AspectRatio] = mapped_column(sa.String(8), nullable=False, server_default="9:16")
    requested_aspect_ratio: Mapped[str | None] = mapped_column(sa.String(8), nullable=True)
    status: Mapped[ClipStatus] = mapped_column(sa.String(16), nullable=False, index=True)
    file_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    thumbnail_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    viral_score: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    reason: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    origin: Mapped[str] = mapped_column(sa.String(16), nullable=False, server_default="planner")
    error_message: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    celery_task_id: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    render_started_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow, server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow, server_default=sa.func.now(), onupdate=utcnow, nullable=False
    )

    content: Mapped[Content] = relationship(back_populates="clips")

    __table_args__ = (
        sa.CheckConstraint("end_time > start_time", name="ck_clips_positive_duration"),
        sa.CheckConstraint("viral_score IS NULL OR (viral_score >= 0 AND viral_score <= 100)", name="ck_clips_viral_score"),
    )

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    @validates("status")
    def _validate_status(self, key, value):
        return _check_status(CLIP_MACHINE, self.status, value)

    @validates("aspect_ratio")
    def _validate_aspect_ratio(self, key, value):
        value = AspectRatio(value).value
        if self.status == ClipStatus.ready.value and self.aspect_ratio not in (None, value):
            raise IllegalTransition("clip", "ready", "ready (changing aspect_ratio)")
        return value


class GeneratedContent(Base):
    __tablename__ = "generated_contents"
    __state_machine__ = GENERATED_CONTENT_MACHINE

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    content_id: Mapped[int | None] = mapped_column(
        sa.ForeignKey("contents.id", ondelete="CASCADE"), nullable=True, index=True
    )
    clip_id: Mapped[int | None] = mapped_column(sa.ForeignKey("clips.id", ondelete="SET NULL"), nullable=True)
    user_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    type: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    platform: Mapped[Platform | None] = mapped_column(sa.String(32), nullable=True)
    content: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    metadata_json: Mapped[dict | None] = mapped_column("metadata", sa.JSON(), nullable=True)
    status: Mapped[GeneratedContentStatus] = mapped_column(sa.String(16), nullable=False, index=True)
    scheduled_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    published_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow, server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow, server_default=sa.func.now(), onupdate=utcnow, nullable=False
    )

    @validates("status")
    def _validate_status(self, key, value):
        return _check_status(GENERATED_CONTENT_MACHINE, self.status, value)


class ScheduledPost(Base):
    __tablename__ = "scheduled_posts"
    __state_machine__ = SCHEDULED_POST_MACHINE

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    generated_content_id: Mapped[int] = mapped_column(
        sa.ForeignKey("generated_contents.id", ondelete="CASCADE"), nullable=False
    )
    platform: Mapped[Platform] = mapped_column(sa.String(32), nullable=False)
    scheduled_for: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False, index=True)
    status: Mapped[ScheduledPostStatus] = mapped_column(sa.String(16), nullable=False, index=True)
    error: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    published_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow, server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow, server_default=sa.func.now(), onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        # at most one non-terminal post per generated content
        sa.Index(
            "uq_scheduled_posts_active_per_gc",
            "generated_content_id",
            unique=True,
            postgresql_where=sa.text("status IN ('scheduled', 'publishing')"),
            sqlite_where=sa.text("status IN ('scheduled', 'publishing')"),
        ),
    )

    @validates("status")
    def _validate_status(self, key, value):
        return _check_status(SCHEDULED_POST_MACHINE, self.status, value)


class UsageCounter(Base):
    __tablename__ = "usage_counters"

    user_id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    plan: Mapped[Plan] = mapped_column(sa.String(16), nullable=False, server_default=Plan.free.value)
    usage: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0")
    limit: Mapped[int] = mapped_column("usage_limit", sa.Integer(), nullable=False, server_default="3")
    period_start: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow, server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow, server_default=sa.func.now(), onupdate=utcnow, nullable=False
    )

    @property
    def unlimited(self) -> bool:
        return self.limit == UNLIMITED

    @property
    def remaining(self) -> int | None:
        if self.unlimited:
            return None
        return max(self.limit - self.usage, 0)


class UsageEvent(Base):
    """Marks a Content as already counted against its owner's quota."""

    __tablename__ = "usage_events"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    content_id: Mapped[int] = mapped_column(sa.Integer(), nullable=False, unique=True)
    counted_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow, server_default=sa.func.now(), nullable=False
    )


class SocialAccount(Base):
    __tablename__ = "social_accounts"
    __table_args__ = (sa.UniqueConstraint("user_id", "platform", name="uq_social_accounts_user_platform"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    platform: Mapped[Platform] = mapped_column(sa.String(32), nullable=False)
    platform_user_id: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    platform_username: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    access_token: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, server_default=sa.true(), default=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow, server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow, server_default=sa.func.now(), onupdate=utcnow, nullable=False
    )

    def token_expired(self, now: datetime | None = None) -> bool:
        expires = as_utc(self.token_expires_at)
        if expires is None:
            return False
        return expires <= (now or utcnow())

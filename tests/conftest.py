from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ["CELERY_ENABLED"] = "false"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["CRON_SECRET"] = "test-cron-secret"

from sqlalchemy import update  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from clipforge.db import Base  # noqa: E402
from clipforge.models import Clip, Content  # noqa: E402
from clipforge.services import clip_renderer, jobs, llm_provider, publisher_adapter, storage, transcription  # noqa: E402
from clipforge.services.clip_renderer import RenderBackend, RenderOutput  # noqa: E402
from clipforge.services.llm_provider import CompletionProvider, PromptSpec  # noqa: E402
from clipforge.services.transcription import Transcriber, Transcript, build_transcript, normalize_segments  # noqa: E402
from clipforge.state import ClipStatus, ContentStatus  # noqa: E402


class FakeLLM(CompletionProvider):
    """Routes a prompt to a canned JSON reply by what the prompt asks for."""

    name = "fake"

    def __init__(self, highlights=None, clips=None, posts=None, quotes=None):
        self.highlights = highlights if highlights is not None else []
        self.clips = clips if clips is not None else []
        self.posts = posts or {}
        self.quotes = quotes if quotes is not None else []
        self.error: Exception | None = None
        self.calls: list[PromptSpec] = []

    async def complete(self, prompt: PromptSpec) -> str:
        self.calls.append(prompt)
        if self.error is not None:
            raise self.error
        system = prompt.system
        if '"highlights"' in system:
            reply = self.highlights
            return reply if isinstance(reply, str) else json.dumps({"highlights": reply})
        if '"clips" array' in system:
            reply = self.clips
            return reply if isinstance(reply, str) else json.dumps({"clips": reply})
        if "quotable statements" in system:
            return json.dumps({"quotes": self.quotes})
        for platform, reply in self.posts.items():
            if f"Create engaging content for {platform}." in system:
                if isinstance(reply, Exception):
                    raise reply
                return reply if isinstance(reply, str) else json.dumps(reply)
        raise RuntimeError("unexpected prompt")


def make_segments(count: int = 10, seconds: float = 6.0) -> list[dict]:
    return [
        {"start": i * seconds, "end": (i + 1) * seconds, "text": f"Segment number {i}."}
        for i in range(count)
    ]


class FakeTranscriber(Transcriber):
    name = "fake"

    def __init__(self, raw_segments=None, error: Exception | None = None, language: str = "en"):
        self.raw_segments = raw_segments if raw_segments is not None else make_segments()
        self.error = error
        self.language = language
        self.calls: list[str] = []

    async def transcribe(self, media_url: str, *, language: str | None = None) -> Transcript:
        self.calls.append(media_url)
        if self.error is not None:
            raise self.error
        return build_transcript(None, self.raw_segments, None, self.language)


class FakeRenderBackend(RenderBackend):
    name = "fake"

    def __init__(self, error: Exception | None = None):
        self.error = error
        self.calls: list[tuple] = []

    async def render(self, source_url: str, start: float, end: float, aspect_ratio: str) -> RenderOutput:
        self.calls.append((source_url, start, end, aspect_ratio))
        if self.error is not None:
            raise self.error
        n = len(self.calls)
        return RenderOutput(
            clip_url=f"https://cdn.example.com/clips/{n}.mp4",
            thumbnail_url=f"https://cdn.example.com/clips/{n}.jpg",
        )


class Database:
    """A throwaway SQLite database with its own session factory."""

    def __init__(self, path: Path):
        self.url = f"sqlite+aiosqlite:///{path}"
        self.engine = create_async_engine(self.url, poolclass=NullPool, connect_args={"timeout": 30})
        self.sessionmaker = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    def session(self) -> AsyncSession:
        return self.sessionmaker()

    def run(self, fn):
        """Run ``fn(session)`` in a fresh session on a fresh event loop."""

        async def _go():
            async with self.session() as session:
                return await fn(session)

        return asyncio.run(_go())


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "clipforge.db")
    asyncio.run(database.create_all())
    yield database
    asyncio.run(database.engine.dispose())


@pytest.fixture
def enqueued(monkeypatch):
    """Capture queued jobs instead of running them."""
    calls = {"content": [], "render": []}

    def fake_content_job(content_id, run_id):
        calls["content"].append((content_id, run_id))
        return f"task-content-{content_id}-{len(calls['content'])}"

    def fake_render_job(clip_id):
        calls["render"].append(clip_id)
        return f"task-clip-{clip_id}-{len(calls['render'])}"

    monkeypatch.setattr(jobs, "enqueue_content_job", fake_content_job)
    monkeypatch.setattr(jobs, "enqueue_render_job", fake_render_job)
    return calls


@pytest.fixture
def fake_llm():
    llm = FakeLLM()
    llm_provider.set_llm_provider(llm)
    yield llm
    llm_provider.set_llm_provider(None)


@pytest.fixture
def fake_transcriber():
    transcriber = FakeTranscriber()
    transcription.set_transcriber(transcriber)
    yield transcriber
    transcription.set_transcriber(None)


@pytest.fixture
def fake_renderer():
    backend = FakeRenderBackend()
    clip_renderer.set_render_backend(backend)
    yield backend
    clip_renderer.set_render_backend(None)


@pytest.fixture
def media_storage(tmp_path):
    store = storage.LocalMediaStorage(
        tmp_path / "uploads", base_url="http://testserver", secret="test-secret"
    )
    storage.set_storage(store)
    yield store
    storage.set_storage(None)


@pytest.fixture
def publishers():
    """Register test adapters; restores the built-in registry afterwards."""
    saved = dict(publisher_adapter._ADAPTERS)
    yield publisher_adapter.register_publisher
    publisher_adapter._ADAPTERS.clear()
    publisher_adapter._ADAPTERS.update(saved)


async def seed_ready_content(
    session, user_id: str = "u1", *, segments: list[dict] | None = None, locator: str = "https://media.example.com/talk.mp4"
):
    """Insert a Content already through the pipeline, bypassing the job."""
    segs = [s.to_dict() for s in normalize_segments(segments if segments is not None else make_segments())]
    content = Content(
        user_id=user_id,
        title="Talk",
        source_kind="url",
        source_locator=locator,
        status=ContentStatus.processing,
    )
    session.add(content)
    await session.flush()
    await session.execute(
        update(Content)
        .where(Content.id == content.id)
        .values(
            status=ContentStatus.ready.value,
            transcript=" ".join(s["text"] for s in segs),
            transcript_segments=segs,
            duration=segs[-1]["end"] if segs else 0.0,
            language="en",
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return await session.get(Content, content.id, populate_existing=True)


async def seed_clip(session, content, *, start: float = 18.0, end: float = 36.0, status: str = "pending", **values):
    clip = Clip(
        content_id=content.id,
        user_id=content.user_id,
        title="Clip",
        start_time=start,
        end_time=end,
        aspect_ratio="9:16",
        status=ClipStatus.pending,
    )
    session.add(clip)
    await session.flush()
    if status != "pending" or values:
        await session.execute(
            update(Clip).where(Clip.id == clip.id).values(status=status, **values)
            .execution_options(synchronize_session=False)
        )
    await session.commit()
    return await session.get(Clip, clip.id, populate_existing=True)

from __future__ import annotations

import pytest

from clipforge.errors import InvalidRequest, NotFound, RenderFailed
from clipforge.models import Clip
from clipforge.services import jobs
from clipforge.services.clip_renderer import (
    ffmpeg_clip_options,
    render_clip,
    request_clip_render,
)

from conftest import seed_clip, seed_ready_content


async def _reload(session, clip_id):
    return await session.get(Clip, clip_id, populate_existing=True)


class TestFfmpegOptions:
    def test_clip_options_frame_target_ratio(self):
        options = ffmpeg_clip_options(12.5, 40.0, "9:16")
        assert "-ss 12.500" in options
        assert "-t 27.500" in options
        assert "scale=1080:1920" in options

    def test_square(self):
        assert "pad=1080:1080" in ffmpeg_clip_options(0, 1, "1:1")


class TestRequestRender:
    def test_pending_clip_moves_to_processing_before_enqueue(self, db, enqueued):
        async def scenario(session):
            content = await seed_ready_content(session)
            clip = await seed_clip(session, content)
            ack = await request_clip_render(session, "u1", clip.id)
            return ack, await _reload(session, clip.id)

        ack, clip = db.run(scenario)
        assert ack["started"] is True
        assert ack["status"] == "processing"
        assert clip.status == "processing"
        assert clip.render_started_at is not None
        assert clip.celery_task_id == ack["celery_task_id"]
        assert enqueued["render"] == [clip.id]

    def test_second_request_while_processing_is_a_no_op(self, db, enqueued):
        async def scenario(session):
            content = await seed_ready_content(session)
            clip = await seed_clip(session, content)
            await request_clip_render(session, "u1", clip.id)
            return await request_clip_render(session, "u1", clip.id)

        ack = db.run(scenario)
        assert ack["started"] is False
        assert ack["reason"] == "already_processing"
        assert len(enqueued["render"]) == 1

    def test_rerender_ready_clip_with_new_ratio(self, db, enqueued):
        async def scenario(session):
            content = await seed_ready_content(session)
            clip = await seed_clip(
                session, content, status="ready",
                file_url="https://cdn.example.com/old.mp4", thumbnail_url="https://cdn.example.com/old.jpg",
            )
            ack = await request_clip_render(session, "u1", clip.id, "16:9")
            return ack, await _reload(session, clip.id)

        ack, clip = db.run(scenario)
        assert ack["aspect_ratio"] == "16:9"
        assert clip.status == "processing"
        assert clip.requested_aspect_ratio == "16:9"
        # last good render and its ratio stay visible until the new one lands
        assert clip.aspect_ratio == "9:16"
        assert clip.file_url == "https://cdn.example.com/old.mp4"

    def test_discard_previous_clears_urls(self, db, enqueued):
        async def scenario(session):
            content = await seed_ready_content(session)
            clip = await seed_clip(session, content, status="error", file_url="https://cdn.example.com/old.mp4")
            await request_clip_render(session, "u1", clip.id, discard_previous=True)
            return await _reload(session, clip.id)

        clip = db.run(scenario)
        assert clip.file_url is None
        assert clip.status == "processing"

    def test_unknown_ratio_rejected(self, db, enqueued):
        async def scenario(session):
            content = await seed_ready_content(session)
            clip = await seed_clip(session, content)
            await request_clip_render(session, "u1", clip.id, "21:9")

        with pytest.raises(InvalidRequest):
            db.run(scenario)
        assert enqueued["render"] == []

    def test_foreign_clip_not_found(self, db, enqueued):
        async def scenario(session):
            content = await seed_ready_content(session)
            clip = await seed_clip(session, content)
            await request_clip_render(session, "someone-else", clip.id)

        with pytest.raises(NotFound):
            db.run(scenario)

    def test_enqueue_failure_moves_clip_to_error(self, db, monkeypatch):
        def broken(clip_id):
            raise ConnectionError("broker unreachable")

        monkeypatch.setattr(jobs, "enqueue_render_job", broken)

        async def scenario(session):
            content = await seed_ready_content(session)
            clip = await seed_clip(session, content)
            with pytest.raises(ConnectionError):
                await request_clip_render(session, "u1", clip.id)
            return await _reload(session, clip.id)

        clip = db.run(scenario)
        assert clip.status == "error"
        assert "broker unreachable" in clip.error_message


class TestRenderClip:
    def test_success_sets_urls(self, db, fake_renderer):
        async def scenario(session):
            content = await seed_ready_content(session)
            clip = await seed_clip(session, content, status="processing")
            result = await render_clip(session, clip.id)
            return result, await _reload(session, clip.id)

        result, clip = db.run(scenario)
        assert result["status"] == "ready"
        assert clip.status == "ready"
        assert clip.file_url == "https://cdn.example.com/clips/1.mp4"
        assert clip.thumbnail_url == "https://cdn.example.com/clips/1.jpg"
        assert fake_renderer.calls == [("https://media.example.com/talk.mp4", 18.0, 36.0, "9:16")]

    def test_backend_failure_keeps_last_good_urls(self, db, fake_renderer):
        fake_renderer.error = RenderFailed("ffmpeg exited with status 1")

        async def scenario(session):
            content = await seed_ready_content(session)
            clip = await seed_clip(session, content, status="processing", file_url="https://cdn.example.com/old.mp4")
            result = await render_clip(session, clip.id)
            return result, await _reload(session, clip.id)

        result, clip = db.run(scenario)
        assert result["status"] == "error"
        assert clip.status == "error"
        assert clip.error_message == "ffmpeg exited with status 1"
        assert clip.file_url == "https://cdn.example.com/old.mp4"

    def test_new_ratio_applied_on_success(self, db, fake_renderer, enqueued):
        async def scenario(session):
            content = await seed_ready_content(session)
            clip = await seed_clip(session, content, status="ready", file_url="https://cdn.example.com/old-9x16.mp4")
            await request_clip_render(session, "u1", clip.id, "16:9")
            result = await render_clip(session, clip.id)
            return result, await _reload(session, clip.id)

        result, clip = db.run(scenario)
        assert result["aspect_ratio"] == "16:9"
        assert clip.status == "ready"
        assert clip.aspect_ratio == "16:9"
        assert clip.requested_aspect_ratio is None
        assert clip.file_url == "https://cdn.example.com/clips/1.mp4"
        assert fake_renderer.calls[0][3] == "16:9"

    def test_failed_ratio_change_keeps_previous_render(self, db, fake_renderer, enqueued):
        fake_renderer.error = RenderFailed("ffmpeg exited with status 1")

        async def scenario(session):
            content = await seed_ready_content(session)
            clip = await seed_clip(
                session, content, status="ready",
                file_url="https://cdn.example.com/old-9x16.mp4", thumbnail_url="https://cdn.example.com/old-9x16.jpg",
            )
            await request_clip_render(session, "u1", clip.id, "16:9")
            await render_clip(session, clip.id)
            return await _reload(session, clip.id)

        clip = db.run(scenario)
        assert fake_renderer.calls[0][3] == "16:9"
        assert clip.status == "error"
        assert clip.aspect_ratio == "9:16"
        assert clip.requested_aspect_ratio is None
        assert clip.file_url == "https://cdn.example.com/old-9x16.mp4"
        assert clip.thumbnail_url == "https://cdn.example.com/old-9x16.jpg"

    def test_clip_not_processing_is_skipped(self, db, fake_renderer):
        async def scenario(session):
            content = await seed_ready_content(session)
            clip = await seed_clip(session, content)
            return await render_clip(session, clip.id)

        result = db.run(scenario)
        assert result["skipped"] is True
        assert fake_renderer.calls == []

    def test_missing_clip(self, db, fake_renderer):
        async def scenario(session):
            return await render_clip(session, 999)

        assert db.run(scenario)["status"] == "missing"

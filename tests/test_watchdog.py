from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import update

from clipforge.models import Clip, Content
from clipforge.services import pipeline_orchestrator as orchestrator
from clipforge.services import quota_ledger
from clipforge.services.watchdog_service import run_watchdog

from conftest import seed_clip, seed_ready_content


async def _stuck_pipeline(session):
    content = await seed_ready_content(session)
    await session.execute(
        update(Content).where(Content.id == content.id)
        .values(status="transcribing", pipeline_run_id="run-1")
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    clip = await seed_clip(session, content, status="processing")
    return content, clip


class TestWatchdog:
    def test_fresh_work_is_left_alone(self, db):
        async def scenario(session):
            await _stuck_pipeline(session)
            return await run_watchdog(session)

        report = db.run(scenario)
        assert report["items"] == []

    def test_dry_run_reports_without_changes(self, db):
        async def scenario(session):
            content, clip = await _stuck_pipeline(session)
            later = datetime.now(timezone.utc) + timedelta(hours=3)
            report = await run_watchdog(session, now=later, dry_run=True)
            content = await session.get(Content, content.id, populate_existing=True)
            clip = await session.get(Clip, clip.id, populate_existing=True)
            return report, content.status, clip.status

        report, content_status, clip_status = db.run(scenario)
        assert report["stuck_contents"] == 1
        assert report["stuck_clips"] == 1
        assert {item["action"] for item in report["items"]} == {"would_mark_error"}
        assert (content_status, clip_status) == ("transcribing", "processing")

    def test_stuck_work_is_failed(self, db):
        async def scenario(session):
            content, clip = await _stuck_pipeline(session)
            later = datetime.now(timezone.utc) + timedelta(hours=3)
            report = await run_watchdog(session, now=later)
            content = await session.get(Content, content.id, populate_existing=True)
            clip = await session.get(Clip, clip.id, populate_existing=True)
            return report, content, clip

        report, content, clip = db.run(scenario)
        assert [item["action"] for item in report["items"]] == ["marked_error", "marked_error"]
        assert content.status == "error"
        assert content.error_stage == "transcribing"
        assert content.error_message.startswith("watchdog: stuck transcribing")
        assert clip.status == "error"
        assert "stuck rendering" in clip.error_message

    def test_lost_job_in_processing_is_failed_and_reprocessable(self, db, enqueued):
        async def scenario(session):
            ack = await orchestrator.import_from_url(session, "u1", "https://media.example.com/talk.mp4", "url")
            # the queued job never reached a worker
            fresh = await run_watchdog(session)
            later = datetime.now(timezone.utc) + timedelta(hours=3)
            report = await run_watchdog(session, now=later)
            failed = await session.get(Content, ack["content_id"], populate_existing=True)
            error_stage = failed.error_stage
            retried = await orchestrator.start_processing(session, "u1", ack["content_id"])
            usage = (await quota_ledger.get_usage(session, "u1"))["usage"]
            return ack, fresh, report, error_stage, retried, usage

        ack, fresh, report, error_stage, retried, usage = db.run(scenario)
        assert fresh["items"] == []
        assert report["items"] == [{
            "entity": "content", "id": ack["content_id"], "old_status": "processing",
            "age_minutes": 180, "action": "marked_error",
        }]
        assert error_stage == "processing"
        assert retried["started"] is True
        assert retried["status"] == "transcribing"
        assert retried["run_id"] != ack["run_id"]
        assert usage == 1
        assert len(enqueued["content"]) == 2

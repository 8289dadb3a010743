from __future__ import annotations

import pytest

from clipforge.errors import IllegalTransition
from clipforge.models import Clip, Content, GeneratedContent, ScheduledPost
from clipforge.state import (
    CLIP_MACHINE,
    CONTENT_MACHINE,
    GENERATED_CONTENT_MACHINE,
    SCHEDULED_POST_MACHINE,
    ClipStatus,
    ContentStatus,
    ScheduledPostStatus,
    transition,
)


class TestMachines:
    def test_content_happy_path(self):
        path = ["uploading", "processing", "transcribing", "analyzing", "ready"]
        for current, target in zip(path, path[1:]):
            assert CONTENT_MACHINE.can(current, target)

    def test_content_error_and_reprocess(self):
        for stage in ("processing", "transcribing", "analyzing"):
            assert CONTENT_MACHINE.can(stage, "error")
        assert CONTENT_MACHINE.can("error", "transcribing")
        assert not CONTENT_MACHINE.can("error", "ready")
        assert not CONTENT_MACHINE.can("uploading", "error")

    def test_ready_content_is_terminal(self):
        for target in ("processing", "transcribing", "analyzing", "error", "uploading"):
            assert not CONTENT_MACHINE.can("ready", target)

    def test_clip_rerender_allowed_from_terminal_states(self):
        for source in ("pending", "error", "ready"):
            assert CLIP_MACHINE.can(source, "processing")
        assert not CLIP_MACHINE.can("pending", "ready")

    def test_post_never_leaves_terminal_state(self):
        for terminal in ("published", "failed"):
            for target in ("scheduled", "publishing", "published", "failed"):
                assert not SCHEDULED_POST_MACHINE.can(terminal, target)

    def test_published_generated_content_is_terminal(self):
        assert GENERATED_CONTENT_MACHINE.transitions["published"] == frozenset()

    def test_predecessors(self):
        assert CONTENT_MACHINE.predecessors("error") == {"processing", "transcribing", "analyzing"}
        assert SCHEDULED_POST_MACHINE.predecessors("publishing") == {"scheduled"}


class TestValidates:
    def test_new_content_must_start_in_initial_state(self):
        with pytest.raises(IllegalTransition):
            Content(user_id="u1", title="t", source_kind="upload", status=ContentStatus.ready)

    def test_orm_write_rejects_illegal_transition(self):
        content = Content(user_id="u1", title="t", source_kind="upload", status=ContentStatus.uploading)
        content.status = ContentStatus.processing
        assert content.status == "processing"
        with pytest.raises(IllegalTransition):
            content.status = ContentStatus.ready

    def test_clip_aspect_ratio_frozen_once_ready(self):
        clip = Clip(content_id=1, user_id="u1", title="c", start_time=0, end_time=5, status=ClipStatus.pending)
        clip.aspect_ratio = "9:16"
        clip.status = ClipStatus.processing
        clip.status = ClipStatus.ready
        with pytest.raises(IllegalTransition):
            clip.aspect_ratio = "16:9"

    def test_clip_rejects_unknown_aspect_ratio(self):
        clip = Clip(content_id=1, user_id="u1", title="c", start_time=0, end_time=5, status=ClipStatus.pending)
        with pytest.raises(ValueError):
            clip.aspect_ratio = "21:9"


async def _content(session):
    content = Content(user_id="u1", title="t", source_kind="upload", status=ContentStatus.uploading)
    session.add(content)
    await session.commit()
    return content


class TestConditionalTransition:
    def test_only_one_caller_wins(self, db):
        async def scenario(session):
            content = await _content(session)
            first = await transition(session, Content, content.id, ContentStatus.processing)
            second = await transition(session, Content, content.id, ContentStatus.processing)
            await session.commit()
            return first, second

        assert db.run(scenario) == (True, False)

    def test_extra_values_written_with_status(self, db):
        async def scenario(session):
            content = await _content(session)
            await transition(session, Content, content.id, ContentStatus.processing, pipeline_run_id="run-1")
            await session.commit()
            return await session.get(Content, content.id, populate_existing=True)

        content = db.run(scenario)
        assert content.status == "processing"
        assert content.pipeline_run_id == "run-1"

    def test_where_clause_narrows_the_match(self, db):
        async def scenario(session):
            content = await _content(session)
            return await transition(
                session, Content, content.id, ContentStatus.processing,
                where=[Content.pipeline_run_id == "someone-else"],
            )

        assert db.run(scenario) is False

    def test_expected_state_must_be_legal(self, db):
        async def scenario(session):
            content = await _content(session)
            await transition(session, Content, content.id, ContentStatus.ready, expected=[ContentStatus.uploading])

        with pytest.raises(IllegalTransition):
            db.run(scenario)

    def test_terminal_post_target(self, db):
        async def scenario(session):
            await transition(session, ScheduledPost, 1, ScheduledPostStatus.scheduled)

        # nothing transitions into scheduled
        with pytest.raises(IllegalTransition):
            db.run(scenario)

    def test_generated_content_reschedule_is_legal(self):
        assert GeneratedContent.__state_machine__.can("scheduled", "scheduled")

"""
Status enums and transition tables for every stateful entity.

Two enforcement points:
- ORM writes to ``status`` are checked by ``StateMachine.check`` (wired up
  through ``@validates`` in models.py).
- ``transition()`` performs a conditional UPDATE restricted to the legal
  predecessor states and reports whether this caller won the row.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import IllegalTransition

logger = logging.getLogger(__name__)


class ContentStatus(str, Enum):
    uploading = "uploading"
    processing = "processing"
    transcribing = "transcribing"
    analyzing = "analyzing"
    ready = "ready"
    error = "error"


class ClipStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    ready = "ready"
    error = "error"


class GeneratedContentStatus(str, Enum):
    draft = "draft"
    scheduled = "scheduled"
    published = "published"
    failed = "failed"


class ScheduledPostStatus(str, Enum):
    scheduled = "scheduled"
    publishing = "publishing"
    published = "published"
    failed = "failed"


@dataclass(frozen=True)
class StateMachine:
    entity: str
    transitions: dict[str, frozenset[str]]
    initial: frozenset[str]

    def can(self, current: str | None, target: str) -> bool:
        if current is None:
            return target in self.initial
        return target in self.transitions.get(current, frozenset())

    def check(self, current: str | None, target: str) -> None:
        if not self.can(_value(current), _value(target)):
            raise IllegalTransition(self.entity, _value(current), _value(target))

    def predecessors(self, target: str) -> frozenset[str]:
        return frozenset(src for src, dests in self.transitions.items() if target in dests)


def _value(status: Any) -> str | None:
    if status is None:
        return None
    return status.value if isinstance(status, Enum) else str(status)


def _machine(entity: str, table: dict[Enum, Iterable[Enum]], initial: Iterable[Enum]) -> StateMachine:
    return StateMachine(
        entity=entity,
        transitions={src.value: frozenset(d.value for d in dests) for src, dests in table.items()},
        initial=frozenset(s.value for s in initial),
    )


C = ContentStatus
CONTENT_MACHINE = _machine(
    "content",
    {
        C.uploading: [C.processing],
        C.processing: [C.transcribing, C.error],
        C.transcribing: [C.analyzing, C.error],
        C.analyzing: [C.ready, C.error],
        C.error: [C.transcribing],
        C.ready: [],
    },
    initial=[C.uploading, C.processing],
)

K = ClipStatus
CLIP_MACHINE = _machine(
    "clip",
    {
        K.pending: [K.processing],
        K.error: [K.processing],
        K.ready: [K.processing],
        K.processing: [K.ready, K.error],
    },
    initial=[K.pending],
)

G = GeneratedContentStatus
GENERATED_CONTENT_MACHINE = _machine(
    "generated_content",
    {
        G.draft: [G.scheduled, G.published, G.failed],
        G.scheduled: [G.draft, G.published, G.scheduled, G.failed],
        G.failed: [G.scheduled, G.draft, G.published],
        G.published: [],
    },
    initial=[G.draft],
)

P = ScheduledPostStatus
SCHEDULED_POST_MACHINE = _machine(
    "scheduled_post",
    {
        P.scheduled: [P.publishing],
        P.publishing: [P.published, P.failed],
        P.published: [],
        P.failed: [],
    },
    initial=[P.scheduled],
)

del C, K, G, P

ACTIVE_POST_STATUSES = (ScheduledPostStatus.scheduled.value, ScheduledPostStatus.publishing.value)


async def transition(
    session: AsyncSession,
    model,
    entity_id: int,
    to: Enum | str,
    *,
    expected: Iterable[Enum | str] | None = None,
    where: Iterable[Any] = (),
    **values: Any,
) -> bool:
    """Conditionally move one row to ``to``.

    The UPDATE only matches rows whose current status is a legal predecessor
    of ``to`` (optionally narrowed by ``expected`` and extra ``where``
    clauses). Returns True when exactly this call performed the transition.
    Does not commit.
    """
    machine: StateMachine = model.__state_machine__
    target = _value(to)
    legal = machine.predecessors(target)
    if expected is None:
        sources = legal
    else:
        sources = frozenset(_value(s) for s in expected)
        illegal = sources - legal
        if illegal:
            raise IllegalTransition(machine.entity, ",".join(sorted(illegal)), target)
    if not sources:
        raise IllegalTransition(machine.entity, None, target)

    stmt = (
        update(model)
        .where(model.id == entity_id, model.status.in_(sorted(sources)), *where)
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    won = result.rowcount == 1
    logger.debug(
        "[state] %s id=%s -> %s (from %s): %s",
        machine.entity, entity_id, target, sorted(sources), "ok" if won else "lost",
    )
    return won

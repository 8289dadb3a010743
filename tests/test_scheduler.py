from __future__ import annotations

import asyncio
from types import SimpleNamespace

from clipforge.services.scheduler import LOCK_PUBLISH_SWEEP, SchedulerService


class FakeResult:
    def __init__(self, value):
        self.value = value

    def scalar(self):
        return self.value


class FakeLockConnection:
    def __init__(self, granted: bool):
        self.granted = granted
        self.statements: list[tuple[str, dict]] = []
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.closed = True

    async def execute(self, clause, params=None):
        self.statements.append((str(clause), params))
        return FakeResult(self.granted)


class FakeEngine:
    def __init__(self, granted: bool):
        self.dialect = SimpleNamespace(name="postgresql")
        self.connections: list[FakeLockConnection] = []
        self.granted = granted

    def connect(self):
        conn = FakeLockConnection(self.granted)
        self.connections.append(conn)
        return conn


class FakeSession:
    """Job session; it commits during the tick and never sees the lock."""

    def __init__(self, engine):
        self.bind = engine
        self.executed: list = []

    async def execute(self, clause, params=None):
        self.executed.append(clause)

    async def commit(self):
        pass


async def _tick(service, session):
    ran = []
    async with service._leader(session, LOCK_PUBLISH_SWEEP, "publish_sweep") as leader:
        if leader:
            await session.commit()
            await session.commit()
            ran.append(True)
    return ran


class TestLeaderLock:
    def test_lock_and_unlock_share_one_connection(self):
        engine = FakeEngine(granted=True)
        session = FakeSession(engine)

        ran = asyncio.run(_tick(SchedulerService(), session))

        assert ran == [True]
        assert len(engine.connections) == 1
        conn = engine.connections[0]
        assert [sql for sql, _ in conn.statements] == [
            "SELECT pg_try_advisory_lock(:key)",
            "SELECT pg_advisory_unlock(:key)",
        ]
        assert all(params == {"key": LOCK_PUBLISH_SWEEP} for _, params in conn.statements)
        assert conn.closed
        assert session.executed == []

    def test_follower_skips_tick_without_unlocking(self):
        engine = FakeEngine(granted=False)

        ran = asyncio.run(_tick(SchedulerService(), FakeSession(engine)))

        assert ran == []
        assert [sql for sql, _ in engine.connections[0].statements] == ["SELECT pg_try_advisory_lock(:key)"]

    def test_sqlite_runs_every_tick(self, db):
        async def scenario(session):
            return await _tick(SchedulerService(), session)

        assert db.run(scenario) == [True]

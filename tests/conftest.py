"""
Shared fixtures: a controllable clock, a push transport that records every
push instead of writing to a socket, and the in-memory / SQL stores.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Set, Tuple

import pytest
import pytest_asyncio

from backend.app.core.database import build_engine, build_session_factory, close_db, init_db
from backend.app.core.errors import PushFailedError
from backend.app.delivery.channels.base import PushTransport
from backend.app.delivery.clock import Clock
from backend.app.delivery.presence import PresenceRegistry
from backend.app.delivery.sql_store import SqlMessageStore
from backend.app.delivery.store import InMemoryMessageStore

T0 = datetime(2026, 1, 1, 9, 0, 0, tzinfo=timezone.utc)


class FakeClock(Clock):
    """Clock that only moves when a test moves it."""

    def __init__(self, start: datetime = T0):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float = 0.0, **kwargs) -> datetime:
        self.current += timedelta(seconds=seconds, **kwargs)
        return self.current


class RecordingTransport(PushTransport):
    """Records pushes; recipients in ``failing`` get PushFailedError."""

    def __init__(self):
        self.pushes: List[Tuple[str, str, str]] = []
        self.failing: Set[str] = set()
        self.closed = False

    async def push(self, recipient_id, message_id, content):
        if recipient_id in self.failing:
            raise PushFailedError(recipient_id, message_id, "socket write failed")
        self.pushes.append((recipient_id, message_id, content))
        return 1

    def pushes_for(self, message_id: str) -> List[Tuple[str, str, str]]:
        return [p for p in self.pushes if p[1] == message_id]

    async def close(self):
        self.closed = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def presence() -> PresenceRegistry:
    return PresenceRegistry()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def memory_store(clock) -> InMemoryMessageStore:
    return InMemoryMessageStore(clock)


@pytest_asyncio.fixture
async def sql_store(clock, tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path}/messages.db")
    await init_db(engine)
    yield SqlMessageStore(build_session_factory(engine), clock)
    await close_db(engine)


@pytest_asyncio.fixture(params=["memory", "sql"])
async def store(request, clock, tmp_path):
    """Runs a test against both store implementations."""
    if request.param == "memory":
        yield InMemoryMessageStore(clock)
        return
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path}/messages.db")
    await init_db(engine)
    yield SqlMessageStore(build_session_factory(engine), clock)
    await close_db(engine)

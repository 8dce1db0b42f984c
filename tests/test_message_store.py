"""
test_message_store.py — Message Store contract, run against the in-memory
store and the SQLAlchemy store (SQLite via aiosqlite).

Covers:
    • create / get, input validation, per-message defaults
    • Optimistic concurrency (version check, apply_update retry)
    • Query surfaces: unacknowledged, retry candidates, expired
    • SQL-specific: timezone round-trip, persistence errors

Run with:
    pytest tests/test_message_store.py -v
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from backend.app.core.errors import PersistenceError, StaleMessageError, ValidationError
from backend.app.delivery.models import MessageState
from backend.app.delivery.store import InMemoryMessageStore, apply_update


def _set_state(state: MessageState):
    def _mutate(message) -> bool:
        message.state = state
        return True
    return _mutate


# ═══════════════════════════════════════════════════════════════════════════
# create / get
# ═══════════════════════════════════════════════════════════════════════════

class TestCreate:

    @pytest.mark.asyncio
    async def test_new_message_is_created_state(self, store, clock):
        m = await store.create("u1", "hi")
        assert m.state == MessageState.CREATED
        assert m.retry_attempts == 0
        assert m.created_at == clock.now()
        assert m.version == 0

    @pytest.mark.asyncio
    async def test_get_returns_persisted_record(self, store):
        m = await store.create("u1", "hi")
        got = await store.get(m.id)
        assert got is not None
        assert got.id == m.id
        assert got.recipient_id == "u1"
        assert got.content == "hi"
        assert got.created_at == m.created_at

    @pytest.mark.asyncio
    async def test_get_unknown_returns_none(self, store):
        assert await store.get("does-not-exist") is None

    @pytest.mark.asyncio
    async def test_ids_are_unique(self, store):
        ids = {(await store.create("u1", str(i))).id for i in range(20)}
        assert len(ids) == 20

    @pytest.mark.asyncio
    async def test_store_defaults_apply(self, store):
        m = await store.create("u1", "hi")
        assert m.max_retry_attempts == store.default_max_retry_attempts
        assert m.timeout == store.default_timeout

    @pytest.mark.asyncio
    async def test_per_message_options(self, store):
        m = await store.create("u1", "hi", max_retry_attempts=7, timeout=timedelta(seconds=30))
        got = await store.get(m.id)
        assert got.max_retry_attempts == 7
        assert got.timeout == timedelta(seconds=30)

    @pytest.mark.asyncio
    async def test_empty_recipient_rejected(self, store):
        with pytest.raises(ValidationError):
            await store.create("", "hi")

    @pytest.mark.asyncio
    async def test_negative_retry_ceiling_rejected(self, store):
        with pytest.raises(ValidationError):
            await store.create("u1", "hi", max_retry_attempts=-1)

    @pytest.mark.asyncio
    async def test_non_positive_timeout_rejected(self, store):
        with pytest.raises(ValidationError):
            await store.create("u1", "hi", timeout=timedelta(0))


# ═══════════════════════════════════════════════════════════════════════════
# Optimistic concurrency
# ═══════════════════════════════════════════════════════════════════════════

class TestUpdate:

    @pytest.mark.asyncio
    async def test_update_bumps_version(self, store):
        m = await store.create("u1", "hi")
        m.state = MessageState.QUEUED
        stored = await store.update(m)
        assert stored.version == 1
        assert (await store.get(m.id)).state == MessageState.QUEUED

    @pytest.mark.asyncio
    async def test_stale_update_rejected(self, store):
        m = await store.create("u1", "hi")
        first = m.copy()
        second = m.copy()
        first.state = MessageState.DELIVERED
        await store.update(first)

        second.state = MessageState.QUEUED
        with pytest.raises(StaleMessageError):
            await store.update(second)
        assert (await store.get(m.id)).state == MessageState.DELIVERED

    @pytest.mark.asyncio
    async def test_stale_error_is_persistence_error(self, store):
        m = await store.create("u1", "hi")
        await store.update(m.copy())
        with pytest.raises(PersistenceError) as exc:
            await store.update(m)
        assert exc.value.status_code == 409

    @pytest.mark.asyncio
    async def test_apply_update_unknown(self, store):
        assert await apply_update(store, "nope", _set_state(MessageState.QUEUED)) == (None, False)

    @pytest.mark.asyncio
    async def test_apply_update_noop_skips_write(self, store):
        m = await store.create("u1", "hi")
        message, changed = await apply_update(store, m.id, lambda _: False)
        assert not changed
        assert message.version == 0

    @pytest.mark.asyncio
    async def test_apply_update_persists(self, store):
        m = await store.create("u1", "hi")
        message, changed = await apply_update(store, m.id, _set_state(MessageState.QUEUED))
        assert changed
        assert message.state == MessageState.QUEUED
        assert message.version == 1


class _FlakyStore(InMemoryMessageStore):
    """Loses the first ``conflicts`` writes to a simulated concurrent writer."""

    def __init__(self, clock, conflicts: int):
        super().__init__(clock)
        self.conflicts = conflicts

    async def update(self, message):
        if self.conflicts:
            self.conflicts -= 1
            raise StaleMessageError(message.id, message.version)
        return await super().update(message)


class TestApplyUpdateRetry:

    @pytest.mark.asyncio
    async def test_retries_after_conflict(self, clock):
        store = _FlakyStore(clock, conflicts=2)
        m = await store.create("u1", "hi")
        message, changed = await apply_update(store, m.id, _set_state(MessageState.QUEUED))
        assert changed
        assert message.state == MessageState.QUEUED

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self, clock):
        store = _FlakyStore(clock, conflicts=5)
        m = await store.create("u1", "hi")
        with pytest.raises(StaleMessageError):
            await apply_update(store, m.id, _set_state(MessageState.QUEUED), attempts=3)


# ═══════════════════════════════════════════════════════════════════════════
# Queries
# ═══════════════════════════════════════════════════════════════════════════

class TestQueries:

    @pytest.mark.asyncio
    async def test_unacknowledged_oldest_first(self, store, clock):
        first = await store.create("u1", "a")
        clock.advance(1)
        second = await store.create("u1", "b")
        await store.create("u2", "other")
        found = await store.list_unacknowledged("u1")
        assert [m.id for m in found] == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_unacknowledged_excludes_acknowledged(self, store):
        keep = await store.create("u1", "a")
        acked = await store.create("u1", "b")
        await apply_update(store, acked.id, _set_state(MessageState.ACKNOWLEDGED))
        assert [m.id for m in await store.list_unacknowledged("u1")] == [keep.id]

    @pytest.mark.asyncio
    async def test_unacknowledged_includes_expired(self, store, clock):
        m = await store.create("u1", "a", timeout=timedelta(seconds=1))
        clock.advance(5)
        assert [x.id for x in await store.list_unacknowledged("u1")] == [m.id]

    @pytest.mark.asyncio
    async def test_retry_candidates(self, store, clock):
        live = await store.create("u1", "live")
        acked = await store.create("u1", "acked")
        exhausted = await store.create("u1", "exhausted", max_retry_attempts=0)
        short = await store.create("u1", "short", timeout=timedelta(seconds=1))
        await apply_update(store, acked.id, _set_state(MessageState.ACKNOWLEDGED))
        clock.advance(2)

        ids = {m.id for m in await store.list_retry_candidates()}
        assert live.id in ids
        assert acked.id not in ids
        assert exhausted.id not in ids
        assert short.id not in ids

    @pytest.mark.asyncio
    async def test_expired_unacknowledged(self, store, clock):
        stale = await store.create("u1", "a", timeout=timedelta(seconds=1))
        acked = await store.create("u1", "b", timeout=timedelta(seconds=1))
        fresh = await store.create("u1", "c")
        await apply_update(store, acked.id, _set_state(MessageState.ACKNOWLEDGED))
        clock.advance(2)

        ids = {m.id for m in await store.list_expired_unacknowledged()}
        assert ids == {stale.id}
        assert fresh.id not in ids

    @pytest.mark.asyncio
    async def test_stored_expired_state_stays_listed(self, store):
        m = await store.create("u1", "a")
        await apply_update(store, m.id, _set_state(MessageState.EXPIRED))
        assert [x.id for x in await store.list_expired_unacknowledged()] == [m.id]
        assert await store.list_retry_candidates() == []

    @pytest.mark.asyncio
    async def test_ping(self, store):
        await store.ping()


# ═══════════════════════════════════════════════════════════════════════════
# Implementation specifics
# ═══════════════════════════════════════════════════════════════════════════

class TestInMemoryStore:

    @pytest.mark.asyncio
    async def test_reads_are_copies(self, memory_store):
        m = await memory_store.create("u1", "hi")
        got = await memory_store.get(m.id)
        got.state = MessageState.ACKNOWLEDGED
        assert (await memory_store.get(m.id)).state == MessageState.CREATED

    @pytest.mark.asyncio
    async def test_len(self, memory_store):
        await memory_store.create("u1", "a")
        await memory_store.create("u2", "b")
        assert len(memory_store) == 2


class TestSqlStore:

    @pytest.mark.asyncio
    async def test_timestamps_are_timezone_aware(self, sql_store, clock):
        m = await sql_store.create("u1", "hi")
        await apply_update(sql_store, m.id, _set_state(MessageState.ACKNOWLEDGED))
        got = await sql_store.get(m.id)
        assert got.created_at.tzinfo is not None
        assert got.created_at == clock.now()

    @pytest.mark.asyncio
    async def test_missing_table_raises_persistence_error(self, clock, tmp_path):
        from backend.app.core.database import build_engine, build_session_factory, close_db
        from backend.app.delivery.sql_store import SqlMessageStore

        engine = build_engine(f"sqlite+aiosqlite:///{tmp_path}/empty.db")
        store = SqlMessageStore(build_session_factory(engine), clock)
        try:
            with pytest.raises(PersistenceError):
                await store.get("anything")
        finally:
            await close_db(engine)

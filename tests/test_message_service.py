"""
test_message_service.py — Message service (local and actor-backed), the
notification hub and the end-to-end delivery scenarios.

Run with:
    pytest tests/test_message_service.py -v
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from backend.app.core.errors import NotFoundError
from backend.app.delivery.actors import ActorMessageService
from backend.app.delivery.models import MessageState
from backend.app.delivery.runtime import build_runtime
from backend.app.delivery.service import LocalMessageService


@pytest.fixture(params=["local", "actor"])
def runtime(request, memory_store, presence, transport, clock):
    return build_runtime(
        store=memory_store,
        presence=presence,
        transport=transport,
        clock=clock,
        service_mode=request.param,
        scheduler_enabled=False,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Scenarios
# ═══════════════════════════════════════════════════════════════════════════

class TestScenarios:

    @pytest.mark.asyncio
    async def test_offline_recipient_connects_and_acknowledges(self, runtime, transport):
        service, hub = runtime.service, runtime.hub

        m = await service.send_message("u1", "hi")
        assert m.state == MessageState.QUEUED
        assert transport.pushes == []

        await hub.on_channel_connect("c1", "u1")
        assert (await service.get_message(m.id)).state == MessageState.DELIVERED
        assert transport.pushes == [("u1", m.id, "hi")]

        assert await service.acknowledge(m.id) is True
        assert (await service.get_message(m.id)).state == MessageState.ACKNOWLEDGED
        assert await service.acknowledge(m.id) is True

        await runtime.scheduler.run_tick()
        assert len(transport.pushes) == 1

    @pytest.mark.asyncio
    async def test_never_connected_recipient_retry_ceiling(self, runtime):
        m = await runtime.service.send_message("u2", "x", max_retry_attempts=1)

        await runtime.scheduler.run_tick()
        await runtime.scheduler.run_tick()

        stored = await runtime.service.get_message(m.id)
        assert stored.retry_attempts == 1
        assert stored.state == MessageState.QUEUED

    @pytest.mark.asyncio
    async def test_connected_recipient_gets_exactly_one_push(self, runtime, presence, transport):
        presence.register("c1", "u1")
        m = await runtime.service.send_message("u1", "hi")
        assert m.state == MessageState.DELIVERED
        assert transport.pushes_for(m.id) == [("u1", m.id, "hi")]

    @pytest.mark.asyncio
    async def test_expiry_with_one_second_timeout(self, runtime, clock):
        m = await runtime.service.send_message("u1", "hi", timeout=timedelta(seconds=1))
        clock.advance(2)
        await runtime.scheduler.run_tick()

        assert (await runtime.service.get_message(m.id)).state == MessageState.EXPIRED
        assert [x.id for x in await runtime.service.list_expired()] == [m.id]
        assert await runtime.service.acknowledge(m.id) is False


# ═══════════════════════════════════════════════════════════════════════════
# Service operations
# ═══════════════════════════════════════════════════════════════════════════

class TestServiceOperations:

    @pytest.mark.asyncio
    async def test_get_unknown_raises(self, runtime):
        with pytest.raises(NotFoundError):
            await runtime.service.get_message("nope")

    @pytest.mark.asyncio
    async def test_list_unacknowledged(self, runtime):
        a = await runtime.service.send_message("u1", "a")
        b = await runtime.service.send_message("u1", "b")
        await runtime.service.acknowledge(a.id)
        assert [m.id for m in await runtime.service.list_unacknowledged("u1")] == [b.id]

    @pytest.mark.asyncio
    async def test_acknowledge_unknown(self, runtime):
        assert await runtime.service.acknowledge("nope") is False

    @pytest.mark.asyncio
    async def test_retry_unknown(self, runtime):
        assert await runtime.service.retry_message("nope") is True

    @pytest.mark.asyncio
    async def test_retry_reachable(self, runtime, presence, transport):
        m = await runtime.service.send_message("u1", "hi")
        presence.register("c1", "u1")
        assert await runtime.service.retry_message(m.id) is True
        assert len(transport.pushes_for(m.id)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_sends_same_recipient(self, runtime):
        sent = await asyncio.gather(
            *(runtime.service.send_message("u1", str(i)) for i in range(5))
        )
        assert len({m.id for m in sent}) == 5
        assert len(await runtime.service.list_unacknowledged("u1")) == 5


# ═══════════════════════════════════════════════════════════════════════════
# Hub
# ═══════════════════════════════════════════════════════════════════════════

class TestNotificationHub:

    @pytest.mark.asyncio
    async def test_connect_flushes(self, runtime):
        await runtime.service.send_message("u1", "a")
        await runtime.service.send_message("u1", "b")
        counts = await runtime.hub.on_channel_connect("c1", "u1")
        assert counts["delivered"] == 2

    @pytest.mark.asyncio
    async def test_disconnect(self, runtime, presence):
        await runtime.hub.on_channel_connect("c1", "u1")
        assert await runtime.hub.on_channel_disconnect("c1") == "u1"
        assert not presence.is_reachable("u1")
        assert await runtime.hub.on_channel_disconnect("c1") is None

    @pytest.mark.asyncio
    async def test_client_acknowledge(self, runtime):
        m = await runtime.service.send_message("u1", "a")
        await runtime.hub.on_channel_connect("c1", "u1")
        assert await runtime.hub.on_client_acknowledge("c1", m.id) is True
        assert (await runtime.service.get_message(m.id)).is_acknowledged


# ═══════════════════════════════════════════════════════════════════════════
# Actor runtime
# ═══════════════════════════════════════════════════════════════════════════

class TestActorRuntime:

    @pytest.fixture
    def actors(self, memory_store, presence, transport, clock):
        runtime = build_runtime(
            store=memory_store, presence=presence, transport=transport,
            clock=clock, service_mode="actor", scheduler_enabled=False,
        )
        assert isinstance(runtime.service, ActorMessageService)
        return runtime.service.runtime

    def test_runtime_selects_local_service(self, memory_store, transport):
        runtime = build_runtime(
            store=memory_store, transport=transport,
            service_mode="local", scheduler_enabled=False,
        )
        assert isinstance(runtime.service, LocalMessageService)

    def test_unknown_mode_rejected(self, memory_store):
        with pytest.raises(ValueError):
            build_runtime(store=memory_store, service_mode="cluster")

    def test_actor_activated_once(self, actors):
        assert actors.actor_for("u1") is actors.actor_for("u1")
        assert actors.active_count == 1

    @pytest.mark.asyncio
    async def test_idle_actors_deactivated(self, actors, clock):
        await actors.actor_for("u1").send_message("hi")
        clock.advance(actors.idle_timeout.total_seconds() - 1)
        await actors.actor_for("u2").send_message("hi")
        clock.advance(2)

        assert actors.deactivate_idle() == 1
        assert actors.active_count == 1

    @pytest.mark.asyncio
    async def test_actor_routes_ack_to_recipient(self, actors, memory_store):
        service = ActorMessageService(actors, memory_store)
        m = await service.send_message("u1", "hi")
        assert await service.acknowledge(m.id) is True
        assert actors.active_count == 1

    @pytest.mark.asyncio
    async def test_sweep_drops_idle_actors(self, memory_store, presence, transport, clock):
        runtime = build_runtime(
            store=memory_store, presence=presence, transport=transport,
            clock=clock, service_mode="actor", scheduler_enabled=False,
        )
        actors = runtime.service.runtime
        for i in range(50):
            await runtime.service.send_message(f"u{i}", "hi")
        assert actors.active_count == 50

        await runtime.scheduler.run_tick()
        assert actors.active_count == 50

        clock.advance(hours=48)
        await runtime.scheduler.run_tick()
        assert actors.active_count == 0

"""
runtime.py — Composition of the delivery engine.

Builds one explicitly-owned instance of every component and wires them
together; nothing in the engine is module-level state. The FastAPI app keeps
the runtime on ``app.state.runtime`` and drives ``startup`` / ``shutdown``
from its lifespan.

Usage:
    runtime = build_runtime()                       # settings-driven
    runtime = build_runtime(store=InMemoryMessageStore(clock),
                            transport=fake_transport,
                            scheduler_enabled=False)  # tests
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from backend.app.core.config import settings
from backend.app.core.database import build_engine, build_session_factory, close_db, init_db
from backend.app.delivery.acknowledgment import AcknowledgmentHandler
from backend.app.delivery.actors import ActorMessageService, ActorRuntime
from backend.app.delivery.channels.base import PushTransport
from backend.app.delivery.channels.websocket import WebSocketPushTransport
from backend.app.delivery.clock import Clock, SystemClock
from backend.app.delivery.dispatcher import DeliveryDispatcher
from backend.app.delivery.hub import NotificationHub
from backend.app.delivery.presence import PresenceRegistry
from backend.app.delivery.retry_scheduler import RetryScheduler
from backend.app.delivery.service import LocalMessageService, MessageService
from backend.app.delivery.sql_store import SqlMessageStore
from backend.app.delivery.store import InMemoryMessageStore, MessageStore

logger = logging.getLogger(__name__)

SERVICE_MODES = ("local", "actor")
STORE_KINDS = ("memory", "sql")


@dataclass
class DeliveryRuntime:
    store: MessageStore
    presence: PresenceRegistry
    transport: PushTransport
    dispatcher: DeliveryDispatcher
    acknowledgments: AcknowledgmentHandler
    scheduler: RetryScheduler
    service: MessageService
    hub: NotificationHub
    engine: Optional[AsyncEngine] = None
    scheduler_enabled: bool = True

    async def startup(self) -> None:
        if self.engine is not None:
            await init_db(self.engine)
        if self.scheduler_enabled:
            await self.scheduler.start()

    async def shutdown(self) -> None:
        await self.scheduler.stop()
        await self.transport.close()
        await self.store.close()
        if self.engine is not None:
            await close_db(self.engine)


def _build_store(kind: str, clock: Clock) -> tuple:
    if kind == "memory":
        return InMemoryMessageStore(clock), None
    if kind == "sql":
        engine = build_engine()
        return SqlMessageStore(build_session_factory(engine), clock), engine
    raise ValueError(f"Unknown MESSAGE_STORE '{kind}'. Must be one of: {list(STORE_KINDS)}")


def build_runtime(
    *,
    store: Optional[MessageStore] = None,
    transport: Optional[PushTransport] = None,
    presence: Optional[PresenceRegistry] = None,
    clock: Optional[Clock] = None,
    service_mode: Optional[str] = None,
    scheduler_enabled: Optional[bool] = None,
    interval_seconds: Optional[float] = None,
) -> DeliveryRuntime:
    """Wire the delivery engine; explicit arguments override settings."""
    service_mode = service_mode or settings.MESSAGE_SERVICE_MODE
    if service_mode not in SERVICE_MODES:
        raise ValueError(
            f"Unknown MESSAGE_SERVICE_MODE '{service_mode}'. Must be one of: {list(SERVICE_MODES)}"
        )

    engine = None
    if store is None:
        store, engine = _build_store(settings.MESSAGE_STORE, clock or SystemClock())
    clock = clock or store.clock

    presence = presence or PresenceRegistry()
    transport = transport or WebSocketPushTransport(presence)
    dispatcher = DeliveryDispatcher(store, presence, transport)
    acknowledgments = AcknowledgmentHandler(store, clock)
    scheduler = RetryScheduler(
        store, presence, dispatcher, interval_seconds=interval_seconds,
    )

    local = LocalMessageService(store, dispatcher, acknowledgments, scheduler)
    service: MessageService = local
    if service_mode == "actor":
        actors = ActorRuntime(local, clock=clock)
        scheduler.add_tick_hook(actors.deactivate_idle)
        service = ActorMessageService(actors, store)

    logger.info(
        "Delivery runtime built (store=%s, service=%s)",
        type(store).__name__, service_mode,
    )
    return DeliveryRuntime(
        store=store,
        presence=presence,
        transport=transport,
        dispatcher=dispatcher,
        acknowledgments=acknowledgments,
        scheduler=scheduler,
        service=service,
        hub=NotificationHub(presence, dispatcher, service),
        engine=engine,
        scheduler_enabled=(
            settings.RETRY_SCHEDULER_ENABLED if scheduler_enabled is None else scheduler_enabled
        ),
    )

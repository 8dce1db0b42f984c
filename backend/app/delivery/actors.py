"""
actors.py — Per-recipient logical actors behind the message service.

Each recipient gets one ``MessageActor``, activated on first use. An actor
runs one call at a time (turn-based), so sends, acknowledgments and manual
retries for the same recipient never interleave; different recipients run
concurrently. The retry scheduler still sweeps the store directly, and the
store's version check settles any race with an actor turn.

Idle actors are dropped by ``ActorRuntime.deactivate_idle``, which the runtime
hooks onto every retry sweep; an actor holds no message state of its own, so
reactivation is free.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional, TypeVar

from backend.app.core.config import settings
from backend.app.delivery.clock import Clock, SystemClock
from backend.app.delivery.models import Message
from backend.app.delivery.service import LocalMessageService, MessageService
from backend.app.delivery.store import MessageStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MessageActor:
    """Serialises message operations for one recipient."""

    def __init__(self, actor_id: str, inner: LocalMessageService, clock: Clock):
        self.actor_id = actor_id
        self._inner = inner
        self._clock = clock
        self._turn = asyncio.Lock()
        self.last_active: datetime = clock.now()

    @property
    def busy(self) -> bool:
        return self._turn.locked()

    async def _call(self, operation: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        async with self._turn:
            self.last_active = self._clock.now()
            return await operation(*args, **kwargs)

    async def send_message(self, content: str, **options) -> Message:
        return await self._call(self._inner.send_message, self.actor_id, content, **options)

    async def acknowledge(self, message_id: str) -> bool:
        return await self._call(self._inner.acknowledge, message_id)

    async def retry_message(self, message_id: str) -> bool:
        return await self._call(self._inner.retry_message, message_id)

    async def list_unacknowledged(self) -> List[Message]:
        return await self._call(self._inner.list_unacknowledged, self.actor_id)


class ActorRuntime:
    """Activates actors by id and deactivates idle ones."""

    def __init__(
        self,
        inner: LocalMessageService,
        *,
        clock: Optional[Clock] = None,
        idle_timeout: Optional[timedelta] = None,
    ):
        self.inner = inner
        self._clock = clock or SystemClock()
        self.idle_timeout = idle_timeout or timedelta(
            seconds=settings.ACTOR_IDLE_TIMEOUT_SECONDS
        )
        self._lock = threading.Lock()
        self._actors: Dict[str, MessageActor] = {}

    def actor_for(self, actor_id: str) -> MessageActor:
        with self._lock:
            actor = self._actors.get(actor_id)
            if actor is None:
                actor = MessageActor(actor_id, self.inner, self._clock)
                self._actors[actor_id] = actor
                logger.debug("Activated actor %s", actor_id, extra={"recipient_id": actor_id})
            return actor

    def deactivate_idle(self) -> int:
        """Drop actors idle for longer than ``idle_timeout``; returns the count."""
        cutoff = self._clock.now() - self.idle_timeout
        with self._lock:
            idle = [
                aid for aid, actor in self._actors.items()
                if actor.last_active < cutoff and not actor.busy
            ]
            for aid in idle:
                del self._actors[aid]
        if idle:
            logger.info("Deactivated %d idle actor(s)", len(idle))
        return len(idle)

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._actors)


class ActorMessageService(MessageService):
    """Forwards every call to the recipient's actor."""

    def __init__(self, runtime: ActorRuntime, store: MessageStore):
        self.runtime = runtime
        self._store = store

    async def _actor_of(self, message_id: str) -> Optional[MessageActor]:
        message = await self._store.get(message_id)
        if message is None:
            return None
        return self.runtime.actor_for(message.recipient_id)

    async def send_message(self, recipient_id, content, *, max_retry_attempts=None, timeout=None):
        return await self.runtime.actor_for(recipient_id).send_message(
            content, max_retry_attempts=max_retry_attempts, timeout=timeout,
        )

    async def get_message(self, message_id):
        return await self.runtime.inner.get_message(message_id)

    async def list_unacknowledged(self, recipient_id):
        return await self.runtime.actor_for(recipient_id).list_unacknowledged()

    async def acknowledge(self, message_id):
        actor = await self._actor_of(message_id)
        if actor is None:
            logger.warning("Message %s not found", message_id, extra={"message_id": message_id})
            return False
        return await actor.acknowledge(message_id)

    async def retry_message(self, message_id):
        actor = await self._actor_of(message_id)
        if actor is None:
            return True
        return await actor.retry_message(message_id)

    async def list_expired(self):
        return await self._store.list_expired_unacknowledged()

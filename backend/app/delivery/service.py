"""
service.py — Message service facade used by the HTTP layer and the hub.

Two implementations share one interface and are picked at composition time
(``MESSAGE_SERVICE_MODE``):

    local   LocalMessageService — calls store / dispatcher / handlers directly
    actor   ActorMessageService — forwards each call to a per-recipient actor
            that processes one call at a time (see actors.py)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import List, Optional

from backend.app.core.errors import NotFoundError
from backend.app.delivery.acknowledgment import AcknowledgmentHandler
from backend.app.delivery.dispatcher import DeliveryDispatcher
from backend.app.delivery.models import Message
from backend.app.delivery.retry_scheduler import RetryScheduler
from backend.app.delivery.store import MessageStore

logger = logging.getLogger(__name__)


class MessageService(ABC):

    @abstractmethod
    async def send_message(
        self,
        recipient_id: str,
        content: str,
        *,
        max_retry_attempts: Optional[int] = None,
        timeout: Optional[timedelta] = None,
    ) -> Message:
        """Create a message and try to deliver it immediately."""

    @abstractmethod
    async def get_message(self, message_id: str) -> Message:
        """Return the message or raise NotFoundError."""

    @abstractmethod
    async def list_unacknowledged(self, recipient_id: str) -> List[Message]:
        ...

    @abstractmethod
    async def acknowledge(self, message_id: str) -> bool:
        ...

    @abstractmethod
    async def retry_message(self, message_id: str) -> bool:
        ...

    @abstractmethod
    async def list_expired(self) -> List[Message]:
        ...


class LocalMessageService(MessageService):
    """Operates directly on the store and the delivery components."""

    def __init__(
        self,
        store: MessageStore,
        dispatcher: DeliveryDispatcher,
        acknowledgments: AcknowledgmentHandler,
        scheduler: RetryScheduler,
    ):
        self._store = store
        self._dispatcher = dispatcher
        self._acknowledgments = acknowledgments
        self._scheduler = scheduler

    async def send_message(self, recipient_id, content, *, max_retry_attempts=None, timeout=None):
        logger.info(
            "Sending message to %s", recipient_id, extra={"recipient_id": recipient_id},
        )
        message = await self._store.create(
            recipient_id, content,
            max_retry_attempts=max_retry_attempts, timeout=timeout,
        )
        await self._dispatcher.attempt_deliver(message)
        return await self._store.get(message.id) or message

    async def get_message(self, message_id):
        message = await self._store.get(message_id)
        if message is None:
            raise NotFoundError("Message", id=message_id)
        return message

    async def list_unacknowledged(self, recipient_id):
        return await self._store.list_unacknowledged(recipient_id)

    async def acknowledge(self, message_id):
        return await self._acknowledgments.acknowledge(message_id)

    async def retry_message(self, message_id):
        return await self._scheduler.retry_message(message_id)

    async def list_expired(self):
        return await self._store.list_expired_unacknowledged()

"""
dispatcher.py — Push a message now if its recipient is reachable, else queue it.

One ``attempt_deliver`` call makes exactly one push attempt. A push that
returns is not a receipt: DELIVERED only means "written to at least one open
channel", and the retry scheduler keeps re-pushing until the client
acknowledges. A push that raises leaves the message QUEUED for the next tick.

State writes go through ``apply_update`` against a fresh read, so a message
acknowledged while the push was in flight stays ACKNOWLEDGED.
"""

from __future__ import annotations

import logging
from typing import Dict

from backend.app.core.errors import PersistenceError, PushFailedError
from backend.app.delivery.channels.base import PushTransport
from backend.app.delivery.models import (
    DELIVERABLE_STATES,
    DeliveryOutcome,
    Message,
    MessageState,
)
from backend.app.delivery.presence import PresenceRegistry
from backend.app.delivery.store import MessageStore, apply_update

logger = logging.getLogger(__name__)


def _mark_delivered(message: Message) -> bool:
    if message.state in DELIVERABLE_STATES and message.state != MessageState.DELIVERED:
        message.state = MessageState.DELIVERED
        return True
    return False


def _mark_queued(message: Message) -> bool:
    # Only the initial state moves to QUEUED; anything further along is left alone
    if message.state == MessageState.CREATED:
        message.state = MessageState.QUEUED
        return True
    return False


class DeliveryDispatcher:

    def __init__(
        self,
        store: MessageStore,
        presence: PresenceRegistry,
        transport: PushTransport,
    ):
        self._store = store
        self._presence = presence
        self._transport = transport

    async def push(self, message: Message) -> bool:
        """One push attempt; False if the transport rejected it."""
        try:
            await self._transport.push(message.recipient_id, message.id, message.content)
        except PushFailedError as exc:
            logger.warning(
                "Push failed for %s: %s", message.id, exc.message,
                extra={"message_id": message.id, "recipient_id": message.recipient_id},
            )
            return False
        return True

    async def attempt_deliver(self, message: Message) -> DeliveryOutcome:
        """Deliver over the realtime channel if possible, else queue."""
        if self._presence.is_reachable(message.recipient_id) and await self.push(message):
            await apply_update(self._store, message.id, _mark_delivered)
            logger.info(
                "Message %s delivered to %s", message.id, message.recipient_id,
                extra={
                    "message_id": message.id,
                    "recipient_id": message.recipient_id,
                    "outcome": DeliveryOutcome.DELIVERED.value,
                },
            )
            return DeliveryOutcome.DELIVERED

        await apply_update(self._store, message.id, _mark_queued)
        logger.info(
            "Recipient %s not reachable, message %s queued",
            message.recipient_id, message.id,
            extra={
                "message_id": message.id,
                "recipient_id": message.recipient_id,
                "outcome": DeliveryOutcome.QUEUED.value,
            },
        )
        return DeliveryOutcome.QUEUED

    async def flush_recipient(self, recipient_id: str) -> Dict[str, int]:
        """
        Re-dispatch every unacknowledged, unexpired message of a recipient.

        Called when the recipient opens a channel. A store failure on one
        message is logged and the flush moves on to the next.
        """
        now = self._store.clock.now()
        pending = [
            m for m in await self._store.list_unacknowledged(recipient_id)
            if not m.expired_at(now)
        ]

        counts = {"delivered": 0, "queued": 0, "failed": 0}
        for message in pending:
            try:
                outcome = await self.attempt_deliver(message)
            except PersistenceError as exc:
                counts["failed"] += 1
                logger.error(
                    "Flush of %s failed: %s", message.id, exc.message,
                    extra={"message_id": message.id, "recipient_id": recipient_id},
                )
                continue
            counts[outcome.value] += 1

        if pending:
            logger.info(
                "Flushed %d message(s) to %s: %s", len(pending), recipient_id, counts,
                extra={"recipient_id": recipient_id},
            )
        return counts

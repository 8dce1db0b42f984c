"""
acknowledgment.py — The only path that moves a message to ACKNOWLEDGED.

Acknowledging is idempotent: a second acknowledgment of the same message
returns True and changes nothing, so ``acknowledged_at`` always holds the time
of the first one. Concurrent acknowledgments race on the store's version
check; exactly one wins the write and the others re-read an already
acknowledged record.

Once acknowledged, the message drops out of ``list_retry_candidates`` and the
scheduler never selects it again. A push already in flight may still reach
the client once more (at-least-once delivery).
"""

from __future__ import annotations

import logging
from typing import Optional

from backend.app.delivery.clock import Clock
from backend.app.delivery.models import Message, MessageState
from backend.app.delivery.store import MessageStore, apply_update

logger = logging.getLogger(__name__)

ACK_UPDATE_ATTEMPTS = 5


class AcknowledgmentHandler:

    def __init__(self, store: MessageStore, clock: Optional[Clock] = None):
        self._store = store
        self._clock = clock or store.clock

    async def acknowledge(self, message_id: str) -> bool:
        """
        Mark a message acknowledged.

        Returns
        -------
        bool
            True if the message is (now or already) acknowledged; False if it
            is unknown or expired.
        """
        now = self._clock.now()

        def _acknowledge(message: Message) -> bool:
            if message.is_acknowledged or message.expired_at(now):
                return False
            message.state = MessageState.ACKNOWLEDGED
            message.acknowledged_at = now
            return True

        message, changed = await apply_update(
            self._store, message_id, _acknowledge, attempts=ACK_UPDATE_ATTEMPTS,
        )

        if message is None:
            logger.warning(
                "Message %s not found", message_id, extra={"message_id": message_id},
            )
            return False

        extra = {"message_id": message_id, "recipient_id": message.recipient_id}
        if changed:
            logger.info(
                "Message %s acknowledged for %s", message_id, message.recipient_id,
                extra=extra,
            )
            return True
        if message.is_acknowledged:
            logger.info("Message %s was already acknowledged", message_id, extra=extra)
            return True

        logger.warning(
            "Message %s expired before acknowledgment", message_id, extra=extra,
        )
        return False

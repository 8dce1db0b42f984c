"""
hub.py — Entry points for realtime channel events.

    on_channel_connect     register presence, then flush the recipient's
                           unacknowledged messages (no scheduler involved)
    on_channel_disconnect  drop the presence entry; unknown ids are ignored
    on_client_acknowledge  acknowledgment arriving over the channel itself

The channel is authenticated before it gets here; the hub trusts the
recipient identity it is given.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from backend.app.delivery.dispatcher import DeliveryDispatcher
from backend.app.delivery.presence import PresenceRegistry
from backend.app.delivery.service import MessageService

logger = logging.getLogger(__name__)


class NotificationHub:

    def __init__(
        self,
        presence: PresenceRegistry,
        dispatcher: DeliveryDispatcher,
        service: MessageService,
    ):
        self._presence = presence
        self._dispatcher = dispatcher
        self._service = service

    async def on_channel_connect(self, channel_id: str, recipient_id: str) -> Dict[str, int]:
        self._presence.register(channel_id, recipient_id)
        logger.info(
            "Channel %s connected for %s", channel_id, recipient_id,
            extra={"channel_id": channel_id, "recipient_id": recipient_id},
        )
        return await self._dispatcher.flush_recipient(recipient_id)

    async def on_channel_disconnect(self, channel_id: str) -> Optional[str]:
        recipient_id = self._presence.unregister(channel_id)
        logger.info(
            "Channel %s disconnected (%s)", channel_id, recipient_id or "unknown",
            extra={"channel_id": channel_id, "recipient_id": recipient_id},
        )
        return recipient_id

    async def on_client_acknowledge(self, channel_id: str, message_id: str) -> bool:
        acknowledged = await self._service.acknowledge(message_id)
        logger.debug(
            "Channel %s acknowledged %s: %s", channel_id, message_id, acknowledged,
            extra={"channel_id": channel_id, "message_id": message_id},
        )
        return acknowledged

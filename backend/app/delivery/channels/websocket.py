"""
websocket.py — WebSocket push transport.

Delivery mechanism:
    • One WebSocket per connected client instance (channel)
    • Presence decides which channels belong to a recipient
    • Frame: {"type": "ReceiveMessage", "message_id", "content", "sent_at"}

Clients confirm receipt with an acknowledge frame on the same socket
({"type": "acknowledge", "message_id": ...}) or through the HTTP API.
The server answers an acknowledge frame with
{"type": "acknowledged", "message_id", "acknowledged": bool}.

A write that fails on one socket does not stop the fan-out to the
recipient's other sockets; the push only fails when no socket took the frame.
Writes to one socket are serialised by that channel's send lock, so a sweep
push, a request-driven push and an ack reply never interleave on the wire.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ValidationError
from starlette.websockets import WebSocket

from backend.app.core.errors import PushFailedError
from backend.app.delivery.channels.base import PushTransport
from backend.app.delivery.presence import PresenceRegistry

logger = logging.getLogger(__name__)

RECEIVE_MESSAGE = "ReceiveMessage"
ACKNOWLEDGE = "acknowledge"
ACKNOWLEDGED = "acknowledged"


class PushFrame(BaseModel):
    type: str = RECEIVE_MESSAGE
    message_id: str
    content: str
    sent_at: str


class ClientFrame(BaseModel):
    type: str
    message_id: Optional[str] = None


def build_push_frame(message_id: str, content: str) -> Dict[str, Any]:
    """Build the server → client frame as a dict ready for send_json."""
    return PushFrame(
        message_id=message_id,
        content=content,
        sent_at=datetime.now(timezone.utc).isoformat(),
    ).model_dump()


def parse_client_frame(raw: Any) -> Optional[ClientFrame]:
    """Parse a client → server frame (dict or JSON text). Returns None if invalid."""
    try:
        if isinstance(raw, (str, bytes)):
            return ClientFrame.model_validate_json(raw)
        return ClientFrame.model_validate(raw)
    except ValidationError:
        return None


@dataclass
class Channel:
    """One attached socket and the lock that orders writes to it."""

    websocket: WebSocket
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def send(self, frame: Dict[str, Any]) -> None:
        async with self.send_lock:
            await self.websocket.send_json(frame)


class WebSocketPushTransport(PushTransport):
    """Fans a push out to every socket presence lists for the recipient."""

    def __init__(self, presence: PresenceRegistry):
        self._presence = presence
        self._lock = threading.Lock()
        self._channels: Dict[str, Channel] = {}

    def attach(self, channel_id: str, websocket: WebSocket) -> Channel:
        channel = Channel(websocket)
        with self._lock:
            self._channels[channel_id] = channel
        return channel

    def detach(self, channel_id: str) -> None:
        with self._lock:
            self._channels.pop(channel_id, None)

    async def push(self, recipient_id: str, message_id: str, content: str) -> int:
        channel_ids = self._presence.channels_for(recipient_id)
        with self._lock:
            channels = [(cid, self._channels.get(cid)) for cid in channel_ids]

        frame = build_push_frame(message_id, content)
        reached = 0
        last_error = "no open channel"

        for channel_id, channel in channels:
            if channel is None:
                continue
            try:
                await channel.send(frame)
                reached += 1
            except Exception as exc:
                last_error = str(exc) or type(exc).__name__
                logger.warning(
                    "[WS] Push of %s on channel %s failed: %s",
                    message_id, channel_id, exc,
                    extra={"message_id": message_id, "channel_id": channel_id},
                )

        if reached == 0:
            raise PushFailedError(recipient_id, message_id, last_error)

        logger.info(
            "[WS] Message %s → %s (%d channel(s))",
            message_id, recipient_id, reached,
            extra={"message_id": message_id, "recipient_id": recipient_id},
        )
        return reached

"""
FastAPI route: realtime notification channel.

    WS /hubs/notification   (path from settings.WS_PATH)

The recipient identity comes from the ``X-User-Id`` header (name from
settings.WS_USER_HEADER) or the ``user_id`` query parameter; connections
without one are closed with code 4401 before they are accepted.

Once accepted, every unacknowledged message for the recipient is pushed
immediately. The client acknowledges with {"type": "acknowledge",
"message_id": ...} as a text or binary frame; other frames are ignored.
"""

from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from backend.app.core.config import settings
from backend.app.delivery.channels.websocket import (
    ACKNOWLEDGE,
    ACKNOWLEDGED,
    Channel,
    WebSocketPushTransport,
    parse_client_frame,
)
from backend.app.delivery.runtime import DeliveryRuntime

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

UNAUTHENTICATED_CLOSE_CODE = 4401


@router.websocket(settings.WS_PATH)
async def notification_channel(websocket: WebSocket):
    runtime: DeliveryRuntime = websocket.app.state.runtime
    recipient_id = (
        websocket.headers.get(settings.WS_USER_HEADER)
        or websocket.query_params.get("user_id")
    )
    if not recipient_id:
        logger.warning("[WS] Rejected connection without a user id")
        await websocket.close(code=UNAUTHENTICATED_CLOSE_CODE)
        return

    await websocket.accept()
    channel_id = uuid.uuid4().hex
    transport = runtime.transport
    if isinstance(transport, WebSocketPushTransport):
        channel = transport.attach(channel_id, websocket)
    else:
        channel = Channel(websocket)

    try:
        await runtime.hub.on_channel_connect(channel_id, recipient_id)
        while True:
            event = await websocket.receive()
            if event["type"] == "websocket.disconnect":
                break
            raw = event.get("text")
            frame = parse_client_frame(raw if raw is not None else event.get("bytes"))
            if frame is None or frame.type != ACKNOWLEDGE or not frame.message_id:
                logger.debug(
                    "[WS] Ignored frame on channel %s", channel_id,
                    extra={"channel_id": channel_id},
                )
                continue
            acknowledged = await runtime.hub.on_client_acknowledge(channel_id, frame.message_id)
            await channel.send({
                "type": ACKNOWLEDGED,
                "message_id": frame.message_id,
                "acknowledged": acknowledged,
            })
    except WebSocketDisconnect:
        pass
    finally:
        if isinstance(transport, WebSocketPushTransport):
            transport.detach(channel_id)
        await runtime.hub.on_channel_disconnect(channel_id)

"""
FastAPI route: Message delivery endpoints.

Provides endpoints to:
    POST /api/v1/messages                          — send a message
    GET  /api/v1/messages/{id}                     — fetch one message
    POST /api/v1/messages/{id}/acknowledge         — acknowledge a message
    POST /api/v1/messages/{id}/retry               — retry outside the sweep
    GET  /api/v1/recipients/{recipient_id}/messages — unacknowledged messages
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from backend.app.api.schemas import (
    AcknowledgeResponse,
    MessageListResponse,
    MessageResponse,
    RetryResponse,
    SendMessageRequest,
)
from backend.app.delivery.runtime import DeliveryRuntime
from backend.app.delivery.service import MessageService

router = APIRouter(prefix="/api/v1", tags=["messages"])


def get_runtime(request: Request) -> DeliveryRuntime:
    return request.app.state.runtime


def get_service(runtime: DeliveryRuntime = Depends(get_runtime)) -> MessageService:
    return runtime.service


@router.post("/messages", response_model=MessageResponse, status_code=201)
async def send_message(
    body: SendMessageRequest,
    response: Response,
    service: MessageService = Depends(get_service),
):
    """
    Create a message and try to push it right away.

    The returned state is ``delivered`` when the recipient had an open
    channel that took the push, ``queued`` otherwise.
    """
    message = await service.send_message(
        body.recipient_id,
        body.content,
        max_retry_attempts=body.max_retry_attempts,
        timeout=body.timeout,
    )
    response.headers["Location"] = f"/api/v1/messages/{message.id}"
    return MessageResponse.from_message(message)


@router.get("/messages/{message_id}", response_model=MessageResponse)
async def get_message(message_id: str, service: MessageService = Depends(get_service)):
    return MessageResponse.from_message(await service.get_message(message_id))


@router.post("/messages/{message_id}/acknowledge", response_model=AcknowledgeResponse)
async def acknowledge_message(message_id: str, service: MessageService = Depends(get_service)):
    """Acknowledge a message. Repeating the call is harmless."""
    await service.get_message(message_id)
    acknowledged = await service.acknowledge(message_id)
    return AcknowledgeResponse(message_id=message_id, acknowledged=acknowledged)


@router.post("/messages/{message_id}/retry", response_model=RetryResponse)
async def retry_message(message_id: str, service: MessageService = Depends(get_service)):
    """Push a message now, outside the retry sweep; 404 for an unknown id."""
    await service.get_message(message_id)
    delivered = await service.retry_message(message_id)
    return RetryResponse(message_id=message_id, delivered=delivered)


@router.get("/recipients/{recipient_id}/messages", response_model=MessageListResponse)
async def list_unacknowledged(recipient_id: str, service: MessageService = Depends(get_service)):
    """Unacknowledged messages for a recipient, oldest first."""
    return MessageListResponse.from_messages(await service.list_unacknowledged(recipient_id))

"""
FastAPI route: Delivery engine operations.

    GET  /api/v1/delivery/expired   — expired, unacknowledged messages
    POST /api/v1/delivery/sweep     — run one retry sweep now
    GET  /api/v1/delivery/presence  — open channels per recipient
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from backend.app.api.schemas import MessageListResponse, PresenceResponse, SweepResponse
from backend.app.api.v1.messages import get_runtime
from backend.app.delivery.runtime import DeliveryRuntime

router = APIRouter(prefix="/api/v1/delivery", tags=["delivery"])


@router.get("/expired", response_model=MessageListResponse)
async def list_expired(runtime: DeliveryRuntime = Depends(get_runtime)):
    return MessageListResponse.from_messages(await runtime.service.list_expired())


@router.post("/sweep", response_model=SweepResponse)
async def run_sweep(runtime: DeliveryRuntime = Depends(get_runtime)):
    """Run one retry/expiry sweep without waiting for the next interval."""
    report = await runtime.scheduler.run_tick()
    return SweepResponse.from_report(report)


@router.get("/presence", response_model=PresenceResponse)
async def presence(runtime: DeliveryRuntime = Depends(get_runtime)):
    by_recipient = runtime.presence.snapshot()
    return PresenceResponse(
        recipients=len(by_recipient),
        channels=runtime.presence.channel_count,
        by_recipient=by_recipient,
    )

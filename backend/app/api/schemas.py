"""
Pydantic schemas for the message delivery API.

Separated from the route handlers so they are reusable across
the codebase (WebSocket handlers, tests).
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from backend.app.delivery.models import Message, MessageState, SweepReport


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class SendMessageRequest(BaseModel):
    """A notification to deliver to one recipient."""
    recipient_id: str = Field(
        ..., min_length=1, max_length=256,
        description="Identity the message is addressed to",
        examples=["user-42"],
    )
    content: str = Field(
        ..., description="Opaque payload pushed to the client",
        examples=["Your order has shipped"],
    )
    max_retry_attempts: Optional[int] = Field(
        None, ge=0, le=100,
        description="Scheduler re-push ceiling; server default when omitted",
    )
    timeout_seconds: Optional[float] = Field(
        None, gt=0,
        description="Age after which an unacknowledged message expires",
    )

    @field_validator("recipient_id")
    @classmethod
    def recipient_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("recipient_id must not be blank")
        return v

    @property
    def timeout(self) -> Optional[timedelta]:
        if self.timeout_seconds is None:
            return None
        return timedelta(seconds=self.timeout_seconds)


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class MessageResponse(BaseModel):
    id: str
    recipient_id: str
    content: str
    state: MessageState
    created_at: datetime
    acknowledged_at: Optional[datetime] = None
    retry_attempts: int
    max_retry_attempts: int
    timeout_seconds: float
    expires_at: datetime

    @classmethod
    def from_message(cls, message: Message) -> "MessageResponse":
        return cls(
            id=message.id,
            recipient_id=message.recipient_id,
            content=message.content,
            state=message.state,
            created_at=message.created_at,
            acknowledged_at=message.acknowledged_at,
            retry_attempts=message.retry_attempts,
            max_retry_attempts=message.max_retry_attempts,
            timeout_seconds=message.timeout.total_seconds(),
            expires_at=message.expires_at,
        )


class MessageListResponse(BaseModel):
    total: int
    messages: List[MessageResponse]

    @classmethod
    def from_messages(cls, messages: List[Message]) -> "MessageListResponse":
        return cls(
            total=len(messages),
            messages=[MessageResponse.from_message(m) for m in messages],
        )


class AcknowledgeResponse(BaseModel):
    message_id: str
    acknowledged: bool


class RetryResponse(BaseModel):
    message_id: str
    delivered: bool = Field(
        ..., description="False when the message expired or could not be pushed",
    )


class SweepResponse(BaseModel):
    started_at: datetime
    completed_at: Optional[datetime] = None
    candidates: int
    pushed: int
    unreachable: int
    push_failures: int
    persistence_failures: int
    expired_total: int
    expired_marked: int

    @classmethod
    def from_report(cls, report: SweepReport) -> "SweepResponse":
        return cls(
            started_at=report.started_at,
            completed_at=report.completed_at,
            candidates=report.candidates,
            pushed=report.pushed,
            unreachable=report.unreachable,
            push_failures=report.push_failures,
            persistence_failures=report.persistence_failures,
            expired_total=report.expired_total,
            expired_marked=report.expired_marked,
        )


class PresenceResponse(BaseModel):
    recipients: int
    channels: int
    by_recipient: Dict[str, int] = Field(
        default_factory=dict, description="Open channel count per recipient",
    )

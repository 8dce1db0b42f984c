"""
models.py — Shared data structures for the delivery engine.

Defines:
    • MessageState    — lifecycle state of a message
    • DeliveryOutcome — result of one dispatch attempt
    • Message         — the unit of delivery
    • is_expired      — lazy expiry rule
    • SweepReport     — summary of one retry scheduler tick

═══════════════════════════════════════════════════════════════════════════
MESSAGE LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    created ──► queued ──► delivered ──► acknowledged
       │          │  ▲          │
       │          │  └──────────┤ (redelivery keeps DELIVERED)
       └──────────┴─────────────┴──► expired

    created       initial state, set by the store on create
    queued        recipient had no open channel at dispatch time
    delivered     pushed at least once; still awaiting acknowledgment
    acknowledged  client confirmed receipt (terminal, only via ack handler)
    expired       now - created_at > timeout without ack (terminal)
    failed        terminal, never assigned by the engine itself

Expiry is lazy: it is computed from wall-clock deltas on read and persisted
by the retry scheduler the first time it sees the condition.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


class MessageState(str, Enum):
    """Lifecycle state of a message."""
    CREATED      = "created"
    QUEUED       = "queued"
    DELIVERED    = "delivered"
    ACKNOWLEDGED = "acknowledged"
    EXPIRED      = "expired"
    FAILED       = "failed"


class DeliveryOutcome(str, Enum):
    """Result of a single dispatch attempt."""
    DELIVERED = "delivered"
    QUEUED    = "queued"


# States a message can never leave
TERMINAL_STATES: FrozenSet[MessageState] = frozenset({
    MessageState.ACKNOWLEDGED,
    MessageState.EXPIRED,
    MessageState.FAILED,
})

# States from which a push may move the message to DELIVERED
DELIVERABLE_STATES: FrozenSet[MessageState] = frozenset({
    MessageState.CREATED,
    MessageState.QUEUED,
    MessageState.DELIVERED,
})


def generate_message_id() -> str:
    return str(uuid.uuid4())


def is_expired(
    now: datetime,
    created_at: datetime,
    timeout: timedelta,
    state: MessageState,
) -> bool:
    """
    Lazy expiry rule.

    A stored EXPIRED message is expired; an acknowledged one never is;
    anything else expires once ``now - created_at`` exceeds ``timeout``.
    """
    if state == MessageState.EXPIRED:
        return True
    if state == MessageState.ACKNOWLEDGED:
        return False
    return now - created_at > timeout


@dataclass
class Message:
    """
    A notification addressed to one recipient.

    Attributes
    ----------
    id : str
        Opaque unique identifier, assigned at creation.
    recipient_id : str
        Identity the message is addressed to.
    content : str
        Opaque payload.
    state : MessageState
    created_at : datetime
        Timezone-aware creation time; expiry is measured from here.
    acknowledged_at : datetime | None
        Set exactly once, on transition into ACKNOWLEDGED.
    retry_attempts : int
        Incremented only by the retry scheduler.
    max_retry_attempts : int
        Ceiling after which the scheduler stops re-pushing.
    timeout : timedelta
        Age after which an unacknowledged message is expired.
    version : int
        Bumped on every persisted update; guards against lost updates.
    """
    recipient_id: str
    content: str
    created_at: datetime
    id: str = field(default_factory=generate_message_id)
    state: MessageState = MessageState.CREATED
    acknowledged_at: Optional[datetime] = None
    retry_attempts: int = 0
    max_retry_attempts: int = 3
    timeout: timedelta = timedelta(hours=24)
    version: int = 0

    @property
    def is_acknowledged(self) -> bool:
        return self.state == MessageState.ACKNOWLEDGED

    @property
    def expires_at(self) -> datetime:
        return self.created_at + self.timeout

    @property
    def retries_exhausted(self) -> bool:
        return self.retry_attempts >= self.max_retry_attempts

    def expired_at(self, now: datetime) -> bool:
        return is_expired(now, self.created_at, self.timeout, self.state)

    def copy(self) -> "Message":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "recipient_id": self.recipient_id,
            "content": self.content,
            "state": self.state.value,
            "created_at": self.created_at.isoformat(),
            "acknowledged_at": (
                self.acknowledged_at.isoformat() if self.acknowledged_at else None
            ),
            "retry_attempts": self.retry_attempts,
            "max_retry_attempts": self.max_retry_attempts,
            "timeout_seconds": self.timeout.total_seconds(),
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass
class SweepReport:
    """Outcome counters for one retry scheduler tick."""
    started_at: datetime
    candidates: int = 0
    pushed: int = 0
    unreachable: int = 0
    push_failures: int = 0
    persistence_failures: int = 0
    expired_total: int = 0
    expired_marked: int = 0
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
            "candidates": self.candidates,
            "pushed": self.pushed,
            "unreachable": self.unreachable,
            "push_failures": self.push_failures,
            "persistence_failures": self.persistence_failures,
            "expired_total": self.expired_total,
            "expired_marked": self.expired_marked,
        }

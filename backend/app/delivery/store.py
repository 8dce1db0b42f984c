"""
store.py — Message Store interface and the in-memory implementation.

The store is the single source of truth for message records. Nothing else
keeps a Message across an await: components read, mutate and persist in one
unit through ``apply_update``, which re-reads and retries when a concurrent
writer got there first (optimistic concurrency on ``Message.version``).

Field ownership keeps conflicts rare:
    retry_attempts, state → queued / delivered / expired   dispatcher, scheduler
    state → acknowledged, acknowledged_at                   ack handler
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Tuple

from backend.app.core.config import settings
from backend.app.core.errors import StaleMessageError, ValidationError
from backend.app.delivery.clock import Clock, SystemClock
from backend.app.delivery.models import Message, MessageState, TERMINAL_STATES

logger = logging.getLogger(__name__)

UPDATE_ATTEMPTS = 3


class MessageStore(ABC):
    """Persistence contract shared by the in-memory and SQL stores."""

    def __init__(
        self,
        clock: Optional[Clock] = None,
        *,
        default_max_retry_attempts: Optional[int] = None,
        default_timeout: Optional[timedelta] = None,
    ):
        self.clock = clock or SystemClock()
        self.default_max_retry_attempts = (
            settings.DEFAULT_MAX_RETRY_ATTEMPTS
            if default_max_retry_attempts is None else default_max_retry_attempts
        )
        self.default_timeout = default_timeout or timedelta(
            seconds=settings.DEFAULT_MESSAGE_TIMEOUT_SECONDS
        )

    def build_message(
        self,
        recipient_id: str,
        content: str,
        *,
        max_retry_attempts: Optional[int] = None,
        timeout: Optional[timedelta] = None,
    ) -> Message:
        """Validate inputs and build a fresh CREATED message."""
        if not recipient_id:
            raise ValidationError("recipient_id must not be empty", field="recipient_id")
        if max_retry_attempts is None:
            max_retry_attempts = self.default_max_retry_attempts
        if max_retry_attempts < 0:
            raise ValidationError(
                "max_retry_attempts must be >= 0", field="max_retry_attempts",
            )
        if timeout is None:
            timeout = self.default_timeout
        if timeout <= timedelta(0):
            raise ValidationError("timeout must be positive", field="timeout")

        return Message(
            recipient_id=recipient_id,
            content=content,
            created_at=self.clock.now(),
            max_retry_attempts=max_retry_attempts,
            timeout=timeout,
        )

    def is_retry_candidate(self, message: Message) -> bool:
        now = self.clock.now()
        return (
            message.state not in TERMINAL_STATES
            and message.retry_attempts < message.max_retry_attempts
            and not message.expired_at(now)
        )

    def is_expired_unacknowledged(self, message: Message) -> bool:
        return not message.is_acknowledged and message.expired_at(self.clock.now())

    @abstractmethod
    async def create(
        self,
        recipient_id: str,
        content: str,
        *,
        max_retry_attempts: Optional[int] = None,
        timeout: Optional[timedelta] = None,
    ) -> Message:
        """Persist a new CREATED message and return it."""

    @abstractmethod
    async def get(self, message_id: str) -> Optional[Message]:
        """Return the message or None when unknown."""

    @abstractmethod
    async def list_unacknowledged(self, recipient_id: str) -> List[Message]:
        """All messages for the recipient not in ACKNOWLEDGED (expired included)."""

    @abstractmethod
    async def list_retry_candidates(self) -> List[Message]:
        """Unacknowledged, unexpired messages below their retry ceiling."""

    @abstractmethod
    async def list_expired_unacknowledged(self) -> List[Message]:
        """Messages past their timeout that were never acknowledged."""

    @abstractmethod
    async def update(self, message: Message) -> Message:
        """
        Persist a mutated record.

        Raises StaleMessageError if the stored version differs from
        ``message.version``; returns the record with its new version.
        """

    async def ping(self) -> None:
        """Raise if the store is unavailable."""

    async def close(self) -> None:
        pass


async def apply_update(
    store: MessageStore,
    message_id: str,
    mutate: Callable[[Message], bool],
    *,
    attempts: int = UPDATE_ATTEMPTS,
) -> Tuple[Optional[Message], bool]:
    """
    Read, mutate and persist one message as a unit.

    ``mutate`` edits the fresh copy in place and returns False when no write
    is needed. Returns ``(message, changed)``; message is None if unknown.
    A stale write is retried against a re-read record.
    """
    for attempt in range(1, attempts + 1):
        message = await store.get(message_id)
        if message is None:
            return None, False
        if not mutate(message):
            return message, False
        try:
            return await store.update(message), True
        except StaleMessageError:
            if attempt == attempts:
                raise
            logger.debug(
                "Concurrent update on %s, retrying (%d/%d)",
                message_id, attempt, attempts,
                extra={"message_id": message_id},
            )
    return None, False  # unreachable: loop either returns or raises


class InMemoryMessageStore(MessageStore):
    """
    Dict-backed store for development and tests.

    A lock guards the dict; every read hands out a copy so callers can never
    mutate the stored record behind the store's back.
    """

    def __init__(self, clock: Optional[Clock] = None, **defaults):
        super().__init__(clock, **defaults)
        self._lock = threading.Lock()
        self._messages: Dict[str, Message] = {}

    async def create(self, recipient_id, content, *, max_retry_attempts=None, timeout=None):
        message = self.build_message(
            recipient_id, content,
            max_retry_attempts=max_retry_attempts, timeout=timeout,
        )
        with self._lock:
            self._messages[message.id] = message.copy()
        return message

    async def get(self, message_id):
        with self._lock:
            message = self._messages.get(message_id)
            return message.copy() if message else None

    async def list_unacknowledged(self, recipient_id):
        with self._lock:
            found = [
                m.copy() for m in self._messages.values()
                if m.recipient_id == recipient_id and m.state != MessageState.ACKNOWLEDGED
            ]
        return sorted(found, key=lambda m: m.created_at)

    async def list_retry_candidates(self):
        with self._lock:
            return [m.copy() for m in self._messages.values() if self.is_retry_candidate(m)]

    async def list_expired_unacknowledged(self):
        with self._lock:
            return [
                m.copy() for m in self._messages.values()
                if self.is_expired_unacknowledged(m)
            ]

    async def update(self, message):
        with self._lock:
            current = self._messages.get(message.id)
            if current is None or current.version != message.version:
                raise StaleMessageError(message.id, message.version)
            stored = message.copy()
            stored.version += 1
            self._messages[message.id] = stored
            return stored.copy()

    def __len__(self) -> int:
        with self._lock:
            return len(self._messages)

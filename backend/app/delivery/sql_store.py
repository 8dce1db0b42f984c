"""
sql_store.py — SQLAlchemy-backed Message Store.

Layout: one ``messages`` table keyed by ``id`` with a secondary index on
``(recipient_id, state)`` for the per-recipient and sweep queries, and one on
``(state, expires_at)`` for the expiry scans. ``expires_at`` is denormalised
from ``created_at + timeout`` so expiry can be filtered in SQL.

Updates are conditional on ``version`` (``UPDATE ... WHERE id = :id AND
version = :v``); a zero row count means a concurrent writer won and surfaces
as StaleMessageError. Driver errors surface as PersistenceError.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import DateTime, Float, Index, Integer, String, Text, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.core.database import Base
from backend.app.core.errors import PersistenceError, StaleMessageError
from backend.app.delivery.clock import Clock
from backend.app.delivery.models import Message, MessageState, TERMINAL_STATES
from backend.app.delivery.store import MessageStore

logger = logging.getLogger(__name__)


class MessageRecord(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    recipient_id: Mapped[str] = mapped_column(String(255), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    state: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    acknowledged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    retry_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retry_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    timeout_seconds: Mapped[float] = mapped_column(Float, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("ix_messages_recipient_state", "recipient_id", "state"),
        Index("ix_messages_state_expires", "state", "expires_at"),
    )


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops the offset; every stored timestamp is UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_message(record: MessageRecord) -> Message:
    return Message(
        id=record.id,
        recipient_id=record.recipient_id,
        content=record.content,
        state=MessageState(record.state),
        created_at=_aware(record.created_at),
        acknowledged_at=_aware(record.acknowledged_at),
        retry_attempts=record.retry_attempts,
        max_retry_attempts=record.max_retry_attempts,
        timeout=timedelta(seconds=record.timeout_seconds),
        version=record.version,
    )


def _to_record(message: Message) -> MessageRecord:
    return MessageRecord(
        id=message.id,
        recipient_id=message.recipient_id,
        content=message.content,
        state=message.state.value,
        created_at=message.created_at,
        expires_at=message.expires_at,
        acknowledged_at=message.acknowledged_at,
        retry_attempts=message.retry_attempts,
        max_retry_attempts=message.max_retry_attempts,
        timeout_seconds=message.timeout.total_seconds(),
        version=message.version,
    )


_TERMINAL_VALUES = [s.value for s in TERMINAL_STATES]


class SqlMessageStore(MessageStore):
    """Message Store over an async SQLAlchemy session factory."""

    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        clock: Optional[Clock] = None,
        **defaults,
    ):
        super().__init__(clock, **defaults)
        self._sessions = sessions

    async def _fetch(self, operation: str, stmt) -> List[Message]:
        try:
            async with self._sessions() as session:
                result = await session.execute(stmt)
                return [_to_message(r) for r in result.scalars().all()]
        except SQLAlchemyError as exc:
            logger.error("Store %s failed: %s", operation, exc)
            raise PersistenceError(operation, str(exc)) from exc

    async def create(self, recipient_id, content, *, max_retry_attempts=None, timeout=None):
        message = self.build_message(
            recipient_id, content,
            max_retry_attempts=max_retry_attempts, timeout=timeout,
        )
        try:
            async with self._sessions() as session:
                session.add(_to_record(message))
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error(
                "Store create failed for %s: %s", recipient_id, exc,
                extra={"recipient_id": recipient_id},
            )
            raise PersistenceError("create", str(exc)) from exc
        return message

    async def get(self, message_id):
        found = await self._fetch(
            "get", select(MessageRecord).where(MessageRecord.id == message_id),
        )
        return found[0] if found else None

    async def list_unacknowledged(self, recipient_id):
        return await self._fetch(
            "list_unacknowledged",
            select(MessageRecord)
            .where(
                MessageRecord.recipient_id == recipient_id,
                MessageRecord.state != MessageState.ACKNOWLEDGED.value,
            )
            .order_by(MessageRecord.created_at),
        )

    async def list_retry_candidates(self):
        now = self.clock.now()
        return await self._fetch(
            "list_retry_candidates",
            select(MessageRecord).where(
                MessageRecord.state.not_in(_TERMINAL_VALUES),
                MessageRecord.retry_attempts < MessageRecord.max_retry_attempts,
                MessageRecord.expires_at >= now,
            ),
        )

    async def list_expired_unacknowledged(self):
        now = self.clock.now()
        return await self._fetch(
            "list_expired_unacknowledged",
            select(MessageRecord).where(
                MessageRecord.state != MessageState.ACKNOWLEDGED.value,
                (MessageRecord.state == MessageState.EXPIRED.value)
                | (MessageRecord.expires_at < now),
            ),
        )

    async def update(self, message):
        stmt = (
            update(MessageRecord)
            .where(
                MessageRecord.id == message.id,
                MessageRecord.version == message.version,
            )
            .values(
                state=message.state.value,
                acknowledged_at=message.acknowledged_at,
                retry_attempts=message.retry_attempts,
                version=message.version + 1,
            )
        )
        try:
            async with self._sessions() as session:
                result = await session.execute(stmt)
                if result.rowcount == 0:
                    await session.rollback()
                    raise StaleMessageError(message.id, message.version)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error(
                "Store update failed for %s: %s", message.id, exc,
                extra={"message_id": message.id},
            )
            raise PersistenceError("update", str(exc)) from exc

        stored = message.copy()
        stored.version += 1
        return stored

    async def ping(self) -> None:
        try:
            async with self._sessions() as session:
                await session.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            raise PersistenceError("ping", str(exc)) from exc

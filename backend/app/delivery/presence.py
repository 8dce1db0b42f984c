"""
presence.py — Which recipients currently hold an open push channel.

Entries are ``(channel_id, recipient_id)`` pairs created on channel connect and
dropped on disconnect. Several channels may name the same recipient (one per
device); a recipient is reachable while at least one entry names it. Nothing
here is persisted — a restart starts with nobody reachable and the retry
scheduler / flush-on-connect make up the difference.

The registry is mutated by connect/disconnect events and read by the
dispatcher and scheduler at the same time, possibly from different threads,
so every operation takes the internal lock. Operations never block on I/O.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, FrozenSet, Optional, Set

logger = logging.getLogger(__name__)


class PresenceRegistry:
    """Thread-safe ``channel → recipient`` map with a reverse index."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._channels: Dict[str, str] = {}
        self._by_recipient: Dict[str, Set[str]] = {}

    def register(self, channel_id: str, recipient_id: str) -> bool:
        """
        Attach ``channel_id`` to ``recipient_id``.

        Idempotent; re-registering a channel under another recipient moves it.
        Returns True if the recipient had no open channel before.
        """
        if not channel_id or not recipient_id:
            raise ValueError("channel_id and recipient_id are required")

        with self._lock:
            previous = self._channels.get(channel_id)
            if previous == recipient_id:
                return False
            if previous is not None:
                self._detach(channel_id, previous)

            channels = self._by_recipient.setdefault(recipient_id, set())
            first = not channels
            channels.add(channel_id)
            self._channels[channel_id] = recipient_id

        logger.debug(
            "Channel %s registered for %s", channel_id, recipient_id,
            extra={"channel_id": channel_id, "recipient_id": recipient_id},
        )
        return first

    def unregister(self, channel_id: str) -> Optional[str]:
        """Drop the channel; returns its recipient, or None if unknown."""
        with self._lock:
            recipient_id = self._channels.pop(channel_id, None)
            if recipient_id is not None:
                self._detach(channel_id, recipient_id)

        if recipient_id is not None:
            logger.debug(
                "Channel %s unregistered for %s", channel_id, recipient_id,
                extra={"channel_id": channel_id, "recipient_id": recipient_id},
            )
        return recipient_id

    def _detach(self, channel_id: str, recipient_id: str) -> None:
        channels = self._by_recipient.get(recipient_id)
        if channels is None:
            return
        channels.discard(channel_id)
        if not channels:
            del self._by_recipient[recipient_id]

    def is_reachable(self, recipient_id: str) -> bool:
        if not recipient_id:
            return False
        with self._lock:
            return bool(self._by_recipient.get(recipient_id))

    def channels_for(self, recipient_id: str) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._by_recipient.get(recipient_id, ()))

    def recipient_of(self, channel_id: str) -> Optional[str]:
        with self._lock:
            return self._channels.get(channel_id)

    def snapshot(self) -> Dict[str, int]:
        """Open channel count per reachable recipient."""
        with self._lock:
            return {rid: len(chs) for rid, chs in self._by_recipient.items()}

    @property
    def channel_count(self) -> int:
        with self._lock:
            return len(self._channels)

    def clear(self) -> None:
        with self._lock:
            self._channels.clear()
            self._by_recipient.clear()

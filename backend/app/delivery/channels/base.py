"""Push transport contract."""

from __future__ import annotations

from abc import ABC, abstractmethod


class PushTransport(ABC):

    @abstractmethod
    async def push(self, recipient_id: str, message_id: str, content: str) -> int:
        """
        Send ``(message_id, content)`` to every open channel of the recipient.

        Returns the number of channels the frame was written to. Raises
        PushFailedError when no channel accepted it.
        """

    async def close(self) -> None:
        pass

"""Per-conversation publish/subscribe message channel interface.

The call coordinator only needs ``send`` and ``on_message``. Delivery is
at-least-once and ordered per sender; a sender receives its own messages
back (echo), exactly like the hosted realtime channel used by the web client.
"""

import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, List

logger = logging.getLogger(__name__)

# Channel status values, matching the realtime channel vocabulary.
CHANNEL_SUBSCRIBED = "SUBSCRIBED"
CHANNEL_ERROR = "CHANNEL_ERROR"
CHANNEL_TIMED_OUT = "TIMED_OUT"
CHANNEL_CLOSED = "CLOSED"

MessageCallback = Callable[[str, str], Awaitable[None]]  # (content, sender_id)
StatusCallback = Callable[[str], Awaitable[None]]


class MessageChannel(ABC):
    """A participant's connection to the conversation message bus.

    Attributes:
        peer_id: The local participant id stamped on outgoing messages.
        status: Last reported channel status.
    """

    def __init__(self, peer_id: str):
        self.peer_id = peer_id
        self.status = CHANNEL_CLOSED
        self._message_callbacks: Dict[str, List[MessageCallback]] = {}
        self._status_callbacks: List[StatusCallback] = []

    @abstractmethod
    async def send(self, conversation_id: str, text: str) -> None:
        """Publish text to a conversation.

        Raises:
            ChannelError: If the channel cannot deliver right now.
        """

    def on_message(self, conversation_id: str, callback: MessageCallback) -> None:
        self._message_callbacks.setdefault(conversation_id, []).append(callback)

    def on_status(self, callback: StatusCallback) -> None:
        self._status_callbacks.append(callback)

    @property
    def conversation_ids(self) -> List[str]:
        return list(self._message_callbacks)

    async def _deliver(self, conversation_id: str, text: str, sender_id: str) -> None:
        for callback in list(self._message_callbacks.get(conversation_id, [])):
            try:
                await callback(text, sender_id)
            except Exception as e:
                logger.error(f"Error in message handler for {conversation_id}: {e}")

    async def _set_status(self, status: str) -> None:
        self.status = status
        for callback in list(self._status_callbacks):
            try:
                await callback(status)
            except Exception as e:
                logger.error(f"Error in channel status handler: {e}")

    async def close(self) -> None:
        await self._set_status(CHANNEL_CLOSED)

"""In-process message hub.

Used by the test-suite and for wiring two coordinators together in a single
process. Each channel has its own inbox queue drained by a consumer task, so
delivery is asynchronous and ordered per sender, like a network transport.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Tuple

from dm_rtc.channel.base import CHANNEL_SUBSCRIBED, MessageChannel
from dm_rtc.exceptions import ChannelError

logger = logging.getLogger(__name__)


class InMemoryChannel(MessageChannel):
    def __init__(self, hub: "InMemoryHub", peer_id: str):
        super().__init__(peer_id)
        self.hub = hub
        self.sent: List[Tuple[str, str]] = []
        self._inbox: "asyncio.Queue[Tuple[str, str, str]]" = asyncio.Queue()
        self._consumer: Optional[asyncio.Task] = None
        self._pending = 0

    @property
    def idle(self) -> bool:
        return self._pending == 0

    async def subscribe(self) -> None:
        await self._set_status(CHANNEL_SUBSCRIBED)

    async def set_status(self, status: str) -> None:
        """Report a status change, as a flaky transport would."""
        await self._set_status(status)

    async def send(self, conversation_id: str, text: str) -> None:
        if self.status != CHANNEL_SUBSCRIBED:
            raise ChannelError(f"Channel for {self.peer_id} is {self.status}")
        self.sent.append((conversation_id, text))
        await self.hub.publish(conversation_id, text, self.peer_id)

    def _enqueue(self, conversation_id: str, text: str, sender_id: str) -> None:
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._consume())
        self._pending += 1
        self._inbox.put_nowait((conversation_id, text, sender_id))

    async def _consume(self) -> None:
        while True:
            conversation_id, text, sender_id = await self._inbox.get()
            try:
                await self._deliver(conversation_id, text, sender_id)
            finally:
                self._pending -= 1

    async def close(self) -> None:
        if self._consumer is not None:
            self._consumer.cancel()
            self._consumer = None
        await super().close()


class InMemoryHub:
    """Routes conversation messages between in-process channels.

    Args:
        duplicate_delivery: Deliver every message twice, to exercise
            at-least-once handling.
    """

    def __init__(self, duplicate_delivery: bool = False):
        self.duplicate_delivery = duplicate_delivery
        self._channels: Dict[str, InMemoryChannel] = {}

    def channel(self, peer_id: str) -> InMemoryChannel:
        if peer_id not in self._channels:
            self._channels[peer_id] = InMemoryChannel(self, peer_id)
        return self._channels[peer_id]

    async def publish(self, conversation_id: str, text: str, sender_id: str) -> None:
        copies = 2 if self.duplicate_delivery else 1
        for channel in self._channels.values():
            if conversation_id not in channel.conversation_ids:
                continue
            for _ in range(copies):
                channel._enqueue(conversation_id, text, sender_id)

    async def settle(self, max_iterations: int = 10000) -> None:
        """Wait until every delivered message has been handled."""
        for _ in range(max_iterations):
            await asyncio.sleep(0)
            if all(channel.idle for channel in self._channels.values()):
                # One more turn for tasks scheduled by the last handler
                await asyncio.sleep(0)
                if all(channel.idle for channel in self._channels.values()):
                    return
        raise RuntimeError("Message hub did not settle")

    async def close(self) -> None:
        for channel in self._channels.values():
            await channel.close()

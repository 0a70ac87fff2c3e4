"""Message channel backed by the dm-rtc websocket relay.

Frames are JSON objects:

    -> {"type": "subscribe", "conversation_id": "...", "peer_id": "..."}
    <- {"type": "subscribed", "conversation_id": "..."}
    -> {"type": "message", "conversation_id": "...", "content": "..."}
    <- {"type": "message", "conversation_id": "...", "sender_id": "...", "content": "..."}
    <- {"type": "error", "reason": "..."}

The relay echoes messages back to their sender, and the channel passes those
echoes on like any other message.
"""

import asyncio
import json
import logging
from typing import Optional

import websockets

from dm_rtc.channel.base import (
    CHANNEL_CLOSED,
    CHANNEL_ERROR,
    CHANNEL_SUBSCRIBED,
    CHANNEL_TIMED_OUT,
    MessageChannel,
)
from dm_rtc.exceptions import ChannelError

logger = logging.getLogger(__name__)

MAX_RECONNECT_ATTEMPTS = 5
RETRY_DELAY = 5  # seconds
SUBSCRIBE_TIMEOUT = 10  # seconds


class WebSocketChannel(MessageChannel):
    """Channel connected to a relay server over a websocket.

    Args:
        url: Relay websocket URL (e.g. ws://localhost:8765).
        peer_id: Local participant id.
    """

    def __init__(self, url: str, peer_id: str):
        super().__init__(peer_id)
        self.url = url
        self.websocket = None
        self._reader_task: Optional[asyncio.Task] = None
        self._closing = False

    async def connect(self) -> None:
        """Open the websocket, subscribe to registered conversations and start reading.

        Raises:
            ChannelError: If the relay cannot be reached or never acks.
        """
        await self._open()
        self._reader_task = asyncio.create_task(self._run())

    async def _open(self) -> None:
        try:
            self.websocket = await websockets.connect(self.url)
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise ChannelError(f"Cannot reach relay at {self.url}: {e}") from e

        logger.info(f"Connected to relay: {self.url}")
        for conversation_id in self.conversation_ids:
            await self.websocket.send(
                json.dumps(
                    {
                        "type": "subscribe",
                        "conversation_id": conversation_id,
                        "peer_id": self.peer_id,
                    }
                )
            )

    async def _run(self) -> None:
        while not self._closing:
            try:
                await self._read_loop()
                logger.warning("Relay connection closed")
                await self._set_status(CHANNEL_CLOSED)
            except asyncio.CancelledError:
                raise
            except websockets.exceptions.ConnectionClosed:
                logger.warning("Relay connection closed")
                await self._set_status(CHANNEL_CLOSED)
            except Exception as e:
                logger.error(f"Relay connection error: {e}")
                await self._set_status(CHANNEL_ERROR)

            if self._closing or not await self._reconnect():
                return

    async def _reconnect(self) -> bool:
        for attempt in range(1, MAX_RECONNECT_ATTEMPTS + 1):
            if self._closing:
                return False
            logger.info(
                f"Reconnecting to relay (attempt {attempt}/{MAX_RECONNECT_ATTEMPTS})..."
            )
            await asyncio.sleep(RETRY_DELAY)
            try:
                await self._open()
                return True
            except ChannelError as e:
                logger.warning(str(e))

        logger.error("Giving up on relay after repeated failures")
        await self._set_status(CHANNEL_TIMED_OUT)
        return False

    async def _read_loop(self) -> None:
        async for message in self.websocket:
            try:
                data = json.loads(message)
            except json.JSONDecodeError:
                logger.error("Invalid JSON received from relay")
                continue

            msg_type = data.get("type")
            if msg_type == "subscribed":
                logger.info(f"Subscribed to conversation {data.get('conversation_id')}")
                await self._set_status(CHANNEL_SUBSCRIBED)
            elif msg_type == "message":
                await self._deliver(
                    data.get("conversation_id", ""),
                    data.get("content", ""),
                    data.get("sender_id", ""),
                )
            elif msg_type == "error":
                logger.error(f"Relay error: {data.get('reason')}")
            else:
                logger.debug(f"Ignoring relay message type: {msg_type}")

    async def wait_subscribed(self, timeout: float = SUBSCRIBE_TIMEOUT) -> None:
        """Wait for the relay to ack the subscription.

        Raises:
            ChannelError: If no ack arrives within ``timeout`` seconds.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self.status != CHANNEL_SUBSCRIBED:
            if loop.time() > deadline:
                await self._set_status(CHANNEL_TIMED_OUT)
                raise ChannelError("Timed out waiting for relay subscription")
            await asyncio.sleep(0.05)

    async def send(self, conversation_id: str, text: str) -> None:
        if self.websocket is None or self.status != CHANNEL_SUBSCRIBED:
            raise ChannelError(f"Channel is {self.status}")
        try:
            await self.websocket.send(
                json.dumps(
                    {
                        "type": "message",
                        "conversation_id": conversation_id,
                        "content": text,
                    }
                )
            )
        except websockets.exceptions.ConnectionClosed as e:
            raise ChannelError(f"Relay connection closed: {e}") from e

    async def close(self) -> None:
        self._closing = True
        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None
        if self.websocket is not None:
            await self.websocket.close()
            self.websocket = None
        await super().close()

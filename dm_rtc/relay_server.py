"""Minimal WebSocket relay for conversation messages.

Stands in for the hosted realtime channel during development and testing:
clients subscribe to conversations and every message published to a
conversation is broadcast to all of its subscribers, the sender included.

Usage:
    dm-rtc relay [--host HOST] [--port PORT]
"""

import asyncio
import json
import logging
from typing import Dict, Set

import websockets

logger = logging.getLogger(__name__)

# conversation_id -> subscribed connections
subscriptions: Dict[str, Set] = {}


async def _broadcast(conversation_id: str, sender_id: str, content: str):
    frame = json.dumps(
        {
            "type": "message",
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "content": content,
        }
    )
    for connection in list(subscriptions.get(conversation_id, ())):
        try:
            await connection.send(frame)
        except websockets.exceptions.ConnectionClosed:
            logger.info(f"Dropping closed subscriber of {conversation_id}")
            subscriptions[conversation_id].discard(connection)


async def handler(websocket):
    """Handle one client connection."""
    peer_id = None
    joined: Set[str] = set()

    try:
        async for message in websocket:
            try:
                data = json.loads(message)
            except json.JSONDecodeError:
                await websocket.send(json.dumps({"type": "error", "reason": "invalid json"}))
                continue

            msg_type = data.get("type")
            conversation_id = data.get("conversation_id")

            if msg_type == "subscribe":
                peer_id = data.get("peer_id") or peer_id
                if not conversation_id or not peer_id:
                    await websocket.send(
                        json.dumps({"type": "error", "reason": "conversation_id and peer_id required"})
                    )
                    continue
                subscriptions.setdefault(conversation_id, set()).add(websocket)
                joined.add(conversation_id)
                await websocket.send(
                    json.dumps({"type": "subscribed", "conversation_id": conversation_id})
                )
                logger.info(
                    f"{peer_id} subscribed to {conversation_id} "
                    f"({len(subscriptions[conversation_id])} subscribers)"
                )

            elif msg_type == "message":
                if conversation_id not in joined:
                    await websocket.send(
                        json.dumps({"type": "error", "reason": "not subscribed"})
                    )
                    continue
                await _broadcast(conversation_id, peer_id, data.get("content", ""))

            else:
                logger.warning(f"Unknown message type from {peer_id}: {msg_type}")

    except websockets.exceptions.ConnectionClosed:
        logger.info(f"Connection closed: {peer_id}")
    finally:
        for conversation_id in joined:
            subscribers = subscriptions.get(conversation_id)
            if subscribers is None:
                continue
            subscribers.discard(websocket)
            if not subscribers:
                del subscriptions[conversation_id]
        if peer_id:
            logger.info(f"Removed {peer_id} from {len(joined)} conversation(s)")


async def serve(host: str, port: int):
    """Start the relay and run forever."""
    async with websockets.serve(handler, host, port):
        logger.info(f"Relay running on ws://{host}:{port}")
        await asyncio.Future()


def run_relay(host: str = "localhost", port: int = 8765):
    try:
        asyncio.run(serve(host, port))
    except KeyboardInterrupt:
        logger.info("Relay stopped")

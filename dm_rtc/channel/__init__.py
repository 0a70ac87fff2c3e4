"""Conversation message channels carrying chat text and call signaling."""

from dm_rtc.channel.base import (
    CHANNEL_CLOSED,
    CHANNEL_ERROR,
    CHANNEL_SUBSCRIBED,
    CHANNEL_TIMED_OUT,
    MessageChannel,
)
from dm_rtc.channel.memory import InMemoryChannel, InMemoryHub
from dm_rtc.channel.websocket import WebSocketChannel

__all__ = [
    "CHANNEL_CLOSED",
    "CHANNEL_ERROR",
    "CHANNEL_SUBSCRIBED",
    "CHANNEL_TIMED_OUT",
    "MessageChannel",
    "InMemoryChannel",
    "InMemoryHub",
    "WebSocketChannel",
]

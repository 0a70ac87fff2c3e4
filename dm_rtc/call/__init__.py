"""Call lifecycle: session state, peer connection and coordinator."""

from dm_rtc.call.coordinator import CallCoordinator, CallEvent, EventType
from dm_rtc.call.gate import IncomingCallGate
from dm_rtc.call.peer_connection import MediaState, PeerConnectionManager
from dm_rtc.call.session import CallRole, CallSession, CallState, ConversationInfo

__all__ = [
    "CallCoordinator",
    "CallEvent",
    "EventType",
    "IncomingCallGate",
    "MediaState",
    "PeerConnectionManager",
    "CallRole",
    "CallSession",
    "CallState",
    "ConversationInfo",
]

"""Call session state shared by the coordinator and the incoming-call gate."""

import enum
from dataclasses import dataclass, field
from typing import List, Optional

from aiortc import RTCIceCandidate, RTCSessionDescription


class CallState(enum.Enum):
    IDLE = "idle"
    OUTGOING_RINGING = "outgoing-ringing"
    INCOMING_RINGING = "incoming-ringing"
    CONNECTING = "connecting"
    ACTIVE = "active"
    ENDED = "ended"


class CallRole(enum.Enum):
    INITIATOR = "initiator"
    RECEIVER = "receiver"


# Legal coordinator transitions. Anything else is rejected.
ALLOWED_TRANSITIONS = {
    CallState.IDLE: {CallState.OUTGOING_RINGING, CallState.INCOMING_RINGING},
    CallState.OUTGOING_RINGING: {CallState.CONNECTING, CallState.ENDED},
    CallState.INCOMING_RINGING: {CallState.CONNECTING, CallState.ENDED},
    CallState.CONNECTING: {CallState.ACTIVE, CallState.ENDED},
    CallState.ACTIVE: {CallState.ENDED},
    CallState.ENDED: {CallState.OUTGOING_RINGING, CallState.INCOMING_RINGING},
}


@dataclass
class CallSession:
    """State of one call attempt.

    A fresh CallSession replaces the old one whenever a call ends, is
    declined or fails, so no field outlives its attempt.

    Attributes:
        session_id: Conversation id hosting the call.
        local_role: Whether this side started the call.
        peer_state: Last signaling state reported by the peer connection.
        remote_offer: Offer received from the caller (receiver side).
        remote_answer: Answer received from the callee (initiator side).
        pending_ice_candidates: Candidates received before a peer connection
            existed, in arrival order.
        is_muted: Local microphone muted.
        is_video_enabled: Local camera sending.
        is_front_camera: Using the "user" facing camera.
        remote_peer_id: The other participant.
        caller_name: Display name shown by the incoming-call gate.
        end_sent: END/DECLINED already sent for this attempt.
        ended_reason: Why the attempt ended.
    """

    session_id: str
    local_role: Optional[CallRole] = None
    peer_state: str = "new"
    remote_offer: Optional[RTCSessionDescription] = None
    remote_answer: Optional[RTCSessionDescription] = None
    pending_ice_candidates: List[RTCIceCandidate] = field(default_factory=list)
    is_muted: bool = False
    is_video_enabled: bool = True
    is_front_camera: bool = True
    remote_peer_id: Optional[str] = None
    caller_name: Optional[str] = None
    end_sent: bool = False
    ended_reason: Optional[str] = None


@dataclass(frozen=True)
class ConversationInfo:
    """Participants of the paid DM conversation hosting the call."""

    conversation_id: str
    creator_id: Optional[str] = None
    subscriber_id: Optional[str] = None

    def display_name(self, participant_id: str) -> str:
        if participant_id and participant_id == self.creator_id:
            return "Creator"
        if participant_id and participant_id == self.subscriber_id:
            return "Subscriber"
        return "Unknown User"

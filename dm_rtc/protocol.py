"""Video call signaling protocol for dm-rtc.

Call signaling rides on the conversation's ordinary chat channel. Every
signaling payload is a text message starting with a stable tag, so the same
channel can keep carrying regular chat text unmodified.

Message Types
-------------

**VIDEO_CALL_OFFER:{json}**
    Sent by: Caller
    Purpose: Session description offer that starts a call
    Format: 'VIDEO_CALL_OFFER:{"type": "offer", "sdp": "v=0..."}'

**VIDEO_CALL_ANSWER:{json}**
    Sent by: Callee (after accepting)
    Purpose: Session description answer
    Format: 'VIDEO_CALL_ANSWER:{"type": "answer", "sdp": "v=0..."}'

**VIDEO_CALL_ICE:{json}**
    Sent by: Either peer
    Purpose: Trickled ICE candidate, browser-compatible shape
    Format: 'VIDEO_CALL_ICE:{"candidate": "candidate:...", "sdpMid": "0", "sdpMLineIndex": 0}'

**VIDEO_CALL_ACCEPTED**
    Sent by: Callee
    Purpose: Informational, the callee picked up

**VIDEO_CALL_DECLINED**
    Sent by: Callee
    Purpose: The callee rejected the incoming call

**VIDEO_CALL_END**
    Sent by: Either peer
    Purpose: Hang up

Message Flow
------------

1. Caller → chat: "📹 Started a video call" (visible marker)
2. Caller → Callee: VIDEO_CALL_OFFER:{...}
3. Callee → Caller: VIDEO_CALL_ANSWER:{...}
4. Callee → Caller: VIDEO_CALL_ACCEPTED
5. Both: VIDEO_CALL_ICE:{...} (any number, either direction)
6. Either: VIDEO_CALL_END

The channel delivers at least once and echoes a sender's own messages back to
it, so receivers must ignore their own messages and tolerate duplicates.
"""

import enum
import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional

from aiortc import RTCIceCandidate, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

logger = logging.getLogger(__name__)


MSG_VIDEO_CALL_OFFER = "VIDEO_CALL_OFFER"
MSG_VIDEO_CALL_ANSWER = "VIDEO_CALL_ANSWER"
MSG_VIDEO_CALL_ICE = "VIDEO_CALL_ICE"
MSG_VIDEO_CALL_END = "VIDEO_CALL_END"
MSG_VIDEO_CALL_DECLINED = "VIDEO_CALL_DECLINED"
MSG_VIDEO_CALL_ACCEPTED = "VIDEO_CALL_ACCEPTED"

MSG_SEPARATOR = ":"

CALL_STARTED_MARKER = "📹 Started a video call"


class SignalKind(enum.Enum):
    OFFER = MSG_VIDEO_CALL_OFFER
    ANSWER = MSG_VIDEO_CALL_ANSWER
    ICE = MSG_VIDEO_CALL_ICE
    END = MSG_VIDEO_CALL_END
    DECLINED = MSG_VIDEO_CALL_DECLINED
    ACCEPTED = MSG_VIDEO_CALL_ACCEPTED

    @property
    def tag(self) -> str:
        return self.value

    @property
    def has_payload(self) -> bool:
        return self in _PAYLOAD_KINDS


_PAYLOAD_KINDS = frozenset({SignalKind.OFFER, SignalKind.ANSWER, SignalKind.ICE})


@dataclass(frozen=True)
class SignalMessage:
    """A decoded signaling message.

    Attributes:
        kind: Signal type.
        sender_id: Participant that sent the message.
        payload: Decoded JSON payload for OFFER/ANSWER/ICE, else None.
    """

    kind: SignalKind
    sender_id: str
    payload: Optional[dict] = None


def encode(kind: SignalKind, payload: Any = None) -> str:
    """Encode a signaling intent as tagged text.

    Args:
        kind: The signal type.
        payload: JSON-serializable payload. Ignored for tag-only kinds.

    Returns:
        Wire text for the message channel.

    Examples:
        >>> encode(SignalKind.END)
        'VIDEO_CALL_END'

        >>> encode(SignalKind.OFFER, {"type": "offer", "sdp": "v=0"})
        'VIDEO_CALL_OFFER:{"type": "offer", "sdp": "v=0"}'
    """
    if not kind.has_payload:
        return kind.tag
    if payload is None:
        raise ValueError(f"{kind.tag} requires a payload")
    return f"{kind.tag}{MSG_SEPARATOR}{json.dumps(payload)}"


def decode(raw: str, sender_id: str = "") -> Optional[SignalMessage]:
    """Decode tagged text into a SignalMessage.

    Text that is not signaling (ordinary chat) returns None. A recognized tag
    with a malformed payload is logged and dropped, also returning None.

    Args:
        raw: Text received on the message channel.
        sender_id: Participant id reported by the channel.

    Returns:
        SignalMessage, or None if the text is not a usable signaling message.
    """
    if not isinstance(raw, str):
        return None

    for kind in SignalKind:
        if not kind.has_payload:
            if raw == kind.tag:
                return SignalMessage(kind=kind, sender_id=sender_id)
            continue

        prefix = kind.tag + MSG_SEPARATOR
        if not raw.startswith(prefix):
            continue

        try:
            payload = json.loads(raw[len(prefix) :])
        except json.JSONDecodeError as e:
            logger.warning(f"Dropping {kind.tag} from {sender_id}: invalid JSON ({e})")
            return None

        if not _payload_is_valid(kind, payload):
            logger.warning(f"Dropping {kind.tag} from {sender_id}: unexpected payload")
            return None

        return SignalMessage(kind=kind, sender_id=sender_id, payload=payload)

    return None


def _payload_is_valid(kind: SignalKind, payload: Any) -> bool:
    if not isinstance(payload, dict):
        return False
    if kind is SignalKind.ICE:
        return isinstance(payload.get("candidate"), str)
    return isinstance(payload.get("sdp"), str) and isinstance(payload.get("type"), str)


def is_signaling_message(content: str) -> bool:
    """Check whether chat text is a signaling message (recognized tag).

    Unlike decode(), malformed payloads still count as signaling so they are
    hidden from chat transcripts too.
    """
    for kind in SignalKind:
        if kind.has_payload:
            if content.startswith(kind.tag + MSG_SEPARATOR):
                return True
        elif content == kind.tag:
            return True
    return False


def visible_messages(messages: Iterable[str]) -> List[str]:
    """Filter signaling noise out of a chat transcript."""
    return [m for m in messages if not is_signaling_message(m)]


# =============================================================================
# Payload helpers
# =============================================================================


def description_to_dict(description: RTCSessionDescription) -> dict:
    return {"type": description.type, "sdp": description.sdp}


def description_from_dict(data: dict) -> RTCSessionDescription:
    return RTCSessionDescription(sdp=data["sdp"], type=data["type"])


def candidate_to_dict(candidate: RTCIceCandidate) -> dict:
    """Serialize an aiortc candidate in the browser's RTCIceCandidateInit shape."""
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_dict(data: dict) -> RTCIceCandidate:
    """Parse a browser RTCIceCandidateInit dict into an aiortc candidate.

    Raises:
        ValueError: If the candidate line is missing or unparsable.
    """
    line = data.get("candidate")
    if not isinstance(line, str) or not line:
        raise ValueError("missing candidate")
    if line.startswith("candidate:"):
        line = line[len("candidate:") :]
    try:
        candidate = candidate_from_sdp(line)
    except (AssertionError, IndexError, ValueError) as e:
        raise ValueError(f"unparsable candidate: {line!r}") from e
    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate

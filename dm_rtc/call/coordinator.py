"""Call session coordinator for one paid DM conversation.

The coordinator is the per-user decision layer of a video call. It owns the
call state machine, the current CallSession and the PeerConnectionManager,
and it carries signaling over the conversation's message channel.

States:

    idle -> outgoing-ringing -> connecting -> active -> ended
    idle -> incoming-ringing -> connecting -> active -> ended

``ended`` is reachable from every non-idle state, and a new call may start
from ``ended``.

Every input (user intent, inbound signal, native connection callback,
channel status, timer) is a CallEvent passed to ``dispatch``. Events that
belong to a call attempt carry that attempt's generation number and are
dropped once the attempt is over. Handlers also re-check the generation after
every await, because the user may end the call while an offer, an answer or
a media request is still in flight.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple

from aiortc import MediaStreamTrack, RTCIceCandidate, RTCPeerConnection

from dm_rtc.call.peer_connection import STATE_NEW, MediaState, PeerConnectionManager
from dm_rtc.call.session import (
    ALLOWED_TRANSITIONS,
    CallRole,
    CallSession,
    CallState,
    ConversationInfo,
)
from dm_rtc.channel.base import CHANNEL_SUBSCRIBED, MessageChannel
from dm_rtc.config import Config, get_config
from dm_rtc.exceptions import MediaPermissionError
from dm_rtc.media import FACING_USER, MediaDevices
from dm_rtc.notifier import VARIANT_DESTRUCTIVE, Notifier
from dm_rtc.protocol import (
    CALL_STARTED_MARKER,
    SignalKind,
    SignalMessage,
    candidate_from_dict,
    candidate_to_dict,
    decode,
    description_from_dict,
    description_to_dict,
    encode,
)

logger = logging.getLogger(__name__)


class EventType(enum.Enum):
    START_CALL = "start_call"
    ACCEPT_CALL = "accept_call"
    DECLINE_CALL = "decline_call"
    END_CALL = "end_call"
    SIGNAL = "signal"
    LOCAL_ICE_CANDIDATE = "local_ice_candidate"
    CONNECTION_STATE = "connection_state"
    MANAGER_FAILED = "manager_failed"
    CHANNEL_STATUS = "channel_status"
    CONNECT_TIMEOUT = "connect_timeout"
    TOGGLE_MUTE = "toggle_mute"
    TOGGLE_VIDEO = "toggle_video"
    SWITCH_CAMERA = "switch_camera"


@dataclass(frozen=True)
class CallEvent:
    """An input to the coordinator.

    Attributes:
        type: What happened.
        signal: Decoded inbound message for SIGNAL events.
        value: Event data (connection state, channel status, error, candidate).
        generation: Call attempt the event belongs to, if any.
    """

    type: EventType
    signal: Optional[SignalMessage] = None
    value: Any = None
    generation: Optional[int] = None


class CallCoordinator:
    """Video call state machine for one participant of one conversation.

    Args:
        local_id: This participant's id.
        conversation: The conversation hosting the call.
        channel: Message channel used for chat and signaling.
        media_devices: Camera/microphone acquisition primitive.
        config: Configuration (defaults to the global config).
        notifier: Toast surface.
        pc_factory: Factory for the native peer connection.
        on_state_change: Called with (old_state, new_state) on each transition.
        on_remote_track: Called with each remote media track.

    Attributes:
        state: Current CallState.
        session: Current CallSession.
        manager: PeerConnectionManager of the current attempt, if any.
        last_session: The session of the most recently ended attempt.
        history: (old_state, new_state, reason) for every transition.
        channel_ready: The signaling channel is subscribed.
    """

    def __init__(
        self,
        local_id: str,
        conversation: ConversationInfo,
        channel: MessageChannel,
        media_devices: MediaDevices,
        config: Optional[Config] = None,
        notifier: Optional[Notifier] = None,
        pc_factory: Callable[..., RTCPeerConnection] = RTCPeerConnection,
        on_state_change: Optional[Callable[[CallState, CallState], None]] = None,
        on_remote_track: Optional[Callable[[MediaStreamTrack], None]] = None,
    ):
        self.local_id = local_id
        self.conversation = conversation
        self.channel = channel
        self.media_devices = media_devices
        self.config = config or get_config()
        self.notifier = notifier or Notifier()
        self.pc_factory = pc_factory
        self.on_state_change = on_state_change
        self.on_remote_track = on_remote_track

        self.state = CallState.IDLE
        self.session = CallSession(session_id=conversation.conversation_id)
        self.manager: Optional[PeerConnectionManager] = None
        self.last_session: Optional[CallSession] = None
        self.history: List[Tuple[CallState, CallState, str]] = []
        self.channel_ready = channel.status == CHANNEL_SUBSCRIBED

        self._generation = 0
        self._connect_timer: Optional[asyncio.Task] = None
        self._last_ringing_sdp: Optional[str] = None

        self._handlers = {
            EventType.START_CALL: self._on_start_call,
            EventType.ACCEPT_CALL: self._on_accept_call,
            EventType.DECLINE_CALL: self._on_decline_call,
            EventType.END_CALL: self._on_end_call,
            EventType.SIGNAL: self._on_signal,
            EventType.LOCAL_ICE_CANDIDATE: self._on_local_ice_candidate,
            EventType.CONNECTION_STATE: self._on_connection_state,
            EventType.MANAGER_FAILED: self._on_manager_failed,
            EventType.CHANNEL_STATUS: self._on_channel_status,
            EventType.CONNECT_TIMEOUT: self._on_connect_timeout,
            EventType.TOGGLE_MUTE: self._on_toggle_mute,
            EventType.TOGGLE_VIDEO: self._on_toggle_video,
            EventType.SWITCH_CAMERA: self._on_switch_camera,
        }

        channel.on_message(conversation.conversation_id, self.handle_message)
        channel.on_status(self.handle_channel_status)

    @property
    def conversation_id(self) -> str:
        return self.conversation.conversation_id

    # =========================================================================
    # Public API
    # =========================================================================

    async def start_call(self):
        await self.dispatch(CallEvent(EventType.START_CALL))

    async def accept_call(self):
        await self.dispatch(CallEvent(EventType.ACCEPT_CALL))

    async def decline_call(self):
        await self.dispatch(CallEvent(EventType.DECLINE_CALL))

    async def end_call(self):
        await self.dispatch(CallEvent(EventType.END_CALL))

    async def toggle_mute(self):
        await self.dispatch(CallEvent(EventType.TOGGLE_MUTE))

    async def toggle_video(self):
        await self.dispatch(CallEvent(EventType.TOGGLE_VIDEO))

    async def switch_camera(self):
        await self.dispatch(CallEvent(EventType.SWITCH_CAMERA))

    async def handle_message(self, content: str, sender_id: str):
        """Message channel callback. Ordinary chat text is ignored."""
        message = decode(content, sender_id)
        if message is None:
            return
        await self.dispatch(CallEvent(EventType.SIGNAL, signal=message))

    async def handle_channel_status(self, status: str):
        await self.dispatch(CallEvent(EventType.CHANNEL_STATUS, value=status))

    async def dispatch(self, event: CallEvent):
        """Run one event through the state machine.

        Errors never escape: anything unexpected ends the current call with a
        generic connection error.
        """
        if event.generation is not None and event.generation != self._generation:
            logger.debug(f"Dropping stale {event.type.value} event")
            return

        handler = self._handlers[event.type]
        try:
            await handler(event)
        except Exception as e:
            logger.exception(
                f"Error handling {event.type.value} in state {self.state.value}: {e}"
            )
            if self.state not in (CallState.IDLE, CallState.ENDED):
                self.notifier.notify(
                    "Connection Error",
                    "Something went wrong with the video call.",
                    VARIANT_DESTRUCTIVE,
                )
                await self._end("error", SignalKind.END)

    # =========================================================================
    # State plumbing
    # =========================================================================

    def _transition(self, new_state: CallState, reason: str) -> bool:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            logger.warning(
                f"Rejected transition {self.state.value} -> {new_state.value} ({reason})"
            )
            return False

        old_state = self.state
        self.state = new_state
        self.history.append((old_state, new_state, reason))
        logger.info(f"Call state: {old_state.value} -> {new_state.value} ({reason})")

        if new_state is CallState.CONNECTING:
            self._arm_connect_timer()
        elif old_state is CallState.CONNECTING:
            self._cancel_connect_timer()

        if self.on_state_change:
            self.on_state_change(old_state, new_state)
        return True

    def _new_session(self, role: CallRole) -> int:
        self._generation += 1
        self.session = CallSession(session_id=self.conversation_id, local_role=role)
        return self._generation

    def _is_stale(self, generation: int) -> bool:
        return generation != self._generation

    def _create_manager(self, role: CallRole) -> PeerConnectionManager:
        generation = self._generation

        async def on_ice_candidate(candidate: RTCIceCandidate):
            await self.dispatch(
                CallEvent(
                    EventType.LOCAL_ICE_CANDIDATE, value=candidate, generation=generation
                )
            )

        async def on_connection_state(state: str):
            await self.dispatch(
                CallEvent(EventType.CONNECTION_STATE, value=state, generation=generation)
            )

        async def on_failure(error: Exception):
            await self.dispatch(
                CallEvent(EventType.MANAGER_FAILED, value=error, generation=generation)
            )

        def on_remote_track(track: MediaStreamTrack):
            if self.on_remote_track and not self._is_stale(generation):
                self.on_remote_track(track)

        self.manager = PeerConnectionManager(
            role=role,
            media_devices=self.media_devices,
            rtc_configuration=self.config.get_rtc_configuration(),
            notifier=self.notifier,
            on_ice_candidate=on_ice_candidate,
            on_connection_state=on_connection_state,
            on_remote_track=on_remote_track,
            on_failure=on_failure,
            camera_switch_attempts=self.config.call.camera_switch_attempts,
            pc_factory=self.pc_factory,
        )
        return self.manager

    def _sync_media_flags(self):
        manager = self.manager
        if manager is None:
            return
        self.session.peer_state = manager.signaling_state
        self.session.is_video_enabled = manager.media_state is MediaState.AUDIO_VIDEO
        self.session.is_front_camera = manager.facing_mode == FACING_USER

    async def _send(self, text: str, quiet: bool = False) -> bool:
        try:
            await self.channel.send(self.conversation_id, text)
        except Exception as e:
            logger.error(f"Failed to send signaling message: {e}")
            if not quiet:
                self.notifier.notify(
                    "Connection Error",
                    "Could not reach the other participant.",
                    VARIANT_DESTRUCTIVE,
                )
            return False
        return True

    async def _end(self, reason: str, signal: Optional[SignalKind] = None):
        """Tear down the current attempt.

        All state changes happen before the first await, so a second end
        request arriving meanwhile finds the call already ended.
        """
        if self.state in (CallState.IDLE, CallState.ENDED):
            return

        session = self.session
        manager = self.manager
        self.manager = None
        self._transition(CallState.ENDED, reason)
        self._cancel_connect_timer()
        self._generation += 1
        session.ended_reason = reason
        self.last_session = session
        self.session = CallSession(session_id=self.conversation_id)

        if manager is not None:
            await manager.close()

        if signal is not None and not session.end_sent:
            session.end_sent = True
            await self._send(encode(signal), quiet=True)

    def _arm_connect_timer(self):
        timeout = self.config.call.connect_timeout
        if not timeout:
            return
        self._cancel_connect_timer()
        self._connect_timer = asyncio.create_task(
            self._connect_timeout(timeout, self._generation)
        )

    def _cancel_connect_timer(self):
        timer = self._connect_timer
        self._connect_timer = None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    async def _connect_timeout(self, timeout: float, generation: int):
        await asyncio.sleep(timeout)
        await self.dispatch(CallEvent(EventType.CONNECT_TIMEOUT, generation=generation))

    # =========================================================================
    # User intents
    # =========================================================================

    async def _on_start_call(self, event: CallEvent):
        if self.state not in (CallState.IDLE, CallState.ENDED):
            logger.warning(f"Cannot start a call in state {self.state.value}")
            return
        if not self.channel_ready:
            self.notifier.notify(
                "Call Unavailable",
                "Chat connection lost. Try again once it reconnects.",
                VARIANT_DESTRUCTIVE,
            )
            return

        generation = self._new_session(CallRole.INITIATOR)
        self._transition(CallState.OUTGOING_RINGING, "start_call")
        manager = self._create_manager(CallRole.INITIATOR)

        await self._send(CALL_STARTED_MARKER, quiet=True)
        if self._is_stale(generation):
            return

        stream = await manager.acquire_media(FACING_USER)
        if self._is_stale(generation) or stream is None:
            return
        self._sync_media_flags()

        offer = await manager.create_offer()
        if self._is_stale(generation) or offer is None:
            return
        self.session.peer_state = manager.signaling_state

        if not await self._send(encode(SignalKind.OFFER, description_to_dict(offer))):
            if not self._is_stale(generation):
                await self._end("channel_error")
            return
        logger.info("Sent video call offer")

    async def _on_accept_call(self, event: CallEvent):
        if self.state is not CallState.INCOMING_RINGING or self.session.remote_offer is None:
            logger.warning(f"No incoming call to accept (state {self.state.value})")
            return

        generation = self._generation
        self._transition(CallState.CONNECTING, "accept_call")
        manager = self._create_manager(CallRole.RECEIVER)

        for candidate in self.session.pending_ice_candidates:
            await manager.add_remote_ice_candidate(candidate)
        self.session.pending_ice_candidates.clear()

        stream = await manager.acquire_media(FACING_USER)
        if self._is_stale(generation) or stream is None:
            return
        self._sync_media_flags()

        answer = await manager.consume_remote_offer(self.session.remote_offer)
        if self._is_stale(generation) or answer is None:
            return
        self.session.peer_state = manager.signaling_state

        if not await self._send(encode(SignalKind.ANSWER, description_to_dict(answer))):
            if not self._is_stale(generation):
                await self._end("channel_error")
            return
        await self._send(encode(SignalKind.ACCEPTED), quiet=True)
        logger.info("Sent video call answer")

    async def _on_decline_call(self, event: CallEvent):
        if self.state is not CallState.INCOMING_RINGING:
            logger.warning(f"No incoming call to decline (state {self.state.value})")
            return
        await self._end("declined", SignalKind.DECLINED)

    async def _on_end_call(self, event: CallEvent):
        if self.state in (CallState.IDLE, CallState.ENDED):
            logger.debug("No call to end")
            return
        await self._end("local_end", SignalKind.END)

    async def _on_toggle_mute(self, event: CallEvent):
        if self.manager is None:
            return
        muted = not self.session.is_muted
        if self.manager.set_audio_enabled(not muted):
            self.session.is_muted = muted

    async def _on_toggle_video(self, event: CallEvent):
        if self.manager is None:
            return
        enabled = not self.session.is_video_enabled
        if self.manager.set_video_enabled(enabled):
            self.session.is_video_enabled = enabled

    async def _on_switch_camera(self, event: CallEvent):
        manager = self.manager
        if manager is None or self.state not in (CallState.CONNECTING, CallState.ACTIVE):
            logger.warning(f"Cannot switch camera in state {self.state.value}")
            return

        generation = self._generation
        await manager.switch_camera()
        if self._is_stale(generation):
            return
        self._sync_media_flags()

        if manager.needs_renegotiation:
            offer = await manager.create_offer(renegotiation=True)
            if self._is_stale(generation) or offer is None:
                return
            await self._send(encode(SignalKind.OFFER, description_to_dict(offer)))

    # =========================================================================
    # Inbound signaling
    # =========================================================================

    async def _on_signal(self, event: CallEvent):
        message = event.signal
        if message.sender_id == self.local_id:
            logger.debug(f"Ignoring own {message.kind.tag} echo")
            return

        logger.info(f"Received {message.kind.tag} from {message.sender_id}")

        if message.kind is SignalKind.OFFER:
            await self._on_remote_offer(message)
        elif message.kind is SignalKind.ANSWER:
            await self._on_remote_answer(message)
        elif message.kind is SignalKind.ICE:
            await self._on_remote_ice(message)
        elif message.kind is SignalKind.END:
            if self.state not in (CallState.IDLE, CallState.ENDED):
                self.notifier.notify(
                    "Call Ended", "The other participant ended the video call"
                )
                await self._end("remote_end")
        elif message.kind is SignalKind.DECLINED:
            if self.state not in (CallState.IDLE, CallState.ENDED):
                self.notifier.notify(
                    "Call Declined",
                    "The other participant declined the video call",
                    VARIANT_DESTRUCTIVE,
                )
                await self._end("remote_declined")
        elif message.kind is SignalKind.ACCEPTED:
            if self.state in (CallState.OUTGOING_RINGING, CallState.CONNECTING):
                self.notifier.notify(
                    "Call Accepted", "The other participant accepted your call"
                )

    async def _on_remote_offer(self, message: SignalMessage):
        try:
            offer = description_from_dict(message.payload)
        except (KeyError, ValueError) as e:
            logger.warning(f"Dropping malformed offer: {e}")
            return

        if self.state in (CallState.IDLE, CallState.ENDED):
            if offer.sdp == self._last_ringing_sdp:
                # Redelivery of the offer of a call that already ended
                logger.info("Ignoring duplicate offer of a finished call")
                return
            self._last_ringing_sdp = offer.sdp
            self._new_session(CallRole.RECEIVER)
            self.session.remote_offer = offer
            self.session.remote_peer_id = message.sender_id
            self.session.caller_name = self.conversation.display_name(message.sender_id)
            self._transition(CallState.INCOMING_RINGING, "remote_offer")
            self.notifier.notify(
                "Incoming Video Call", f"{self.session.caller_name} is calling you"
            )
            return

        if self.state is CallState.INCOMING_RINGING:
            if message.sender_id != self.session.remote_peer_id:
                logger.info(f"Ignoring offer from {message.sender_id}: already ringing")
            elif offer.sdp != self.session.remote_offer.sdp:
                logger.info("Caller re-sent a new offer while ringing")
                self.session.remote_offer = offer
                self._last_ringing_sdp = offer.sdp
            return

        # Renegotiation, glare or duplicate delivery while a connection exists
        manager = self.manager
        if manager is None:
            return
        if self.session.remote_offer is not None and offer.sdp == self.session.remote_offer.sdp:
            # The accepted offer is applied by accept_call, never here
            logger.info("Ignoring duplicate of the accepted offer")
            return
        if manager.signaling_state == STATE_NEW:
            logger.info("Ignoring remote offer: local media not attached yet")
            return
        generation = self._generation
        answer = await manager.consume_remote_offer(offer)
        if self._is_stale(generation) or answer is None:
            return
        await self._send(encode(SignalKind.ANSWER, description_to_dict(answer)))

    async def _on_remote_answer(self, message: SignalMessage):
        if self.manager is None or self.state not in (
            CallState.OUTGOING_RINGING,
            CallState.CONNECTING,
            CallState.ACTIVE,
        ):
            logger.info(f"Ignoring answer in state {self.state.value}")
            return

        try:
            answer = description_from_dict(message.payload)
        except (KeyError, ValueError) as e:
            logger.warning(f"Dropping malformed answer: {e}")
            return

        if self.state is CallState.OUTGOING_RINGING:
            self.session.remote_answer = answer
            self.session.remote_peer_id = message.sender_id
            self._transition(CallState.CONNECTING, "remote_answer")

        manager = self.manager
        await manager.consume_remote_answer(answer)
        if manager is self.manager:
            self.session.peer_state = manager.signaling_state

    async def _on_remote_ice(self, message: SignalMessage):
        if self.state in (CallState.IDLE, CallState.ENDED):
            logger.debug("Ignoring ICE candidate outside a call")
            return

        try:
            candidate = candidate_from_dict(message.payload)
        except ValueError as e:
            logger.warning(f"Dropping malformed ICE candidate: {e}")
            return

        if self.manager is None:
            self.session.pending_ice_candidates.append(candidate)
            logger.debug("No peer connection yet, queued ICE candidate")
            return
        await self.manager.add_remote_ice_candidate(candidate)

    # =========================================================================
    # Native and transport callbacks
    # =========================================================================

    async def _on_local_ice_candidate(self, event: CallEvent):
        await self._send(
            encode(SignalKind.ICE, candidate_to_dict(event.value)), quiet=True
        )

    async def _on_connection_state(self, event: CallEvent):
        state = event.value
        if self.manager is not None:
            self.session.peer_state = self.manager.signaling_state

        if state == "connected":
            if self.state is CallState.CONNECTING:
                self._transition(CallState.ACTIVE, "connected")
                self.notifier.notify("Connected", "Video call is now active.")
        elif state == "failed":
            self.notifier.notify(
                "Connection Failed",
                "Video call connection failed. Please try again.",
                VARIANT_DESTRUCTIVE,
            )
            await self._end("connection_failed", SignalKind.END)
        elif state == "closed":
            await self._end("connection_closed", SignalKind.END)

    async def _on_manager_failed(self, event: CallEvent):
        error = event.value
        if isinstance(error, MediaPermissionError):
            self.notifier.notify(
                "Media Access Denied",
                "Please allow camera and microphone access to join the video call.",
                VARIANT_DESTRUCTIVE,
            )
        else:
            self.notifier.notify(
                "Connection Error",
                "Failed to set up the video call. Please try again.",
                VARIANT_DESTRUCTIVE,
            )
        await self._end("setup_failed", SignalKind.END)

    async def _on_channel_status(self, event: CallEvent):
        status = event.value
        if status == CHANNEL_SUBSCRIBED:
            if not self.channel_ready:
                logger.info("Signaling channel subscribed")
            self.channel_ready = True
            return

        was_ready = self.channel_ready
        self.channel_ready = False
        logger.warning(f"Signaling channel status: {status}")
        if was_ready:
            # Media is peer-to-peer, an active call keeps running
            self.notifier.notify(
                "Connection Lost",
                "Chat connection lost. New calls are unavailable until it reconnects.",
                VARIANT_DESTRUCTIVE,
            )

    async def _on_connect_timeout(self, event: CallEvent):
        if self.state is not CallState.CONNECTING:
            return
        self.notifier.notify(
            "Connection Failed",
            "Failed to connect the video call.",
            VARIANT_DESTRUCTIVE,
        )
        await self._end("connect_timeout", SignalKind.END)

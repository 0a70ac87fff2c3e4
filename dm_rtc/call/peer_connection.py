"""Peer connection manager for one video call attempt.

Wraps a single aiortc RTCPeerConnection plus the local media acquired for it.
The manager mirrors the native signaling states, with an extra "new" state
until local media has been acquired and attached:

    new --(media attached)--> stable
    stable --(create_offer)--> have-local-offer
    stable | have-local-offer --(remote offer)--> have-remote-offer
    have-remote-offer --(local answer)--> stable
    have-local-offer --(remote answer)--> stable
    any --(close)--> closed

Every public coroutine is guarded: errors are logged with the signaling state
and reported once through ``on_failure``; nothing is raised to the caller and
nothing is retried automatically. Every continuation re-checks ``closed``
after each await because the call may be torn down while an operation is in
flight.
"""

import enum
import logging
from typing import Awaitable, Callable, List, Optional

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceCandidate,
    RTCPeerConnection,
    RTCSessionDescription,
)

from dm_rtc.call.session import CallRole
from dm_rtc.config import DEFAULT_CAMERA_SWITCH_ATTEMPTS
from dm_rtc.exceptions import (
    CallSetupError,
    MediaPermissionError,
    SignalingStateError,
)
from dm_rtc.media import (
    FACING_USER,
    LocalMediaStream,
    MediaConstraints,
    MediaDevices,
    flip_facing_mode,
)
from dm_rtc.notifier import VARIANT_DESTRUCTIVE, Notifier

logger = logging.getLogger(__name__)

STATE_NEW = "new"
STATE_STABLE = "stable"
STATE_HAVE_LOCAL_OFFER = "have-local-offer"
STATE_HAVE_REMOTE_OFFER = "have-remote-offer"
STATE_CLOSED = "closed"


class MediaState(enum.Enum):
    NONE = "none"
    AUDIO_VIDEO = "audio-video"
    AUDIO_ONLY = "audio-only"
    # Camera switch exhausted its retries: audio continues, no outbound video.
    DEGRADED = "degraded"


class PeerConnectionManager:
    """Owns one RTCPeerConnection and its local media.

    Attributes:
        role: Initiator (creates the offer) or receiver (answers).
        pc: The native peer connection.
        local_stream: Local media attached to ``pc``.
        media_state: What the local stream is currently sending.
        facing_mode: Camera facing mode of the local video track.
        pending_ice_candidates: Remote candidates waiting for a remote
            description, in arrival order.
        failed: The attempt hit an unrecoverable error.
        error: The error that failed the attempt.
        needs_renegotiation: A track was added without an existing sender.
    """

    def __init__(
        self,
        role: CallRole,
        media_devices: MediaDevices,
        rtc_configuration: Optional[RTCConfiguration] = None,
        notifier: Optional[Notifier] = None,
        on_ice_candidate: Optional[Callable[[RTCIceCandidate], Awaitable[None]]] = None,
        on_connection_state: Optional[Callable[[str], Awaitable[None]]] = None,
        on_remote_track: Optional[Callable[[MediaStreamTrack], None]] = None,
        on_failure: Optional[Callable[[Exception], Awaitable[None]]] = None,
        camera_switch_attempts: int = DEFAULT_CAMERA_SWITCH_ATTEMPTS,
        pc_factory: Callable[..., RTCPeerConnection] = RTCPeerConnection,
    ):
        self.role = role
        self.media_devices = media_devices
        self.notifier = notifier or Notifier()
        self.on_ice_candidate = on_ice_candidate
        self.on_connection_state = on_connection_state
        self.on_remote_track = on_remote_track
        self.on_failure = on_failure
        self.camera_switch_attempts = max(1, camera_switch_attempts)

        self.pc = pc_factory(configuration=rtc_configuration)

        self.local_stream: Optional[LocalMediaStream] = None
        self.media_state = MediaState.NONE
        self.facing_mode = FACING_USER
        self.pending_ice_candidates: List[RTCIceCandidate] = []
        self.failed = False
        self.error: Optional[Exception] = None
        self.needs_renegotiation = False

        self._closed = False
        self._media_attached = False
        self._offer_created = False
        self._last_offer_sdp: Optional[str] = None
        self._remote_ready = False

        self._register_handlers()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def signaling_state(self) -> str:
        if self._closed:
            return STATE_CLOSED
        if not self._media_attached:
            return STATE_NEW
        return self.pc.signalingState

    def _register_handlers(self):
        pc = self.pc

        @pc.on("connectionstatechange")
        async def on_connectionstatechange():
            if self._closed:
                return
            state = pc.connectionState
            logger.info(f"Connection state changed to: {state}")
            if self.on_connection_state:
                await self.on_connection_state(state)

        @pc.on("icecandidate")
        async def on_icecandidate(event):
            if self._closed or event is None or event.candidate is None:
                return
            if self.on_ice_candidate:
                await self.on_ice_candidate(event.candidate)

        @pc.on("track")
        def on_track(track):
            logger.info(f"Received remote {track.kind} track")
            if not self._closed and self.on_remote_track:
                self.on_remote_track(track)

        @pc.on("signalingstatechange")
        def on_signalingstatechange():
            logger.debug(f"Signaling state changed to: {pc.signalingState}")

    async def _fail(self, error: Exception, operation: str):
        if self.failed:
            return
        self.failed = True
        self.error = error
        logger.error(
            f"Call attempt failed during {operation} "
            f"(role: {self.role.value}, signaling state: {self.signaling_state}): {error}"
        )
        if self.on_failure:
            await self.on_failure(error)

    # =========================================================================
    # Media
    # =========================================================================

    async def acquire_media(
        self, facing_mode: str = FACING_USER
    ) -> Optional[LocalMediaStream]:
        """Acquire camera and microphone and attach them to the connection.

        Falls back to audio-only when the camera cannot be opened. When the
        manager is closed while acquisition is in flight, the late stream is
        stopped immediately.

        Args:
            facing_mode: "user" or "environment".

        Returns:
            The attached stream, or None if no media could be acquired.
        """
        if self._closed:
            logger.warning("Cannot acquire media: peer connection is closed")
            return None

        if self.local_stream is not None:
            logger.info("Stopping existing local stream")
            self.local_stream.stop()
            self.local_stream = None

        self.facing_mode = facing_mode
        media_state = MediaState.AUDIO_VIDEO
        try:
            stream = await self.media_devices.get_user_media(
                MediaConstraints(audio=True, video=True, facing_mode=facing_mode)
            )
        except Exception as e:
            logger.warning(f"Failed to get media with video+audio: {e}")
            if self._closed:
                return None
            try:
                stream = await self.media_devices.get_user_media(
                    MediaConstraints(audio=True, video=False)
                )
                media_state = MediaState.AUDIO_ONLY
            except Exception as audio_error:
                logger.error(f"Failed to get audio-only stream: {audio_error}")
                if self._closed:
                    return None
                await self._fail(MediaPermissionError(str(audio_error)), "acquire_media")
                return None

        if self._closed:
            logger.info("Peer connection closed during media acquisition, releasing stream")
            stream.stop()
            return None

        if media_state is MediaState.AUDIO_ONLY:
            self.notifier.notify(
                "Audio Only Mode",
                "Camera unavailable, proceeding with audio only.",
                VARIANT_DESTRUCTIVE,
            )

        self.local_stream = stream
        self.media_state = media_state
        try:
            for track in stream.get_tracks():
                logger.debug(f"Adding local {track.kind} track")
                self.pc.addTrack(track)
        except Exception as e:
            await self._fail(CallSetupError(f"Failed to attach tracks: {e}"), "acquire_media")
            return None

        self._media_attached = True
        return stream

    def set_audio_enabled(self, enabled: bool) -> bool:
        """Mute or unmute the microphone. Returns False without an audio track."""
        tracks = self.local_stream.get_audio_tracks() if self.local_stream else []
        if not tracks:
            logger.info("No audio track available to toggle")
            return False
        for track in tracks:
            track.enabled = enabled
        return True

    def set_video_enabled(self, enabled: bool) -> bool:
        """Turn the camera on or off. Returns False without a video track."""
        tracks = self.local_stream.get_video_tracks() if self.local_stream else []
        if not tracks:
            logger.info("No video track available to toggle")
            return False
        for track in tracks:
            track.enabled = enabled
        return True

    async def replace_video_track(self, new_track: Optional[MediaStreamTrack]) -> bool:
        """Swap the outbound video track without renegotiating.

        Args:
            new_track: Replacement track, or None to send nothing.

        Returns:
            True if no video sender existed and the track had to be added,
            which requires a new offer/answer round.
        """
        if self._closed:
            return False

        for sender in self.pc.getSenders():
            if sender.kind == "video":
                sender.replaceTrack(new_track)
                logger.info("Replaced outbound video track")
                return False

        if new_track is None:
            return False

        self.pc.addTrack(new_track)
        self.needs_renegotiation = True
        logger.info("No video sender, added track (renegotiation required)")
        return True

    async def switch_camera(self) -> bool:
        """Switch between front and back cameras.

        The current video track is stopped before the other camera is
        requested. Up to ``camera_switch_attempts`` requests are made; if all
        fail, outbound video is cleared and the media state becomes DEGRADED.

        Returns:
            True if the camera was switched.
        """
        if self._closed or self.local_stream is None:
            self.notifier.notify(
                "Camera Switch Unavailable",
                "Cannot switch camera without an active stream.",
                VARIANT_DESTRUCTIVE,
            )
            return False

        new_facing_mode = flip_facing_mode(self.facing_mode)
        logger.info(f"Switching camera from {self.facing_mode} to {new_facing_mode}")

        for old_track in self.local_stream.get_video_tracks():
            old_track.stop()
            self.local_stream.remove_track(old_track)

        for attempt in range(1, self.camera_switch_attempts + 1):
            try:
                stream = await self.media_devices.get_user_media(
                    MediaConstraints(audio=False, video=True, facing_mode=new_facing_mode)
                )
            except Exception as e:
                logger.warning(
                    f"Camera switch attempt {attempt}/{self.camera_switch_attempts} failed: {e}"
                )
                if self._closed:
                    return False
                continue

            if self._closed:
                stream.stop()
                return False

            video_tracks = stream.get_video_tracks()
            if not video_tracks:
                stream.stop()
                continue

            new_track = video_tracks[0]
            self.local_stream.add_track(new_track)
            await self.replace_video_track(new_track)
            self.facing_mode = new_facing_mode
            self.media_state = MediaState.AUDIO_VIDEO
            logger.info("Camera switched successfully")
            return True

        await self.replace_video_track(None)
        self.media_state = MediaState.DEGRADED
        self.notifier.notify(
            "Camera Switch Failed",
            "Unable to switch camera. Continuing with audio only.",
            VARIANT_DESTRUCTIVE,
        )
        return False

    # =========================================================================
    # Negotiation
    # =========================================================================

    async def create_offer(
        self, renegotiation: bool = False
    ) -> Optional[RTCSessionDescription]:
        """Create and apply the local offer.

        Only valid from "stable" with media attached, and only once per
        manager unless ``renegotiation`` is set.

        Returns:
            The applied local description, or None if skipped or failed.
        """
        state = self.signaling_state
        if self.failed or state != STATE_STABLE:
            logger.warning(f"Cannot create offer, signaling state is: {state}")
            return None
        if self._offer_created and not renegotiation:
            logger.warning("Skipping offer creation: offer already created")
            return None

        try:
            offer = await self.pc.createOffer()
            if self._closed:
                return None
            await self.pc.setLocalDescription(offer)
        except Exception as e:
            if self._closed:
                return None
            await self._fail(CallSetupError(f"Failed to create offer: {e}"), "create_offer")
            return None

        if self._closed:
            return None
        self._offer_created = True
        self.needs_renegotiation = False
        logger.info("Offer created and set as local description")
        return self.pc.localDescription

    async def consume_remote_offer(
        self, offer: RTCSessionDescription
    ) -> Optional[RTCSessionDescription]:
        """Apply a remote offer and answer it.

        A repeated delivery of the last processed offer is ignored.

        Returns:
            The applied local answer, or None if skipped or failed.
        """
        if self._closed or self.failed:
            logger.warning("Ignoring remote offer: call attempt is over")
            return None
        if offer.sdp == self._last_offer_sdp:
            logger.info("Ignoring duplicate remote offer")
            return None

        # aiortc has no implicit rollback: an offer in have-local-offer (glare)
        # is rejected by setRemoteDescription below and fails the attempt.
        state = self.signaling_state
        if state not in (STATE_STABLE, STATE_HAVE_LOCAL_OFFER):
            await self._fail(SignalingStateError("apply remote offer", state), "consume_remote_offer")
            return None

        self._last_offer_sdp = offer.sdp
        try:
            await self.pc.setRemoteDescription(offer)
            if self._closed:
                return None
            await self._flush_pending_candidates()
            if self._closed:
                return None
            answer = await self.pc.createAnswer()
            if self._closed:
                return None
            await self.pc.setLocalDescription(answer)
        except Exception as e:
            if self._closed:
                return None
            await self._fail(
                CallSetupError(f"Failed to answer remote offer: {e}"), "consume_remote_offer"
            )
            return None

        if self._closed:
            return None
        logger.info("Answer created and set as local description")
        return self.pc.localDescription

    async def consume_remote_answer(self, answer: RTCSessionDescription) -> bool:
        """Apply the remote answer to our offer.

        Returns:
            True if the answer was applied.
        """
        if self._closed or self.failed:
            logger.warning("Ignoring remote answer: call attempt is over")
            return False

        state = self.signaling_state
        if state == STATE_STABLE:
            logger.info("Ignoring remote answer in stable state (late or duplicate)")
            return False
        if state != STATE_HAVE_LOCAL_OFFER:
            await self._fail(SignalingStateError("apply remote answer", state), "consume_remote_answer")
            return False

        try:
            await self.pc.setRemoteDescription(answer)
        except Exception as e:
            if self._closed:
                return False
            await self._fail(
                CallSetupError(f"Failed to apply remote answer: {e}"), "consume_remote_answer"
            )
            return False

        if self._closed:
            return False
        await self._flush_pending_candidates()
        logger.info("Remote answer applied")
        return True

    async def add_remote_ice_candidate(self, candidate: RTCIceCandidate):
        """Add a remote candidate, buffering it until a remote description exists."""
        if self._closed:
            return
        if not self._remote_ready:
            self.pending_ice_candidates.append(candidate)
            logger.debug(
                f"No remote description yet, queued ICE candidate "
                f"({len(self.pending_ice_candidates)} pending)"
            )
            return
        await self._add_candidate(candidate)

    async def _add_candidate(self, candidate: RTCIceCandidate):
        try:
            await self.pc.addIceCandidate(candidate)
        except Exception as e:
            # A single bad candidate is not fatal, other paths may still work
            logger.warning(f"Failed to add ICE candidate: {e}")

    async def _flush_pending_candidates(self):
        # Candidates that arrive mid-flush are appended and drained in order.
        if self.pending_ice_candidates:
            logger.info(f"Processing {len(self.pending_ice_candidates)} pending ICE candidates")
        while self.pending_ice_candidates and not self._closed:
            candidate = self.pending_ice_candidates.pop(0)
            await self._add_candidate(candidate)
        self._remote_ready = True

    # =========================================================================
    # Teardown
    # =========================================================================

    async def close(self):
        """Release everything. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        logger.info("Cleaning up peer connection")

        self.pc.remove_all_listeners()

        if self.local_stream is not None:
            self.local_stream.stop()

        self.pending_ice_candidates.clear()

        if self.pc.signalingState != STATE_CLOSED:
            try:
                await self.pc.close()
            except Exception as e:
                logger.warning(f"Error closing peer connection: {e}")

        logger.info("Peer connection cleanup complete")

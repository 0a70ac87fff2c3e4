"""Local media acquisition for video calls.

MediaDevices is the seam the peer connection manager acquires camera and
microphone through. PlayerMediaDevices opens real capture devices with
aiortc's MediaPlayer; tests substitute a fake with the same interface.

Every acquired track is wrapped in a ToggleableTrack so mute and camera-off
can be applied without renegotiation: a disabled track keeps producing
frames, but they are silent (audio) or black (video).
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import partial
from typing import List, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer
from av import AudioFrame, VideoFrame

from dm_rtc.config import MediaConfig
from dm_rtc.exceptions import MediaPermissionError

logger = logging.getLogger(__name__)

FACING_USER = "user"
FACING_ENVIRONMENT = "environment"


@dataclass(frozen=True)
class MediaConstraints:
    """What to request from the capture devices.

    Attributes:
        audio: Request a microphone track.
        video: Request a camera track.
        facing_mode: "user" (front camera) or "environment" (back camera).
    """

    audio: bool = True
    video: bool = True
    facing_mode: str = FACING_USER


def flip_facing_mode(facing_mode: str) -> str:
    return FACING_ENVIRONMENT if facing_mode == FACING_USER else FACING_USER


def _blank_frame_like(frame):
    """Build a silent/black frame with the same timing as ``frame``."""
    if isinstance(frame, VideoFrame):
        blank = VideoFrame(width=frame.width, height=frame.height, format="yuv420p")
        luma, *chroma = blank.planes
        luma.update(bytes(luma.buffer_size))
        for plane in chroma:
            plane.update(b"\x80" * plane.buffer_size)
    else:
        blank = AudioFrame(
            format=frame.format.name, layout=frame.layout.name, samples=frame.samples
        )
        blank.sample_rate = frame.sample_rate
        for plane in blank.planes:
            plane.update(bytes(plane.buffer_size))
    blank.pts = frame.pts
    blank.time_base = frame.time_base
    return blank


class ToggleableTrack(MediaStreamTrack):
    """Wraps a source track and blanks its frames while disabled."""

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = True

    async def recv(self):
        frame = await self.source.recv()
        if self.enabled:
            return frame
        return _blank_frame_like(frame)

    def stop(self):
        super().stop()
        self.source.stop()


class LocalMediaStream:
    """The set of local tracks acquired for one call attempt."""

    def __init__(self, tracks: Optional[List[MediaStreamTrack]] = None):
        self._tracks: List[MediaStreamTrack] = list(tracks or [])

    def get_tracks(self) -> List[MediaStreamTrack]:
        return list(self._tracks)

    def get_audio_tracks(self) -> List[MediaStreamTrack]:
        return [t for t in self._tracks if t.kind == "audio"]

    def get_video_tracks(self) -> List[MediaStreamTrack]:
        return [t for t in self._tracks if t.kind == "video"]

    def add_track(self, track: MediaStreamTrack) -> None:
        if track not in self._tracks:
            self._tracks.append(track)

    def remove_track(self, track: MediaStreamTrack) -> None:
        if track in self._tracks:
            self._tracks.remove(track)

    def live_tracks(self) -> List[MediaStreamTrack]:
        return [t for t in self._tracks if t.readyState == "live"]

    def stop(self) -> None:
        """Stop every track, releasing the capture devices."""
        for track in self._tracks:
            if track.readyState != "ended":
                logger.debug(f"Stopping local {track.kind} track")
                track.stop()


class MediaDevices(ABC):
    """Camera/microphone acquisition primitive."""

    @abstractmethod
    async def get_user_media(self, constraints: MediaConstraints) -> LocalMediaStream:
        """Open the requested devices.

        Raises:
            MediaPermissionError: If any requested device cannot be opened.
        """


class PlayerMediaDevices(MediaDevices):
    """Capture devices opened through aiortc's MediaPlayer.

    Args:
        media_config: Device names and ffmpeg input formats.
    """

    def __init__(self, media_config: MediaConfig):
        self.media_config = media_config

    async def _open_player(self, device: str, format: Optional[str], options=None):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, partial(MediaPlayer, device, format=format, options=options)
        )

    async def get_user_media(self, constraints: MediaConstraints) -> LocalMediaStream:
        stream = LocalMediaStream()
        try:
            if constraints.video:
                device = self.media_config.camera_for(constraints.facing_mode)
                if not device:
                    raise MediaPermissionError(
                        f"No camera configured for facing mode '{constraints.facing_mode}'"
                    )
                player = await self._open_player(
                    device,
                    self.media_config.camera_format,
                    {"framerate": "30", "video_size": "1280x720"},
                )
                if player.video is None:
                    raise MediaPermissionError(f"Device {device} has no video stream")
                stream.add_track(ToggleableTrack(player.video))

            if constraints.audio:
                player = await self._open_player(
                    self.media_config.microphone, self.media_config.microphone_format
                )
                if player.audio is None:
                    raise MediaPermissionError(
                        f"Device {self.media_config.microphone} has no audio stream"
                    )
                stream.add_track(ToggleableTrack(player.audio))
        except MediaPermissionError:
            stream.stop()
            raise
        except Exception as e:
            # av raises OSError subclasses for busy, missing or denied devices
            stream.stop()
            raise MediaPermissionError(str(e)) from e

        return stream

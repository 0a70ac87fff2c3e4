"""Shared fakes for call tests.

FakePeerConnection follows the aiortc RTCPeerConnection signaling state
rules closely enough to exercise the manager and coordinator without opening
sockets. Event handlers registered with ``on`` are awaited by ``fire`` so
tests control exactly when native callbacks happen.
"""

import asyncio
import itertools
from typing import List

import pytest
import pytest_asyncio
from aiortc import MediaStreamTrack, RTCIceCandidate, RTCSessionDescription

from dm_rtc.call.session import ConversationInfo
from dm_rtc.channel.memory import InMemoryHub
from dm_rtc.config import Config
from dm_rtc.exceptions import MediaPermissionError
from dm_rtc.media import LocalMediaStream, MediaDevices
from dm_rtc.notifier import Notifier

_pc_ids = itertools.count(1)


class FakeTrack(MediaStreamTrack):
    def __init__(self, kind: str):
        super().__init__()
        self.kind = kind
        self.enabled = True

    async def recv(self):
        raise NotImplementedError


class FakeSender:
    def __init__(self, track):
        self.track = track
        self.kind = track.kind
        self.replaced: List = []

    def replaceTrack(self, track):
        self.replaced.append(track)
        self.track = track


class FakePeerConnection:
    def __init__(self, configuration=None):
        self.id = next(_pc_ids)
        self.configuration = configuration
        self.signalingState = "stable"
        self.connectionState = "new"
        self.localDescription = None
        self.remoteDescription = None
        self.senders: List[FakeSender] = []
        self.added_candidates: List[RTCIceCandidate] = []
        self.handlers = {}
        self.close_calls = 0
        self.fail_on = set()
        self._offers = 0

    # pyee-style event registration
    def on(self, event):
        def decorator(handler):
            self.handlers.setdefault(event, []).append(handler)
            return handler

        return decorator

    def remove_all_listeners(self):
        self.handlers.clear()

    async def fire(self, event, *args):
        for handler in list(self.handlers.get(event, [])):
            result = handler(*args)
            if asyncio.iscoroutine(result):
                await result

    async def set_connection_state(self, state: str):
        self.connectionState = state
        await self.fire("connectionstatechange")

    def _check(self, operation):
        if operation in self.fail_on:
            raise RuntimeError(f"{operation} failed")
        if self.signalingState == "closed":
            raise RuntimeError("RTCPeerConnection is closed")

    def addTrack(self, track):
        self._check("addTrack")
        sender = FakeSender(track)
        self.senders.append(sender)
        return sender

    def getSenders(self):
        return list(self.senders)

    async def createOffer(self):
        self._check("createOffer")
        self._offers += 1
        return RTCSessionDescription(
            sdp=f"v=0 offer pc={self.id} n={self._offers}", type="offer"
        )

    async def createAnswer(self):
        self._check("createAnswer")
        if self.signalingState != "have-remote-offer":
            raise RuntimeError(f"Cannot create answer in {self.signalingState}")
        return RTCSessionDescription(sdp=f"v=0 answer pc={self.id}", type="answer")

    async def setLocalDescription(self, description):
        self._check("setLocalDescription")
        if description.type == "offer":
            if self.signalingState != "stable":
                raise RuntimeError(f"Cannot set local offer in {self.signalingState}")
            self.signalingState = "have-local-offer"
        else:
            if self.signalingState != "have-remote-offer":
                raise RuntimeError(f"Cannot set local answer in {self.signalingState}")
            self.signalingState = "stable"
        self.localDescription = description

    async def setRemoteDescription(self, description):
        self._check("setRemoteDescription")
        if description.type == "offer":
            if self.signalingState != "stable":
                raise RuntimeError(f"Cannot set remote offer in {self.signalingState}")
            self.signalingState = "have-remote-offer"
        else:
            if self.signalingState != "have-local-offer":
                raise RuntimeError(f"Cannot set remote answer in {self.signalingState}")
            self.signalingState = "stable"
        self.remoteDescription = description

    async def addIceCandidate(self, candidate):
        self._check("addIceCandidate")
        self.added_candidates.append(candidate)

    async def close(self):
        self.close_calls += 1
        self.signalingState = "closed"
        self.connectionState = "closed"


class FakeMediaDevices(MediaDevices):
    """Hands out FakeTracks and records every request."""

    def __init__(self, deny_video=False, deny_audio=False, video_failures=0):
        self.deny_video = deny_video
        self.deny_audio = deny_audio
        self.video_failures = video_failures
        self.requests = []
        self.streams: List[LocalMediaStream] = []
        self.gate = None

    async def get_user_media(self, constraints):
        self.requests.append(constraints)
        if self.gate is not None:
            await self.gate.wait()
        if constraints.video and (self.deny_video or self.video_failures > 0):
            self.video_failures = max(0, self.video_failures - 1)
            raise MediaPermissionError("camera denied")
        if constraints.audio and self.deny_audio:
            raise MediaPermissionError("microphone denied")

        stream = LocalMediaStream()
        if constraints.audio:
            stream.add_track(FakeTrack("audio"))
        if constraints.video:
            stream.add_track(FakeTrack("video"))
        self.streams.append(stream)
        return stream

    def live_tracks(self):
        return [t for s in self.streams for t in s.get_tracks() if t.readyState == "live"]


def make_candidate(port: int, foundation: str = "1") -> RTCIceCandidate:
    return RTCIceCandidate(
        component=1,
        foundation=foundation,
        ip="192.168.1.10",
        port=port,
        priority=2130706431,
        protocol="udp",
        type="host",
        sdpMid="0",
        sdpMLineIndex=0,
    )


@pytest.fixture
def config():
    cfg = Config()
    cfg.call.connect_timeout = None
    return cfg


@pytest.fixture
def notifier():
    return Notifier()


@pytest.fixture
def conversation():
    return ConversationInfo("conv-1", creator_id="creator", subscriber_id="fan")


@pytest_asyncio.fixture
async def hub():
    hub = InMemoryHub()
    yield hub
    await hub.close()

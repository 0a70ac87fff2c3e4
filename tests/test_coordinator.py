"""End-to-end tests for CallCoordinator over an in-memory message hub.

Two coordinators (the creator and the fan) share a conversation on an
InMemoryHub. Native connectivity is simulated by firing connection state
changes on each side's FakePeerConnection.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import FakeMediaDevices, FakePeerConnection, make_candidate
from dm_rtc.call.coordinator import CallCoordinator, CallEvent, EventType
from dm_rtc.call.session import CallRole, CallState
from dm_rtc.channel.base import CHANNEL_ERROR, CHANNEL_SUBSCRIBED
from dm_rtc.channel.memory import InMemoryHub
from dm_rtc.config import Config
from dm_rtc.notifier import Notifier
from dm_rtc.protocol import (
    CALL_STARTED_MARKER,
    MSG_VIDEO_CALL_ACCEPTED,
    MSG_VIDEO_CALL_ANSWER,
    MSG_VIDEO_CALL_DECLINED,
    MSG_VIDEO_CALL_END,
    MSG_VIDEO_CALL_OFFER,
)


def make_config(connect_timeout=None):
    config = Config()
    config.call.connect_timeout = connect_timeout
    return config


class Party:
    """One participant: coordinator plus the fakes behind it."""

    def __init__(self, hub, peer_id, conversation, devices=None, config=None):
        self.devices = devices or FakeMediaDevices()
        self.channel = hub.channel(peer_id)
        self.notifier = Notifier()
        self.coordinator = CallCoordinator(
            local_id=peer_id,
            conversation=conversation,
            channel=self.channel,
            media_devices=self.devices,
            config=config or make_config(),
            notifier=self.notifier,
            pc_factory=FakePeerConnection,
        )

    @property
    def state(self):
        return self.coordinator.state

    @property
    def pc(self):
        return self.coordinator.manager.pc

    def sent(self, tag):
        return [text for _, text in self.channel.sent if text.startswith(tag)]

    def active_count(self):
        return sum(1 for _, new, _ in self.coordinator.history if new is CallState.ACTIVE)


async def make_parties(hub, conversation, creator_kwargs=None, fan_kwargs=None):
    creator = Party(hub, "creator", conversation, **(creator_kwargs or {}))
    fan = Party(hub, "fan", conversation, **(fan_kwargs or {}))
    await creator.channel.subscribe()
    await fan.channel.subscribe()
    return creator, fan


async def ring(hub, creator, fan):
    await creator.coordinator.start_call()
    await hub.settle()


async def connect(hub, creator, fan):
    await ring(hub, creator, fan)
    await fan.coordinator.accept_call()
    await hub.settle()
    await creator.pc.set_connection_state("connected")
    await fan.pc.set_connection_state("connected")
    await hub.settle()


class TestOutgoingCall:
    @pytest.mark.asyncio
    async def test_start_call_rings_other_side(self, hub, conversation):
        creator, fan = await make_parties(hub, conversation)

        await ring(hub, creator, fan)

        assert creator.state is CallState.OUTGOING_RINGING
        assert fan.state is CallState.INCOMING_RINGING
        assert fan.coordinator.session.caller_name == "Creator"
        assert fan.coordinator.manager is None
        assert fan.devices.requests == []
        assert "Incoming Video Call" in fan.notifier.titles()
        assert creator.channel.sent[0][1] == CALL_STARTED_MARKER

    @pytest.mark.asyncio
    async def test_own_echo_is_ignored(self, hub, conversation):
        creator, fan = await make_parties(hub, conversation)

        await ring(hub, creator, fan)

        assert creator.state is CallState.OUTGOING_RINGING
        assert creator.pc.remoteDescription is None
        assert creator.pc.signalingState == "have-local-offer"

    @pytest.mark.asyncio
    async def test_chat_text_is_ignored(self, hub, conversation):
        creator, fan = await make_parties(hub, conversation)

        await creator.channel.send("conv-1", "hey, are you free for a call?")
        await hub.settle()

        assert creator.state is CallState.IDLE
        assert fan.state is CallState.IDLE

    @pytest.mark.asyncio
    async def test_start_call_refused_when_channel_down(self, hub, conversation):
        creator, fan = await make_parties(hub, conversation)
        await creator.channel.set_status(CHANNEL_ERROR)

        await creator.coordinator.start_call()

        assert creator.state is CallState.IDLE
        assert creator.devices.requests == []
        assert "Call Unavailable" in creator.notifier.titles()

    @pytest.mark.asyncio
    async def test_start_call_allowed_after_resubscribe(self, hub, conversation):
        creator, fan = await make_parties(hub, conversation)
        await creator.channel.set_status(CHANNEL_ERROR)
        await creator.channel.set_status(CHANNEL_SUBSCRIBED)

        await ring(hub, creator, fan)

        assert creator.state is CallState.OUTGOING_RINGING

    @pytest.mark.asyncio
    async def test_audio_only_fallback(self, hub, conversation):
        creator, fan = await make_parties(
            hub, conversation, creator_kwargs={"devices": FakeMediaDevices(deny_video=True)}
        )

        await ring(hub, creator, fan)

        assert creator.state is CallState.OUTGOING_RINGING
        assert creator.coordinator.session.is_video_enabled is False
        assert "Audio Only Mode" in creator.notifier.titles()
        assert fan.state is CallState.INCOMING_RINGING

    @pytest.mark.asyncio
    async def test_media_denied_ends_attempt(self, hub, conversation):
        devices = FakeMediaDevices(deny_video=True, deny_audio=True)
        creator, fan = await make_parties(
            hub, conversation, creator_kwargs={"devices": devices}
        )

        await ring(hub, creator, fan)

        assert creator.state is CallState.ENDED
        assert "Media Access Denied" in creator.notifier.titles()
        assert creator.sent(MSG_VIDEO_CALL_OFFER) == []
        assert fan.state is CallState.IDLE


class TestFullCall:
    @pytest.mark.asyncio
    async def test_both_sides_active_exactly_once(self, hub, conversation):
        creator, fan = await make_parties(hub, conversation)

        await connect(hub, creator, fan)

        assert creator.state is CallState.ACTIVE
        assert fan.state is CallState.ACTIVE
        assert creator.active_count() == 1
        assert fan.active_count() == 1
        assert creator.coordinator.session.local_role is CallRole.INITIATOR
        assert fan.coordinator.session.local_role is CallRole.RECEIVER
        assert "Call Accepted" in creator.notifier.titles()

    @pytest.mark.asyncio
    async def test_end_call_stops_media_on_both_sides(self, hub, conversation):
        creator, fan = await make_parties(hub, conversation)
        await connect(hub, creator, fan)

        await creator.coordinator.end_call()
        await hub.settle()

        assert creator.state is CallState.ENDED
        assert fan.state is CallState.ENDED
        assert creator.devices.live_tracks() == []
        assert fan.devices.live_tracks() == []
        assert creator.coordinator.manager is None
        assert fan.coordinator.manager is None
        assert "Call Ended" in fan.notifier.titles()
        assert fan.sent(MSG_VIDEO_CALL_END) == []

    @pytest.mark.asyncio
    async def test_double_end_call_sends_one_end(self, hub, conversation):
        creator, fan = await make_parties(hub, conversation)
        await connect(hub, creator, fan)

        await asyncio.gather(
            creator.coordinator.end_call(), creator.coordinator.end_call()
        )
        await creator.coordinator.end_call()
        await hub.settle()

        assert len(creator.sent(MSG_VIDEO_CALL_END)) == 1

    @pytest.mark.asyncio
    async def test_session_reset_after_end(self, hub, conversation):
        creator, fan = await make_parties(hub, conversation)
        await connect(hub, creator, fan)

        await fan.coordinator.end_call()
        await hub.settle()

        session = creator.coordinator.session
        assert session.remote_offer is None
        assert session.remote_answer is None
        assert session.pending_ice_candidates == []
        assert creator.coordinator.last_session.ended_reason == "remote_end"
        assert fan.coordinator.last_session.ended_reason == "local_end"

    @pytest.mark.asyncio
    async def test_new_call_after_end(self, hub, conversation):
        creator, fan = await make_parties(hub, conversation)
        await connect(hub, creator, fan)
        await creator.coordinator.end_call()
        await hub.settle()

        await connect(hub, creator, fan)

        assert creator.state is CallState.ACTIVE
        assert fan.state is CallState.ACTIVE

    @pytest.mark.asyncio
    async def test_connection_failure_ends_both_sides(self, hub, conversation):
        creator, fan = await make_parties(hub, conversation)
        await connect(hub, creator, fan)

        await creator.pc.set_connection_state("failed")
        await hub.settle()

        assert creator.state is CallState.ENDED
        assert fan.state is CallState.ENDED
        assert "Connection Failed" in creator.notifier.titles()

    @pytest.mark.asyncio
    async def test_toggle_mute_and_video(self, hub, conversation):
        creator, fan = await make_parties(hub, conversation)
        await connect(hub, creator, fan)
        stream = creator.coordinator.manager.local_stream

        await creator.coordinator.toggle_mute()
        await creator.coordinator.toggle_video()

        session = creator.coordinator.session
        assert session.is_muted is True
        assert session.is_video_enabled is False
        assert stream.get_audio_tracks()[0].enabled is False
        assert stream.get_video_tracks()[0].enabled is False

    @pytest.mark.asyncio
    async def test_switch_camera_flips_facing(self, hub, conversation):
        creator, fan = await make_parties(hub, conversation)
        await connect(hub, creator, fan)

        await creator.coordinator.switch_camera()

        assert creator.coordinator.session.is_front_camera is False
        assert creator.state is CallState.ACTIVE

    @pytest.mark.asyncio
    async def test_switch_camera_from_audio_only_renegotiates(self, hub, conversation):
        devices = FakeMediaDevices(deny_video=True)
        creator, fan = await make_parties(
            hub, conversation, creator_kwargs={"devices": devices}
        )
        await connect(hub, creator, fan)
        devices.deny_video = False

        await creator.coordinator.switch_camera()
        await hub.settle()

        assert len(creator.sent(MSG_VIDEO_CALL_OFFER)) == 2
        assert len(fan.sent(MSG_VIDEO_CALL_ANSWER)) == 2
        assert creator.pc.signalingState == "stable"
        assert creator.state is CallState.ACTIVE
        assert fan.state is CallState.ACTIVE

    @pytest.mark.asyncio
    async def test_unexpected_error_ends_call(self, hub, conversation):
        creator, fan = await make_parties(hub, conversation)
        await connect(hub, creator, fan)
        creator.coordinator.manager.switch_camera = AsyncMock(
            side_effect=RuntimeError("boom")
        )

        await creator.coordinator.switch_camera()
        await hub.settle()

        assert creator.state is CallState.ENDED
        assert fan.state is CallState.ENDED
        assert "Connection Error" in creator.notifier.titles()


class TestDecline:
    @pytest.mark.asyncio
    async def test_decline_never_creates_connection(self, hub, conversation):
        creator, fan = await make_parties(hub, conversation)
        await ring(hub, creator, fan)

        await fan.coordinator.decline_call()
        await hub.settle()

        assert fan.state is CallState.ENDED
        assert creator.state is CallState.ENDED
        assert fan.devices.requests == []
        assert fan.coordinator.manager is None
        assert len(fan.sent(MSG_VIDEO_CALL_DECLINED)) == 1
        assert "Call Declined" in creator.notifier.titles()
        assert creator.devices.live_tracks() == []

    @pytest.mark.asyncio
    async def test_redelivered_offer_after_decline_does_not_ring(self, hub, conversation):
        creator, fan = await make_parties(hub, conversation)
        await ring(hub, creator, fan)
        offer_text = creator.sent(MSG_VIDEO_CALL_OFFER)[0]
        await fan.coordinator.decline_call()
        await hub.settle()

        await fan.coordinator.handle_message(offer_text, "creator")

        assert fan.state is CallState.ENDED

    @pytest.mark.asyncio
    async def test_caller_hangs_up_while_ringing(self, hub, conversation):
        creator, fan = await make_parties(hub, conversation)
        await ring(hub, creator, fan)

        await creator.coordinator.end_call()
        await hub.settle()

        assert fan.state is CallState.ENDED
        assert fan.devices.requests == []


class TestDuplicateDelivery:
    @pytest.mark.asyncio
    async def test_duplicate_offer_and_answer(self, conversation):
        hub = InMemoryHub(duplicate_delivery=True)
        try:
            creator, fan = await make_parties(hub, conversation)

            await connect(hub, creator, fan)

            assert len(fan.sent(MSG_VIDEO_CALL_ANSWER)) == 1
            assert creator.active_count() == 1
            assert fan.active_count() == 1
            assert creator.pc.signalingState == "stable"
            assert not creator.coordinator.manager.failed
        finally:
            await hub.close()

    @pytest.mark.asyncio
    async def test_redelivered_offer_during_accept(self, hub, conversation):
        creator, fan = await make_parties(hub, conversation)
        await ring(hub, creator, fan)
        offer_text = creator.sent(MSG_VIDEO_CALL_OFFER)[0]
        fan.devices.gate = asyncio.Event()

        task = asyncio.create_task(fan.coordinator.accept_call())
        await hub.settle()
        await fan.coordinator.handle_message(offer_text, "creator")
        fan.devices.gate.set()
        await task
        await hub.settle()
        await fan.coordinator.handle_message(offer_text, "creator")
        await hub.settle()

        assert fan.state is CallState.CONNECTING
        assert creator.state is CallState.CONNECTING
        assert len(fan.sent(MSG_VIDEO_CALL_ANSWER)) == 1
        assert len(fan.sent(MSG_VIDEO_CALL_ACCEPTED)) == 1
        assert "Connection Error" not in fan.notifier.titles()
        assert not fan.coordinator.manager.failed


class TestIceCandidates:
    @pytest.mark.asyncio
    async def test_both_sides_exchange_candidates_before_answer(self, hub, conversation):
        creator, fan = await make_parties(hub, conversation)
        await ring(hub, creator, fan)

        for port in (5000, 5001):
            await creator.pc.fire("icecandidate", MagicMock(candidate=make_candidate(port)))
        await hub.settle()

        fan.devices.gate = asyncio.Event()
        task = asyncio.create_task(fan.coordinator.accept_call())
        await hub.settle()
        for port in (6000, 6001):
            await fan.pc.fire("icecandidate", MagicMock(candidate=make_candidate(port)))
        await hub.settle()

        # The caller is still ringing and has no answer to apply them to
        assert creator.state is CallState.OUTGOING_RINGING
        assert [c.port for c in creator.coordinator.manager.pending_ice_candidates] == [
            6000,
            6001,
        ]

        fan.devices.gate.set()
        await task
        await hub.settle()
        await creator.pc.set_connection_state("connected")
        await fan.pc.set_connection_state("connected")
        await hub.settle()

        assert creator.state is CallState.ACTIVE
        assert fan.state is CallState.ACTIVE
        assert [c.port for c in creator.pc.added_candidates] == [6000, 6001]
        assert [c.port for c in fan.pc.added_candidates] == [5000, 5001]
        for party in (creator, fan):
            assert party.coordinator.session.pending_ice_candidates == []
            assert party.coordinator.manager.pending_ice_candidates == []


    @pytest.mark.asyncio
    async def test_candidates_before_accept_are_applied_in_order(self, hub, conversation):
        creator, fan = await make_parties(hub, conversation)
        await ring(hub, creator, fan)

        for port in (5000, 5001, 5002):
            await creator.pc.fire("icecandidate", MagicMock(candidate=make_candidate(port)))
        await hub.settle()
        assert len(fan.coordinator.session.pending_ice_candidates) == 3

        await fan.coordinator.accept_call()
        await hub.settle()

        assert [c.port for c in fan.pc.added_candidates] == [5000, 5001, 5002]

    @pytest.mark.asyncio
    async def test_candidates_during_call_applied_directly(self, hub, conversation):
        creator, fan = await make_parties(hub, conversation)
        await connect(hub, creator, fan)

        await fan.pc.fire("icecandidate", MagicMock(candidate=make_candidate(6000)))
        await hub.settle()

        assert [c.port for c in creator.pc.added_candidates] == [6000]

    @pytest.mark.asyncio
    async def test_malformed_candidate_dropped_quietly(self, hub, conversation):
        creator, fan = await make_parties(hub, conversation)
        await connect(hub, creator, fan)
        toasts = list(fan.notifier.titles())

        await fan.coordinator.handle_message('VIDEO_CALL_ICE:{"candidate": "garbage"}', "creator")

        assert fan.state is CallState.ACTIVE
        assert fan.notifier.titles() == toasts


class TestStaleContinuations:
    @pytest.mark.asyncio
    async def test_end_during_media_acquisition(self, hub, conversation):
        creator, fan = await make_parties(hub, conversation)
        creator.devices.gate = asyncio.Event()

        task = asyncio.create_task(creator.coordinator.start_call())
        await hub.settle()
        await creator.coordinator.end_call()
        creator.devices.gate.set()
        await task
        await hub.settle()

        assert creator.state is CallState.ENDED
        assert creator.sent(MSG_VIDEO_CALL_OFFER) == []
        assert creator.devices.live_tracks() == []
        assert fan.state is CallState.IDLE

    @pytest.mark.asyncio
    async def test_stale_generation_event_dropped(self, hub, conversation):
        creator, fan = await make_parties(hub, conversation)
        await ring(hub, creator, fan)
        await fan.coordinator.accept_call()
        await hub.settle()

        await creator.coordinator.dispatch(
            CallEvent(EventType.CONNECTION_STATE, value="connected", generation=0)
        )

        assert creator.state is CallState.CONNECTING


class TestTimeoutAndChannel:
    @pytest.mark.asyncio
    async def test_connect_timeout_ends_stuck_call(self, hub, conversation):
        creator, fan = await make_parties(
            hub, conversation, fan_kwargs={"config": make_config(connect_timeout=0.05)}
        )
        await ring(hub, creator, fan)

        await fan.coordinator.accept_call()
        await hub.settle()
        await asyncio.sleep(0.1)
        await hub.settle()

        assert fan.state is CallState.ENDED
        assert fan.coordinator.last_session.ended_reason == "connect_timeout"
        assert "Connection Failed" in fan.notifier.titles()
        assert creator.state is CallState.ENDED

    @pytest.mark.asyncio
    async def test_timer_cancelled_once_active(self, hub, conversation):
        config = make_config(connect_timeout=0.05)
        creator, fan = await make_parties(
            hub,
            conversation,
            creator_kwargs={"config": config},
            fan_kwargs={"config": config},
        )

        await connect(hub, creator, fan)
        await asyncio.sleep(0.1)
        await hub.settle()

        assert creator.state is CallState.ACTIVE
        assert fan.state is CallState.ACTIVE

    @pytest.mark.asyncio
    async def test_channel_error_keeps_active_call(self, hub, conversation):
        creator, fan = await make_parties(hub, conversation)
        await connect(hub, creator, fan)

        await creator.channel.set_status(CHANNEL_ERROR)
        await creator.channel.set_status(CHANNEL_ERROR)

        assert creator.state is CallState.ACTIVE
        assert creator.coordinator.channel_ready is False
        assert creator.notifier.titles().count("Connection Lost") == 1

"""Command-line call runners.

``run_call`` dials the other participant of a conversation, ``run_answer``
waits for an incoming call and asks the user whether to take it. Both connect
to a relay, capture local camera/microphone through PlayerMediaDevices and
either record or discard the remote media.
"""

import asyncio
import logging
from typing import Optional

import click
from aiortc.contrib.media import MediaBlackhole, MediaRecorder

from dm_rtc.call.coordinator import CallCoordinator
from dm_rtc.call.gate import IncomingCallGate
from dm_rtc.call.session import CallState, ConversationInfo
from dm_rtc.channel.websocket import WebSocketChannel
from dm_rtc.config import get_config
from dm_rtc.media import PlayerMediaDevices
from dm_rtc.notifier import VARIANT_DESTRUCTIVE, Notification, Notifier


def _print_notification(notification: Notification):
    color = "red" if notification.variant == VARIANT_DESTRUCTIVE else "green"
    click.secho(f"[{notification.title}] {notification.description}", fg=color)


class CallRunner:
    """Wires a coordinator to a relay channel and local devices.

    Args:
        conversation: Conversation hosting the call.
        peer_id: Local participant id.
        relay_url: Relay websocket URL (defaults to config).
        record: Path to record remote media to, or None to discard it.
        duration: Hang up automatically after this many seconds of active call.
    """

    def __init__(
        self,
        conversation: ConversationInfo,
        peer_id: str,
        relay_url: Optional[str] = None,
        record: Optional[str] = None,
        duration: Optional[float] = None,
    ):
        config = get_config()
        self.duration = duration
        self.channel = WebSocketChannel(relay_url or config.relay_websocket, peer_id)
        self.recorder = MediaRecorder(record) if record else MediaBlackhole()
        self._recording = False
        self._state_changed = asyncio.Event()

        self.coordinator = CallCoordinator(
            local_id=peer_id,
            conversation=conversation,
            channel=self.channel,
            media_devices=PlayerMediaDevices(config.media),
            config=config,
            notifier=Notifier(sink=_print_notification),
            on_state_change=self._on_state_change,
            on_remote_track=self.recorder.addTrack,
        )
        self.gate = IncomingCallGate(self.coordinator)

    def _on_state_change(self, old_state: CallState, new_state: CallState):
        click.echo(f"Call state: {new_state.value}")
        self._state_changed.set()

    async def _wait_for(self, *states: CallState):
        while self.coordinator.state not in states:
            self._state_changed.clear()
            await self._state_changed.wait()

    async def _connect(self):
        await self.channel.connect()
        await self.channel.wait_subscribed()

    async def _run_until_ended(self):
        await self._wait_for(CallState.ACTIVE, CallState.ENDED)
        if self.coordinator.state is CallState.ACTIVE:
            await self.recorder.start()
            self._recording = True
            if self.duration:
                try:
                    await asyncio.wait_for(
                        self._wait_for(CallState.ENDED), timeout=self.duration
                    )
                except asyncio.TimeoutError:
                    logging.info(f"Call duration of {self.duration}s reached, hanging up")
                    await self.coordinator.end_call()
            await self._wait_for(CallState.ENDED)

        session = self.coordinator.last_session
        reason = session.ended_reason if session else "unknown"
        click.echo(f"Call ended ({reason})")

    async def call(self):
        await self._connect()
        try:
            await self.coordinator.start_call()
            if self.coordinator.state is CallState.IDLE:
                return
            await self._run_until_ended()
        finally:
            await self.shutdown()

    async def answer(self, auto_accept: bool = False):
        await self._connect()
        try:
            click.echo("Waiting for an incoming call...")
            await self._wait_for(CallState.INCOMING_RINGING)

            if auto_accept:
                await self.gate.accept()
            else:
                loop = asyncio.get_running_loop()
                await self.gate.prompt(
                    lambda name: loop.run_in_executor(
                        None,
                        lambda: click.confirm(f"{name} is calling. Accept?", default=True),
                    )
                )
            if self.coordinator.state is CallState.ENDED:
                return
            await self._run_until_ended()
        finally:
            await self.shutdown()

    async def shutdown(self):
        await self.coordinator.end_call()
        if self._recording:
            await self.recorder.stop()
        await self.channel.close()


def run_call(
    conversation_id: str,
    peer_id: str,
    creator_id: Optional[str] = None,
    subscriber_id: Optional[str] = None,
    relay_url: Optional[str] = None,
    record: Optional[str] = None,
    duration: Optional[float] = None,
):
    """Start a video call in a conversation and run it until it ends."""
    logging.basicConfig(level=logging.INFO)

    conversation = ConversationInfo(conversation_id, creator_id, subscriber_id)

    async def main():
        runner = CallRunner(conversation, peer_id, relay_url, record, duration)
        await runner.call()

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logging.info("Call interrupted by user. Shutting down...")


def run_answer(
    conversation_id: str,
    peer_id: str,
    creator_id: Optional[str] = None,
    subscriber_id: Optional[str] = None,
    relay_url: Optional[str] = None,
    record: Optional[str] = None,
    duration: Optional[float] = None,
    auto_accept: bool = False,
):
    """Wait for a video call in a conversation and run it until it ends."""
    logging.basicConfig(level=logging.INFO)

    conversation = ConversationInfo(conversation_id, creator_id, subscriber_id)

    async def main():
        runner = CallRunner(conversation, peer_id, relay_url, record, duration)
        await runner.answer(auto_accept=auto_accept)

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logging.info("Answer interrupted by user. Shutting down...")

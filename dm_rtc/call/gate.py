"""Incoming call prompt.

The gate is the accept/decline surface shown while a call is ringing. It is a
thin view over the coordinator: it exposes the caller's display name and
forwards the user's choice, and it renders nothing unless the coordinator is
in ``incoming-ringing``.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Union

from dm_rtc.call.coordinator import CallCoordinator
from dm_rtc.call.session import CallState

logger = logging.getLogger(__name__)

ConfirmCallback = Callable[[str], Union[bool, Awaitable[bool]]]


class IncomingCallGate:
    def __init__(self, coordinator: CallCoordinator):
        self.coordinator = coordinator

    @property
    def visible(self) -> bool:
        return self.coordinator.state is CallState.INCOMING_RINGING

    @property
    def caller_name(self) -> Optional[str]:
        if not self.visible:
            return None
        return self.coordinator.session.caller_name or "Unknown User"

    async def accept(self):
        if not self.visible:
            logger.warning("No incoming call to accept")
            return
        await self.coordinator.accept_call()

    async def decline(self):
        if not self.visible:
            logger.warning("No incoming call to decline")
            return
        await self.coordinator.decline_call()

    async def prompt(self, confirm: ConfirmCallback) -> Optional[bool]:
        """Ask the user whether to take the call and act on the answer.

        Args:
            confirm: Called with the caller's name; returns True to accept.
                May be a plain function or return an awaitable.

        Returns:
            The user's choice, or None if no call was ringing (or it stopped
            ringing while the user was deciding).
        """
        if not self.visible:
            return None

        ringing_session = self.coordinator.session
        result = confirm(self.caller_name)
        if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
            result = await result

        # The caller may have hung up while we were waiting
        if not self.visible or self.coordinator.session is not ringing_session:
            logger.info("Call stopped ringing before the user answered")
            return None

        if result:
            await self.accept()
        else:
            await self.decline()
        return bool(result)

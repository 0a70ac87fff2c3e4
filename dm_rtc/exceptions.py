"""Exceptions raised by dm-rtc."""


class CallError(Exception):
    """Base class for call setup and signaling errors."""


class MediaPermissionError(CallError):
    """Neither camera+microphone nor microphone alone could be opened."""


class SignalingStateError(CallError):
    """A description operation was attempted from an illegal signaling state.

    Attributes:
        operation: Name of the attempted operation.
        state: Signaling state at the time of the attempt.
    """

    def __init__(self, operation: str, state: str):
        super().__init__(f"Cannot {operation} in signaling state '{state}'")
        self.operation = operation
        self.state = state


class CallSetupError(CallError):
    """Offer or answer creation failed for the current call attempt."""


class ChannelError(CallError):
    """The signaling message channel is unavailable."""

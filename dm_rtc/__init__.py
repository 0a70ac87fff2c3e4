"""WebRTC video calls signaled over paid DM conversations."""

__version__ = "0.1.0"

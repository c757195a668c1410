"""Errors raised by the relay core.

All of them are local to one connection: the WebSocket handler reports them
back to the offending client as an ``error`` event and keeps serving.
"""
from typing import Optional


class RelayError(Exception):
    """Base class for per-connection relay errors."""

    def __init__(self, message: str, send_time: Optional[str] = None) -> None:
        super().__init__(message)
        self.send_time = send_time


class MalformedEvent(RelayError):
    """Inbound event is not valid JSON, has an unknown tag, or misses fields."""


class NotAuthenticated(RelayError):
    """Operation needs an identity and the connection has none yet."""


class TransientIOFailure(RelayError):
    """Message or attachment could not be persisted."""


class MessageNotFound(RelayError):
    """Referenced message does not exist or is not addressed to the caller."""

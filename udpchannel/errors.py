# udpchannel/errors.py
"""
Error taxonomy for channels and the roles built on them.

Construction-time failures (BindFailed, JoinFailed) are raised to the caller.
Steady-state failures (SendFailed, ReceiveFailed) have no synchronous caller,
so they are handed to the channel's error sink instead of being raised.
"""

from __future__ import annotations

from typing import Optional


class UdpChannelError(Exception):
    """Common superclass for every error raised or reported by udpchannel."""

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause        # Underlying OSError / ValueError, if any


# --- construction time (raised) -------------------------------------------

class BindFailed(UdpChannelError):
    """The local port could not be bound (in use, out of range, bad host)."""

    def __init__(self, port, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"cannot bind UDP port {port}: {cause}", cause)
        self.port = port


class JoinFailed(UdpChannelError):
    """A multicast group address was invalid or membership was refused."""

    def __init__(self, group, reason) -> None:
        cause = reason if isinstance(reason, BaseException) else None
        super().__init__(f"cannot join multicast group {group}: {reason}", cause)
        self.group = group


class ChannelClosed(UdpChannelError):
    """The operation needs an open channel."""


# --- steady state (reported to the error sink) ----------------------------

class SendFailed(UdpChannelError):
    """An outbound datagram could not be submitted to the transport."""

    def __init__(self, destination, cause) -> None:
        super().__init__(f"send to {destination} failed: {cause}",
                         cause if isinstance(cause, BaseException) else None)
        self.destination = destination


class ReceiveFailed(UdpChannelError):
    """The receive loop stopped on a transport error; restart it explicitly."""

    def __init__(self, endpoint, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"receive on {endpoint} failed: {cause}", cause)
        self.endpoint = endpoint

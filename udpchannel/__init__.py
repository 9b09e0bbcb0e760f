"""udpchannel – asynchronous UDP unicast/multicast publish/subscribe channels.

Importing this package exposes :class:`Reactor`, :class:`Channel`,
:class:`Publisher` and :class:`Receiver` plus the shared value types and
errors, so an application rarely needs to dig into sub-modules.
"""

# ------------------------ re-exports ------------------------
from .channel import Channel                # noqa: F401
from .errors import (                       # noqa: F401
    BindFailed, ChannelClosed, JoinFailed, ReceiveFailed, SendFailed, UdpChannelError,
)
from .protocol import (                     # noqa: F401
    BUF_SIZE, DELIMITER, Endpoint, Framing, InboundMessage,
)
from .publisher import Publisher            # noqa: F401
from .reactor import Reactor                # noqa: F401
from .receiver import Receiver              # noqa: F401

# ------------------------ public API ------------------------
__all__: list[str] = [
    "Reactor",          # Shared event loop + worker threads
    "Channel",          # One socket, its groups and its receive loop
    "Publisher",        # Fire-and-forget sender role
    "Receiver",         # Multicast subscriber role
    "Endpoint",
    "InboundMessage",
    "Framing",
    "BUF_SIZE",
    "DELIMITER",
    "UdpChannelError",
    "BindFailed",
    "JoinFailed",
    "SendFailed",
    "ReceiveFailed",
    "ChannelClosed",
]

__version__ = "1.0.0"

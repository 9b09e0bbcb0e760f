#!/usr/bin/env python3
"""Shared constants, value types and framing helpers used by **every** role.

Everything that travels over the network is framed/unframed via the helpers
here so that publishers and receivers never disagree on wire‑format details.
"""

from __future__ import annotations       # Postponed annotation evaluation (PEP 563)
import enum
import ipaddress
from dataclasses import dataclass        # Immutable record types for endpoints/messages
from typing import Tuple, Union          # Standard typing aliases

# --- Network configuration -------------------------------------------------
BUF_SIZE: int = 4096          # Max UDP datagram size we accept/read (bytes)
DEFAULT_PORT: int = 8000      # Port the demo receiver listens on
DEFAULT_GROUP: str = "239.255.0.1"
ANY_INTERFACE: str = "0.0.0.0"

# --- Wire framing ----------------------------------------------------------
# The text path appends exactly one delimiter byte; the raw path adds nothing
# and relies on the datagram boundary alone.
DELIMITER: bytes = b"\n"

MULTICAST_NET = ipaddress.IPv4Network("224.0.0.0/4")


class Framing(enum.Enum):
    """How a receiving channel unframes each datagram."""

    TEXT = "text"   # Strip at most one trailing delimiter
    RAW = "raw"     # Deliver verbatim


# --- Value types -----------------------------------------------------------

@dataclass(frozen=True, slots=True)
class Endpoint:
    """(address, port) pair naming a peer, a destination or a multicast group."""

    address: str
    port: int

    @classmethod
    def coerce(cls, value: EndpointLike) -> Endpoint:
        """Accept an Endpoint or a plain ``(address, port)`` socket tuple."""
        if isinstance(value, Endpoint):
            return value
        address, port = value[0], value[1]    # recvfrom() may hand back more fields
        return cls(str(address), int(port))

    def as_tuple(self) -> Tuple[str, int]:
        return (self.address, self.port)

    @property
    def is_multicast(self) -> bool:
        return is_multicast(self.address)

    def __str__(self) -> str:
        return f"{self.address}:{self.port}"


EndpointLike = Union[Endpoint, Tuple[str, int]]


@dataclass(frozen=True, slots=True)
class InboundMessage:
    """One received datagram, after unframing.

    ``payload`` is an owned copy; the receive buffer it came from is reused
    for the next datagram as soon as the callback returns.
    """

    payload: bytes
    sender: Endpoint
    truncated: bool = False   # Datagram was larger than the receive buffer

    def text(self, encoding: str = "utf-8") -> str:
        return self.payload.decode(encoding, errors="replace")


# --- Helpers ---------------------------------------------------------------

def is_multicast(address: str) -> bool:
    """True for IPv4 addresses inside 224.0.0.0/4; False for anything else."""
    try:
        return ipaddress.IPv4Address(address) in MULTICAST_NET
    except ValueError:                        # Hostnames, IPv6, garbage
        return False


def frame_text(message: Union[str, bytes]) -> bytes:
    """Encode a text payload for the wire: UTF‑8 plus one delimiter byte."""
    if isinstance(message, str):
        message = message.encode("utf-8")
    return bytes(message) + DELIMITER


def frame_raw(data: bytes, length: int | None = None) -> bytes:
    """Return an owned copy of the first ``length`` bytes of ``data``.

    Raises ValueError when ``length`` is negative or longer than ``data``.
    """
    view = memoryview(data).cast("B")
    if length is None:
        return view.tobytes()
    if length < 0 or length > len(view):
        raise ValueError(f"length {length} outside payload of {len(view)} bytes")
    return view[:length].tobytes()


def decode_datagram(
    data: bytes,
    sender: EndpointLike,
    framing: Framing = Framing.TEXT,
    truncated: bool = False,
) -> InboundMessage:
    """Inverse of the framing helpers – raw datagram ⟶ InboundMessage.

    Text framing is lenient: a payload without a trailing delimiter (e.g. one
    that came in over the raw path) is delivered unchanged.
    """
    payload = bytes(data)
    if framing is Framing.TEXT and payload.endswith(DELIMITER):
        payload = payload[: -len(DELIMITER)]
    return InboundMessage(payload, Endpoint.coerce(sender), truncated)

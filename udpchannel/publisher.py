#!/usr/bin/env python3
"""UDP *publisher*: a Channel with an optional default destination.

* Unicast mode – fixed remote endpoint.
* Multicast mode – group endpoint; may also join the group when the same
  process wants to hear its own traffic.
* ANSI‑coloured command‑line output via *colorama*.

Usage (after installing package locally):

    udpchannel-publish 239.255.0.1 --port 8000 Hello World
    echo Test123 | udpchannel-publish 127.0.0.1 --port 9000 --raw
"""

from __future__ import annotations                # ↩ type hints forward refs OK

import argparse                                    # For CLI parsing
import logging
import sys                                         # stdin fallback for messages
from typing import Optional, Union                 # Typing aids

# ---------- Shared protocol symbols / helpers ----------
from .channel import Channel
from .errors import JoinFailed, SendFailed
from .protocol import (
    ANY_INTERFACE, DEFAULT_PORT, Endpoint, EndpointLike, is_multicast,
)
from .reactor import Reactor

# ---------- Local utilities ----------
from .util import LOG, ErrorSink, configure_logging

# 3rd‑party: coloured terminal output
from colorama import Fore, Style, init


class Publisher:
    """Fire‑and‑forget sender; every publish() goes through its own Channel."""

    def __init__(self, reactor: Reactor, destination: Optional[EndpointLike] = None, *,
                 local_port: int = 0,
                 join_group: bool = False,
                 interface: str = ANY_INTERFACE,
                 multicast_ttl: Optional[int] = None,
                 multicast_loop: Optional[bool] = None,
                 error_sink: Optional[ErrorSink] = None) -> None:
        # -------- default destination --------
        self.destination: Optional[Endpoint] = (
            Endpoint.coerce(destination) if destination is not None else None
        )
        # -------- bind (BindFailed propagates) --------
        self.channel = Channel.open(reactor, local_port, error_sink=error_sink,
                                    multicast_ttl=multicast_ttl,
                                    multicast_loop=multicast_loop)

        # -------- optionally hear our own multicast traffic --------
        if join_group:
            try:
                if self.destination is None or not self.destination.is_multicast:
                    raise JoinFailed(destination, "join_group needs a multicast destination")
                self.channel.join_group(self.destination.address, interface)
            except JoinFailed:
                self.channel.close()               # Never leak the socket
                raise

        LOG.info("Publisher on %s (default destination: %s)",
                 self.channel.local_endpoint, self.destination or "none")

    @classmethod
    def unicast(cls, reactor: Reactor, address: str, port: int, **kwargs) -> Publisher:
        return cls(reactor, Endpoint(address, port), **kwargs)

    @classmethod
    def multicast(cls, reactor: Reactor, group: str, port: int, **kwargs) -> Publisher:
        if not is_multicast(group):
            raise JoinFailed(group, "not an IPv4 multicast address")
        return cls(reactor, Endpoint(group, port), **kwargs)

    # ---------------------------------------------------------------- publish
    def publish(self, message: Union[str, bytes],
                destination: Optional[EndpointLike] = None,
                length: Optional[int] = None) -> None:
        """Send ``message`` (text path for str, raw path for bytes); never raises."""
        target = destination if destination is not None else self.destination
        if target is None:
            self.channel.report(SendFailed(None, "no destination configured"))
            return
        self.channel.send(message, target, length)

    def flush(self, timeout: Optional[float] = None) -> bool:
        return self.channel.flush(timeout)

    # ---------------------------------------------------------------- lifecycle
    def close(self) -> None:
        self.channel.close()

    def __enter__(self) -> Publisher:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

# ======================================================================
#  Command‑line entry point
# ======================================================================

def main() -> None:
    """Parse CLI args, publish every message, wait for the sends to drain."""
    parser = argparse.ArgumentParser("UDP channel publisher")
    parser.add_argument("address", help="unicast IP or multicast group to publish to")
    parser.add_argument("messages", nargs="*", help="messages to send (default: stdin lines)")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="destination UDP port")
    parser.add_argument("--local-port", type=int, default=0, help="local port (0 = ephemeral)")
    parser.add_argument("--raw", action="store_true", help="send bytes verbatim, no delimiter")
    parser.add_argument("--ttl", type=int, default=None, help="multicast TTL (default: OS setting)")
    parser.add_argument("--log-level", default="INFO", help="logging level name")
    parser.add_argument("--logfile", default=None, help="also log to this rotating file")
    args = parser.parse_args()

    configure_logging(getattr(logging, args.log_level.upper(), logging.INFO), args.logfile)
    init(autoreset=True)                           # Reset colour after each print

    messages = args.messages or [line.rstrip("\n") for line in sys.stdin]

    with Reactor() as reactor:
        with Publisher(reactor, (args.address, args.port), local_port=args.local_port,
                       multicast_ttl=args.ttl) as publisher:
            for text in messages:
                payload = text.encode("utf-8") if args.raw else text
                publisher.publish(payload)
                print(f"{Fore.CYAN}[SENT]{Style.RESET_ALL} {text} → {publisher.destination}")
            if not publisher.flush(timeout=5.0):
                LOG.warning("Gave up waiting for queued datagrams")


if __name__ == "__main__":
    main()

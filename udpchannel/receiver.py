#!/usr/bin/env python3
"""UDP *receiver*: a Channel subscribed to a fixed set of multicast groups.

* Groups are fixed at construction – no add/remove while running.
* Every group must be joined before the receive loop starts; the first
  JoinFailed aborts start_receiving() and the loop stays unarmed.
* Unicast traffic to the bound port is delivered as well.
"""

from __future__ import annotations

import argparse                       # CLI parsing
import logging
from typing import Callable, FrozenSet, Iterable, Optional

from .channel import Channel
from .protocol import ANY_INTERFACE, DEFAULT_GROUP, DEFAULT_PORT, Endpoint, Framing
from .reactor import Reactor
from .util import LOG, ErrorSink, configure_logging, get_local_ip

from colorama import Fore, Style, init

MessageHandler = Callable[[bytes, Endpoint], None]


class Receiver:
    """Joins its groups, then reports ``(payload, sender)`` to its owner."""

    def __init__(self, reactor: Reactor, port: int = DEFAULT_PORT,
                 groups: Iterable[str] = (),
                 handler: Optional[MessageHandler] = None, *,
                 framing: Framing = Framing.TEXT,
                 interface: str = ANY_INTERFACE,
                 host: str = "",
                 error_sink: Optional[ErrorSink] = None) -> None:
        self.groups: FrozenSet[str] = frozenset(groups)
        self.handler = handler
        self.framing = framing
        self.interface = interface

        # ------ bind socket (BindFailed propagates) ------
        self.channel = Channel.open(reactor, port, host=host, error_sink=error_sink)
        self.port = self.channel.local_endpoint.port

    # ================================================================= main ===
    def start_receiving(self, handler: Optional[MessageHandler] = None) -> None:
        """Join every configured group, then arm the channel's receive loop.

        Raises JoinFailed on the first group that cannot be joined; groups
        joined before it stay joined.
        """
        if handler is not None:
            self.handler = handler
        for group in sorted(self.groups):
            self.channel.join_group(group, self.interface)
        self.channel.start_receiving(self._deliver, framing=self.framing)
        LOG.info("Receiver listening on port %d, groups: %s",
                 self.port, ", ".join(sorted(self.groups)) or "none (unicast only)")

    @property
    def receiving(self) -> bool:
        return self.channel.receiving

    def _deliver(self, payload: bytes, sender: Endpoint) -> None:
        handler = self.handler                 # Latest handler wins
        if handler is None:
            LOG.info("Received message from %s: %r", sender, payload)
            return
        handler(payload, sender)

    # ---------------------------------------------------------------- lifecycle
    def close(self) -> None:
        self.channel.close()

    def __enter__(self) -> Receiver:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

# ======================================================================
#  Command‑line entry point
# ======================================================================

def _print_message(payload: bytes, sender: Endpoint) -> None:
    text = payload.decode("utf-8", errors="replace")
    print(f"\r{Fore.GREEN}<{sender}>{Style.RESET_ALL} {text}")


def main() -> None:
    parser = argparse.ArgumentParser("UDP channel receiver")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--group", action="append", default=None,
                        help=f"multicast group to join (repeatable, default: {DEFAULT_GROUP})")
    parser.add_argument("--interface", default=ANY_INTERFACE,
                        help="local interface address used for group membership")
    parser.add_argument("--raw", action="store_true", help="do not strip the text delimiter")
    parser.add_argument("--workers", type=int, default=1, help="reactor worker threads")
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--logfile", default="udpchannel.log")
    args = parser.parse_args()

    configure_logging(getattr(logging, args.log_level.upper(), logging.INFO), args.logfile)
    init(autoreset=True)

    reactor = Reactor()
    reactor.start(args.workers)
    try:
        framing = Framing.RAW if args.raw else Framing.TEXT
        with Receiver(reactor, args.port, args.group or [DEFAULT_GROUP], _print_message,
                      framing=framing, interface=args.interface) as receiver:
            receiver.start_receiving()
            LOG.info("Reachable at %s:%d", get_local_ip(), receiver.port)
            try:
                input("Press Enter to exit...\n")
            except (EOFError, KeyboardInterrupt):
                pass
    finally:
        reactor.close()


if __name__ == "__main__":
    main()

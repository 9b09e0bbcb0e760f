#!/usr/bin/env python3
"""The Channel: one UDP socket, its multicast memberships and its receive loop.

* ``open()`` binds (SO_REUSEADDR) and fails with BindFailed, never leaking the socket.
* ``join_group()`` adds multicast membership; joining twice is a no‑op.
* ``send*()`` are fire‑and‑forget: failures go to the error sink, never raise.
* ``start_receiving()`` keeps exactly one receive armed in the reactor and
  re‑arms it after every delivered datagram.

Callback policy: the callback used for a datagram is whichever one is
registered when that datagram is taken off the socket (last registered
wins).  No callback starts once ``close()`` has returned; called from
outside the reactor, ``close()`` also waits for a callback in progress.
"""

from __future__ import annotations

import ipaddress
import socket                         # UDP socket + multicast options
import struct                         # ip_mreq packing
import threading                      # Delivery / close serialization
from functools import partial
from typing import Callable, FrozenSet, Optional, Union

from .errors import BindFailed, ChannelClosed, JoinFailed, ReceiveFailed, SendFailed, UdpChannelError
from .protocol import (
    ANY_INTERFACE, BUF_SIZE, MULTICAST_NET, Endpoint, EndpointLike, Framing,
    decode_datagram, frame_raw, frame_text,
)
from .reactor import Reactor
from .util import LOG, ErrorSink, log_error

MessageCallback = Callable[[bytes, Endpoint], None]


class Channel:
    """Exclusive owner of one bound datagram socket."""

    def __init__(self, reactor: Reactor, sock: socket.socket, *,
                 buffer_size: int = BUF_SIZE,
                 error_sink: Optional[ErrorSink] = None) -> None:
        # Use Channel.open(); this expects an already bound, non‑blocking socket.
        self.reactor = reactor
        self._sock = sock
        self.local_endpoint = Endpoint.coerce(sock.getsockname())
        self._buffer = bytearray(buffer_size)    # Reused for every datagram
        self._error_sink: ErrorSink = error_sink or log_error

        # ------ multicast membership (copy‑on‑write, readers never lock) ------
        self._groups: FrozenSet[str] = frozenset()
        self._join_lock = threading.Lock()

        # ------ receive loop state ------
        self._on_message: Optional[MessageCallback] = None
        self._framing = Framing.TEXT
        self._armed = False                      # One receive outstanding at most
        self._delivering = False                 # A callback is running right now
        self._closed = False

        # _state guards the receive loop flags; close() waits on it for a
        # callback running on another thread (_delivering) to finish.
        # _io_lock keeps "is it closed?" + "queue in reactor" atomic vs close().
        self._state = threading.Condition()
        self._io_lock = threading.Lock()

    @classmethod
    def open(cls, reactor: Reactor, local_port: int = 0, *,
             host: str = "",
             buffer_size: int = BUF_SIZE,
             error_sink: Optional[ErrorSink] = None,
             multicast_ttl: Optional[int] = None,
             multicast_loop: Optional[bool] = None) -> Channel:
        """Bind a new channel on ``local_port`` (0 = ephemeral).

        Raises BindFailed if the port is taken or invalid; the socket is
        released before the exception propagates.
        """
        if buffer_size <= 0:
            raise ValueError("buffer_size must be positive")

        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)  # Many receivers per port
            sock.bind((host, local_port))
            sock.setblocking(False)
            # Optional hooks; None keeps the OS defaults.
            if multicast_ttl is not None:
                sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, multicast_ttl)
            if multicast_loop is not None:
                sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_LOOP, int(bool(multicast_loop)))
            channel = cls(reactor, sock, buffer_size=buffer_size, error_sink=error_sink)
        except (OSError, OverflowError, TypeError) as exc:
            sock.close()
            raise BindFailed(local_port, exc) from exc

        LOG.info("Channel bound on %s", channel.local_endpoint)
        return channel

    # ============================================================ membership ===
    def join_group(self, address: Union[str, ipaddress.IPv4Address],
                   interface: str = ANY_INTERFACE) -> None:
        """Add ``address`` to this socket's multicast memberships (idempotent)."""
        try:
            group = ipaddress.IPv4Address(address)
        except (ValueError, TypeError) as exc:
            raise JoinFailed(address, exc) from exc
        if group not in MULTICAST_NET:
            raise JoinFailed(address, "not an IPv4 multicast address")

        key = str(group)
        with self._join_lock:
            if self._closed:
                raise JoinFailed(key, "channel is closed")
            if key in self._groups:
                return
            try:
                mreq = struct.pack("4s4s", group.packed, socket.inet_aton(interface))
                self._sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
            except OSError as exc:
                raise JoinFailed(key, exc) from exc
            self._groups = self._groups | {key}

        LOG.info("Channel %s joined multicast group %s", self.local_endpoint, key)

    @property
    def groups(self) -> FrozenSet[str]:
        """Snapshot of the joined multicast groups."""
        return self._groups

    # =============================================================== receive ===
    def start_receiving(self, on_message: MessageCallback, *,
                        framing: Framing = Framing.TEXT) -> None:
        """Register ``on_message(payload, sender)`` and arm the receive loop.

        While already receiving this only swaps the callback (and framing);
        the loop is never armed twice.
        """
        with self._state:
            if self._closed:
                raise ChannelClosed(f"channel {self.local_endpoint} is closed")
            self._on_message = on_message
            self._framing = framing
            if self._armed:
                return
            self._armed = True
            try:
                self._arm()
            except RuntimeError as exc:          # Reactor already closed
                self._armed = False
                raise ChannelClosed(f"cannot receive on {self.local_endpoint}: {exc}", exc) from exc
        LOG.debug("Channel %s receiving (%s framing)", self.local_endpoint, framing.value)

    @property
    def receiving(self) -> bool:
        return self._armed and not self._closed

    def _arm(self) -> None:
        self.reactor.async_recvfrom(self._sock, self._buffer, self._on_receive)

    def _on_receive(self, error: Optional[Exception], nbytes: int, address, truncated: bool) -> None:
        """Reactor completion: deliver one datagram, then re‑arm.

        The callback runs without ``_state`` held, so it may close any
        channel (its own or another one) without lock‑order trouble.
        """
        with self._state:
            if self._closed:
                return
            if error is not None:
                # Terminal for the loop until start_receiving() is called again.
                self._armed = False
                failure: Optional[ReceiveFailed] = ReceiveFailed(self.local_endpoint, error)
            else:
                failure = None
                message = decode_datagram(bytes(self._buffer[:nbytes]), address, self._framing, truncated)
                callback = self._on_message
                self._delivering = True
        if failure is not None:
            self.report(failure)
            return

        if message.truncated:
            LOG.warning("Datagram from %s truncated to %d bytes", message.sender, nbytes)
        try:
            callback(message.payload, message.sender)
        except Exception:
            LOG.exception("Receive callback on %s failed", self.local_endpoint)

        with self._state:
            self._delivering = False
            self._state.notify_all()
            if self._closed:                     # Closed during the callback
                return
            try:
                self._arm()
            except RuntimeError as exc:
                self._armed = False
                failure = ReceiveFailed(self.local_endpoint, exc)
        if failure is not None:
            self.report(failure)

    # ================================================================== send ===
    def send(self, payload: Union[str, bytes], destination: EndpointLike,
             length: Optional[int] = None) -> None:
        """``str`` goes out on the text path, bytes‑like on the raw path."""
        if isinstance(payload, str):
            if length is not None:
                self.report(SendFailed(destination, "length only applies to binary payloads"))
                return
            self.send_text(payload, destination)
        else:
            self.send_bytes(payload, destination, length)

    def send_text(self, message: Union[str, bytes], destination: EndpointLike) -> None:
        """Send ``message`` followed by one delimiter byte."""
        self._submit(partial(frame_text, message), destination)

    def send_bytes(self, data: bytes, destination: EndpointLike,
                   length: Optional[int] = None) -> None:
        """Send the first ``length`` bytes of ``data`` (all by default) verbatim."""
        self._submit(partial(frame_raw, data, length), destination)

    def _submit(self, frame: Callable[[], bytes], destination: EndpointLike) -> None:
        try:
            endpoint = Endpoint.coerce(destination)
            data = frame()                       # Owned copy; caller may reuse its buffer
            with self._io_lock:
                if self._closed:
                    raise ChannelClosed(f"channel {self.local_endpoint} is closed")
                self.reactor.async_sendto(self._sock, data, endpoint.as_tuple(),
                                          partial(self._on_sent, endpoint))
        except (UdpChannelError, RuntimeError, OSError, ValueError, TypeError, IndexError) as exc:
            self.report(SendFailed(destination, exc))
            return
        LOG.debug("Queued %d bytes for %s", len(data), endpoint)

    def _on_sent(self, destination: Endpoint, error: Optional[Exception], nbytes: int) -> None:
        if error is None:
            return
        if self._closed:
            LOG.debug("Send to %s failed after close: %s", destination, error)
            return
        self.report(SendFailed(destination, error))

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait until every queued send was handed to the OS (not from a callback)."""
        return self.reactor.wait_sent(self._sock, timeout)

    # ============================================================= lifecycle ===
    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Cancel the outstanding receive, drop queued sends, release the socket.

        From outside the reactor this also waits for a callback that is
        running right now; from a reactor thread it does not, since that
        callback may itself be waiting on us.
        """
        with self._state:
            with self._io_lock:
                if self._closed:
                    return
                self._closed = True
                dropped = self.reactor.cancel(self._sock)
            self._armed = False
            self._on_message = None
            if self._delivering and not self.reactor.in_worker_thread():
                self._state.wait_for(lambda: not self._delivering)
        self._sock.close()
        LOG.info("Channel %s closed (%d queued operations dropped)", self.local_endpoint, dropped)

    def __enter__(self) -> Channel:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed else ("receiving" if self._armed else "idle")
        return f"<Channel {self.local_endpoint} {state} groups={sorted(self._groups)}>"

    # ------------------------------------------------------------- internals
    def report(self, error: UdpChannelError) -> None:
        """Hand an asynchronous failure to the error sink; never raises."""
        try:
            self._error_sink(error)
        except Exception:
            LOG.exception("Error sink failed while reporting: %s", error)

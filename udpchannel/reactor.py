#!/usr/bin/env python3
"""Shared event loop driving every channel's socket I/O.

One :class:`Reactor` owns a ``selectors`` selector and any number of worker
threads calling :meth:`Reactor.run`.  Callers on other threads only *queue*
operations (``async_recvfrom`` / ``async_sendto``); the actual ``recvmsg`` /
``sendto`` system calls and every completion handler run on a worker thread.

Threads take turns as *leader*: exactly one of them sits in ``select()`` at a
time, pops the operations that became ready and releases the leader lock
before running them, so the next thread can go back to waiting.  A read
operation is one‑shot (popped before it runs), which keeps receives on one
socket strictly single‑flight no matter how many workers there are.
"""

from __future__ import annotations

import selectors                      # Readiness notification (epoll/kqueue/select)
import socket                         # recvmsg_into / sendto + self‑pipe
import threading                      # Worker threads and the locks below
from collections import deque
from functools import partial
from typing import Callable, Deque, Dict, List, Optional, Tuple

from .util import LOG

DEFAULT_SELECT_TIMEOUT: float = 0.5   # Upper bound between stop checks (seconds)

# handler(error, nbytes, address, truncated)
ReadHandler = Callable[[Optional[Exception], int, Optional[Tuple[str, int]], bool], None]
# handler(error, nbytes)
WriteHandler = Callable[[Optional[Exception], int], None]


class _ReadOp:
    __slots__ = ("sock", "buffer", "handler")

    def __init__(self, sock: socket.socket, buffer: bytearray, handler: ReadHandler) -> None:
        self.sock = sock
        self.buffer = buffer
        self.handler = handler


class _WriteOp:
    __slots__ = ("data", "address", "handler")

    def __init__(self, data: bytes, address: Tuple[str, int], handler: WriteHandler) -> None:
        self.data = data
        self.address = address
        self.handler = handler


class _Registration:
    """Per‑socket operation table; only touched with ``Reactor._lock`` held."""

    __slots__ = ("read", "writes", "flushing")

    def __init__(self) -> None:
        self.read: Optional[_ReadOp] = None
        self.writes: Deque[_WriteOp] = deque()
        self.flushing = False             # A worker is draining ``writes`` right now

    def events(self) -> int:
        mask = 0
        if self.read is not None:
            mask |= selectors.EVENT_READ
        if self.writes and not self.flushing:
            mask |= selectors.EVENT_WRITE
        return mask


def _recv_datagram(sock: socket.socket, buffer: bytearray) -> Tuple[int, Tuple[str, int], bool]:
    """Read one datagram into ``buffer``; report whether it was cut short."""
    if hasattr(sock, "recvmsg_into"):
        nbytes, _, flags, address = sock.recvmsg_into([buffer])
        return nbytes, address, bool(flags & getattr(socket, "MSG_TRUNC", 0))
    nbytes, address = sock.recvfrom_into(buffer)      # Windows: no recvmsg
    return nbytes, address, False


class Reactor:
    """Readiness dispatcher shared by all channels of a process."""

    def __init__(self, select_timeout: float = DEFAULT_SELECT_TIMEOUT) -> None:
        self._selector = selectors.DefaultSelector()
        self._select_timeout = select_timeout

        # _lock guards the registration table and selector interest;
        # _leader admits one thread at a time into select().
        self._lock = threading.Lock()
        self._leader = threading.Lock()
        self._registrations: Dict[socket.socket, _Registration] = {}
        self._drained = threading.Condition(self._lock)   # Signalled when a send queue empties

        self._stopping = threading.Event()
        self._threads: List[threading.Thread] = []
        self._local = threading.local()           # .worker is set inside run()
        self._closed = False

        # Self‑pipe: any thread can interrupt a select() in progress.
        self._wake_r, self._wake_w = socket.socketpair()
        self._wake_r.setblocking(False)
        self._wake_w.setblocking(False)
        self._selector.register(self._wake_r, selectors.EVENT_READ)

    # ================================================================= ops ===
    def async_recvfrom(self, sock: socket.socket, buffer: bytearray, handler: ReadHandler) -> None:
        """Arm one receive on ``sock``; ``handler`` runs once on a worker thread."""
        with self._lock:
            self._check_open()
            reg = self._registrations.setdefault(sock, _Registration())
            if reg.read is not None:
                raise RuntimeError("a receive is already outstanding on this socket")
            reg.read = _ReadOp(sock, buffer, handler)
            self._update_interest(sock, reg)
        self._wakeup()

    def async_sendto(self, sock: socket.socket, data: bytes, address: Tuple[str, int],
                     handler: WriteHandler) -> None:
        """Queue one datagram; datagrams on one socket go out in call order."""
        with self._lock:
            self._check_open()
            reg = self._registrations.setdefault(sock, _Registration())
            reg.writes.append(_WriteOp(data, address, handler))
            self._update_interest(sock, reg)
        self._wakeup()

    def cancel(self, sock: socket.socket) -> int:
        """Forget every queued operation for ``sock``; return how many were dropped.

        Handlers of dropped operations are not called.  An operation a worker
        has already picked up still completes.
        """
        with self._lock:
            reg = self._registrations.pop(sock, None)
            if reg is None:
                return 0
            dropped = len(reg.writes) + (reg.read is not None)
            reg.read = None
            reg.writes.clear()
            self._unregister(sock)
            self._drained.notify_all()
        return dropped

    def wait_sent(self, sock: socket.socket, timeout: Optional[float] = None) -> bool:
        """Block until no datagram is queued for ``sock``; False on timeout.

        Must not be called from a worker thread: with a single worker nobody
        would be left to do the sending.
        """
        def idle() -> bool:
            reg = self._registrations.get(sock)
            return reg is None or (not reg.writes and not reg.flushing)

        with self._drained:
            return self._drained.wait_for(idle, timeout)

    # =========================================================== lifecycle ===
    def run(self) -> None:
        """Dispatch completions on the calling thread until :meth:`stop`."""
        self._check_open()
        LOG.debug("Reactor worker %s running", threading.current_thread().name)
        self._local.worker = True
        try:
            while not self._stopping.is_set():
                with self._leader:
                    if self._stopping.is_set():
                        break
                    events = self._selector.select(self._select_timeout)
                    ready = self._collect(events)
                for completion in ready:      # Outside the leader lock
                    completion()
        finally:
            self._local.worker = False
        LOG.debug("Reactor worker %s returned", threading.current_thread().name)

    def stop(self) -> None:
        """Ask every run() to return once its current batch is done."""
        self._stopping.set()
        self._wakeup()

    def restart(self) -> None:
        """Clear a previous stop() so run() can be entered again."""
        self._stopping.clear()

    @property
    def stopped(self) -> bool:
        return self._stopping.is_set()

    def in_worker_thread(self) -> bool:
        """True when called from a thread currently inside :meth:`run`."""
        return getattr(self._local, "worker", False)

    def start(self, workers: int = 1) -> None:
        """Spawn ``workers`` daemon threads running :meth:`run`."""
        if workers < 1:
            raise ValueError("need at least one worker thread")
        for _ in range(workers):
            t = threading.Thread(
                target=self.run,
                name=f"udpchannel-reactor-{len(self._threads)}",
                daemon=True,
            )
            t.start()
            self._threads.append(t)

    def join(self, timeout: Optional[float] = None) -> None:
        current = threading.current_thread()
        for t in self._threads:
            if t is not current:
                t.join(timeout)
        self._threads = [t for t in self._threads if t.is_alive()]

    def close(self) -> None:
        """Stop, wait for our own workers and release the selector."""
        if self._closed:
            return
        self.stop()
        self.join()
        with self._lock:
            self._closed = True
            self._registrations.clear()
            self._drained.notify_all()
        self._selector.close()
        self._wake_r.close()
        self._wake_w.close()

    def __enter__(self) -> Reactor:
        if not self._threads:
            self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ------------------------------------------------------------- internals
    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("reactor is closed")

    def _wakeup(self) -> None:
        try:
            self._wake_w.send(b"\0")
        except OSError:                       # Wakeup already pending, or closed
            pass

    def _drain_wakeup(self) -> None:
        while True:
            try:
                if not self._wake_r.recv(4096):
                    return
            except OSError:                   # BlockingIOError: drained
                return

    def _unregister(self, sock: socket.socket) -> None:
        try:
            self._selector.unregister(sock)
        except (KeyError, ValueError):        # Not registered / already closed
            pass

    def _update_interest(self, sock: socket.socket, reg: _Registration) -> None:
        """Make the selector's interest for ``sock`` match ``reg`` (lock held)."""
        events = reg.events()
        try:
            key = self._selector.get_key(sock)
        except KeyError:
            key = None
        if events == 0:
            if key is not None:
                self._selector.unregister(sock)
        elif key is None:
            self._selector.register(sock, events)
        elif key.events != events:
            self._selector.modify(sock, events)

    def _collect(self, events) -> List[Callable[[], None]]:
        """Turn ready keys into completions, taking the ops out of the table."""
        ready: List[Callable[[], None]] = []
        with self._lock:
            for key, mask in events:
                if key.fileobj is self._wake_r:
                    self._drain_wakeup()
                    continue
                sock = key.fileobj
                reg = self._registrations.get(sock)
                if reg is None:
                    continue
                if mask & selectors.EVENT_READ and reg.read is not None:
                    op, reg.read = reg.read, None
                    ready.append(partial(self._complete_read, reg, op))
                if mask & selectors.EVENT_WRITE and reg.writes and not reg.flushing:
                    batch = list(reg.writes)
                    reg.writes.clear()
                    reg.flushing = True
                    ready.append(partial(self._flush_writes, sock, reg, batch))
                self._update_interest(sock, reg)
        return ready

    def _complete_read(self, reg: _Registration, op: _ReadOp) -> None:
        try:
            nbytes, address, truncated = _recv_datagram(op.sock, op.buffer)
        except (BlockingIOError, InterruptedError):
            # Spurious readiness: put the same op back unless it was cancelled.
            with self._lock:
                if self._registrations.get(op.sock) is reg and reg.read is None:
                    reg.read = op
                    self._update_interest(op.sock, reg)
            self._wakeup()
            return
        except OSError as exc:
            self._invoke(op.handler, exc, 0, None, False)
            return
        self._invoke(op.handler, None, nbytes, address, truncated)

    def _flush_writes(self, sock: socket.socket, reg: _Registration, batch: List[_WriteOp]) -> None:
        pending: Deque[_WriteOp] = deque(batch)
        while pending:
            op = pending[0]
            try:
                nbytes = sock.sendto(op.data, op.address)
            except (BlockingIOError, InterruptedError):
                break                         # Kernel buffer full; wait for writability
            except (OSError, OverflowError, TypeError) as exc:
                pending.popleft()
                self._invoke(op.handler, exc, 0)
                continue
            pending.popleft()
            self._invoke(op.handler, None, nbytes)

        with self._lock:
            if self._registrations.get(sock) is not reg:
                return                        # Cancelled while we were sending
            reg.writes.extendleft(reversed(pending))
            reg.flushing = False
            self._update_interest(sock, reg)
            self._drained.notify_all()
        self._wakeup()

    @staticmethod
    def _invoke(handler: Callable, *args) -> None:
        try:
            handler(*args)
        except Exception:                     # Never let a handler kill a worker
            LOG.exception("Unhandled error in completion handler %r", handler)

"""
Reactor tests: raw sockets driven through async_recvfrom / async_sendto,
without any Channel on top.
"""

import socket
import threading
import time

import pytest

from udpchannel.reactor import Reactor

LOOPBACK = "127.0.0.1"


def _nonblocking_udp():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind((LOOPBACK, 0))
    sock.setblocking(False)
    return sock


def test_run_blocks_until_stop():
    r = Reactor(select_timeout=5.0)       # stop() must not wait for the timeout
    t = threading.Thread(target=r.run)
    t.start()
    time.sleep(0.05)
    assert t.is_alive()

    r.stop()
    t.join(1.0)
    assert not t.is_alive()
    assert r.stopped

    r.restart()
    assert not r.stopped
    r.close()


def test_sends_complete_on_a_worker_thread_in_call_order(reactor, udp_sink, collector_factory):
    sock = _nonblocking_udp()
    done = collector_factory()
    try:
        for n in range(50):
            reactor.async_sendto(sock, b"%d" % n, udp_sink.getsockname(), done)
        assert reactor.wait_sent(sock, 2.0)
        assert done.wait_for(50)

        received = [int(udp_sink.recv(64)) for _ in range(50)]
        assert received == list(range(50))
        assert all(error is None for error, _ in done.calls)
        assert all(t is not threading.current_thread() for t in done.threads)
    finally:
        reactor.cancel(sock)
        sock.close()


def test_receive_is_one_shot(reactor, collector_factory):
    sock = _nonblocking_udp()
    got = collector_factory()
    try:
        reactor.async_recvfrom(sock, bytearray(64), got)
        with pytest.raises(RuntimeError):
            reactor.async_recvfrom(sock, bytearray(64), got)

        sender = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sender.sendto(b"one", sock.getsockname())
        sender.sendto(b"two", sock.getsockname())
        assert got.wait_for(1)
        time.sleep(0.1)
        sender.close()

        assert len(got.calls) == 1
        error, nbytes, address, truncated = got.calls[0]
        assert error is None and nbytes == 3 and not truncated
        assert address[0] == LOOPBACK
    finally:
        reactor.cancel(sock)
        sock.close()


def test_send_failure_is_passed_to_the_handler(reactor, collector_factory):
    sock = _nonblocking_udp()
    done = collector_factory()
    try:
        reactor.async_sendto(sock, b"x", ("127.0.0.1", 70000), done)   # port out of range
        assert done.wait_for(1)
        error, nbytes = done.calls[0]
        assert error is not None and nbytes == 0
    finally:
        reactor.cancel(sock)
        sock.close()


def test_cancel_drops_the_armed_receive(reactor, collector_factory):
    sock = _nonblocking_udp()
    got = collector_factory()
    try:
        reactor.async_recvfrom(sock, bytearray(64), got)
        assert reactor.cancel(sock) == 1
        assert reactor.cancel(sock) == 0

        sender = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sender.sendto(b"late", sock.getsockname())
        sender.close()
        assert not got.wait_for(1, timeout=0.2)
    finally:
        sock.close()


def test_handler_exception_does_not_kill_the_worker(reactor, udp_sink, collector_factory):
    sock = _nonblocking_udp()
    done = collector_factory()

    def explode(error, nbytes):
        raise RuntimeError("boom")

    try:
        reactor.async_sendto(sock, b"a", udp_sink.getsockname(), explode)
        reactor.async_sendto(sock, b"b", udp_sink.getsockname(), done)
        assert done.wait_for(1)
    finally:
        reactor.cancel(sock)
        sock.close()


def test_operations_after_close_raise():
    r = Reactor()
    r.start(2)
    r.close()
    r.close()                             # idempotent
    sock = _nonblocking_udp()
    try:
        with pytest.raises(RuntimeError):
            r.async_sendto(sock, b"x", (LOOPBACK, 9), lambda e, n: None)
        with pytest.raises(RuntimeError):
            r.run()
    finally:
        sock.close()


def test_start_needs_a_worker():
    r = Reactor()
    try:
        with pytest.raises(ValueError):
            r.start(0)
    finally:
        r.close()


def test_context_manager_starts_a_worker(udp_sink, collector_factory):
    sock = _nonblocking_udp()
    done = collector_factory()
    try:
        with Reactor() as r:
            r.async_sendto(sock, b"ctx", udp_sink.getsockname(), done)
            assert done.wait_for(1)
        assert r.stopped
        assert udp_sink.recv(16) == b"ctx"
    finally:
        sock.close()

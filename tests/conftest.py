import socket
import threading

import pytest

from udpchannel import Channel, JoinFailed, Reactor

LOOPBACK = "127.0.0.1"
TEST_GROUP = "239.255.0.1"


class Collector:
    """Thread-safe callback that records every call and lets tests wait for them."""

    def __init__(self):
        self.calls = []
        self.threads = []
        self._cond = threading.Condition()

    def __call__(self, *args):
        with self._cond:
            self.calls.append(args if len(args) != 1 else args[0])
            self.threads.append(threading.current_thread())
            self._cond.notify_all()

    def wait_for(self, count, timeout=2.0):
        with self._cond:
            return self._cond.wait_for(lambda: len(self.calls) >= count, timeout)


@pytest.fixture
def reactor():
    r = Reactor(select_timeout=0.05)
    r.start()
    yield r
    r.close()


@pytest.fixture
def collector_factory():
    """For tests that need more than one collector."""
    return Collector


@pytest.fixture
def collector():
    return Collector()


@pytest.fixture
def errors():
    return Collector()


@pytest.fixture
def channel(reactor, errors):
    ch = Channel.open(reactor, 0, error_sink=errors)
    yield ch
    ch.close()


@pytest.fixture
def loopback(channel):
    """Where to send so that ``channel`` receives it."""
    return (LOOPBACK, channel.local_endpoint.port)


@pytest.fixture
def multicast_channel(channel):
    """A channel that joined TEST_GROUP, or a skip on hosts without multicast."""
    try:
        channel.join_group(TEST_GROUP)
    except JoinFailed as exc:
        pytest.skip(f"multicast unavailable on this host: {exc}")
    return channel


@pytest.fixture
def udp_sink():
    """Plain blocking socket used to observe what the reactor puts on the wire."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind((LOOPBACK, 0))
    sock.settimeout(2.0)
    yield sock
    sock.close()

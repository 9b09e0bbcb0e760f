import socket
import time

import pytest

from udpchannel import (
    Endpoint, Framing, JoinFailed, Publisher, Receiver, SendFailed,
)

LOOPBACK = "127.0.0.1"
TEST_GROUP = "239.255.0.1"


@pytest.fixture
def receiver(reactor, errors):
    rx = Receiver(reactor, 0, error_sink=errors)
    yield rx
    rx.close()


# ------------------------------------------------------------------ publisher

def test_unicast_publish(reactor, receiver, collector):
    receiver.start_receiving(collector)
    with Publisher.unicast(reactor, LOOPBACK, receiver.port) as publisher:
        publisher.publish("Hello")
        assert collector.wait_for(1)

    payload, source = collector.calls[0]
    assert payload == b"Hello"
    assert source == Endpoint(LOOPBACK, publisher.channel.local_endpoint.port)


def test_binary_publish_to_raw_receiver(reactor, errors, collector):
    with Receiver(reactor, 0, handler=collector, framing=Framing.RAW, error_sink=errors) as rx:
        rx.start_receiving()
        with Publisher(reactor, (LOOPBACK, rx.port)) as publisher:
            publisher.publish(b"Test123 plus extra", length=7)
            assert collector.wait_for(1)
    assert collector.calls[0][0] == b"Test123"


def test_publish_destination_override(reactor, receiver, collector):
    receiver.start_receiving(collector)
    with Publisher(reactor) as publisher:
        publisher.publish("direct", (LOOPBACK, receiver.port))
        assert collector.wait_for(1)
    assert collector.calls[0][0] == b"direct"


def test_publish_without_destination_is_reported(reactor, errors):
    with Publisher(reactor, error_sink=errors) as publisher:
        publisher.publish("nowhere")
    assert isinstance(errors.calls[0], SendFailed)


def test_flush_waits_for_queued_sends(reactor, udp_sink):
    with Publisher(reactor, udp_sink.getsockname()) as publisher:
        for n in range(10):
            publisher.publish(b"%d" % n)
        assert publisher.flush(timeout=2.0)
    assert [udp_sink.recv(16) for _ in range(10)] == [b"%d" % n for n in range(10)]


def test_multicast_publisher_rejects_unicast_groups(reactor):
    with pytest.raises(JoinFailed):
        Publisher.multicast(reactor, "10.0.0.1", 8000)


def test_multicast_options_reach_the_socket(reactor):
    with Publisher.multicast(reactor, TEST_GROUP, 8000,
                             multicast_ttl=4, multicast_loop=False) as publisher:
        sock = publisher.channel._sock
        assert sock.getsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL) == 4
        assert sock.getsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_LOOP) == 0


def test_join_group_needs_a_multicast_destination(reactor, monkeypatch):
    created = []

    class TrackingSocket(socket.socket):
        def __init__(self, *args, **kwargs):
            super().__init__(*args, **kwargs)
            created.append(self)

    monkeypatch.setattr(socket, "socket", TrackingSocket)
    with pytest.raises(JoinFailed):
        Publisher(reactor, (LOOPBACK, 8000), join_group=True)
    monkeypatch.undo()
    assert created and all(s.fileno() == -1 for s in created)


def test_multicast_publisher_hears_itself(reactor, collector):
    try:
        publisher = Publisher.multicast(reactor, TEST_GROUP, 0, join_group=True)
    except JoinFailed as exc:
        pytest.skip(f"multicast unavailable on this host: {exc}")
    with publisher:
        assert publisher.channel.groups == frozenset({TEST_GROUP})
        # Port 0 cannot be a destination; aim at our own bound port instead.
        own = Endpoint(TEST_GROUP, publisher.channel.local_endpoint.port)
        publisher.channel.start_receiving(collector)
        publisher.publish("echo", own)
        if not collector.wait_for(1):
            pytest.skip("no multicast loopback route on this host")
    assert collector.calls[0][0] == b"echo"


# ------------------------------------------------------------------- receiver

def test_receiver_groups_are_fixed(reactor):
    with Receiver(reactor, 0, ["239.255.0.2", "239.255.0.1", "239.255.0.1"]) as rx:
        assert rx.groups == frozenset({"239.255.0.1", "239.255.0.2"})
        assert isinstance(rx.groups, frozenset)


def test_receiver_does_not_start_when_a_join_fails(reactor, errors):
    with Receiver(reactor, 0, ["10.9.9.9"], error_sink=errors) as rx:
        with pytest.raises(JoinFailed):
            rx.start_receiving(lambda p, s: None)
        assert not rx.receiving


def test_receiver_scenario_two_groups(reactor, collector):
    groups = ["239.255.0.1", "239.255.0.2"]
    with Receiver(reactor, 0, groups) as rx:
        try:
            rx.start_receiving(collector)
        except JoinFailed as exc:
            pytest.skip(f"multicast unavailable on this host: {exc}")
        assert rx.channel.groups == frozenset(groups)

        with Publisher(reactor, local_port=0) as publisher:
            publisher.publish("Hello", (groups[0], rx.port))
            publisher.publish("World", (groups[1], rx.port))
            if not collector.wait_for(2):
                pytest.skip("no multicast loopback route on this host")
    assert sorted(p for p, _ in collector.calls) == [b"Hello", b"World"]


def test_receiver_without_handler_logs(reactor, receiver, caplog):
    caplog.set_level("INFO", logger="udpchannel")
    receiver.start_receiving()
    with Publisher.unicast(reactor, LOOPBACK, receiver.port) as publisher:
        publisher.publish("logged")
        deadline = time.monotonic() + 2.0
        while "logged" not in caplog.text and time.monotonic() < deadline:
            time.sleep(0.02)
    assert "Received message from" in caplog.text


def test_receiver_handler_can_be_replaced(reactor, receiver, collector_factory):
    first, second = collector_factory(), collector_factory()
    receiver.start_receiving(first)
    with Publisher.unicast(reactor, LOOPBACK, receiver.port) as publisher:
        publisher.publish("1")
        assert first.wait_for(1)
        receiver.start_receiving(second)
        publisher.publish("2")
        assert second.wait_for(1)
    assert [p for p, _ in first.calls] == [b"1"]
    assert [p for p, _ in second.calls] == [b"2"]

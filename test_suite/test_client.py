"""
Tests for the benchmark client, end to end against the real server over
TCP loopback and against servers that break the protocol on purpose.
"""
import logging

import pytest

import socktest.client
from socktest.client import BenchmarkClient, first_mismatch
from socktest.errors import (
    AllocationError, ConnectError, IntegrityError, OptionError, ProtocolError, TransferError,
)
from socktest.protocol import ACK, CMD_STOP, MAX_BUFFER_SIZE
from socktest.server import SessionStatus
from socktest.transport import TcpTransport, TransportState

from .servers import Misbehavior, MisbehavingServer
from .utils import get_free_port, wait_until

# Test parameters
BUFFER_SIZES = [
    1,              # single byte
    7,              # trailing partial word only
    8,              # exactly one word
    4096,           # 4 KB
    1024 * 1024 + 3,  # 1 MB and a tail
]


def make_client(subsystem, repeat, size, **kwargs):
    kwargs.setdefault("delay", 0)
    return BenchmarkClient(TcpTransport(subsystem=subsystem), repeat, size, **kwargs)


def test_three_iterations_of_4k(benchmark_server, subsystem):
    reported = []
    client = make_client(subsystem, 3, 4096, reporter=reported.append)
    with client.transport:
        results = client.run(benchmark_server.options)

    assert len(results) == 3
    assert reported == results
    for index, result in enumerate(results):
        assert result.index == index
        assert result.size == 4096
        assert result.send_us > 0
        # the echo is usually already queued when the ack arrives, so copying
        # 4 KiB out of the socket can finish inside one truncated microsecond
        assert result.recv_us >= 0

    assert wait_until(lambda: benchmark_server.server.sessions == 1)
    outcome = benchmark_server.server.last_outcome
    assert outcome.status is SessionStatus.STOPPED
    assert outcome.cycles == 3
    assert outcome.buffer_size == 4096

    # server keeps accepting after the client is gone
    again = make_client(subsystem, 1, 16)
    with again.transport:
        assert len(again.run(benchmark_server.options)) == 1
    assert wait_until(lambda: benchmark_server.server.sessions == 2)


@pytest.mark.parametrize("size", BUFFER_SIZES)
def test_round_trip_sizes(benchmark_server, subsystem, size):
    client = make_client(subsystem, 2, size)
    with client.transport:
        results = client.run(benchmark_server.options)
    assert [r.size for r in results] == [size, size]


def test_disconnect_as_stop(benchmark_server, subsystem):
    client = make_client(subsystem, 1, 64, send_stop=False)
    with client.transport:
        client.run(benchmark_server.options)

    assert wait_until(lambda: benchmark_server.server.sessions == 1)
    assert benchmark_server.server.last_outcome.status is SessionStatus.DISCONNECTED


def test_delay_between_iterations_only(benchmark_server, subsystem):
    pauses = []
    client = make_client(subsystem, 3, 32, delay=0.5, sleep=pauses.append)
    with client.transport:
        client.run(benchmark_server.options)
    assert pauses == [0.5, 0.5]


@pytest.mark.parametrize("repeat, size, message", [
    (3, 0, "Invalid buffer size"),
    (3, -5, "Invalid buffer size"),
    (3, MAX_BUFFER_SIZE + 1, "Invalid buffer size"),
    (0, 4096, "Nothing to do"),
])
def test_invalid_arguments_abort_before_connecting(subsystem, repeat, size, message):
    # nothing listens here; reaching connect() would raise ConnectError instead
    options = {"host": "127.0.0.1", "port": str(get_free_port())}
    client = make_client(subsystem, repeat, size)
    with client.transport:
        with pytest.raises(OptionError, match=message):
            client.run(options)
        assert client.transport.state is TransportState.UNBOUND


def test_connect_failure(subsystem):
    client = make_client(subsystem, 1, 16)
    with client.transport:
        with pytest.raises(ConnectError):
            client.run({"host": "127.0.0.1", "port": str(get_free_port())})


def out_of_memory(size):
    raise MemoryError


def test_allocation_failure(benchmark_server, subsystem, monkeypatch):
    monkeypatch.setattr(socktest.client, "random_bytes", out_of_memory)
    client = make_client(subsystem, 1, 16)
    with client.transport:
        with pytest.raises(AllocationError, match="Unable to allocate 2x 16 bytes"):
            client.run(benchmark_server.options)
    assert client.results == []


def test_large_payload_hint(benchmark_server, subsystem, monkeypatch, caplog):
    monkeypatch.setattr(socktest.client, "LARGE_PAYLOAD", 64)
    caplog.set_level(logging.INFO, logger="socktest.client")
    client = make_client(subsystem, 1, 64)
    with client.transport:
        client.run(benchmark_server.options)
    assert "takes a while for 64 bytes" in caplog.text


class LoopbackTransport:
    """Echoes the last payload sent and records whether the receive buffer was clear."""

    def __init__(self):
        self.sent = []
        self.dirty = []

    def connect(self, options):
        pass

    def send_all(self, data):
        self.sent.append(bytes(data))

    def recv_exact(self, size):
        return bytearray((ACK,))

    def recv_all(self, buffer):
        self.dirty.append(any(buffer))
        buffer[:] = self.sent[-1]


def test_receive_buffer_cleared_every_iteration():
    transport = LoopbackTransport()
    client = BenchmarkClient(transport, 3, 100, delay=0)
    assert len(client.run({})) == 3
    assert transport.dirty == [False, False, False]
    assert transport.sent[-1] == bytes((CMD_STOP,))


def test_corrupted_echo_is_fatal(subsystem):
    server = MisbehavingServer(Misbehavior.CORRUPT, corrupt_offset=1234)
    server.start()
    assert server.wait_ready()
    try:
        reported = []
        client = make_client(subsystem, 5, 4096, reporter=reported.append)
        with client.transport:
            with pytest.raises(IntegrityError) as excinfo:
                client.run(server.options)
        assert excinfo.value.offset == 1234
        assert excinfo.value.size == 4096
        assert reported == []
        assert client.results == []
    finally:
        server.stop()


def test_bad_ack(subsystem):
    server = MisbehavingServer(Misbehavior.BAD_ACK)
    server.start()
    assert server.wait_ready()
    try:
        client = make_client(subsystem, 2, 128)
        with client.transport:
            with pytest.raises(ProtocolError, match="ack"):
                client.run(server.options)
    finally:
        server.stop()


def test_server_hangup(subsystem):
    server = MisbehavingServer(Misbehavior.HANGUP)
    server.start()
    assert server.wait_ready()
    try:
        client = make_client(subsystem, 2, 128)
        with client.transport:
            # the hangup surfaces as a failed send or as a closed connection
            with pytest.raises(TransferError):
                client.run(server.options)
    finally:
        server.stop()


def test_first_mismatch():
    assert first_mismatch(b"abc", b"abc") is None
    assert first_mismatch(b"abc", bytearray(b"abd")) == 2
    assert first_mismatch(b"abc", b"ab") == 2

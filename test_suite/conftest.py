import socket

import pytest

from socktest.netsys import NetworkSubsystem
from socktest.server import BenchmarkServer
from socktest.transport import TcpTransport, Transport

from .servers import BenchmarkServerThread


@pytest.fixture
def subsystem():
    """A private subsystem handle, so refcounts start at zero in every test."""
    return NetworkSubsystem("test")


@pytest.fixture
def benchmark_server(subsystem):
    server = BenchmarkServerThread(subsystem=subsystem)
    server.start()
    assert server.wait_ready(), f"benchmark server failed to start: {server.error}"
    yield server
    server.stop()


@pytest.fixture
def session_pair(subsystem):
    """
    A connected (server-side transport, raw peer socket) pair plus a
    BenchmarkServer to drive handle_session() on it directly.
    Usage: conn, peer, server = session_pair
    """
    a, b = socket.socketpair()
    b.settimeout(5)
    conn = Transport(sock=a, subsystem=subsystem)
    server = BenchmarkServer(TcpTransport(subsystem=subsystem))
    yield conn, b, server
    conn.close()
    server.transport.close()
    b.close()

import select
import socket
import sys
import threading
from enum import Enum

from socktest.protocol import ACK, CMD_RUN, SIZE_HEADER
from socktest.server import BenchmarkServer
from socktest.transport import TcpTransport

from .utils import recv_all


class BenchmarkServerThread(threading.Thread):
    """Runs a real BenchmarkServer over TCP loopback in a daemon thread."""

    def __init__(self, host='127.0.0.1', port=0, subsystem=None):
        super().__init__()
        self.host = host
        self.port = port
        self.actual_port = 0
        self.ready = threading.Event()
        self.error = None
        self.daemon = True
        self.server = BenchmarkServer(TcpTransport(subsystem=subsystem), {"host": host, "port": str(port)})

    def run(self):
        try:
            self.server.bind()
            self.actual_port = self.server.transport.local_address()[1]
            self.ready.set()
            self.server.serve_forever()
        except Exception as e:
            self.error = e
            print(f"BenchmarkServerThread error: {e}", file=sys.stderr)
        finally:
            self.ready.set()

    def wait_ready(self, timeout=5):
        return self.ready.wait(timeout) and self.error is None

    def stop(self):
        self.server.stop()
        self.join(timeout=2)

    @property
    def options(self):
        return {"host": self.host, "port": str(self.actual_port)}


class Misbehavior(Enum):
    """Ways the scripted server deviates from the echo protocol."""
    CORRUPT = "corrupt"        # Echo with one byte flipped
    BAD_ACK = "bad_ack"        # Ack with a value other than 1
    HANGUP = "hangup"          # Close right after the size header


class MisbehavingServer(threading.Thread):
    """
    Raw-socket server speaking just enough of the benchmark protocol to
    break it in one specific way, for exercising client error paths.
    """

    def __init__(self, mode, corrupt_offset=0, host='127.0.0.1', port=0):
        super().__init__()
        self.mode = mode
        self.corrupt_offset = corrupt_offset
        self.host = host
        self.port = port
        self.actual_port = 0
        self.running = True
        self.ready = threading.Event()
        self.sock = None
        self.daemon = True

    def run(self):
        try:
            self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            self.sock.bind((self.host, self.port))
            self.actual_port = self.sock.getsockname()[1]
            self.sock.listen(1)
            self.ready.set()

            while self.running:
                try:
                    r, _, _ = select.select([self.sock], [], [], 0.5)
                    if not r:
                        continue
                    conn, addr = self.sock.accept()
                    self.handle_client(conn)
                except (OSError, ValueError):
                    break
        except Exception as e:
            print(f"MisbehavingServer error: {e}", file=sys.stderr)
        finally:
            if self.sock:
                self.sock.close()

    def handle_client(self, conn):
        try:
            (size,) = SIZE_HEADER.unpack(recv_all(conn, SIZE_HEADER.size))
            if self.mode is Misbehavior.HANGUP:
                return
            while True:
                command = conn.recv(1)
                if command != bytes((CMD_RUN,)):
                    break
                data = bytearray(recv_all(conn, size, chunk_size=65536))
                if self.mode is Misbehavior.BAD_ACK:
                    conn.sendall(bytes((ACK + 1,)))
                else:
                    conn.sendall(bytes((ACK,)))
                if self.mode is Misbehavior.CORRUPT:
                    data[self.corrupt_offset] ^= 0xFF
                conn.sendall(data)
        except (OSError, ConnectionError, RuntimeError):
            pass  # Expected once the client gives up
        finally:
            conn.close()

    def wait_ready(self, timeout=5):
        return self.ready.wait(timeout)

    def stop(self):
        self.running = False
        if self.sock:
            try:
                self.sock.close()
            except OSError:
                pass
        self.join(timeout=2)

    @property
    def options(self):
        return {"host": self.host, "port": str(self.actual_port)}

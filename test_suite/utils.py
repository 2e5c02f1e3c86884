import socket
import time


def get_free_port():
    """
    Get a free port on localhost.
    Note: There's an inherent race condition between this function returning
    and the caller binding to the port. We use SO_REUSEADDR to mitigate this.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


def wait_until(predicate, timeout=5.0, interval=0.01):
    """Poll `predicate` until it is true or `timeout` expires."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def recv_all(sock, size, chunk_size=4096):
    """
    Receive exactly size bytes from a socket.
    Respects socket timeout settings. Raises RuntimeError on connection loss,
    socket.timeout on timeout.
    """
    chunks = []
    bytes_recd = 0
    while bytes_recd < size:
        to_recv = min(size - bytes_recd, chunk_size)
        try:
            chunk = sock.recv(to_recv)
        except socket.timeout:
            raise socket.timeout(f"Timed out after receiving {bytes_recd}/{size} bytes")
        if chunk == b'':
            raise RuntimeError(f"Socket connection broken after receiving {bytes_recd}/{size} bytes")
        chunks.append(chunk)
        bytes_recd += len(chunk)
    return b''.join(chunks)


def recv_until_close(sock):
    """Receive data until the other end closes the connection."""
    chunks = []
    while True:
        try:
            chunk = sock.recv(4096)
            if not chunk:
                break
            chunks.append(chunk)
        except socket.timeout:
            break
        except OSError:
            break
    return b''.join(chunks)


class ChunkedSocket:
    """
    Socket stand-in that moves at most `max_chunk` bytes per call.

    Reads are served from `incoming`; once it is exhausted recv_into returns
    0 like a peer that closed. Writes are collected in `outgoing`. Set
    `fail_after` to raise ConnectionResetError once that many bytes have been
    moved in either direction.
    """

    def __init__(self, incoming=b"", max_chunk=1, fail_after=None):
        self.incoming = bytearray(incoming)
        self.outgoing = bytearray()
        self.max_chunk = max_chunk
        self.fail_after = fail_after
        self.moved = 0
        self.calls = 0
        self.closed = False

    def _check_failure(self):
        if self.fail_after is not None and self.moved >= self.fail_after:
            raise ConnectionResetError("Connection reset by peer")

    def send(self, data):
        self.calls += 1
        self._check_failure()
        n = min(len(data), self.max_chunk)
        self.outgoing += bytes(data[:n])
        self.moved += n
        return n

    def recv_into(self, buffer, nbytes=0, flags=0):
        self.calls += 1
        self._check_failure()
        n = min(nbytes or len(buffer), self.max_chunk, len(self.incoming))
        buffer[:n] = self.incoming[:n]
        del self.incoming[:n]
        self.moved += n
        return n

    def shutdown(self, how):
        pass

    def close(self):
        self.closed = True

"""
Process-wide networking subsystem handle.

Every transport holds one reference for as long as it owns a socket. The
subsystem starts on the first reference and is torn down when the last one
is released, so no transport can outlive it.
"""

import logging
import socket
import threading

logger = logging.getLogger(__name__)


class NetworkSubsystem:
    def __init__(self, name="default"):
        self.name = name
        self.refcount = 0
        self.started = False
        self.start_count = 0
        self._lock = threading.Lock()

    def acquire(self):
        with self._lock:
            if not self.started:
                self._startup()
            self.refcount += 1
            return self.refcount

    def release(self):
        with self._lock:
            if self.refcount <= 0:
                raise RuntimeError(f"Network subsystem '{self.name}' released more times than acquired")
            self.refcount -= 1
            if self.refcount == 0:
                self._cleanup()
            return self.refcount

    def _startup(self):
        # Python performs any platform socket library init at import time;
        # probing the resolver surfaces a broken stack before the first bind.
        try:
            socket.getaddrinfo(None, 0, socket.AF_INET, socket.SOCK_STREAM, 0, socket.AI_PASSIVE)
        except OSError as e:
            raise RuntimeError(f"Unable to start network subsystem: {e}") from e
        self.started = True
        self.start_count += 1
        logger.debug("Network subsystem '%s' started", self.name)

    def _cleanup(self):
        self.started = False
        logger.debug("Network subsystem '%s' stopped", self.name)

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False


default_subsystem = NetworkSubsystem()

"""
Benchmark server.

Accepts one connection at a time and runs it through the session state
machine until the client stops, disconnects or violates the protocol.
Whatever ends a session, the server logs one line and goes back to
listening.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import AcceptError, InvalidTransportError, PeerClosedError, ProtocolError, TransferError
from .protocol import ACK, CMD_RUN, CMD_STOP, SIZE_HEADER, check_buffer_size, command_byte, unpack_size
from .transport import TransportState

logger = logging.getLogger(__name__)


class SessionState(Enum):
    AWAITING_SIZE = "awaiting size"
    AWAITING_COMMAND = "awaiting command"
    RECEIVING = "receiving"
    SENDING = "sending"


class SessionStatus(Enum):
    STOPPED = "stopped"
    DISCONNECTED = "disconnected"
    PROTOCOL_ERROR = "protocol error"
    TRANSFER_ERROR = "transfer error"
    ALLOCATION_ERROR = "allocation error"


@dataclass(frozen=True)
class SessionOutcome:
    status: SessionStatus
    message: str
    cycles: int = 0
    buffer_size: Optional[int] = None

    @property
    def clean(self):
        """True when the client ended the session rather than an error."""
        return self.status in (SessionStatus.STOPPED, SessionStatus.DISCONNECTED)


class Session:
    """Per-connection state: the negotiated size and the echo buffer."""

    def __init__(self, conn):
        self.conn = conn
        self.buffer_size = None
        self.buffer = None
        self.cycles = 0

    def end(self, status, message):
        return SessionOutcome(status, message, self.cycles, self.buffer_size)


class BenchmarkServer:
    def __init__(self, transport, options=None):
        self.transport = transport
        self.options = dict(options or {})
        self.sessions = 0
        self.last_outcome = None
        self._stopped = threading.Event()
        self._steps = {
            SessionState.AWAITING_SIZE: self._await_size,
            SessionState.AWAITING_COMMAND: self._await_command,
            SessionState.RECEIVING: self._receive,
            SessionState.SENDING: self._send,
        }

    def bind(self):
        self.transport.bind(self.options)

    def serve_forever(self, max_sessions=None):
        """
        Accept and handle connections sequentially until stop() is called or
        `max_sessions` sessions have completed.
        """
        try:
            if self.transport.state is TransportState.UNBOUND:
                self.bind()
            while not self._stopped.is_set():
                if max_sessions is not None and self.sessions >= max_sessions:
                    break
                logger.info("Waiting for connection ...")
                try:
                    conn = self.transport.accept()
                except (AcceptError, InvalidTransportError) as e:
                    if self._stopped.is_set():
                        break
                    if isinstance(e, InvalidTransportError):
                        raise
                    logger.error("%s", e)
                    continue

                with conn:
                    if conn.peer:
                        logger.info("Accepted connection from %s", conn.peer)
                    self.last_outcome = self.handle_session(conn)
                self.sessions += 1
        finally:
            self.transport.close()

    def stop(self):
        """Ask serve_forever() to return, waking a blocked accept()."""
        self._stopped.set()
        self.transport.interrupt()

    # -------------------------
    # session state machine
    # -------------------------

    def handle_session(self, conn):
        """Run one connection to completion and return its SessionOutcome."""
        session = Session(conn)
        state = SessionState.AWAITING_SIZE
        while isinstance(state, SessionState):
            state = self._step(session, state)
        self._log_outcome(state)
        return state

    def _step(self, session, state):
        try:
            return self._steps[state](session)
        except ProtocolError as e:
            return session.end(SessionStatus.PROTOCOL_ERROR, str(e))
        except TransferError as e:
            return session.end(SessionStatus.TRANSFER_ERROR, f"{state.value}: {e}")

    def _await_size(self, session):
        size = check_buffer_size(unpack_size(session.conn.recv_exact(SIZE_HEADER.size)))
        logger.info("Client requested buffer size of %d. Allocating ...", size)
        try:
            # bytearray() zero-fills, which also touches every page
            session.buffer = bytearray(size)
        except MemoryError:
            return session.end(SessionStatus.ALLOCATION_ERROR, f"Unable to allocate {size} bytes")
        session.buffer_size = size
        return SessionState.AWAITING_COMMAND

    def _await_command(self, session):
        try:
            (command,) = session.conn.recv_exact(1)
        except PeerClosedError:
            return session.end(SessionStatus.DISCONNECTED, "Client disconnected")
        if command == CMD_RUN:
            return SessionState.RECEIVING
        if command == CMD_STOP:
            return session.end(SessionStatus.STOPPED, "Client asked to stop")
        raise ProtocolError(f"Unknown command {command}")

    def _receive(self, session):
        logger.debug("Processing data from client ...")
        session.conn.recv_all(session.buffer)
        return SessionState.SENDING

    def _send(self, session):
        session.conn.send_all(command_byte(ACK))
        session.conn.send_all(session.buffer)
        session.cycles += 1
        return SessionState.AWAITING_COMMAND

    def _log_outcome(self, outcome):
        if outcome.clean:
            logger.info("%s after %d cycle(s)", outcome.message, outcome.cycles)
        else:
            logger.warning("Session ended (%s): %s", outcome.status.value, outcome.message)

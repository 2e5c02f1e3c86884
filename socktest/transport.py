"""
Stream transports.

A Transport owns exactly one socket and is either unbound, listening
(server role), connected (either role) or closed. The variants only differ
in address family and in how their `key=value` options turn into a socket
address; binding, accepting and the whole-buffer transfer loops live once
in the base class.
"""

import logging
import socket
import uuid
from collections import OrderedDict
from enum import Enum

from .errors import (
    AcceptError,
    BindError,
    ConnectError,
    InvalidTransportError,
    OptionError,
    PeerClosedError,
    TransferError,
)
from .netsys import default_subsystem

logger = logging.getLogger(__name__)

LISTEN_BACKLOG = 1

RECV_FLAGS = getattr(socket, "MSG_WAITALL", 0)

HV_GUID_ZERO = "00000000-0000-0000-0000-000000000000"
HV_GUID_LOOPBACK = "e0e16197-dd56-4a10-9195-5ee7a155a838"
HV_PROTOCOL_RAW = 1

VMADDR_CID_ANY = 0xFFFFFFFF
VMADDR_CID_LOCAL = 1


class TransportState(Enum):
    UNBOUND = "unbound"
    LISTENING = "listening"
    CONNECTED = "connected"
    CLOSED = "closed"


class Transport:
    """
    Base stream transport.

    Construct without a socket to get an unbound transport, or pass an
    already connected socket-like object (anything with send, recv_into and
    close) to wrap it in the connected state.
    """
    name = "(unknown socket)"
    family_name = None
    sock_type = socket.SOCK_STREAM
    proto = 0
    PARAMS = OrderedDict()

    def __init__(self, sock=None, subsystem=None, peer=None):
        self.subsystem = subsystem if subsystem is not None else default_subsystem
        self.subsystem.acquire()
        self.sock = sock
        self.peer = peer
        self.state = TransportState.CONNECTED if sock is not None else TransportState.UNBOUND

    def __repr__(self):
        return f"<{type(self).__name__} {self.state.value}>"

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    @classmethod
    def available(cls):
        """True when the running interpreter supports this address family."""
        return cls.family_name is not None and hasattr(socket, cls.family_name)

    @classmethod
    def describe_parameters(cls):
        return OrderedDict(cls.PARAMS)

    @property
    def is_valid(self):
        return self.sock is not None and self.state in (TransportState.LISTENING, TransportState.CONNECTED)

    def local_address(self):
        self._require((TransportState.LISTENING, TransportState.CONNECTED), "query the address of")
        return self.sock.getsockname()

    # -------------------------
    # lifecycle
    # -------------------------

    def bind(self, options):
        """Bind to the address described by `options` and start listening."""
        self._require((TransportState.UNBOUND,), "bind")
        if not self.available():
            raise BindError(f"{self.name} is not supported on this platform")
        try:
            address = self._bind_address(options)
        except OptionError as e:
            raise BindError(str(e)) from e
        except OSError as e:
            raise BindError(f"Error parsing specified address: {e}") from e

        sock = self._new_socket(BindError)
        try:
            self._prepare_listener(sock)
            sock.bind(address)
            sock.listen(LISTEN_BACKLOG)
        except OSError as e:
            sock.close()
            raise BindError(f"Error binding socket to {self.format_address(address)}: {e}") from e

        self.sock = sock
        self.state = TransportState.LISTENING
        logger.debug("%s listening on %s", self.name, self.format_address(address))

    def connect(self, options):
        """Connect to the peer described by `options`."""
        self._require((TransportState.UNBOUND,), "connect")
        if not self.available():
            raise ConnectError(f"{self.name} is not supported on this platform")
        try:
            address = self._connect_address(options)
        except OptionError as e:
            raise ConnectError(str(e)) from e
        except OSError as e:
            raise ConnectError(f"Error parsing specified address: {e}") from e

        sock = self._new_socket(ConnectError)
        try:
            sock.connect(address)
        except OSError as e:
            sock.close()
            raise ConnectError(f"Error connecting to {self.format_address(address)}: {e}") from e

        self.sock = sock
        self.state = TransportState.CONNECTED
        logger.debug("%s connected to %s", self.name, self.format_address(address))

    def accept(self):
        """
        Block until a peer connects and return it as a connected transport of
        the same variant. Can be called repeatedly while listening.
        """
        self._require((TransportState.LISTENING,), "accept on")
        try:
            conn, peer = self.sock.accept()
        except OSError as e:
            raise AcceptError(f"Connection error: {e}") from e
        return type(self)(sock=conn, subsystem=self.subsystem, peer=peer)

    def interrupt(self):
        """Wake a thread blocked in accept() or a transfer on this transport."""
        sock = self.sock
        if sock is None or not self.is_valid:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            logger.debug("Error shutting down %s: %s", self.name, e)

    def close(self):
        if self.state is TransportState.CLOSED:
            return
        if self.sock is not None:
            try:
                self.sock.close()
            except OSError as e:
                logger.debug("Error closing %s: %s", self.name, e)
            self.sock = None
        self.state = TransportState.CLOSED
        self.subsystem.release()

    # -------------------------
    # transfer
    # -------------------------

    def send_all(self, data):
        """Send the whole buffer, looping over partial sends."""
        self._require((TransportState.CONNECTED,), "send on")
        view = memoryview(data).cast("B")
        total = len(view)
        sent = 0
        while sent < total:
            try:
                n = self.sock.send(view[sent:])
            except OSError as e:
                raise TransferError(f"Error sending data after {sent}/{total} bytes: {e}") from e
            if n == 0:
                raise TransferError(f"Socket connection broken after sending {sent}/{total} bytes")
            sent += n
        return total

    def recv_all(self, buffer):
        """
        Fill the whole writable buffer, looping over partial receives.
        Never reads past the end of `buffer`.
        """
        self._require((TransportState.CONNECTED,), "receive on")
        view = memoryview(buffer).cast("B")
        total = len(view)
        received = 0
        while received < total:
            try:
                n = self.sock.recv_into(view[received:], total - received, RECV_FLAGS)
            except OSError as e:
                raise TransferError(f"Error receiving data after {received}/{total} bytes: {e}") from e
            if n == 0:
                raise PeerClosedError(f"Connection closed by peer after receiving {received}/{total} bytes")
            received += n
        return total

    def recv_exact(self, size):
        buf = bytearray(size)
        self.recv_all(buf)
        return buf

    # -------------------------
    # variant hooks
    # -------------------------

    def _bind_address(self, options):
        raise InvalidTransportError(f"Operation not supported by {self.name}")

    def _connect_address(self, options):
        raise InvalidTransportError(f"Operation not supported by {self.name}")

    def _prepare_listener(self, sock):
        pass

    def format_address(self, address):
        return str(address)

    def _new_socket(self, error_cls):
        try:
            return socket.socket(getattr(socket, self.family_name), self.sock_type, self.proto)
        except OSError as e:
            raise error_cls(f"Unable to create {self.name}: {e}") from e

    def _require(self, states, action):
        if self.state not in states:
            raise InvalidTransportError(f"Cannot {action} a {self.state.value} {self.name}")


class TcpTransport(Transport):
    name = "TCP socket"
    family_name = "AF_INET"
    proto = socket.IPPROTO_TCP
    PARAMS = OrderedDict([
        ("host", "Hostname to bind or connect to."),
        ("port", "TCP port number for bind or connect to."),
    ])

    def _bind_address(self, options):
        return self._resolve(options.get("host"), options)

    def _connect_address(self, options):
        if "host" not in options:
            raise OptionError("Address must be specified.")
        return self._resolve(options["host"], options)

    def _resolve(self, host, options):
        if "port" not in options:
            raise OptionError("Port must be specified.")
        infos = socket.getaddrinfo(host, options["port"], socket.AF_INET, socket.SOCK_STREAM,
                                   socket.IPPROTO_TCP, socket.AI_PASSIVE)
        if not infos:
            raise OptionError(f"No address found for {host}:{options['port']}")
        return infos[0][4]

    def _prepare_listener(self, sock):
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

    def format_address(self, address):
        return f"{address[0]}:{address[1]}"


def _parse_guid(value, message):
    try:
        return str(uuid.UUID(value))
    except (TypeError, ValueError) as e:
        raise OptionError(message) from e


class HyperVTransport(Transport):
    name = "Hyper-V socket"
    family_name = "AF_HYPERV"
    proto = HV_PROTOCOL_RAW
    PARAMS = OrderedDict([
        ("appid", "Service GUID. See https://docs.microsoft.com/en-us/virtualization/"
                  "hyper-v-on-windows/user-guide/make-integration-service"),
        ("addr", "Target VM GUID to bind or connect. Defaults to HV_GUID_ZERO for server, "
                 "or HV_GUID_LOOPBACK for client. See link above, or use 'hcsdiag list'."),
    ])

    def _bind_address(self, options):
        return self._address(options, HV_GUID_ZERO)

    def _connect_address(self, options):
        return self._address(options, HV_GUID_LOOPBACK)

    def _address(self, options, default_vm):
        vm_id = _parse_guid(options.get("addr", default_vm), "Invalid VM address GUID.")
        if "appid" not in options:
            raise OptionError("Service GUID (appid) must be specified.")
        service_id = _parse_guid(options["appid"], "Invalid service GUID.")
        return (vm_id, service_id)

    def format_address(self, address):
        return f"{{{address[0]}}}:{{{address[1]}}}"


def _parse_u32(value, message):
    try:
        n = int(value, 0)
    except (TypeError, ValueError) as e:
        raise OptionError(message) from e
    if not 0 <= n <= 0xFFFFFFFF:
        raise OptionError(message)
    return n


class VsockTransport(Transport):
    name = "VM socket"
    family_name = "AF_VSOCK"
    PARAMS = OrderedDict([
        ("appid", "Service port number (vsock port)."),
        ("addr", "Context ID to bind or connect. Defaults to VMADDR_CID_ANY for server, "
                 "or VMADDR_CID_LOCAL (loopback) for client. The host is CID 2."),
    ])

    def _bind_address(self, options):
        return self._address(options, VMADDR_CID_ANY)

    def _connect_address(self, options):
        return self._address(options, VMADDR_CID_LOCAL)

    def _address(self, options, default_cid):
        cid = default_cid
        if "addr" in options:
            cid = _parse_u32(options["addr"], "Invalid context ID.")
        if "appid" not in options:
            raise OptionError("Service port (appid) must be specified.")
        port = _parse_u32(options["appid"], "Invalid service port.")
        return (cid, port)

    def format_address(self, address):
        return f"cid {address[0]} port {address[1]}"


TRANSPORTS = OrderedDict([
    ("hyperv", HyperVTransport),
    ("tcp", TcpTransport),
    ("vsock", VsockTransport),
])


def create_transport(name, **kwargs):
    """Instantiate the transport registered under `name`."""
    try:
        cls = TRANSPORTS[name]
    except KeyError:
        raise OptionError(f"Unknown socket type '{name}'") from None
    return cls(**kwargs)

"""Exceptions raised by transports and the benchmark engine."""


class SockTestError(Exception):
    """Base class for all socktest failures."""


class OptionError(SockTestError):
    """Malformed socket option token or benchmark argument."""


class InvalidTransportError(SockTestError):
    """Operation attempted on a transport in the wrong state."""


class BindError(SockTestError):
    pass


class ConnectError(SockTestError):
    pass


class AcceptError(SockTestError):
    pass


class TransferError(SockTestError):
    """
    A send or receive failed before the whole buffer was moved.
    The number of bytes already transferred is not recoverable; the
    session (or the client run) is over.
    """


class PeerClosedError(TransferError):
    """The peer performed an orderly shutdown mid-transfer."""


class ProtocolError(SockTestError):
    """Malformed size header, unknown command byte or unexpected ack."""


class IntegrityError(SockTestError):
    """Echoed data does not match the reference payload."""

    def __init__(self, offset, size):
        super().__init__(f"Data mismatch at offset {offset} of {size} bytes")
        self.offset = offset
        self.size = size


class AllocationError(SockTestError):
    """A benchmark buffer could not be allocated."""

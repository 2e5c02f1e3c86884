"""
Wire format shared by both roles.

    client -> server   4 bytes, host byte order   buffer size S (> 0)
    client -> server   1 byte                     command: 1 run, 0 stop
    client -> server   S bytes                    payload
    server -> client   1 byte                     ack (always 1)
    server -> client   S bytes                    echoed payload

The size header is sent once per session; the remaining steps repeat once
per echo cycle.
"""

import struct

from .errors import ProtocolError

SIZE_HEADER = struct.Struct("=i")

CMD_STOP = 0
CMD_RUN = 1
ACK = 1

MAX_BUFFER_SIZE = 2 ** 31 - 1


def pack_size(size):
    check_buffer_size(size)
    return SIZE_HEADER.pack(size)


def unpack_size(data):
    if len(data) != SIZE_HEADER.size:
        raise ProtocolError(f"Invalid buffer length header ({len(data)} bytes)")
    (size,) = SIZE_HEADER.unpack(bytes(data))
    return size


def check_buffer_size(size):
    if not 0 < size <= MAX_BUFFER_SIZE:
        raise ProtocolError(f"Invalid buffer size {size}")
    return size


def command_byte(command):
    return bytes((command,))

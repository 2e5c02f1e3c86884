"""
Benchmark client.

Connects once, announces the buffer size, then runs `repeat` echo cycles
with the same deterministic reference payload. Each cycle is timed in two
phases:

    send phase      payload out + 1-byte ack back
    receive phase   echoed payload back

The echo is compared byte-for-byte with the reference; a mismatch aborts the
whole run. There are no retries and no aggregate figures: every iteration
stands on its own.
"""

import logging
import time

from .errors import AllocationError, IntegrityError, OptionError, ProtocolError
from .protocol import ACK, CMD_RUN, CMD_STOP, MAX_BUFFER_SIZE, command_byte, pack_size
from .rng import random_bytes
from .timing import IterationResult, Stopwatch

logger = logging.getLogger(__name__)

DEFAULT_DELAY = 0.5
# payload generation is roughly 5 s per 64 MiB
LARGE_PAYLOAD = 64 * 1024 * 1024


def first_mismatch(expected, actual):
    """Offset of the first differing byte, or None when both are equal."""
    if expected == actual:
        return None
    for offset, (a, b) in enumerate(zip(expected, actual)):
        if a != b:
            return offset
    return min(len(expected), len(actual))


class BenchmarkClient:
    def __init__(self, transport, repeat, buffer_size, delay=DEFAULT_DELAY, reporter=None,
                 send_stop=True, sleep=time.sleep):
        self.transport = transport
        self.repeat = repeat
        self.buffer_size = buffer_size
        self.delay = delay
        self.reporter = reporter
        self.send_stop = send_stop
        self.sleep = sleep
        self.results = []

    def validate(self):
        """Check the run parameters; nothing touches the network before this passes."""
        if self.repeat <= 0:
            raise OptionError("Nothing to do.")
        if not 0 < self.buffer_size <= MAX_BUFFER_SIZE:
            raise OptionError(f"Invalid buffer size {self.buffer_size}. Max 2^31-1 bytes.")

    def run(self, options):
        """Connect with `options` and run every iteration. Returns the results."""
        self.validate()
        self.transport.connect(options)

        logger.info("Allocating 2x %d bytes buffer ...", self.buffer_size)
        try:
            recv_buf = bytearray(self.buffer_size)
            zeros = bytes(self.buffer_size)
            if self.buffer_size >= LARGE_PAYLOAD:
                logger.info("Generating reference data, this takes a while for %d bytes ...",
                            self.buffer_size)
            else:
                logger.info("Generating reference data ...")
            reference = random_bytes(self.buffer_size)
        except MemoryError:
            raise AllocationError(f"Unable to allocate 2x {self.buffer_size} bytes") from None

        # tell server the buffer size
        self.transport.send_all(pack_size(self.buffer_size))

        for index in range(self.repeat):
            recv_buf[:] = zeros
            result = self.iterate(index, reference, recv_buf)
            self.results.append(result)
            if self.reporter is not None:
                self.reporter(result)
            if index + 1 < self.repeat and self.delay > 0:
                self.sleep(self.delay)

        if self.send_stop:
            self.transport.send_all(command_byte(CMD_STOP))
        return self.results

    def iterate(self, index, reference, recv_buf):
        """One echo cycle: send, wait for ack, receive, verify."""
        size = len(reference)
        self.transport.send_all(command_byte(CMD_RUN))

        logger.info("Sending ...")
        send_watch = Stopwatch().start()
        self.transport.send_all(reference)
        (ack,) = self.transport.recv_exact(1)
        send_watch.stop()
        if ack != ACK:
            raise ProtocolError(f"Unexpected server ack {ack}")

        logger.info("Receiving ...")
        recv_watch = Stopwatch().start()
        self.transport.recv_all(recv_buf)
        recv_watch.stop()

        logger.info("Comparing data ...")
        offset = first_mismatch(reference, recv_buf)
        if offset is not None:
            raise IntegrityError(offset, size)

        return IterationResult(index, size, send_watch.elapsed_us, recv_watch.elapsed_us)

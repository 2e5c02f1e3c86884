"""Monotonic timing and per-iteration throughput figures."""

import time
from dataclasses import dataclass


def now_ns():
    return time.perf_counter_ns()


def elapsed_us(start_ns, end_ns):
    """Whole microseconds between two perf_counter_ns readings."""
    return (end_ns - start_ns) // 1000


def throughput(size, elapsed_microseconds):
    """
    Bytes per second for `size` bytes moved in `elapsed_microseconds`.
    Returns None (unavailable) when the elapsed time is zero or negative.
    """
    if elapsed_microseconds <= 0:
        return None
    return int(size * 1_000_000 / elapsed_microseconds)


class Stopwatch:
    def __init__(self, clock=now_ns):
        self.clock = clock
        self.start_ns = None
        self.end_ns = None

    def start(self):
        self.start_ns = self.clock()
        self.end_ns = None
        return self

    def stop(self):
        if self.start_ns is None:
            raise RuntimeError("Stopwatch stopped before it was started")
        self.end_ns = self.clock()
        return self.elapsed_us

    @property
    def elapsed_us(self):
        if self.start_ns is None or self.end_ns is None:
            return None
        return elapsed_us(self.start_ns, self.end_ns)


@dataclass(frozen=True)
class IterationResult:
    """Timing of one echo cycle."""
    index: int
    size: int
    send_us: int
    recv_us: int

    @property
    def send_rate(self):
        return throughput(self.size, self.send_us)

    @property
    def recv_rate(self):
        return throughput(self.size, self.recv_us)

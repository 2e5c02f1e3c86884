"""
socktest - round-trip throughput benchmark for stream transports.

A server echoes fixed-size buffers back to a client, which times the send and
receive phases and verifies every echoed byte against a deterministic
reference payload.
"""

__version__ = "1.0.0"

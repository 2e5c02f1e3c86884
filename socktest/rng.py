"""
Deterministic payload generator.

A 64-bit xorshift stream (shifts 13, 7, 17) seeded from a fixed constant,
so every client run sends byte-for-byte identical reference data no matter
which machine or process produces it.
"""

import struct

SUGGEST_INITIAL = 0xCAFEBABEDEADBEEF

MASK64 = 0xFFFFFFFFFFFFFFFF
WORD = struct.Struct("<Q")


def xorshift64(state):
    """Advance the generator by one step and return the new state."""
    x = state
    x ^= (x << 13) & MASK64
    x ^= x >> 7
    x ^= (x << 17) & MASK64
    return x


def fill_random(buffer, seed=SUGGEST_INITIAL):
    """
    Fill a writable buffer in place.

    Every full 8-byte word receives the next generator output; a trailing
    partial word takes one extra step, truncated to the bytes that remain.
    Returns the final generator state.
    """
    view = memoryview(buffer).cast("B")
    size = len(view)
    word_count, remainder = divmod(size, WORD.size)

    v = seed
    for offset in range(0, word_count * WORD.size, WORD.size):
        v = xorshift64(v)
        WORD.pack_into(view, offset, v)

    if remainder:
        v = xorshift64(v)
        view[size - remainder:] = WORD.pack(v)[:remainder]

    return v


def random_bytes(size, seed=SUGGEST_INITIAL):
    """Return `size` bytes of reference payload."""
    if size < 0:
        raise ValueError(f"size must be non-negative, got {size}")
    buf = bytearray(size)
    fill_random(buf, seed)
    return bytes(buf)

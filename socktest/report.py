"""Human-readable sizes, spans and rates for benchmark output."""

import sys

KIB = 1024
MIB = 1024 * 1024
GIB = 1024 * 1024 * 1024


def friendly_size(sz):
    if sz < 10240:
        return f"{sz} bytes"
    elif sz < KIB * 10000:
        return f"{sz // KIB} KiB"
    elif sz < MIB * 10000:
        return f"{sz // MIB} MiB"
    else:
        return f"{sz // GIB} GiB"


def friendly_timespan(microsecs):
    if microsecs < 3000:
        return f"{microsecs} us"
    elif microsecs < 10_000_000:
        return f"{microsecs // 1000} ms"
    else:
        return f"{microsecs // 1_000_000} sec"


def friendly_rate(rate):
    if rate is None or rate < 0:
        return "(error)"
    return f"{friendly_size(rate)} / sec"


def print_iteration(result, out=None):
    """Print the send/receive figures of one iteration followed by a blank line."""
    if out is None:
        out = sys.stdout
    print(f"Time send : {friendly_timespan(result.send_us)}", file=out)
    print(f"Time recv : {friendly_timespan(result.recv_us)}", file=out)
    print(f"Rate send : {friendly_rate(result.send_rate)}", file=out)
    print(f"Rate recv : {friendly_rate(result.recv_rate)}", file=out)
    print("", file=out)
    out.flush()

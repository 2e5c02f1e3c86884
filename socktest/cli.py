"""
Command line entry point.

Usage:
    socktest <socket_type> options
    socktest <socket_type> server [--sessions N] (<key>=<value>)...
    socktest <socket_type> client [--delay SEC] [--no-stop] <repeat> <buff_size> (<key>=<value>)...

Examples:
    # Echo server on all interfaces, port 5001
    socktest tcp server port=5001

    # 10 iterations of 64 MiB against it
    socktest tcp client 10 67108864 host=127.0.0.1 port=5001

    # Hyper-V guest talking to the host
    socktest hyperv client 5 1048576 appid=<service GUID> addr=<VM GUID>
"""

import argparse
import logging
import sys
from collections import OrderedDict

from .client import DEFAULT_DELAY, BenchmarkClient
from .errors import OptionError, SockTestError
from .report import print_iteration
from .server import BenchmarkServer
from .transport import TRANSPORTS, create_transport

logger = logging.getLogger("socktest")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


def parse_socket_options(tokens):
    """Turn `key=value` tokens into an ordered mapping; later keys win."""
    options = OrderedDict()
    for token in tokens:
        key, sep, value = token.partition("=")
        if not sep or not key:
            raise OptionError(f"Invalid socket option format: '{token}'")
        options[key] = value
    return options


def build_parser():
    parser = argparse.ArgumentParser(
        prog="socktest",
        description="Round-trip throughput benchmark for stream sockets",
    )
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Log debug details")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Only log warnings and errors")
    parser.add_argument("socket_type", choices=list(TRANSPORTS), help="Socket type to benchmark")

    commands = parser.add_subparsers(dest="command", metavar="command")
    commands.required = True

    commands.add_parser("options", help="List the socket options of the socket type")

    server = commands.add_parser("server", help="Echo buffers back to clients")
    server.add_argument("--sessions", type=int, default=None,
                        help="Exit after handling this many connections (default: run forever)")
    server.add_argument("socket_options", nargs="*", metavar="key=value",
                        help="Socket options, see the 'options' command")

    client = commands.add_parser("client", help="Send buffers and time the round trip")
    client.add_argument("--delay", type=float, default=DEFAULT_DELAY,
                        help=f"Pause between iterations in seconds (default: {DEFAULT_DELAY})")
    client.add_argument("--no-stop", action="store_true",
                        help="Disconnect without sending the stop command")
    client.add_argument("repeat", type=int, help="Number of iterations")
    client.add_argument("buff_size", type=int, help="Size of buffer to use, in bytes. Max 2^31-1 bytes.")
    client.add_argument("socket_options", nargs="*", metavar="key=value",
                        help="Socket options, see the 'options' command")
    return parser


def setup_logging(args):
    level = logging.INFO
    if args.verbose:
        level = logging.DEBUG
    elif args.quiet:
        level = logging.WARNING
    logging.basicConfig(level=level, format='%(asctime)s - %(levelname)s - %(message)s')


def command_options(args, out):
    cls = TRANSPORTS[args.socket_type]
    print(f"Options available for the {cls.name}:", file=out)
    for key, desc in cls.describe_parameters().items():
        print(f" - {key}\n   {desc}", file=out)
    return EXIT_OK


def command_server(args, out):
    options = parse_socket_options(args.socket_options)
    server = BenchmarkServer(create_transport(args.socket_type), options)
    try:
        server.serve_forever(max_sessions=args.sessions)
    except KeyboardInterrupt:
        logger.info("Interrupted, %d session(s) handled", server.sessions)
    return EXIT_OK


def command_client(args, out):
    options = parse_socket_options(args.socket_options)
    with create_transport(args.socket_type) as transport:
        client = BenchmarkClient(
            transport, args.repeat, args.buff_size,
            delay=args.delay,
            reporter=lambda result: print_iteration(result, out),
            send_stop=not args.no_stop,
        )
        client.run(options)
    return EXIT_OK


COMMANDS = {
    "options": command_options,
    "server": command_server,
    "client": command_client,
}


def main(argv=None, out=None):
    if out is None:
        out = sys.stdout
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args)

    try:
        return COMMANDS[args.command](args, out)
    except OptionError as e:
        logger.error("%s", e)
        return EXIT_USAGE
    except SockTestError as e:
        logger.error("Application error: %s", e)
        return EXIT_FAILURE


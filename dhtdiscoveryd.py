import argparse
import socket
import sys

from config import BOOTSTRAP_NODES, LOGLEVEL, LOG_FILE
from log import levels, start_logging
from keys.identity import DEFAULT_KEY
from net.controller import run


class OptionsError(Exception):
    pass


def build_parser():
    # -h selects the key, so help moves to --help only
    parser = argparse.ArgumentParser(
        description="Keep a mainline DHT node running and peer on a key",
        usage="python dhtdiscoveryd.py [-q] [-4] [-6] [-b address] [-h key] [-a port] port [address port]...",
        add_help=False)
    parser.add_argument('--help', action='help', help="show this help message and exit")
    parser.add_argument('-q', '--quiet', action='store_true', help="don't log protocol messages")
    parser.add_argument('-4', dest='only4', action='store_true', help="use IPv4 only")
    parser.add_argument('-6', dest='only6', action='store_true', help="use IPv6 only")
    parser.add_argument('-b', '--bind', help="local address to bind to (IPv4 or IPv6)")
    parser.add_argument('-h', '--key', default=DEFAULT_KEY, help="the string whose hash we peer on")
    parser.add_argument('-a', '--announce-port', dest='announce_port', type=int,
                        help="port to announce to the closest nodes, 0 to only search (defaults to the DHT port)")
    parser.add_argument('-l', '--loglevel', default=LOGLEVEL, choices=sorted(levels),
                        help="set the logging level")
    parser.add_argument('--logfile', default=LOG_FILE, help="also log to this file, rotated at 15MB")
    parser.add_argument('port', type=int, help="the UDP port of the node")
    parser.add_argument('bootstrap', nargs='*', metavar='address port',
                        help="nodes to bootstrap from, overrides the configuration file")
    return parser


def _check_port(port, allow_zero=False):
    if not (0 if allow_zero else 1) <= port <= 65535:
        raise OptionsError("invalid port %d" % port)
    return port


def validate(args):
    """
    Turn parsed arguments into controller options.

    Raises:
        OptionsError: the arguments parse but make no sense.
    """
    _check_port(args.port)

    if len(args.bootstrap) % 2 != 0:
        raise OptionsError("bootstrap nodes must be given as address port pairs")
    pairs = []
    for host, port in zip(args.bootstrap[0::2], args.bootstrap[1::2]):
        try:
            pairs.append((host, _check_port(int(port))))
        except ValueError:
            raise OptionsError("invalid port %r" % port)
    args.bootstrap = pairs or list(BOOTSTRAP_NODES)

    args.ipv4 = not args.only6
    args.ipv6 = not args.only4
    if args.only4 and args.only6:
        args.ipv4 = args.ipv6 = False

    args.bind4 = args.bind6 = None
    if args.bind is not None:
        family = socket.AF_INET6 if ":" in args.bind else socket.AF_INET
        try:
            socket.inet_pton(family, args.bind)
        except (OSError, ValueError):
            raise OptionsError("invalid bind address %s" % args.bind)
        if family == socket.AF_INET6:
            args.bind6 = args.bind
        else:
            args.bind4 = args.bind

    if args.announce_port is None:
        args.announce_port = args.port
    _check_port(args.announce_port, allow_zero=True)
    return args


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        options = validate(args)
    except OptionsError as e:
        parser.print_usage(sys.stderr)
        sys.stderr.write("%s\n" % e)
        return 1

    start_logging(options.loglevel, options.logfile)

    return run(options)


if __name__ == "__main__":
    sys.exit(main())

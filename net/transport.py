"""
The UDP sockets the node talks through, one per address family.

The sockets are created and bound here, handed to the engine for sending and
then adopted by the reactor, which watches them for incoming datagrams.
"""

import socket

from twisted.internet.protocol import DatagramProtocol

from log import Logger

log = Logger(system="transport")


class TransportError(Exception):
    """
    No usable socket could be set up.
    """


class SocketPair(object):
    def __init__(self, v4=None, v6=None):
        self.v4 = v4
        self.v6 = v6

    def families(self):
        """
        The address families we have a socket for, IPv4 first.
        """
        families = []
        if self.v4 is not None:
            families.append(socket.AF_INET)
        if self.v6 is not None:
            families.append(socket.AF_INET6)
        return families

    def items(self):
        return [(family, self.get(family)) for family in self.families()]

    def get(self, family):
        return self.v4 if family == socket.AF_INET else self.v6

    def close(self):
        for sock in (self.v4, self.v6):
            if sock is not None:
                sock.close()
        self.v4 = self.v6 = None

    def __len__(self):
        return len(self.families())


def _create(family):
    try:
        return socket.socket(family, socket.SOCK_DGRAM)
    except OSError as e:
        name = "IPv4" if family == socket.AF_INET else "IPv6"
        log.warning("could not create %s socket: %s" % (name, e))
        return None


def open_sockets(port, ipv4=True, ipv6=True, bind4=None, bind6=None):
    """
    Create and bind the datagram sockets.

    A family whose socket can't be created is disabled with a warning. Failing
    to restrict the IPv6 socket to IPv6 or to bind either socket is fatal.

    Args:
        port: the UDP port to bind, 0 for any.
        ipv4: whether to open an IPv4 socket.
        ipv6: whether to open an IPv6 socket.
        bind4: local IPv4 address, defaults to the wildcard.
        bind6: local IPv6 address, defaults to the wildcard.
    Returns:
        a `SocketPair` with at least one socket.
    Raises:
        TransportError
    """
    if not ipv4 and not ipv6:
        raise TransportError("both IPv4 and IPv6 are disabled")

    sockets = SocketPair()
    if ipv4:
        sockets.v4 = _create(socket.AF_INET)
    if ipv6:
        sockets.v6 = _create(socket.AF_INET6)
    if sockets.v4 is None and sockets.v6 is None:
        raise TransportError("could not create any socket")

    try:
        if sockets.v4 is not None:
            sockets.v4.bind((bind4 or "0.0.0.0", port))
        if sockets.v6 is not None:
            sockets.v6.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
            sockets.v6.bind((bind6 or "::", port))
    except OSError as e:
        sockets.close()
        raise TransportError("could not bind to port %d: %s" % (port, e))
    return sockets


class DatagramReceiver(DatagramProtocol):
    """
    Hands every datagram read from an adopted socket to the scheduler.
    """

    def __init__(self, scheduler, family):
        self.scheduler = scheduler
        self.family = family

    def datagramReceived(self, datagram, address):
        self.scheduler.receive(datagram, address)


def listen(reactor, sockets, scheduler, bufsize):
    """
    Let the reactor watch our sockets. Datagrams larger than `bufsize - 1`
    bytes are cut to that size.

    Returns:
        the list of listening ports.
    """
    ports = []
    for family, sock in sockets.items():
        protocol = DatagramReceiver(scheduler, family)
        ports.append(reactor.adoptDatagramPort(sock.fileno(), family, protocol, maxPacketSize=bufsize - 1))
    return ports

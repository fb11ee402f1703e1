"""
Seeding the engine with the addresses of well known nodes.
"""

import random
import socket
import time
from collections import namedtuple

from log import Logger

log = Logger(system="bootstrap")

# `address` is the socket address tuple returned by getaddrinfo
BootstrapEndpoint = namedtuple("BootstrapEndpoint", ["family", "address"])


class BootstrapError(Exception):
    """
    A bootstrap host could not be resolved.
    """


def resolve_bootstrap(pairs, ipv4=True, ipv6=True, limit=20):
    """
    Resolve the (host, port) pairs into endpoints of the enabled families, in
    the order the resolver returns them. Endpoints beyond `limit` are dropped.

    Raises:
        BootstrapError: a host can't be resolved.
    """
    if ipv4 and not ipv6:
        family = socket.AF_INET
    elif ipv6 and not ipv4:
        family = socket.AF_INET6
    else:
        family = socket.AF_UNSPEC

    endpoints = []
    for host, port in pairs:
        try:
            infos = socket.getaddrinfo(host, port, family, socket.SOCK_DGRAM)
        except (socket.gaierror, UnicodeError) as e:
            raise BootstrapError("%s: %s" % (host, e))
        for info in infos:
            if info[0] not in (socket.AF_INET, socket.AF_INET6):
                continue
            endpoints.append(BootstrapEndpoint(info[0], info[4]))

    if len(endpoints) > limit:
        log.warning("too many bootstrap nodes, using the first %d of %d" % (limit, len(endpoints)))
        del endpoints[limit:]
    return endpoints


class BootstrapSeeder(object):
    """
    Registers each bootstrap endpoint with the engine, pausing up to a tenth
    of a second between registrations so the first queries don't go out in
    one burst.
    """

    def __init__(self, engine, node_id, sleep=time.sleep):
        self.engine = engine
        self.node_id = node_id
        self.sleep = sleep
        self.log = Logger(system=self)

    def seed(self, endpoints):
        count = 0
        for endpoint in endpoints:
            if count > 0:
                self.sleep(random.randint(0, 99999) / 1000000.0)
            self.log.debug("registering bootstrap node %s" % repr(endpoint.address))
            self.engine.register_candidate(self.node_id, endpoint.address)
            count += 1
        self.log.info("registered %d bootstrap nodes" % count)
        return count

"""
Copyright (c) 2014 Brian Muller
Copyright (c) 2015 OpenBazaar
"""

import errno
import math
import random
import socket
import struct

from twisted.internet import reactor
from zope.interface import implementer

from dht import krpc
from dht.events import PeerValues
from dht.node import Node
from dht.routing import RoutingTable, HEARD_OF, SENT_QUERY, REPLIED
from dht.search import Search, SEARCH_NODES
from dht.storage import PeerStorage
from dht.utils import dht_hash, random_bytes, blacklisted, address_family, RandomnessError
from interfaces import DHTEngine, EngineError
from log import Logger

TOKEN_SIZE = 8
SECRET_SIZE = 8

# replies arriving later than this are treated as unsolicited
TRANSACTION_TIMEOUT = 60

# find_node attempts per bootstrap candidate
BOOTSTRAP_TRIES = 3

MAX_ID = 2 ** 160 - 1

# two letters of every transaction id name the query it belongs to
TID_PREFIX = {
    krpc.PING: b"pn",
    krpc.FIND_NODE: b"fn",
    krpc.GET_PEERS: b"gp",
    krpc.ANNOUNCE_PEER: b"ap",
}

FAMILY_KEYS = ((socket.AF_INET, b"nodes", b"n4"), (socket.AF_INET6, b"nodes6", b"n6"))


def _checkId(value, name):
    if not isinstance(value, bytes) or len(value) != 20:
        raise krpc.KRPCError("invalid %s" % name)
    return value


@implementer(DHTEngine)
class MainlineEngine(object):
    """
    A mainline DHT node that never touches the reactor on its own. Everything
    happens inside `dispatch`, which handles one datagram, runs whatever
    periodic job is due and returns how long the caller may sleep.
    """

    def __init__(self, ksize=8, alpha=3, noisy=True, clock=None):
        self.ksize = ksize
        self.alpha = alpha
        self.noisy = noisy
        self.clock = clock or reactor
        self.log = Logger(system=self)
        self.node_id = None
        self.sourceNode = None
        self.version = None
        self.sockets = {}
        self.routers = {}
        self.searches = []
        self.candidates = []
        self.storage = None
        self.running = False
        self._outstanding = {}
        self._seq = random.randint(0, 0xffff)

    def init(self, v4_socket, v6_socket, node_id, version_tag):
        if v4_socket is None and v6_socket is None:
            raise EngineError(errno.EINVAL, "no socket to run on")
        if not isinstance(node_id, bytes) or len(node_id) != 20:
            raise EngineError(errno.EINVAL, "node id must be 20 bytes")
        try:
            self.secret = random_bytes(SECRET_SIZE)
        except RandomnessError as e:
            raise EngineError(errno.EIO, str(e))
        self.oldsecret = self.secret

        self.node_id = node_id
        self.sourceNode = Node(node_id)
        self.version = version_tag
        for family, sock in ((socket.AF_INET, v4_socket), (socket.AF_INET6, v6_socket)):
            if sock is None:
                continue
            sock.setblocking(False)
            self.sockets[family] = sock
            self.routers[family] = RoutingTable(self, self.ksize, self.sourceNode)
        self.storage = PeerStorage(clock=self.clock)

        now = self.clock.seconds()
        self.rotate_time = now + random.randint(900, 1800)
        self.expire_time = now + random.randint(120, 360)
        self.confirm_time = now
        self.search_time = None
        self.running = True
        self.log.info("DHT engine started with node id %s" % node_id.hex())

    def dispatch(self, data, sender, tosleep, callback=None):
        if not self.running:
            raise EngineError(errno.EINVAL, "engine is not initialized")
        if data is not None:
            if sender is None:
                raise EngineError(errno.EINVAL, "datagram without a sender")
            self.datagramReceived(data, sender, callback)
        return self._periodic()

    def start_operation(self, info_hash, port, family, callback=None):
        if not self.running:
            raise EngineError(errno.EINVAL, "engine is not initialized")
        if family not in self.routers:
            raise EngineError(errno.EAFNOSUPPORT, "no socket for address family %d" % family)
        if not isinstance(info_hash, bytes) or len(info_hash) != 20:
            raise EngineError(errno.EINVAL, "info hash must be 20 bytes")
        now = self.clock.seconds()
        search = self.getSearch(info_hash, family)
        if search is None:
            search = Search(self, info_hash, family, port, self.ksize, self.alpha, callback, now)
            self.searches.append(search)
        else:
            search.restart(port, callback, now)
        self._seedSearch(search)
        if not search.step(now):
            self.search_time = now + 1
        return search

    def register_candidate(self, node_id, address):
        if not self.running:
            raise EngineError(errno.EINVAL, "engine is not initialized")
        address = tuple(address[:2])
        if address_family(address) not in self.routers:
            self.log.warning("no socket to reach bootstrap node %s, ignoring" % repr(address))
            return False
        self.candidates.append([address, 0])
        self.confirm_time = self.clock.seconds()
        return True

    def snapshot_good_peers(self, max_v4, max_v6):
        now = self.clock.seconds()
        counts = []
        for family, cap in ((socket.AF_INET, max_v4), (socket.AF_INET6, max_v6)):
            router = self.routers.get(family)
            counts.append(0 if router is None else min(len(router.goodNodes(now)), cap))
        return counts[0], counts[1], counts[0] + counts[1]

    def teardown(self):
        self.running = False
        self.searches = []
        self.candidates = []
        self.routers = {}
        self.sockets = {}
        self._outstanding.clear()
        if self.storage is not None:
            self.storage.close()
            self.storage = None
        self.log.info("DHT engine stopped")

    def getSearch(self, info_hash, family):
        for search in self.searches:
            if search.id == info_hash and search.family == family:
                return search
        return None

    # incoming

    def datagramReceived(self, data, address, callback=None):
        address = tuple(address[:2])
        if blacklisted(address):
            return
        if "%" in address[0]:
            # scoped link-local senders can neither be tokened nor handed out as nodes
            if self.noisy:
                self.log.debug("dropping datagram from scoped address %s" % address[0])
            return
        if address_family(address) not in self.routers:
            return
        try:
            message = krpc.decode(data)
        except krpc.KRPCError as e:
            if self.noisy:
                self.log.debug("dropping malformed datagram from %s: %s" % (repr(address), e))
            return

        if message.kind == krpc.QUERY:
            self._acceptRequest(message, address)
        elif message.tid in self._outstanding:
            if message.kind == krpc.RESPONSE:
                self._acceptResponse(message, address, callback)
            else:
                self._acceptError(message, address)
        elif self.noisy:
            self.log.debug("unsolicited message with tid %s from %s, ignoring" % (message.tid.hex(), repr(address)))

    def _acceptRequest(self, message, address):
        try:
            sender = Node(_checkId(message.args.get(b"id"), "node id"), address[0], address[1])
        except krpc.KRPCError as e:
            self._sendError(message.tid, krpc.PROTOCOL_ERROR, str(e), address)
            return
        funcname = message.method.decode("latin-1")
        if self.noisy:
            self.log.debug("received request from %s, command %s" % (sender, funcname.upper()))
        f = getattr(self, "rpc_%s" % funcname, None)
        if f is None or not callable(f):
            self.log.debug("no handler for method %s from %s" % (funcname, sender))
            self._sendError(message.tid, krpc.METHOD_UNKNOWN, "Method Unknown", address)
            return
        try:
            response = f(sender, message.args)
        except krpc.KRPCError as e:
            self._sendError(message.tid, e.code, str(e), address)
            return
        self._sendResponse(response, funcname, message.tid, sender)

    def _acceptResponse(self, message, address, callback):
        method, expected, search, _ = self._outstanding[message.tid]
        if expected != address:
            if self.noisy:
                self.log.debug("reply for tid %s came from %s instead of %s" %
                               (message.tid.hex(), repr(address), repr(expected)))
            return
        del self._outstanding[message.tid]

        values = message.values
        node_id = values.get(b"id")
        if not isinstance(node_id, bytes) or len(node_id) != 20 or node_id == self.node_id:
            self.log.debug("reply from %s carries an invalid id" % repr(address))
            return
        if self.noisy:
            self.log.debug("received %s response from %s" % (method.decode(), repr(address)))

        now = self.clock.seconds()
        sender = Node(node_id, address[0], address[1])
        self.routers[sender.family].addContact(sender, now, REPLIED)

        for family, key, _ in FAMILY_KEYS:
            if family not in self.routers:
                continue
            for node in krpc.unpackNodes(values.get(key), family):
                if node.id == self.node_id or blacklisted(node.address):
                    continue
                self.routers[family].addContact(node, now, HEARD_OF)
                if search is not None:
                    search.insert(node)

        if search is None:
            return
        if method == krpc.GET_PEERS:
            token = values.get(b"token")
            search.replied(sender, token if isinstance(token, bytes) else None, now)
            peers = values.get(b"values")
            if isinstance(peers, list):
                records = [p for p in peers if isinstance(p, bytes)]
                if records:
                    notify = search.callback or callback
                    if notify is not None:
                        notify(PeerValues(search.id, search.family, records))
            self.search_time = now
        elif method == krpc.ANNOUNCE_PEER:
            search.acked(node_id, now)
            self.search_time = now

    def _acceptError(self, message, address):
        method, expected, _, _ = self._outstanding[message.tid]
        if expected != address:
            return
        del self._outstanding[message.tid]
        self.log.warning("%s to %s failed: %s" % (method.decode(), repr(address), repr(message.error)))

    def _sendResponse(self, values, funcname, tid, sender):
        if self.noisy:
            self.log.debug("sending %s response to %s" % (funcname, sender))
        values[b"id"] = self.node_id
        self._send(krpc.encodeResponse(tid, values, self.version), sender.address)

    def _sendError(self, tid, code, message, address):
        if self.noisy:
            self.log.debug("sending error %d (%s) to %s" % (code, message, repr(address)))
        self._send(krpc.encodeError(tid, code, message, self.version), address)

    # queries we answer

    def addToRouter(self, node):
        return self.routers[node.family].addContact(node, self.clock.seconds(), SENT_QUERY)

    def rpc_ping(self, sender, args):
        self.addToRouter(sender)
        return {}

    def rpc_find_node(self, sender, args):
        target = _checkId(args.get(b"target"), "target")
        self.addToRouter(sender)
        return self._closestNodes(target, self._wanted(args, sender.family), sender)

    def rpc_get_peers(self, sender, args):
        info_hash = _checkId(args.get(b"info_hash"), "info_hash")
        self.addToRouter(sender)
        values = self._closestNodes(info_hash, self._wanted(args, sender.family), sender)
        values[b"token"] = self.makeToken(sender.ip, sender.port)
        peers = self.storage.get(info_hash, sender.family)
        if peers:
            values[b"values"] = peers
        return values

    def rpc_announce_peer(self, sender, args):
        info_hash = _checkId(args.get(b"info_hash"), "info_hash")
        port = args.get(b"port")
        if args.get(b"implied_port") == 1:
            port = sender.port
        if not isinstance(port, int) or not 0 < port < 65536:
            raise krpc.KRPCError("invalid port")
        if not self.tokenMatch(args.get(b"token"), sender.ip, sender.port):
            raise krpc.KRPCError("bad token")
        self.addToRouter(sender)
        self.log.debug("storing peer %s:%d for %s" % (sender.ip, port, info_hash.hex()))
        if not self.storage.store(info_hash, sender.family, krpc.packPeer(sender.ip, port)):
            raise krpc.KRPCError("storage full", krpc.SERVER_ERROR)
        return {}

    def _wanted(self, args, family):
        want = args.get(b"want")
        families = []
        if isinstance(want, list):
            for fam, _, name in FAMILY_KEYS:
                if name in want and fam in self.routers:
                    families.append(fam)
        return families or [family]

    def _closestNodes(self, target, families, exclude):
        values = {}
        now = self.clock.seconds()
        for family, key, _ in FAMILY_KEYS:
            if family in families:
                nodes = self.routers[family].findNeighbors(Node(target), exclude=exclude, now=now)
                values[key] = krpc.packNodes(nodes)
        return values

    # tokens

    def makeToken(self, ip, port, old=False):
        secret = self.oldsecret if old else self.secret
        family = socket.AF_INET6 if ":" in ip else socket.AF_INET
        return dht_hash(TOKEN_SIZE, secret, socket.inet_pton(family, ip), struct.pack("!H", port))

    def tokenMatch(self, token, ip, port):
        if not isinstance(token, bytes) or len(token) != TOKEN_SIZE:
            return False
        return token == self.makeToken(ip, port) or token == self.makeToken(ip, port, old=True)

    # outgoing

    def callPing(self, nodeToAsk):
        nodeToAsk.markPinged(self.clock.seconds())
        return self._sendQuery(krpc.PING, {}, nodeToAsk.address)

    def callFindNode(self, address, target):
        args = {b"target": target}
        if len(self.routers) > 1:
            args[b"want"] = [b"n4", b"n6"]
        return self._sendQuery(krpc.FIND_NODE, args, address)

    def callGetPeers(self, search, snode, now):
        args = {b"info_hash": search.id}
        return self._sendQuery(krpc.GET_PEERS, args, snode.node.address, search)

    def callAnnouncePeer(self, search, snode, now):
        args = {b"info_hash": search.id, b"port": search.port, b"token": snode.token}
        return self._sendQuery(krpc.ANNOUNCE_PEER, args, snode.node.address, search)

    def _sendQuery(self, method, args, address, search=None):
        self._seq = (self._seq + 1) & 0xffff
        tid = TID_PREFIX[method] + struct.pack("!H", self._seq)
        args[b"id"] = self.node_id
        if self.noisy:
            self.log.debug("calling remote function %s on %s (tid %s)" % (method.decode(), repr(address), tid.hex()))
        self._outstanding[tid] = (method, tuple(address), search, self.clock.seconds())
        return self._send(krpc.encodeQuery(tid, method, args, self.version), address)

    def _send(self, data, address):
        sock = self.sockets.get(address_family(address))
        if sock is None:
            return False
        try:
            sock.sendto(data, address)
        except OSError as e:
            self.log.debug("could not send to %s: %s" % (repr(address), e))
            return False
        return True

    # periodic jobs

    def _periodic(self):
        now = self.clock.seconds()
        if now >= self.rotate_time:
            self._rotateSecrets(now)
        if now >= self.expire_time:
            self._expire(now)
        if self.search_time is not None and now >= self.search_time:
            self._stepSearches(now)
        if now >= self.confirm_time:
            self._confirmNodes(now)

        wake = [self.rotate_time, self.expire_time, self.confirm_time]
        if self.search_time is not None:
            wake.append(self.search_time)
        return int(math.ceil(max(0, min(wake) - now)))

    def _rotateSecrets(self, now):
        try:
            secret = random_bytes(SECRET_SIZE)
        except RandomnessError as e:
            self.rotate_time = now + 1
            raise EngineError(errno.EIO, str(e))
        self.oldsecret = self.secret
        self.secret = secret
        self.rotate_time = now + random.randint(900, 1800)

    def _expire(self, now):
        for router in self.routers.values():
            removed = router.removeBad()
            if removed:
                self.log.debug("dropped %d unresponsive nodes" % len(removed))
        self.storage.cull()
        self.searches = [s for s in self.searches if not s.isExpired(now)]
        for tid, entry in list(self._outstanding.items()):
            if entry[3] < now - TRANSACTION_TIMEOUT:
                del self._outstanding[tid]
        self.expire_time = now + 120 + random.randint(0, 240)

    def _seedSearch(self, search):
        router = self.routers.get(search.family)
        if router is None:
            return
        for node in router.findNeighbors(search.target, k=SEARCH_NODES):
            search.insert(node)

    def _stepSearches(self, now):
        active = False
        for search in self.searches:
            if search.done:
                continue
            if not search.closest():
                self._seedSearch(search)
            if not search.step(now):
                active = True
        self.search_time = now + 1 if active else None

    def _confirmNodes(self, now):
        """
        Keep the routing tables healthy:
          1. probe one questionable node per bucket, with find_node while the
             table is short of good nodes so that we learn more of them
          2. refresh buckets nobody touched for fifteen minutes
          3. ask the bootstrap candidates for our own neighbourhood while we
             know fewer than k good nodes
        """
        soon = False
        bootstrapping = False
        for family, router in self.routers.items():
            short = len(router.goodNodes(now)) < self.ksize
            soon = soon or short

            for bucket in router.buckets:
                node = bucket.questionable(now)
                if node is None:
                    continue
                if short:
                    node.markPinged(now)
                    self.callFindNode(node.address, self.node_id)
                else:
                    self.callPing(node)

            for bucket in router.getLonelyBuckets(now):
                target = min(random.randint(*bucket.range), MAX_ID).to_bytes(20, "big")
                nodes = bucket.getNodes() or router.findNeighbors(Node(target), k=1)
                if nodes:
                    self.callFindNode(random.choice(nodes).address, target)
                    bucket.touchLastUpdated(now)

            if short:
                used, rest = [], []
                for candidate in self.candidates:
                    address, tries = candidate
                    if len(used) >= self.alpha or tries >= BOOTSTRAP_TRIES or address_family(address) != family:
                        rest.append(candidate)
                        continue
                    candidate[1] += 1
                    self.callFindNode(address, self.node_id)
                    used.append(candidate)
                # queried candidates go to the back so every one gets its turn
                self.candidates = rest + used
                bootstrapping = bootstrapping or len(used) > 0

        if bootstrapping:
            self.confirm_time = now + 1 + random.random()
        elif soon:
            self.confirm_time = now + 5 + random.randint(0, 19)
        else:
            self.confirm_time = now + 60 + random.randint(0, 119)

"""
Copyright (c) 2014 Brian Muller
Copyright (c) 2015 OpenBazaar
"""

from log import Logger

from dht.events import SearchDone
from dht.node import Node

# how many candidates a search keeps track of
SEARCH_NODES = 14

# seconds before a request to a search node is sent again
RETRANSMIT = 15

# unanswered requests before a search node is given up on
MAX_TRIES = 3

# finished searches are forgotten after this long
SEARCH_EXPIRE = 62 * 60


class SearchNode(object):
    def __init__(self, node):
        self.node = node
        self.request_time = None
        self.reply_time = None
        self.pinged = 0
        self.token = None
        self.replied = False
        self.acked = False

    def reset(self):
        self.request_time = None
        self.pinged = 0
        self.token = None
        self.replied = False
        self.acked = False

    def isAlive(self):
        return self.pinged < MAX_TRIES

    def isDue(self, now):
        return self.request_time is None or self.request_time < now - RETRANSMIT

    def isInflight(self, now):
        return not self.replied and not self.isDue(now)

    def markRequested(self, now):
        self.request_time = now
        self.pinged += 1

    def __repr__(self):
        return "SearchNode(%s, replied=%s, acked=%s)" % (self.node, self.replied, self.acked)


class Search(object):
    """
    Walk the network towards a 160-bit key, collecting peers on the way and,
    if a port is given, announcing ourselves to the closest nodes.

    The process (one call to `step` per engine tick):
      1. send get_peers to the closest not yet answered nodes, keeping at
         most ALPHA requests in flight and retrying each node up to three times
      2. nodes returned by the replies are inserted in distance order, keeping
         the SEARCH_NODES closest
      3. once the KSIZE closest live nodes have all answered, send
         announce_peer to each of them that gave us a token
      4. the search is done when every announce was acknowledged or given up on
    """

    def __init__(self, protocol, info_hash, family, port, ksize, alpha, callback, now):
        """
        Args:
            protocol: The engine sending the queries. It must provide callGetPeers and callAnnouncePeer.
            info_hash: The 20 byte key being searched for.
            family: The address family this search runs on.
            port: The port to announce, 0 to only look for peers.
            callback: Receives the `SearchDone` event, may be None.
        """
        self.protocol = protocol
        self.id = info_hash
        self.target = Node(info_hash)
        self.family = family
        self.ksize = ksize
        self.alpha = alpha
        self.nodes = []
        self.log = Logger(system=self)
        self.restart(port, callback, now)

    def restart(self, port, callback, now):
        self.port = port
        self.callback = callback
        self.done = False
        self.step_time = now
        for snode in self.nodes:
            snode.reset()

    def getNode(self, node_id):
        for snode in self.nodes:
            if snode.node.id == node_id:
                return snode
        return None

    def insert(self, node):
        """
        Add a node in distance order. Returns its `SearchNode`, or None when it is
        farther than everything we already track and the list is full.
        """
        if node.family != self.family:
            return None
        snode = self.getNode(node.id)
        if snode is not None:
            return snode
        distance = self.target.distanceTo(node)
        index = 0
        while index < len(self.nodes) and self.target.distanceTo(self.nodes[index].node) < distance:
            index += 1
        if index >= SEARCH_NODES:
            return None
        snode = SearchNode(node)
        self.nodes.insert(index, snode)
        del self.nodes[SEARCH_NODES:]
        return snode

    def closest(self):
        return [n for n in self.nodes if n.isAlive()][:self.ksize]

    def replied(self, node, token, now):
        snode = self.insert(node)
        if snode is None:
            return None
        snode.replied = True
        snode.reply_time = now
        snode.request_time = None
        snode.pinged = 0
        snode.token = token
        return snode

    def acked(self, node_id, now):
        snode = self.getNode(node_id)
        if snode is not None:
            snode.acked = True
            snode.reply_time = now
        return snode

    def step(self, now):
        """
        Send whatever requests are due. Returns True once the search is done.
        """
        if self.done:
            return True
        self.step_time = now
        closest = self.closest()
        if len(closest) == 0:
            if self.nodes:
                # every candidate stopped answering
                self.finish()
                return True
            return False

        if all(n.replied for n in closest):
            if self.port:
                pending = False
                for snode in closest:
                    if snode.acked or snode.token is None:
                        continue
                    pending = True
                    if snode.isDue(now) and snode.isAlive():
                        snode.markRequested(now)
                        self.protocol.callAnnouncePeer(self, snode, now)
                if pending:
                    return False
            self.finish()
            return True

        inflight = len([n for n in closest if n.isInflight(now)])
        for snode in closest:
            if inflight >= self.alpha:
                break
            if not snode.replied and snode.isDue(now):
                snode.markRequested(now)
                self.protocol.callGetPeers(self, snode, now)
                inflight += 1
        return False

    def finish(self):
        self.done = True
        self.log.debug("search for %s done" % self.id.hex())
        if self.callback is not None:
            self.callback(SearchDone(self.id, self.family))

    def isExpired(self, now):
        return now - self.step_time > SEARCH_EXPIRE

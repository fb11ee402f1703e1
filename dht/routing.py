"""
Copyright (c) 2014 Brian Muller
Copyright (c) 2015 OpenBazaar
"""

import heapq
from collections import OrderedDict

# how long a questionable node is given to answer a ping before we ask again
PING_INTERVAL = 15

# buckets not touched for this long get refreshed with a find_node
REFRESH_INTERVAL = 900

# what we know about a node being added to the table
HEARD_OF = 0
SENT_QUERY = 1
REPLIED = 2


class KBucket(object):
    def __init__(self, rangeLower, rangeUpper, ksize, now=0):
        self.range = (rangeLower, rangeUpper)
        self.nodes = OrderedDict()
        self.replacementNodes = OrderedDict()
        self.touchLastUpdated(now)
        self.ksize = ksize

    def touchLastUpdated(self, now):
        self.lastUpdated = now

    def getNodes(self):
        return list(self.nodes.values())

    def split(self):
        midpoint = (self.range[0] + self.range[1]) // 2
        one = KBucket(self.range[0], midpoint, self.ksize, self.lastUpdated)
        two = KBucket(midpoint + 1, self.range[1], self.ksize, self.lastUpdated)
        for node in self.nodes.values():
            bucket = one if node.long_id <= midpoint else two
            bucket.nodes[node.id] = node
        for node in self.replacementNodes.values():
            bucket = one if node.long_id <= midpoint else two
            bucket.replacementNodes[node.id] = node
        return one, two

    def removeNode(self, node):
        if node.id in self.replacementNodes:
            del self.replacementNodes[node.id]
        if node.id not in self.nodes:
            return

        # delete node, and see if we can add a replacement
        del self.nodes[node.id]
        if len(self.replacementNodes) > 0:
            newnode = self.replacementNodes.popitem()[1]
            self.nodes[newnode.id] = newnode

    def hasInRange(self, node):
        return self.range[0] <= node.long_id <= self.range[1]

    def addNode(self, node):
        """
        Add a C{Node} to the C{KBucket}.  Return True if successful,
        False if the bucket is full.

        If the bucket is full, keep track of node in a replacement list,
        per section 4.1 of the paper.
        """
        if node.id in self.nodes:
            del self.nodes[node.id]
            self.nodes[node.id] = node
        elif len(self) < self.ksize:
            self.nodes[node.id] = node
        else:
            if node.id in self.replacementNodes:
                del self.replacementNodes[node.id]
            elif len(self.replacementNodes) >= self.ksize:
                self.replacementNodes.popitem(last=False)
            self.replacementNodes[node.id] = node
            return False
        return True

    def replaceBad(self, node):
        """
        Put `node` in place of the first bad node of a full bucket.
        """
        for candidate in self.nodes.values():
            if candidate.isBad():
                del self.nodes[candidate.id]
                self.nodes[node.id] = node
                return True
        return False

    def questionable(self, now):
        """
        The first node that is not known to be good and has not been pinged recently.
        """
        for node in self.nodes.values():
            if not node.isGood(now) and (node.pinged_time is None or node.pinged_time < now - PING_INTERVAL):
                return node
        return None

    def __getitem__(self, id):
        return self.nodes.get(id, None)

    def __len__(self):
        return len(self.nodes)


class RoutingTable(object):
    def __init__(self, protocol, ksize, node):
        """
        @param node: The node that represents this server.  It won't
        be added to the routing table, but will be needed later to
        determine which buckets to split or not.
        """
        self.node = node
        self.protocol = protocol
        self.ksize = ksize
        self.flush()

    def flush(self):
        self.buckets = [KBucket(0, 2 ** 160, self.ksize)]

    def splitBucket(self, index):
        one, two = self.buckets[index].split()
        self.buckets[index] = one
        self.buckets.insert(index + 1, two)

    def getLonelyBuckets(self, now):
        """
        Get all of the buckets that haven't been updated in over fifteen minutes.
        """
        return [b for b in self.buckets if b.lastUpdated < now - REFRESH_INTERVAL]

    def getNode(self, node_id):
        for bucket in self.buckets:
            node = bucket[node_id]
            if node is not None:
                return node
        return None

    def addContact(self, node, now, confirm=HEARD_OF):
        """
        Add or refresh a node. Nodes we merely heard of are only added when their
        bucket has room; nodes that talked to us may split our own bucket, replace
        a bad node, or wait in the replacement cache while a questionable node
        is pinged.

        Returns the node held by the table, or None if it was not added.
        """
        if node.id == self.node.id:
            return None
        index = self.getBucketFor(node)
        bucket = self.buckets[index]

        existing = bucket[node.id]
        if existing is not None:
            if confirm > HEARD_OF:
                existing.heard(now, confirm == REPLIED)
            if confirm == REPLIED:
                bucket.touchLastUpdated(now)
            return existing

        if confirm > HEARD_OF:
            node.heard(now, confirm == REPLIED)

        if len(bucket) < self.ksize:
            bucket.addNode(node)
            if confirm == REPLIED:
                bucket.touchLastUpdated(now)
            return node

        if confirm == HEARD_OF:
            return None

        # Per section 4.2 of paper, split if the bucket has the node in its range
        if bucket.hasInRange(self.node):
            self.splitBucket(index)
            return self.addContact(node, now, confirm)

        if bucket.replaceBad(node):
            return node

        bucket.addNode(node)
        questionable = bucket.questionable(now)
        if questionable is not None:
            self.protocol.callPing(questionable)
        return None

    def getBucketFor(self, node):
        """
        Get the index of the bucket that the given node would fall into.
        """
        for index, bucket in enumerate(self.buckets):
            if node.long_id <= bucket.range[1]:
                return index

    def getNodes(self):
        nodes = []
        for bucket in self.buckets:
            nodes.extend(bucket.getNodes())
        return nodes

    def goodNodes(self, now):
        return [n for n in self.getNodes() if n.isGood(now)]

    def removeBad(self):
        removed = []
        for bucket in self.buckets:
            for node in bucket.getNodes():
                if node.isBad():
                    bucket.removeNode(node)
                    removed.append(node)
        return removed

    def findNeighbors(self, node, k=None, exclude=None, now=None):
        """
        The k nodes closest to `node`. When `now` is given only good nodes are
        returned, otherwise anything that is not bad.
        """
        k = k or self.ksize
        candidates = []
        for n in self.getNodes():
            if exclude is not None and n.sameHomeAs(exclude):
                continue
            if now is not None and not n.isGood(now):
                continue
            if n.isBad():
                continue
            candidates.append(n)
        return heapq.nsmallest(k, candidates, key=node.distanceTo)

    def __len__(self):
        return sum(len(b) for b in self.buckets)

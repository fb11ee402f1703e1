"""
Copyright (c) 2014 Brian Muller
Copyright (c) 2015 OpenBazaar
"""

import socket

# a node is good if it answered one of our queries within the last two hours
# and we heard from it at all within the last fifteen minutes
REPLY_WINDOW = 7200
HEARD_WINDOW = 900


class Node(object):
    def __init__(self, id, ip=None, port=None):
        self.id = id
        self.ip = ip
        self.port = port
        self.long_id = int.from_bytes(id, "big")
        self.time = None
        self.reply_time = None
        self.pinged = 0
        self.pinged_time = None

    @property
    def family(self):
        if self.ip is None:
            return None
        return socket.AF_INET6 if ":" in self.ip else socket.AF_INET

    @property
    def address(self):
        return self.ip, self.port

    def sameHomeAs(self, node):
        return self.ip == node.ip and self.port == node.port

    def distanceTo(self, node):
        """
        Get the distance between this node and another.
        """
        return self.long_id ^ node.long_id

    def heard(self, now, replied=False):
        """
        Record a message from this node. A reply to one of our queries clears
        the count of unanswered pings.
        """
        self.time = now
        if replied:
            self.reply_time = now
            self.pinged = 0
            self.pinged_time = None

    def markPinged(self, now):
        self.pinged += 1
        self.pinged_time = now

    def isGood(self, now):
        if self.reply_time is None or self.time is None:
            return False
        return self.pinged <= 2 and self.reply_time >= now - REPLY_WINDOW and self.time >= now - HEARD_WINDOW

    def isBad(self):
        return self.pinged >= 4

    def __repr__(self):
        return repr([self.long_id, self.ip, self.port])

    def __str__(self):
        if self.family == socket.AF_INET6:
            return "[%s]:%s" % (self.ip, str(self.port))
        return "%s:%s" % (self.ip, str(self.port))

"""
Utility functions for tests.
"""
import random
import struct

from dht.node import Node


def mknode(node_id=None, ip=None, port=None, intid=None):
    """
    Make a node. Created nodes have a random id unless one is given.
    """
    if intid is not None:
        node_id = intid.to_bytes(20, "big")
    node_id = node_id or struct.pack("!Q", random.getrandbits(64)) + bytes(12)
    return Node(node_id, ip, port)


def goodnode(now, **kwargs):
    """
    A node that just answered one of our queries.
    """
    node = mknode(**kwargs)
    node.heard(now, replied=True)
    return node

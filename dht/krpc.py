"""
KRPC, the bencoded message format of the mainline DHT (BEP-5), with the
IPv6 extensions of BEP-32.
"""

import socket
import struct

import bencodepy

from dht.node import Node

QUERY = b"q"
RESPONSE = b"r"
ERROR = b"e"

PING = b"ping"
FIND_NODE = b"find_node"
GET_PEERS = b"get_peers"
ANNOUNCE_PEER = b"announce_peer"

GENERIC_ERROR = 201
SERVER_ERROR = 202
PROTOCOL_ERROR = 203
METHOD_UNKNOWN = 204

ADDRESS_SIZE = {socket.AF_INET: 4, socket.AF_INET6: 16}


class KRPCError(Exception):
    """
    A datagram or a query that doesn't follow the protocol.
    """

    def __init__(self, message, code=PROTOCOL_ERROR):
        Exception.__init__(self, message)
        self.code = code


class Message(object):
    def __init__(self, tid, kind, method=None, args=None, values=None, error=None, version=None):
        self.tid = tid
        self.kind = kind
        self.method = method
        self.args = args or {}
        self.values = values or {}
        self.error = error
        self.version = version

    def __repr__(self):
        return "Message(%r, %r, %r)" % (self.tid, self.kind, self.method)


def decode(datagram):
    """
    Parse a datagram into a `Message`.

    Raises:
        KRPCError: the datagram isn't a well formed KRPC message.
    """
    try:
        obj = bencodepy.decode(datagram)
    except (bencodepy.BencodeDecodeError, ValueError, TypeError, IndexError) as e:
        raise KRPCError("undecodable datagram: %s" % e)
    if not isinstance(obj, dict):
        raise KRPCError("message is not a dictionary")

    tid = obj.get(b"t")
    kind = obj.get(b"y")
    version = obj.get(b"v")
    if not isinstance(tid, bytes):
        raise KRPCError("missing transaction id")

    if kind == QUERY:
        method = obj.get(b"q")
        args = obj.get(b"a")
        if not isinstance(method, bytes) or not isinstance(args, dict):
            raise KRPCError("malformed query")
        return Message(tid, kind, method=method, args=args, version=version)
    elif kind == RESPONSE:
        values = obj.get(b"r")
        if not isinstance(values, dict):
            raise KRPCError("malformed response")
        return Message(tid, kind, values=values, version=version)
    elif kind == ERROR:
        error = obj.get(b"e")
        if not isinstance(error, list):
            raise KRPCError("malformed error")
        return Message(tid, kind, error=error, version=version)
    raise KRPCError("unknown message type %r" % kind)


def _encode(message, version):
    if version:
        message[b"v"] = version
    return bencodepy.encode(message)


def encodeQuery(tid, method, args, version=None):
    return _encode({b"t": tid, b"y": QUERY, b"q": method, b"a": args}, version)


def encodeResponse(tid, values, version=None):
    return _encode({b"t": tid, b"y": RESPONSE, b"r": values}, version)


def encodeError(tid, code, message, version=None):
    return _encode({b"t": tid, b"y": ERROR, b"e": [code, message.encode("utf-8")]}, version)


def packPeer(ip, port):
    family = socket.AF_INET6 if ":" in ip else socket.AF_INET
    return socket.inet_pton(family, ip) + struct.pack("!H", port)


def unpackPeer(record):
    """
    Turn a 6 byte (IPv4) or 18 byte (IPv6) compact record into (ip, port).
    """
    if len(record) == 6:
        family = socket.AF_INET
    elif len(record) == 18:
        family = socket.AF_INET6
    else:
        raise KRPCError("bad compact peer length %d" % len(record))
    ip = socket.inet_ntop(family, record[:-2])
    port = struct.unpack("!H", record[-2:])[0]
    return ip, port


def packNodes(nodes):
    return b"".join(n.id + packPeer(n.ip, n.port) for n in nodes)


def unpackNodes(data, family):
    """
    Parse the `nodes` (IPv4) or `nodes6` (IPv6) value of a reply. Trailing
    bytes that don't make a full entry are ignored.
    """
    if not isinstance(data, bytes):
        return []
    size = 20 + ADDRESS_SIZE[family] + 2
    nodes = []
    for i in range(0, len(data) - size + 1, size):
        entry = data[i:i + size]
        ip = socket.inet_ntop(family, entry[20:-2])
        port = struct.unpack("!H", entry[-2:])[0]
        if port == 0:
            continue
        nodes.append(Node(entry[:20], ip, port))
    return nodes

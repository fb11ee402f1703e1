"""
General catchall for functions that don't make sense as methods, plus the
hooks the engine calls back into (hashing, randomness, blacklist).
"""

import hashlib
import os
import socket

import nacl.hash
import nacl.encoding


class RandomnessError(Exception):
    pass


def digest(s):
    if not isinstance(s, bytes):
        s = str(s).encode('utf-8')
    return hashlib.sha1(s).digest()


def dht_hash(hash_size, v1, v2=b"", v3=b""):
    """
    Hash up to three buffers into `hash_size` bytes. The SHA-512 output is
    truncated, or zero padded when more than 64 bytes are asked for.
    """
    h = nacl.hash.sha512(v1 + v2 + v3, encoder=nacl.encoding.RawEncoder)
    if hash_size > len(h):
        return h + b"\0" * (hash_size - len(h))
    return h[:hash_size]


def random_bytes(size):
    """
    Read `size` bytes from the operating system's randomness source.

    Raises:
        RandomnessError: the source is missing or returned fewer bytes.
    """
    try:
        data = os.urandom(size)
    except (NotImplementedError, OSError) as e:
        raise RandomnessError("cannot read random bytes: %s" % e)
    if len(data) < size:
        raise RandomnessError("short read from randomness source (%d of %d bytes)" % (len(data), size))
    return data


def blacklisted(address):
    # no blacklisting policy
    return False


def address_family(address):
    return socket.AF_INET6 if ":" in address[0] else socket.AF_INET


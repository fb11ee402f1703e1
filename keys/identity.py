"""
Identities used on the network: our own node id and the info-hash of the
key we peer on.
"""

from dht.utils import digest, random_bytes

NODE_ID_SIZE = 20

DEFAULT_KEY = "default"


def generate_node_id():
    """
    Draw a fresh 20 byte node id from the system randomness source.

    Raises:
        RandomnessError: the source is unavailable or returned too few bytes.
    """
    return random_bytes(NODE_ID_SIZE)


def info_hash(key=DEFAULT_KEY):
    """
    The 20 byte SHA-1 of the UTF-8 encoded key string.
    """
    return digest(key.encode("utf-8"))

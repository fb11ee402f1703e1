"""
A compact BitTorrent mainline DHT engine based on https://github.com/bmuller/kademlia
and modified to be driven from the outside.

Modifications include:
    Bencoded KRPC messages (BEP-5) in place of protobuf.
    One routing table per address family (BEP-32).
    No reactor calls inside the engine. The driver calls `dispatch` with each datagram
    and on every timeout, and the engine answers with the number of seconds until it
    wants to be called again.
    Announced peers are kept in memory and expire after 30 minutes.
"""
version_info = (0, 2)
version = '.'.join([str(i) for i in version_info])

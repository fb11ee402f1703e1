"""
Events an engine hands to its listeners while a search runs.
"""

from collections import namedtuple

# a search (and its announce, if any) finished
SearchDone = namedtuple("SearchDone", ["info_hash", "family"])

# a node answered a search with peers; `peers` holds 6 or 18 byte compact records
PeerValues = namedtuple("PeerValues", ["info_hash", "family", "peers"])

"""
Copyright (c) 2014 Brian Muller
Copyright (c) 2015 OpenBazaar
"""

import sqlite3 as lite
from twisted.internet import reactor
from zope.interface import implementer, Interface

# remote peers forget announced data after roughly half an hour
PEER_TTL = 1800

# most values handed out in a single get_peers reply
MAX_VALUES = 50

# announced peers kept for a single info hash, the oldest make room
MAX_PEERS = 2048

# rows kept in total, new peers are refused beyond this
MAX_ROWS = 16384


class IStorage(Interface):
    """
    Peers announced to this node.
    """

    def store(info_hash, family, peer):
        """
        Remember a compact peer record for `info_hash`, refreshing it if already known.
        Returns False when the store is full and the peer was not kept.
        """

    def get(info_hash, family, limit=MAX_VALUES):
        """
        Return up to `limit` compact peer records of the given family, newest first.
        """

    def cull():
        """
        Remove expired peers.
        """

    def close():
        """
        Release the backing store.
        """


@implementer(IStorage)
class PeerStorage(object):

    def __init__(self, ttl=PEER_TTL, clock=None, maxPeers=MAX_PEERS, maxRows=MAX_ROWS):
        self.ttl = ttl
        self.maxPeers = maxPeers
        self.maxRows = maxRows
        self.clock = clock or reactor
        self.db = lite.connect(":memory:")
        cursor = self.db.cursor()
        cursor.execute('''CREATE TABLE peers(info_hash BLOB, family INTEGER, peer BLOB, birthday FLOAT,
                          PRIMARY KEY(info_hash, peer))''')
        cursor.execute('''CREATE INDEX idx1 ON peers(info_hash, family);''')
        cursor.execute('''CREATE INDEX idx2 ON peers(birthday);''')
        self.db.commit()

    def store(self, info_hash, family, peer):
        cursor = self.db.cursor()
        cursor.execute('''SELECT COUNT(*) FROM peers WHERE info_hash=? AND peer=?''', (info_hash, peer))
        if cursor.fetchone()[0] == 0:
            self.cull()
            cursor.execute('''SELECT COUNT(*) FROM peers WHERE info_hash=?''', (info_hash,))
            if cursor.fetchone()[0] >= self.maxPeers:
                cursor.execute('''DELETE FROM peers WHERE rowid IN
                                  (SELECT rowid FROM peers WHERE info_hash=? ORDER BY birthday, rowid LIMIT 1)''',
                               (info_hash,))
            elif len(self) >= self.maxRows:
                return False
        cursor.execute('''INSERT OR REPLACE INTO peers(info_hash, family, peer, birthday) VALUES (?,?,?,?)''',
                       (info_hash, int(family), peer, self.clock.seconds()))
        self.db.commit()
        return True

    def get(self, info_hash, family, limit=MAX_VALUES):
        self.cull()
        cursor = self.db.cursor()
        cursor.execute('''SELECT peer FROM peers WHERE info_hash=? AND family=? ORDER BY birthday DESC LIMIT ?''',
                       (info_hash, int(family), limit))
        return [bytes(row[0]) for row in cursor.fetchall()]

    def cull(self):
        expiration = self.clock.seconds() - self.ttl
        cursor = self.db.cursor()
        cursor.execute('''DELETE FROM peers WHERE birthday < ?''', (expiration,))
        self.db.commit()

    def close(self):
        self.db.close()

    def __len__(self):
        cursor = self.db.cursor()
        cursor.execute('''SELECT COUNT(*) FROM peers''')
        return cursor.fetchone()[0]

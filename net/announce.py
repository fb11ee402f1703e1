"""
Periodic search and announce of the key we peer on.
"""

import sys

from twisted.internet import reactor

from interfaces import EngineError
from log import Logger

# seconds between two searches, remote nodes drop announced peers after 30 minutes
SEARCH_INTERVAL = 300


class SearchCycler(object):
    """
    Starts one search per active address family, at most once every
    `interval` seconds. Nodes closest to the key are announced our `port`
    unless it is 0.
    """

    def __init__(self, engine, info_hash, families, port=0, interval=SEARCH_INTERVAL, clock=None, callback=None,
                 out=None):
        self.engine = engine
        self.info_hash = info_hash
        self.families = list(families)
        self.port = port
        self.interval = interval
        self.clock = clock or reactor
        self.callback = callback
        self.out = out
        self.last = None
        self.log = Logger(system=self)

    def check(self):
        """
        Trigger the searches if they are due. Returns True if they were.
        """
        now = self.clock.seconds()
        if self.last is not None and now - self.last < self.interval:
            return False
        self._write("triggering search")
        for family in self.families:
            try:
                self.engine.start_operation(self.info_hash, self.port, family, self.callback)
            except EngineError as e:
                self.log.error("could not start search on family %d: %s" % (family, e))
        self.last = now
        return True

    def _write(self, line):
        out = self.out or sys.stdout
        out.write(line + "\n")
        out.flush()

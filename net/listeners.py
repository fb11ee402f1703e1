import sys

from zope.interface import implementer

from dht.events import SearchDone, PeerValues
from dht.krpc import unpackPeer, KRPCError
from interfaces import EventListener
from log import Logger


@implementer(EventListener)
class EventListenerImpl(object):
    """
    Prints the outcome of our searches: a line when one finishes and the
    address of every peer a node sends us.
    """

    def __init__(self, out=None):
        self.out = out
        self.log = Logger(system=self)

    def __call__(self, event):
        self.notify(event)

    def notify(self, event):
        if isinstance(event, SearchDone):
            self._write("Search done.")
        elif isinstance(event, PeerValues):
            self._write("Received %d values." % len(event.peers))
            for record in event.peers:
                try:
                    ip, port = unpackPeer(record)
                except KRPCError as e:
                    self.log.warning("skipping malformed peer record: %s" % e)
                    continue
                if ":" in ip:
                    self._write("[%s]:%d" % (ip, port))
                else:
                    self._write("%s:%d" % (ip, port))
        else:
            self.log.warning("unknown event %r" % (event,))

    def _write(self, line):
        out = self.out or sys.stdout
        out.write(line + "\n")
        out.flush()

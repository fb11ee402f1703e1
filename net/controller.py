"""
Start up and shut down a node: identity, sockets, engine, bootstrap and the
dispatch loop, in that order.
"""

import signal
import sys

from twisted.internet import reactor as default_reactor

from config import KSIZE, ALPHA, SEARCH_INTERVAL, MAX_BOOTSTRAP_NODES, RECEIVE_BUFFER, VERSION_TAG
from dht.engine import MainlineEngine
from dht.utils import RandomnessError
from interfaces import EngineError
from keys.identity import generate_node_id, info_hash
from log import Logger
from net.announce import SearchCycler
from net.bootstrap import BootstrapSeeder, BootstrapError, resolve_bootstrap
from net.eventloop import LoopState, Scheduler
from net.listeners import EventListenerImpl
from net.transport import TransportError, open_sockets, listen

# caps handed to snapshot_good_peers for the per iteration report
REPORT_LIMIT = 500


class NodeController(object):
    """
    Owns everything a running node needs.

    `options` carries: port, bootstrap (list of (host, port)), ipv4, ipv6,
    bind4, bind6, key, quiet and announce_port.
    """

    def __init__(self, options, engine=None, reactor=None, out=None):
        self.options = options
        self.reactor = reactor or default_reactor
        if engine is None:
            engine = MainlineEngine(KSIZE, ALPHA, noisy=not options.quiet, clock=self.reactor)
        self.engine = engine
        self.out = out
        self.state = LoopState()
        self.sockets = None
        self.scheduler = None
        self.ports = []
        self.node_id = None
        self.info_hash = None
        self.initialized = False
        self.log = Logger(system=self)

    def handleSignal(self, signum, frame):
        self.state.exiting = True
        self.reactor.callFromThread(self.interrupted, signum)

    def interrupted(self, signum):
        if self.scheduler is not None:
            self.scheduler.interrupt(signum)

    def start(self):
        """
        Bring the node up to the point where only the reactor is missing.

        Raises:
            RandomnessError, TransportError, EngineError or BootstrapError
        """
        signal.signal(signal.SIGINT, self.handleSignal)
        options = self.options

        self.node_id = generate_node_id()
        self.info_hash = info_hash(options.key)
        self._write("Peering with infohash: %s" % self.info_hash.hex())

        self.sockets = open_sockets(options.port, options.ipv4, options.ipv6, options.bind4, options.bind6)
        self.engine.init(self.sockets.v4, self.sockets.v6, self.node_id, VERSION_TAG)
        self.initialized = True

        endpoints = resolve_bootstrap(options.bootstrap, self.sockets.v4 is not None,
                                      self.sockets.v6 is not None, MAX_BOOTSTRAP_NODES)
        BootstrapSeeder(self.engine, self.node_id).seed(endpoints)

        listener = EventListenerImpl(self.out)
        cycler = SearchCycler(self.engine, self.info_hash, self.sockets.families(), port=options.announce_port,
                              interval=SEARCH_INTERVAL, clock=self.reactor, callback=listener, out=self.out)
        self.scheduler = Scheduler(self.engine, self.state, clock=self.reactor, bufsize=RECEIVE_BUFFER,
                                   callback=listener, cycler=cycler, observer=self.reportGoodNodes,
                                   onStop=self.reactor.stop)
        self.ports = listen(self.reactor, self.sockets, self.scheduler, RECEIVE_BUFFER)
        self.reactor.addSystemEventTrigger('before', 'shutdown', self.shutdown)
        self.scheduler.start()

    def reportGoodNodes(self, state):
        count4, count6, total = self.engine.snapshot_good_peers(REPORT_LIMIT, REPORT_LIMIT)
        self.log.info("Found %d (%d + %d) good nodes." % (total, count4, count6))

    def shutdown(self):
        self.log.info("shutting down node")
        if self.initialized:
            self.engine.teardown()
            self.initialized = False
        if self.sockets is not None:
            self.sockets.close()
            self.sockets = None

    def run(self):
        """
        Run the node until interrupted. Returns the process exit status.
        """
        try:
            self.start()
        except (RandomnessError, TransportError, EngineError, BootstrapError) as e:
            self.log.critical("startup failed: %s" % e)
            sys.stderr.write("%s\n" % e)
            self.shutdown()
            return 1

        self.reactor.run(installSignalHandlers=False)

        if self.state.failure is not None:
            sys.stderr.write("%s\n" % self.state.failure)
            return 1
        return 0

    def _write(self, line):
        out = self.out or sys.stdout
        out.write(line + "\n")
        out.flush()


def run(options):
    return NodeController(options).run()

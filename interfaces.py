from zope.interface import Interface, Attribute


class EngineError(Exception):
    """
    Raised by a `DHTEngine` when an operation fails. `errno` tells the driver
    how to react: EINTR is transient, EINVAL and EFAULT mean the engine was
    called incorrectly, anything else is a recoverable runtime failure.
    """

    def __init__(self, errno, message=None):
        Exception.__init__(self, errno, message or "engine error %d" % errno)
        self.errno = errno
        self.message = message

    def __str__(self):
        return self.message or "engine error %d" % self.errno


class DHTEngine(Interface):
    """
    The DHT engine owns the routing table, the RPC state machine and the wire
    format. The driver only feeds it datagrams and timer ticks through this
    interface, so any implementation providing it can be swapped in.
    """

    node_id = Attribute("""The 20 byte id of this node, set by `init`""")

    def init(v4_socket, v6_socket, node_id, version_tag):
        """
        Take ownership of the sockets for sending and put them into non-blocking mode.

        Args:
            v4_socket: a bound IPv4 datagram socket or None
            v6_socket: a bound IPv6 datagram socket or None
            node_id: 20 byte identifier of this node
            version_tag: 4 byte client version sent in every message
        Raises:
            EngineError: neither socket is usable or the id is malformed.
        """

    def dispatch(data, sender, tosleep, callback=None):
        """
        Process one received datagram (or just a timer tick when `data` is None)
        and run any periodic work that is due.

        Args:
            data: the datagram `bytes` or None
            sender: the (ip, port) `tuple` the datagram came from, or None
            tosleep: seconds the driver was asked to sleep before this call
            callback: optional callable receiving events raised during this call
        Returns:
            the number of seconds (non-negative `int`) until the engine wants to be called again.
        Raises:
            EngineError
        """

    def start_operation(info_hash, port, family, callback=None):
        """
        Start (or restart) a search for `info_hash` on the given address family. When
        `port` is non-zero the node is also announced as a peer on that port. Results
        are delivered later through `callback`.
        """

    def register_candidate(node_id, address):
        """
        Remember `address` as a bootstrap candidate. `node_id` may be a guess; the engine
        learns the real id when the node answers.
        """

    def snapshot_good_peers(max_v4, max_v6):
        """
        Return a `tuple` (count_v4, count_v6, total) of known good nodes, each count
        capped at the given maximum.
        """

    def teardown():
        """
        Release everything the engine holds. The sockets are left open for the caller.
        """


class EventListener(Interface):
    """
    Receives the events an engine raises while a search is running.
    """

    def notify(event):
        """
        Called with either a `dht.events.SearchDone` or a `dht.events.PeerValues`.
        """

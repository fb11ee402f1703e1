import errno
import socket

import bencodepy
import mock
from twisted.internet import task
from twisted.trial import unittest
from zope.interface.verify import verifyObject

from dht import krpc
from dht.engine import MainlineEngine, BOOTSTRAP_TRIES
from dht.events import PeerValues, SearchDone
from dht.node import Node
from dht.routing import REPLIED
from dht.utils import digest
from interfaces import DHTEngine, EngineError


class MainlineEngineTest(unittest.TestCase):
    def setUp(self):
        self.clock = task.Clock()
        self.clock.advance(1000)
        self.sock = mock.Mock()
        self.node_id = b"\x01" * 20
        self.remote_id = b"\x02" * 20
        self.addr = ("192.0.2.10", 6881)
        self.info_hash = digest("default")
        self.engine = MainlineEngine(ksize=8, alpha=3, noisy=False, clock=self.clock)
        self.engine.init(self.sock, None, self.node_id, b"NT\x00\x00")

    def tearDown(self):
        if self.engine.running:
            self.engine.teardown()

    def sent(self, sock=None):
        sock = sock or self.sock
        return [(bencodepy.decode(c[0][0]), c[0][1]) for c in sock.sendto.call_args_list]

    def reply(self, tid):
        for message, address in self.sent():
            if message[b"t"] == tid and message[b"y"] != b"q":
                return message, address
        self.fail("nothing sent for tid %r" % tid)

    def queries(self, method):
        return [(m, a) for m, a in self.sent() if m[b"y"] == b"q" and m[b"q"] == method]

    def query(self, method, args, tid=b"qq"):
        args = dict(args)
        args.setdefault(b"id", self.remote_id)
        return self.engine.dispatch(krpc.encodeQuery(tid, method, args), self.addr, 0)

    def addGood(self, node_id, address):
        node = Node(node_id, address[0], address[1])
        self.engine.routers[socket.AF_INET].addContact(node, self.clock.seconds(), REPLIED)
        return node

    def test_interface(self):
        self.assertTrue(verifyObject(DHTEngine, self.engine))

    def test_init_needs_a_socket(self):
        engine = MainlineEngine(clock=self.clock)
        e = self.assertRaises(EngineError, engine.init, None, None, self.node_id, b"NT\x00\x00")
        self.assertEqual(e.errno, errno.EINVAL)

    def test_init_checks_id(self):
        engine = MainlineEngine(clock=self.clock)
        e = self.assertRaises(EngineError, engine.init, mock.Mock(), None, b"short", b"NT\x00\x00")
        self.assertEqual(e.errno, errno.EINVAL)

    def test_init_makes_sockets_nonblocking(self):
        self.sock.setblocking.assert_called_once_with(False)

    def test_dispatch_needs_sender(self):
        e = self.assertRaises(EngineError, self.engine.dispatch, b"data", None, 0)
        self.assertEqual(e.errno, errno.EINVAL)

    def test_dispatch_returns_sleep_time(self):
        tosleep = self.engine.dispatch(None, None, 0)
        self.assertIsInstance(tosleep, int)
        self.assertTrue(0 <= tosleep <= 24)

    def test_malformed_datagram_dropped(self):
        self.engine.dispatch(b"garbage", self.addr, 0)
        self.assertEqual(self.sent(), [])

    def test_ping(self):
        self.query(krpc.PING, {})
        message, address = self.reply(b"qq")
        self.assertEqual(address, self.addr)
        self.assertEqual(message[b"y"], b"r")
        self.assertEqual(message[b"r"][b"id"], self.node_id)
        self.assertEqual(message[b"v"], b"NT\x00\x00")
        self.assertIsNotNone(self.engine.routers[socket.AF_INET].getNode(self.remote_id))

    def test_unknown_method(self):
        self.query(b"vote", {})
        message, _ = self.reply(b"qq")
        self.assertEqual(message[b"e"][0], krpc.METHOD_UNKNOWN)

    def test_invalid_id(self):
        self.query(krpc.PING, {b"id": b"short"})
        message, _ = self.reply(b"qq")
        self.assertEqual(message[b"e"][0], krpc.PROTOCOL_ERROR)

    def test_find_node(self):
        for i in range(3):
            self.addGood(bytes([0x80 + i]) * 20, ("198.51.100.%d" % (i + 1), 6881))
        self.query(krpc.FIND_NODE, {b"target": b"\x80" * 20})
        message, _ = self.reply(b"qq")
        nodes = krpc.unpackNodes(message[b"r"][b"nodes"], socket.AF_INET)
        self.assertEqual(nodes[0].id, b"\x80" * 20)
        self.assertEqual(len(nodes), 3)
        self.assertNotIn(b"nodes6", message[b"r"])

    def test_find_node_bad_target(self):
        self.query(krpc.FIND_NODE, {b"target": b"x"})
        message, _ = self.reply(b"qq")
        self.assertEqual(message[b"e"][0], krpc.PROTOCOL_ERROR)

    def test_get_peers_and_announce(self):
        self.query(krpc.GET_PEERS, {b"info_hash": self.info_hash}, tid=b"g1")
        message, _ = self.reply(b"g1")
        token = message[b"r"][b"token"]
        self.assertNotIn(b"values", message[b"r"])

        self.query(krpc.ANNOUNCE_PEER, {b"info_hash": self.info_hash, b"port": 7000, b"token": token}, tid=b"a1")
        message, _ = self.reply(b"a1")
        self.assertEqual(message[b"y"], b"r")

        self.query(krpc.GET_PEERS, {b"info_hash": self.info_hash}, tid=b"g2")
        message, _ = self.reply(b"g2")
        self.assertEqual(message[b"r"][b"values"], [krpc.packPeer("192.0.2.10", 7000)])

    def test_announce_implied_port(self):
        token = self.engine.makeToken(*self.addr)
        args = {b"info_hash": self.info_hash, b"port": 1, b"implied_port": 1, b"token": token}
        self.query(krpc.ANNOUNCE_PEER, args)
        self.assertEqual(self.engine.storage.get(self.info_hash, socket.AF_INET), [krpc.packPeer(*self.addr)])

    def test_announce_bad_token(self):
        self.query(krpc.ANNOUNCE_PEER, {b"info_hash": self.info_hash, b"port": 7000, b"token": b"12345678"})
        message, _ = self.reply(b"qq")
        self.assertEqual(message[b"e"][0], krpc.PROTOCOL_ERROR)
        self.assertEqual(len(self.engine.storage), 0)

    def test_announce_refused_when_storage_full(self):
        self.engine.storage.maxRows = 1
        token = self.engine.makeToken(*self.addr)
        self.query(krpc.ANNOUNCE_PEER, {b"info_hash": digest("first"), b"port": 7000, b"token": token}, tid=b"a1")
        self.assertEqual(self.reply(b"a1")[0][b"y"], b"r")
        self.query(krpc.ANNOUNCE_PEER, {b"info_hash": digest("second"), b"port": 7000, b"token": token}, tid=b"a2")
        message, _ = self.reply(b"a2")
        self.assertEqual(message[b"e"][0], krpc.SERVER_ERROR)
        self.assertEqual(len(self.engine.storage), 1)

    def test_token_rotation(self):
        token = self.engine.makeToken("192.0.2.10", 6881)
        self.assertTrue(self.engine.tokenMatch(token, "192.0.2.10", 6881))
        self.assertFalse(self.engine.tokenMatch(token, "192.0.2.11", 6881))
        self.assertFalse(self.engine.tokenMatch(token, "192.0.2.10", 6882))
        self.engine._rotateSecrets(self.clock.seconds())
        self.assertTrue(self.engine.tokenMatch(token, "192.0.2.10", 6881))
        self.engine._rotateSecrets(self.clock.seconds())
        self.assertFalse(self.engine.tokenMatch(token, "192.0.2.10", 6881))

    def test_reply_makes_node_good(self):
        self.engine.callPing(Node(self.remote_id, *self.addr))
        message, _ = self.queries(krpc.PING)[0]
        self.assertEqual(message[b"t"][:2], b"pn")
        self.engine.dispatch(krpc.encodeResponse(message[b"t"], {b"id": self.remote_id}), self.addr, 0)
        self.assertEqual(self.engine.snapshot_good_peers(500, 500), (1, 0, 1))
        self.assertEqual(self.engine.snapshot_good_peers(0, 500), (0, 0, 0))

    def test_reply_from_wrong_address_ignored(self):
        self.engine.callPing(Node(self.remote_id, *self.addr))
        message, _ = self.queries(krpc.PING)[0]
        data = krpc.encodeResponse(message[b"t"], {b"id": self.remote_id})
        self.engine.dispatch(data, ("192.0.2.99", 6881), 0)
        self.assertEqual(self.engine.snapshot_good_peers(500, 500), (0, 0, 0))

    def test_late_reply_ignored(self):
        self.engine.callPing(Node(self.remote_id, *self.addr))
        message, _ = self.queries(krpc.PING)[0]
        self.clock.advance(400)
        self.engine.dispatch(None, None, 0)
        self.assertEqual(self.engine._outstanding, {})
        self.engine.dispatch(krpc.encodeResponse(message[b"t"], {b"id": self.remote_id}), self.addr, 0)
        self.assertEqual(self.engine.snapshot_good_peers(500, 500), (0, 0, 0))

    def test_reply_nodes_reach_the_table(self):
        self.engine.callFindNode(self.addr, self.node_id)
        message, _ = self.queries(krpc.FIND_NODE)[0]
        nodes = krpc.packNodes([Node(b"\x03" * 20, "198.51.100.1", 6881)])
        data = krpc.encodeResponse(message[b"t"], {b"id": self.remote_id, b"nodes": nodes})
        self.engine.dispatch(data, self.addr, 0)
        self.assertIsNotNone(self.engine.routers[socket.AF_INET].getNode(b"\x03" * 20))

    def test_search_delivers_values(self):
        self.addGood(self.remote_id, self.addr)
        callback = mock.Mock()
        self.engine.start_operation(self.info_hash, 0, socket.AF_INET, callback)
        message, address = self.queries(krpc.GET_PEERS)[0]
        self.assertEqual(address, self.addr)
        self.assertEqual(message[b"a"][b"info_hash"], self.info_hash)

        peers = [krpc.packPeer("192.0.2.1", 6881), krpc.packPeer("192.0.2.2", 6882)]
        values = {b"id": self.remote_id, b"token": b"12345678", b"values": peers}
        self.engine.dispatch(krpc.encodeResponse(message[b"t"], values), self.addr, 0)
        self.assertEqual(callback.call_args_list,
                         [mock.call(PeerValues(self.info_hash, socket.AF_INET, peers)),
                          mock.call(SearchDone(self.info_hash, socket.AF_INET))])

    def test_search_announces(self):
        self.addGood(self.remote_id, self.addr)
        callback = mock.Mock()
        self.engine.start_operation(self.info_hash, 6881, socket.AF_INET, callback)
        message, _ = self.queries(krpc.GET_PEERS)[0]
        values = {b"id": self.remote_id, b"token": b"12345678"}
        self.engine.dispatch(krpc.encodeResponse(message[b"t"], values), self.addr, 0)

        message, _ = self.queries(krpc.ANNOUNCE_PEER)[0]
        self.assertEqual(message[b"a"][b"token"], b"12345678")
        self.assertEqual(message[b"a"][b"port"], 6881)
        self.assertFalse(callback.called)
        self.engine.dispatch(krpc.encodeResponse(message[b"t"], {b"id": self.remote_id}), self.addr, 0)
        callback.assert_called_once_with(SearchDone(self.info_hash, socket.AF_INET))

    def test_search_reused(self):
        first = self.engine.start_operation(self.info_hash, 0, socket.AF_INET)
        second = self.engine.start_operation(self.info_hash, 6881, socket.AF_INET)
        self.assertIs(first, second)
        self.assertEqual(second.port, 6881)
        self.assertEqual(len(self.engine.searches), 1)

    def test_search_needs_family(self):
        e = self.assertRaises(EngineError, self.engine.start_operation, self.info_hash, 0, socket.AF_INET6)
        self.assertEqual(e.errno, errno.EAFNOSUPPORT)

    def test_bootstrap_candidates(self):
        self.assertTrue(self.engine.register_candidate(self.node_id, ("192.0.2.50", 6881)))
        self.assertFalse(self.engine.register_candidate(self.node_id, ("2001:db8::1", 6881, 0, 0)))
        for _ in range(BOOTSTRAP_TRIES + 2):
            self.engine.dispatch(None, None, 0)
            self.clock.advance(2)
        sent = [m for m, a in self.queries(krpc.FIND_NODE) if a == ("192.0.2.50", 6881)]
        self.assertEqual(len(sent), BOOTSTRAP_TRIES)
        self.assertEqual(sent[0][b"a"][b"target"], self.node_id)

    def test_dual_stack(self):
        sock6 = mock.Mock()
        engine = MainlineEngine(noisy=False, clock=self.clock)
        engine.init(self.sock, sock6, self.node_id, b"NT\x00\x00")
        engine.register_candidate(self.node_id, ("2001:db8::1", 6881, 0, 0))
        engine.dispatch(None, None, 0)
        message, address = self.sent(sock6)[0]
        self.assertEqual(address, ("2001:db8::1", 6881))
        self.assertEqual(message[b"a"][b"want"], [b"n4", b"n6"])
        engine.teardown()

    def test_scoped_sender_dropped(self):
        sock6 = mock.Mock()
        engine = MainlineEngine(noisy=False, clock=self.clock)
        engine.init(self.sock, sock6, self.node_id, b"NT\x00\x00")
        scoped = ("fe80::1%eth0", 6881, 0, 2)
        for tid, method, args in ((b"g1", krpc.GET_PEERS, {b"info_hash": self.info_hash}),
                                  (b"p1", krpc.PING, {})):
            args[b"id"] = self.remote_id
            engine.dispatch(krpc.encodeQuery(tid, method, args), scoped, 0)
        self.assertFalse(sock6.sendto.called)
        self.assertIsNone(engine.routers[socket.AF_INET6].getNode(self.remote_id))
        engine.teardown()

    def test_send_failure_is_not_fatal(self):
        self.sock.sendto.side_effect = BlockingIOError(errno.EAGAIN, "try again")
        self.assertFalse(self.engine.callPing(Node(self.remote_id, *self.addr)))

    def test_teardown(self):
        self.engine.teardown()
        self.assertIsNone(self.engine.storage)
        self.assertFalse(self.sock.close.called)
        e = self.assertRaises(EngineError, self.engine.dispatch, None, None, 0)
        self.assertEqual(e.errno, errno.EINVAL)

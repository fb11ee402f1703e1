import hashlib
import socket

import mock
import nacl.hash
import nacl.encoding
from twisted.trial import unittest

from dht.utils import digest, dht_hash, random_bytes, blacklisted, address_family, RandomnessError


class UtilsTest(unittest.TestCase):
    def test_digest(self):
        self.assertEqual(hashlib.sha1(b"1").digest(), digest(1))
        self.assertEqual(hashlib.sha1(b"another").digest(), digest('another'))
        self.assertEqual(hashlib.sha1(b"raw").digest(), digest(b'raw'))

    def test_dht_hash_truncates(self):
        full = nacl.hash.sha512(b"abc", encoder=nacl.encoding.RawEncoder)
        self.assertEqual(dht_hash(8, b"a", b"b", b"c"), full[:8])
        self.assertEqual(dht_hash(8, b"abc"), full[:8])

    def test_dht_hash_pads(self):
        h = dht_hash(80, b"x")
        self.assertEqual(len(h), 80)
        self.assertEqual(h[64:], b"\0" * 16)

    def test_dht_hash_inputs_matter(self):
        self.assertNotEqual(dht_hash(8, b"secret", b"\x01\x02\x03\x04", b"\x1a\xe1"),
                            dht_hash(8, b"secret", b"\x01\x02\x03\x05", b"\x1a\xe1"))

    def test_random_bytes(self):
        self.assertEqual(len(random_bytes(20)), 20)
        self.assertNotEqual(random_bytes(20), random_bytes(20))

    @mock.patch("dht.utils.os.urandom", side_effect=NotImplementedError("no source"))
    def test_random_bytes_unavailable(self, urandom):
        self.assertRaises(RandomnessError, random_bytes, 20)

    @mock.patch("dht.utils.os.urandom", return_value=b"\x00" * 5)
    def test_random_bytes_short(self, urandom):
        self.assertRaises(RandomnessError, random_bytes, 20)

    def test_blacklisted(self):
        self.assertFalse(blacklisted(("1.2.3.4", 6881)))

    def test_address_family(self):
        self.assertEqual(address_family(("1.2.3.4", 6881)), socket.AF_INET)
        self.assertEqual(address_family(("::1", 6881, 0, 0)), socket.AF_INET6)

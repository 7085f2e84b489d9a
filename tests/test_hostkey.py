"""
测试密钥的签名验证和加载
"""
import unittest

import hostkey
from error import UnsupportedError
from message import Message


class HostKeyTest(unittest.TestCase):
    algorithms = (
        "ssh-ed25519",
        "ecdsa-sha2-nistp256",
        "ecdsa-sha2-nistp384",
        "ecdsa-sha2-nistp521",
        "rsa-sha2-512",
        "rsa-sha2-256",
        "ssh-rsa",
    )

    def test_sign_verify(self):
        data = b"exchange hash"
        for algo in self.algorithms:
            with self.subTest(algo=algo):
                key = hostkey.generate_key(algo)
                self.assertEqual(key.algo, algo)
                signature = key.get_sign(data)
                public_key = hostkey.parse_public_key(key.get_k_s(), algo)
                self.assertFalse(public_key.has_private)
                self.assertTrue(public_key.verify(data, signature))
                self.assertFalse(public_key.verify(b"other data", signature))
                # 签名数据被截断
                self.assertFalse(public_key.verify(data, signature[:-4]))

    def test_signature_algorithm_mismatch(self):
        key = hostkey.generate_key("rsa-sha2-512")
        signature = key.get_sign(b"data")
        public_key = hostkey.parse_public_key(key.get_k_s(), "rsa-sha2-256")
        self.assertFalse(public_key.verify(b"data", signature))
        self.assertEqual(key.host_key_algorithms(), ("rsa-sha2-512", "rsa-sha2-256", "ssh-rsa"))
        self.assertEqual(key.with_algo("ssh-rsa").key_type, "ssh-rsa")

    def test_fingerprint(self):
        key = hostkey.generate_key("ssh-ed25519")
        fingerprint = key.fingerprint()
        self.assertTrue(fingerprint.startswith("SHA256:"))
        self.assertNotIn("=", fingerprint)
        self.assertEqual(fingerprint, key.get_public_key().fingerprint())

    def test_load_keys(self):
        key = hostkey.generate_key("ecdsa-sha2-nistp384")
        loaded = hostkey.load_private_key(key.private_bytes())
        self.assertTrue(loaded.has_private)
        self.assertEqual(loaded, key)
        public_key = hostkey.load_public_key(key.openssh_public_key() + b" user@host\n")
        self.assertEqual(public_key, key)
        self.assertTrue(public_key.verify(b"x", loaded.get_sign(b"x")))

    def test_unsupported(self):
        m = Message()
        m.add_string("ssh-dss")
        m.add_string(b"\x00" * 16)
        with self.assertRaises(UnsupportedError):
            hostkey.parse_public_key(m.as_bytes())
        with self.assertRaises(UnsupportedError):
            hostkey.generate_key("ssh-dss")
        with self.assertRaises(UnsupportedError):
            hostkey.parse_public_key(hostkey.generate_key().get_k_s()).get_sign(b"x")


if __name__ == "__main__":
    unittest.main()

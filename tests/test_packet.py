"""
测试 packet 编解码
"""
import secrets
import unittest

import ssh_cipher
import ssh_compression
import ssh_mac
from error import BadRequestError, IntegrityError, MalformedPacketError, PacketTooLargeError
from packet import PacketCodec


def _codec_pair(encryption: str, mac: str = ""):
    """返回 (发送方, 接收方)，两边使用相同的密钥"""
    cipher_cls = ssh_cipher.get_cipher_impl(encryption)
    key = secrets.token_bytes(cipher_cls.key_size)
    iv = secrets.token_bytes(cipher_cls.iv_size)
    mac_key = b""
    mac_cls = None
    if not cipher_cls.is_aead:
        mac_cls = ssh_mac.get_mac_impl(mac)
        mac_key = secrets.token_bytes(mac_cls.key_size)

    def build():
        return cipher_cls(key, iv, mac_cls(mac_key) if mac_cls else None)

    sender = PacketCodec()
    receiver = PacketCodec()
    sender.install_write(build(), ssh_compression.CompressionInterface())
    receiver.install_read(build(), ssh_compression.CompressionInterface())
    return sender, receiver


class PacketCodecTest(unittest.TestCase):
    algorithms = [
        ("chacha20-poly1305@openssh.com", ""),
        ("aes128-gcm@openssh.com", ""),
        ("aes256-gcm@openssh.com", ""),
        ("aes128-ctr", "hmac-sha2-256"),
        ("aes192-ctr", "hmac-sha1-etm@openssh.com"),
        ("aes256-ctr", "hmac-sha2-512-etm@openssh.com"),
    ]

    def test_clear(self):
        sender = PacketCodec()
        receiver = PacketCodec()
        data = sender.encode(b"\x05hello")
        # 没加密时 packet 整体按 8 字节对齐
        self.assertEqual(len(data) % 8, 0)
        payload, consumed = receiver.decode(data)
        self.assertEqual(payload, b"\x05hello")
        self.assertEqual(consumed, len(data))
        self.assertEqual(sender.write_seq_num, 1)
        self.assertEqual(receiver.read_seq_num, 1)

    def test_encrypted(self):
        for encryption, mac in self.algorithms:
            with self.subTest(encryption=encryption, mac=mac):
                sender, receiver = _codec_pair(encryption, mac)
                payloads = [b"\x5e" + secrets.token_bytes(n) for n in (0, 1, 15, 16, 1000)]
                stream = b"".join(sender.encode(p) for p in payloads)
                got = []
                while stream:
                    payload, consumed = receiver.decode(stream)
                    stream = stream[consumed:]
                    got.append(payload)
                self.assertEqual(got, payloads)
                self.assertEqual(receiver.read_seq_num, len(payloads))

    def test_partial_input(self):
        for encryption, mac in self.algorithms:
            with self.subTest(encryption=encryption, mac=mac):
                sender, receiver = _codec_pair(encryption, mac)
                data = sender.encode(b"\x5epartial input")
                buffer = b""
                result = None
                # 一个字节一个字节地给
                for i in range(len(data)):
                    buffer = data[: i + 1]
                    result = receiver.decode(buffer)
                    if i + 1 < len(data):
                        self.assertIsNone(result)
                self.assertEqual(result, (b"\x5epartial input", len(buffer)))

    def test_bit_flip(self):
        for encryption, mac in self.algorithms:
            with self.subTest(encryption=encryption, mac=mac):
                sender, _ = _codec_pair(encryption, mac)
                overhead = sender.write_cipher.overhead
                self.assertGreater(overhead, 0)
                # mac 或者 tag 在 packet 最后，每一位都要检查
                for bit in range(overhead * 8):
                    sender, receiver = _codec_pair(encryption, mac)
                    data = bytearray(sender.encode(b"\x5e" + b"a" * 40))
                    data[len(data) - overhead + bit // 8] ^= 1 << (bit % 8)
                    with self.assertRaises(IntegrityError):
                        receiver.decode(bytes(data))

    def test_bit_flip_in_body(self):
        for encryption, mac in self.algorithms:
            with self.subTest(encryption=encryption, mac=mac):
                sender, receiver = _codec_pair(encryption, mac)
                data = bytearray(sender.encode(b"\x5e" + b"a" * 40))
                data[10] ^= 0x80
                with self.assertRaises(IntegrityError):
                    receiver.decode(bytes(data))

    def test_too_large(self):
        receiver = PacketCodec(max_packet=1024)
        data = (4096).to_bytes(4, "big") + b"\x04" + b"\x00" * 100
        with self.assertRaises(PacketTooLargeError):
            receiver.decode(data)
        sender = PacketCodec(max_packet=1024)
        with self.assertRaises(BadRequestError):
            sender.encode(b"\x5e" + b"a" * 2048)
        self.assertEqual(sender.write_seq_num, 0)

    def test_too_large_with_compression(self):
        sender = PacketCodec(max_packet=1024)
        receiver = PacketCodec(max_packet=1024)
        sender.install_write(ssh_cipher.ClearCipher(), ssh_compression.ZlibCompression())
        receiver.install_read(ssh_cipher.ClearCipher(), ssh_compression.ZlibCompression())
        with self.assertRaises(BadRequestError):
            sender.encode(b"\x5e" + b"a" * 2000)
        # 压缩上下文没有变，后面的 packet 对方还能解压
        for p in (b"\x5e" + b"b" * 100, b"\x5e" + b"c" * 200):
            payload, _ = receiver.decode(sender.encode(p))
            self.assertEqual(payload, p)

    def test_malformed_padding(self):
        receiver = PacketCodec()
        # padding_length 只有 2
        body = b"\x02" + b"\x05abcd" + b"\x00\x00"
        body = body + b"\x00" * (8 - (len(body) + 4) % 8)
        data = len(body).to_bytes(4, "big") + body
        with self.assertRaises(MalformedPacketError):
            receiver.decode(data)

    def test_malformed_alignment(self):
        receiver = PacketCodec()
        body = b"\x04" + b"\x05ab" + b"\x00" * 4
        data = len(body).to_bytes(4, "big") + body
        with self.assertRaises(MalformedPacketError):
            receiver.decode(data)

    def test_seq_wrap(self):
        sender = PacketCodec()
        receiver = PacketCodec()
        sender.write_seq_num = 2**32 - 1
        receiver.read_seq_num = 2**32 - 1
        receiver.decode(sender.encode(b"\x02"))
        self.assertEqual(sender.write_seq_num, 0)
        self.assertEqual(receiver.read_seq_num, 0)

    def test_compression(self):
        sender = PacketCodec()
        receiver = PacketCodec()
        sender.install_write(ssh_cipher.ClearCipher(), ssh_compression.ZlibCompression())
        receiver.install_read(ssh_cipher.ClearCipher(), ssh_compression.ZlibCompression())
        payloads = [b"\x5e" + b"x" * 1000, b"\x5e" + b"y" * 10, b"\x5e" + b"x" * 1000]
        for p in payloads:
            data = sender.encode(p)
            payload, _ = receiver.decode(data)
            self.assertEqual(payload, p)

    def test_delayed_compression(self):
        sender = PacketCodec()
        receiver = PacketCodec()
        sender.install_write(ssh_cipher.ClearCipher(), ssh_compression.ZlibOpensshCompression())
        receiver.install_read(ssh_cipher.ClearCipher(), ssh_compression.ZlibOpensshCompression())
        plain = b"\x5e" + b"z" * 500
        data = sender.encode(plain)
        # 还没激活，数据原样发送
        self.assertIn(b"z" * 500, data)
        self.assertEqual(receiver.decode(data)[0], plain)
        sender.activate_delayed_compression()
        receiver.activate_delayed_compression()
        data = sender.encode(plain)
        self.assertNotIn(b"z" * 500, data)
        self.assertEqual(receiver.decode(data)[0], plain)


if __name__ == "__main__":
    unittest.main()

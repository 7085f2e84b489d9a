"""
测试 SSH 数据类型的编码
"""
import unittest

from error import UnexpectedError
from message import Message, SSHMessageID


class MessageTest(unittest.TestCase):
    def test_mpint(self):
        # https://datatracker.ietf.org/doc/html/rfc4251#section-5
        cases = [
            (0, b"\x00\x00\x00\x00"),
            (0x9A378F9B2E332A7, b"\x00\x00\x00\x08\x09\xa3\x78\xf9\xb2\xe3\x32\xa7"),
            (0x80, b"\x00\x00\x00\x02\x00\x80"),
            (-0x1234, b"\x00\x00\x00\x02\xed\xcc"),
            (-0xDEADBEEF, b"\x00\x00\x00\x05\xff\x21\x52\x41\x11"),
        ]
        for n, expected in cases:
            with self.subTest(n=n):
                self.assertEqual(Message.mpint(n), expected)
                self.assertEqual(Message(expected).get_mpint(), n)

    def test_bytes_to_mpint(self):
        self.assertEqual(Message.bytes_to_mpint(b"\x00\x00\x80"), b"\x00\x00\x00\x02\x00\x80")
        self.assertEqual(Message.bytes_to_mpint(b"\x7f"), b"\x00\x00\x00\x01\x7f")

    def test_name_list(self):
        m = Message()
        m.add_name_list("zlib", "none")
        m.add_name_list()
        m = Message(m.as_bytes())
        self.assertEqual(m.get_name_list(), ["zlib", "none"])
        self.assertEqual(m.get_name_list(), [])

    def test_fields(self):
        m = Message()
        m.add_message_id(SSHMessageID.CHANNEL_DATA)
        m.add_uint32(7)
        m.add_boolean(True)
        m.add_string("中文")
        m.add_raw_bytes(b"rest")
        m = Message(m.as_bytes())
        self.assertEqual(m.get_message_id(), SSHMessageID.CHANNEL_DATA)
        self.assertEqual(m.get_uint32(), 7)
        self.assertTrue(m.get_boolean())
        self.assertEqual(m.get_text(), "中文")
        self.assertEqual(m.get_remaining(), b"rest")

    def test_truncated(self):
        m = Message(b"\x00\x00\x00\x10abc")
        with self.assertRaises(UnexpectedError):
            m.get_string()
        m = Message(b"\x00\x00\x00\x02\xff\xfe")
        with self.assertRaises(UnexpectedError):
            m.get_text()


if __name__ == "__main__":
    unittest.main()

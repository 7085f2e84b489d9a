"""
channel 支持
The Secure Shell (SSH) Connection Protocol: https://datatracker.ietf.org/doc/html/rfc4254

这里只记录 channel 的状态（窗口、关闭状态、待发送的数据），
消息的收发由 session 负责。
"""
import collections
import dataclasses
import typing as t

import logutil
from error import BadRequestError, ProtocolViolationError
from message import Message, SSHMessageID

logger = logutil.get_logger(__name__)

channel_window_maximum_size = 2**32 - 1

# https://datatracker.ietf.org/doc/html/rfc4254#section-8
TTY_OP_END = 0
# 1 到 159 的 opcode 后面跟着 uint32 参数，160 开始未定义，遇到就停止解析
TTY_OP_MAX_DEFINED = 159


def parse_terminal_modes(encoded: bytes) -> t.List[t.Tuple[int, int]]:
    """解析 pty-req 里面的 encoded terminal modes"""
    m = Message(encoded)
    modes = []
    while m.bytes_io.tell() < len(encoded):
        opcode = m.get_byte()
        if opcode == TTY_OP_END or opcode > TTY_OP_MAX_DEFINED:
            break
        modes.append((opcode, m.get_uint32()))
    return modes


def encode_terminal_modes(modes: t.Sequence[t.Tuple[int, int]]) -> bytes:
    m = Message()
    for opcode, value in modes:
        m.add_raw_bytes(bytes([opcode]))
        m.add_uint32(value)
    m.add_raw_bytes(bytes([TTY_OP_END]))
    return m.as_bytes()


@dataclasses.dataclass
class PtyRequest:
    term: str = "xterm"
    width_columns: int = 80
    height_rows: int = 24
    width_pixels: int = 0
    height_pixels: int = 0
    modes: t.List[t.Tuple[int, int]] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class ChannelRequestData:
    """SSH_MSG_CHANNEL_REQUEST 的内容，不同的请求类型用到不同的字段

    https://datatracker.ietf.org/doc/html/rfc4254#section-6
    """

    request_type: str
    want_reply: bool = False
    # pty-req
    pty: t.Optional[PtyRequest] = None
    # env
    env_name: str = ""
    env_value: str = ""
    # exec
    command: str = ""
    # subsystem
    subsystem: str = ""
    # window-change: (columns, rows, width_pixels, height_pixels)
    window: t.Optional[t.Tuple[int, int, int, int]] = None
    # signal / exit-signal
    signal_name: str = ""
    # exit-status
    exit_status: t.Optional[int] = None
    # exit-signal
    core_dumped: bool = False
    error_message: str = ""
    # 不认识的请求类型，剩余的原始数据
    raw: bytes = b""

    @classmethod
    def from_message(cls, m: "Message") -> "ChannelRequestData":
        request_type = m.get_text()
        want_reply = m.get_boolean()
        req = cls(request_type, want_reply)
        if request_type == "pty-req":
            term = m.get_text()
            width_columns = m.get_uint32()
            height_rows = m.get_uint32()
            width_pixels = m.get_uint32()
            height_pixels = m.get_uint32()
            modes = parse_terminal_modes(m.get_string())
            req.pty = PtyRequest(
                term, width_columns, height_rows, width_pixels, height_pixels, modes
            )
        elif request_type == "env":
            req.env_name = m.get_text()
            req.env_value = m.get_text()
        elif request_type == "exec":
            req.command = m.get_text()
        elif request_type == "subsystem":
            req.subsystem = m.get_text()
        elif request_type == "window-change":
            req.window = (m.get_uint32(), m.get_uint32(), m.get_uint32(), m.get_uint32())
        elif request_type == "signal":
            req.signal_name = m.get_text()
        elif request_type == "exit-status":
            req.exit_status = m.get_uint32()
        elif request_type == "exit-signal":
            req.signal_name = m.get_text()
            req.core_dumped = m.get_boolean()
            req.error_message = m.get_text()
            # language tag
            m.get_string()
        elif request_type != "shell":
            req.raw = m.get_remaining()
        return req

    def add_to_message(self, m: "Message"):
        m.add_string(self.request_type)
        m.add_boolean(self.want_reply)
        if self.request_type == "pty-req":
            pty = self.pty or PtyRequest()
            m.add_string(pty.term)
            m.add_uint32(pty.width_columns)
            m.add_uint32(pty.height_rows)
            m.add_uint32(pty.width_pixels)
            m.add_uint32(pty.height_pixels)
            m.add_string(encode_terminal_modes(pty.modes))
        elif self.request_type == "env":
            m.add_string(self.env_name)
            m.add_string(self.env_value)
        elif self.request_type == "exec":
            m.add_string(self.command)
        elif self.request_type == "subsystem":
            m.add_string(self.subsystem)
        elif self.request_type == "window-change":
            for x in self.window or (0, 0, 0, 0):
                m.add_uint32(x)
        elif self.request_type == "signal":
            m.add_string(self.signal_name)
        elif self.request_type == "exit-status":
            m.add_uint32(self.exit_status or 0)
        elif self.request_type == "exit-signal":
            m.add_string(self.signal_name)
            m.add_boolean(self.core_dumped)
            m.add_string(self.error_message)
            m.add_string("")
        else:
            m.add_raw_bytes(self.raw)


class Channel:
    def __init__(
        self,
        local_id: int,
        channel_type: str,
        local_window_size: int,
        local_maximum_packet_size: int,
    ):
        self.type = channel_type
        self.local_id = local_id
        self.local_window_size = local_window_size
        self.local_window_remainder = local_window_size
        self.local_maximum_packet_size = local_maximum_packet_size
        self.remote_id: t.Optional[int] = None
        self.remote_window_remainder = 0
        self.remote_maximum_packet_size = 0

        self.opened = False
        self.local_eof = False
        self.remote_eof = False
        self.local_closed = False
        self.remote_closed = False

        # 超过对方窗口还没发出去的数据 (data_type, data)
        self.pending_data: t.Deque[t.Tuple[t.Optional[int], bytes]] = collections.deque()
        # 数据发完之后再发送 EOF 和 CLOSE
        self.eof_pending = False
        self.close_pending = False
        # 本端发送的需要回复的请求数量
        self.pending_replies = 0

    def __repr__(self):
        return f"<Channel {self.local_id}:{self.remote_id} {self.type}>"

    def confirm(self, remote_id: int, window_size: int, maximum_packet_size: int):
        self.remote_id = remote_id
        self.remote_window_remainder = window_size
        self.remote_maximum_packet_size = maximum_packet_size
        self.opened = True

    def receive_data(self, data_length: int) -> t.Optional["Message"]:
        """收到数据后扣减本端窗口，剩余窗口不到一半时返回 SSH_MSG_CHANNEL_WINDOW_ADJUST"""
        if data_length > self.local_window_remainder:
            raise ProtocolViolationError(
                f"channel {self.local_id} receive data beyond window"
            )
        self.local_window_remainder -= data_length
        if self.local_window_remainder >= self.local_window_size // 2:
            return None
        # 剩余窗口太小，增加窗口大小
        adjust_size = self.local_window_size - self.local_window_remainder
        self.local_window_remainder += adjust_size
        m = Message()
        m.add_message_id(SSHMessageID.CHANNEL_WINDOW_ADJUST)
        m.add_uint32(self.remote_id)
        m.add_uint32(adjust_size)
        return m

    def add_remote_window(self, size: int):
        if self.remote_window_remainder + size > channel_window_maximum_size:
            logger.error("channel[%s:%s] window overflow", self.local_id, self.remote_id)
            return
        self.remote_window_remainder += size

    def queue_data(self, data: bytes, data_type: t.Optional[int] = None):
        if self.eof_pending or self.close_pending or self.local_closed:
            raise BadRequestError(f"channel {self.local_id} already sent eof")
        self.pending_data.append((data_type, data))

    def take_sendable(self) -> t.List["Message"]:
        """按对方的窗口和最大包大小，取出现在可以发送的数据"""
        messages = []
        chunk_limit = max(self.remote_maximum_packet_size, 1)
        while self.pending_data and self.remote_window_remainder > 0:
            data_type, data = self.pending_data[0]
            size = min(len(data), self.remote_window_remainder, chunk_limit)
            chunk = data[:size]
            rest = data[size:]
            if rest:
                self.pending_data[0] = (data_type, rest)
            else:
                self.pending_data.popleft()
            self.remote_window_remainder -= size
            m = Message()
            if data_type is None:
                m.add_message_id(SSHMessageID.CHANNEL_DATA)
                m.add_uint32(self.remote_id)
            else:
                m.add_message_id(SSHMessageID.CHANNEL_EXTENDED_DATA)
                m.add_uint32(self.remote_id)
                m.add_uint32(data_type)
            m.add_string(chunk)
            messages.append(m)
        return messages

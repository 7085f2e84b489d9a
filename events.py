"""
session 处理收到的数据之后交给上层的事件
"""
import dataclasses
import typing as t

if t.TYPE_CHECKING:
    from channel import ChannelRequestData
    from hostkey import SSHKeyBase
    from negotiation import NegotiatedAlgorithms


class Event:
    pass


@dataclasses.dataclass
class VersionReceived(Event):
    # 对方的版本数据，例如 SSH-2.0-OpenSSH_9.0
    version: str


@dataclasses.dataclass
class KexCompleted(Event):
    algorithms: "NegotiatedAlgorithms"
    # 服务器的 host key （只有公钥部分）
    host_key: t.Optional["SSHKeyBase"]
    # 是否是第一次密钥交换
    initial: bool


@dataclasses.dataclass
class AuthBanner(Event):
    message: str
    language: str = ""


@dataclasses.dataclass
class AuthenticationSucceeded(Event):
    username: str
    method: str


@dataclasses.dataclass
class AuthenticationFailed(Event):
    method: str
    # 还可以继续尝试的认证方法
    remaining_methods: t.Tuple[str, ...]
    partial_success: bool = False


@dataclasses.dataclass
class ChannelOpened(Event):
    channel_id: int
    channel_type: str


@dataclasses.dataclass
class ChannelOpenFailed(Event):
    channel_id: int
    reason_code: int
    description: str


@dataclasses.dataclass
class ChannelData(Event):
    channel_id: int
    data: bytes
    # None 表示普通数据，否则是 SSH_MSG_CHANNEL_EXTENDED_DATA 的类型，如 stderr
    data_type: t.Optional[int] = None


@dataclasses.dataclass
class ChannelEof(Event):
    channel_id: int


@dataclasses.dataclass
class ChannelClosed(Event):
    channel_id: int


@dataclasses.dataclass
class ChannelRequest(Event):
    channel_id: int
    request: "ChannelRequestData"


@dataclasses.dataclass
class ChannelRequestResult(Event):
    channel_id: int
    success: bool


@dataclasses.dataclass
class GlobalRequest(Event):
    name: str
    want_reply: bool


@dataclasses.dataclass
class Disconnected(Event):
    reason_id: int
    description: str

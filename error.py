import typing as t

if t.TYPE_CHECKING:
    from message import SSHDisconnectReasonID

default_disconnect_messages = (
    # 多加一个，这样 reason id 就跟数组的索引对上，不需要减一
    "unknown error",
    "SSH_DISCONNECT_HOST_NOT_ALLOWED_TO_CONNECT",
    "SSH_DISCONNECT_PROTOCOL_ERROR",
    "SSH_DISCONNECT_KEY_EXCHANGE_FAILED",
    "SSH_DISCONNECT_RESERVED",
    "SSH_DISCONNECT_MAC_ERROR",
    "SSH_DISCONNECT_COMPRESSION_ERROR",
    "SSH_DISCONNECT_SERVICE_NOT_AVAILABLE",
    "SSH_DISCONNECT_PROTOCOL_VERSION_NOT_SUPPORTED",
    "SSH_DISCONNECT_HOST_KEY_NOT_VERIFIABLE",
    "SSH_DISCONNECT_CONNECTION_LOST",
    "SSH_DISCONNECT_BY_APPLICATION",
    "SSH_DISCONNECT_TOO_MANY_CONNECTIONS",
    "SSH_DISCONNECT_AUTH_CANCELLED_BY_USER",
    "SSH_DISCONNECT_NO_MORE_AUTH_METHODS_AVAILABLE",
    "SSH_DISCONNECT_ILLEGAL_USER_NAME",
)

# message 模块会导入本模块，这里不能反过来导入 SSHDisconnectReasonID ，直接用数字
_PROTOCOL_ERROR = 2
_KEY_EXCHANGE_FAILED = 3
_MAC_ERROR = 5
_COMPRESSION_ERROR = 6
_HOST_KEY_NOT_VERIFIABLE = 9
_NO_MORE_AUTH_METHODS_AVAILABLE = 14


def disconnect_description(reason_id: int) -> str:
    if 0 < reason_id < len(default_disconnect_messages):
        return default_disconnect_messages[reason_id]
    return default_disconnect_messages[0]


class SSHError(Exception):
    """SSH 错误"""


class DisconnectError(SSHError):
    """断开连接

    出现这类错误时连接已经无法继续使用，只能发送 SSH_MSG_DISCONNECT 后关闭。
    """

    reason_id: int = _PROTOCOL_ERROR

    def __init__(
        self,
        reason_id: t.Optional["SSHDisconnectReasonID"] = None,
        description: t.Optional[str] = None,
    ):
        if reason_id is not None:
            self.reason_id = int(reason_id)
        if description is None:
            description = disconnect_description(self.reason_id)
        self.description = description
        # 出错之前同一次 feed 已经产生的事件
        self.events: t.List[t.Any] = []
        super().__init__(description)


class FatalError(DisconnectError):
    """reason id 固定的断开错误，只需要传描述"""

    def __init__(self, description: t.Optional[str] = None):
        super().__init__(None, description)


class MalformedPacketError(FatalError):
    """packet 格式错误：长度、padding、对齐不符合要求"""

    reason_id = _PROTOCOL_ERROR


class PacketTooLargeError(MalformedPacketError):
    """数据包太大"""


class IntegrityError(FatalError):
    """MAC 或者 AEAD 校验失败"""

    reason_id = _MAC_ERROR


class CompressionError(MalformedPacketError):
    """解压失败"""

    reason_id = _COMPRESSION_ERROR


class NoCommonAlgorithmError(FatalError):
    """双方没有共同支持的算法"""

    reason_id = _KEY_EXCHANGE_FAILED


class KeyExchangeError(FatalError):
    """密钥交换失败，如对方的公钥数据无效、签名错误"""

    reason_id = _KEY_EXCHANGE_FAILED


class HostKeyNotVerifiableError(FatalError):
    """客户端不信任服务器的 host key"""

    reason_id = _HOST_KEY_NOT_VERIFIABLE


class ProtocolViolationError(FatalError):
    """当前状态下不允许的消息"""

    reason_id = _PROTOCOL_ERROR


class UnexpectedMessageError(ProtocolViolationError):
    """当前阶段收到了不该出现的消息类型"""


class UnexpectedError(ProtocolViolationError):
    """非预期行为，比如消息字段不完整"""


class AuthenticationExhaustedError(FatalError):
    """认证失败次数太多，或者客户端已经没有可以尝试的认证方法"""

    reason_id = _NO_MORE_AUTH_METHODS_AVAILABLE


class PeerDisconnectedError(DisconnectError):
    """对方发送了 SSH_MSG_DISCONNECT"""


class ConnectionClosedError(SSHError):
    """连接已经关闭，不能再读写"""


class UnsupportedError(SSHError):
    """未支持"""


class BadRequestError(SSHError):
    """无效请求，比如对方关闭了底层连接"""

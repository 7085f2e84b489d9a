"""
ssh 客户端

    config = ClientConfig(username="root")
    client = SSHClientTransport.connect_tcp("127.0.0.1", 10022, config, [PasswordAuth("pw")])
    exit_status, stdout, stderr = client.exec_command("ls")
    client.close()
"""
import getpass
import socket
import typing as t

import logutil
from auth import ClientAuthenticator, ClientAuthMethod, NoneAuth, PasswordAuth
from config import ClientConfig
from error import BadRequestError, ConnectionClosedError, DisconnectError
from events import (
    ChannelClosed,
    ChannelData,
    ChannelOpened,
    ChannelOpenFailed,
    ChannelRequest,
    Event,
)
from kex import KeyExchangeInterface, SSHSide, get_kex_impl
from message import SSHExtendedDataType, SSHMessageID
from negotiation import KexInit
from session import Session, SessionPhase
from transport import SocketTransport

logger = logutil.get_logger(__name__)


class SSHClientSession(Session):
    """客户端 session"""

    side = SSHSide.client
    # 这些消息只能由客户端发送
    illegal_message_ids = frozenset(
        {
            SSHMessageID.SERVICE_REQUEST.value,
            SSHMessageID.USERAUTH_REQUEST.value,
            SSHMessageID.USERAUTH_INFO_RESPONSE.value,
        }
    )

    def __init__(
        self,
        config: "ClientConfig",
        auth_methods: t.Optional[t.Sequence["ClientAuthMethod"]] = None,
    ):
        super().__init__(config)
        self.config: ClientConfig = config
        self.auth_methods = list(auth_methods or [NoneAuth()])

    def _host_key_algorithms(self) -> t.Tuple[str, ...]:
        return self.config.preferred.host_key

    def _kex_kwargs(self, host_key_algo: str) -> t.Dict[str, t.Any]:
        config = self.config
        return {
            "host_key_verifier": config.host_key_verifier,
            "gex_bits": (config.gex_min_bits, config.gex_prefer_bits, config.gex_max_bits),
        }

    def _guess_first_kex_packet(self) -> bool:
        return self.config.guess_first_kex_packet

    def _guessed_kex(self, kexinit: "KexInit") -> t.Optional["KeyExchangeInterface"]:
        """按自己的第一个算法开始密钥交换，猜错了会在收到服务器 KEXINIT 后重来"""
        if not kexinit.first_kex_packet_follows:
            return None
        kex_algo = kexinit.real_kex_algorithms[0]
        host_key_algo = kexinit.server_host_key_algorithms[0]
        logger.debug("guess key exchange %s %s", kex_algo, host_key_algo)
        kex_cls = get_kex_impl(kex_algo)
        return kex_cls(
            self.side,
            None,
            None,
            host_key_algo,
            **self._kex_kwargs(host_key_algo),
        )

    def _create_authenticator(self):
        return ClientAuthenticator(self.config.username, self.auth_methods, self.session_id)

    def _auth_start_messages(self, authenticator) -> t.List:
        return authenticator.start()


class SSHClientTransport(SocketTransport):
    """在 socket 上运行客户端 session"""

    def __init__(
        self,
        sock: socket.socket,
        config: "ClientConfig",
        auth_methods: t.Optional[t.Sequence["ClientAuthMethod"]] = None,
    ):
        super().__init__(sock, SSHClientSession(config, auth_methods))
        # connect 之后还没处理的事件
        self.events: t.List[Event] = []

    @classmethod
    def connect_tcp(
        cls,
        host: str,
        port: int,
        config: "ClientConfig",
        auth_methods: t.Optional[t.Sequence["ClientAuthMethod"]] = None,
        timeout: t.Optional[float] = None,
    ) -> "SSHClientTransport":
        sock = socket.create_connection((host, port), timeout=timeout)
        client = cls(sock, config, auth_methods)
        try:
            client.connect()
        except Exception:
            client.close()
            raise
        return client

    def _pump(self) -> t.List[Event]:
        if self.session.closed:
            raise ConnectionClosedError("session closed")
        self.flush()
        try:
            events = self.read_events()
        except DisconnectError as e:
            self.events.extend(e.events)
            raise
        self.flush()
        return events

    def connect(self):
        """完成密钥交换和认证"""
        self.session.start()
        while self.session.phase != SessionPhase.ESTABLISHED:
            self.events.extend(self._pump())
        logger.info("connected as %s", self.session.username)

    def open_session(self) -> int:
        channel_id = self.session.open_session_channel()
        while True:
            for event in self._pump():
                if isinstance(event, ChannelOpened) and event.channel_id == channel_id:
                    return channel_id
                if isinstance(event, ChannelOpenFailed) and event.channel_id == channel_id:
                    raise BadRequestError(f"open channel failed: {event.description}")
                self.events.append(event)

    def exec_command(self, command: str) -> t.Tuple[t.Optional[int], bytes, bytes]:
        """执行命令，等待 channel 关闭，返回 (退出码, stdout, stderr)"""
        channel_id = self.open_session()
        self.session.request_exec(channel_id, command)
        stdout = bytearray()
        stderr = bytearray()
        exit_status = None
        while True:
            for event in self._pump():
                if getattr(event, "channel_id", None) != channel_id:
                    self.events.append(event)
                elif isinstance(event, ChannelData):
                    if event.data_type == SSHExtendedDataType.STDERR:
                        stderr += event.data
                    else:
                        stdout += event.data
                elif isinstance(event, ChannelRequest):
                    if event.request.request_type == "exit-status":
                        exit_status = event.request.exit_status
                elif isinstance(event, ChannelClosed):
                    return exit_status, bytes(stdout), bytes(stderr)


def main():
    logutil.setup_logging("INFO")
    username = input("username: ")
    password = getpass.getpass("password: ")
    config = ClientConfig(username=username)
    client = SSHClientTransport.connect_tcp(
        "127.0.0.1", 10022, config, [PasswordAuth(password)], timeout=10
    )
    try:
        exit_status, stdout, stderr = client.exec_command("echo hello")
        print(exit_status, stdout, stderr)
    finally:
        client.close()


if __name__ == "__main__":
    main()

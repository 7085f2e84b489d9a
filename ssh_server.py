"""
实现一个 ssh server

ssh 涉及的 rfc 列表: https://www.omnisecu.com/tcpip/important-rfc-related-with-ssh.php
The Secure Shell (SSH) Protocol Assigned Numbers: https://datatracker.ietf.org/doc/html/rfc4250
The Secure Shell (SSH) Protocol Architecture: https://datatracker.ietf.org/doc/html/rfc4251
The Secure Shell (SSH) Authentication Protocol: https://datatracker.ietf.org/doc/html/rfc4252
The Secure Shell (SSH) Transport Layer Protocol: https://datatracker.ietf.org/doc/html/rfc4253
The Secure Shell (SSH) Connection Protocol: https://datatracker.ietf.org/doc/html/rfc4254

"""
import os
import pathlib
import socket
import socketserver
import typing as t

import hostkey
import logutil
from auth import AuthResult, ServerAuthenticator, ServerAuthHandler
from config import ServerConfig
from error import BadRequestError, DisconnectError, UnsupportedError
from events import ChannelRequest, Event
from kex import SSHSide
from message import Message, SSHMessageID
from session import Session, SessionPhase
from transport import SocketTransport

logger = logutil.get_logger(__name__)

# 当前文件所在文件夹
FILE_DIR = pathlib.Path(__file__).resolve().parent
SSH_DIR = FILE_DIR / "etc/ssh/"

# 第一次启动时生成的 server host key ，文件名跟 ssh-keygen -A 一样
HOST_KEY_FILES = {
    "ssh-ed25519": "ssh_host_ed25519_key",
    "ecdsa-sha2-nistp256": "ssh_host_ecdsa_key",
    "ssh-rsa": "ssh_host_rsa_key",
}


class SSHServerSession(Session):
    """服务端 session"""

    side = SSHSide.server
    # 这些消息只能由服务器发送
    illegal_message_ids = frozenset(
        {
            SSHMessageID.SERVICE_ACCEPT.value,
            SSHMessageID.USERAUTH_FAILURE.value,
            SSHMessageID.USERAUTH_SUCCESS.value,
            SSHMessageID.USERAUTH_BANNER.value,
        }
    )
    accept_channel_types = ("session",)

    def __init__(self, config: "ServerConfig"):
        if not config.host_keys:
            raise UnsupportedError("server has no host key")
        super().__init__(config)
        self.config: ServerConfig = config

    def _host_key_algorithms(self) -> t.Tuple[str, ...]:
        """只声明有对应密钥的算法"""
        available = set()
        for key in self.config.host_keys:
            available.update(key.host_key_algorithms())
        return tuple(x for x in self.config.preferred.host_key if x in available)

    def host_key_for(self, algo: str) -> "hostkey.SSHKeyBase":
        for key in self.config.host_keys:
            if algo in key.host_key_algorithms():
                return key.with_algo(algo)
        raise UnsupportedError(f"no host key for {algo}")

    def _kex_kwargs(self, host_key_algo: str) -> t.Dict[str, t.Any]:
        return {
            "host_key": self.host_key_for(host_key_algo),
            "moduli_path": self.config.moduli_path,
        }

    def _create_authenticator(self):
        return ServerAuthenticator(
            self.config.auth_handler or ServerAuthHandler(),
            self.session_id,
            self.config.auth_methods,
            max_attempts=self.config.max_auth_attempts,
            banner=self.config.auth_banner,
            rejection_time=self.config.auth_rejection_time,
        )

    def _handle_auth_message(self, mid: int, m: "Message"):
        super()._handle_auth_message(mid, m)
        if self.phase == SessionPhase.AUTHENTICATING:
            authenticator = self._state.authenticator
            self.send_not_before = max(self.send_not_before, authenticator.reject_not_before)


class SSHServerTransport(SocketTransport):
    """
    在 socket 上运行服务端 session

    handle_event 处理认证之后的 channel 事件，默认实现一个演示用的 exec ：
    把命令原样返回给客户端，退出码 0
    """

    def __init__(self, sock: socket.socket, config: "ServerConfig"):
        super().__init__(sock, SSHServerSession(config))

    def start(self):
        try:
            self.session.start()
            self.flush()
            while not self.session.closed:
                for event in self.read_events():
                    self.handle_event(event)
                self.flush()
        except DisconnectError as e:
            logger.info("disconnect: %s", e.description)
        except BadRequestError as e:
            logger.info("connection finished: %s", e)
        finally:
            self.close()

    def handle_event(self, event: "Event"):
        logger.debug("event %s", event)
        if not isinstance(event, ChannelRequest):
            return
        session = self.session
        channel_id = event.channel_id
        request = event.request
        if request.request_type == "exec":
            if request.want_reply:
                session.reply_channel_request(channel_id, True)
            session.send_channel_data(channel_id, request.command.encode() + b"\n")
            session.send_exit_status(channel_id, 0)
            session.send_channel_eof(channel_id)
            session.close_channel(channel_id)
        elif request.request_type in ("env", "pty-req", "window-change"):
            if request.want_reply:
                session.reply_channel_request(channel_id, True)
        elif request.want_reply:
            # 不支持 shell 和 subsystem
            session.reply_channel_request(channel_id, False)


class DemoAuthHandler(ServerAuthHandler):
    """演示用，任何非空密码都可以通过"""

    def auth_password(self, username: str, password: str) -> AuthResult:
        if password:
            return AuthResult.ACCEPT
        return AuthResult.REJECT


def prepare_server_host_key() -> t.List["hostkey.SSHKeyBase"]:
    """加载 server host key ，不存在时生成"""
    if not SSH_DIR.exists():
        SSH_DIR.mkdir(mode=0o755, parents=True, exist_ok=True)
    keys = []
    for algo, filename in HOST_KEY_FILES.items():
        filepath = SSH_DIR / filename
        if not filepath.exists():
            key = hostkey.generate_key(algo)
            fd = os.open(filepath, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(key.private_bytes())
            with open(filepath.with_suffix(".pub"), "wb") as f:
                f.write(key.openssh_public_key() + b"\n")
            logger.debug("Generate server host key %s", str(filepath))
        keys.append(hostkey.load_private_key_file(filepath))
    return keys


class SSHTransportHandler(socketserver.BaseRequestHandler):
    config: t.Optional["ServerConfig"] = None

    def handle(self) -> None:
        server = SSHServerTransport(self.request, self.config)
        server.start()


def main():
    logutil.setup_logging()
    moduli_path = SSH_DIR / "moduli"
    SSHTransportHandler.config = ServerConfig(
        host_keys=prepare_server_host_key(),
        auth_handler=DemoAuthHandler(),
        moduli_path=moduli_path if moduli_path.exists() else None,
    )
    server_address = ("127.0.0.1", 10022)
    socketserver.ThreadingTCPServer.allow_reuse_address = True
    server = socketserver.ThreadingTCPServer(server_address, SSHTransportHandler)
    logger.info("SSH server listen at %s:%s", server_address[0], server_address[1])
    server.serve_forever()


if __name__ == "__main__":
    main()

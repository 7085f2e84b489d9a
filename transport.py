"""
阻塞 socket 上运行 session 的驱动

session 本身不做网络读写，这里负责：
    把 socket 收到的数据交给 session
    把 session 要发送的数据写到 socket
    空闲时检查按时间的 rekey 和连接超时
"""
import select
import socket
import time
import typing as t

import logutil
from error import BadRequestError
from events import Event
from message import SSHDisconnectReasonID

if t.TYPE_CHECKING:
    from session import Session

logger = logutil.get_logger(__name__)


class SocketTransport:
    # 每次 send 的超时时间（秒）
    write_timeout = 600
    recv_size = 32 * 1024
    # select 的等待时间（秒），也是检查 rekey 和超时的间隔
    poll_interval = 0.1

    def __init__(self, sock: socket.socket, session: "Session"):
        self._sock = sock
        self.session = session
        self._last_activity = time.monotonic()

    def flush(self):
        data = self.session.data_to_send()
        if data:
            delay = self.session.send_not_before - time.monotonic()
            if delay > 0:
                # 认证失败的回复要延迟发送
                time.sleep(delay)
            self._sock.settimeout(self.write_timeout)
            self._sock.sendall(data)

    def read_events(self, timeout: t.Optional[float] = None) -> t.List[Event]:
        """等待对方的数据，返回处理得到的事件，超时返回空列表"""
        if timeout is None:
            timeout = self.poll_interval
        rlist, _, _ = select.select([self._sock], [], [], timeout)
        if not rlist:
            self._idle()
            return []
        b = self._sock.recv(self.recv_size)
        if b == b"":
            self.session.close(SSHDisconnectReasonID.CONNECTION_LOST, "connection lost")
            raise BadRequestError("remote closed connection")
        self._last_activity = time.monotonic()
        try:
            return self.session.feed(b)
        finally:
            # 出错时 session 会放一个 SSH_MSG_DISCONNECT ，也要发出去
            self.flush()

    def _idle(self):
        self.session.check_rekey()
        self.flush()
        connection_timeout = self.session.config.connection_timeout
        if connection_timeout is None:
            return
        if time.monotonic() - self._last_activity >= connection_timeout:
            logger.info("connection idle more than %s seconds", connection_timeout)
            self.session.close(SSHDisconnectReasonID.BY_APPLICATION, "idle timeout")
            self.flush()
            raise BadRequestError("connection timeout")

    def close(self):
        if not self.session.closed:
            self.session.close()
            try:
                self.flush()
            except OSError:
                logger.debug("flush disconnect failed", exc_info=True)
        self._sock.close()

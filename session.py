"""
一个 SSH 连接的状态机，客户端和服务端共用

这里不做任何网络读写：
    feed(data) 交给 session 收到的数据，返回处理得到的事件
    data_to_send() 取出需要发送给对方的数据

连接阶段:
    AWAITING_VERSION_EXCHANGE -> INITIAL_KEX -> AUTHENTICATING -> ESTABLISHED
    AUTHENTICATING 和 ESTABLISHED 都可以进入 REKEY_IN_PROGRESS ，完成之后回到原来的阶段
    任何阶段都可以进入 CLOSED

The Secure Shell (SSH) Transport Layer Protocol: https://datatracker.ietf.org/doc/html/rfc4253
"""
import collections
import dataclasses
import enum
import threading
import time
import typing as t

import logutil
import negotiation
import ssh_cipher
import ssh_compression
import ssh_mac
from channel import Channel, ChannelRequestData, PtyRequest
from error import (
    BadRequestError,
    ConnectionClosedError,
    DisconnectError,
    MalformedPacketError,
    PeerDisconnectedError,
    ProtocolViolationError,
    SSHError,
    UnexpectedMessageError,
)
from events import (
    ChannelClosed,
    ChannelData,
    ChannelEof,
    ChannelOpened,
    ChannelOpenFailed,
    ChannelRequest,
    ChannelRequestResult,
    Disconnected,
    Event,
    GlobalRequest,
    KexCompleted,
    VersionReceived,
)
from kex import (
    Exchange,
    KexStep,
    KeyExchangeInterface,
    SSHSide,
    TrafficKeys,
    get_kex_impl,
)
from message import (
    Message,
    SSHDisconnectReasonID,
    SSHExtendedDataType,
    SSHMessageID,
    SSHOpenReasonCode,
    is_auth_message,
    is_connection_message,
    is_kex_message,
)
from negotiation import KexInit, NegotiatedAlgorithms
from packet import PacketCodec

if t.TYPE_CHECKING:
    from config import Config

logger = logutil.get_logger(__name__)

# 版本交换那一行（包括 \r\n ）的最大长度
# https://datatracker.ietf.org/doc/html/rfc4253#section-4.2
MAX_VERSION_LINE_LENGTH = 255
SUPPORTED_PROTOCOL_VERSIONS = (b"2.0", b"1.99")

# 密钥交换期间可以直接发送的消息，其他的消息要等新的密钥生效后再发
_SEND_DURING_KEX = (
    SSHMessageID.DISCONNECT.value,
    SSHMessageID.IGNORE.value,
    SSHMessageID.UNIMPLEMENTED.value,
    SSHMessageID.DEBUG.value,
)


class SessionPhase(enum.Enum):
    AWAITING_VERSION_EXCHANGE = enum.auto()
    INITIAL_KEX = enum.auto()
    AUTHENTICATING = enum.auto()
    ESTABLISHED = enum.auto()
    REKEY_IN_PROGRESS = enum.auto()
    CLOSED = enum.auto()


@dataclasses.dataclass
class KexState:
    """一次密钥交换的状态，密钥交换完成后丢弃"""

    initial: bool
    local_kexinit: KexInit
    local_payload: bytes
    peer_kexinit: t.Optional[KexInit] = None
    peer_payload: bytes = b""
    algorithms: t.Optional[NegotiatedAlgorithms] = None
    kex: t.Optional[KeyExchangeInterface] = None
    keys: t.Optional[TrafficKeys] = None
    # 对方猜错了密钥交换算法，下一个密钥交换消息要丢掉
    ignore_guessed_packet: bool = False
    sent_newkeys: bool = False
    received_newkeys: bool = False
    # rekey 完成之后回到的阶段
    resume_phase: t.Optional[SessionPhase] = None
    resume_state: t.Any = None
    # 密钥交换期间收到的认证、channel 消息，按到达顺序处理
    deferred_inbound: t.Deque[bytes] = dataclasses.field(default_factory=collections.deque)
    # 密钥交换期间本端要发送的非密钥交换消息
    deferred_outbound: t.Deque[bytes] = dataclasses.field(default_factory=collections.deque)


@dataclasses.dataclass
class VersionExchangeState:
    # 第一次 KEXINIT 在 start() 时已经发出去了
    kex_state: KexState


@dataclasses.dataclass
class AuthState:
    authenticator: t.Any


@dataclasses.dataclass
class EstablishedState:
    username: str


@dataclasses.dataclass
class ClosedState:
    reason_id: int
    description: str


class Session:
    """SSH 连接状态，客户端和服务端的区别放在子类里面"""

    side: SSHSide
    # 这一端不应该收到的消息
    illegal_message_ids: t.FrozenSet[int] = frozenset()
    # 对方可以打开的 channel 类型
    accept_channel_types: t.Tuple[str, ...] = ()

    def __init__(self, config: "Config"):
        self.config = config
        self.codec = PacketCodec(config.max_packet)
        self.phase = SessionPhase.AWAITING_VERSION_EXCHANGE
        self._state: t.Any = None

        self.local_version = config.version_line()
        self.peer_version = b""
        # 第一次密钥交换的 exchange hash ，整个连接不变
        self.session_id: t.Optional[bytes] = None
        self.strict_kex = False
        self.authenticated = False
        self.username = ""

        self.channels: t.Dict[int, Channel] = {}
        self._next_channel_id = 0

        self._inbuf = bytearray()
        self._outbuf = bytearray()
        self._events: t.List[Event] = []
        # 最后一个读到的 packet 的编号，回复 SSH_MSG_UNIMPLEMENTED 需要
        self._last_read_seq = 0
        self._last_kex_time = time.monotonic()
        self._started = False
        # 在这个时间（time.monotonic）之前不要把数据发出去，服务端用来延迟认证失败的回复
        self.send_not_before = 0.0
        self._started = False
        # 出站数据的构造和加密必须串行，否则序号和加密状态会错乱
        self._lock = threading.RLock()

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.phase.name}>"

    # 子类实现的部分

    def _host_key_algorithms(self) -> t.Tuple[str, ...]:
        raise NotImplementedError("_host_key_algorithms")

    def _kex_kwargs(self, host_key_algo: str) -> t.Dict[str, t.Any]:
        raise NotImplementedError("_kex_kwargs")

    def _create_authenticator(self):
        raise NotImplementedError("_create_authenticator")

    def _auth_start_messages(self, authenticator) -> t.List["Message"]:
        return []

    def _guessed_kex(self, kexinit: "KexInit") -> t.Optional[KeyExchangeInterface]:
        """在收到对方 KEXINIT 之前就开始的密钥交换，默认不猜"""
        return None

    # 对外接口

    @property
    def closed(self) -> bool:
        return self.phase == SessionPhase.CLOSED

    @property
    def client_version(self) -> bytes:
        if self.side == SSHSide.client:
            return self.local_version
        return self.peer_version

    @property
    def server_version(self) -> bytes:
        if self.side == SSHSide.server:
            return self.local_version
        return self.peer_version

    def start(self):
        """发送版本和第一个 SSH_MSG_KEXINIT"""
        with self._lock:
            if self._started:
                return
            self._started = True
            self._outbuf += self.local_version + b"\r\n"
            kexinit = self._build_kexinit(initial=True)
            payload = kexinit.to_message().as_bytes()
            state = KexState(True, kexinit, payload)
            self._state = VersionExchangeState(state)
            self._write_payload(payload)
            guessed = self._guessed_kex(kexinit)
            if guessed is not None:
                state.kex = guessed
                for m in guessed.start():
                    self._write_payload(m.as_bytes())

    def feed(self, data: bytes) -> t.List[Event]:
        """处理收到的数据，数据不够一个 packet 时先缓存起来"""
        with self._lock:
            if self.closed:
                raise ConnectionClosedError("session closed")
            if not self._started:
                self.start()
            self._inbuf += data
            try:
                if self.phase == SessionPhase.AWAITING_VERSION_EXCHANGE:
                    self._read_version()
                while self.phase not in (
                    SessionPhase.AWAITING_VERSION_EXCHANGE,
                    SessionPhase.CLOSED,
                ):
                    self._last_read_seq = self.codec.read_seq_num
                    result = self.codec.decode(self._inbuf)
                    if result is None:
                        break
                    payload, consumed = result
                    del self._inbuf[:consumed]
                    self._dispatch(payload)
                self.check_rekey()
            except PeerDisconnectedError as e:
                self._events.append(Disconnected(e.reason_id, e.description))
                self._release(e.reason_id, e.description)
            except DisconnectError as e:
                self._fail(e)
                raise
            except Exception as e:
                # 解析对方数据时出现的其他异常也按协议错误断开
                error = ProtocolViolationError(f"{type(e).__name__}: {e}")
                self._fail(error)
                raise error from e
            events, self._events = self._events, []
            return events

    def data_to_send(self) -> bytes:
        with self._lock:
            data = bytes(self._outbuf)
            self._outbuf.clear()
            return data

    def time_since_last_kex(self) -> float:
        return time.monotonic() - self._last_kex_time

    def rekey(self) -> bool:
        """主动开始密钥交换，已经在交换中时什么也不做"""
        with self._lock:
            if self.closed:
                raise ConnectionClosedError("session closed")
            return self._begin_rekey()

    def check_rekey(self) -> bool:
        """数据量或者时间达到阈值时开始密钥交换"""
        with self._lock:
            if self.phase not in (SessionPhase.AUTHENTICATING, SessionPhase.ESTABLISHED):
                return False
            limits = self.config.limits
            if self.codec.write_bytes >= limits.rekey_write_limit:
                logger.info("rekey: write %s bytes", self.codec.write_bytes)
            elif self.codec.read_bytes >= limits.rekey_read_limit:
                logger.info("rekey: read %s bytes", self.codec.read_bytes)
            elif self.time_since_last_kex() >= limits.rekey_time_limit:
                logger.info("rekey: %.0f seconds since last kex", self.time_since_last_kex())
            else:
                return False
            return self._begin_rekey()

    def close(
        self,
        reason_id: int = SSHDisconnectReasonID.BY_APPLICATION,
        description: t.Optional[str] = None,
    ):
        """发送 SSH_MSG_DISCONNECT 并释放密钥，已经关闭时什么也不做"""
        with self._lock:
            if self.closed:
                return
            description = description or "closed by application"
            if self._started:
                self._send_disconnect(int(reason_id), description)
            self._release(int(reason_id), description)

    # 版本交换

    def _read_version(self):
        while True:
            index = self._inbuf.find(b"\n")
            if index < 0:
                if len(self._inbuf) > MAX_VERSION_LINE_LENGTH:
                    raise ProtocolViolationError("identification line too long")
                return
            line = bytes(self._inbuf[: index + 1])
            del self._inbuf[: index + 1]
            if len(line) > MAX_VERSION_LINE_LENGTH:
                raise ProtocolViolationError("identification line too long")
            line = line.rstrip(b"\r\n")
            if not line.startswith(b"SSH-"):
                # 服务器在版本之前可以发送其他行
                logger.debug("ignore line before identification: %r", line)
                continue
            self._handle_version(line)
            return

    def _handle_version(self, line: bytes):
        # SSH-protoversion-softwareversion SP comments
        parts = line.split(b"-", 2)
        if len(parts) != 3:
            raise ProtocolViolationError(f"invalid identification {line!r}")
        if parts[1] not in SUPPORTED_PROTOCOL_VERSIONS:
            raise DisconnectError(
                SSHDisconnectReasonID.PROTOCOL_VERSION_NOT_SUPPORTED,
                f"unsupported protocol version {parts[1]!r}",
            )
        self.peer_version = line
        logger.info("remote protocol version %s", line.decode(errors="replace"))
        self._events.append(VersionReceived(line.decode(errors="replace")))
        state = self._state.kex_state
        self.phase = SessionPhase.INITIAL_KEX
        self._state = state

    # 消息分发

    def _dispatch(self, payload: bytes):
        if not payload:
            raise MalformedPacketError("empty payload")
        m = Message(payload)
        mid = m.get_byte()
        logger.debug("receive message %s in %s", mid, self.phase.name)
        if mid in self.illegal_message_ids:
            raise UnexpectedMessageError(f"unexpected message {mid} for {self.side.name}")
        if mid == SSHMessageID.DISCONNECT.value:
            self._handle_disconnect(m)
            return
        if (
            self.phase == SessionPhase.INITIAL_KEX
            and self.strict_kex
            and not is_kex_message(mid)
        ):
            raise ProtocolViolationError(f"unexpected message {mid} during strict key exchange")
        if mid in (SSHMessageID.IGNORE.value, SSHMessageID.DEBUG.value):
            return
        if mid == SSHMessageID.UNIMPLEMENTED.value:
            logger.warning("peer does not implement packet %s", m.get_uint32())
            return
        if is_kex_message(mid):
            self._handle_kex_message(mid, m, payload)
        elif mid in (
            SSHMessageID.SERVICE_REQUEST.value,
            SSHMessageID.SERVICE_ACCEPT.value,
        ) or is_auth_message(mid):
            self._route(SessionPhase.AUTHENTICATING, self._handle_auth_message, mid, m, payload)
        elif is_connection_message(mid):
            self._route(SessionPhase.ESTABLISHED, self._handle_connection_message, mid, m, payload)
        else:
            logger.warning("unimplemented message %s", mid)
            self._send_unimplemented()

    def _route(self, target_phase: SessionPhase, handler, mid: int, m: "Message", payload: bytes):
        if self.phase == target_phase:
            handler(mid, m)
        elif (
            self.phase == SessionPhase.REKEY_IN_PROGRESS
            and self._state.resume_phase == target_phase
        ):
            self._state.deferred_inbound.append(payload)
        else:
            raise UnexpectedMessageError(f"unexpected message {mid} in {self.phase.name}")

    def _handle_disconnect(self, m: "Message"):
        reason_id = m.get_uint32()
        description = m.get_string().decode(errors="replace")
        logger.info("peer disconnect, reason %s: %s", reason_id, description)
        raise PeerDisconnectedError(reason_id, description)

    # 发送

    def _write_payload(self, payload: bytes):
        self._outbuf += self.codec.encode(payload)

    def _send(self, m: "Message"):
        payload = m.as_bytes()
        with self._lock:
            if self.closed:
                raise ConnectionClosedError("session closed")
            mid = payload[0]
            self.codec.check_payload_size(len(payload))
            if (
                self.phase in (SessionPhase.INITIAL_KEX, SessionPhase.REKEY_IN_PROGRESS)
                and not is_kex_message(mid)
                and mid not in _SEND_DURING_KEX
            ):
                self._state.deferred_outbound.append(payload)
                return
            self._write_payload(payload)

    def _send_unimplemented(self):
        m = Message()
        m.add_message_id(SSHMessageID.UNIMPLEMENTED)
        m.add_uint32(self._last_read_seq)
        self._send(m)

    def _send_disconnect(self, reason_id: int, description: str):
        m = Message()
        m.add_message_id(SSHMessageID.DISCONNECT)
        m.add_uint32(reason_id)
        m.add_string(description)
        m.add_string("")
        self._write_payload(m.as_bytes())

    def _fail(self, e: "DisconnectError"):
        """feed 出错时断开，同一次 feed 已经产生的事件放到异常的 events 里面"""
        logger.error("disconnect: %s(%s) %s", type(e).__name__, e.reason_id, e.description)
        self._abort(e)
        e.events = self._events
        self._events = []

    def _abort(self, e: "DisconnectError"):
        if self.closed:
            return
        try:
            self._send_disconnect(e.reason_id, e.description)
        except SSHError:
            logger.exception("send disconnect failed")
        self._release(e.reason_id, e.description)

    def _release(self, reason_id: int, description: str):
        """释放密钥，进入 CLOSED"""
        if isinstance(self._state, KexState) and self._state.kex is not None:
            if self._state.kex.result is not None:
                self._state.kex.result.clear()
            if self._state.keys is not None:
                self._state.keys.clear()
        self.codec.clear()
        self.channels.clear()
        self.phase = SessionPhase.CLOSED
        self._state = ClosedState(reason_id, description)
        logger.info("session closed, reason %s: %s", reason_id, description)

    # 密钥交换

    def _build_kexinit(self, initial: bool) -> "KexInit":
        preferred = self.config.preferred
        kex_algorithms = list(preferred.kex)
        # strict kex 只在第一次 KEXINIT 里面声明
        if initial and self.config.strict_kex:
            if self.side == SSHSide.client:
                kex_algorithms.append(negotiation.STRICT_KEX_CLIENT)
            else:
                kex_algorithms.append(negotiation.STRICT_KEX_SERVER)
        return KexInit(
            kex_algorithms=tuple(kex_algorithms),
            server_host_key_algorithms=self._host_key_algorithms(),
            encryption_cs=preferred.encryption,
            encryption_sc=preferred.encryption,
            mac_cs=preferred.mac,
            mac_sc=preferred.mac,
            compression_cs=preferred.compression,
            compression_sc=preferred.compression,
            first_kex_packet_follows=initial and self._guess_first_kex_packet(),
        )

    def _guess_first_kex_packet(self) -> bool:
        return False

    def _begin_rekey(self) -> bool:
        if self.phase not in (SessionPhase.AUTHENTICATING, SessionPhase.ESTABLISHED):
            return False
        kexinit = self._build_kexinit(initial=False)
        payload = kexinit.to_message().as_bytes()
        state = KexState(
            False,
            kexinit,
            payload,
            resume_phase=self.phase,
            resume_state=self._state,
        )
        logger.info("start rekey from %s", self.phase.name)
        self.phase = SessionPhase.REKEY_IN_PROGRESS
        self._state = state
        self._write_payload(payload)
        return True

    def _handle_kex_message(self, mid: int, m: "Message", payload: bytes):
        if mid == SSHMessageID.KEXINIT.value:
            # 对方发起 rekey
            if self.phase in (SessionPhase.AUTHENTICATING, SessionPhase.ESTABLISHED):
                self._begin_rekey()
            if (
                self.phase not in (SessionPhase.INITIAL_KEX, SessionPhase.REKEY_IN_PROGRESS)
                or self._state.peer_kexinit is not None
            ):
                raise UnexpectedMessageError(f"unexpected KEXINIT in {self.phase.name}")
            self._handle_kexinit(payload)
            return
        if self.phase not in (SessionPhase.INITIAL_KEX, SessionPhase.REKEY_IN_PROGRESS):
            raise UnexpectedMessageError(f"unexpected message {mid} in {self.phase.name}")
        state: KexState = self._state
        if mid == SSHMessageID.NEWKEYS.value:
            self._handle_newkeys()
            return
        if state.peer_kexinit is None or state.kex is None:
            raise UnexpectedMessageError(f"unexpected message {mid} before KEXINIT")
        if state.ignore_guessed_packet:
            state.ignore_guessed_packet = False
            logger.debug("ignore guessed key exchange message %s", mid)
            return
        if state.kex.done:
            raise UnexpectedMessageError(f"unexpected message {mid} after key exchange")
        for reply in state.kex.handle(mid, m):
            self._send(reply)
        if state.kex.done:
            self._send_newkeys()

    def _handle_kexinit(self, payload: bytes):
        state: KexState = self._state
        peer = KexInit.from_payload(payload)
        state.peer_kexinit = peer
        state.peer_payload = payload
        if self.side == SSHSide.client:
            client_init, server_init = state.local_kexinit, peer
            exchange = Exchange(
                self.client_version, self.server_version, state.local_payload, payload
            )
        else:
            client_init, server_init = peer, state.local_kexinit
            exchange = Exchange(
                self.client_version, self.server_version, payload, state.local_payload
            )
        if state.initial:
            self.strict_kex = self.config.strict_kex and negotiation.strict_kex_enabled(
                client_init, server_init
            )
            # strict kex 要求 KEXINIT 是对方发送的第一个 packet
            if self.strict_kex and self._last_read_seq != 0:
                raise ProtocolViolationError("KEXINIT is not the first packet in strict kex")
        state.algorithms = negotiation.select(client_init, server_init)

        guess_ok = negotiation.guess_is_correct(client_init, server_init)
        if peer.first_kex_packet_follows and not guess_ok:
            state.ignore_guessed_packet = True
        if state.kex is not None:
            # 本端猜测的密钥交换已经开始了
            if guess_ok:
                state.kex.exchange = exchange
                return
            logger.debug("guessed key exchange %s is wrong", state.kex.__class__.__name__)
            state.kex = None
        kex_cls = get_kex_impl(state.algorithms.kex)
        state.kex = kex_cls(
            self.side,
            exchange,
            self.session_id,
            state.algorithms.server_host_key,
            **self._kex_kwargs(state.algorithms.server_host_key),
        )
        for m in state.kex.start():
            self._send(m)

    def _new_cipher(
        self, encryption: str, mac: str, key: bytes, iv: bytes, mac_key: bytes
    ) -> "ssh_cipher.CipherInterface":
        cipher_cls = ssh_cipher.get_cipher_impl(encryption)
        mac_impl = None
        if not cipher_cls.is_aead:
            mac_impl = ssh_mac.get_mac_impl(mac)(mac_key)
        return cipher_cls(key, iv, mac_impl)

    def _new_compression(self, name: str) -> "ssh_compression.CompressionInterface":
        compression = ssh_compression.get_compression_impl(name)()
        if not compression.delayed or self.authenticated:
            compression.activate()
        return compression

    def _direction(self, write: bool):
        """返回 (encryption, mac, compression, key, iv, mac_key)"""
        state: KexState = self._state
        algorithms = state.algorithms
        keys = state.keys
        client_to_server = (self.side == SSHSide.client) == write
        if client_to_server:
            return (
                algorithms.encryption_cs,
                algorithms.mac_cs,
                algorithms.compression_cs,
                keys.key_cs,
                keys.iv_cs,
                keys.mac_cs,
            )
        return (
            algorithms.encryption_sc,
            algorithms.mac_sc,
            algorithms.compression_sc,
            keys.key_sc,
            keys.iv_sc,
            keys.mac_sc,
        )

    def _send_newkeys(self):
        state: KexState = self._state
        result = state.kex.result
        if state.initial:
            self.session_id = result.session_id
        state.keys = result.derive_keys(state.algorithms)
        state.kex.step = KexStep.SEND_NEW_KEYS
        m = Message()
        m.add_message_id(SSHMessageID.NEWKEYS)
        self._write_payload(m.as_bytes())
        state.sent_newkeys = True
        encryption, mac, compression, key, iv, mac_key = self._direction(write=True)
        self.codec.install_write(
            self._new_cipher(encryption, mac, key, iv, mac_key),
            self._new_compression(compression),
            reset_seq=self.strict_kex,
        )
        state.kex.step = KexStep.WAIT_PEER_NEW_KEYS

    def _handle_newkeys(self):
        state: KexState = self._state
        if state.kex is None or not state.kex.done or state.received_newkeys:
            raise UnexpectedMessageError("unexpected NEWKEYS")
        state.received_newkeys = True
        encryption, mac, compression, key, iv, mac_key = self._direction(write=False)
        self.codec.install_read(
            self._new_cipher(encryption, mac, key, iv, mac_key),
            self._new_compression(compression),
            reset_seq=self.strict_kex,
        )
        if state.sent_newkeys:
            self._complete_kex()

    def _complete_kex(self):
        state: KexState = self._state
        state.kex.step = KexStep.DONE
        host_key = state.kex.result.host_key
        state.kex.result.clear()
        state.keys.clear()
        state.keys = None
        self._last_kex_time = time.monotonic()
        logger.info("key exchange completed, kex: %s", state.algorithms.kex)
        self._events.append(KexCompleted(state.algorithms, host_key, state.initial))
        if state.initial:
            self._enter_authenticating()
        else:
            self.phase = state.resume_phase
            self._state = state.resume_state
        for payload in state.deferred_outbound:
            self._write_payload(payload)
        # 处理过程中可能再次进入密钥交换，交给 _dispatch 重新判断
        for payload in state.deferred_inbound:
            self._dispatch(payload)

    # 认证

    def _enter_authenticating(self):
        authenticator = self._create_authenticator()
        self.phase = SessionPhase.AUTHENTICATING
        self._state = AuthState(authenticator)
        for m in self._auth_start_messages(authenticator):
            self._send(m)

    def _handle_auth_message(self, mid: int, m: "Message"):
        authenticator = self._state.authenticator
        for reply in authenticator.handle(mid, m):
            self._send(reply)
        self._events.extend(authenticator.events)
        authenticator.events.clear()
        if authenticator.succeeded:
            self._enter_established(authenticator.username)

    def _enter_established(self, username: str):
        self.phase = SessionPhase.ESTABLISHED
        self._state = EstablishedState(username)
        self.username = username
        self.authenticated = True
        # zlib@openssh.com 从认证成功之后开始压缩
        self.codec.activate_delayed_compression()

    # channel

    def _handle_connection_message(self, mid: int, m: "Message"):
        if mid == SSHMessageID.GLOBAL_REQUEST.value:
            name = m.get_text()
            want_reply = m.get_boolean()
            logger.debug("global request %s", name)
            self._events.append(GlobalRequest(name, want_reply))
            if want_reply:
                rm = Message()
                rm.add_message_id(SSHMessageID.REQUEST_FAILURE)
                self._send(rm)
            return
        if mid in (SSHMessageID.REQUEST_SUCCESS.value, SSHMessageID.REQUEST_FAILURE.value):
            # 本端不会发送 global request
            logger.warning("ignore global request reply %s", mid)
            return
        if mid == SSHMessageID.CHANNEL_OPEN.value:
            self._handle_channel_open(m)
            return
        handlers = {
            SSHMessageID.CHANNEL_OPEN_CONFIRMATION.value: self._handle_channel_open_confirmation,
            SSHMessageID.CHANNEL_OPEN_FAILURE.value: self._handle_channel_open_failure,
            SSHMessageID.CHANNEL_WINDOW_ADJUST.value: self._handle_channel_window_adjust,
            SSHMessageID.CHANNEL_DATA.value: self._handle_channel_data,
            SSHMessageID.CHANNEL_EXTENDED_DATA.value: self._handle_channel_extended_data,
            SSHMessageID.CHANNEL_EOF.value: self._handle_channel_eof,
            SSHMessageID.CHANNEL_CLOSE.value: self._handle_channel_close,
            SSHMessageID.CHANNEL_REQUEST.value: self._handle_channel_request,
            SSHMessageID.CHANNEL_SUCCESS.value: self._handle_channel_request_result,
            SSHMessageID.CHANNEL_FAILURE.value: self._handle_channel_request_result,
        }
        handler = handlers.get(mid)
        if handler is None:
            logger.warning("unimplemented connection message %s", mid)
            self._send_unimplemented()
            return
        channel = self._get_channel(m.get_uint32())
        if not channel.opened and mid not in (
            SSHMessageID.CHANNEL_OPEN_CONFIRMATION.value,
            SSHMessageID.CHANNEL_OPEN_FAILURE.value,
        ):
            # 对方还没确认的 channel 只能收到 OPEN_CONFIRMATION / OPEN_FAILURE
            raise ProtocolViolationError(f"channel {channel.local_id} not opened")
        handler(mid, channel, m)

    def _get_channel(self, local_id: int) -> Channel:
        channel = self.channels.get(local_id)
        if channel is None:
            raise ProtocolViolationError(f"unknown channel {local_id}")
        return channel

    def _new_channel(self, channel_type: str) -> Channel:
        local_id = self._next_channel_id
        self._next_channel_id += 1
        channel = Channel(
            local_id,
            channel_type,
            self.config.window_size,
            self.config.maximum_packet_size,
        )
        self.channels[local_id] = channel
        return channel

    def _handle_channel_open(self, m: "Message"):
        channel_type = m.get_text()
        sender_channel = m.get_uint32()
        window_size = m.get_uint32()
        maximum_packet_size = m.get_uint32()
        if channel_type not in self.accept_channel_types:
            logger.info("refuse channel type %s", channel_type)
            rm = Message()
            rm.add_message_id(SSHMessageID.CHANNEL_OPEN_FAILURE)
            rm.add_uint32(sender_channel)
            rm.add_uint32(SSHOpenReasonCode.UNKNOWN_CHANNEL_TYPE)
            rm.add_string(f"unknown channel type {channel_type}")
            rm.add_string("")
            self._send(rm)
            return
        channel = self._new_channel(channel_type)
        channel.confirm(sender_channel, window_size, maximum_packet_size)
        rm = Message()
        rm.add_message_id(SSHMessageID.CHANNEL_OPEN_CONFIRMATION)
        rm.add_uint32(sender_channel)
        rm.add_uint32(channel.local_id)
        rm.add_uint32(channel.local_window_size)
        rm.add_uint32(channel.local_maximum_packet_size)
        self._send(rm)
        logger.debug("open %s", channel)
        self._events.append(ChannelOpened(channel.local_id, channel_type))

    def _handle_channel_open_confirmation(self, mid: int, channel: Channel, m: "Message"):
        if channel.opened:
            raise ProtocolViolationError(f"channel {channel.local_id} already opened")
        remote_id = m.get_uint32()
        window_size = m.get_uint32()
        maximum_packet_size = m.get_uint32()
        channel.confirm(remote_id, window_size, maximum_packet_size)
        self._events.append(ChannelOpened(channel.local_id, channel.type))
        self._flush_channel(channel)

    def _handle_channel_open_failure(self, mid: int, channel: Channel, m: "Message"):
        if channel.opened:
            raise ProtocolViolationError(f"channel {channel.local_id} already opened")
        reason_code = m.get_uint32()
        description = m.get_string().decode(errors="replace")
        del self.channels[channel.local_id]
        self._events.append(ChannelOpenFailed(channel.local_id, reason_code, description))

    def _handle_channel_window_adjust(self, mid: int, channel: Channel, m: "Message"):
        channel.add_remote_window(m.get_uint32())
        self._flush_channel(channel)

    def _handle_channel_data(self, mid: int, channel: Channel, m: "Message"):
        data = m.get_string()
        self._receive_channel_data(channel, data, None)

    def _handle_channel_extended_data(self, mid: int, channel: Channel, m: "Message"):
        data_type = m.get_uint32()
        data = m.get_string()
        self._receive_channel_data(channel, data, data_type)

    def _receive_channel_data(self, channel: Channel, data: bytes, data_type: t.Optional[int]):
        if len(data) > channel.local_maximum_packet_size:
            raise ProtocolViolationError(f"channel {channel.local_id} data packet too large")
        adjust = channel.receive_data(len(data))
        if adjust is not None:
            self._send(adjust)
        self._events.append(ChannelData(channel.local_id, data, data_type))

    def _handle_channel_eof(self, mid: int, channel: Channel, m: "Message"):
        channel.remote_eof = True
        self._events.append(ChannelEof(channel.local_id))

    def _handle_channel_close(self, mid: int, channel: Channel, m: "Message"):
        channel.remote_closed = True
        if not channel.local_closed:
            # 对方已经关闭，没发完的数据也不用再发了
            channel.pending_data.clear()
            self._send_channel_close(channel)
        del self.channels[channel.local_id]
        logger.debug("close %s", channel)
        self._events.append(ChannelClosed(channel.local_id))

    def _handle_channel_request(self, mid: int, channel: Channel, m: "Message"):
        request = ChannelRequestData.from_message(m)
        logger.debug("channel %s request %s", channel.local_id, request.request_type)
        self._events.append(ChannelRequest(channel.local_id, request))

    def _handle_channel_request_result(self, mid: int, channel: Channel, m: "Message"):
        if channel.pending_replies <= 0:
            raise ProtocolViolationError(f"channel {channel.local_id} unexpected request reply")
        channel.pending_replies -= 1
        success = mid == SSHMessageID.CHANNEL_SUCCESS.value
        self._events.append(ChannelRequestResult(channel.local_id, success))

    def _flush_channel(self, channel: Channel):
        if not channel.opened or channel.local_closed:
            return
        for m in channel.take_sendable():
            self._send(m)
        if channel.pending_data:
            return
        if channel.eof_pending and not channel.local_eof:
            channel.local_eof = True
            m = Message()
            m.add_message_id(SSHMessageID.CHANNEL_EOF)
            m.add_uint32(channel.remote_id)
            self._send(m)
        if channel.close_pending:
            self._send_channel_close(channel)

    def _send_channel_close(self, channel: Channel):
        channel.local_closed = True
        m = Message()
        m.add_message_id(SSHMessageID.CHANNEL_CLOSE)
        m.add_uint32(channel.remote_id)
        self._send(m)

    def _check_established(self):
        if self.closed:
            raise ConnectionClosedError("session closed")
        established = self.phase == SessionPhase.ESTABLISHED or (
            self.phase == SessionPhase.REKEY_IN_PROGRESS
            and self._state.resume_phase == SessionPhase.ESTABLISHED
        )
        if not established:
            raise BadRequestError(f"session is not established: {self.phase.name}")

    def _opened_channel(self, channel_id: int) -> Channel:
        self._check_established()
        channel = self.channels.get(channel_id)
        if channel is None:
            raise BadRequestError(f"unknown channel {channel_id}")
        if not channel.opened:
            raise BadRequestError(f"channel {channel_id} not opened")
        return channel

    # channel 对外接口

    def open_session_channel(self, channel_type: str = "session") -> int:
        """打开 channel ，返回本端 channel id ，对方确认后产生 ChannelOpened 事件"""
        with self._lock:
            self._check_established()
            channel = self._new_channel(channel_type)
            m = Message()
            m.add_message_id(SSHMessageID.CHANNEL_OPEN)
            m.add_string(channel_type)
            m.add_uint32(channel.local_id)
            m.add_uint32(channel.local_window_size)
            m.add_uint32(channel.local_maximum_packet_size)
            self._send(m)
            return channel.local_id

    def send_channel_data(self, channel_id: int, data: bytes):
        with self._lock:
            channel = self._opened_channel(channel_id)
            channel.queue_data(data)
            self._flush_channel(channel)
            self.check_rekey()

    def send_channel_extended_data(
        self,
        channel_id: int,
        data: bytes,
        data_type: int = SSHExtendedDataType.STDERR,
    ):
        with self._lock:
            channel = self._opened_channel(channel_id)
            channel.queue_data(data, int(data_type))
            self._flush_channel(channel)
            self.check_rekey()

    def send_channel_request(self, channel_id: int, request: "ChannelRequestData"):
        with self._lock:
            channel = self._opened_channel(channel_id)
            m = Message()
            m.add_message_id(SSHMessageID.CHANNEL_REQUEST)
            m.add_uint32(channel.remote_id)
            request.add_to_message(m)
            self._send(m)
            if request.want_reply:
                channel.pending_replies += 1

    def request_exec(self, channel_id: int, command: str, want_reply: bool = True):
        self.send_channel_request(
            channel_id, ChannelRequestData("exec", want_reply, command=command)
        )

    def request_shell(self, channel_id: int, want_reply: bool = True):
        self.send_channel_request(channel_id, ChannelRequestData("shell", want_reply))

    def request_pty(
        self,
        channel_id: int,
        pty: t.Optional["PtyRequest"] = None,
        want_reply: bool = True,
    ):
        self.send_channel_request(
            channel_id, ChannelRequestData("pty-req", want_reply, pty=pty or PtyRequest())
        )

    def request_env(self, channel_id: int, name: str, value: str, want_reply: bool = False):
        self.send_channel_request(
            channel_id,
            ChannelRequestData("env", want_reply, env_name=name, env_value=value),
        )

    def request_subsystem(self, channel_id: int, subsystem: str, want_reply: bool = True):
        self.send_channel_request(
            channel_id, ChannelRequestData("subsystem", want_reply, subsystem=subsystem)
        )

    def send_exit_status(self, channel_id: int, exit_status: int):
        self.send_channel_request(
            channel_id, ChannelRequestData("exit-status", False, exit_status=exit_status)
        )

    def reply_channel_request(self, channel_id: int, success: bool):
        with self._lock:
            channel = self._opened_channel(channel_id)
            m = Message()
            if success:
                m.add_message_id(SSHMessageID.CHANNEL_SUCCESS)
            else:
                m.add_message_id(SSHMessageID.CHANNEL_FAILURE)
            m.add_uint32(channel.remote_id)
            self._send(m)

    def send_channel_eof(self, channel_id: int):
        with self._lock:
            channel = self._opened_channel(channel_id)
            channel.eof_pending = True
            self._flush_channel(channel)

    def close_channel(self, channel_id: int):
        """没发完的数据发完后再发送 SSH_MSG_CHANNEL_CLOSE"""
        with self._lock:
            channel = self._opened_channel(channel_id)
            if channel.close_pending or channel.local_closed:
                return
            channel.close_pending = True
            self._flush_channel(channel)

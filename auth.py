"""
用户认证
rfc: https://datatracker.ietf.org/doc/html/rfc4252
keyboard-interactive: https://datatracker.ietf.org/doc/html/rfc4256

服务端和客户端的认证过程都不做网络读写，
handle() 处理收到的消息，返回需要发送的消息，产生的事件放在 events 里面。
"""
import dataclasses
import enum
import time
import typing as t

import events
import hostkey
import logutil
from error import (
    AuthenticationExhaustedError,
    DisconnectError,
    ProtocolViolationError,
    UnexpectedError,
    UnexpectedMessageError,
    UnsupportedError,
)
from message import Message, SSHDisconnectReasonID, SSHMessageID

logger = logutil.get_logger(__name__)

USERAUTH_SERVICE = "ssh-userauth"
CONNECTION_SERVICE = "ssh-connection"


class AuthResult(enum.Enum):
    ACCEPT = enum.auto()
    REJECT = enum.auto()
    # 这个方法通过了，但还需要其他方法（多因素认证）
    PARTIAL = enum.auto()


@dataclasses.dataclass
class KeyboardInteractiveChallenge:
    """一轮 keyboard-interactive 问答"""

    name: str = ""
    instructions: str = ""
    # (提示, 是否回显)
    prompts: t.List[t.Tuple[str, bool]] = dataclasses.field(default_factory=list)


HandlerResult = t.Union[AuthResult, KeyboardInteractiveChallenge]


class ServerAuthHandler:
    """决定是否接受用户提交的凭证，默认全部拒绝，使用时继承并覆盖需要的方法"""

    def auth_none(self, username: str) -> AuthResult:
        return AuthResult.REJECT

    def auth_password(self, username: str, password: str) -> AuthResult:
        return AuthResult.REJECT

    def auth_publickey(
        self, username: str, public_key: "hostkey.SSHKeyBase"
    ) -> AuthResult:
        """公钥是否可以用来登录，签名已经验证过了

        客户端只是询问公钥是否可用（没有签名）时也会调用
        """
        return AuthResult.REJECT

    def auth_keyboard_interactive(self, username: str, submethods: str) -> HandlerResult:
        return AuthResult.REJECT

    def auth_keyboard_interactive_response(
        self, username: str, responses: t.List[str]
    ) -> HandlerResult:
        return AuthResult.REJECT


def publickey_signed_data(
    session_id: bytes, username: str, service: str, algo: str, public_key_blob: bytes
) -> bytes:
    """公钥认证需要签名的数据
    https://datatracker.ietf.org/doc/html/rfc4252#section-7

      string    session identifier
      byte      SSH_MSG_USERAUTH_REQUEST
      string    user name
      string    service name
      string    "publickey"
      boolean   TRUE
      string    public key algorithm name
      string    public key to be used for authentication
    """
    m = Message()
    m.add_string(session_id)
    m.add_message_id(SSHMessageID.USERAUTH_REQUEST)
    m.add_string(username)
    m.add_string(service)
    m.add_string("publickey")
    m.add_boolean(True)
    m.add_string(algo)
    m.add_string(public_key_blob)
    return m.as_bytes()


class ServerAuthenticator:
    """服务端认证状态"""

    def __init__(
        self,
        handler: "ServerAuthHandler",
        session_id: bytes,
        methods: t.Sequence[str],
        max_attempts: int = 10,
        banner: t.Optional[str] = None,
        rejection_time: float = 0.0,
    ):
        self.handler = handler
        self.session_id = session_id
        self.methods = tuple(methods)
        self.max_attempts = max_attempts
        self.banner = banner
        # 从收到请求开始算，拒绝的回复至少要等这么久（秒）才发送
        self.rejection_time = rejection_time
        self.reject_not_before = 0.0
        self._request_time = 0.0

        self.service_accepted = False
        # 被拒绝的次数
        self.attempts = 0
        self.username = ""
        # 已经通过的方法（部分成功）
        self.passed_methods: t.List[str] = []
        # 已经失败、不再允许的方法
        self.rejected_methods: t.List[str] = []
        # 正在进行的 keyboard-interactive
        self._kbdint_pending = False
        self.succeeded = False
        self.events: t.List["events.Event"] = []

    @property
    def remaining_methods(self) -> t.Tuple[str, ...]:
        return tuple(
            x
            for x in self.methods
            if x not in self.passed_methods and x not in self.rejected_methods
        )

    def expected_message_ids(self) -> t.Tuple[int, ...]:
        if not self.service_accepted:
            return (SSHMessageID.SERVICE_REQUEST.value,)
        if self.succeeded:
            return ()
        if self._kbdint_pending:
            return (
                SSHMessageID.USERAUTH_REQUEST.value,
                SSHMessageID.USERAUTH_INFO_RESPONSE.value,
            )
        return (SSHMessageID.USERAUTH_REQUEST.value,)

    def handle(self, mid: int, m: "Message") -> t.List["Message"]:
        if mid not in self.expected_message_ids():
            raise UnexpectedMessageError(f"unexpected message {mid} in authentication")
        self._request_time = time.monotonic()
        if mid == SSHMessageID.SERVICE_REQUEST.value:
            return self._handle_service_request(m)
        if mid == SSHMessageID.USERAUTH_INFO_RESPONSE.value:
            return self._handle_info_response(m)
        return self._handle_request(m)

    def _handle_service_request(self, m: "Message") -> t.List["Message"]:
        service = m.get_text()
        if service != USERAUTH_SERVICE:
            raise DisconnectError(
                SSHDisconnectReasonID.SERVICE_NOT_AVAILABLE,
                "unsupported service " + service,
            )
        self.service_accepted = True
        reply = Message()
        reply.add_message_id(SSHMessageID.SERVICE_ACCEPT)
        reply.add_string(service)
        replies = [reply]
        if self.banner:
            # https://datatracker.ietf.org/doc/html/rfc4252#section-5.4
            bm = Message()
            bm.add_message_id(SSHMessageID.USERAUTH_BANNER)
            bm.add_string(self.banner)
            bm.add_string("")
            replies.append(bm)
        return replies

    def _handle_request(self, m: "Message") -> t.List["Message"]:
        username = m.get_text()
        service = m.get_text()
        method = m.get_text()
        logger.debug(
            "userauth request, username: %s, service_name: %s, method_name: %s",
            username,
            service,
            method,
        )
        # 只支持 ssh-connection
        if service != CONNECTION_SERVICE:
            raise ProtocolViolationError(f"unsupported service {service}")
        if username != self.username:
            # 换了用户名，之前部分成功的方法不再算数
            self.username = username
            self.passed_methods = []
            self.rejected_methods = []
        # 新的请求会中止进行中的 keyboard-interactive
        self._kbdint_pending = False

        if method != "none" and method not in self.remaining_methods:
            return self._reply(method, AuthResult.REJECT)
        if method == "none":
            return self._reply(method, self.handler.auth_none(username))
        if method == "password":
            return self._handle_password(m)
        if method == "publickey":
            return self._handle_publickey(m)
        if method == "keyboard-interactive":
            # string    language tag (deprecated)
            # string    submethods
            m.get_string()
            submethods = m.get_text()
            result = self.handler.auth_keyboard_interactive(username, submethods)
            return self._reply(method, result)
        return self._reply(method, AuthResult.REJECT)

    def _handle_password(self, m: "Message") -> t.List["Message"]:
        # https://datatracker.ietf.org/doc/html/rfc4252#section-8
        change = m.get_boolean()
        password = m.get_text()
        if change:
            # 不支持修改密码
            return self._reply("password", AuthResult.REJECT)
        result = self.handler.auth_password(self.username, password)
        if result == AuthResult.REJECT:
            # 密码错了之后不再让客户端用密码试
            self.rejected_methods.append("password")
        return self._reply("password", result)

    def _handle_publickey(self, m: "Message") -> t.List["Message"]:
        # https://datatracker.ietf.org/doc/html/rfc4252#section-7
        has_signature = m.get_boolean()
        algo = m.get_text()
        public_key_blob = m.get_string()
        if algo not in hostkey.supported_key_algorithms:
            logger.error("unsupported publickey algorithm: %s", algo)
            return self._reply("publickey", AuthResult.REJECT)
        try:
            public_key = hostkey.parse_public_key(public_key_blob, algo)
        except (UnsupportedError, UnexpectedError):
            logger.error("invalid public key, algorithm: %s", algo)
            return self._reply("publickey", AuthResult.REJECT)

        if not has_signature:
            # 客户端询问这个公钥是否可以用
            if self.handler.auth_publickey(self.username, public_key) == AuthResult.REJECT:
                return self._reply("publickey", AuthResult.REJECT)
            ok = Message()
            ok.add_message_id(SSHMessageID.USERAUTH_PK_OK)
            ok.add_string(algo)
            ok.add_string(public_key_blob)
            return [ok]

        signature = m.get_string()
        signed_data = publickey_signed_data(
            self.session_id, self.username, CONNECTION_SERVICE, algo, public_key_blob
        )
        if not public_key.verify(signed_data, signature):
            logger.error("user %s invalid publickey signature", self.username)
            return self._reply("publickey", AuthResult.REJECT)
        return self._reply(
            "publickey", self.handler.auth_publickey(self.username, public_key)
        )

    def _handle_info_response(self, m: "Message") -> t.List["Message"]:
        # byte      SSH_MSG_USERAUTH_INFO_RESPONSE
        # int       num-responses
        # string    response[1] (ISO-10646 UTF-8)
        # ...
        num = m.get_uint32()
        responses = [m.get_text() for _ in range(num)]
        self._kbdint_pending = False
        result = self.handler.auth_keyboard_interactive_response(
            self.username, responses
        )
        return self._reply("keyboard-interactive", result)

    def _reply(self, method: str, result: "HandlerResult") -> t.List["Message"]:
        if isinstance(result, KeyboardInteractiveChallenge):
            self._kbdint_pending = True
            return [self._info_request(result)]

        if result == AuthResult.ACCEPT:
            self.succeeded = True
            sm = Message()
            sm.add_message_id(SSHMessageID.USERAUTH_SUCCESS)
            logger.info(
                "user auth successfully, username: %s, method_name: %s",
                self.username,
                method,
            )
            self.events.append(events.AuthenticationSucceeded(self.username, method))
            return [sm]

        partial = result == AuthResult.PARTIAL
        if partial:
            self.passed_methods.append(method)
            if not self.remaining_methods:
                # 全部方法都通过了
                return self._reply(method, AuthResult.ACCEPT)
        else:
            self.attempts += 1
            self.reject_not_before = self._request_time + self.rejection_time
            if self.attempts >= self.max_attempts:
                logger.error(
                    "user auth too many fail, username: %s, method_name: %s",
                    self.username,
                    method,
                )
                raise AuthenticationExhaustedError("too many authentication failures")

        # 不告诉客户端失败的具体原因
        fm = Message()
        fm.add_message_id(SSHMessageID.USERAUTH_FAILURE)
        fm.add_name_list(*self.remaining_methods)
        fm.add_boolean(partial)
        self.events.append(
            events.AuthenticationFailed(method, self.remaining_methods, partial)
        )
        return [fm]

    @staticmethod
    def _info_request(challenge: "KeyboardInteractiveChallenge") -> "Message":
        # byte      SSH_MSG_USERAUTH_INFO_REQUEST
        # string    name (ISO-10646 UTF-8)
        # string    instruction (ISO-10646 UTF-8)
        # string    language tag (as defined in [RFC-3066])
        # int       num-prompts
        # string    prompt[1] (ISO-10646 UTF-8)
        # boolean   echo[1]
        # ...
        m = Message()
        m.add_message_id(SSHMessageID.USERAUTH_INFO_REQUEST)
        m.add_string(challenge.name)
        m.add_string(challenge.instructions)
        m.add_string("")
        m.add_uint32(len(challenge.prompts))
        for prompt, echo in challenge.prompts:
            m.add_string(prompt)
            m.add_boolean(echo)
        return m


#################################
# 客户端
#################################
class ClientAuthMethod:
    name = ""

    def build_request(self, username: str, session_id: bytes) -> "Message":
        m = Message()
        m.add_message_id(SSHMessageID.USERAUTH_REQUEST)
        m.add_string(username)
        m.add_string(CONNECTION_SERVICE)
        m.add_string(self.name)
        return m


class NoneAuth(ClientAuthMethod):
    name = "none"


class PasswordAuth(ClientAuthMethod):
    name = "password"

    def __init__(self, password: str):
        self.password = password

    def build_request(self, username: str, session_id: bytes) -> "Message":
        m = super().build_request(username, session_id)
        m.add_boolean(False)
        m.add_string(self.password)
        return m


class PublicKeyAuth(ClientAuthMethod):
    """probe 为 True 时先询问服务器公钥是否可用，收到 SSH_MSG_USERAUTH_PK_OK 再签名"""

    name = "publickey"

    def __init__(
        self,
        key: "hostkey.SSHKeyBase",
        probe: bool = False,
        algo: t.Optional[str] = None,
    ):
        if not key.has_private:
            raise UnsupportedError("publickey authentication needs a private key")
        if algo is None and key.key_type == "ssh-rsa":
            # ssh-rsa 使用 sha1 ，默认用 rsa-sha2-256
            algo = "rsa-sha2-256"
        if algo is not None:
            key = key.with_algo(algo)
        self.key = key
        self.probe = probe

    def build_request(self, username: str, session_id: bytes) -> "Message":
        if self.probe:
            return self.build_probe(username, session_id)
        return self.build_signed(username, session_id)

    def build_probe(self, username: str, session_id: bytes) -> "Message":
        m = super().build_request(username, session_id)
        m.add_boolean(False)
        m.add_string(self.key.algo)
        m.add_string(self.key.get_k_s())
        return m

    def build_signed(self, username: str, session_id: bytes) -> "Message":
        blob = self.key.get_k_s()
        signed_data = publickey_signed_data(
            session_id, username, CONNECTION_SERVICE, self.key.algo, blob
        )
        m = super().build_request(username, session_id)
        m.add_boolean(True)
        m.add_string(self.key.algo)
        m.add_string(blob)
        m.add_string(self.key.get_sign(signed_data))
        return m


# (name, instructions, prompts) -> responses
KeyboardInteractiveResponder = t.Callable[
    [str, str, t.List[t.Tuple[str, bool]]], t.List[str]
]


class KeyboardInteractiveAuth(ClientAuthMethod):
    name = "keyboard-interactive"

    def __init__(self, responder: "KeyboardInteractiveResponder", submethods: str = ""):
        self.responder = responder
        self.submethods = submethods

    def build_request(self, username: str, session_id: bytes) -> "Message":
        m = super().build_request(username, session_id)
        # language tag
        m.add_string("")
        m.add_string(self.submethods)
        return m

    def build_response(self, m: "Message") -> "Message":
        name = m.get_text()
        instructions = m.get_text()
        # language tag
        m.get_string()
        num = m.get_uint32()
        prompts = []
        for _ in range(num):
            prompt = m.get_text()
            echo = m.get_boolean()
            prompts.append((prompt, echo))
        responses = self.responder(name, instructions, prompts)
        if len(responses) != len(prompts):
            raise DisconnectError(
                SSHDisconnectReasonID.AUTH_CANCELLED_BY_USER,
                "keyboard-interactive responses count mismatch",
            )
        rm = Message()
        rm.add_message_id(SSHMessageID.USERAUTH_INFO_RESPONSE)
        rm.add_uint32(len(responses))
        for response in responses:
            rm.add_string(response)
        return rm


class ClientAuthenticator:
    """客户端按顺序尝试认证方法，服务器不允许的方法直接跳过"""

    def __init__(
        self,
        username: str,
        methods: t.Sequence["ClientAuthMethod"],
        session_id: bytes,
    ):
        self.username = username
        self.pending: t.List["ClientAuthMethod"] = list(methods)
        self.session_id = session_id
        self.current: t.Optional["ClientAuthMethod"] = None
        # 公钥认证已经发送了询问，在等 SSH_MSG_USERAUTH_PK_OK
        self._probing = False
        self.service_accepted = False
        self.succeeded = False
        self.events: t.List["events.Event"] = []

    def start(self) -> t.List["Message"]:
        m = Message()
        m.add_message_id(SSHMessageID.SERVICE_REQUEST)
        m.add_string(USERAUTH_SERVICE)
        return [m]

    def expected_message_ids(self) -> t.Tuple[int, ...]:
        if not self.service_accepted:
            return (SSHMessageID.SERVICE_ACCEPT.value,)
        if self.succeeded:
            return ()
        ids = [
            SSHMessageID.USERAUTH_SUCCESS.value,
            SSHMessageID.USERAUTH_FAILURE.value,
            SSHMessageID.USERAUTH_BANNER.value,
        ]
        # USERAUTH_PK_OK 和 USERAUTH_INFO_REQUEST 的值一样，根据当前方法区分
        if self._probing or isinstance(self.current, KeyboardInteractiveAuth):
            ids.append(SSHMessageID.USERAUTH_PK_OK.value)
        return tuple(ids)

    def handle(self, mid: int, m: "Message") -> t.List["Message"]:
        if mid == SSHMessageID.USERAUTH_BANNER.value and not self.succeeded:
            # banner 在认证完成之前都可能收到
            message = m.get_text()
            language = m.get_text()
            self.events.append(events.AuthBanner(message, language))
            return []
        if mid not in self.expected_message_ids():
            raise UnexpectedMessageError(f"unexpected message {mid} in authentication")
        if mid == SSHMessageID.SERVICE_ACCEPT.value:
            service = m.get_text()
            if service != USERAUTH_SERVICE:
                raise ProtocolViolationError(f"unexpected service accept {service}")
            self.service_accepted = True
            return self._try_next(None)
        if mid == SSHMessageID.USERAUTH_SUCCESS.value:
            self.succeeded = True
            method = self.current.name if self.current else ""
            logger.info(
                "user auth successfully, username: %s, method_name: %s",
                self.username,
                method,
            )
            self.events.append(events.AuthenticationSucceeded(self.username, method))
            return []
        if mid == SSHMessageID.USERAUTH_FAILURE.value:
            allowed = m.get_name_list()
            partial = m.get_boolean()
            method = self.current.name if self.current else ""
            self._probing = False
            self.events.append(events.AuthenticationFailed(method, tuple(allowed), partial))
            return self._try_next(allowed)
        # USERAUTH_PK_OK 或者 USERAUTH_INFO_REQUEST
        if self._probing:
            self._probing = False
            algo = m.get_text()
            blob = m.get_string()
            if algo != self.current.key.algo or blob != self.current.key.get_k_s():
                raise ProtocolViolationError("USERAUTH_PK_OK for another key")
            return [self.current.build_signed(self.username, self.session_id)]
        return [self.current.build_response(m)]

    def _try_next(self, allowed: t.Optional[t.List[str]]) -> t.List["Message"]:
        while self.pending:
            method = self.pending.pop(0)
            # 第一次请求之前不知道服务器允许哪些方法
            if allowed is not None and method.name not in allowed:
                logger.debug("skip auth method %s, server allows %s", method.name, allowed)
                continue
            self.current = method
            if isinstance(method, PublicKeyAuth) and method.probe:
                self._probing = True
            logger.debug("try auth method %s", method.name)
            return [method.build_request(self.username, self.session_id)]
        self.current = None
        raise AuthenticationExhaustedError("no more authentication methods to try")

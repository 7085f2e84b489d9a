"""
测试 session 状态机

客户端和服务端的 session 都在内存里，互相把 data_to_send() 交给对方的 feed()
"""
import time
import unittest

import hostkey
from auth import (
    AuthResult,
    KeyboardInteractiveAuth,
    KeyboardInteractiveChallenge,
    NoneAuth,
    PasswordAuth,
    PublicKeyAuth,
    ServerAuthHandler,
)
from config import ClientConfig, Limits, Preferred, ServerConfig
from error import (
    AuthenticationExhaustedError,
    BadRequestError,
    ConnectionClosedError,
    DisconnectError,
    ProtocolViolationError,
    UnexpectedMessageError,
)
from events import (
    AuthBanner,
    AuthenticationFailed,
    AuthenticationSucceeded,
    ChannelClosed,
    ChannelData,
    ChannelEof,
    ChannelOpened,
    ChannelOpenFailed,
    ChannelRequest,
    ChannelRequestResult,
    Disconnected,
    GlobalRequest,
    KexCompleted,
    VersionReceived,
)
from message import Message, SSHDisconnectReasonID, SSHMessageID
from packet import PacketCodec
from session import SessionPhase
from ssh_client import SSHClientSession
from ssh_server import SSHServerSession

HOST_KEY = hostkey.generate_key("ssh-ed25519")
USER_KEY = hostkey.generate_key("ecdsa-sha2-nistp256")
OTHER_KEY = hostkey.generate_key("ssh-ed25519")

# 测试跑得快一点，优先用 curve25519 和 ed25519
FAST_KEX = ("curve25519-sha256", "ecdh-sha2-nistp256")


class AuthHandler(ServerAuthHandler):
    def auth_password(self, username: str, password: str) -> AuthResult:
        if username == "alice" and password == "secret":
            return AuthResult.ACCEPT
        return AuthResult.REJECT

    def auth_publickey(self, username: str, key: "hostkey.SSHKeyBase") -> AuthResult:
        if key == USER_KEY:
            return AuthResult.ACCEPT
        return AuthResult.REJECT

    def auth_keyboard_interactive(self, username: str, submethods: str):
        return KeyboardInteractiveChallenge("verify", "", [("code: ", False)])

    def auth_keyboard_interactive_response(self, username: str, responses):
        if responses == ["1234"]:
            return AuthResult.ACCEPT
        return AuthResult.REJECT


def make_sessions(auth_methods=None, server_kwargs=None, client_kwargs=None):
    server_kwargs = dict(server_kwargs or {})
    client_kwargs = dict(client_kwargs or {})
    server_kwargs.setdefault("preferred", Preferred(kex=FAST_KEX))
    client_kwargs.setdefault("preferred", Preferred(kex=FAST_KEX))
    server = SSHServerSession(
        ServerConfig(host_keys=[HOST_KEY], auth_handler=AuthHandler(), **server_kwargs)
    )
    client = SSHClientSession(
        ClientConfig(username="alice", **client_kwargs),
        auth_methods or [PasswordAuth("secret")],
    )
    return client, server


def pump(client, server, max_rounds=100):
    """来回传递数据直到两边都没有要发送的数据，返回两边的事件"""
    client.start()
    server.start()
    client_events = []
    server_events = []
    for _ in range(max_rounds):
        c = client.data_to_send()
        s = server.data_to_send()
        if not c and not s:
            break
        if c and not server.closed:
            server_events.extend(server.feed(c))
        if s and not client.closed:
            client_events.extend(client.feed(s))
    return client_events, server_events


def run_kex(client, server, max_rounds=10):
    """只做第一次密钥交换，两边都进入 AUTHENTICATING 就停下"""
    client.start()
    server.start()
    for _ in range(max_rounds):
        if (
            client.phase == SessionPhase.AUTHENTICATING
            and server.phase == SessionPhase.AUTHENTICATING
        ):
            return
        c = client.data_to_send()
        s = server.data_to_send()
        if c:
            server.feed(c)
        if s:
            client.feed(s)
    raise AssertionError("key exchange not finished")


def of_type(events, cls):
    return [e for e in events if isinstance(e, cls)]


class HandshakeTest(unittest.TestCase):
    def test_password(self):
        client, server = make_sessions()
        client_events, server_events = pump(client, server)
        self.assertEqual(client.phase, SessionPhase.ESTABLISHED)
        self.assertEqual(server.phase, SessionPhase.ESTABLISHED)
        self.assertEqual(client.session_id, server.session_id)
        self.assertTrue(client.strict_kex)
        self.assertEqual(server.username, "alice")

        self.assertEqual(len(of_type(client_events, VersionReceived)), 1)
        kex_events = of_type(client_events, KexCompleted)
        self.assertEqual(len(kex_events), 1)
        self.assertTrue(kex_events[0].initial)
        self.assertEqual(kex_events[0].host_key, HOST_KEY.get_public_key())
        self.assertEqual(kex_events[0].algorithms.kex, "curve25519-sha256")
        self.assertEqual(
            of_type(server_events, AuthenticationSucceeded),
            [AuthenticationSucceeded("alice", "password")],
        )

    def test_algorithms(self):
        cases = [
            ("chacha20-poly1305@openssh.com", "hmac-sha2-256", "none"),
            ("aes128-gcm@openssh.com", "hmac-sha2-256", "zlib"),
            ("aes256-gcm@openssh.com", "hmac-sha2-256", "zlib@openssh.com"),
            ("aes128-ctr", "hmac-sha2-256-etm@openssh.com", "none"),
            ("aes192-ctr", "hmac-sha1", "zlib@openssh.com"),
            ("aes256-ctr", "hmac-sha2-512", "zlib"),
        ]
        for encryption, mac, compression in cases:
            with self.subTest(encryption=encryption, mac=mac, compression=compression):
                preferred = Preferred(
                    kex=FAST_KEX,
                    encryption=(encryption,),
                    mac=(mac,),
                    compression=(compression,),
                )
                client, server = make_sessions(client_kwargs={"preferred": preferred})
                pump(client, server)
                self.assertEqual(client.phase, SessionPhase.ESTABLISHED)
                channel_id = client.open_session_channel()
                pump(client, server)
                client.send_channel_data(channel_id, b"ping" * 100)
                _, server_events = pump(client, server)
                data = of_type(server_events, ChannelData)
                self.assertEqual(b"".join(e.data for e in data), b"ping" * 100)

    def test_other_kex(self):
        for kex_algo in (
            "ecdh-sha2-nistp384",
            "diffie-hellman-group14-sha256",
            "diffie-hellman-group-exchange-sha256",
        ):
            with self.subTest(kex=kex_algo):
                client, server = make_sessions(
                    client_kwargs={
                        "preferred": Preferred(kex=(kex_algo,)),
                        "gex_min_bits": 2048,
                        "gex_prefer_bits": 2048,
                    },
                    server_kwargs={"preferred": Preferred()},
                )
                client_events, _ = pump(client, server)
                self.assertEqual(client.phase, SessionPhase.ESTABLISHED)
                self.assertEqual(of_type(client_events, KexCompleted)[0].algorithms.kex, kex_algo)

    def test_rsa_host_key(self):
        rsa_key = hostkey.generate_key("ssh-rsa")
        server = SSHServerSession(
            ServerConfig(
                host_keys=[rsa_key],
                auth_handler=AuthHandler(),
                preferred=Preferred(kex=FAST_KEX),
            )
        )
        client = SSHClientSession(
            ClientConfig(username="alice", preferred=Preferred(kex=FAST_KEX)),
            [PasswordAuth("secret")],
        )
        client_events, _ = pump(client, server)
        self.assertEqual(client.phase, SessionPhase.ESTABLISHED)
        self.assertEqual(
            of_type(client_events, KexCompleted)[0].algorithms.server_host_key,
            "rsa-sha2-512",
        )

    def test_without_strict_kex(self):
        client, server = make_sessions(client_kwargs={"strict_kex": False})
        pump(client, server)
        self.assertEqual(client.phase, SessionPhase.ESTABLISHED)
        self.assertFalse(client.strict_kex)
        self.assertFalse(server.strict_kex)

    def test_strict_kex_resets_sequence(self):
        client, server = make_sessions()
        run_kex(client, server)
        # NEWKEYS 之后序号从 0 开始
        # 服务器只收到了 SERVICE_REQUEST ，客户端还发了 USERAUTH_REQUEST
        self.assertEqual(server.codec.read_seq_num, 1)
        self.assertEqual(client.codec.write_seq_num, 2)

    def test_sequence_continues_without_strict_kex(self):
        client, server = make_sessions(client_kwargs={"strict_kex": False})
        run_kex(client, server)
        # KEXINIT, KEX_ECDH_INIT, NEWKEYS, SERVICE_REQUEST
        self.assertEqual(server.codec.read_seq_num, 4)

    def test_strict_kex_rejects_ignore(self):
        client, server = make_sessions()
        client.start()
        data = client.data_to_send()
        index = data.index(b"\r\n") + 2
        m = Message()
        m.add_message_id(SSHMessageID.IGNORE)
        m.add_string(b"")
        ignore_packet = PacketCodec().encode(m.as_bytes())
        with self.assertRaises(ProtocolViolationError):
            server.feed(data[:index] + ignore_packet + data[index:])
        self.assertTrue(server.closed)

    def test_guess_correct(self):
        client, server = make_sessions(client_kwargs={"guess_first_kex_packet": True})
        pump(client, server)
        self.assertEqual(client.phase, SessionPhase.ESTABLISHED)
        self.assertEqual(server.phase, SessionPhase.ESTABLISHED)

    def test_guess_wrong(self):
        client, server = make_sessions(
            client_kwargs={
                "guess_first_kex_packet": True,
                "preferred": Preferred(kex=("ecdh-sha2-nistp256", "curve25519-sha256")),
            },
            server_kwargs={"preferred": Preferred(kex=("curve25519-sha256", "ecdh-sha2-nistp256"))},
        )
        client_events, _ = pump(client, server)
        self.assertEqual(client.phase, SessionPhase.ESTABLISHED)
        self.assertEqual(server.phase, SessionPhase.ESTABLISHED)
        self.assertEqual(
            of_type(client_events, KexCompleted)[0].algorithms.kex, "ecdh-sha2-nistp256"
        )

    def test_no_common_algorithm(self):
        client, server = make_sessions(
            client_kwargs={"preferred": Preferred(kex=FAST_KEX, encryption=("aes128-ctr",))},
            server_kwargs={
                "preferred": Preferred(kex=FAST_KEX, encryption=("aes256-gcm@openssh.com",))
            },
        )
        with self.assertRaises(DisconnectError) as cm:
            pump(client, server)
        self.assertEqual(cm.exception.reason_id, SSHDisconnectReasonID.KEY_EXCHANGE_FAILED)

    def test_host_key_not_trusted(self):
        client, server = make_sessions(client_kwargs={"host_key_verifier": lambda key: False})
        with self.assertRaises(DisconnectError) as cm:
            pump(client, server)
        self.assertEqual(
            cm.exception.reason_id, SSHDisconnectReasonID.HOST_KEY_NOT_VERIFIABLE
        )
        self.assertTrue(client.closed)
        # 服务器收到 SSH_MSG_DISCONNECT
        events = server.feed(client.data_to_send())
        self.assertEqual(
            of_type(events, Disconnected)[0].reason_id,
            SSHDisconnectReasonID.HOST_KEY_NOT_VERIFIABLE,
        )
        self.assertTrue(server.closed)


class VersionTest(unittest.TestCase):
    def test_lines_before_version(self):
        client, server = make_sessions()
        events = client.feed(b"welcome\r\nanother line\r\nSSH-2.0-test_1.0 comment\r\n")
        self.assertEqual(of_type(events, VersionReceived), [VersionReceived("SSH-2.0-test_1.0 comment")])
        self.assertEqual(client.phase, SessionPhase.INITIAL_KEX)

    def test_version_in_pieces(self):
        client, server = make_sessions()
        self.assertEqual(client.feed(b"SSH-2."), [])
        events = client.feed(b"0-test\n")
        self.assertEqual(len(of_type(events, VersionReceived)), 1)
        self.assertEqual(client.server_version, b"SSH-2.0-test")

    def test_1_99(self):
        client, server = make_sessions()
        client.feed(b"SSH-1.99-old\r\n")
        self.assertEqual(client.phase, SessionPhase.INITIAL_KEX)

    def test_unsupported_version(self):
        client, server = make_sessions()
        with self.assertRaises(DisconnectError) as cm:
            client.feed(b"SSH-1.5-old\r\n")
        self.assertEqual(
            cm.exception.reason_id, SSHDisconnectReasonID.PROTOCOL_VERSION_NOT_SUPPORTED
        )
        self.assertTrue(client.closed)

    def test_line_too_long(self):
        client, server = make_sessions()
        with self.assertRaises(ProtocolViolationError):
            client.feed(b"x" * 300)


class AuthenticationTest(unittest.TestCase):
    def test_publickey(self):
        client, server = make_sessions(auth_methods=[PublicKeyAuth(USER_KEY)])
        client_events, server_events = pump(client, server)
        self.assertEqual(client.phase, SessionPhase.ESTABLISHED)
        self.assertEqual(
            of_type(client_events, AuthenticationSucceeded),
            [AuthenticationSucceeded("alice", "publickey")],
        )

    def test_publickey_probe(self):
        client, server = make_sessions(auth_methods=[PublicKeyAuth(USER_KEY, probe=True)])
        pump(client, server)
        self.assertEqual(client.phase, SessionPhase.ESTABLISHED)

    def test_publickey_probe_rejected(self):
        client, server = make_sessions(
            auth_methods=[PublicKeyAuth(OTHER_KEY, probe=True), PasswordAuth("secret")]
        )
        client_events, _ = pump(client, server)
        self.assertEqual(client.phase, SessionPhase.ESTABLISHED)
        failed = of_type(client_events, AuthenticationFailed)
        self.assertEqual(failed[0].method, "publickey")

    def test_publickey_bad_signature(self):
        class WrongSessionAuth(PublicKeyAuth):
            def build_signed(self, username, session_id):
                return super().build_signed(username, b"another session")

        client, server = make_sessions(auth_methods=[WrongSessionAuth(USER_KEY)])
        with self.assertRaises(AuthenticationExhaustedError):
            pump(client, server)
        self.assertEqual(server.phase, SessionPhase.AUTHENTICATING)
        self.assertEqual(server._state.authenticator.attempts, 1)

    def test_password_retry(self):
        client, server = make_sessions(
            auth_methods=[
                NoneAuth(),
                PasswordAuth("wrong"),
                PasswordAuth("secret"),
                PublicKeyAuth(USER_KEY),
            ]
        )
        client_events, server_events = pump(client, server)
        self.assertEqual(client.phase, SessionPhase.ESTABLISHED)
        failed = of_type(client_events, AuthenticationFailed)
        self.assertEqual([e.method for e in failed], ["none", "password"])
        self.assertEqual(
            failed[0].remaining_methods, ("publickey", "password", "keyboard-interactive")
        )
        self.assertFalse(failed[0].partial_success)
        # 密码错了一次之后服务器不再允许密码认证，客户端跳过第二个密码
        self.assertEqual(failed[1].remaining_methods, ("publickey", "keyboard-interactive"))
        self.assertEqual(
            of_type(client_events, AuthenticationSucceeded),
            [AuthenticationSucceeded("alice", "publickey")],
        )

    def test_password_not_allowed_after_rejection(self):
        client, server = make_sessions(
            auth_methods=[PasswordAuth("wrong"), PasswordAuth("secret")]
        )
        with self.assertRaises(AuthenticationExhaustedError):
            pump(client, server)
        self.assertTrue(client.closed)
        self.assertEqual(server._state.authenticator.attempts, 1)
        self.assertNotIn("password", server._state.authenticator.remaining_methods)

    def test_rejection_delay(self):
        client, server = make_sessions(
            auth_methods=[PasswordAuth("wrong"), PublicKeyAuth(USER_KEY)],
            server_kwargs={"auth_rejection_time": 5.0},
        )
        self.assertEqual(server.send_not_before, 0.0)
        before = time.monotonic()
        pump(client, server)
        self.assertEqual(client.phase, SessionPhase.ESTABLISHED)
        # 失败的回复至少要在收到请求 5 秒之后才发出去
        self.assertGreaterEqual(server.send_not_before, before + 5.0)
        self.assertLessEqual(server.send_not_before, time.monotonic() + 5.0)

    def test_no_rejection_delay_on_success(self):
        client, server = make_sessions(server_kwargs={"auth_rejection_time": 5.0})
        pump(client, server)
        self.assertEqual(client.phase, SessionPhase.ESTABLISHED)
        self.assertEqual(server.send_not_before, 0.0)

    def test_keyboard_interactive(self):
        prompts_seen = []

        def responder(name, instructions, prompts):
            prompts_seen.append(prompts)
            return ["1234"]

        client, server = make_sessions(auth_methods=[KeyboardInteractiveAuth(responder)])
        pump(client, server)
        self.assertEqual(client.phase, SessionPhase.ESTABLISHED)
        self.assertEqual(prompts_seen, [[("code: ", False)]])

    def test_keyboard_interactive_wrong_response_count(self):
        client, server = make_sessions(
            auth_methods=[KeyboardInteractiveAuth(lambda name, instructions, prompts: [])]
        )
        with self.assertRaises(DisconnectError) as cm:
            pump(client, server)
        self.assertEqual(cm.exception.reason_id, SSHDisconnectReasonID.AUTH_CANCELLED_BY_USER)
        self.assertTrue(client.closed)
        events = server.feed(client.data_to_send())
        self.assertEqual(
            of_type(events, Disconnected)[0].reason_id,
            SSHDisconnectReasonID.AUTH_CANCELLED_BY_USER,
        )

    def test_handler_error_closes_session(self):
        class BrokenHandler(AuthHandler):
            def auth_password(self, username, password):
                raise KeyError(username)

        server = SSHServerSession(
            ServerConfig(
                host_keys=[HOST_KEY],
                auth_handler=BrokenHandler(),
                preferred=Preferred(kex=FAST_KEX),
            )
        )
        client = SSHClientSession(
            ClientConfig(username="alice", preferred=Preferred(kex=FAST_KEX)),
            [PasswordAuth("secret")],
        )
        with self.assertRaises(ProtocolViolationError) as cm:
            pump(client, server)
        self.assertIsInstance(cm.exception.__cause__, KeyError)
        self.assertTrue(server.closed)
        events = client.feed(server.data_to_send())
        self.assertEqual(
            of_type(events, Disconnected)[0].reason_id, SSHDisconnectReasonID.PROTOCOL_ERROR
        )

    def test_skip_methods_not_allowed(self):
        client, server = make_sessions(
            auth_methods=[NoneAuth(), PublicKeyAuth(USER_KEY), PasswordAuth("secret")],
            server_kwargs={"auth_methods": ("password",)},
        )
        client_events, _ = pump(client, server)
        self.assertEqual(client.phase, SessionPhase.ESTABLISHED)
        self.assertEqual(
            of_type(client_events, AuthenticationSucceeded),
            [AuthenticationSucceeded("alice", "password")],
        )

    def test_partial_success(self):
        class TwoFactorHandler(AuthHandler):
            def auth_password(self, username, password):
                if password == "secret":
                    return AuthResult.PARTIAL
                return AuthResult.REJECT

        server = SSHServerSession(
            ServerConfig(
                host_keys=[HOST_KEY],
                auth_handler=TwoFactorHandler(),
                auth_methods=("password", "publickey"),
                preferred=Preferred(kex=FAST_KEX),
            )
        )
        client = SSHClientSession(
            ClientConfig(username="alice", preferred=Preferred(kex=FAST_KEX)),
            [PasswordAuth("secret"), PublicKeyAuth(USER_KEY)],
        )
        client_events, _ = pump(client, server)
        self.assertEqual(client.phase, SessionPhase.ESTABLISHED)
        failed = of_type(client_events, AuthenticationFailed)
        self.assertEqual(failed, [AuthenticationFailed("password", ("publickey",), True)])

    def test_server_exhausted(self):
        client, server = make_sessions(
            auth_methods=[NoneAuth(), PasswordAuth("a"), PasswordAuth("b")],
            server_kwargs={"max_auth_attempts": 2},
        )
        with self.assertRaises(AuthenticationExhaustedError):
            pump(client, server)
        self.assertTrue(server.closed)
        events = client.feed(server.data_to_send())
        disconnected = of_type(events, Disconnected)
        self.assertEqual(
            disconnected[0].reason_id, SSHDisconnectReasonID.NO_MORE_AUTH_METHODS_AVAILABLE
        )
        # 不告诉客户端具体原因
        self.assertNotIn("password", disconnected[0].description)
        self.assertTrue(client.closed)

    def test_client_exhausted(self):
        client, server = make_sessions(auth_methods=[PasswordAuth("wrong")])
        with self.assertRaises(AuthenticationExhaustedError):
            pump(client, server)
        self.assertTrue(client.closed)

    def test_banner(self):
        client, server = make_sessions(server_kwargs={"auth_banner": "hello"})
        client_events, _ = pump(client, server)
        self.assertEqual(of_type(client_events, AuthBanner), [AuthBanner("hello", "")])

    def test_channel_before_auth(self):
        # none 认证不会通过，服务器停在 AUTHENTICATING
        client, server = make_sessions(auth_methods=[NoneAuth()])
        run_kex(client, server)
        m = Message()
        m.add_message_id(SSHMessageID.CHANNEL_OPEN)
        m.add_string("session")
        m.add_uint32(0)
        m.add_uint32(1000)
        m.add_uint32(1000)
        client._send(m)
        with self.assertRaises(UnexpectedMessageError):
            server.feed(client.data_to_send())

    def test_illegal_message_for_role(self):
        client, server = make_sessions()
        pump(client, server)
        m = Message()
        m.add_message_id(SSHMessageID.USERAUTH_SUCCESS)
        client._send(m)
        with self.assertRaises(UnexpectedMessageError):
            server.feed(client.data_to_send())


class ChannelTest(unittest.TestCase):
    def setUp(self):
        self.client, self.server = make_sessions()
        pump(self.client, self.server)

    def test_exec(self):
        client, server = self.client, self.server
        channel_id = client.open_session_channel()
        client_events, server_events = pump(client, server)
        self.assertEqual(of_type(client_events, ChannelOpened), [ChannelOpened(channel_id, "session")])
        server_channel = of_type(server_events, ChannelOpened)[0].channel_id

        client.request_env(channel_id, "LANG", "C")
        client.request_exec(channel_id, "ls -l")
        _, server_events = pump(client, server)
        requests = of_type(server_events, ChannelRequest)
        self.assertEqual(requests[0].request.request_type, "env")
        self.assertEqual(requests[0].request.env_name, "LANG")
        self.assertEqual(requests[1].request.command, "ls -l")
        self.assertTrue(requests[1].request.want_reply)

        server.reply_channel_request(server_channel, True)
        server.send_channel_data(server_channel, b"total 0\n")
        server.send_channel_extended_data(server_channel, b"warning\n")
        server.send_exit_status(server_channel, 3)
        server.send_channel_eof(server_channel)
        server.close_channel(server_channel)
        client_events, server_events = pump(client, server)
        self.assertEqual(
            of_type(client_events, ChannelRequestResult),
            [ChannelRequestResult(channel_id, True)],
        )
        data = of_type(client_events, ChannelData)
        self.assertEqual(data[0], ChannelData(channel_id, b"total 0\n", None))
        self.assertEqual(data[1], ChannelData(channel_id, b"warning\n", 1))
        exit_status = of_type(client_events, ChannelRequest)[0].request
        self.assertEqual(exit_status.request_type, "exit-status")
        self.assertEqual(exit_status.exit_status, 3)
        self.assertEqual(of_type(client_events, ChannelEof), [ChannelEof(channel_id)])
        self.assertEqual(of_type(client_events, ChannelClosed), [ChannelClosed(channel_id)])
        self.assertEqual(of_type(server_events, ChannelClosed), [ChannelClosed(server_channel)])
        self.assertEqual(client.channels, {})
        self.assertEqual(server.channels, {})

    def test_pty_request(self):
        from channel import PtyRequest

        client, server = self.client, self.server
        channel_id = client.open_session_channel()
        pump(client, server)
        client.request_pty(channel_id, PtyRequest("vt100", 120, 40, modes=[(53, 1), (128, 38400)]))
        _, server_events = pump(client, server)
        pty = of_type(server_events, ChannelRequest)[0].request.pty
        self.assertEqual(pty.term, "vt100")
        self.assertEqual((pty.width_columns, pty.height_rows), (120, 40))
        self.assertEqual(pty.modes, [(53, 1), (128, 38400)])

    def test_shell_and_subsystem(self):
        client, server = self.client, self.server
        channel_id = client.open_session_channel()
        _, server_events = pump(client, server)
        server_channel = of_type(server_events, ChannelOpened)[0].channel_id
        client.request_shell(channel_id)
        client.request_subsystem(channel_id, "sftp")
        _, server_events = pump(client, server)
        requests = [e.request for e in of_type(server_events, ChannelRequest)]
        self.assertEqual([r.request_type for r in requests], ["shell", "subsystem"])
        self.assertEqual(requests[1].subsystem, "sftp")
        server.reply_channel_request(server_channel, False)
        server.reply_channel_request(server_channel, True)
        client_events, _ = pump(client, server)
        self.assertEqual(
            of_type(client_events, ChannelRequestResult),
            [ChannelRequestResult(channel_id, False), ChannelRequestResult(channel_id, True)],
        )

    def test_unknown_channel_type(self):
        client, server = self.client, self.server
        channel_id = client.open_session_channel("direct-tcpip")
        client_events, _ = pump(client, server)
        failed = of_type(client_events, ChannelOpenFailed)
        self.assertEqual(failed[0].channel_id, channel_id)
        self.assertEqual(failed[0].reason_code, 3)
        self.assertNotIn(channel_id, client.channels)

    def test_window(self):
        client, server = make_sessions(client_kwargs={"window_size": 1000, "maximum_packet_size": 300})
        pump(client, server)
        channel_id = client.open_session_channel()
        _, server_events = pump(client, server)
        server_channel = of_type(server_events, ChannelOpened)[0].channel_id
        payload = bytes(range(256)) * 20
        server.send_channel_data(server_channel, payload)
        # 超过窗口的数据先留在 channel 里面
        self.assertTrue(server.channels[server_channel].pending_data)
        client_events, _ = pump(client, server)
        data = of_type(client_events, ChannelData)
        self.assertTrue(all(len(e.data) <= 300 for e in data))
        self.assertEqual(b"".join(e.data for e in data), payload)

    def test_global_request(self):
        client, server = self.client, self.server
        m = Message()
        m.add_message_id(SSHMessageID.GLOBAL_REQUEST)
        m.add_string("keepalive@openssh.com")
        m.add_boolean(True)
        client._send(m)
        client_events, server_events = pump(client, server)
        self.assertEqual(
            of_type(server_events, GlobalRequest),
            [GlobalRequest("keepalive@openssh.com", True)],
        )
        self.assertEqual(client.phase, SessionPhase.ESTABLISHED)

    def test_unknown_message(self):
        client, server = self.client, self.server
        client._send(Message(b"\xc8hello"))
        pump(client, server)
        # 服务器回复 SSH_MSG_UNIMPLEMENTED ，连接继续
        self.assertEqual(server.phase, SessionPhase.ESTABLISHED)
        self.assertEqual(client.phase, SessionPhase.ESTABLISHED)

    def test_unknown_channel(self):
        client, server = self.client, self.server
        m = Message()
        m.add_message_id(SSHMessageID.CHANNEL_DATA)
        m.add_uint32(99)
        m.add_string(b"x")
        client._send(m)
        with self.assertRaises(ProtocolViolationError):
            server.feed(client.data_to_send())

    def test_close_on_unconfirmed_channel(self):
        client, server = self.client, self.server
        channel_id = client.open_session_channel()
        # CHANNEL_OPEN 没有发给服务器，channel 还没确认
        client.data_to_send()
        m = Message()
        m.add_message_id(SSHMessageID.CHANNEL_CLOSE)
        m.add_uint32(channel_id)
        server._send(m)
        with self.assertRaises(ProtocolViolationError):
            client.feed(server.data_to_send())
        self.assertTrue(client.closed)
        # 断开时放了一个 SSH_MSG_DISCONNECT
        self.assertTrue(client.data_to_send())

    def test_data_on_unconfirmed_channel_keeps_earlier_events(self):
        client, server = self.client, self.server
        opened_id = client.open_session_channel()
        _, server_events = pump(client, server)
        server_channel = of_type(server_events, ChannelOpened)[0].channel_id
        pending_id = client.open_session_channel()
        client.data_to_send()
        server.send_channel_data(server_channel, b"hello")
        m = Message()
        m.add_message_id(SSHMessageID.CHANNEL_DATA)
        m.add_uint32(pending_id)
        m.add_string(b"x" * 100)
        server._send(m)
        with self.assertRaises(ProtocolViolationError) as cm:
            client.feed(server.data_to_send())
        self.assertTrue(client.closed)
        # 出错之前同一次 feed 产生的事件没有丢
        self.assertEqual(cm.exception.events, [ChannelData(opened_id, b"hello", None)])

    def test_oversize_request_keeps_session_usable(self):
        client, server = self.client, self.server
        channel_id = client.open_session_channel()
        pump(client, server)
        with self.assertRaises(BadRequestError):
            client.request_exec(channel_id, "x" * (client.config.max_packet + 1))
        self.assertFalse(client.closed)
        self.assertEqual(client.channels[channel_id].pending_replies, 0)
        client.request_exec(channel_id, "ls")
        _, server_events = pump(client, server)
        self.assertEqual(of_type(server_events, ChannelRequest)[0].request.command, "ls")

    def test_channel_api_before_established(self):
        client, server = make_sessions()
        with self.assertRaises(BadRequestError):
            client.open_session_channel()


class RekeyTest(unittest.TestCase):
    def setUp(self):
        self.client, self.server = make_sessions()
        pump(self.client, self.server)
        self.channel_id = self.client.open_session_channel()
        _, server_events = pump(self.client, self.server)
        self.server_channel = of_type(server_events, ChannelOpened)[0].channel_id

    def test_client_rekey(self):
        client, server = self.client, self.server
        session_id = client.session_id
        chunks = [f"packet {i};".encode() for i in range(20)]
        for chunk in chunks[:10]:
            client.send_channel_data(self.channel_id, chunk)
        self.assertTrue(client.rekey())
        self.assertEqual(client.phase, SessionPhase.REKEY_IN_PROGRESS)
        # 已经在交换中
        self.assertFalse(client.rekey())
        for chunk in chunks[10:]:
            client.send_channel_data(self.channel_id, chunk)
        client_events, server_events = pump(client, server)
        data = of_type(server_events, ChannelData)
        self.assertEqual([e.data for e in data], chunks)
        for events in (client_events, server_events):
            completed = of_type(events, KexCompleted)
            self.assertEqual(len(completed), 1)
            self.assertFalse(completed[0].initial)
        self.assertEqual(client.phase, SessionPhase.ESTABLISHED)
        self.assertEqual(server.phase, SessionPhase.ESTABLISHED)
        self.assertEqual(client.session_id, session_id)
        self.assertEqual(server.session_id, session_id)

    def test_server_rekey_with_data_in_flight(self):
        client, server = self.client, self.server
        server.rekey()
        # 客户端还没收到服务器的 KEXINIT ，数据已经发出去了
        client.send_channel_data(self.channel_id, b"first")
        server_events = server.feed(client.data_to_send())
        # 服务器在密钥交换中，数据先排队
        self.assertEqual(of_type(server_events, ChannelData), [])
        server.send_channel_data(self.server_channel, b"reply")
        client.send_channel_data(self.channel_id, b"second")
        client_events, more_server_events = pump(client, server)
        server_events.extend(more_server_events)
        self.assertEqual(
            [e.data for e in of_type(server_events, ChannelData)], [b"first", b"second"]
        )
        self.assertEqual([e.data for e in of_type(client_events, ChannelData)], [b"reply"])
        self.assertEqual(server.phase, SessionPhase.ESTABLISHED)

    def test_rekey_by_bytes(self):
        client, server = make_sessions(
            client_kwargs={"limits": Limits(rekey_write_limit=4096)}
        )
        pump(client, server)
        channel_id = client.open_session_channel()
        pump(client, server)
        client.send_channel_data(channel_id, b"x" * 5000)
        self.assertEqual(client.phase, SessionPhase.REKEY_IN_PROGRESS)
        client_events, server_events = pump(client, server)
        self.assertFalse(of_type(client_events, KexCompleted)[0].initial)
        self.assertEqual(len(b"".join(e.data for e in of_type(server_events, ChannelData))), 5000)
        self.assertLess(client.codec.write_bytes, 4096)

    def test_rekey_by_time(self):
        client, server = make_sessions()
        pump(client, server)
        self.assertFalse(client.check_rekey())
        client.config.limits.rekey_time_limit = 0
        self.assertTrue(client.check_rekey())
        client.config.limits.rekey_time_limit = 3600
        client_events, _ = pump(client, server)
        self.assertEqual(len(of_type(client_events, KexCompleted)), 1)

    def test_rekey_during_authentication(self):
        client, server = make_sessions()
        run_kex(client, server)
        # 客户端的 USERAUTH_REQUEST 还没发出去，服务器要先完成密钥交换再处理
        self.assertTrue(server.rekey())
        pump(client, server)
        self.assertEqual(client.phase, SessionPhase.ESTABLISHED)
        self.assertEqual(server.phase, SessionPhase.ESTABLISHED)


class CloseTest(unittest.TestCase):
    def test_close(self):
        client, server = make_sessions()
        pump(client, server)
        channel_id = client.open_session_channel()
        pump(client, server)
        client.close(description="bye")
        self.assertTrue(client.closed)
        self.assertEqual(client.phase, SessionPhase.CLOSED)
        with self.assertRaises(ConnectionClosedError):
            client.feed(b"data")
        with self.assertRaises(ConnectionClosedError):
            client.send_channel_data(channel_id, b"x")
        with self.assertRaises(ConnectionClosedError):
            client.rekey()
        events = server.feed(client.data_to_send())
        self.assertEqual(
            events, [Disconnected(SSHDisconnectReasonID.BY_APPLICATION, "bye")]
        )
        self.assertTrue(server.closed)
        # 关闭之后不再持有密钥
        self.assertEqual(server.codec.read_cipher.name, "none")

    def test_close_twice(self):
        client, server = make_sessions()
        pump(client, server)
        client.close()
        data = client.data_to_send()
        client.close()
        self.assertEqual(client.data_to_send(), b"")
        self.assertTrue(data)

    def test_integrity_error_closes(self):
        client, server = make_sessions()
        pump(client, server)
        m = Message()
        m.add_message_id(SSHMessageID.IGNORE)
        m.add_string(b"padding")
        client._send(m)
        data = bytearray(client.data_to_send())
        data[-1] ^= 0xFF
        with self.assertRaises(DisconnectError) as cm:
            server.feed(bytes(data))
        self.assertEqual(cm.exception.reason_id, SSHDisconnectReasonID.MAC_ERROR)
        self.assertTrue(server.closed)


if __name__ == "__main__":
    unittest.main()

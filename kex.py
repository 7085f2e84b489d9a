"""
密钥交换

每个算法都是一个不做网络读写的状态机，客户端和服务端共用：
start() 返回需要先发送的消息， handle() 处理收到的消息并返回需要回复的消息，
得到 shared secret 和 exchange hash 之后 result 就有值了。
NEWKEYS 的收发和密钥的切换由 session 负责。

ec 密钥交换，说明了一个大概流程
https://datatracker.ietf.org/doc/html/rfc5656#section-4
交换之后密钥的计算
https://datatracker.ietf.org/doc/html/rfc4253#section-7.2
"""
import abc
import dataclasses
import enum
import hashlib
import pathlib
import secrets
import typing as t

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import dh, ec
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)

import hostkey
import logutil
import ssh_cipher
import ssh_mac
from error import (
    HostKeyNotVerifiableError,
    KeyExchangeError,
    UnexpectedError,
    UnexpectedMessageError,
    UnsupportedError,
)
from message import Message, SSHMessageID

if t.TYPE_CHECKING:
    from negotiation import NegotiatedAlgorithms

logger = logutil.get_logger(__name__)


class SSHSide(enum.Enum):
    server = enum.auto()
    client = enum.auto()


class KexStep(enum.Enum):
    """密钥交换的步骤"""

    INIT = enum.auto()
    WAIT_PEER_PUBLIC_VALUE = enum.auto()
    VERIFY_HOST_KEY = enum.auto()
    COMPUTE_SHARED_SECRET = enum.auto()
    DERIVE_KEYS = enum.auto()
    SEND_NEW_KEYS = enum.auto()
    WAIT_PEER_NEW_KEYS = enum.auto()
    DONE = enum.auto()


@dataclasses.dataclass
class Exchange:
    """计算 exchange hash 需要的双方数据"""

    # 双方交换协议版本的数据（不包含 \r\n）
    client_version: bytes
    server_version: bytes
    # 双方 SSH_MSG_KEXINIT 的 payload
    client_kexinit: bytes
    server_kexinit: bytes


class CipherTag(t.NamedTuple):
    iv_tag: bytes
    key_tag: bytes
    mac_tag: bytes


# client to server, client 加密信息所需
client_tag = CipherTag(
    b"A",
    b"C",
    b"E",
)
# server to client, server 加密信息所需
server_tag = CipherTag(
    b"B",
    b"D",
    b"F",
)


@dataclasses.dataclass
class TrafficKeys:
    """一次密钥交换得到的六个值"""

    iv_cs: bytes
    iv_sc: bytes
    key_cs: bytes
    key_sc: bytes
    mac_cs: bytes
    mac_sc: bytes

    def clear(self):
        """密钥已经交给 cipher 和 mac ，这里不再保留"""
        for field in dataclasses.fields(self):
            setattr(self, field.name, b"")


@dataclasses.dataclass
class KexResult:
    side: SSHSide
    hash_call: t.Callable
    # shared secret, mpint 格式
    K: bytes
    H: bytes
    session_id: bytes
    # 服务器的 host key （只有公钥部分）
    host_key: t.Optional["hostkey.SSHKeyBase"] = None

    def compute_key(self, key_size: int, tag: bytes) -> bytes:
        """计算密钥。计算方法如下

        o  Initial IV client to server: HASH(K || H || "A" || session_id)
        (Here K is encoded as mpint and "A" as byte and session_id as raw
        data.  "A" means the single character A, ASCII 65).

        o  Initial IV server to client: HASH(K || H || "B" || session_id)

        o  Encryption key client to server: HASH(K || H || "C" || session_id)

        o  Encryption key server to client: HASH(K || H || "D" || session_id)

        o  Integrity key client to server: HASH(K || H || "E" || session_id)

        o  Integrity key server to client: HASH(K || H || "F" || session_id)

        如果长度不够，可以按下面的算法计算

        K1 = HASH(K || H || X || session_id)   (X is e.g., "A")
        K2 = HASH(K || H || K1)
        K3 = HASH(K || H || K1 || K2)
        ...
        key = K1 || K2 || K3 || ...

        ref: https://datatracker.ietf.org/doc/html/rfc4253#section-7.2

        Args:
            key_size: 生成的 key 大小
            tag: 标记符，就是上面提到的 "A" "B" "C" "D" 等等。

        Returns: 密钥
        """
        if key_size <= 0:
            return b""
        key = self.hash_call(self.K + self.H + tag + self.session_id).digest()
        kx = key
        while len(key) < key_size:
            hk = self.hash_call(self.K + self.H + kx).digest()
            kx += hk
            key += hk
        return key[:key_size]

    def _direction_keys(self, encryption: str, mac: str, tag: CipherTag):
        cipher_cls = ssh_cipher.get_cipher_impl(encryption)
        mac_size = 0
        if not cipher_cls.is_aead:
            mac_size = ssh_mac.get_mac_impl(mac).key_size
        return (
            self.compute_key(cipher_cls.iv_size, tag.iv_tag),
            self.compute_key(cipher_cls.key_size, tag.key_tag),
            self.compute_key(mac_size, tag.mac_tag),
        )

    def derive_keys(self, algorithms: "NegotiatedAlgorithms") -> "TrafficKeys":
        iv_cs, key_cs, mac_cs = self._direction_keys(
            algorithms.encryption_cs, algorithms.mac_cs, client_tag
        )
        iv_sc, key_sc, mac_sc = self._direction_keys(
            algorithms.encryption_sc, algorithms.mac_sc, server_tag
        )
        return TrafficKeys(iv_cs, iv_sc, key_cs, key_sc, mac_cs, mac_sc)

    def clear(self):
        """丢掉 shared secret 和 exchange hash

        bytes 不能原地改写，只能去掉引用。session_id 整个连接都要用，不清除。
        """
        self.K = b""
        self.H = b""


class KeyExchangeInterface(abc.ABC):
    """密钥交换接口"""

    hash_call = hashlib.sha256

    def __init__(
        self,
        side: SSHSide,
        exchange: Exchange,
        session_id: t.Optional[bytes],
        host_key_algo: str,
        host_key: t.Optional["hostkey.SSHKeyBase"] = None,
        host_key_verifier: t.Optional[t.Callable[["hostkey.SSHKeyBase"], bool]] = None,
        gex_bits: t.Tuple[int, int, int] = (2048, 3072, 8192),
        moduli_path: t.Optional[pathlib.Path] = None,
    ):
        self.side = side
        self.exchange = exchange
        self.session_id = session_id
        self.host_key_algo = host_key_algo
        # 服务端用来签名的 host key
        self.host_key = host_key
        # 客户端用来判断是否信任服务器的 host key
        self.host_key_verifier = host_key_verifier
        self.gex_bits = gex_bits
        self.moduli_path = moduli_path

        self.step = KexStep.INIT
        self.result: t.Optional[KexResult] = None

    @property
    def done(self) -> bool:
        return self.result is not None

    @abc.abstractmethod
    def start(self) -> t.List["Message"]:
        """开始密钥交换，返回需要先发送的消息"""
        raise NotImplementedError("start")

    @abc.abstractmethod
    def expected_message_ids(self) -> t.Tuple[int, ...]:
        """当前步骤允许收到的消息"""
        raise NotImplementedError("expected_message_ids")

    @abc.abstractmethod
    def _handle(self, mid: int, m: "Message") -> t.List["Message"]:
        raise NotImplementedError("_handle")

    def handle(self, mid: int, m: "Message") -> t.List["Message"]:
        """处理收到的密钥交换消息， m 已经读过消息 ID"""
        if mid not in self.expected_message_ids():
            raise UnexpectedMessageError(
                f"unexpected message {mid} in key exchange step {self.step.name}"
            )
        return self._handle(mid, m)

    def do_hash(self, b: bytes) -> bytes:
        return self.hash_call(b).digest()

    def _hash_prefix(self, k_s: bytes) -> "Message":
        """exchange hash 开头的部分，所有算法都一样

          string   V_C, client's identification string (CR and LF excluded)
          string   V_S, server's identification string (CR and LF excluded)
          string   I_C, payload of the client's SSH_MSG_KEXINIT
          string   I_S, payload of the server's SSH_MSG_KEXINIT
          string   K_S, server's public host key
        """
        m = Message()
        m.add_string(self.exchange.client_version)
        m.add_string(self.exchange.server_version)
        m.add_string(self.exchange.client_kexinit)
        m.add_string(self.exchange.server_kexinit)
        m.add_string(k_s)
        return m

    def _finish(self, k: bytes, exchange_hash: bytes, k_s: bytes, signature: bytes):
        """得到 K 和 H 之后的处理，客户端需要验证签名"""
        server_key = None
        if self.side == SSHSide.client:
            self.step = KexStep.VERIFY_HOST_KEY
            server_key = self._verify_host_key(k_s, exchange_hash, signature)
        self.step = KexStep.DERIVE_KEYS
        # 如果这是第一次密钥交换，那么这个 exchange_hash 也是 session_id(rfc 文档里面提到的 session_identifier)
        session_id = self.session_id or exchange_hash
        if server_key is None and self.host_key is not None:
            server_key = self.host_key.get_public_key()
        self.result = KexResult(
            self.side,
            self.hash_call,
            k,
            exchange_hash,
            session_id,
            server_key,
        )

    def _verify_host_key(
        self, k_s: bytes, exchange_hash: bytes, signature: bytes
    ) -> "hostkey.SSHKeyBase":
        try:
            server_key = hostkey.parse_public_key(k_s, self.host_key_algo)
        except (UnsupportedError, UnexpectedError) as e:
            raise KeyExchangeError(f"invalid server host key: {e}") from None
        if not server_key.verify(exchange_hash, signature):
            logger.error("invalid signature on exchange hash, host key %s", server_key)
            raise KeyExchangeError("invalid signature on exchange hash")
        logger.info("server host key %s %s", server_key.algo, server_key.fingerprint())
        if self.host_key_verifier is not None and not self.host_key_verifier(server_key):
            raise HostKeyNotVerifiableError(
                f"host key {server_key.fingerprint()} not trusted"
            )
        return server_key

    def _sign(self, exchange_hash: bytes) -> bytes:
        return self.host_key.get_sign(exchange_hash)


class SimpleKex(KeyExchangeInterface):
    """一来一回就完成的密钥交换

    客户端发送自己的公钥，服务器回复
      K_S, server's public host key
      服务器的公钥
      the signature on the exchange hash
    """

    init_message_id = SSHMessageID.KEXDH_INIT
    reply_message_id = SSHMessageID.KEXDH_REPLY

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._client_public = None
        self._server_public = None

    @abc.abstractmethod
    def _generate(self):
        """生成自己的临时密钥，返回线路格式的公钥"""
        raise NotImplementedError("_generate")

    @abc.abstractmethod
    def _add_public(self, m: "Message", value):
        raise NotImplementedError("_add_public")

    @abc.abstractmethod
    def _get_public(self, m: "Message"):
        raise NotImplementedError("_get_public")

    @abc.abstractmethod
    def _get_shared_secret(self, peer_public) -> bytes:
        """计算共享密钥，对方的公钥无效时抛出 KeyExchangeError"""
        raise NotImplementedError("_get_shared_secret")

    def expected_message_ids(self) -> t.Tuple[int, ...]:
        if self.step != KexStep.WAIT_PEER_PUBLIC_VALUE:
            return ()
        if self.side == SSHSide.server:
            return (self.init_message_id.value,)
        return (self.reply_message_id.value,)

    def start(self) -> t.List["Message"]:
        own_public = self._generate()
        self.step = KexStep.WAIT_PEER_PUBLIC_VALUE
        if self.side == SSHSide.server:
            self._server_public = own_public
            return []
        self._client_public = own_public
        m = Message()
        m.add_message_id(self.init_message_id)
        self._add_public(m, own_public)
        logger.debug("%s sent", self.init_message_id.name)
        return [m]

    def _exchange_hash(self, k_s: bytes, k: bytes) -> bytes:
        m = self._hash_prefix(k_s)
        self._add_public(m, self._client_public)
        self._add_public(m, self._server_public)
        m.add_raw_bytes(k)
        return self.do_hash(m.as_bytes())

    def _handle(self, mid: int, m: "Message") -> t.List["Message"]:
        if self.side == SSHSide.server:
            return self._handle_init(m)
        return self._handle_reply(m)

    def _handle_init(self, m: "Message") -> t.List["Message"]:
        self._client_public = self._get_public(m)
        logger.debug("%s received", self.init_message_id.name)
        self.step = KexStep.COMPUTE_SHARED_SECRET
        k = Message.bytes_to_mpint(self._get_shared_secret(self._client_public))
        k_s = self.host_key.get_k_s()
        exchange_hash = self._exchange_hash(k_s, k)
        signature = self._sign(exchange_hash)
        self._finish(k, exchange_hash, k_s, signature)

        reply = Message()
        reply.add_message_id(self.reply_message_id)
        reply.add_string(k_s)
        self._add_public(reply, self._server_public)
        reply.add_string(signature)
        logger.debug("%s sent", self.reply_message_id.name)
        return [reply]

    def _handle_reply(self, m: "Message") -> t.List["Message"]:
        k_s = m.get_string()
        self._server_public = self._get_public(m)
        signature = m.get_string()
        logger.debug("%s received", self.reply_message_id.name)
        self.step = KexStep.COMPUTE_SHARED_SECRET
        k = Message.bytes_to_mpint(self._get_shared_secret(self._server_public))
        exchange_hash = self._exchange_hash(k_s, k)
        self._finish(k, exchange_hash, k_s, signature)
        return []


class Curve25519Sha256Kex(SimpleKex):
    """curve25519-sha256 密钥交换算法

    curve25519 密钥交换的一些不同的地方
    https://datatracker.ietf.org/doc/html/rfc8731#section-3

    The exchange hash H is computed as the hash of the concatenation of
    the following.

      string   V_C, client's identification string (CR and LF excluded)
      string   V_S, server's identification string (CR and LF excluded)
      string   I_C, payload of the client's SSH_MSG_KEXINIT
      string   I_S, payload of the server's SSH_MSG_KEXINIT
      string   K_S, server's public host key
      string   Q_C, client's ephemeral public key octet string.
      string   Q_S, server's ephemeral public key octet string
      mpint    K,   shared secret
    """

    init_message_id = SSHMessageID.KEX_ECDH_INIT
    reply_message_id = SSHMessageID.KEX_ECDH_REPLY
    hash_call = hashlib.sha256

    def _generate(self):
        self.private_key = X25519PrivateKey.generate()
        return self.private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )

    def _add_public(self, m: "Message", value):
        m.add_string(value)

    def _get_public(self, m: "Message"):
        return m.get_string()

    def _get_shared_secret(self, peer_public) -> bytes:
        try:
            peer_key = X25519PublicKey.from_public_bytes(peer_public)
            k = self.private_key.exchange(peer_key)
        except ValueError as e:
            raise KeyExchangeError(f"invalid curve25519 public key: {e}") from None
        # https://datatracker.ietf.org/doc/html/rfc8731#section-3
        # 共享密钥全是 0 的时候必须中止
        if k == b"\0" * len(k):
            raise KeyExchangeError("curve25519 shared secret is zero")
        return k


class EcdhSha2Nistp256Kex(SimpleKex):
    """
    椭圆曲线的不同类别名字的对应 https://datatracker.ietf.org/doc/html/rfc4492#appendix-A

    不同类别椭圆曲线使用的 hash 算法
    https://datatracker.ietf.org/doc/html/rfc5656#section-6.2.1

          +----------------+----------------+
          |   Curve Size   | Hash Algorithm |
          +----------------+----------------+
          |    b <= 256    |     SHA-256    |
          |                |                |
          | 256 < b <= 384 |     SHA-384    |
          |                |                |
          |     384 < b    |     SHA-512    |
          +----------------+----------------+

    exchange hash 的结构跟 curve25519 一样
    """

    init_message_id = SSHMessageID.KEX_ECDH_INIT
    reply_message_id = SSHMessageID.KEX_ECDH_REPLY
    hash_call = hashlib.sha256
    curve_cls = ec.SECP256R1

    def _generate(self):
        self.private_key = ec.generate_private_key(self.curve_cls())
        return self.private_key.public_key().public_bytes(
            encoding=serialization.Encoding.X962,
            format=serialization.PublicFormat.UncompressedPoint,
        )

    def _add_public(self, m: "Message", value):
        m.add_string(value)

    def _get_public(self, m: "Message"):
        return m.get_string()

    def _get_shared_secret(self, peer_public) -> bytes:
        try:
            peer_key = ec.EllipticCurvePublicKey.from_encoded_point(
                self.curve_cls(), peer_public
            )
            return self.private_key.exchange(ec.ECDH(), peer_key)
        except ValueError as e:
            raise KeyExchangeError(f"invalid ecdh public key: {e}") from None


class EcdhSha2Nistp384Kex(EcdhSha2Nistp256Kex):
    hash_call = hashlib.sha384
    curve_cls = ec.SECP384R1


class EcdhSha2Nistp521Kex(EcdhSha2Nistp256Kex):
    hash_call = hashlib.sha512
    curve_cls = ec.SECP521R1




# diffie-hellman-groupx-shax 算法使用的参数
# 如 diffie-hellman-group16-sha512 使用 group16 的参数
# https://www.rfc-editor.org/rfc/rfc2409#section-6
# https://www.rfc-editor.org/rfc/rfc3526#section-2
oakley_groups = {
    "group1": {
        "generator": 2,
        "prime": int(
            "FFFFFFFFFFFFFFFFC90FDAA22168C234C4C6628B80DC1CD129024E088A67CC74020BBEA63B139B22514A08798E3404DDEF9519B3CD3A431B302B0A6DF25F14374FE1356D6D51C245E485B576625E7EC6F44C42E9A63A3620FFFFFFFFFFFFFFFF",
            16,
        ),
    },
    "group2": {
        "generator": 2,
        "prime": int(
            "FFFFFFFFFFFFFFFFC90FDAA22168C234C4C6628B80DC1CD129024E088A67CC74020BBEA63B139B22514A08798E3404DDEF9519B3CD3A431B302B0A6DF25F14374FE1356D6D51C245E485B576625E7EC6F44C42E9A637ED6B0BFF5CB6F406B7EDEE386BFB5A899FA5AE9F24117C4B1FE649286651ECE65381FFFFFFFFFFFFFFFF",
            16,
        ),
    },
    "group5": {
        "generator": 2,
        "prime": int(
            "FFFFFFFFFFFFFFFFC90FDAA22168C234C4C6628B80DC1CD129024E088A67CC74020BBEA63B139B22514A08798E3404DDEF9519B3CD3A431B302B0A6DF25F14374FE1356D6D51C245E485B576625E7EC6F44C42E9A637ED6B0BFF5CB6F406B7EDEE386BFB5A899FA5AE9F24117C4B1FE649286651ECE45B3DC2007CB8A163BF0598DA48361C55D39A69163FA8FD24CF5F83655D23DCA3AD961C62F356208552BB9ED529077096966D670C354E4ABC9804F1746C08CA237327FFFFFFFFFFFFFFFF",
            16,
        ),
    },
    "group14": {
        "generator": 2,
        "prime": int(
            "FFFFFFFFFFFFFFFFC90FDAA22168C234C4C6628B80DC1CD129024E088A67CC74020BBEA63B139B22514A08798E3404DDEF9519B3CD3A431B302B0A6DF25F14374FE1356D6D51C245E485B576625E7EC6F44C42E9A637ED6B0BFF5CB6F406B7EDEE386BFB5A899FA5AE9F24117C4B1FE649286651ECE45B3DC2007CB8A163BF0598DA48361C55D39A69163FA8FD24CF5F83655D23DCA3AD961C62F356208552BB9ED529077096966D670C354E4ABC9804F1746C08CA18217C32905E462E36CE3BE39E772C180E86039B2783A2EC07A28FB5C55DF06F4C52C9DE2BCBF6955817183995497CEA956AE515D2261898FA051015728E5A8AACAA68FFFFFFFFFFFFFFFF",
            16,
        ),
    },
    "group15": {
        "generator": 2,
        "prime": int(
            "FFFFFFFFFFFFFFFFC90FDAA22168C234C4C6628B80DC1CD129024E088A67CC74020BBEA63B139B22514A08798E3404DDEF9519B3CD3A431B302B0A6DF25F14374FE1356D6D51C245E485B576625E7EC6F44C42E9A637ED6B0BFF5CB6F406B7EDEE386BFB5A899FA5AE9F24117C4B1FE649286651ECE45B3DC2007CB8A163BF0598DA48361C55D39A69163FA8FD24CF5F83655D23DCA3AD961C62F356208552BB9ED529077096966D670C354E4ABC9804F1746C08CA18217C32905E462E36CE3BE39E772C180E86039B2783A2EC07A28FB5C55DF06F4C52C9DE2BCBF6955817183995497CEA956AE515D2261898FA051015728E5A8AAAC42DAD33170D04507A33A85521ABDF1CBA64ECFB850458DBEF0A8AEA71575D060C7DB3970F85A6E1E4C7ABF5AE8CDB0933D71E8C94E04A25619DCEE3D2261AD2EE6BF12FFA06D98A0864D87602733EC86A64521F2B18177B200CBBE117577A615D6C770988C0BAD946E208E24FA074E5AB3143DB5BFCE0FD108E4B82D120A93AD2CAFFFFFFFFFFFFFFFF",
            16,
        ),
    },
    "group16": {
        "generator": 2,
        "prime": int(
            "FFFFFFFFFFFFFFFFC90FDAA22168C234C4C6628B80DC1CD129024E088A67CC74020BBEA63B139B22514A08798E3404DDEF9519B3CD3A431B302B0A6DF25F14374FE1356D6D51C245E485B576625E7EC6F44C42E9A637ED6B0BFF5CB6F406B7EDEE386BFB5A899FA5AE9F24117C4B1FE649286651ECE45B3DC2007CB8A163BF0598DA48361C55D39A69163FA8FD24CF5F83655D23DCA3AD961C62F356208552BB9ED529077096966D670C354E4ABC9804F1746C08CA18217C32905E462E36CE3BE39E772C180E86039B2783A2EC07A28FB5C55DF06F4C52C9DE2BCBF6955817183995497CEA956AE515D2261898FA051015728E5A8AAAC42DAD33170D04507A33A85521ABDF1CBA64ECFB850458DBEF0A8AEA71575D060C7DB3970F85A6E1E4C7ABF5AE8CDB0933D71E8C94E04A25619DCEE3D2261AD2EE6BF12FFA06D98A0864D87602733EC86A64521F2B18177B200CBBE117577A615D6C770988C0BAD946E208E24FA074E5AB3143DB5BFCE0FD108E4B82D120A92108011A723C12A787E6D788719A10BDBA5B2699C327186AF4E23C1A946834B6150BDA2583E9CA2AD44CE8DBBBC2DB04DE8EF92E8EFC141FBECAA6287C59474E6BC05D99B2964FA090C3A2233BA186515BE7ED1F612970CEE2D7AFB81BDD762170481CD0069127D5B05AA993B4EA988D8FDDC186FFB7DC90A6C08F4DF435C934063199FFFFFFFFFFFFFFFF",
            16,
        ),
    },
    "group17": {
        "generator": 2,
        "prime": int(
            "FFFFFFFFFFFFFFFFC90FDAA22168C234C4C6628B80DC1CD129024E088A67CC74020BBEA63B139B22514A08798E3404DDEF9519B3CD3A431B302B0A6DF25F14374FE1356D6D51C245E485B576625E7EC6F44C42E9A637ED6B0BFF5CB6F406B7EDEE386BFB5A899FA5AE9F24117C4B1FE649286651ECE45B3DC2007CB8A163BF0598DA48361C55D39A69163FA8FD24CF5F83655D23DCA3AD961C62F356208552BB9ED529077096966D670C354E4ABC9804F1746C08CA18217C32905E462E36CE3BE39E772C180E86039B2783A2EC07A28FB5C55DF06F4C52C9DE2BCBF6955817183995497CEA956AE515D2261898FA051015728E5A8AAAC42DAD33170D04507A33A85521ABDF1CBA64ECFB850458DBEF0A8AEA71575D060C7DB3970F85A6E1E4C7ABF5AE8CDB0933D71E8C94E04A25619DCEE3D2261AD2EE6BF12FFA06D98A0864D87602733EC86A64521F2B18177B200CBBE117577A615D6C770988C0BAD946E208E24FA074E5AB3143DB5BFCE0FD108E4B82D120A92108011A723C12A787E6D788719A10BDBA5B2699C327186AF4E23C1A946834B6150BDA2583E9CA2AD44CE8DBBBC2DB04DE8EF92E8EFC141FBECAA6287C59474E6BC05D99B2964FA090C3A2233BA186515BE7ED1F612970CEE2D7AFB81BDD762170481CD0069127D5B05AA993B4EA988D8FDDC186FFB7DC90A6C08F4DF435C93402849236C3FAB4D27C7026C1D4DCB2602646DEC9751E763DBA37BDF8FF9406AD9E530EE5DB382F413001AEB06A53ED9027D831179727B0865A8918DA3EDBEBCF9B14ED44CE6CBACED4BB1BDB7F1447E6CC254B332051512BD7AF426FB8F401378CD2BF5983CA01C64B92ECF032EA15D1721D03F482D7CE6E74FEF6D55E702F46980C82B5A84031900B1C9E59E7C97FBEC7E8F323A97A7E36CC88BE0F1D45B7FF585AC54BD407B22B4154AACC8F6D7EBF48E1D814CC5ED20F8037E0A79715EEF29BE32806A1D58BB7C5DA76F550AA3D8A1FBFF0EB19CCB1A313D55CDA56C9EC2EF29632387FE8D76E3C0468043E8F663F4860EE12BF2D5B0B7474D6E694F91E6DCC4024FFFFFFFFFFFFFFFF",
            16,
        ),
    },
    "group18": {
        "generator": 2,
        "prime": int(
            "FFFFFFFFFFFFFFFFC90FDAA22168C234C4C6628B80DC1CD129024E088A67CC74020BBEA63B139B22514A08798E3404DDEF9519B3CD3A431B302B0A6DF25F14374FE1356D6D51C245E485B576625E7EC6F44C42E9A637ED6B0BFF5CB6F406B7EDEE386BFB5A899FA5AE9F24117C4B1FE649286651ECE45B3DC2007CB8A163BF0598DA48361C55D39A69163FA8FD24CF5F83655D23DCA3AD961C62F356208552BB9ED529077096966D670C354E4ABC9804F1746C08CA18217C32905E462E36CE3BE39E772C180E86039B2783A2EC07A28FB5C55DF06F4C52C9DE2BCBF6955817183995497CEA956AE515D2261898FA051015728E5A8AAAC42DAD33170D04507A33A85521ABDF1CBA64ECFB850458DBEF0A8AEA71575D060C7DB3970F85A6E1E4C7ABF5AE8CDB0933D71E8C94E04A25619DCEE3D2261AD2EE6BF12FFA06D98A0864D87602733EC86A64521F2B18177B200CBBE117577A615D6C770988C0BAD946E208E24FA074E5AB3143DB5BFCE0FD108E4B82D120A92108011A723C12A787E6D788719A10BDBA5B2699C327186AF4E23C1A946834B6150BDA2583E9CA2AD44CE8DBBBC2DB04DE8EF92E8EFC141FBECAA6287C59474E6BC05D99B2964FA090C3A2233BA186515BE7ED1F612970CEE2D7AFB81BDD762170481CD0069127D5B05AA993B4EA988D8FDDC186FFB7DC90A6C08F4DF435C93402849236C3FAB4D27C7026C1D4DCB2602646DEC9751E763DBA37BDF8FF9406AD9E530EE5DB382F413001AEB06A53ED9027D831179727B0865A8918DA3EDBEBCF9B14ED44CE6CBACED4BB1BDB7F1447E6CC254B332051512BD7AF426FB8F401378CD2BF5983CA01C64B92ECF032EA15D1721D03F482D7CE6E74FEF6D55E702F46980C82B5A84031900B1C9E59E7C97FBEC7E8F323A97A7E36CC88BE0F1D45B7FF585AC54BD407B22B4154AACC8F6D7EBF48E1D814CC5ED20F8037E0A79715EEF29BE32806A1D58BB7C5DA76F550AA3D8A1FBFF0EB19CCB1A313D55CDA56C9EC2EF29632387FE8D76E3C0468043E8F663F4860EE12BF2D5B0B7474D6E694F91E6DBE115974A3926F12FEE5E438777CB6A932DF8CD8BEC4D073B931BA3BC832B68D9DD300741FA7BF8AFC47ED2576F6936BA424663AAB639C5AE4F5683423B4742BF1C978238F16CBE39D652DE3FDB8BEFC848AD922222E04A4037C0713EB57A81A23F0C73473FC646CEA306B4BCBC8862F8385DDFA9D4B7FA2C087E879683303ED5BDD3A062B3CF5B3A278A66D2A13F83F44F82DDF310EE074AB6A364597E899A0255DC164F31CC50846851DF9AB48195DED7EA1B1D510BD7EE74D73FAF36BC31ECFA268359046F4EB879F924009438B481C6CD7889A002ED5EE382BC9190DA6FC026E479558E4475677E9AA9E3050E2765694DFC81F56E880B96E7160C980DD98EDD3DFFFFFFFFFFFFFFFFF",
            16,
        ),
    },
}


def _check_dh_public(value: int, p: int):
    # https://datatracker.ietf.org/doc/html/rfc4253#section-8
    # Values of 'e' or 'f' that are not in the range [1, p-1] MUST NOT be sent or accepted
    if not (1 < value < p - 1):
        raise KeyExchangeError("dh public value out of range")


class DiffieHellmanGroup16Sha512Kex(SimpleKex):
    """diffie-hellman-group16-sha512

    ref: https://www.rfc-editor.org/rfc/rfc4253#section-8

    The exchange hash H is computed as the hash of the concatenation of
    the following.

      string    V_C, the client's identification string (CR and LF
                excluded)
      string    V_S, the server's identification string (CR and LF
                excluded)
      string    I_C, the payload of the client's SSH_MSG_KEXINIT
      string    I_S, the payload of the server's SSH_MSG_KEXINIT
      string    K_S, the host key
      mpint     e, exchange value sent by the client
      mpint     f, exchange value sent by the server
      mpint     K, the shared secret
    """

    init_message_id = SSHMessageID.KEXDH_INIT
    reply_message_id = SSHMessageID.KEXDH_REPLY
    hash_call = hashlib.sha512
    group = "group16"

    def _parameter_numbers(self) -> "dh.DHParameterNumbers":
        group = oakley_groups[self.group]
        return dh.DHParameterNumbers(group["prime"], group["generator"])

    def _generate(self):
        self._pn = self._parameter_numbers()
        self.private_key = self._pn.parameters().generate_private_key()
        return self.private_key.public_key().public_numbers().y

    def _add_public(self, m: "Message", value):
        m.add_mpint(value)

    def _get_public(self, m: "Message"):
        return m.get_mpint()

    def _get_shared_secret(self, peer_public) -> bytes:
        _check_dh_public(peer_public, self._pn.p)
        try:
            peer_key = dh.DHPublicNumbers(peer_public, self._pn).public_key()
            return self.private_key.exchange(peer_key)
        except ValueError as e:
            raise KeyExchangeError(f"invalid dh public key: {e}") from None


class DiffieHellmanGroup18Sha512Kex(DiffieHellmanGroup16Sha512Kex):
    hash_call = hashlib.sha512
    group = "group18"


class DiffieHellmanGroup14Sha256Kex(DiffieHellmanGroup16Sha512Kex):
    hash_call = hashlib.sha256
    group = "group14"


class DiffieHellmanGroup14Sha1Kex(DiffieHellmanGroup16Sha512Kex):
    hash_call = hashlib.sha1
    group = "group14"


class DiffieHellmanGroup1Sha1Kex(DiffieHellmanGroup16Sha512Kex):
    hash_call = hashlib.sha1
    group = "group1"


def get_dh_prime(
    moduli_path: t.Optional[pathlib.Path],
    generator: int,
    min_bits_of_prime: int,
    prefer_bits_of_prime: int,
    max_bits_of_prime: int,
) -> int:
    """获取 DH 算法可用的素数。
    临时生成太慢了，采用跟 openssh 一样的方式，从预先生成的素数中随机返回一个满足要求的。
    如果要自己生成，可参考下面的命令（生成 2048bits 素数）

    ssh-keygen -M generate -O bits=2048 moduli-2048.candidates
    ssh-keygen -M screen -f moduli-2048.candidates moduli-2048

    参考：https://manpages.ubuntu.com/manpages/focal/man1/ssh-keygen.1.html#moduli%20generation

    没有 moduli 文件或者文件里面没有满足要求的素数时，使用比特数最接近的 oakley group

    Args:
        moduli_path: moduli 文件路径， openssh 用的这个文件一般是 /etc/ssh/moduli
        generator: 算法中的底数 g ，一般是 2 或 5
        min_bits_of_prime: 素数 p 的最小比特数
        prefer_bits_of_prime: 素数 p 的比特数，优先采用
        max_bits_of_prime: 素数 p 的最大比特数

    Returns:
        可用的素数
    """
    MODULI_TESTS_COMPOSITE = 0x1
    # 满足 prefer_bits_of_prime 条件的素数
    prefer_primes = []
    # 满足 min_bits_of_prime 和 max_bits_of_prime 条件的素数
    match_primes = []
    if moduli_path is not None and moduli_path.exists():
        with open(moduli_path, "r", encoding="utf-8") as f:
            lines = list(f)
        for line in lines:
            line = line.strip()
            if not line or line.startswith("#"):
                # 跳过注释
                continue
            # 每行是一个素数，一行的元素按空格划分
            # 从左到右分别是
            #   时间 类型 测试类型 测试次数 比特数 十六进制generator 十六进制素数
            # https://man7.org/linux/man-pages/man5/moduli.5.html
            parts = line.split()
            if len(parts) != 7 or parts[1] != "2":
                continue
            test_flag = int(parts[2])
            if test_flag & MODULI_TESTS_COMPOSITE or test_flag == 0:
                continue
            trials = int(parts[3])
            if trials == 0:
                continue
            # 这个比特数从 0 开始，比如 2048 比特，这个值是 2047
            bits = int(parts[4]) + 1
            g = int(parts[5], 16)
            if g != generator:
                continue
            p = int(parts[6], 16)
            if bits == prefer_bits_of_prime:
                prefer_primes.append(p)
            elif min_bits_of_prime <= bits <= max_bits_of_prime:
                match_primes.append(p)
    if prefer_primes:
        return secrets.choice(prefer_primes)
    if match_primes:
        return secrets.choice(match_primes)

    candidates = []
    for group in oakley_groups.values():
        bits = group["prime"].bit_length()
        if group["generator"] == generator and min_bits_of_prime <= bits <= max_bits_of_prime:
            candidates.append((abs(bits - prefer_bits_of_prime), group["prime"]))
    if candidates:
        return min(candidates)[1]
    raise KeyExchangeError("no prime numbers found that meet the requirements")


class DiffieHellmanGroupExchangeSha256Kex(KeyExchangeInterface):
    """diffie-hellman-group-exchange-sha256

    rfc: https://www.rfc-editor.org/rfc/rfc4419

    The exchange hash H is computed as the hash of the concatenation of
    the following.

         string  V_C, the client's version string (CR and NL excluded)
         string  V_S, the server's version string (CR and NL excluded)
         string  I_C, the payload of the client's SSH_MSG_KEXINIT
         string  I_S, the payload of the server's SSH_MSG_KEXINIT
         string  K_S, the host key
         uint32  min, minimal size in bits of an acceptable group
         uint32  n, preferred size in bits of the group the server will send
         uint32  max, maximal size in bits of an acceptable group
         mpint   p, safe prime
         mpint   g, generator for subgroup
         mpint   e, exchange value sent by the client
         mpint   f, exchange value sent by the server
         mpint   K, the shared secret
    """

    hash_call = hashlib.sha256
    # https://www.rfc-editor.org/rfc/rfc4419#section-6.1
    # generator 推荐使用 2
    generator = 2

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        # 保存计算 exchange hash 需要的信息
        self._min_psize = 0
        self._prefer_psize = 0
        self._max_psize = 0
        self._p = 0
        self._g = 0
        self._e = 0
        self._f = 0
        self._pn: t.Optional[dh.DHParameterNumbers] = None
        self.private_key = None
        # 客户端收到 group 之后才能发送 e
        self._wait_group = False

    def expected_message_ids(self) -> t.Tuple[int, ...]:
        if self.side == SSHSide.server:
            if self.step == KexStep.INIT:
                return (SSHMessageID.KEX_DH_GEX_REQUEST.value,)
            if self.step == KexStep.WAIT_PEER_PUBLIC_VALUE:
                return (SSHMessageID.KEX_DH_GEX_INIT.value,)
            return ()
        if self.step == KexStep.WAIT_PEER_PUBLIC_VALUE:
            if self._wait_group:
                return (SSHMessageID.KEX_DH_GEX_GROUP.value,)
            return (SSHMessageID.KEX_DH_GEX_REPLY.value,)
        return ()

    def start(self) -> t.List["Message"]:
        if self.side == SSHSide.server:
            # 等待客户端的 SSH_MSG_KEX_DH_GEX_REQUEST
            return []
        self._min_psize, self._prefer_psize, self._max_psize = self.gex_bits
        m = Message()
        m.add_message_id(SSHMessageID.KEX_DH_GEX_REQUEST)
        m.add_uint32(self._min_psize)
        m.add_uint32(self._prefer_psize)
        m.add_uint32(self._max_psize)
        self.step = KexStep.WAIT_PEER_PUBLIC_VALUE
        self._wait_group = True
        logger.debug(
            "SSH_MSG_KEX_DH_GEX_REQUEST(%s<%s<%s) sent",
            self._min_psize,
            self._prefer_psize,
            self._max_psize,
        )
        return [m]

    def _handle(self, mid: int, m: "Message") -> t.List["Message"]:
        if mid == SSHMessageID.KEX_DH_GEX_REQUEST.value:
            return self._handle_request(m)
        if mid == SSHMessageID.KEX_DH_GEX_GROUP.value:
            return self._handle_group(m)
        if mid == SSHMessageID.KEX_DH_GEX_INIT.value:
            return self._handle_init(m)
        return self._handle_reply(m)

    def _generate(self, p: int, g: int):
        self._p = p
        self._g = g
        self._pn = dh.DHParameterNumbers(p, g)
        self.private_key = self._pn.parameters().generate_private_key()
        return self.private_key.public_key().public_numbers().y

    def _get_shared_secret(self, peer_public: int) -> bytes:
        _check_dh_public(peer_public, self._p)
        try:
            peer_key = dh.DHPublicNumbers(peer_public, self._pn).public_key()
            return self.private_key.exchange(peer_key)
        except ValueError as e:
            raise KeyExchangeError(f"invalid dh public key: {e}") from None

    def _handle_request(self, m: "Message") -> t.List["Message"]:
        # 客户端会先传输自己希望素数 p 有多少个 bit
        min_psize = m.get_uint32()
        prefer_psize = m.get_uint32()
        max_psize = m.get_uint32()
        logger.debug(
            "SSH_MSG_KEX_DH_GEX_REQUEST(%s<%s<%s) received",
            min_psize,
            prefer_psize,
            max_psize,
        )
        if not (min_psize <= prefer_psize <= max_psize):
            raise KeyExchangeError("invalid size in bits of an acceptable group")
        self._min_psize = min_psize
        self._prefer_psize = prefer_psize
        self._max_psize = max_psize
        server_prime = get_dh_prime(
            self.moduli_path, self.generator, min_psize, prefer_psize, max_psize
        )
        self._f = self._generate(server_prime, self.generator)
        self.step = KexStep.WAIT_PEER_PUBLIC_VALUE

        group_msg = Message()
        group_msg.add_message_id(SSHMessageID.KEX_DH_GEX_GROUP)
        group_msg.add_mpint(server_prime)
        group_msg.add_mpint(self.generator)
        logger.debug("SSH_MSG_KEX_DH_GEX_GROUP sent")
        return [group_msg]

    def _handle_group(self, m: "Message") -> t.List["Message"]:
        p = m.get_mpint()
        g = m.get_mpint()
        logger.debug("SSH_MSG_KEX_DH_GEX_GROUP(%s bits) received", p.bit_length())
        if not (self._min_psize <= p.bit_length() <= self._max_psize):
            raise KeyExchangeError(f"server sent a {p.bit_length()} bits group")
        if not (1 < g < p - 1):
            raise KeyExchangeError("invalid group generator")
        try:
            self._e = self._generate(p, g)
        except ValueError as e:
            raise KeyExchangeError(f"invalid group: {e}") from None
        self._wait_group = False
        init = Message()
        init.add_message_id(SSHMessageID.KEX_DH_GEX_INIT)
        init.add_mpint(self._e)
        logger.debug("SSH_MSG_KEX_DH_GEX_INIT sent")
        return [init]

    def _exchange_hash(self, k_s: bytes, k: bytes) -> bytes:
        m = self._hash_prefix(k_s)
        m.add_uint32(self._min_psize)
        m.add_uint32(self._prefer_psize)
        m.add_uint32(self._max_psize)
        m.add_mpint(self._p)
        m.add_mpint(self._g)
        m.add_mpint(self._e)
        m.add_mpint(self._f)
        m.add_raw_bytes(k)
        return self.do_hash(m.as_bytes())

    def _handle_init(self, m: "Message") -> t.List["Message"]:
        self._e = m.get_mpint()
        logger.debug("SSH_MSG_KEX_DH_GEX_INIT received")
        self.step = KexStep.COMPUTE_SHARED_SECRET
        k = Message.bytes_to_mpint(self._get_shared_secret(self._e))
        k_s = self.host_key.get_k_s()
        exchange_hash = self._exchange_hash(k_s, k)
        signature = self._sign(exchange_hash)
        self._finish(k, exchange_hash, k_s, signature)

        # 服务器响应
        #      byte    SSH_MSG_KEX_DH_GEX_REPLY
        #      string  server public host key and certificates (K_S)
        #      mpint   f
        #      string  signature of H
        reply = Message()
        reply.add_message_id(SSHMessageID.KEX_DH_GEX_REPLY)
        reply.add_string(k_s)
        reply.add_mpint(self._f)
        reply.add_string(signature)
        logger.debug("SSH_MSG_KEX_DH_GEX_REPLY sent")
        return [reply]

    def _handle_reply(self, m: "Message") -> t.List["Message"]:
        k_s = m.get_string()
        self._f = m.get_mpint()
        signature = m.get_string()
        logger.debug("SSH_MSG_KEX_DH_GEX_REPLY received")
        self.step = KexStep.COMPUTE_SHARED_SECRET
        k = Message.bytes_to_mpint(self._get_shared_secret(self._f))
        exchange_hash = self._exchange_hash(k_s, k)
        self._finish(k, exchange_hash, k_s, signature)
        return []


class DiffieHellmanGroupExchangeSha1Kex(DiffieHellmanGroupExchangeSha256Kex):
    hash_call = hashlib.sha1


kex_mapping: t.Dict[str, t.Type["KeyExchangeInterface"]] = {
    "curve25519-sha256": Curve25519Sha256Kex,
    "curve25519-sha256@libssh.org": Curve25519Sha256Kex,
    "ecdh-sha2-nistp256": EcdhSha2Nistp256Kex,
    "ecdh-sha2-nistp384": EcdhSha2Nistp384Kex,
    "ecdh-sha2-nistp521": EcdhSha2Nistp521Kex,
    "diffie-hellman-group-exchange-sha256": DiffieHellmanGroupExchangeSha256Kex,
    "diffie-hellman-group-exchange-sha1": DiffieHellmanGroupExchangeSha1Kex,
    "diffie-hellman-group16-sha512": DiffieHellmanGroup16Sha512Kex,
    "diffie-hellman-group18-sha512": DiffieHellmanGroup18Sha512Kex,
    "diffie-hellman-group14-sha256": DiffieHellmanGroup14Sha256Kex,
    "diffie-hellman-group14-sha1": DiffieHellmanGroup14Sha1Kex,
    "diffie-hellman-group1-sha1": DiffieHellmanGroup1Sha1Kex,
}


def get_kex_impl(algo_name: str) -> t.Type["KeyExchangeInterface"]:
    """根据算法名字获取对应的实现。"""
    try:
        return kex_mapping[algo_name]
    except KeyError:
        raise UnsupportedError(f"unsupported kex algorithm {algo_name}") from None

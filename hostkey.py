"""
SSH 公私钥支持

包括 host key 签名、客户端公钥认证的签名验证、公钥指纹。
密钥本身的解析和签名运算都交给 cryptography 完成。

公钥格式 https://www.rfc-editor.org/rfc/rfc4253#section-6.6
"""
import abc
import base64
import hashlib
import pathlib
import typing as t

import cryptography.exceptions
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa
from cryptography.hazmat.primitives.asymmetric.padding import PKCS1v15
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)

from error import UnexpectedError, UnsupportedError
from message import Message


class SSHKeyBase(abc.ABC):
    """代表一个 SSH 密钥，可以只有公钥部分

    algo 是签名算法名字， key_type 是公钥数据里面的类型名字，
    大多数算法两者一样，rsa-sha2-256 和 rsa-sha2-512 的 key_type 还是 ssh-rsa
    """

    algo = ""
    key_type = ""

    def __init__(self, public_key, private_key=None):
        self.public_key = public_key
        self.private_key = private_key

    @property
    def has_private(self) -> bool:
        return self.private_key is not None

    @abc.abstractmethod
    def get_k_s(self) -> bytes:
        """返回公钥数据，也是密钥交换部分的 K_S"""
        raise NotImplementedError("get_k_s")

    @abc.abstractmethod
    def _sign(self, data: bytes) -> bytes:
        raise NotImplementedError("_sign")

    @abc.abstractmethod
    def _verify(self, signature_blob: bytes, data: bytes) -> None:
        """签名无效时抛出 cryptography.exceptions.InvalidSignature"""
        raise NotImplementedError("_verify")

    def get_sign(self, data: bytes) -> bytes:
        """对数据进行签名，结构如下
        string    signature format identifier
        string    signature blob
        """
        if not self.has_private:
            raise UnsupportedError(f"{self.algo} key has no private part")
        m = Message()
        m.add_string(self.algo.encode())
        m.add_string(self._sign(data))
        return m.as_bytes()

    def verify(self, data: bytes, signature: bytes) -> bool:
        """验证 get_sign 格式的签名"""
        try:
            m = Message(signature)
            algo = m.get_string().decode()
            signature_blob = m.get_string()
        except (UnexpectedError, UnicodeDecodeError):
            return False
        if algo != self.algo:
            return False
        try:
            self._verify(signature_blob, data)
        except (cryptography.exceptions.InvalidSignature, UnexpectedError, ValueError):
            return False
        return True

    def fingerprint(self) -> str:
        """按 openssh 方式计算公钥的 fingerprint ，格式 SHA256:<base64 去掉末尾的 => """
        digest = hashlib.sha256(self.get_k_s()).digest()
        return "SHA256:" + base64.b64encode(digest).decode().rstrip("=")

    def get_public_key(self) -> "SSHKeyBase":
        """只包含公钥部分的密钥"""
        return type(self)(self.public_key)

    def host_key_algorithms(self) -> t.Tuple[str, ...]:
        """这个密钥可以使用的签名算法"""
        return (self.algo,)

    def with_algo(self, algo: str) -> "SSHKeyBase":
        """使用另一个签名算法的同一密钥"""
        if algo != self.algo:
            raise UnsupportedError(f"{self.algo} key can not sign with {algo}")
        return self

    def openssh_public_key(self) -> bytes:
        """authorized_keys 那种一行的格式"""
        return self.key_type.encode() + b" " + base64.b64encode(self.get_k_s())

    def private_bytes(self) -> bytes:
        """openssh 格式的私钥文件内容"""
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.OpenSSH,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def __eq__(self, other):
        if not isinstance(other, SSHKeyBase):
            return NotImplemented
        return self.key_type == other.key_type and self.get_k_s() == other.get_k_s()

    def __hash__(self):
        return hash((self.key_type, self.get_k_s()))

    def __repr__(self):
        return f"<{type(self).__name__} {self.algo} {self.fingerprint()}>"


class EcdsaSha2Nistp256Key(SSHKeyBase):
    """ecdsa-sha2-nistp256 算法
    https://datatracker.ietf.org/doc/html/rfc5656
    """

    algo = "ecdsa-sha2-nistp256"
    key_type = "ecdsa-sha2-nistp256"
    category = "nistp256"
    curve_cls = ec.SECP256R1
    hashes_cls = hashes.SHA256

    def get_k_s(self) -> bytes:
        # 下面这些结构格式都是抓包来的，长度都是大端序的 4 个字节
        # Host key type length: 19
        # Host key type: ecdsa-sha2-nistp256
        # ECDSA elliptic curve identifier length: 8
        # ECDSA elliptic curve identifier: nistp256
        # ECDSA public key length: 65
        # ECDSA public key (Q)
        # 找到了描述这个结构的文档 https://datatracker.ietf.org/doc/html/rfc5656#section-3.1
        raw_key = self.public_key.public_bytes(
            encoding=serialization.Encoding.X962,
            format=serialization.PublicFormat.UncompressedPoint,
        )
        m = Message()
        m.add_string(self.key_type.encode())
        m.add_string(self.category.encode())
        m.add_string(raw_key)
        return m.as_bytes()

    def _sign(self, data: bytes) -> bytes:
        sig = self.private_key.sign(
            data,
            ec.ECDSA(self.hashes_cls()),
        )
        # 签名数据结构
        # https://datatracker.ietf.org/doc/html/rfc5656#section-3.1.2
        r, s = decode_dss_signature(sig)
        rs_m = Message()
        rs_m.add_mpint(r)
        rs_m.add_mpint(s)
        return rs_m.as_bytes()

    def _verify(self, signature_blob: bytes, data: bytes) -> None:
        rs_m = Message(signature_blob)
        r = rs_m.get_mpint()
        s = rs_m.get_mpint()
        self.public_key.verify(
            encode_dss_signature(r, s),
            data,
            ec.ECDSA(self.hashes_cls()),
        )

    @classmethod
    def from_k_s(cls, m: "Message") -> "EcdsaSha2Nistp256Key":
        category = m.get_string().decode()
        if category != cls.category:
            raise UnexpectedError(f"unexpected curve {category}")
        point = m.get_string()
        public_key = ec.EllipticCurvePublicKey.from_encoded_point(
            cls.curve_cls(), point
        )
        return cls(public_key)


class EcdsaSha2Nistp384Key(EcdsaSha2Nistp256Key):
    algo = "ecdsa-sha2-nistp384"
    key_type = "ecdsa-sha2-nistp384"
    category = "nistp384"
    curve_cls = ec.SECP384R1
    hashes_cls = hashes.SHA384


class EcdsaSha2Nistp521Key(EcdsaSha2Nistp256Key):
    algo = "ecdsa-sha2-nistp521"
    key_type = "ecdsa-sha2-nistp521"
    category = "nistp521"
    curve_cls = ec.SECP521R1
    hashes_cls = hashes.SHA512


class SSHEd25519Key(SSHKeyBase):
    """ssh-ed25519 算法
    https://www.rfc-editor.org/rfc/rfc8709
    """

    algo = "ssh-ed25519"
    key_type = "ssh-ed25519"

    def get_k_s(self) -> bytes:
        # https://www.rfc-editor.org/rfc/rfc8709#section-4
        # 结构如下
        #   string "ssh-ed25519"
        #   string key
        raw_key = self.public_key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        m = Message()
        m.add_string(self.key_type.encode())
        m.add_string(raw_key)
        return m.as_bytes()

    def _sign(self, data: bytes) -> bytes:
        # https://www.rfc-editor.org/rfc/rfc8709#section-6
        return self.private_key.sign(data)

    def _verify(self, signature_blob: bytes, data: bytes) -> None:
        self.public_key.verify(signature_blob, data)

    @classmethod
    def from_k_s(cls, m: "Message") -> "SSHEd25519Key":
        raw_key = m.get_string()
        return cls(ed25519.Ed25519PublicKey.from_public_bytes(raw_key))


class SSHRsaKey(SSHKeyBase):
    """ssh-rsa
    https://www.rfc-editor.org/rfc/rfc4253#section-6.6
    """

    algo = "ssh-rsa"
    key_type = "ssh-rsa"
    hashes_cls = hashes.SHA1

    def get_k_s(self) -> bytes:
        # https://www.rfc-editor.org/rfc/rfc4253#section-6.6
        # 结构如下
        #   string    "ssh-rsa"
        #   mpint     e
        #   mpint     n
        # rsa-sha2-256 rsa-sha2-512 的公钥结构也是这个，名字仍然是 ssh-rsa
        # https://www.rfc-editor.org/rfc/rfc8332#section-3
        pn = self.public_key.public_numbers()
        m = Message()
        m.add_string(self.key_type.encode())
        m.add_mpint(pn.e)
        m.add_mpint(pn.n)
        return m.as_bytes()

    def _sign(self, data: bytes) -> bytes:
        return self.private_key.sign(
            data,
            PKCS1v15(),
            self.hashes_cls(),
        )

    def _verify(self, signature_blob: bytes, data: bytes) -> None:
        self.public_key.verify(
            signature_blob,
            data,
            PKCS1v15(),
            self.hashes_cls(),
        )

    def host_key_algorithms(self) -> t.Tuple[str, ...]:
        return "rsa-sha2-512", "rsa-sha2-256", "ssh-rsa"

    def with_algo(self, algo: str) -> "SSHKeyBase":
        mapping = {
            "ssh-rsa": SSHRsaKey,
            "rsa-sha2-256": SSHRsaSha256Key,
            "rsa-sha2-512": SSHRsaSha512Key,
        }
        key_cls = mapping.get(algo)
        if key_cls is None:
            raise UnsupportedError(f"rsa key can not sign with {algo}")
        return key_cls(self.public_key, self.private_key)

    @classmethod
    def from_k_s(cls, m: "Message") -> "SSHRsaKey":
        e = m.get_mpint()
        n = m.get_mpint()
        if e <= 0 or n <= 0:
            raise UnexpectedError("invalid rsa public key")
        return cls(rsa.RSAPublicNumbers(e, n).public_key())


class SSHRsaSha256Key(SSHRsaKey):
    """rsa-sha2-256
    https://www.rfc-editor.org/rfc/rfc8332
    """

    algo = "rsa-sha2-256"
    hashes_cls = hashes.SHA256


class SSHRsaSha512Key(SSHRsaKey):
    """rsa-sha2-512
    https://www.rfc-editor.org/rfc/rfc8332
    """

    algo = "rsa-sha2-512"
    hashes_cls = hashes.SHA512


# 公钥数据里面的类型名 -> 实现
key_type_mapping: t.Dict[str, t.Type[SSHKeyBase]] = {
    "ssh-ed25519": SSHEd25519Key,
    "ecdsa-sha2-nistp256": EcdsaSha2Nistp256Key,
    "ecdsa-sha2-nistp384": EcdsaSha2Nistp384Key,
    "ecdsa-sha2-nistp521": EcdsaSha2Nistp521Key,
    "ssh-rsa": SSHRsaKey,
}

# 支持的签名算法
supported_key_algorithms = (
    "ssh-ed25519",
    "ecdsa-sha2-nistp256",
    "ecdsa-sha2-nistp384",
    "ecdsa-sha2-nistp521",
    "rsa-sha2-512",
    "rsa-sha2-256",
    "ssh-rsa",
)


def parse_public_key(k_s: bytes, algo: t.Optional[str] = None) -> "SSHKeyBase":
    """解析公钥数据（K_S 或者公钥认证请求里面的公钥）

    Args:
        k_s: 公钥数据
        algo: 签名算法，不传就用公钥类型对应的默认算法

    Returns: 只有公钥部分的密钥
    """
    m = Message(k_s)
    key_type = m.get_string().decode(errors="replace")
    key_cls = key_type_mapping.get(key_type)
    if key_cls is None:
        raise UnsupportedError(f"unsupported public key type {key_type}")
    try:
        key = key_cls.from_k_s(m)
    except ValueError as e:
        raise UnexpectedError(f"invalid {key_type} public key") from e
    if algo is not None and algo != key.algo:
        key = key.with_algo(algo)
    return key


def from_private_key(private_key, algo: t.Optional[str] = None) -> "SSHKeyBase":
    """把 cryptography 的私钥对象包装成 SSHKeyBase"""
    public_key = private_key.public_key()
    if isinstance(private_key, ed25519.Ed25519PrivateKey):
        key = SSHEd25519Key(public_key, private_key)
    elif isinstance(private_key, ec.EllipticCurvePrivateKey):
        mapping = {
            "secp256r1": EcdsaSha2Nistp256Key,
            "secp384r1": EcdsaSha2Nistp384Key,
            "secp521r1": EcdsaSha2Nistp521Key,
        }
        key_cls = mapping.get(private_key.curve.name)
        if key_cls is None:
            raise UnsupportedError(f"unsupported curve {private_key.curve.name}")
        key = key_cls(public_key, private_key)
    elif isinstance(private_key, rsa.RSAPrivateKey):
        key = SSHRsaKey(public_key, private_key)
    else:
        raise UnsupportedError(f"unsupported private key {type(private_key)}")
    if algo is not None:
        key = key.with_algo(algo)
    return key


def load_private_key(data: bytes, password: t.Optional[bytes] = None) -> "SSHKeyBase":
    """加载 openssh 格式的私钥"""
    private_key = serialization.load_ssh_private_key(data, password)
    return from_private_key(private_key)


def load_private_key_file(
    filepath: t.Union[str, pathlib.Path], password: t.Optional[bytes] = None
) -> "SSHKeyBase":
    with open(filepath, "rb") as f:
        return load_private_key(f.read(), password)


def load_public_key(data: bytes) -> "SSHKeyBase":
    """加载 authorized_keys 格式的公钥，例如

    ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAI... user@host
    """
    parts = data.split()
    if len(parts) < 2:
        raise UnexpectedError("invalid public key line")
    return parse_public_key(base64.b64decode(parts[1]))


def generate_key(algo: str = "ssh-ed25519", rsa_key_size: int = 2048) -> "SSHKeyBase":
    """生成新的密钥"""
    if algo == "ssh-ed25519":
        return from_private_key(ed25519.Ed25519PrivateKey.generate())
    if algo in ("ecdsa-sha2-nistp256", "ecdsa-sha2-nistp384", "ecdsa-sha2-nistp521"):
        key_cls = key_type_mapping[algo]
        return from_private_key(ec.generate_private_key(key_cls.curve_cls()))
    if algo in ("ssh-rsa", "rsa-sha2-256", "rsa-sha2-512"):
        private_key = rsa.generate_private_key(
            public_exponent=65537,
            key_size=rsa_key_size,
        )
        return from_private_key(private_key, algo)
    raise UnsupportedError(f"unsupported key algorithm {algo}")

"""
连接配置

算法列表都是按优先级从高到低排列的，协商时按照客户端的顺序选择。
"""
import dataclasses
import pathlib
import typing as t

if t.TYPE_CHECKING:
    from auth import ServerAuthHandler
    from hostkey import SSHKeyBase

# 软件版本，用在版本交换里面
SOFTWARE_VERSION = "sshcore_0.1"


# 这里的算法列表参考的是 openssh 客户端发送的算法
# 算法名称中的一些缩写解释
#   nistp256 代表的使用的椭圆曲线类别，其他的 nistp384 等等同理
#   curve25519 是另外一种椭圆曲线类别
#   ec 表示椭圆曲线（英文 elliptic curve ）
#   dh 表示 diffie-hellman 密钥交换算法
#   @xxx @ 符号表示这个算法由组织 xxx 实现，没有 @ 的都是标准算法名字
DEFAULT_KEX_ALGORITHMS = (
    "curve25519-sha256",
    "curve25519-sha256@libssh.org",
    "ecdh-sha2-nistp256",
    "ecdh-sha2-nistp384",
    "ecdh-sha2-nistp521",
    "diffie-hellman-group-exchange-sha256",
    "diffie-hellman-group16-sha512",
    "diffie-hellman-group18-sha512",
    "diffie-hellman-group14-sha256",
)
DEFAULT_HOST_KEY_ALGORITHMS = (
    "ssh-ed25519",
    "ecdsa-sha2-nistp256",
    "ecdsa-sha2-nistp384",
    "ecdsa-sha2-nistp521",
    "rsa-sha2-512",
    "rsa-sha2-256",
)
DEFAULT_ENCRYPTION_ALGORITHMS = (
    "chacha20-poly1305@openssh.com",
    "aes128-ctr",
    "aes192-ctr",
    "aes256-ctr",
    "aes128-gcm@openssh.com",
    "aes256-gcm@openssh.com",
)
DEFAULT_MAC_ALGORITHMS = (
    "hmac-sha2-256-etm@openssh.com",
    "hmac-sha2-512-etm@openssh.com",
    "hmac-sha1-etm@openssh.com",
    "hmac-sha2-256",
    "hmac-sha2-512",
    "hmac-sha1",
)
DEFAULT_COMPRESSION_ALGORITHMS = ("none", "zlib@openssh.com", "zlib")


@dataclasses.dataclass
class Preferred:
    """各类算法的优先顺序"""

    kex: t.Tuple[str, ...] = DEFAULT_KEX_ALGORITHMS
    host_key: t.Tuple[str, ...] = DEFAULT_HOST_KEY_ALGORITHMS
    encryption: t.Tuple[str, ...] = DEFAULT_ENCRYPTION_ALGORITHMS
    mac: t.Tuple[str, ...] = DEFAULT_MAC_ALGORITHMS
    compression: t.Tuple[str, ...] = DEFAULT_COMPRESSION_ALGORITHMS


@dataclasses.dataclass
class Limits:
    """重新交换密钥的阈值，先达到哪个就用哪个"""

    # 单位：字节，默认 1GB
    rekey_write_limit: int = 1 << 30
    rekey_read_limit: int = 1 << 30
    # 单位：秒，默认 1 小时
    rekey_time_limit: float = 3600.0


@dataclasses.dataclass
class Config:
    version: str = SOFTWARE_VERSION
    preferred: Preferred = dataclasses.field(default_factory=Preferred)
    limits: Limits = dataclasses.field(default_factory=Limits)
    # openssh 的限制是 256kb
    max_packet: int = 256 * 1024
    # channel 的窗口大小和单个数据包最大值
    window_size: int = 200000
    maximum_packet_size: int = 200000
    # 是否启用 kex-strict-*-v00@openssh.com
    strict_kex: bool = True
    # 连接空闲超时（秒）， None 表示不超时
    connection_timeout: t.Optional[float] = None

    def version_line(self) -> bytes:
        return f"SSH-2.0-{self.version}".encode()


@dataclasses.dataclass
class ServerConfig(Config):
    host_keys: t.List["SSHKeyBase"] = dataclasses.field(default_factory=list)
    # 允许的认证方法，第一次 USERAUTH_FAILURE 里面告诉客户端
    auth_methods: t.Tuple[str, ...] = (
        "publickey",
        "password",
        "keyboard-interactive",
    )
    # 认证最大尝试次数
    max_auth_attempts: int = 10
    # 认证失败的回复从收到请求开始至少延迟这么久（秒）再发送
    auth_rejection_time: float = 1.0
    # 认证前发给客户端的提示
    auth_banner: t.Optional[str] = None
    # 认证处理，决定是否接受用户提交的凭证
    auth_handler: t.Optional["ServerAuthHandler"] = None
    # diffie-hellman-group-exchange 使用的素数文件，不存在时使用固定的 oakley group
    moduli_path: t.Optional[pathlib.Path] = None


def accept_any_host_key(public_key: "SSHKeyBase") -> bool:
    return True


@dataclasses.dataclass
class ClientConfig(Config):
    username: str = ""
    # 判断是否信任服务器的 host key ，返回 False 断开连接
    host_key_verifier: t.Callable[["SSHKeyBase"], bool] = accept_any_host_key
    # 是否在 KEXINIT 之后直接发送猜测的密钥交换消息
    guess_first_kex_packet: bool = False
    # diffie-hellman-group-exchange 希望的素数比特数
    gex_min_bits: int = 2048
    gex_prefer_bits: int = 3072
    gex_max_bits: int = 8192

"""
算法协商

https://datatracker.ietf.org/doc/html/rfc4253#section-7.1

算法消息结构如下

byte         SSH_MSG_KEXINIT
byte[16]     cookie (random bytes)
name-list    kex_algorithms
name-list    server_host_key_algorithms
name-list    encryption_algorithms_client_to_server
name-list    encryption_algorithms_server_to_client
name-list    mac_algorithms_client_to_server
name-list    mac_algorithms_server_to_client
name-list    compression_algorithms_client_to_server
name-list    compression_algorithms_server_to_client
name-list    languages_client_to_server
name-list    languages_server_to_client
boolean      first_kex_packet_follows
uint32       0 (reserved for future extension)
"""
import dataclasses
import secrets
import typing as t

import logutil
import ssh_cipher
from error import NoCommonAlgorithmError
from message import Message, SSHMessageID

logger = logutil.get_logger(__name__)

# https://github.com/openssh/openssh-portable/blob/master/PROTOCOL
# strict kex ，只在第一次 KEXINIT 里面有意义
STRICT_KEX_CLIENT = "kex-strict-c-v00@openssh.com"
STRICT_KEX_SERVER = "kex-strict-s-v00@openssh.com"
# 表示支持 SSH_MSG_EXT_INFO 扩展，暂时不管
# https://www.rfc-editor.org/rfc/rfc8308
EXT_INFO_CLIENT = "ext-info-c"
EXT_INFO_SERVER = "ext-info-s"
# 这些名字放在 kex_algorithms 里面，但并不是真正的密钥交换算法
pseudo_kex_algorithms = (
    STRICT_KEX_CLIENT,
    STRICT_KEX_SERVER,
    EXT_INFO_CLIENT,
    EXT_INFO_SERVER,
)

# AEAD 加密算法不需要 mac ，协商出来的 mac 用这个表示
IMPLICIT_MAC = "<implicit>"


@dataclasses.dataclass
class KexInit:
    """SSH_MSG_KEXINIT 的内容"""

    kex_algorithms: t.Tuple[str, ...] = ()
    server_host_key_algorithms: t.Tuple[str, ...] = ()
    # cs: client_to_server
    # sc: server_to_client
    encryption_cs: t.Tuple[str, ...] = ()
    encryption_sc: t.Tuple[str, ...] = ()
    mac_cs: t.Tuple[str, ...] = ()
    mac_sc: t.Tuple[str, ...] = ()
    compression_cs: t.Tuple[str, ...] = ()
    compression_sc: t.Tuple[str, ...] = ()
    languages_cs: t.Tuple[str, ...] = ()
    languages_sc: t.Tuple[str, ...] = ()
    first_kex_packet_follows: bool = False
    cookie: bytes = dataclasses.field(default_factory=lambda: secrets.token_bytes(16))

    def to_message(self) -> "Message":
        message = Message()
        message.add_message_id(SSHMessageID.KEXINIT)
        message.add_raw_bytes(self.cookie)
        message.add_name_list(*self.kex_algorithms)
        message.add_name_list(*self.server_host_key_algorithms)
        # 加密、Mac、压缩、语言都分为 client_to_server 和 server_to_client
        message.add_name_list(*self.encryption_cs)
        message.add_name_list(*self.encryption_sc)
        message.add_name_list(*self.mac_cs)
        message.add_name_list(*self.mac_sc)
        message.add_name_list(*self.compression_cs)
        message.add_name_list(*self.compression_sc)
        message.add_name_list(*self.languages_cs)
        message.add_name_list(*self.languages_sc)
        message.add_boolean(self.first_kex_packet_follows)
        message.add_uint32(0)
        return message

    @classmethod
    def from_payload(cls, payload: bytes) -> "KexInit":
        m = Message(payload)
        m.get_message_id()
        cookie = m.get_raw_bytes(16)
        lists = [tuple(m.get_name_list()) for _ in range(10)]
        first_kex_packet_follows = m.get_boolean()
        # reserved
        m.get_uint32()
        return cls(*lists, first_kex_packet_follows=first_kex_packet_follows, cookie=cookie)

    @property
    def real_kex_algorithms(self) -> t.Tuple[str, ...]:
        return tuple(x for x in self.kex_algorithms if x not in pseudo_kex_algorithms)


@dataclasses.dataclass(frozen=True)
class NegotiatedAlgorithms:
    """协商后采用的算法，每次密钥交换都是一个新的对象"""

    kex: str
    server_host_key: str
    encryption_cs: str
    encryption_sc: str
    mac_cs: str
    mac_sc: str
    compression_cs: str
    compression_sc: str
    language_cs: str = ""
    language_sc: str = ""


def select_algorithm(
    name: str, client_algos: t.Sequence[str], server_algos: t.Sequence[str]
) -> str:
    """遍历客户端的算法，找到第一个服务端也支持的"""
    for algo in client_algos:
        if algo in server_algos:
            return algo
    logger.error(
        "no matching %s found. client offer: [%s], server offer: [%s]",
        name,
        ",".join(client_algos),
        ",".join(server_algos),
    )
    raise NoCommonAlgorithmError(f"no matching {name} found")


def _select_mac(
    name: str, encryption: str, client_algos: t.Sequence[str], server_algos: t.Sequence[str]
) -> str:
    if encryption in ssh_cipher.aead_encryption_algorithms:
        return IMPLICIT_MAC
    return select_algorithm(name, client_algos, server_algos)


def _select_language(client_algos: t.Sequence[str], server_algos: t.Sequence[str]) -> str:
    for algo in client_algos:
        if algo in server_algos:
            return algo
    return ""


def select(client: "KexInit", server: "KexInit") -> "NegotiatedAlgorithms":
    """按客户端的优先顺序协商各类算法"""
    encryption_cs = select_algorithm(
        "encryption_algorithms_client_to_server",
        client.encryption_cs,
        server.encryption_cs,
    )
    encryption_sc = select_algorithm(
        "encryption_algorithms_server_to_client",
        client.encryption_sc,
        server.encryption_sc,
    )
    adopted = NegotiatedAlgorithms(
        kex=select_algorithm(
            "kex_algorithms", client.real_kex_algorithms, server.real_kex_algorithms
        ),
        server_host_key=select_algorithm(
            "server_host_key_algorithms",
            client.server_host_key_algorithms,
            server.server_host_key_algorithms,
        ),
        encryption_cs=encryption_cs,
        encryption_sc=encryption_sc,
        mac_cs=_select_mac(
            "mac_algorithms_client_to_server",
            encryption_cs,
            client.mac_cs,
            server.mac_cs,
        ),
        mac_sc=_select_mac(
            "mac_algorithms_server_to_client",
            encryption_sc,
            client.mac_sc,
            server.mac_sc,
        ),
        compression_cs=select_algorithm(
            "compression_algorithms_client_to_server",
            client.compression_cs,
            server.compression_cs,
        ),
        compression_sc=select_algorithm(
            "compression_algorithms_server_to_client",
            client.compression_sc,
            server.compression_sc,
        ),
        language_cs=_select_language(client.languages_cs, server.languages_cs),
        language_sc=_select_language(client.languages_sc, server.languages_sc),
    )
    logger.debug("kex: algorithm: %s", adopted.kex)
    logger.debug("kex: host key algorithm: %s", adopted.server_host_key)
    logger.debug(
        "kex: server->client cipher: %s MAC: %s compression: %s",
        adopted.encryption_sc,
        adopted.mac_sc,
        adopted.compression_sc,
    )
    logger.debug(
        "kex: client->server cipher: %s MAC: %s compression: %s",
        adopted.encryption_cs,
        adopted.mac_cs,
        adopted.compression_cs,
    )
    return adopted


def guess_is_correct(client: "KexInit", server: "KexInit") -> bool:
    """猜测的密钥交换消息是否可以继续使用

    https://datatracker.ietf.org/doc/html/rfc4253#section-7
    双方第一个密钥交换算法和第一个 host key 算法都一样时，猜测才算正确
    """
    client_kex = client.real_kex_algorithms
    server_kex = server.real_kex_algorithms
    if not client_kex or not server_kex:
        return False
    if not client.server_host_key_algorithms or not server.server_host_key_algorithms:
        return False
    return (
        client_kex[0] == server_kex[0]
        and client.server_host_key_algorithms[0] == server.server_host_key_algorithms[0]
    )


def strict_kex_enabled(client: "KexInit", server: "KexInit") -> bool:
    return (
        STRICT_KEX_CLIENT in client.kex_algorithms
        and STRICT_KEX_SERVER in server.kex_algorithms
    )

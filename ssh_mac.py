"""
ssh mac 支持

非 etm: mac = MAC(key, sequence_number || unencrypted_packet)
etm:    mac = MAC(key, sequence_number || packet_length || encrypted_packet)
https://datatracker.ietf.org/doc/html/rfc4253#section-6.4
"""
import abc
import hashlib
import hmac
import typing as t

from error import UnsupportedError


class MacInterface(abc.ABC):
    length = 0
    key_size = 0
    seq_bytes = 4
    is_etm = False

    def __init__(self, key: bytes):
        self.key = key

    @abc.abstractmethod
    def verify(self, message: bytes, mac: bytes) -> bool:
        raise NotImplementedError("verify")

    @abc.abstractmethod
    def calculate(self, message: bytes) -> bytes:
        raise NotImplementedError("calculate")

    def clear(self):
        self.key = b""


class HmacImpl(MacInterface):
    hash_cls = None

    def verify(self, message: bytes, mac: bytes) -> bool:
        got = hmac.HMAC(self.key, message, self.hash_cls).digest()
        return hmac.compare_digest(got, mac)

    def calculate(self, message: bytes) -> bytes:
        return hmac.HMAC(self.key, message, self.hash_cls).digest()


class HmacSha256Impl(HmacImpl):
    length = 32
    key_size = 32
    hash_cls = hashlib.sha256


class HmacSha256EtmImpl(HmacSha256Impl):
    is_etm = True


class HmacSha512Impl(HmacImpl):
    length = 64
    key_size = 64
    hash_cls = hashlib.sha512


class HmacSha512EtmImpl(HmacSha512Impl):
    is_etm = True


class HmacSha1Impl(HmacImpl):
    length = 20
    key_size = 20
    hash_cls = hashlib.sha1


class HmacSha1EtmImpl(HmacSha1Impl):
    is_etm = True


mac_mapping: t.Dict[str, t.Type["MacInterface"]] = {
    "hmac-sha2-256-etm@openssh.com": HmacSha256EtmImpl,
    "hmac-sha2-512-etm@openssh.com": HmacSha512EtmImpl,
    "hmac-sha1-etm@openssh.com": HmacSha1EtmImpl,
    "hmac-sha2-256": HmacSha256Impl,
    "hmac-sha2-512": HmacSha512Impl,
    "hmac-sha1": HmacSha1Impl,
}


def get_mac_impl(algo: str) -> t.Type["MacInterface"]:
    try:
        return mac_mapping[algo]
    except KeyError:
        raise UnsupportedError(f"unsupported mac algorithm {algo}") from None

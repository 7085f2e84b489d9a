"""
packet 加解密

每个方向一个对象，负责 packet 的加密和完整性校验（AEAD 或者单独的 mac ）。
packet 的组装（padding 计算、压缩）在 packet 模块里面完成，这里只处理加密后的格式。

packet 格式 https://datatracker.ietf.org/doc/html/rfc4253#section-6

uint32    packet_length
byte      padding_length
byte[n1]  payload; n1 = packet_length - padding_length - 1
byte[n2]  random padding; n2 = padding_length
byte[m]   mac (Message Authentication Code - MAC); m = mac_length

下面把 padding_length + payload + random padding 这部分称为 body
"""
import abc
import struct
import typing as t

import cryptography.exceptions
from cryptography.hazmat.primitives import poly1305
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

import ssh_mac
from error import (
    IntegrityError,
    MalformedPacketError,
    PacketTooLargeError,
    UnsupportedError,
)

# padding_length 一个字节加上最少 4 字节的 padding
MIN_PACKET_LENGTH = 5


class CipherInterface(abc.ABC):
    """一个方向的 packet 加解密"""

    name = ""
    key_size = 0
    iv_size = 0
    block_size = 8
    # 自带数据完整性验证，不需要 mac 算法
    is_aead = False

    def __init__(
        self,
        key: bytes = b"",
        iv: bytes = b"",
        mac: t.Optional["ssh_mac.MacInterface"] = None,
    ):
        self.mac = mac

    @property
    def length_in_clear(self) -> bool:
        """packet_length 是否不参与加密。
        不参与加密时 body 需要是 block_size 的整数倍，否则是 4 + body
        """
        return False

    @property
    def overhead(self) -> int:
        """mac 或者 AEAD tag 的长度"""
        return 0

    def check_length(self, packet_length: int, max_packet: int):
        if packet_length > max_packet:
            raise PacketTooLargeError(f"packet too large: {packet_length}")
        if packet_length < MIN_PACKET_LENGTH:
            raise MalformedPacketError(f"packet too small: {packet_length}")
        aligned = packet_length if self.length_in_clear else packet_length + 4
        if aligned % self.block_size != 0:
            raise MalformedPacketError(
                f"packet length {packet_length} not multiple of block size {self.block_size}"
            )

    @abc.abstractmethod
    def seal_packet(self, seq: int, length_bytes: bytes, body: bytes) -> bytes:
        """加密 packet ，返回要发送的数据"""
        raise NotImplementedError("seal_packet")

    @abc.abstractmethod
    def open_packet(
        self, seq: int, data: bytes, max_packet: int
    ) -> t.Optional[t.Tuple[bytes, int]]:
        """从 data 开头解出一个 packet

        Returns: (body, 用掉的字节数)，数据不够一个完整的 packet 时返回 None
        """
        raise NotImplementedError("open_packet")

    def clear(self):
        """释放密钥"""
        if self.mac is not None:
            self.mac.clear()
            self.mac = None


class ClearCipher(CipherInterface):
    """第一次密钥交换完成之前使用，不加密也没有 mac"""

    name = "none"

    def seal_packet(self, seq: int, length_bytes: bytes, body: bytes) -> bytes:
        return length_bytes + body

    def open_packet(
        self, seq: int, data: bytes, max_packet: int
    ) -> t.Optional[t.Tuple[bytes, int]]:
        if len(data) < 4:
            return None
        packet_length = int.from_bytes(data[:4], "big")
        self.check_length(packet_length, max_packet)
        total = 4 + packet_length
        if len(data) < total:
            return None
        return bytes(data[4:total]), total


class Chacha20Poly1305Cipher(CipherInterface):
    """
    openssh 对 chacha20-poly1305 的说明
    https://github.com/openssh/openssh-portable/blob/master/PROTOCOL.chacha20poly1305
    分成两个 key ，一个用来加密 packet 长度，一个加密数据
    """

    name = "chacha20-poly1305@openssh.com"
    key_size = 64
    iv_size = 0
    block_size = 8
    is_aead = True
    tag_size = 16

    def __init__(self, key: bytes = b"", iv: bytes = b"", mac=None):
        super().__init__(key, iv, mac)
        self._length_key = key[32:]
        self._data_key = key[:32]

    @property
    def length_in_clear(self) -> bool:
        # 长度单独加密，不跟 body 一起计算对齐
        return True

    @property
    def overhead(self) -> int:
        return self.tag_size

    @staticmethod
    def _nonce(seq: int, counter: int) -> bytes:
        # cryptography 的 ChaCha20 nonce 是 16 字节，前 8 字节是小端序的块计数，后 8 字节是序号
        return counter.to_bytes(8, "little") + struct.pack(">Q", seq)

    def _chacha(self, key: bytes, seq: int, counter: int):
        algorithm = algorithms.ChaCha20(key, self._nonce(seq, counter))
        return Cipher(algorithm, mode=None)

    def _poly_key(self, seq: int) -> bytes:
        encryptor = self._chacha(self._data_key, seq, 0).encryptor()
        return encryptor.update(b"\0" * 32)

    def seal_packet(self, seq: int, length_bytes: bytes, body: bytes) -> bytes:
        encrypted_length = (
            self._chacha(self._length_key, seq, 0).encryptor().update(length_bytes)
        )
        ciphertext = self._chacha(self._data_key, seq, 1).encryptor().update(body)
        tag = poly1305.Poly1305.generate_tag(
            self._poly_key(seq), encrypted_length + ciphertext
        )
        return encrypted_length + ciphertext + tag

    def open_packet(
        self, seq: int, data: bytes, max_packet: int
    ) -> t.Optional[t.Tuple[bytes, int]]:
        if len(data) < 4:
            return None
        encrypted_length = bytes(data[:4])
        decrypted = (
            self._chacha(self._length_key, seq, 0).decryptor().update(encrypted_length)
        )
        packet_length = int.from_bytes(decrypted, "big")
        self.check_length(packet_length, max_packet)
        total = 4 + packet_length + self.tag_size
        if len(data) < total:
            return None
        ciphertext = bytes(data[4 : 4 + packet_length])
        tag = bytes(data[4 + packet_length : total])
        try:
            poly1305.Poly1305.verify_tag(
                self._poly_key(seq), encrypted_length + ciphertext, tag
            )
        except cryptography.exceptions.InvalidSignature:
            raise IntegrityError("poly1305 tag mismatch") from None
        body = self._chacha(self._data_key, seq, 1).decryptor().update(ciphertext)
        return body, total

    def clear(self):
        super().clear()
        self._length_key = b""
        self._data_key = b""


class AESGCMCipher(CipherInterface):
    """https://www.rfc-editor.org/rfc/rfc5647
    AES-GCM 自带 mac 功能，不再需要额外的 mac 计算
    """

    key_size = -1
    iv_size = 12
    block_size = 16
    tag_size = 16
    is_aead = True

    def __init__(self, key: bytes = b"", iv: bytes = b"", mac=None):
        super().__init__(key, iv, mac)
        self._aesgcm: t.Optional[AESGCM] = AESGCM(key)
        self._iv = iv

    @property
    def length_in_clear(self) -> bool:
        # https://www.rfc-editor.org/rfc/rfc5647#section-5.2
        # packet_length 不加密，作为 associated data
        return True

    @property
    def overhead(self) -> int:
        return self.tag_size

    def _inc_iv(self):
        # https://www.rfc-editor.org/rfc/rfc5647#section-7.1
        # iv 12 字节，将后面 8 字节当做 64 位整数，每次加解密后都加一
        iv = self._iv
        prefix = iv[:4]
        invocation_counter = int.from_bytes(iv[4:], "big")
        invocation_counter = (invocation_counter + 1) & 0xFFFFFFFFFFFFFFFF
        self._iv = prefix + invocation_counter.to_bytes(8, "big")

    def seal_packet(self, seq: int, length_bytes: bytes, body: bytes) -> bytes:
        ciphertext = self._aesgcm.encrypt(self._iv, body, length_bytes)
        self._inc_iv()
        return length_bytes + ciphertext

    def open_packet(
        self, seq: int, data: bytes, max_packet: int
    ) -> t.Optional[t.Tuple[bytes, int]]:
        if len(data) < 4:
            return None
        length_bytes = bytes(data[:4])
        packet_length = int.from_bytes(length_bytes, "big")
        self.check_length(packet_length, max_packet)
        total = 4 + packet_length + self.tag_size
        if len(data) < total:
            return None
        try:
            body = self._aesgcm.decrypt(self._iv, bytes(data[4:total]), length_bytes)
        except cryptography.exceptions.InvalidTag:
            raise IntegrityError("aes-gcm tag mismatch") from None
        self._inc_iv()
        return body, total

    def clear(self):
        super().clear()
        self._aesgcm = None
        self._iv = b""


class AES128GCMCipher(AESGCMCipher):
    name = "aes128-gcm@openssh.com"
    key_size = 16


class AES256GCMCipher(AESGCMCipher):
    name = "aes256-gcm@openssh.com"
    key_size = 32


class AESCtrCipher(CipherInterface):
    """https://datatracker.ietf.org/doc/html/rfc4344
    需要单独的 mac 算法
    """

    key_size = -1
    iv_size = 16
    block_size = 16
    cipher_algo = algorithms.AES

    def __init__(self, key: bytes = b"", iv: bytes = b"", mac=None):
        super().__init__(key, iv, mac)
        if mac is None:
            raise UnsupportedError(f"{self.name} requires a mac algorithm")
        # CTR 是流式的，加解密对象需要一直使用，不能每个 packet 重新创建
        self._encryptor = Cipher(self.cipher_algo(key), modes.CTR(iv)).encryptor()
        self._decryptor = Cipher(self.cipher_algo(key), modes.CTR(iv)).decryptor()
        # 非 etm 模式下已经解密的长度，数据不够时留到下次使用
        self._decrypted_length: t.Optional[bytes] = None

    @property
    def length_in_clear(self) -> bool:
        return self.mac.is_etm

    @property
    def overhead(self) -> int:
        return self.mac.length

    def seal_packet(self, seq: int, length_bytes: bytes, body: bytes) -> bytes:
        seq_bytes = seq.to_bytes(self.mac.seq_bytes, "big")
        if self.mac.is_etm:
            # 长度是明文，对加密后的数据计算 mac
            ciphertext = self._encryptor.update(body)
            mac = self.mac.calculate(seq_bytes + length_bytes + ciphertext)
            return length_bytes + ciphertext + mac
        # 长度也要加密，对原始数据计算 mac
        plaintext = length_bytes + body
        ciphertext = self._encryptor.update(plaintext)
        mac = self.mac.calculate(seq_bytes + plaintext)
        return ciphertext + mac

    def open_packet(
        self, seq: int, data: bytes, max_packet: int
    ) -> t.Optional[t.Tuple[bytes, int]]:
        if len(data) < 4:
            return None
        seq_bytes = seq.to_bytes(self.mac.seq_bytes, "big")
        if self.mac.is_etm:
            length_bytes = bytes(data[:4])
            packet_length = int.from_bytes(length_bytes, "big")
            self.check_length(packet_length, max_packet)
            total = 4 + packet_length + self.mac.length
            if len(data) < total:
                return None
            ciphertext = bytes(data[4 : 4 + packet_length])
            mac = bytes(data[4 + packet_length : total])
            # 先校验再解密
            if not self.mac.verify(seq_bytes + length_bytes + ciphertext, mac):
                raise IntegrityError("mac mismatch")
            return self._decryptor.update(ciphertext), total

        if self._decrypted_length is None:
            self._decrypted_length = self._decryptor.update(bytes(data[:4]))
        length_bytes = self._decrypted_length
        packet_length = int.from_bytes(length_bytes, "big")
        self.check_length(packet_length, max_packet)
        total = 4 + packet_length + self.mac.length
        if len(data) < total:
            return None
        self._decrypted_length = None
        body = self._decryptor.update(bytes(data[4 : 4 + packet_length]))
        mac = bytes(data[4 + packet_length : total])
        if not self.mac.verify(seq_bytes + length_bytes + body, mac):
            raise IntegrityError("mac mismatch")
        return body, total

    def clear(self):
        super().clear()
        self._encryptor = None
        self._decryptor = None
        self._decrypted_length = None


class AES128CtrCipher(AESCtrCipher):
    name = "aes128-ctr"
    key_size = 16
    cipher_algo = algorithms.AES128


class AES192CtrCipher(AESCtrCipher):
    name = "aes192-ctr"
    key_size = 24
    # 这里用的是 algorithms.AES
    # 他支持 192 ，但是不像 AES128 这样，没有特定的 AES192
    cipher_algo = algorithms.AES


class AES256CtrCipher(AESCtrCipher):
    name = "aes256-ctr"
    key_size = 32
    cipher_algo = algorithms.AES256


cipher_mapping: t.Dict[str, t.Type["CipherInterface"]] = {
    "chacha20-poly1305@openssh.com": Chacha20Poly1305Cipher,
    "aes128-gcm@openssh.com": AES128GCMCipher,
    "aes256-gcm@openssh.com": AES256GCMCipher,
    "aes128-ctr": AES128CtrCipher,
    "aes192-ctr": AES192CtrCipher,
    "aes256-ctr": AES256CtrCipher,
}

# 自带数据完整性验证的加密算法，不需要 mac 算法和运算
aead_encryption_algorithms = tuple(
    name for name, cls in cipher_mapping.items() if cls.is_aead
)


def get_cipher_impl(algo: str) -> t.Type["CipherInterface"]:
    try:
        return cipher_mapping[algo]
    except KeyError:
        raise UnsupportedError(f"unsupported cipher algorithm {algo}") from None

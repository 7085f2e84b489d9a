"""
SSH packet 编解码

格式可看 https://datatracker.ietf.org/doc/html/rfc4253#section-6

uint32    packet_length
byte      padding_length
byte[n1]  payload; n1 = packet_length - padding_length - 1
byte[n2]  random padding; n2 = padding_length
byte[m]   mac (Message Authentication Code - MAC); m = mac_length

补充说明：packet_length 是大端序编码， mac 长度需要根据使用的算法确定，初始时 mac 长度为 0

这里不做任何网络读写，读写数据由调用方负责。
"""
import secrets
import typing as t

import logutil
import ssh_cipher
import ssh_compression
from error import BadRequestError, MalformedPacketError

logger = logutil.get_logger(__name__)

SEQ_MASK = 0xFFFFFFFF


class PacketCodec:
    """一个连接的 packet 编解码，两个方向的加密状态、序号、压缩都在这里"""

    # 从 go golang.org/x/crypto/ssh/cipher.go copy
    # 下面这段也是 go 代码里面原本的注释
    # 	// RFC 4253 section 6.1 defines a minimum packet size of 32768 that implementations
    # 	// MUST be able to process (plus a few more kilobytes for padding and mac). The RFC
    # 	// indicates implementations SHOULD be able to handle larger packet sizes, but then
    # 	// waffles on about reasonable limits.
    # 	//
    # 	// OpenSSH caps their maxPacket at 256kB so we choose to do
    # 	// the same. maxPacket is also used to ensure that uint32
    # 	// length fields do not overflow, so it should remain well
    # 	// below 4G.
    max_packet = 256 * 1024

    def __init__(self, max_packet: t.Optional[int] = None):
        if max_packet is not None:
            self.max_packet = max_packet
        self.read_cipher: ssh_cipher.CipherInterface = ssh_cipher.ClearCipher()
        self.write_cipher: ssh_cipher.CipherInterface = ssh_cipher.ClearCipher()
        self.read_compression = ssh_compression.CompressionInterface()
        self.write_compression = ssh_compression.CompressionInterface()
        # 读写 packet 编号，从 0 开始计数，超过 uint32 回到 0
        self.read_seq_num = 0
        self.write_seq_num = 0
        # 上次密钥交换之后读写的数据大小（单位：字节）和 packet 数量
        self.read_bytes = 0
        self.write_bytes = 0
        self.read_packets = 0
        self.write_packets = 0

    def _padding_length(self, payload_length: int) -> int:
        # 没有在 rfc4253 中找到 padding 最小长度的要求
        # 但是在 openssh 的代码注释里面搜索到最小长度的要求
        # https://github.com/openssh/openssh-portable/blob/master/packet.c#LL1125
        # minimum padding is 4 bytes
        block_size = self.write_cipher.block_size
        # packet_length 不加密的时候，计算 padding 不算这 4 个字节
        length_size = 0 if self.write_cipher.length_in_clear else 4
        padding_length = block_size - (payload_length + 1 + length_size) % block_size
        if padding_length < 4:
            padding_length += block_size
        return padding_length

    def check_payload_size(self, payload_length: int):
        """本端要发送的 payload 太大时抛出 BadRequestError

        在压缩之前检查，压缩上下文是整个连接共用的，压缩之后再失败对方就解压不了后面的数据了。
        """
        size = self.write_compression.max_compressed_size(payload_length)
        packet_length = size + 1 + self._padding_length(size)
        if packet_length > self.max_packet:
            raise BadRequestError(f"payload too large: {payload_length}")

    def encode(self, payload: bytes) -> bytes:
        """把 payload 组装成 packet ，返回要发送的数据"""
        self.check_payload_size(len(payload))
        payload = self.write_compression.compress(payload)
        padding_length = self._padding_length(len(payload))
        packet_length = len(payload) + 1 + padding_length
        body = b"".join(
            [
                padding_length.to_bytes(1, "big"),
                payload,
                secrets.token_bytes(padding_length),
            ]
        )
        data = self.write_cipher.seal_packet(
            self.write_seq_num,
            packet_length.to_bytes(4, "big"),
            body,
        )
        self.write_seq_num = (self.write_seq_num + 1) & SEQ_MASK
        self.write_bytes += len(data)
        self.write_packets += 1
        return data

    def decode(self, data: bytes) -> t.Optional[t.Tuple[bytes, int]]:
        """从 data 开头解出一个 packet

        Returns: (payload, 用掉的字节数)，数据不够一个完整的 packet 时返回 None
        """
        result = self.read_cipher.open_packet(self.read_seq_num, data, self.max_packet)
        if result is None:
            return None
        body, consumed = result
        padding_length = body[0]
        if padding_length < 4:
            raise MalformedPacketError(f"padding too short: {padding_length}")
        if padding_length + 1 >= len(body):
            raise MalformedPacketError(
                f"padding length {padding_length} exceeds packet length {len(body)}"
            )
        payload = body[1 : len(body) - padding_length]
        self.read_seq_num = (self.read_seq_num + 1) & SEQ_MASK
        self.read_bytes += consumed
        self.read_packets += 1
        payload = self.read_compression.decompress(payload, self.max_packet)
        return payload, consumed

    def install_read(
        self,
        cipher: "ssh_cipher.CipherInterface",
        compression: "ssh_compression.CompressionInterface",
        reset_seq: bool = False,
    ):
        """收到 NEWKEYS 之后切换读方向的密钥"""
        self.read_cipher.clear()
        self.read_cipher = cipher
        self.read_compression = compression
        self.read_bytes = 0
        self.read_packets = 0
        if reset_seq:
            self.read_seq_num = 0
        logger.debug("read cipher installed: %s", cipher.name)

    def install_write(
        self,
        cipher: "ssh_cipher.CipherInterface",
        compression: "ssh_compression.CompressionInterface",
        reset_seq: bool = False,
    ):
        """发送 NEWKEYS 之后切换写方向的密钥"""
        self.write_cipher.clear()
        self.write_cipher = cipher
        self.write_compression = compression
        self.write_bytes = 0
        self.write_packets = 0
        if reset_seq:
            self.write_seq_num = 0
        logger.debug("write cipher installed: %s", cipher.name)

    def activate_delayed_compression(self):
        """zlib@openssh.com 在认证成功之后开始压缩"""
        self.read_compression.activate()
        self.write_compression.activate()

    def clear(self):
        """释放两个方向的密钥"""
        self.read_cipher.clear()
        self.write_cipher.clear()
        self.read_cipher = ssh_cipher.ClearCipher()
        self.write_cipher = ssh_cipher.ClearCipher()

"""
ssh 压缩支持

https://datatracker.ietf.org/doc/html/rfc4253#section-6.2
zlib@openssh.com 跟 zlib 一样，只是在认证成功之后才开始压缩
"""
import zlib

from error import CompressionError, UnsupportedError


class CompressionInterface:
    """不压缩"""

    name = "none"
    # 认证成功之后才开始压缩
    delayed = False

    def __init__(self):
        self.active = not self.delayed

    def activate(self):
        self.active = True

    def compress(self, payload: bytes) -> bytes:
        return payload

    def decompress(self, payload: bytes, max_size: int) -> bytes:
        return payload

    def max_compressed_size(self, size: int) -> int:
        return size


class ZlibCompression(CompressionInterface):
    """压缩上下文在密钥的整个生命周期里面一直使用，每个 packet 用 Z_SYNC_FLUSH 结束"""

    name = "zlib"

    def __init__(self):
        super().__init__()
        self._compressor = zlib.compressobj()
        self._decompressor = zlib.decompressobj()

    def compress(self, payload: bytes) -> bytes:
        if not self.active:
            return payload
        return self._compressor.compress(payload) + self._compressor.flush(
            zlib.Z_SYNC_FLUSH
        )

    def max_compressed_size(self, size: int) -> int:
        if not self.active:
            return size
        # zlib deflateBound 的估算，再加上 Z_SYNC_FLUSH 输出的 5 字节空块
        return size + (size >> 12) + (size >> 14) + (size >> 25) + 13 + 5

    def decompress(self, payload: bytes, max_size: int) -> bytes:
        if not self.active:
            return payload
        try:
            data = self._decompressor.decompress(payload, max_size)
        except zlib.error as e:
            raise CompressionError(f"decompress failed: {e}") from None
        if self._decompressor.unconsumed_tail:
            # 解压后的数据超过限制
            raise CompressionError("decompressed payload too large")
        return data


class ZlibOpensshCompression(ZlibCompression):
    name = "zlib@openssh.com"
    delayed = True


compression_mapping = {
    "none": CompressionInterface,
    "zlib": ZlibCompression,
    "zlib@openssh.com": ZlibOpensshCompression,
}


def get_compression_impl(algo: str):
    try:
        return compression_mapping[algo]
    except KeyError:
        raise UnsupportedError(f"unsupported compression algorithm {algo}") from None

"""
差分引擎

补丁制作只依赖 DeltaEngine 协议定义的两阶段接口:
1. build_signature: 读取旧文件，生成块级滚动校验签名
2. build_delta: 读取新文件与签名，生成 COPY/LITERAL 指令流

默认实现 RollingChecksumEngine 使用 rsync 风格的弱校验(可滚动)+ xxh64 强校验。

签名格式:
    头部  b"DPSG" | 版本(1B) | 块大小(4B)
    每块  块长度(4B) | 弱校验(4B) | 强校验(8B)

差分格式:
    头部  b"DPDL" | 版本(1B) | 块大小(4B)
    指令  b"C" 偏移(8B) 长度(4B)  /  b"L" 长度(4B) 数据  /  b"E" 结束
"""

import io
import math
import struct
from dataclasses import dataclass, field
from typing import IO, Protocol

import xxhash

from .errors import EngineError

SIGNATURE_MAGIC = b"DPSG"
DELTA_MAGIC = b"DPDL"
FORMAT_VERSION = 1

MIN_BLOCK_SIZE = 512
MAX_BLOCK_SIZE = 65536
DEFAULT_BLOCK_SIZE = 2048
MAX_LITERAL_SIZE = 1024 * 1024

_HEADER = struct.Struct(">4sBI")
_BLOCK = struct.Struct(">II8s")
_COPY = struct.Struct(">QI")
_LENGTH = struct.Struct(">I")

OP_COPY = b"C"
OP_LITERAL = b"L"
OP_END = b"E"


class DeltaEngine(Protocol):
    """差分引擎协议，全部为流式接口"""

    def build_signature(self, source: IO[bytes], signature_out: IO[bytes]) -> None: ...

    def build_delta(self, target: IO[bytes], signature_in: IO[bytes], delta_out: IO[bytes]) -> None: ...

    def apply_delta(self, base: IO[bytes], delta_in: IO[bytes], out: IO[bytes]) -> None: ...


def choose_block_size(length: int | None) -> int:
    """按旧文件大小选择块大小: 约为长度的平方根，8字节对齐，限制在 [512, 65536]"""
    if length is None:
        return DEFAULT_BLOCK_SIZE

    if length <= MIN_BLOCK_SIZE * MIN_BLOCK_SIZE:
        return MIN_BLOCK_SIZE

    size = (math.isqrt(length) + 7) // 8 * 8
    return min(size, MAX_BLOCK_SIZE)


def weak_checksum(data: bytes) -> tuple[int, int]:
    """计算弱校验的两个分量 (s1, s2)"""
    s1 = 0
    s2 = 0
    for byte_val in data:
        s1 = (s1 + byte_val) & 0xFFFF
        s2 = (s2 + s1) & 0xFFFF
    return s1, s2


def strong_checksum(data: bytes) -> bytes:
    return xxhash.xxh64(data).digest()


def _remaining_length(stream: IO[bytes]) -> int | None:
    try:
        position = stream.tell()
        end = stream.seek(0, io.SEEK_END)
        stream.seek(position)
    except (OSError, io.UnsupportedOperation):
        return None
    return end - position


def _read_exact(stream: IO[bytes], size: int, what: str) -> bytes:
    data = stream.read(size)
    if len(data) != size:
        raise EngineError(f"{what}数据不完整: 期望 {size} 字节, 实际 {len(data)} 字节")
    return data


def _read_header(stream: IO[bytes], magic: bytes, what: str) -> int:
    raw = stream.read(_HEADER.size)
    if len(raw) != _HEADER.size:
        raise EngineError(f"{what}头部不完整")

    found_magic, version, block_size = _HEADER.unpack(raw)
    if found_magic != magic:
        raise EngineError(f"不是有效的{what}文件: {found_magic!r}")
    if version != FORMAT_VERSION:
        raise EngineError(f"不支持的{what}版本: {version}")
    if block_size <= 0:
        raise EngineError(f"{what}块大小非法: {block_size}")

    return block_size


@dataclass
class Signature:
    """解析后的签名，full_blocks 为完整块的弱校验索引，tail 为末尾不足一块的数据块"""

    block_size: int
    strongs: list[bytes] = field(default_factory=list)
    full_blocks: dict[int, list[int]] = field(default_factory=dict)
    tail: tuple[int, int, int, bytes] | None = None  # (偏移, 长度, 弱校验, 强校验)

    @classmethod
    def read(cls, stream: IO[bytes]) -> "Signature":
        block_size = _read_header(stream, SIGNATURE_MAGIC, "签名")
        signature = cls(block_size=block_size)

        offset = 0
        while True:
            raw = stream.read(_BLOCK.size)
            if not raw:
                break
            if len(raw) != _BLOCK.size:
                raise EngineError("签名块数据不完整")
            if signature.tail is not None:
                raise EngineError("签名中不足一块的数据块只能位于末尾")

            length, weak, strong = _BLOCK.unpack(raw)
            if length == block_size:
                index = len(signature.strongs)
                signature.strongs.append(strong)
                signature.full_blocks.setdefault(weak, []).append(index)
            elif 0 < length < block_size:
                signature.tail = (offset, length, weak, strong)
            else:
                raise EngineError(f"签名块长度非法: {length}")
            offset += length

        return signature

    def find(self, weak: int, window: bytes) -> int | None:
        """查找与窗口内容相同的完整块，返回块序号"""
        candidates = self.full_blocks.get(weak)
        if not candidates:
            return None

        strong = strong_checksum(window)
        for index in candidates:
            if self.strongs[index] == strong:
                return index
        return None


class _DeltaWriter:
    """合并相邻 COPY 指令并缓冲 LITERAL 数据"""

    def __init__(self, out: IO[bytes], block_size: int):
        self.out = out
        self.copy: tuple[int, int] | None = None
        self.literal = bytearray()
        out.write(_HEADER.pack(DELTA_MAGIC, FORMAT_VERSION, block_size))

    def add_literal(self, data: bytes) -> None:
        if not data:
            return
        self._flush_copy()
        self.literal += data
        if len(self.literal) >= MAX_LITERAL_SIZE:
            self._flush_literal()

    def add_copy(self, offset: int, length: int) -> None:
        self._flush_literal()
        if self.copy is not None and self.copy[0] + self.copy[1] == offset:
            self.copy = (self.copy[0], self.copy[1] + length)
            return
        self._flush_copy()
        self.copy = (offset, length)

    def _flush_copy(self) -> None:
        if self.copy is not None:
            self.out.write(OP_COPY + _COPY.pack(*self.copy))
            self.copy = None

    def _flush_literal(self) -> None:
        data = bytes(self.literal)
        self.literal.clear()
        for start in range(0, len(data), MAX_LITERAL_SIZE):
            chunk = data[start : start + MAX_LITERAL_SIZE]
            self.out.write(OP_LITERAL + _LENGTH.pack(len(chunk)))
            self.out.write(chunk)

    def close(self) -> None:
        self._flush_literal()
        self._flush_copy()
        self.out.write(OP_END)


class RollingChecksumEngine:
    """rsync 风格的差分引擎

    Args:
        block_size: 固定块大小，为空时根据旧文件大小自动选择
        chunk_size: 读写缓冲区大小

    """

    def __init__(self, block_size: int | None = None, chunk_size: int = 65536):
        if block_size is not None and block_size <= 0:
            raise ValueError(f"块大小必须为正数: {block_size}")
        self.block_size = block_size
        self.chunk_size = chunk_size

    def build_signature(self, source: IO[bytes], signature_out: IO[bytes]) -> None:
        """读取旧文件，写出签名"""
        block_size = self.block_size or choose_block_size(_remaining_length(source))
        signature_out.write(_HEADER.pack(SIGNATURE_MAGIC, FORMAT_VERSION, block_size))

        for block in iter(lambda: source.read(block_size), b""):
            s1, s2 = weak_checksum(block)
            signature_out.write(_BLOCK.pack(len(block), s1 | (s2 << 16), strong_checksum(block)))

    def build_delta(self, target: IO[bytes], signature_in: IO[bytes], delta_out: IO[bytes]) -> None:
        """读取新文件与签名，写出差分

        新文件按 chunk_size 分段读取，内存中只保留滚动窗口与尚未写出的字面数据。
        字面数据过长时提前写出，但始终保留最后一块用于末尾块比较。

        """
        signature = Signature.read(signature_in)
        block_size = signature.block_size
        full_blocks = signature.full_blocks
        writer = _DeltaWriter(delta_out, block_size)

        buffer = bytearray()
        literal_start = 0  # 尚未写出的字面数据在 buffer 中的起点
        position = 0  # 当前窗口在 buffer 中的起点
        eof = False
        rolling = False  # s1/s2 是否对应当前窗口
        s1 = s2 = 0

        while True:
            if not eof and len(buffer) <= position + block_size:
                # 丢弃已写出的数据，再读取下一段
                if literal_start:
                    del buffer[:literal_start]
                    position -= literal_start
                    literal_start = 0
                chunk = target.read(self.chunk_size)
                if chunk:
                    buffer += chunk
                else:
                    eof = True
                continue

            end = position + block_size
            if end > len(buffer):
                break

            if not full_blocks:
                # 没有可匹配的完整块，窗口直接跳到已读数据的最后一块
                if eof:
                    break
                position = len(buffer) - block_size
            else:
                if not rolling:
                    s1, s2 = weak_checksum(buffer[position:end])
                    rolling = True

                weak = s1 | (s2 << 16)
                if weak in full_blocks:
                    index = signature.find(weak, bytes(buffer[position:end]))
                    if index is not None:
                        writer.add_literal(bytes(buffer[literal_start:position]))
                        writer.add_copy(index * block_size, block_size)
                        position = literal_start = end
                        rolling = False
                        continue

                # 窗口右移一个字节
                if end < len(buffer):
                    old_val = buffer[position]
                    s1 = (s1 - old_val + buffer[end]) & 0xFFFF
                    s2 = (s2 - block_size * old_val + s1) & 0xFFFF
                position += 1

            if position - literal_start >= MAX_LITERAL_SIZE + block_size:
                flush_end = position - block_size
                writer.add_literal(bytes(buffer[literal_start:flush_end]))
                literal_start = flush_end

        # 末尾不足一块的数据只与旧文件的末尾块比较
        length = len(buffer)
        if signature.tail is not None:
            tail_offset, tail_length, tail_weak, tail_strong = signature.tail
            tail_start = length - tail_length
            if tail_start >= literal_start:
                window = bytes(buffer[tail_start:])
                s1, s2 = weak_checksum(window)
                if s1 | (s2 << 16) == tail_weak and strong_checksum(window) == tail_strong:
                    writer.add_literal(bytes(buffer[literal_start:tail_start]))
                    writer.add_copy(tail_offset, tail_length)
                    literal_start = length

        writer.add_literal(bytes(buffer[literal_start:]))
        writer.close()

    def apply_delta(self, base: IO[bytes], delta_in: IO[bytes], out: IO[bytes]) -> None:
        """将差分应用到旧文件(必须可 seek)，写出新文件"""
        _read_header(delta_in, DELTA_MAGIC, "差分")

        while True:
            op = delta_in.read(1)
            match op:
                case b"C":
                    offset, length = _COPY.unpack(_read_exact(delta_in, _COPY.size, "差分指令"))
                    base.seek(offset)
                    while length > 0:
                        chunk = base.read(min(length, self.chunk_size))
                        if not chunk:
                            raise EngineError(f"差分引用超出旧文件范围: 偏移 {offset}")
                        out.write(chunk)
                        length -= len(chunk)
                case b"L":
                    (length,) = _LENGTH.unpack(_read_exact(delta_in, _LENGTH.size, "差分指令"))
                    out.write(_read_exact(delta_in, length, "差分数据"))
                case b"E":
                    return
                case b"":
                    raise EngineError("差分数据缺少结束标记")
                case _:
                    raise EngineError(f"未知的差分指令: {op!r}")

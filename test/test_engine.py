import io
import random

import pytest
from conftest import sample_bytes

from delta_pack.engine import (
    DELTA_MAGIC,
    MAX_BLOCK_SIZE,
    MAX_LITERAL_SIZE,
    MIN_BLOCK_SIZE,
    RollingChecksumEngine,
    choose_block_size,
    weak_checksum,
)
from delta_pack.errors import EngineError


class ChunkedReader(io.BytesIO):
    """只允许按指定大小读取的流"""

    def read(self, size: int | None = -1) -> bytes:
        if size is None or size < 0:
            raise AssertionError("不允许一次读取整个文件")
        return super().read(size)


def make_delta(engine: RollingChecksumEngine, base: bytes, target: bytes) -> bytes:
    signature = io.BytesIO()
    engine.build_signature(io.BytesIO(base), signature)
    signature.seek(0)

    delta = io.BytesIO()
    engine.build_delta(ChunkedReader(target), signature, delta)
    return delta.getvalue()


def apply(engine: RollingChecksumEngine, base: bytes, delta: bytes) -> bytes:
    out = io.BytesIO()
    engine.apply_delta(io.BytesIO(base), io.BytesIO(delta), out)
    return out.getvalue()


def test_choose_block_size_policy() -> None:
    assert choose_block_size(None) == 2048
    assert choose_block_size(0) == MIN_BLOCK_SIZE
    assert choose_block_size(100 * 1024 * 1024) == 10240
    assert choose_block_size(1 << 40) == MAX_BLOCK_SIZE
    assert choose_block_size(10_000_000) % 8 == 0


def test_rolling_update_matches_direct_checksum() -> None:
    data = sample_bytes(600)
    size = 64
    s1, s2 = weak_checksum(data[:size])
    for position in range(1, 100):
        old_val = data[position - 1]
        s1 = (s1 - old_val + data[position + size - 1]) & 0xFFFF
        s2 = (s2 - size * old_val + s1) & 0xFFFF
        assert (s1, s2) == weak_checksum(data[position : position + size])


def test_delta_reconstructs_modified_file() -> None:
    engine = RollingChecksumEngine()
    base = sample_bytes(20000)
    target = base[:5000] + b"INSERTED" + base[5000:15000] + base[16000:]

    delta = make_delta(engine, base, target)

    assert delta.startswith(DELTA_MAGIC)
    assert apply(engine, base, delta) == target
    assert len(delta) < len(target) // 4


def test_identical_file_delta_is_copy_only() -> None:
    engine = RollingChecksumEngine(block_size=64)
    base = sample_bytes(1000)  # 末尾块不足 64 字节

    delta = make_delta(engine, base, base)

    assert apply(engine, base, delta) == base
    # 头部 + 一条合并后的 COPY 指令 + 结束标记
    assert len(delta) == 9 + 13 + 1


@pytest.mark.parametrize(
    ("base", "target"),
    [
        (b"", b"brand new content"),
        (b"old content", b""),
        (b"", b""),
        (b"short", b"shorter"),
    ],
)
def test_degenerate_inputs(base: bytes, target: bytes) -> None:
    engine = RollingChecksumEngine(block_size=16)

    assert apply(engine, base, make_delta(engine, base, target)) == target


def test_delta_with_small_chunks_reconstructs_file() -> None:
    engine = RollingChecksumEngine(block_size=64, chunk_size=100)
    base = sample_bytes(20000)
    target = base[:7000] + b"INSERTED" + base[7000:12000] + sample_bytes(3000, seed=5) + base[12000:]

    delta = make_delta(engine, base, target)

    assert apply(engine, base, delta) == target
    assert len(delta) < len(target) // 2


def test_long_literal_run_is_written_while_streaming() -> None:
    rng = random.Random(1)
    base = rng.randbytes(4096)
    target = rng.randbytes(MAX_LITERAL_SIZE + 3000) + base
    engine = RollingChecksumEngine(block_size=512, chunk_size=4096)

    delta = make_delta(engine, base, target)

    assert apply(engine, base, delta) == target
    # 新数据全部作为字面数据，旧文件整体只需一条 COPY
    assert len(delta) < len(target) - len(base) + 64

def test_block_moved_to_new_offset_is_copied() -> None:
    engine = RollingChecksumEngine(block_size=32)
    block_a = sample_bytes(320, seed=3)
    block_b = sample_bytes(320, seed=11)
    base = block_a + block_b
    target = block_b + b"!" + block_a

    delta = make_delta(engine, base, target)

    assert apply(engine, base, delta) == target
    assert len(delta) < 100


def test_build_delta_rejects_invalid_signature() -> None:
    engine = RollingChecksumEngine()

    with pytest.raises(EngineError):
        engine.build_delta(io.BytesIO(b"data"), io.BytesIO(b"not a signature"), io.BytesIO())


def test_apply_delta_rejects_truncated_delta() -> None:
    engine = RollingChecksumEngine(block_size=16)
    base = sample_bytes(200)
    delta = make_delta(engine, base, base + b"tail")

    with pytest.raises(EngineError):
        apply(engine, base, delta[:-1])


def test_apply_delta_rejects_copy_beyond_base() -> None:
    engine = RollingChecksumEngine(block_size=16)
    base = sample_bytes(200)
    delta = make_delta(engine, base, base)

    with pytest.raises(EngineError):
        apply(engine, base[:100], delta)


def test_invalid_block_size() -> None:
    with pytest.raises(ValueError):
        RollingChecksumEngine(block_size=0)

import logging
import shutil
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from .errors import PackIOError
from .hashing import calculate_hash
from .orchestrator import StagedArtifact

# 差分与二进制数据压缩收益有限，优先保证打包速度
COMPRESS_LEVEL = 1


@dataclass(frozen=True)
class ArchiveResult:
    """写完的压缩包，大小与哈希基于最终文件内容"""

    path: Path
    size: int
    sha256: str
    arcnames: tuple[str, ...]

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def url(self) -> str:
        return f"./{self.path.name}"


def split_volumes(artifacts: Iterable[StagedArtifact], split_size: int | None) -> list[list[StagedArtifact]]:
    """按暂存文件大小把文件分组，每组总大小不超过 split_size；单个超大文件独占一组"""
    artifacts = [artifact for artifact in artifacts if not artifact.removed]
    if not split_size:
        return [artifacts] if artifacts else []

    volumes: list[list[StagedArtifact]] = []
    current: list[StagedArtifact] = []
    current_size = 0
    for artifact in artifacts:
        size = artifact.size
        if current and current_size + size > split_size:
            volumes.append(current)
            current, current_size = [], 0
        current.append(artifact)
        current_size += size

    if current:
        volumes.append(current)
    return volumes


def bundle(
    artifacts: Iterable[StagedArtifact],
    archive_name: str,
    output_dir: Path,
    *,
    chunk_size: int = 1024 * 1024,
    logger: logging.Logger | None = None,
) -> ArchiveResult | None:
    """把暂存文件打包为 ZIP，每个文件写入后立即删除

    条目使用 ZIP 默认的固定时间戳，相同的输入得到相同的压缩包字节。

    Args:
        artifacts: 暂存文件，按传入顺序写入
        archive_name: 压缩包文件名，已存在时覆盖
        output_dir: 输出目录
        chunk_size: 复制缓冲区大小
        logger: 日志记录器

    Returns:
        压缩包信息；没有可打包的文件时不创建压缩包，返回 None

    Raises:
        PackIOError: 创建压缩包失败

    """
    eligible = [artifact for artifact in artifacts if not artifact.removed]
    archive_path = Path(output_dir) / archive_name

    if not eligible:
        if logger:
            logger.info(f"没有需要打包的文件，不创建压缩包: {archive_name}")
        return None

    current: StagedArtifact | None = None
    try:
        archive_path.unlink(missing_ok=True)

        with zipfile.ZipFile(archive_path, "w", zipfile.ZIP_DEFLATED, compresslevel=COMPRESS_LEVEL) as zf:
            for current in eligible:
                force_zip64 = current.size >= zipfile.ZIP64_LIMIT
                with current.path.open("rb") as src, zf.open(current.arcname, "w", force_zip64=force_zip64) as dst:
                    shutil.copyfileobj(src, dst, chunk_size)

                current.path.unlink()
            current = None

        size = archive_path.stat().st_size
        sha256 = calculate_hash(archive_path)

    except OSError as e:
        archive_path.unlink(missing_ok=True)
        path = current.arcname if current else archive_name
        raise PackIOError(f"创建压缩包失败: {archive_name}: {path}: {e}", path=path, stage="archive") from e

    if logger:
        logger.info(f"✓ 已创建压缩包: {archive_name} ({len(eligible)} 个文件, {size} 字节)")

    return ArchiveResult(path=archive_path, size=size, sha256=sha256, arcnames=tuple(artifact.arcname for artifact in eligible))

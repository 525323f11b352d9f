import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from .errors import PackIOError
from .hashing import calculate_hash


@dataclass(frozen=True)
class ChangedFile:
    """新旧版本中都存在但内容不同的文件"""

    rel_path: str
    old_path: Path
    new_path: Path
    base_hash: str
    new_hash: str


@dataclass(frozen=True)
class AddedFile:
    """仅存在于新版本的文件"""

    rel_path: str
    new_path: Path


@dataclass
class ChangeSet:
    """变更集合: changed / added / removed 三者互不相交，均按相对路径升序"""

    changed: list[ChangedFile] = field(default_factory=list)
    added: list[AddedFile] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.changed or self.added or self.removed)

    def __str__(self) -> str:
        return f"ChangeSet(changed={len(self.changed)}, added={len(self.added)}, removed={len(self.removed)})"


def default_workers() -> int:
    return min(32, (os.cpu_count() or 1) + 4)


def _hash_pair(rel_path: str, old_path: Path, new_path: Path) -> tuple[str, str]:
    try:
        return calculate_hash(old_path), calculate_hash(new_path)
    except OSError as e:
        raise PackIOError(f"计算哈希失败: {rel_path}: {e}", path=rel_path, stage="hash") from e


def classify(
    old_map: dict[str, Path],
    new_map: dict[str, Path],
    *,
    workers: int | None = None,
    logger: logging.Logger | None = None,
) -> ChangeSet:
    """比较新旧两个扫描结果，划分为 changed / added / removed

    Args:
        old_map: 旧版本扫描结果
        new_map: 新版本扫描结果
        workers: 计算哈希的线程数,默认根据 CPU 数量决定
        logger: 日志记录器

    Returns:
        ChangeSet

    Raises:
        PackIOError: 读取任一文件失败

    """
    common = sorted(old_map.keys() & new_map.keys())
    added = sorted(new_map.keys() - old_map.keys())
    removed = sorted(old_map.keys() - new_map.keys())

    changes = ChangeSet(
        added=[AddedFile(rel_path, new_map[rel_path]) for rel_path in added],
        removed=removed,
    )

    # 结果按提交顺序收集，与完成顺序无关
    with ThreadPoolExecutor(max_workers=workers or default_workers()) as executor:
        futures = [executor.submit(_hash_pair, rel_path, old_map[rel_path], new_map[rel_path]) for rel_path in common]
        try:
            for rel_path, future in zip(common, futures):
                base_hash, new_hash = future.result()
                if base_hash == new_hash:
                    continue

                changes.changed.append(ChangedFile(rel_path, old_map[rel_path], new_map[rel_path], base_hash, new_hash))
        except BaseException:
            executor.shutdown(wait=True, cancel_futures=True)
            raise

    if logger:
        logger.info(f"比较完成: 变更 {len(changes.changed)} 个, 新增 {len(changes.added)} 个, 删除 {len(changes.removed)} 个, 未变 {len(common) - len(changes.changed)} 个")

    return changes

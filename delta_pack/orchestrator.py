import logging
import shutil
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable

from .classifier import AddedFile, ChangedFile, ChangeSet, default_workers
from .engine import DeltaEngine
from .errors import EngineError, PackIOError, ValidationError
from .manifest import AddFileEntry, PatchFileEntry

DELTA_EXT = "octodelta"
FULL_EXT = "full"
SIGNATURE_EXT = "signature"


def sanitize_path(rel_path: str) -> str:
    """将相对路径转换为平铺的文件名: `a/b.txt` -> `a__b.txt`"""
    return rel_path.replace("/", "__")


@dataclass(frozen=True)
class NamingContext:
    """暂存文件命名所需的版本信息"""

    base_version: str
    version: str

    def artifact_name(self, rel_path: str, ext: str) -> str:
        """`路径.v旧版本_to_v新版本.扩展名`，已发布的客户端依赖该格式"""
        return f"{sanitize_path(rel_path)}.v{self.base_version}_to_v{self.version}.{ext}"

    def signature_name(self, rel_path: str) -> str:
        return f"{sanitize_path(rel_path)}.v{self.base_version}.{SIGNATURE_EXT}"


def check_delta_names(changed: Iterable[ChangedFile], naming: NamingContext) -> None:
    """检查变更文件平铺后的差分文件名是否重复

    差分文件名会写入清单，不能改名；`a/b.txt` 与 `a__b.txt` 同时变更时无法制作补丁。

    Raises:
        ValidationError: 两个变更文件对应同一个差分文件名

    """
    seen: dict[str, str] = {}
    for item in changed:
        name = naming.artifact_name(item.rel_path, DELTA_EXT)
        if name in seen:
            raise ValidationError(f"差分文件名冲突: {seen[name]} 与 {item.rel_path} 都对应 {name}")
        seen[name] = item.rel_path


def full_copy_names(added: Iterable[AddedFile], naming: NamingContext) -> dict[str, str]:
    """新增文件的暂存文件名，平铺后重名的文件依次追加序号

    暂存文件名不写入清单，压缩包内使用原始相对路径。

    """
    names: dict[str, str] = {}
    used: set[str] = set()
    for item in added:
        name = candidate = naming.artifact_name(item.rel_path, FULL_EXT)
        index = 1
        while candidate in used:
            candidate = f"{name}.{index}"
            index += 1
        used.add(candidate)
        names[item.rel_path] = candidate
    return names


@dataclass(frozen=True)
class StagedArtifact:
    """等待打包的暂存文件"""

    path: Path
    arcname: str
    removed: bool = False

    @property
    def size(self) -> int:
        return self.path.stat().st_size


@dataclass
class StagingResult:
    """暂存阶段的产出，列表顺序与 ChangeSet 一致"""

    patch_entries: list[PatchFileEntry] = field(default_factory=list)
    add_entries: list[AddFileEntry] = field(default_factory=list)
    patch_artifacts: list[StagedArtifact] = field(default_factory=list)
    add_artifacts: list[StagedArtifact] = field(default_factory=list)


def _run_engine(stage: str, rel_path: str, func: Callable[..., None], *args) -> None:
    try:
        func(*args)
    except OSError:
        raise
    except Exception as e:
        raise EngineError(f"差分引擎失败[{stage}]: {rel_path}: {e}", path=rel_path, stage=stage) from e


def build_delta(
    changed: ChangedFile,
    output_dir: Path,
    naming: NamingContext,
    *,
    engine: DeltaEngine,
    logger: logging.Logger | None = None,
) -> PatchFileEntry:
    """为单个变更文件生成差分文件

    先由旧文件生成签名(临时文件)，再由新文件与签名生成差分。
    签名文件无论成功与否都会被删除。

    Raises:
        PackIOError: 读写文件失败
        EngineError: 差分引擎失败

    """
    rel_path = changed.rel_path
    delta_name = naming.artifact_name(rel_path, DELTA_EXT)
    delta_path = output_dir / delta_name
    signature_path = output_dir / naming.signature_name(rel_path)

    if logger:
        logger.info(f"差分生成中: {rel_path}")

    stage = "signature"
    try:
        try:
            with changed.old_path.open("rb") as base_file, signature_path.open("wb") as signature_file:
                _run_engine(stage, rel_path, engine.build_signature, base_file, signature_file)

            stage = "delta"
            with changed.new_path.open("rb") as new_file, signature_path.open("rb") as signature_file, delta_path.open("wb") as delta_file:
                _run_engine(stage, rel_path, engine.build_delta, new_file, signature_file, delta_file)
        finally:
            signature_path.unlink(missing_ok=True)

        size = delta_path.stat().st_size

    except OSError as e:
        delta_path.unlink(missing_ok=True)
        raise PackIOError(f"生成差分失败[{stage}]: {rel_path}: {e}", path=rel_path, stage=stage) from e

    except EngineError:
        delta_path.unlink(missing_ok=True)
        raise

    return PatchFileEntry(
        path=rel_path,
        base_sha256=changed.base_hash,
        new_sha256=changed.new_hash,
        delta=delta_name,
        size=size,
    )


def stage_full_copy(
    added: AddedFile,
    output_dir: Path,
    naming: NamingContext,
    *,
    staged_name: str | None = None,
    logger: logging.Logger | None = None,
) -> AddFileEntry:
    """新增文件没有基础版本，直接完整复制到暂存文件，staged_name 为空时使用标准命名"""
    staged_path = output_dir / (staged_name or naming.artifact_name(added.rel_path, FULL_EXT))

    if logger:
        logger.debug(f"复制新增文件: {added.rel_path}")

    try:
        shutil.copyfile(added.new_path, staged_path)
    except OSError as e:
        staged_path.unlink(missing_ok=True)
        raise PackIOError(f"复制新增文件失败: {added.rel_path}: {e}", path=added.rel_path, stage="copy") from e

    return AddFileEntry(archive_path=added.rel_path, target_path=added.rel_path)


def staged_paths(changes: ChangeSet, output_dir: Path, naming: NamingContext) -> list[Path]:
    """本次运行可能产生的全部暂存文件路径(含签名)"""
    paths: list[Path] = []
    for changed in changes.changed:
        paths.append(output_dir / naming.artifact_name(changed.rel_path, DELTA_EXT))
        paths.append(output_dir / naming.signature_name(changed.rel_path))
    for name in full_copy_names(changes.added, naming).values():
        paths.append(output_dir / name)
    return paths


def cleanup_staged(changes: ChangeSet, output_dir: Path, naming: NamingContext, *, logger: logging.Logger | None = None) -> int:
    """删除本次运行的暂存文件，返回删除数量"""
    removed = 0
    for path in staged_paths(changes, output_dir, naming):
        try:
            path.unlink()
            removed += 1
        except FileNotFoundError:
            continue
        except OSError as e:
            if logger:
                logger.warning(f"删除暂存文件失败: {path}: {e}")

    if logger and removed:
        logger.info(f"已清理暂存文件 {removed} 个")
    return removed


def stage_all(
    changes: ChangeSet,
    output_dir: Path,
    naming: NamingContext,
    *,
    engine: DeltaEngine,
    workers: int | None = None,
    logger: logging.Logger | None = None,
) -> StagingResult:
    """并行生成全部差分文件与新增文件副本

    写入前先确认每个文件的暂存文件名互不相同，之后可以并行写入；结果按 ChangeSet 的顺序收集。
    任一文件失败时取消剩余任务，删除已生成的暂存文件后抛出异常。

    Raises:
        ValidationError: 变更文件的差分文件名冲突，此时不写入任何文件

    """
    output_dir = Path(output_dir)
    result = StagingResult()

    check_delta_names(changes.changed, naming)
    full_names = full_copy_names(changes.added, naming)

    with ThreadPoolExecutor(max_workers=workers or default_workers()) as executor:
        delta_futures: list[Future[PatchFileEntry]] = [
            executor.submit(build_delta, changed, output_dir, naming, engine=engine, logger=logger) for changed in changes.changed
        ]
        add_futures: list[Future[AddFileEntry]] = [
            executor.submit(stage_full_copy, added, output_dir, naming, staged_name=full_names[added.rel_path], logger=logger)
            for added in changes.added
        ]

        try:
            for future in delta_futures:
                entry = future.result()
                result.patch_entries.append(entry)
                result.patch_artifacts.append(StagedArtifact(output_dir / entry.delta, entry.delta))

            for added, future in zip(changes.added, add_futures):
                entry = future.result()
                result.add_entries.append(entry)
                result.add_artifacts.append(StagedArtifact(output_dir / full_names[added.rel_path], entry.archive_path))

        except BaseException:
            executor.shutdown(wait=True, cancel_futures=True)
            cleanup_staged(changes, output_dir, naming, logger=logger)
            raise

    return result

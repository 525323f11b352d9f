import logging
from dataclasses import dataclass, field
from pathlib import Path

from .archive import ArchiveResult, bundle, split_volumes
from .classifier import ChangeSet, classify
from .config import MakerConfig
from .engine import DeltaEngine, RollingChecksumEngine
from .errors import PackIOError, ValidationError
from .manifest import AddArchive, ArchiveDescriptor, ManifestDocument, PatchArchive, compose
from .orchestrator import NamingContext, StagingResult, cleanup_staged, stage_all
from .scanner import scan

# 日志配置
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass
class BuildReport:
    """一次补丁制作的结果"""

    changes: ChangeSet
    manifest: ManifestDocument
    manifest_path: Path
    archives: list[ArchiveResult] = field(default_factory=list)


def patch_archive_name(naming: NamingContext, part: int | None = None) -> str:
    if part is None:
        return f"patch_v{naming.base_version}_to_v{naming.version}.zip"
    return f"patch_v{naming.base_version}_to_v{naming.version}_part{part:03d}.zip"


def add_archive_name(naming: NamingContext) -> str:
    return f"add_v{naming.base_version}_to_v{naming.version}.zip"


class PatchPackager:
    """增量补丁打包器"""

    def __init__(
        self,
        config: MakerConfig,
        *,
        engine: DeltaEngine | None = None,
        log_level: int = logging.INFO,
        logger: logging.Logger | None = None,
    ):
        """初始化补丁打包器

        Args:
            config: 补丁制作配置
            engine: 差分引擎,默认使用 RollingChecksumEngine
            log_level: 日志级别
            logger: 自定义日志记录器,为空时创建控制台日志

        """
        self.config = config
        self.engine: DeltaEngine = engine or RollingChecksumEngine(block_size=config.block_size)
        self.naming = NamingContext(base_version=config.base_version, version=config.version)

        # 初始化日志
        self.logger = logger or self._setup_logger(log_level)

    def _setup_logger(self, level: int = logging.INFO) -> logging.Logger:
        """设置日志记录器

        Args:
            level: 日志级别，默认为INFO

        Returns:
            配置好的日志记录器

        """
        logger = logging.getLogger("delta-pack")
        logger.setLevel(level)

        # 清除已存在的处理器
        if logger.handlers:
            logger.handlers.clear()

        # 创建格式化器
        formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

        # 创建控制台处理器
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

        return logger

    @property
    def output_dir(self) -> Path:
        return Path(self.config.out_dir).absolute()

    @property
    def manifest_path(self) -> Path:
        return self.output_dir / self.config.manifest_name

    def validate(self) -> None:
        """运行前校验，目录不存在时不产生任何输出

        Raises:
            ValidationError: 配置非法或目录不存在

        """
        self.config.validate(self.logger)

        if not Path(self.config.old_dir).is_dir():
            raise ValidationError(f"旧版本的目录不存在: {self.config.old_dir}")

        if not Path(self.config.new_dir).is_dir():
            raise ValidationError(f"新版本的目录不存在: {self.config.new_dir}")

    def stale_outputs(self) -> list[Path]:
        """上次以相同版本运行留下的清单与压缩包(含分卷)"""
        patch_name = patch_archive_name(self.naming)
        stale = [self.manifest_path, self.output_dir / patch_name, self.output_dir / add_archive_name(self.naming)]
        stale.extend(sorted(self.output_dir.glob(f"{patch_name.removesuffix('.zip')}_part*.zip")))
        return [path for path in stale if path.is_file()]

    def prepare_output(self) -> None:
        """创建输出目录并删除上次运行留下的清单与压缩包，失败的运行不会留下清单"""
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            for path in self.stale_outputs():
                path.unlink()
                self.logger.info(f"已删除旧文件: {path}")
        except OSError as e:
            raise PackIOError(f"准备输出目录失败: {self.output_dir}: {e}", path=str(self.output_dir), stage="prepare") from e

    def scan(self) -> tuple[dict[str, Path], dict[str, Path]]:
        """扫描新旧两个目录"""
        self.logger.info(f"开始扫描目录: {self.config.old_dir} -> {self.config.new_dir}")
        old_map = scan(self.config.old_dir, self.config.exclude_globs, mode=self.config.exclude_mode, logger=self.logger)
        new_map = scan(self.config.new_dir, self.config.exclude_globs, mode=self.config.exclude_mode, logger=self.logger)
        return old_map, new_map

    def build_archives(self, staging: StagingResult, results: list[ArchiveResult]) -> list[ArchiveDescriptor]:
        """把暂存文件打包为差分压缩包和新增文件压缩包，写完的压缩包依次追加到 results"""
        descriptors: list[ArchiveDescriptor] = []

        entries = {entry.delta: entry for entry in staging.patch_entries}
        volumes = split_volumes(staging.patch_artifacts, self.config.split_size)
        for index, volume in enumerate(volumes, start=1):
            name = patch_archive_name(self.naming, index if len(volumes) > 1 else None)
            result = bundle(volume, name, self.output_dir, logger=self.logger)
            if result is None:
                continue

            results.append(result)
            descriptors.append(
                PatchArchive(
                    archive_name=result.name,
                    url=result.url,
                    size=result.size,
                    sha256=result.sha256,
                    files=tuple(entries[arcname] for arcname in result.arcnames),
                )
            )

        if not volumes:
            self.logger.info("差分文件不存在，不创建差分压缩包")

        result = bundle(staging.add_artifacts, add_archive_name(self.naming), self.output_dir, logger=self.logger)
        if result is not None:
            results.append(result)
            descriptors.append(
                AddArchive(
                    archive_name=result.name,
                    url=result.url,
                    size=result.size,
                    sha256=result.sha256,
                    entries=tuple(staging.add_entries),
                )
            )

        return descriptors

    def run(self) -> BuildReport:
        """执行一次完整的补丁制作

        Returns:
            制作结果

        Raises:
            ValidationError: 目录不存在或配置非法
            PackIOError: 文件读写失败
            EngineError: 差分引擎失败

        """
        self.validate()
        self.prepare_output()

        old_map, new_map = self.scan()
        changes = classify(old_map, new_map, workers=self.config.workers, logger=self.logger)

        archives: list[ArchiveResult] = []
        try:
            staging = stage_all(changes, self.output_dir, self.naming, engine=self.engine, workers=self.config.workers, logger=self.logger)
            descriptors = self.build_archives(staging, archives)

            manifest = compose(self.config.version, self.config.base_version, descriptors, changes.removed, self.config.mandatory)
            manifest.write(self.manifest_path)

        except BaseException:
            cleanup_staged(changes, self.output_dir, self.naming, logger=self.logger)
            for archive in archives:
                archive.path.unlink(missing_ok=True)
            raise

        # 输出统计信息
        self.logger.info("=== 差分制作完成 ===")
        self.logger.info(f"变更文件数: {len(changes.changed)}")
        self.logger.info(f"新增文件数: {len(changes.added)}")
        self.logger.info(f"删除文件数: {len(changes.removed)}")
        self.logger.info(f"输出目录: {self.output_dir}")
        self.logger.info(f"清单文件: {self.manifest_path}")

        return BuildReport(changes=changes, manifest=manifest, manifest_path=self.manifest_path, archives=archives)

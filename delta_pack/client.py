"""
增量更新客户端

支持功能:
- 读取更新清单(HTTP 地址或本地文件)
- 压缩包下载(带进度回调)与完整性校验(大小 + SHA256)
- 差分应用前后的文件哈希校验
- 自动备份和回滚
- 自动重试机制

第三方库:
- httpx: 现代化的 HTTP 客户端
- tenacity: 强大的重试库
"""

import hashlib
import json
import logging
import os
import shutil
import sys
import tempfile
import zipfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import IO, Callable, Optional
from urllib.parse import urljoin, urlparse

import httpx
from benedict import benedict
from packaging.version import InvalidVersion
from packaging.version import parse as parse_version
from tenacity import before_sleep_log, retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .engine import DeltaEngine, RollingChecksumEngine
from .errors import (
    ApplyError,
    BackupError,
    DownloadError,
    EngineError,
    ManifestError,
    RestoreError,
    VerificationError,
)
from .hashing import calculate_hash
from .manifest import AddArchive, ManifestDocument, PatchArchive


def setup_logger():
    """配置 logging 日志系统"""
    # 创建日志记录器
    logger = logging.getLogger("delta-pack-client")
    logger.setLevel(logging.DEBUG)

    # 避免重复添加处理器
    if logger.handlers:
        return logger

    # 控制台输出格式
    console_formatter = logging.Formatter("%(asctime)s | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d | %(message)s", datefmt="%Y-%m-%d %H:%M:%S")

    # 控制台处理器
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    return logger


# ============================================================================
# 配置数据类
# ============================================================================


@dataclass
class ClientConfig:
    """更新客户端配置类"""

    manifest_url: str  # 清单地址，支持 http(s) 地址或本地文件路径
    install_dir: Path = Path.cwd() / "client"  # 客户端安装目录，补丁应用到这里
    version_file: str = "local_version.json"  # 本地版本文件名称，一般不用修改
    field_version: str = "version"  # 本地版本文件中的版本字段名称
    timeout: float = 30.0  # 请求超时时间，单位秒
    chunk_size: int = 8192  # 下载文件时的 chunk 大小，单位字节
    backup_excludes: tuple = field(
        default_factory=lambda: (
            ".backup",
            "*.pyc",
            "__pycache__",
            ".git",
        )
    )  # 备份时需要忽略的文件模式
    verify_ssl: bool = True  # 是否验证 SSL 证书
    progress_callback: Optional[Callable[[int, int], None]] = None  # 下载进度回调函数，参数为 (已下载字节数, 总字节数)

    def __post_init__(self) -> None:
        """初始化后校验配置"""
        self.install_dir = Path(self.install_dir)
        if not self.install_dir.exists():
            os.makedirs(self.install_dir)


# ============================================================================
# 主更新器类
# ============================================================================


class PatchClient:
    """
    增量更新客户端

    使用示例:
        config = ClientConfig(
            manifest_url="https://example.com/releases/latest.json",
            install_dir=Path("client"),
        )
        with PatchClient(config) as client:
            client.check_and_update()
    """

    def __init__(self, config: ClientConfig, *, engine: DeltaEngine | None = None, transport: httpx.BaseTransport | None = None) -> None:
        """
        初始化更新客户端

        Args:
            config: 客户端配置对象
            engine: 差分引擎，需要与制作补丁时使用的引擎一致
            transport: 自定义 httpx 传输层
        """
        self.config = config
        self.engine: DeltaEngine = engine or RollingChecksumEngine()
        self.logger = setup_logger()

        # 路径配置
        self.install_dir = config.install_dir
        self.version_file = config.install_dir / config.version_file
        self.backup_dir = config.install_dir / ".backup"

        # httpx 客户端配置
        self._http_client = httpx.Client(timeout=config.timeout, verify=config.verify_ssl, follow_redirects=True, transport=transport)

    def __enter__(self):
        """上下文管理器入口"""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """上下文管理器出口,确保关闭 httpx 客户端"""
        self.close()
        return False

    def close(self) -> None:
        self._http_client.close()

    @property
    def is_remote(self) -> bool:
        return urlparse(self.config.manifest_url).scheme in ("http", "https")

    # -------------------------------------------------------------------------
    # 版本管理方法
    # -------------------------------------------------------------------------

    def get_local_version(self) -> Optional[str]:
        """
        获取本地版本号

        Returns:
            本地版本号,如果不存在则返回 None
        """
        if not self.version_file.exists():
            self.logger.debug("本地版本文件不存在")
            return None

        try:
            with open(self.version_file, "r", encoding="utf-8") as f:
                data = benedict(json.load(f))
                return data.get(self.config.field_version)
        except (json.JSONDecodeError, IOError) as e:
            self.logger.error(f"读取本地版本文件失败: {e}")
            return None

    def compare_versions(self, local: str, remote: str) -> bool:
        """
        比较版本号

        Returns:
            True 表示需要更新
        """
        if remote == local:
            self.logger.info("当前已是最新版本，无需更新")
            return False

        try:
            if parse_version(remote) > parse_version(local):
                self.logger.info(f"发现新版本: {local} -> {remote}")
            else:
                self.logger.info(f"发现降级版本：{local} -> {remote}")
        except InvalidVersion:
            self.logger.info(f"发现新版本: {local} -> {remote}")

        return True

    def update_version_file(self, version: str) -> None:
        """
        原子性更新本地版本文件

        Raises:
            ApplyError: 写入失败
        """
        version_data = {self.config.field_version: version, "update_time": datetime.now().isoformat()}

        temp_file = self.version_file.with_suffix(".tmp")
        try:
            with open(temp_file, "w", encoding="utf-8") as f:
                json.dump(version_data, f, indent=2, ensure_ascii=False)

            temp_file.replace(self.version_file)
        except OSError as e:
            raise ApplyError(f"更新版本文件失败: {e}") from e

        self.logger.info(f"版本更新已完成: {version} ✓")

    # -------------------------------------------------------------------------
    # 下载方法
    # -------------------------------------------------------------------------

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        before_sleep=before_sleep_log(logging.getLogger(__name__), logging.WARNING),
        reraise=True,
    )
    def _get_text(self, url: str) -> str:
        response = self._http_client.get(url)
        response.raise_for_status()
        return response.text

    def fetch_manifest(self) -> ManifestDocument:
        """
        获取更新清单

        Raises:
            ManifestError: 清单获取或解析失败
        """
        try:
            if self.is_remote:
                text = self._get_text(self.config.manifest_url)
            else:
                text = Path(self.config.manifest_url).read_text(encoding="utf-8")
        except httpx.HTTPError as e:
            self.logger.error(f"获取更新清单失败: {e}")
            raise ManifestError(f"无法获取更新清单: {e}") from e
        except OSError as e:
            raise ManifestError(f"读取更新清单失败: {e}") from e

        return ManifestDocument.loads(text)

    def resolve_url(self, url: str) -> str:
        """压缩包地址相对于清单地址解析"""
        if self.is_remote:
            return urljoin(self.config.manifest_url, url)
        return str(Path(self.config.manifest_url).parent / url)

    def _write_chunks(self, chunks, temp_file: IO[bytes], total_size: int) -> str:
        sha256_hash = hashlib.sha256()
        downloaded = 0

        for chunk in chunks:
            temp_file.write(chunk)
            sha256_hash.update(chunk)
            downloaded += len(chunk)

            # 调用进度回调
            if self.config.progress_callback:
                self.config.progress_callback(downloaded, total_size)

        temp_file.seek(0)
        return sha256_hash.hexdigest()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        before_sleep=before_sleep_log(logging.getLogger(__name__), logging.WARNING),
        reraise=True,
    )
    def _download(self, url: str, temp_file: IO[bytes], expected_size: int) -> str:
        temp_file.seek(0)
        temp_file.truncate()

        if not self.is_remote:
            with open(url, "rb") as f:
                return self._write_chunks(iter(lambda: f.read(self.config.chunk_size), b""), temp_file, expected_size)

        with self._http_client.stream("GET", url) as response:
            response.raise_for_status()
            total_size = int(response.headers.get("content-length", expected_size))
            return self._write_chunks(response.iter_bytes(chunk_size=self.config.chunk_size), temp_file, total_size)

    def download_archive(self, archive: PatchArchive | AddArchive) -> IO[bytes]:
        """
        下载压缩包到内存并校验大小与哈希

        Returns:
            文件对象,指针位于开头

        Raises:
            DownloadError: 下载失败
            VerificationError: 大小或哈希不匹配
        """
        url = self.resolve_url(archive.url)
        self.logger.info(f"开始下载压缩包: {archive.archive_name}")

        # 创建内存中的临时文件
        temp_file = tempfile.SpooledTemporaryFile(max_size=10 * 1024 * 1024, mode="w+b")
        try:
            file_hash = self._download(url, temp_file, archive.size)
        except (httpx.HTTPError, OSError) as e:
            temp_file.close()
            self.logger.error(f"下载失败: {e}")
            raise DownloadError(f"下载失败: {archive.archive_name}: {e}") from e

        temp_file.seek(0, os.SEEK_END)
        size = temp_file.tell()
        temp_file.seek(0)

        if size != archive.size:
            temp_file.close()
            raise VerificationError(f"大小不匹配: {archive.archive_name} 期望 {archive.size}, 实际 {size}")

        if file_hash != archive.sha256:
            temp_file.close()
            raise VerificationError(f"哈希不匹配: {archive.archive_name} 期望 {archive.sha256}, 实际 {file_hash}")

        self.logger.info(f"下载完成, SHA256: {file_hash}")
        return temp_file

    # -------------------------------------------------------------------------
    # 备份与恢复
    # -------------------------------------------------------------------------

    def backup_client(self) -> None:
        """
        备份当前客户端目录

        Raises:
            BackupError: 备份失败
        """
        self.logger.info("正在备份当前客户端...")

        try:
            # 删除旧备份
            if self.backup_dir.exists():
                shutil.rmtree(self.backup_dir)
                self.logger.debug("已删除旧备份")

            shutil.copytree(self.install_dir, self.backup_dir, ignore=shutil.ignore_patterns(*self.config.backup_excludes), dirs_exist_ok=False)

        except (shutil.Error, OSError) as e:
            self.logger.error(f"✗ 备份失败: {e}")
            raise BackupError(f"备份操作失败: {e}") from e

        self.logger.info(f"备份完成: {self.backup_dir} ✓")

    def restore_backup(self) -> None:
        """
        从备份恢复客户端

        Raises:
            RestoreError: 恢复失败
        """
        self.logger.warning("正在从备份恢复...")

        if not self.backup_dir.exists():
            raise RestoreError("备份目录不存在,无法恢复")

        try:
            # 删除当前目录内容(保留备份目录)
            for item in self.install_dir.iterdir():
                if item.name == self.backup_dir.name:
                    continue
                if item.is_dir():
                    shutil.rmtree(item)
                else:
                    item.unlink()

            # 恢复备份文件
            shutil.copytree(self.backup_dir, self.install_dir, dirs_exist_ok=True)

        except (shutil.Error, OSError) as e:
            self.logger.error(f"✗ 恢复失败: {e}")
            raise RestoreError(f"恢复操作失败: {e}") from e

        self.logger.info("恢复成功 ✓")

    # -------------------------------------------------------------------------
    # 应用补丁
    # -------------------------------------------------------------------------

    def _target(self, rel_path: str) -> Path:
        """把清单中的相对路径解析到安装目录，拒绝越界路径"""
        root = self.install_dir.resolve()
        target = (root / rel_path).resolve()
        if not target.is_relative_to(root) or target == root:
            raise ApplyError(f"非法的目标路径: {rel_path}")
        return target

    def apply_patch_archive(self, archive: PatchArchive, archive_file: IO[bytes]) -> None:
        """逐个应用差分文件，应用前后都校验哈希"""
        with zipfile.ZipFile(archive_file, "r") as zf:
            for entry in archive.files:
                target = self._target(entry.path)
                if not target.is_file():
                    raise ApplyError(f"待更新的文件不存在: {entry.path}")

                if calculate_hash(target) != entry.base_sha256:
                    raise VerificationError(f"本地文件与补丁基础版本不一致: {entry.path}")

                temp_path = target.with_name(target.name + ".update_tmp")
                try:
                    with target.open("rb") as base, zf.open(entry.delta) as delta, temp_path.open("wb") as out:
                        self.engine.apply_delta(base, delta, out)

                    if calculate_hash(temp_path) != entry.new_sha256:
                        raise VerificationError(f"应用差分后的哈希不匹配: {entry.path}")

                    os.replace(temp_path, target)
                finally:
                    temp_path.unlink(missing_ok=True)

                self.logger.debug(f"已更新: {entry.path}")

    def apply_add_archive(self, archive: AddArchive, archive_file: IO[bytes]) -> None:
        """解压新增文件到目标路径"""
        with zipfile.ZipFile(archive_file, "r") as zf:
            for entry in archive.entries:
                target = self._target(entry.target_path)
                target.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(entry.archive_path) as src, target.open("wb") as dst:
                    shutil.copyfileobj(src, dst)

                self.logger.debug(f"已新增: {entry.target_path}")

    def apply(self, manifest: ManifestDocument, archive_files: dict[str, IO[bytes]]) -> None:
        """
        应用整个清单: 差分 -> 新增 -> 删除

        Raises:
            ApplyError: 应用失败
            VerificationError: 哈希校验失败
        """
        try:
            for archive in manifest.patch_archives:
                self.apply_patch_archive(archive, archive_files[archive.archive_name])

            for archive in manifest.add_files:
                self.apply_add_archive(archive, archive_files[archive.archive_name])

            for rel_path in manifest.remove_files:
                self._target(rel_path).unlink(missing_ok=True)
                self.logger.debug(f"已删除: {rel_path}")

        except (EngineError, OSError, KeyError, zipfile.BadZipFile) as e:
            raise ApplyError(f"应用补丁失败: {e}") from e

        self.logger.info(f"补丁应用完成: 更新 {sum(len(a.files) for a in manifest.patch_archives)} 个, 新增 {sum(len(a.entries) for a in manifest.add_files)} 个, 删除 {len(manifest.remove_files)} 个")

    # -------------------------------------------------------------------------
    # 主要更新流程
    # -------------------------------------------------------------------------

    def check_and_update(self) -> ManifestDocument:
        """
        检查并执行更新，失败时恢复备份后抛出异常

        Returns:
            已应用(或本地已是最新)的清单

        Raises:
            ManifestError: 清单获取失败或本地版本与补丁基础版本不一致
            DownloadError: 下载失败
            VerificationError: 校验失败
            ApplyError: 应用失败
        """
        local_version = self.get_local_version()
        manifest = self.fetch_manifest()

        if local_version is None:
            raise ManifestError(f"本地未安装，无法应用增量更新: -> {manifest.version}")

        if not self.compare_versions(local_version, manifest.version):
            return manifest

        if local_version != manifest.base_from:
            raise ManifestError(f"本地版本 {local_version} 与补丁基础版本 {manifest.base_from} 不一致")

        if manifest.mandatory:
            self.logger.info("该更新为强制更新")

        archive_files: dict[str, IO[bytes]] = {}
        try:
            for archive in (*manifest.patch_archives, *manifest.add_files):
                archive_files[archive.archive_name] = self.download_archive(archive)

            self.backup_client()
            try:
                self.apply(manifest, archive_files)
                self.update_version_file(manifest.version)
            except (ApplyError, VerificationError) as e:
                self.logger.error(f"更新失败: {e}")
                self.restore_backup()
                self.logger.info("已恢复到更新前的状态")
                raise

        finally:
            for archive_file in archive_files.values():
                archive_file.close()

        return manifest

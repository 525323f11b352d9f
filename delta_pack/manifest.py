import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from .errors import ManifestError, PackIOError
from .types import AddArchiveInfo, AddFileInfo, LegacyManifestInfo, ManifestInfo, PatchArchiveInfo, PatchFileInfo

MANIFEST_NAME = "latest.json"


@dataclass(frozen=True)
class PatchFileEntry:
    """单个变更文件的差分描述，差分文件生成后创建"""

    path: str
    base_sha256: str
    new_sha256: str
    delta: str
    size: int

    def to_dict(self) -> PatchFileInfo:
        return {
            "path": self.path,
            "base_sha256": self.base_sha256,
            "new_sha256": self.new_sha256,
            "delta": self.delta,
            "size": self.size,
        }


@dataclass(frozen=True)
class AddFileEntry:
    """单个新增文件在压缩包内的位置与目标路径"""

    archive_path: str
    target_path: str

    def to_dict(self) -> AddFileInfo:
        return {"archive_path": self.archive_path, "target_path": self.target_path}


@dataclass(frozen=True)
class PatchArchive:
    """差分压缩包描述，大小与哈希在压缩包写完后计算"""

    archive_name: str
    url: str
    size: int
    sha256: str
    files: tuple[PatchFileEntry, ...] = ()

    def to_dict(self) -> PatchArchiveInfo:
        return {
            "archive_name": self.archive_name,
            "url": self.url,
            "size": self.size,
            "sha256": self.sha256,
            "files": [entry.to_dict() for entry in self.files],
        }


@dataclass(frozen=True)
class AddArchive:
    """新增文件压缩包描述"""

    archive_name: str
    url: str
    size: int
    sha256: str
    entries: tuple[AddFileEntry, ...] = ()

    def to_dict(self) -> AddArchiveInfo:
        return {
            "archive_name": self.archive_name,
            "url": self.url,
            "size": self.size,
            "sha256": self.sha256,
            "entries": [entry.to_dict() for entry in self.entries],
        }


ArchiveDescriptor = PatchArchive | AddArchive


@dataclass(frozen=True)
class ManifestDocument:
    """更新清单，每次运行只生成一次"""

    version: str
    base_from: str
    patch_archives: tuple[PatchArchive, ...] = ()
    add_files: tuple[AddArchive, ...] = ()
    remove_files: tuple[str, ...] = ()
    mandatory: bool = False

    def to_dict(self) -> ManifestInfo:
        return {
            "version": self.version,
            "base_from": self.base_from,
            "patch_archives": [archive.to_dict() for archive in self.patch_archives],
            "add_files": [archive.to_dict() for archive in self.add_files],
            "remove_files": list(self.remove_files),
            "mandatory": self.mandatory,
        }

    def to_legacy_dict(self) -> LegacyManifestInfo:
        """投影为旧版扁平清单，差分地址为 `压缩包地址#差分文件名`"""
        return {
            "version": self.version,
            "base_from": self.base_from,
            "patches": [
                {
                    "path": entry.path,
                    "base_sha256": entry.base_sha256,
                    "new_sha256": entry.new_sha256,
                    "url": f"{archive.url}#{entry.delta}",
                    "size": entry.size,
                }
                for archive in self.patch_archives
                for entry in archive.files
            ],
            "mandatory": self.mandatory,
        }

    def dumps(self) -> str:
        """序列化为 JSON，字段顺序与列表顺序固定，相同输入得到相同字节"""
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False) + "\n"

    def write(self, path: Path) -> Path:
        """原子性写入清单文件"""
        path = Path(path)
        temp_file = path.with_name(path.name + ".tmp")
        try:
            with temp_file.open("w", encoding="utf-8", newline="\n") as f:
                f.write(self.dumps())
            os.replace(temp_file, path)
        except OSError as e:
            temp_file.unlink(missing_ok=True)
            raise PackIOError(f"写入清单失败: {path}: {e}", path=str(path), stage="manifest") from e
        return path

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ManifestDocument":
        """从 JSON 字典解析清单

        Raises:
            ManifestError: 缺少字段或字段类型错误

        """
        try:
            return cls(
                version=str(data["version"]),
                base_from=str(data["base_from"]),
                patch_archives=tuple(
                    PatchArchive(
                        archive_name=item["archive_name"],
                        url=item["url"],
                        size=int(item["size"]),
                        sha256=item["sha256"],
                        files=tuple(PatchFileEntry(**entry) for entry in item.get("files", [])),
                    )
                    for item in data.get("patch_archives", [])
                ),
                add_files=tuple(
                    AddArchive(
                        archive_name=item["archive_name"],
                        url=item["url"],
                        size=int(item["size"]),
                        sha256=item["sha256"],
                        entries=tuple(AddFileEntry(**entry) for entry in item.get("entries", [])),
                    )
                    for item in data.get("add_files", [])
                ),
                remove_files=tuple(data.get("remove_files", [])),
                mandatory=bool(data.get("mandatory", False)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ManifestError(f"清单格式错误: {e}") from e

    @classmethod
    def loads(cls, text: str) -> "ManifestDocument":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ManifestError(f"清单不是有效的 JSON: {e}") from e
        if not isinstance(data, dict):
            raise ManifestError("清单顶层必须是对象")
        return cls.from_dict(data)


def compose(
    version: str,
    base_version: str,
    archives: Iterable[ArchiveDescriptor],
    removed_paths: Iterable[str],
    mandatory: bool = False,
) -> ManifestDocument:
    """组装更新清单(纯组装，不做哈希和 IO)

    Args:
        version: 目标版本
        base_version: 基础版本
        archives: 差分压缩包与新增文件压缩包描述，保持传入顺序
        removed_paths: 删除文件的相对路径
        mandatory: 是否强制更新

    """
    patch_archives: list[PatchArchive] = []
    add_archives: list[AddArchive] = []
    for archive in archives:
        match archive:
            case PatchArchive():
                patch_archives.append(archive)
            case AddArchive():
                add_archives.append(archive)
            case _:
                raise TypeError(f"未知的压缩包描述类型: {type(archive).__name__}")

    return ManifestDocument(
        version=version,
        base_from=base_version,
        patch_archives=tuple(patch_archives),
        add_files=tuple(add_archives),
        remove_files=tuple(removed_paths),
        mandatory=mandatory,
    )

from typing import TypedDict


class PatchFileInfo(TypedDict):
    """变更文件的差分信息"""

    path: str  # 文件相对路径
    base_sha256: str  # 旧文件哈希
    new_sha256: str  # 新文件哈希
    delta: str  # 差分文件在压缩包内的名称
    size: int  # 差分文件大小（字节）


class AddFileInfo(TypedDict):
    """新增文件的放置信息"""

    archive_path: str  # 压缩包内路径
    target_path: str  # 应用时的目标路径


class PatchArchiveInfo(TypedDict):
    """差分压缩包描述"""

    archive_name: str
    url: str  # 相对于清单的下载路径
    size: int  # 压缩包大小（字节）
    sha256: str  # 压缩包哈希
    files: list[PatchFileInfo]


class AddArchiveInfo(TypedDict):
    """新增文件压缩包描述"""

    archive_name: str
    url: str
    size: int
    sha256: str
    entries: list[AddFileInfo]


class ManifestInfo(TypedDict):
    """更新清单 latest.json 的结构

    删除的文件只记录路径，不需要压缩包
    """

    version: str  # 目标版本
    base_from: str  # 基础版本
    patch_archives: list[PatchArchiveInfo]
    add_files: list[AddArchiveInfo]
    remove_files: list[str]
    mandatory: bool  # 是否强制更新


class LegacyPatchInfo(TypedDict):
    """旧版扁平清单中的单个补丁"""

    path: str
    base_sha256: str
    new_sha256: str
    url: str
    size: int


class LegacyManifestInfo(TypedDict):
    """旧版扁平清单结构"""

    version: str
    base_from: str
    patches: list[LegacyPatchInfo]
    mandatory: bool

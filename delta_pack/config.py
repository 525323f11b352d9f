import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from benedict import benedict
from packaging.version import InvalidVersion
from packaging.version import parse as parse_version

from .errors import ValidationError
from .manifest import MANIFEST_NAME

SETTINGS_FILE = "appsettings.json"
EXCLUDE_MODES = ("substring", "gitignore")


def _normalize_key(key: str) -> str:
    """`OldDir`、`old_dir`、`oldDir` 统一为 `olddir`"""
    return str(key).replace("_", "").replace("-", "").lower()


@dataclass
class MakerConfig:
    """补丁制作配置"""

    old_dir: Path | None = None  # 旧版本目录
    new_dir: Path | None = None  # 新版本目录
    out_dir: Path = Path("dist")  # 输出目录
    base_version: str = ""  # 基础版本
    version: str = ""  # 新版本
    exclude_globs: list[str] = field(default_factory=list)  # 排除模式
    exclude_mode: str = "substring"  # substring: 子串匹配(兼容旧版)；gitignore: 真正的 glob 语义
    mandatory: bool = False  # 是否强制更新
    manifest_name: str = MANIFEST_NAME  # 清单文件名
    workers: int | None = None  # 并行线程数
    split_size: int | None = None  # 单个差分压缩包的最大暂存数据量(字节)，为空不分卷
    block_size: int | None = None  # 差分引擎块大小，为空自动选择

    def __post_init__(self) -> None:
        for name in ("old_dir", "new_dir", "out_dir"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, Path):
                setattr(self, name, Path(value))

    def validate(self, logger: logging.Logger | None = None) -> None:
        """校验配置，目录存在性由 PatchPackager 在运行时检查

        Raises:
            ValidationError: 配置不完整或非法

        """
        if self.old_dir is None or not str(self.old_dir):
            raise ValidationError("未指定旧版本目录")
        if self.new_dir is None or not str(self.new_dir):
            raise ValidationError("未指定新版本目录")

        versions = {}
        for name in ("base_version", "version"):
            value = getattr(self, name)
            if not value or not value.strip():
                raise ValidationError(f"未指定版本号: {name}")
            try:
                versions[name] = parse_version(value)
            except InvalidVersion as e:
                raise ValidationError(f"版本号格式不正确: {value}") from e

        if self.exclude_mode not in EXCLUDE_MODES:
            raise ValidationError(f"未知的排除模式: {self.exclude_mode}，可选: {'、'.join(EXCLUDE_MODES)}")
        if self.workers is not None and self.workers <= 0:
            raise ValidationError(f"线程数必须为正数: {self.workers}")
        if self.split_size is not None and self.split_size <= 0:
            raise ValidationError(f"分卷大小必须为正数: {self.split_size}")
        if self.block_size is not None and self.block_size <= 0:
            raise ValidationError(f"块大小必须为正数: {self.block_size}")

        if logger and versions["version"] <= versions["base_version"]:
            logger.warning(f"新版本不高于基础版本: {self.base_version} -> {self.version}")

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for name in ("old_dir", "new_dir", "out_dir"):
            if data[name] is not None:
                data[name] = str(data[name])
        return data


def load_config(path: Path | str = SETTINGS_FILE) -> MakerConfig:
    """加载配置文件，键名大小写不敏感，兼容 `OldDir` 与 `old_dir` 两种写法

    Args:
        path: 配置文件路径

    Returns:
        配置对象；文件不存在时返回默认配置

    Raises:
        ValidationError: 配置文件无法解析

    """
    path = Path(path)
    config = MakerConfig()
    if not path.exists():
        return config

    try:
        with path.open("r", encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ValidationError(f"读取配置文件失败: {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ValidationError(f"配置文件顶层必须是对象: {path}")

    data = benedict({_normalize_key(key): value for key, value in raw.items()}, keypath_separator=None)

    if data.get("olddir"):
        config.old_dir = Path(data.get_str("olddir"))
    if data.get("newdir"):
        config.new_dir = Path(data.get_str("newdir"))
    if data.get("outdir"):
        config.out_dir = Path(data.get_str("outdir"))

    config.base_version = data.get_str("baseversion", config.base_version)
    config.version = data.get_str("version", config.version)
    config.exclude_globs = [str(item) for item in data.get_list("excludeglobs", [])]
    config.exclude_mode = data.get_str("excludemode", config.exclude_mode)
    config.mandatory = data.get_bool("mandatory", config.mandatory)
    config.manifest_name = data.get_str("manifestname", config.manifest_name)
    config.workers = data.get_int("workers", None) or None
    config.split_size = data.get_int("splitsize", None) or None
    config.block_size = data.get_int("blocksize", None) or None

    return config


def save_config(config: MakerConfig, path: Path | str = SETTINGS_FILE) -> None:
    """保存配置文件"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with path.open("w", encoding="utf-8") as f:
        json.dump(config.to_dict(), f, indent=2, ensure_ascii=False)

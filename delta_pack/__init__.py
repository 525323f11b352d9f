"""增量更新包制作工具: 比较新旧版本目录，生成差分压缩包与更新清单"""

from .classifier import ChangeSet, classify
from .config import MakerConfig, load_config, save_config
from .engine import DeltaEngine, RollingChecksumEngine
from .errors import EngineError, PackError, PackIOError, ValidationError
from .manifest import AddArchive, AddFileEntry, ManifestDocument, PatchArchive, PatchFileEntry, compose
from .packager import BuildReport, PatchPackager
from .scanner import scan

__all__ = [
    "AddArchive",
    "AddFileEntry",
    "BuildReport",
    "ChangeSet",
    "DeltaEngine",
    "EngineError",
    "MakerConfig",
    "ManifestDocument",
    "PackError",
    "PackIOError",
    "PatchArchive",
    "PatchFileEntry",
    "PatchPackager",
    "RollingChecksumEngine",
    "ValidationError",
    "classify",
    "compose",
    "load_config",
    "save_config",
    "scan",
]

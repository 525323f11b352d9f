import logging
from functools import partial
from pathlib import Path
from typing import Iterator, Literal

import pathspec

from .errors import PackIOError, ValidationError

ExcludeMode = Literal["substring", "gitignore"]


def to_keyword(pattern: str) -> str:
    """将排除模式退化为子串关键字

    `**/` 替换为 `/`，`**` 直接去掉，例如 `**/cache/**` -> `/cache/`

    """
    return pattern.replace("**/", "/").replace("**", "")


def is_excluded(rel_path: str, patterns: list[str] | tuple[str, ...]) -> bool:
    """判断相对路径是否被排除(大小写不敏感的子串匹配,不是真正的 glob 语义)"""
    unix_path = rel_path.replace("\\", "/").lower()

    for pattern in patterns:
        if not pattern or not pattern.strip():
            continue

        if to_keyword(pattern).lower() in unix_path:
            return True

    return False


def rglob_files(root: Path) -> Iterator[Path]:
    """递归列出目录下的所有普通文件"""
    for full_path in sorted(root.iterdir()):
        if full_path.is_dir():
            yield from rglob_files(full_path)
        elif full_path.is_file():
            yield full_path


def _relative(filename: str | None, root: Path) -> str:
    """出错路径转换为相对路径，无法转换时原样返回"""
    if not filename:
        return "."
    try:
        return Path(filename).relative_to(root).as_posix()
    except ValueError:
        return str(filename)


def scan(
    root: Path | str,
    exclude_patterns: list[str] | tuple[str, ...] = (),
    *,
    mode: ExcludeMode = "substring",
    logger: logging.Logger | None = None,
) -> dict[str, Path]:
    """扫描目录，返回 {相对路径: 绝对路径} 映射

    Args:
        root: 扫描的根目录
        exclude_patterns: 排除模式列表
        mode: substring 为兼容旧版本的子串匹配；gitignore 使用 pathspec 的 gitignore 语义
        logger: 日志记录器

    Returns:
        以正斜杠分隔的相对路径(保留大小写)为键的字典，按键排序

    Raises:
        ValidationError: 根目录不存在
        PackIOError: 读取目录失败

    """
    root = Path(root).absolute()
    if not root.is_dir():
        raise ValidationError(f"目录不存在: {root}")

    match mode:
        case "substring":
            excluded = partial(is_excluded, patterns=exclude_patterns)
        case "gitignore":
            spec = pathspec.GitIgnoreSpec.from_lines(exclude_patterns)
            excluded = spec.match_file
        case _:
            raise ValidationError(f"未知的排除模式: {mode}")

    result: dict[str, Path] = {}
    skipped = 0
    try:
        for full_path in rglob_files(root):
            rel_path = full_path.relative_to(root).as_posix()
            if excluded(rel_path):
                skipped += 1
                continue
            result[rel_path] = full_path
    except OSError as e:
        path = _relative(e.filename, root)
        raise PackIOError(f"扫描目录失败: {root}: {path}: {e}", path=path, stage="scan") from e

    if logger:
        logger.debug(f"扫描完成: {root} (文件 {len(result)} 个, 排除 {skipped} 个)")

    return dict(sorted(result.items()))

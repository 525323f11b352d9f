import logging
from pathlib import Path

import pytest

from delta_pack.config import MakerConfig


def write_tree(root: Path, files: dict[str, bytes | str]) -> Path:
    """按 {相对路径: 内容} 创建目录树"""
    root.mkdir(parents=True, exist_ok=True)
    for rel_path, content in files.items():
        path = root / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, str):
            content = content.encode("utf-8")
        path.write_bytes(content)
    return root


def read_tree(root: Path, skip: tuple[str, ...] = ()) -> dict[str, bytes]:
    """读取目录树为 {相对路径: 内容}，skip 中的顶层名称会被跳过"""
    result = {}
    for path in sorted(root.rglob("*")):
        rel_path = path.relative_to(root).as_posix()
        if rel_path.split("/")[0] in skip or not path.is_file():
            continue
        result[rel_path] = path.read_bytes()
    return result


def lock_directory(monkeypatch: pytest.MonkeyPatch, name: str) -> None:
    """让指定名称的目录在遍历时抛出 PermissionError"""
    iterdir = Path.iterdir

    def locked_iterdir(self: Path):
        if self.name == name:
            raise PermissionError(13, "Permission denied", str(self))
        return iterdir(self)

    monkeypatch.setattr(Path, "iterdir", locked_iterdir)


def sample_bytes(length: int, seed: int = 7) -> bytes:
    return bytes((i * seed + i // 13) % 251 for i in range(length))


@pytest.fixture
def logger() -> logging.Logger:
    return logging.getLogger("delta-pack-test")


@pytest.fixture
def make_config(tmp_path: Path):
    def factory(old: dict[str, bytes | str], new: dict[str, bytes | str], **kwargs) -> MakerConfig:
        old_dir = write_tree(tmp_path / "old", old)
        new_dir = write_tree(tmp_path / "new", new)
        kwargs.setdefault("out_dir", tmp_path / "dist")
        kwargs.setdefault("base_version", "1.0.0")
        kwargs.setdefault("version", "1.0.1")
        kwargs.setdefault("workers", 2)
        return MakerConfig(old_dir=old_dir, new_dir=new_dir, **kwargs)

    return factory

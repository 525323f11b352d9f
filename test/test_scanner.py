from pathlib import Path

import pytest
from conftest import lock_directory, write_tree

from delta_pack.errors import PackIOError, ValidationError
from delta_pack.scanner import is_excluded, scan, to_keyword


def test_scan_returns_sorted_posix_relative_paths(tmp_path: Path) -> None:
    root = write_tree(tmp_path / "root", {"b.txt": "b", "Dir/Sub/A.bin": "a", "a.txt": "a"})

    result = scan(root)

    assert list(result) == ["Dir/Sub/A.bin", "a.txt", "b.txt"]
    assert result["Dir/Sub/A.bin"] == (root / "Dir" / "Sub" / "A.bin").absolute()


def test_scan_missing_root_raises(tmp_path: Path) -> None:
    with pytest.raises(ValidationError):
        scan(tmp_path / "missing")


def test_scan_ignores_empty_directories(tmp_path: Path) -> None:
    root = write_tree(tmp_path / "root", {"a.txt": "a"})
    (root / "empty" / "nested").mkdir(parents=True)

    assert list(scan(root)) == ["a.txt"]


@pytest.mark.parametrize(
    ("pattern", "keyword"),
    [
        ("**/cache/**", "/cache/"),
        ("**.log", ".log"),
        ("logs/", "logs/"),
    ],
)
def test_to_keyword_strips_wildcards(pattern: str, keyword: str) -> None:
    assert to_keyword(pattern) == keyword


def test_is_excluded_is_case_insensitive_substring() -> None:
    assert is_excluded("data/CACHE/tmp.bin", ["**/cache/**"])
    assert is_excluded("deep/a/b/cache/x", ["**/cache/**"])
    assert is_excluded("foo/mycache.txt", ["cache"])
    assert not is_excluded("data/cached/tmp.bin", ["**/cache/**"])
    assert not is_excluded("a.txt", ["", "   "])


def test_substring_matcher_is_not_anchored() -> None:
    # 子串匹配没有锚定，顶层的 cache 目录不包含前导 `/`，因此不会被排除
    assert not is_excluded("cache/tmp.bin", ["**/cache/**"])


def test_scan_drops_excluded_paths_at_any_depth(tmp_path: Path) -> None:
    root = write_tree(
        tmp_path / "root",
        {
            "data/cache/tmp.bin": "x",
            "a/b/c/cache/deep.bin": "x",
            "data/keep.bin": "x",
        },
    )

    result = scan(root, ["**/cache/**"])

    assert list(result) == ["data/keep.bin"]


def test_scan_gitignore_mode_uses_glob_semantics(tmp_path: Path) -> None:
    root = write_tree(tmp_path / "root", {"cache/tmp.bin": "x", "app.log": "x", "src/app.py": "x"})

    result = scan(root, ["cache/", "*.log"], mode="gitignore")

    assert list(result) == ["src/app.py"]


def test_scan_unknown_mode_raises(tmp_path: Path) -> None:
    root = write_tree(tmp_path / "root", {"a.txt": "a"})

    with pytest.raises(ValidationError):
        scan(root, mode="regex")  # type: ignore[arg-type]


def test_scan_unreadable_directory_raises_io_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    root = write_tree(tmp_path / "root", {"a.txt": "a", "sub/locked/b.txt": "b"})
    lock_directory(monkeypatch, "locked")

    with pytest.raises(PackIOError) as exc_info:
        scan(root)

    assert exc_info.value.stage == "scan"
    assert exc_info.value.path == "sub/locked"

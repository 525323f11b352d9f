from pathlib import Path

import pytest
from conftest import sample_bytes, write_tree

from delta_pack.classifier import classify
from delta_pack.engine import RollingChecksumEngine
from delta_pack.errors import EngineError, PackIOError, ValidationError
from delta_pack.orchestrator import NamingContext, build_delta, full_copy_names, sanitize_path, stage_all, stage_full_copy
from delta_pack.scanner import scan

NAMING = NamingContext(base_version="1.0.0", version="1.0.1")


class BrokenEngine(RollingChecksumEngine):
    """对指定文件生成差分时失败"""

    def __init__(self, fail_on: bytes = b""):
        super().__init__()
        self.fail_on = fail_on

    def build_delta(self, target, signature_in, delta_out):
        data = target.read()
        delta_out.write(b"partial")
        if self.fail_on in data:
            raise RuntimeError("engine exploded")
        target.seek(0)
        super().build_delta(target, signature_in, delta_out)


def _changes(tmp_path: Path, old: dict, new: dict):
    old_map = scan(write_tree(tmp_path / "old", old))
    new_map = scan(write_tree(tmp_path / "new", new))
    return classify(old_map, new_map, workers=2)


def test_sanitize_and_artifact_names() -> None:
    assert sanitize_path("bin/x64/app.dll") == "bin__x64__app.dll"
    assert NAMING.artifact_name("bin/x64/app.dll", "octodelta") == "bin__x64__app.dll.v1.0.0_to_v1.0.1.octodelta"
    assert NAMING.artifact_name("readme.txt", "full") == "readme.txt.v1.0.0_to_v1.0.1.full"
    assert NAMING.signature_name("bin/app.dll") == "bin__app.dll.v1.0.0.signature"


def test_build_delta_writes_delta_and_removes_signature(tmp_path: Path) -> None:
    base = sample_bytes(4000)
    changes = _changes(tmp_path, {"bin/app.dll": base}, {"bin/app.dll": base + b"more"})
    out = tmp_path / "out"
    out.mkdir()

    entry = build_delta(changes.changed[0], out, NAMING, engine=RollingChecksumEngine())

    assert entry.path == "bin/app.dll"
    assert entry.delta == "bin__app.dll.v1.0.0_to_v1.0.1.octodelta"
    assert entry.base_sha256 == changes.changed[0].base_hash
    assert entry.new_sha256 == changes.changed[0].new_hash
    assert entry.size == (out / entry.delta).stat().st_size
    assert sorted(p.name for p in out.iterdir()) == [entry.delta]


def test_engine_failure_reports_path_and_cleans_up(tmp_path: Path) -> None:
    changes = _changes(tmp_path, {"a/b.txt": "old"}, {"a/b.txt": "new"})
    out = tmp_path / "out"
    out.mkdir()

    with pytest.raises(EngineError) as exc_info:
        build_delta(changes.changed[0], out, NAMING, engine=BrokenEngine(b"new"))

    assert exc_info.value.path == "a/b.txt"
    assert exc_info.value.stage == "delta"
    assert "a/b.txt" in str(exc_info.value)
    assert list(out.iterdir()) == []


def test_missing_output_dir_raises_io_error(tmp_path: Path) -> None:
    changes = _changes(tmp_path, {"a.txt": "old"}, {"a.txt": "new"})

    with pytest.raises(PackIOError) as exc_info:
        build_delta(changes.changed[0], tmp_path / "missing", NAMING, engine=RollingChecksumEngine())

    assert exc_info.value.path == "a.txt"
    assert exc_info.value.stage == "signature"


def test_stale_artifact_is_overwritten(tmp_path: Path) -> None:
    changes = _changes(tmp_path, {}, {"b.txt": "fresh"})
    out = tmp_path / "out"
    out.mkdir()
    staged = out / NAMING.artifact_name("b.txt", "full")
    staged.write_text("stale from a failed run")

    entry = stage_full_copy(changes.added[0], out, NAMING)

    assert entry.archive_path == entry.target_path == "b.txt"
    assert staged.read_text() == "fresh"


def test_stage_all_collects_in_path_order(tmp_path: Path) -> None:
    old = {f"f{i:02d}.txt": f"old {i}" for i in range(12)}
    new = {f"f{i:02d}.txt": f"new {i}" for i in range(12)}
    new.update({"z_added.txt": "z", "a_added.txt": "a"})
    changes = _changes(tmp_path, old, new)
    out = tmp_path / "out"
    out.mkdir()

    result = stage_all(changes, out, NAMING, engine=RollingChecksumEngine(), workers=4)

    assert [entry.path for entry in result.patch_entries] == sorted(old)
    assert [entry.archive_path for entry in result.add_entries] == ["a_added.txt", "z_added.txt"]
    assert all(artifact.path.exists() for artifact in result.patch_artifacts + result.add_artifacts)
    assert [artifact.arcname for artifact in result.add_artifacts] == ["a_added.txt", "z_added.txt"]
    assert not list(out.glob("*.signature"))


def test_stage_all_failure_removes_every_staged_file(tmp_path: Path) -> None:
    old = {f"f{i}.txt": f"old {i}" for i in range(6)}
    new = {f"f{i}.txt": f"new {i}" for i in range(6)}
    new["f3.txt"] = "boom"
    new["added.txt"] = "added"
    changes = _changes(tmp_path, old, new)
    out = tmp_path / "out"
    out.mkdir()

    with pytest.raises(EngineError) as exc_info:
        stage_all(changes, out, NAMING, engine=BrokenEngine(b"boom"), workers=3)

    assert exc_info.value.path == "f3.txt"
    assert list(out.iterdir()) == []


def test_added_files_with_same_flat_name_are_staged_separately(tmp_path: Path) -> None:
    changes = _changes(tmp_path, {}, {"a/b.txt": "nested", "a__b.txt": "flat"})
    out = tmp_path / "out"
    out.mkdir()

    names = full_copy_names(changes.added, NAMING)
    result = stage_all(changes, out, NAMING, engine=RollingChecksumEngine(), workers=2)

    assert names == {
        "a/b.txt": "a__b.txt.v1.0.0_to_v1.0.1.full",
        "a__b.txt": "a__b.txt.v1.0.0_to_v1.0.1.full.1",
    }
    assert [artifact.arcname for artifact in result.add_artifacts] == ["a/b.txt", "a__b.txt"]
    assert [artifact.path.read_text() for artifact in result.add_artifacts] == ["nested", "flat"]


def test_changed_files_with_same_delta_name_are_rejected(tmp_path: Path) -> None:
    changes = _changes(tmp_path, {"a/b.txt": "old", "a__b.txt": "old"}, {"a/b.txt": "new", "a__b.txt": "new"})
    out = tmp_path / "out"
    out.mkdir()

    with pytest.raises(ValidationError) as exc_info:
        stage_all(changes, out, NAMING, engine=RollingChecksumEngine(), workers=2)

    assert "a/b.txt" in str(exc_info.value)
    assert "a__b.txt" in str(exc_info.value)
    assert list(out.iterdir()) == []

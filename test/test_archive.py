import zipfile
from pathlib import Path

from delta_pack.archive import bundle, split_volumes
from delta_pack.hashing import calculate_hash
from delta_pack.orchestrator import StagedArtifact


def _stage(directory: Path, files: dict[str, bytes]) -> list[StagedArtifact]:
    directory.mkdir(parents=True, exist_ok=True)
    artifacts = []
    for arcname, content in files.items():
        path = directory / (arcname.replace("/", "__") + ".staged")
        path.write_bytes(content)
        artifacts.append(StagedArtifact(path, arcname))
    return artifacts


def test_bundle_writes_archive_and_deletes_staged_files(tmp_path: Path) -> None:
    artifacts = _stage(tmp_path / "out", {"a.delta": b"A" * 100, "dir/b.txt": b"B" * 10})

    result = bundle(artifacts, "patch.zip", tmp_path / "out")

    assert result is not None
    assert result.name == "patch.zip"
    assert result.url == "./patch.zip"
    assert result.arcnames == ("a.delta", "dir/b.txt")
    assert not any(artifact.path.exists() for artifact in artifacts)

    with zipfile.ZipFile(result.path) as zf:
        assert zf.namelist() == ["a.delta", "dir/b.txt"]
        assert zf.read("dir/b.txt") == b"B" * 10
        assert all(info.compress_type == zipfile.ZIP_DEFLATED for info in zf.infolist())


def test_bundle_size_and_hash_match_bytes_on_disk(tmp_path: Path) -> None:
    artifacts = _stage(tmp_path / "out", {"x.bin": bytes(range(256)) * 40})

    result = bundle(artifacts, "patch.zip", tmp_path / "out")

    assert result.size == result.path.stat().st_size
    assert result.sha256 == calculate_hash(result.path)


def test_bundle_without_eligible_artifacts_creates_nothing(tmp_path: Path) -> None:
    out = tmp_path / "out"
    removed = _stage(out, {"gone.txt": b"x"})
    removed = [StagedArtifact(artifact.path, artifact.arcname, removed=True) for artifact in removed]

    assert bundle([], "patch.zip", out) is None
    assert bundle(removed, "patch.zip", out) is None
    assert not (out / "patch.zip").exists()


def test_bundle_overwrites_existing_archive(tmp_path: Path) -> None:
    out = tmp_path / "out"
    out.mkdir()
    (out / "patch.zip").write_bytes(b"garbage")

    result = bundle(_stage(out, {"a": b"a"}), "patch.zip", out)

    with zipfile.ZipFile(result.path) as zf:
        assert zf.namelist() == ["a"]


def test_bundle_is_reproducible(tmp_path: Path) -> None:
    files = {"a.delta": b"alpha" * 50, "b.delta": b"beta" * 50}

    first = bundle(_stage(tmp_path / "one", files), "patch.zip", tmp_path / "one")
    second = bundle(_stage(tmp_path / "two", files), "patch.zip", tmp_path / "two")

    assert first.sha256 == second.sha256
    assert first.size == second.size


def test_split_volumes(tmp_path: Path) -> None:
    artifacts = _stage(tmp_path, {"a": b"1" * 40, "b": b"2" * 40, "c": b"3" * 100, "d": b"4" * 10})

    assert split_volumes(artifacts, None) == [artifacts]
    assert split_volumes([], None) == []

    volumes = split_volumes(artifacts, 90)
    assert [[artifact.arcname for artifact in volume] for volume in volumes] == [["a", "b"], ["c"], ["d"]]

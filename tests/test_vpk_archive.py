import os
import stat
from pathlib import Path

import pytest
import vpk

from pyvpk.fs import NotFoundError, VpkError, VpkFile, extract_archive, open_archive, patch_file, write_archive
from pyvpk.fs.archive import part_path
from vpk_builder import build_vpk


def _vpk_package_archive(tmp_path: Path) -> Path:
    src_dir = tmp_path / "src"
    (src_dir / "maps").mkdir(parents=True)
    (src_dir / "maps" / "dota.vmap_c").write_bytes(b"original terrain")
    (src_dir / "readme.txt").write_text("hello")
    out = tmp_path / "terrain.vpk"
    vpk.new(str(src_dir)).save(str(out))
    return out


def test_round_trip_vpk_package_output(tmp_path: Path):
    path = _vpk_package_archive(tmp_path)
    data = path.read_bytes()
    archive = VpkFile.parse(data)
    assert "maps/dota.vmap_c" in archive
    assert archive.read("readme.txt") == b"hello"
    assert archive.serialize() == data


def test_patched_archive_opens_with_vpk_package(tmp_path: Path):
    path = _vpk_package_archive(tmp_path)
    out = tmp_path / "patched.vpk"

    patch_file(path, "maps/dota.vmap_c", b"replacement terrain data", destination=out)

    pak = vpk.open(str(out))
    assert pak.get_file("maps/dota.vmap_c").read() == b"replacement terrain data"
    assert pak.get_file("readme.txt").read() == b"hello"
    assert path.read_bytes() != out.read_bytes()


def test_patch_file_overwrites_source_with_backup(tmp_path: Path):
    data, _ = build_vpk({"maps/dota/default.vmap": b"AAAA"})
    path = tmp_path / "dota.vpk"
    path.write_bytes(data)

    written = patch_file(path, "maps/dota/default.vmap", b"BBBBBB", backup=True)

    assert written == path
    assert (tmp_path / "dota.vpk.bak").read_bytes() == data
    assert open_archive(path).read("maps/dota/default.vmap") == b"BBBBBB"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["dota.vpk", "dota.vpk.bak"]


def test_patch_file_leaves_destination_alone_on_error(tmp_path: Path):
    data, _ = build_vpk({"maps/dota/default.vmap": b"AAAA"})
    path = tmp_path / "dota.vpk"
    path.write_bytes(data)

    with pytest.raises(NotFoundError):
        patch_file(path, "maps/dota/missing.vmap", b"x")
    assert path.read_bytes() == data
    assert [p.name for p in tmp_path.iterdir()] == ["dota.vpk"]


def test_patch_file_missing_source(tmp_path: Path):
    with pytest.raises(OSError) as exc:
        patch_file(tmp_path / "nope_dir.vpk", "a.txt", b"x")
    assert exc.value.phase == "read"


def test_open_archive_reads_numbered_parts(tmp_path: Path):
    files = {"sound/a.wav": b"RIFF" + b"\x01" * 40, "scripts/b.txt": b"script"}
    data, parts = build_vpk(files, parts={"sound/a.wav": 0}, preload={"sound/a.wav": 4})
    dir_path = tmp_path / "pak01_dir.vpk"
    dir_path.write_bytes(data)
    part_path(dir_path, 0).write_bytes(parts[0])

    archive = open_archive(dir_path)
    assert archive.filename == "pak01_dir.vpk"
    assert archive.read("sound/a.wav") == files["sound/a.wav"]
    assert archive.validate() == []


def test_part_path_naming():
    assert part_path("game/pak01_dir.vpk", 3) == Path("game/pak01_003.vpk")
    assert part_path("dota.vpk", 12) == Path("dota_012.vpk")


def test_write_archive_replaces_atomically(tmp_path: Path):
    path = tmp_path / "out.vpk"
    path.write_bytes(b"old")
    write_archive(path, b"new")
    assert path.read_bytes() == b"new"
    assert not (tmp_path / "out.vpk.bak").exists()


def test_patch_file_keeps_file_mode(tmp_path: Path):
    data, _ = build_vpk({"maps/dota/default.vmap": b"AAAA"})
    path = tmp_path / "dota.vpk"
    path.write_bytes(data)
    path.chmod(0o644)

    patch_file(path, "maps/dota/default.vmap", b"BBBBBB")

    assert stat.S_IMODE(path.stat().st_mode) == 0o644


def test_write_archive_new_file_follows_umask(tmp_path: Path):
    old = os.umask(0o022)
    try:
        path = write_archive(tmp_path / "new.vpk", b"data")
    finally:
        os.umask(old)
    assert stat.S_IMODE(path.stat().st_mode) == 0o644


def test_extract_archive(tmp_path: Path):
    files = {"sound/a.wav": b"RIFF" + b"\x01" * 40, "scripts/b.txt": b"script", "top.txt": b"top"}
    data, parts = build_vpk(files, parts={"sound/a.wav": 0}, preload={"sound/a.wav": 4})
    dir_path = tmp_path / "pak01_dir.vpk"
    dir_path.write_bytes(data)
    part_path(dir_path, 0).write_bytes(parts[0])
    out = tmp_path / "out"

    written = extract_archive(dir_path, out)

    assert sorted(p.relative_to(out.resolve()).as_posix() for p in written) == sorted(files)
    for name, content in files.items():
        assert (out / name).read_bytes() == content


def test_extract_archive_flat_with_pattern(tmp_path: Path):
    data, _ = build_vpk({"maps/a.vmap": b"a", "maps/b.vmap": b"b", "scripts/c.txt": b"c"})
    path = tmp_path / "maps.vpk"
    path.write_bytes(data)
    out = tmp_path / "out"

    extract_archive(path, out, keep_folder_structure=False, pattern="*.vmap")

    assert sorted(p.name for p in out.iterdir()) == ["a.vmap", "b.vmap"]


def test_extract_refuses_paths_outside_destination(tmp_path: Path):
    data, _ = build_vpk({"../escape.txt": b"x"}, version=1)
    with pytest.raises(VpkError) as exc:
        VpkFile.parse(data).extract(tmp_path / "out")
    assert exc.value.path == "../escape.txt"
    assert not (tmp_path / "escape.txt").exists()

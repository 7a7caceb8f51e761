from __future__ import annotations

import logging
import os
import shutil
import tempfile
from pathlib import Path

from .patch import patch
from .vpkfile import VpkFile

logger = logging.getLogger(__name__)


def part_path(dir_path: os.PathLike[str] | str, archive_index: int) -> Path:
    """Return the numbered part ``archive_index`` belonging to ``dir_path``.

    ``pak01_dir.vpk`` with index 3 gives ``pak01_003.vpk``.
    """
    dir_path = Path(dir_path)
    stem = dir_path.stem
    if stem.endswith("_dir"):
        stem = stem[:-4]
    return dir_path.with_name(f"{stem}_{archive_index:03d}{dir_path.suffix}")


class DirectoryPartReader:
    """Reads entry data from the ``_NNN.vpk`` files next to a ``_dir.vpk``."""

    def __init__(self, dir_path: os.PathLike[str] | str) -> None:
        self.dir_path = Path(dir_path)

    def __call__(self, archive_index: int, offset: int, length: int) -> bytes:
        with open(part_path(self.dir_path, archive_index), "rb") as f:
            f.seek(offset)
            return f.read(length)


def read_archive(path: os.PathLike[str] | str) -> bytes:
    with open(os.fspath(path), "rb") as f:
        return f.read()


def open_archive(path: os.PathLike[str] | str) -> VpkFile:
    archive = VpkFile.parse(read_archive(path), part_reader=DirectoryPartReader(path))
    archive.filename = os.path.basename(os.fspath(path))
    return archive


def write_archive(path: os.PathLike[str] | str, data: bytes, backup: bool = False) -> Path:
    """Write ``data`` to ``path`` through a temporary sibling file.

    The destination is replaced only once the new content is fully on disk.
    With ``backup`` an existing destination is first copied to ``<name>.bak``.
    """

    path = Path(path)
    if backup and path.exists():
        backup_path = path.with_name(path.name + ".bak")
        shutil.copyfile(path, backup_path)
        logger.info("Backed up %s to %s", path, backup_path)

    fd, temp_name = tempfile.mkstemp(prefix=path.name + ".", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        # mkstemp creates the file 0600; give it the mode a plain open() would.
        if path.exists():
            shutil.copymode(path, temp_name)
        else:
            umask = os.umask(0)
            os.umask(umask)
            os.chmod(temp_name, 0o666 & ~umask)
        os.replace(temp_name, path)
    except BaseException:
        if os.path.exists(temp_name):
            os.remove(temp_name)
        raise
    logger.info("Wrote %d bytes to %s", len(data), path)
    return path


def extract_archive(
    source: os.PathLike[str] | str,
    where: os.PathLike[str] | str,
    keep_folder_structure: bool = True,
    pattern: str | None = None,
) -> list[Path]:
    """Extract the entries of the archive at ``source`` into ``where``."""
    archive = open_archive(source)
    return [Path(p) for p in archive.extract(where, keep_folder_structure, pattern)]


def patch_file(
    source: os.PathLike[str] | str,
    logical_path: str,
    replacement: bytes,
    destination: os.PathLike[str] | str | None = None,
    layout: str = "preserve",
    backup: bool = False,
) -> Path:
    """Patch ``logical_path`` in the archive at ``source`` and write the result.

    ``destination`` defaults to ``source``.  Disk errors propagate as
    :class:`OSError` with ``phase`` set to ``"read"`` or ``"write"``.
    """

    if destination is None:
        destination = source
    try:
        data = read_archive(source)
    except OSError as exc:
        exc.phase = "read"
        raise
    result = patch(data, logical_path, replacement, layout=layout, part_reader=DirectoryPartReader(source))
    try:
        return write_archive(destination, result, backup=backup)
    except OSError as exc:
        exc.phase = "write"
        raise

"""Replace the content of a single entry in a VPK directory file."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass

from pyvpk.util import crc32, join_path, split_path
from .errors import UnsupportedRegionError, VpkError
from .vpkfile import EMBEDDED_ARCHIVE_INDEX, VpkFile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EntryHandle:
    """Identifies an entry of a parsed archive by its tree keys."""

    extension: str
    directory: str
    name: str

    @property
    def path(self) -> str:
        return join_path(self.extension, self.directory, self.name)


@contextmanager
def _phase(name):
    try:
        yield
    except VpkError as exc:
        if exc.phase is None:
            exc.phase = name
        raise


def resolve(archive: VpkFile, logical_path: str) -> EntryHandle:
    """Return the handle of ``logical_path`` or raise :class:`NotFoundError`.

    Backslashes are accepted as separators.  An exact match wins over a
    case-insensitive one.
    """
    entry = archive.lookup(*split_path(logical_path))
    return EntryHandle(entry.extension, entry.directory, entry.name)


def replace(archive: VpkFile, handle: EntryHandle, new_content) -> VpkFile:
    """Give the entry behind ``handle`` the content ``new_content``.

    The entry keeps its original preload length where the new content is long
    enough; everything past the preload goes to the data section of the
    directory file when the archive is serialized.  Entries whose data lives
    in a numbered ``_NNN.vpk`` part cannot be replaced.
    """

    entry = archive.lookup(handle.extension, handle.directory, handle.name)
    content = bytes(new_content)

    if entry.source_archive_index != EMBEDDED_ARCHIVE_INDEX and entry.source_length:
        raise UnsupportedRegionError(
            f"Entry data is stored in archive part {entry.source_archive_index:03d}, "
            "only entries stored in the directory file can be replaced",
            path=entry.path,
        )

    preload_length = min(entry.source_preload_length, len(content))
    entry.crc = crc32(content)
    entry.preload_length = preload_length
    entry.length = len(content) - preload_length
    if entry.length and not entry.is_embedded:
        # The old content fit in the preload bytes; the new one needs the data section.
        entry.archive_index = EMBEDDED_ARCHIVE_INDEX
    archive.mark_rewritten(entry, content)

    logger.debug(
        "Replaced %s: %d bytes (%d preload), crc 0x%08X",
        entry.path, len(content), preload_length, entry.crc,
    )
    return archive


def patch(source_bytes, logical_path: str, new_content, layout: str = "preserve", part_reader=None) -> bytes:
    """Parse ``source_bytes``, replace ``logical_path`` and return the new archive.

    Errors keep their type; their ``phase`` attribute names the step that
    failed.
    """

    with _phase("parse"):
        archive = VpkFile.parse(source_bytes, part_reader=part_reader)
    with _phase("resolve"):
        handle = resolve(archive, logical_path)
    with _phase("replace"):
        replace(archive, handle, new_content)
    with _phase("serialize"):
        data = archive.serialize(layout)

    logger.info("Patched %s (%d bytes), archive is now %d bytes", handle.path, len(new_content), len(data))
    return data

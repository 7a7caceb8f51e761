"""Reader and writer for Valve VPK directory files.

A VPK starts with a small header followed by the directory tree.  The tree
is three nested lists of NUL-terminated strings (extension, directory, file
name), each list closed by an empty string.  Every file name is followed by an
18 byte record and the entry's preload bytes.  Entry data either lives in the
directory file itself, right after the tree (archive index ``0x7FFF``), or in
numbered ``_NNN.vpk`` parts.  Version 2 files append an archive MD5 section,
an MD5 section covering the tree and the whole file, and an optional
signature.

:class:`VpkFile` keeps the source buffer and hands out slices of it, so
entries that are not rewritten are written back exactly as they were read.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import struct
from typing import Callable, Dict, Iterator, List, Optional

from pyvpk.util import crc32, join_path, md5, pack_c_string, read_c_string, split_path
from .errors import (
    BadSignatureError,
    BadTerminatorError,
    DuplicateEntryError,
    LengthMismatchError,
    NotFoundError,
    TruncatedDataError,
    TruncatedTreeError,
    UnsupportedRegionError,
    UnsupportedVersionError,
    VpkError,
)

logger = logging.getLogger(__name__)

VPK_SIGNATURE = 0x55AA1234
SUPPORTED_VERSIONS = (1, 2)

# Archive index of entries stored in the directory file after the tree.
EMBEDDED_ARCHIVE_INDEX = 0x7FFF
ENTRY_TERMINATOR = 0xFFFF

HEADER_V1 = struct.Struct("<3L")
HEADER_V2 = struct.Struct("<7L")
ENTRY_RECORD = struct.Struct("<LHHLLH")
ARCHIVE_MD5_RECORD = struct.Struct("<3L16s")
OTHER_MD5_LENGTH = 48

LAYOUTS = ("preserve", "rebuild")

# (archive_index, offset, length) -> bytes read from the numbered part.
PartReader = Callable[[int, int, int], bytes]


class VpkFile:

    def __init__(self):
        self.filename: Optional[str] = None
        self.data = b""
        self.header = VpkFileHeader(self)
        self.checksums = VpkChecksumSection(self)
        # extension -> directory -> name -> VpkEntry, all in file order.
        self.tree: Dict[str, Dict[str, Dict[str, VpkEntry]]] = {}
        self.part_reader: Optional[PartReader] = None
        self._view = memoryview(self.data)
        self._index: Dict[tuple, VpkEntry] = {}
        self._folded: Dict[str, VpkEntry] = {}
        self._rewritten: List[VpkEntry] = []
        self._tree_span = (0, 0)
        self._region_span = (0, 0)
        self._archive_md5_span = (0, 0)
        self._other_md5_span = (0, 0)
        self._signature_span = (0, 0)
        self._trailer_span = (0, 0)

    # Main methods.

    @classmethod
    def parse(cls, source, part_reader: Optional[PartReader] = None) -> "VpkFile":
        """Parse the bytes of a VPK directory file.

        ``part_reader`` is only needed to read entries stored in numbered
        archive parts; see :func:`pyvpk.fs.archive.open_archive`.
        """

        self = cls()
        self.data = bytes(source)
        self._view = memoryview(self.data)
        self.part_reader = part_reader

        self.header.parse(self.data)
        self._read_directory()
        self._read_sections()

        logger.debug(
            "Parsed VPK v%d: %d entries, tree %d bytes, data %d bytes",
            self.header.version,
            len(self._index),
            self.header.tree_length,
            self._region_span[1] - self._region_span[0],
        )
        return self

    def _read_directory(self) -> None:
        data = self.data
        start = self.header.size
        end = start + self.header.tree_length
        if end > len(data):
            raise TruncatedTreeError(
                f"Header declares a {self.header.tree_length} byte directory tree "
                f"but only {len(data) - start} bytes follow the header",
                offset=start,
            )

        pos = start
        while True:
            extension, pos = self._read_token(pos, end, "extension")
            if extension == "":
                break
            if extension in self.tree:
                raise DuplicateEntryError(f"Extension block {extension!r} is repeated", offset=pos)
            directories = self.tree[extension] = {}

            while True:
                directory, pos = self._read_token(pos, end, "directory")
                if directory == "":
                    break
                if directory in directories:
                    raise DuplicateEntryError(
                        f"Directory block {directory!r} is repeated under {extension!r}", offset=pos
                    )
                names = directories[directory] = {}

                while True:
                    name, pos = self._read_token(pos, end, "file name")
                    if name == "":
                        break
                    entry = VpkEntry(self, extension, directory, name)
                    if name in names:
                        raise DuplicateEntryError("Entry is listed twice", offset=pos, path=entry.path)
                    if pos + ENTRY_RECORD.size > end:
                        raise TruncatedTreeError(
                            "Entry record runs past the directory tree", offset=pos, path=entry.path
                        )
                    record_offset = pos
                    pos = entry.parse(data, pos)
                    if entry.terminator != ENTRY_TERMINATOR:
                        raise BadTerminatorError(
                            f"Entry record terminator is 0x{entry.terminator:04X}, expected 0xFFFF",
                            offset=record_offset + ENTRY_RECORD.size - 2,
                            path=entry.path,
                        )
                    if pos > end:
                        raise TruncatedTreeError(
                            "Preload data runs past the directory tree", offset=record_offset, path=entry.path
                        )
                    names[name] = entry
                    self._index[(extension, directory, name)] = entry
                    self._folded.setdefault(entry.path.lower(), entry)

        if pos != end:
            raise LengthMismatchError(
                f"Directory tree ends at 0x{pos:X} but the header declares it ends at 0x{end:X}",
                offset=pos,
            )
        self._tree_span = (start, end)

    def _read_token(self, pos: int, end: int, what: str):
        text, next_pos = read_c_string(self.data, pos, end)
        if text is None:
            raise TruncatedTreeError(f"Unterminated {what} in directory tree", offset=pos)
        return text, next_pos

    def _read_sections(self) -> None:
        h = self.header
        pos = self._tree_span[1]
        if h.version == 1:
            # Everything after the tree is entry data.
            self._region_span = (pos, len(self.data))
            self._archive_md5_span = self._other_md5_span = self._signature_span = (len(self.data),) * 2
            self._trailer_span = (len(self.data), len(self.data))
            return

        spans = []
        for length, label in (
            (h.file_data_length, "File data"),
            (h.archive_md5_length, "Archive MD5"),
            (h.other_md5_length, "Other MD5"),
            (h.signature_length, "Signature"),
        ):
            if pos + length > len(self.data):
                raise TruncatedDataError(
                    f"{label} section declares {length} bytes but the archive ends at 0x{len(self.data):X}",
                    offset=pos,
                )
            spans.append((pos, pos + length))
            pos += length
        (self._region_span,
         self._archive_md5_span,
         self._other_md5_span,
         self._signature_span) = spans
        self._trailer_span = (pos, len(self.data))

        self.checksums.parse(self._slice(self._archive_md5_span), self._slice(self._other_md5_span))

    def _slice(self, span) -> memoryview:
        return self._view[span[0]:span[1]]

    # Lookup.

    def entries(self) -> Iterator["VpkEntry"]:
        for directories in self.tree.values():
            for names in directories.values():
                yield from names.values()

    def lookup(self, extension: str, directory: str, name: str) -> "VpkEntry":
        entry = self._index.get((extension, directory, name))
        if entry is None:
            entry = self._folded.get(join_path(extension, directory, name).lower())
        if entry is None:
            raise NotFoundError("No such entry in archive", path=join_path(extension, directory, name))
        return entry

    def find(self, path: str) -> Optional["VpkEntry"]:
        try:
            return self.lookup(*split_path(path))
        except NotFoundError:
            return None

    def __len__(self):
        return len(self._index)

    def __iter__(self):
        return (entry.path for entry in self.entries())

    def __contains__(self, path):
        return self.find(path) is not None

    def __getitem__(self, path):
        return self.lookup(*split_path(path))

    # Entry data.

    @property
    def embedded_data(self) -> memoryview:
        return self._slice(self._region_span)

    def read(self, path: str) -> bytes:
        return self[path].read()

    def read_entry(self, entry: "VpkEntry") -> bytes:
        """Return the full content of ``entry``: preload bytes plus remainder."""

        if entry.rewritten:
            return entry.content
        preload = entry.preload_data
        if entry.length == 0:
            return preload
        if entry.is_embedded:
            return preload + bytes(self._embedded_slice(entry))
        if self.part_reader is None:
            raise UnsupportedRegionError(
                f"Entry data is stored in archive part {entry.archive_index:03d}", path=entry.path
            )
        remainder = self.part_reader(entry.archive_index, entry.offset, entry.length)
        if len(remainder) != entry.length:
            raise TruncatedDataError(
                f"Archive part {entry.archive_index:03d} holds {len(remainder)} of {entry.length} bytes",
                offset=entry.offset,
                path=entry.path,
            )
        return preload + remainder

    def _embedded_slice(self, entry: "VpkEntry") -> memoryview:
        region = self.embedded_data
        if entry.source_offset + entry.source_length > len(region):
            raise TruncatedDataError(
                f"Entry data ends at 0x{entry.source_offset + entry.source_length:X} "
                f"past the {len(region)} byte data section",
                offset=self._region_span[0] + entry.source_offset,
                path=entry.path,
            )
        return region[entry.source_offset:entry.source_offset + entry.source_length]

    def extract(self, where, keep_folder_structure: bool = True, pattern: Optional[str] = None) -> List[str]:
        """Write every entry, or those whose path matches ``pattern``, under ``where``.

        Returns the paths written.
        """

        root = os.path.realpath(os.fspath(where))
        written = []
        for entry in self.entries():
            if pattern is not None and not fnmatch.fnmatchcase(entry.path, pattern):
                continue
            if keep_folder_structure:
                path = os.path.realpath(os.path.join(root, entry.path))
            else:
                path = os.path.realpath(os.path.join(root, os.path.basename(entry.path)))
            if os.path.commonpath([root, path]) != root or path == root:
                raise VpkError("Entry path leaves the extraction directory", path=entry.path)
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "wb") as f:
                f.write(self.read_entry(entry))
            written.append(path)
        logger.info("Extracted %d entries to %s", len(written), root)
        return written

    # Modification.

    @property
    def is_modified(self) -> bool:
        return bool(self._rewritten)

    def mark_rewritten(self, entry: "VpkEntry", content: bytes) -> None:
        """Record ``content`` as the new data of ``entry``.

        The caller has already updated the entry's crc and length fields.
        """
        entry.content = content
        entry.rewritten = True
        if entry not in self._rewritten:
            self._rewritten.append(entry)

    def serialize(self, layout: str = "preserve") -> bytes:
        """Return the bytes of the archive with every rewritten entry applied.

        ``layout`` controls where rewritten data goes.  ``"preserve"`` keeps the
        existing data section intact so no other entry moves; ``"rebuild"``
        lays the data section out again in tree order.
        """

        if layout not in LAYOUTS:
            raise ValueError(f"Unknown layout {layout!r}, expected one of {', '.join(LAYOUTS)}")

        if not self.is_modified:
            region, offsets = self.embedded_data, {}
        elif layout == "rebuild":
            region, offsets = self._rebuild_region()
        else:
            region, offsets = self._preserve_region()

        tree = b"".join(self._serialize_tree(offsets))
        header = self.header.serialize(len(tree), len(region))

        chunks = [header, tree, region]
        if self.header.version == 2:
            if self.is_modified:
                archive_md5 = self.checksums.serialize_archive_checksums(region)
                if self.header.other_md5_length == OTHER_MD5_LENGTH:
                    other_md5 = self.checksums.serialize_other_checksums(header, tree, region, archive_md5)
                else:
                    other_md5 = self._slice(self._other_md5_span)
                if self.header.signature_length:
                    logger.warning(
                        "%s carries a signature section that no longer matches the patched content",
                        self.filename or "archive",
                    )
            else:
                archive_md5 = self._slice(self._archive_md5_span)
                other_md5 = self._slice(self._other_md5_span)
            chunks += [archive_md5, other_md5, self._slice(self._signature_span)]
        chunks.append(self._slice(self._trailer_span))

        out = b"".join(chunks)
        logger.debug("Serialized VPK v%d (%s layout): %d bytes", self.header.version, layout, len(out))
        return out

    def _serialize_tree(self, offsets):
        for extension, directories in self.tree.items():
            yield pack_c_string(extension)
            for directory, names in directories.items():
                yield pack_c_string(directory)
                for name, entry in names.items():
                    yield pack_c_string(name)
                    yield entry.serialize(offsets.get(entry, entry.offset))
                yield b"\0"
            yield b"\0"
        yield b"\0"

    def _preserve_region(self):
        out = bytearray(self.embedded_data)
        offsets = {}
        for entry in self._rewritten:
            remainder = entry.remainder
            if not remainder:
                continue
            if self._fits_in_place(entry, len(remainder)):
                out[entry.source_offset:entry.source_offset + len(remainder)] = remainder
                offsets[entry] = entry.source_offset
            else:
                offsets[entry] = len(out)
                out += remainder
        return out, offsets

    def _fits_in_place(self, entry: "VpkEntry", length: int) -> bool:
        if entry.source_archive_index != EMBEDDED_ARCHIVE_INDEX or length > entry.source_length:
            return False
        start, end = entry.source_offset, entry.source_offset + entry.source_length
        if end > len(self.embedded_data):
            return False
        for other in self.entries():
            if other is entry or other.source_archive_index != EMBEDDED_ARCHIVE_INDEX:
                continue
            if other.source_offset < end and start < other.source_offset + other.source_length:
                return False
        return True

    def _rebuild_region(self):
        out = bytearray()
        offsets = {}
        placed = {}
        for entry in self.entries():
            if not entry.is_embedded or entry.length == 0:
                continue
            if entry.rewritten:
                offsets[entry] = len(out)
                out += entry.remainder
                continue
            # Entries sharing one slot keep sharing it.
            key = (entry.source_offset, entry.source_length)
            if key not in placed:
                placed[key] = len(out)
                out += self._embedded_slice(entry)
            offsets[entry] = placed[key]
        return out, offsets

    # Verification.

    def validate(self) -> List[str]:
        """Check entry CRCs and, for version 2 files, the MD5 sections.

        Returns a list of human readable problems; an empty list means the
        archive is consistent.  Entries in numbered parts are only checked when
        a part reader is available.
        """

        errors = []
        for entry in self.entries():
            try:
                content = self.read_entry(entry)
            except UnsupportedRegionError:
                continue
            except (TruncatedDataError, OSError) as exc:
                errors.append(f"{entry.path}: {getattr(exc, 'message', exc)}")
                continue
            actual = crc32(content)
            if actual != entry.crc:
                errors.append(f"{entry.path}: CRC mismatch (stored 0x{entry.crc:08X}, actual 0x{actual:08X})")
            elif len(content) != entry.total_length:
                errors.append(f"{entry.path}: size mismatch")

        if self.header.version == 2:
            errors.extend(self.checksums.validate())
        return errors


class VpkFileHeader:

    def __init__(self, owner):
        self.owner = owner
        self.signature = VPK_SIGNATURE
        self.version = 2
        self.tree_length = 0
        self.file_data_length = 0
        self.archive_md5_length = 0
        self.other_md5_length = 0
        self.signature_length = 0

    @property
    def size(self) -> int:
        return HEADER_V1.size if self.version == 1 else HEADER_V2.size

    def parse(self, data):
        if len(data) < HEADER_V1.size:
            raise TruncatedTreeError(f"Archive is only {len(data)} bytes, too short for a VPK header", offset=0)
        self.signature, self.version, self.tree_length = HEADER_V1.unpack_from(data, 0)
        if self.signature != VPK_SIGNATURE:
            raise BadSignatureError(f"Invalid VPK signature 0x{self.signature:08X}", offset=0)
        if self.version not in SUPPORTED_VERSIONS:
            raise UnsupportedVersionError(f"Unsupported VPK version {self.version}", offset=4)
        if self.version == 2:
            if len(data) < HEADER_V2.size:
                raise TruncatedTreeError(
                    f"Archive is only {len(data)} bytes, too short for a version 2 header", offset=0
                )
            (_signature,
             _version,
             _tree_length,
             self.file_data_length,
             self.archive_md5_length,
             self.other_md5_length,
             self.signature_length) = HEADER_V2.unpack_from(data, 0)

    def serialize(self, tree_length=None, file_data_length=None):
        if tree_length is None:
            tree_length = self.tree_length
        if self.version == 1:
            return HEADER_V1.pack(self.signature, self.version, tree_length)
        if file_data_length is None:
            file_data_length = self.file_data_length
        return HEADER_V2.pack(self.signature, self.version, tree_length, file_data_length,
                              self.archive_md5_length, self.other_md5_length, self.signature_length)


class VpkEntry:

    def __init__(self, owner, extension, directory, name):
        self.owner = owner
        self.extension = extension
        self.directory = directory
        self.name = name
        self.crc = 0
        self.preload_length = 0
        self.archive_index = EMBEDDED_ARCHIVE_INDEX
        self.offset = 0
        self.length = 0
        self.terminator = ENTRY_TERMINATOR
        self.preload_offset = 0
        self.rewritten = False
        self.content: Optional[bytes] = None
        self.source_archive_index = self.archive_index
        self.source_offset = 0
        self.source_length = 0
        self.source_preload_length = 0

    def parse(self, data, offset):
        (self.crc,
         self.preload_length,
         self.archive_index,
         self.offset,
         self.length,
         self.terminator) = ENTRY_RECORD.unpack_from(data, offset)
        self.preload_offset = offset + ENTRY_RECORD.size

        # Where the data was in the source file, whatever happens to it later.
        self.source_archive_index = self.archive_index
        self.source_offset = self.offset
        self.source_length = self.length
        self.source_preload_length = self.preload_length
        return self.preload_offset + self.preload_length

    def serialize(self, offset=None):
        if offset is None:
            offset = self.offset
        record = ENTRY_RECORD.pack(self.crc, self.preload_length, self.archive_index,
                                   offset, self.length, self.terminator)
        if self.rewritten:
            return record + self.content[:self.preload_length]
        view = self.owner._view
        return record + view[self.preload_offset:self.preload_offset + self.preload_length]

    @property
    def path(self) -> str:
        return join_path(self.extension, self.directory, self.name)

    @property
    def preload_data(self) -> bytes:
        if self.rewritten:
            return self.content[:self.preload_length]
        return self.owner.data[self.preload_offset:self.preload_offset + self.preload_length]

    @property
    def remainder(self) -> bytes:
        """Bytes of a rewritten entry that go to the data section."""
        return self.content[self.preload_length:] if self.rewritten else b""

    @property
    def total_length(self) -> int:
        return self.preload_length + self.length

    @property
    def is_embedded(self) -> bool:
        return self.archive_index == EMBEDDED_ARCHIVE_INDEX

    def read(self) -> bytes:
        return self.owner.read_entry(self)

    def __repr__(self):
        return f"<VpkEntry {self.path!r} crc=0x{self.crc:08X} size={self.total_length}>"


class VpkArchiveChecksum:

    def __init__(self, owner):
        self.owner = owner

    def parse(self, data, offset):
        (self.archive_index,
         self.start_offset,
         self.count,
         self.checksum) = ARCHIVE_MD5_RECORD.unpack_from(data, offset)

    def serialize(self):
        return ARCHIVE_MD5_RECORD.pack(self.archive_index, self.start_offset, self.count, self.checksum)


class VpkChecksumSection:
    """Version 2 archive MD5 records plus the tree and whole-file MD5s."""

    def __init__(self, owner):
        self.owner = owner
        self.archive_checksums: List[VpkArchiveChecksum] = []
        self.tree_checksum = None
        self.archive_checksums_checksum = None
        self.file_checksum = None

    def parse(self, archive_md5, other_md5):
        if len(archive_md5) % ARCHIVE_MD5_RECORD.size:
            raise LengthMismatchError(
                f"Archive MD5 section is {len(archive_md5)} bytes, "
                f"not a multiple of {ARCHIVE_MD5_RECORD.size}",
                offset=self.owner._archive_md5_span[0],
            )
        for offset in range(0, len(archive_md5), ARCHIVE_MD5_RECORD.size):
            record = VpkArchiveChecksum(self)
            record.parse(archive_md5, offset)
            self.archive_checksums.append(record)

        if len(other_md5) == OTHER_MD5_LENGTH:
            other_md5 = bytes(other_md5)
            self.tree_checksum = other_md5[0:16]
            self.archive_checksums_checksum = other_md5[16:32]
            self.file_checksum = other_md5[32:48]

    def serialize_archive_checksums(self, region) -> bytes:
        """Serialize the archive MD5 records, refreshing those over ``region``.

        The last record over the data section is stretched to its new end so
        appended or grown entry data stays covered.
        """
        embedded = [r for r in self.archive_checksums if r.archive_index == EMBEDDED_ARCHIVE_INDEX]
        last = max(embedded, key=lambda r: r.start_offset, default=None)
        out = []
        for record in self.archive_checksums:
            if record.archive_index == EMBEDDED_ARCHIVE_INDEX:
                if record is last:
                    count = max(0, len(region) - record.start_offset)
                else:
                    # A rebuilt data section can be shorter than the span recorded.
                    count = max(0, min(record.count, len(region) - record.start_offset))
                chunk = region[record.start_offset:record.start_offset + count]
                out.append(ARCHIVE_MD5_RECORD.pack(record.archive_index, record.start_offset,
                                                   count, md5(chunk)))
            else:
                out.append(record.serialize())
        return b"".join(out)

    def serialize_other_checksums(self, header, tree, region, archive_md5) -> bytes:
        tree_checksum = md5(tree)
        archive_checksums_checksum = md5(archive_md5)
        file_checksum = md5(header, tree, region, archive_md5, tree_checksum, archive_checksums_checksum)
        return tree_checksum + archive_checksums_checksum + file_checksum

    def validate(self) -> List[str]:
        owner = self.owner
        errors = []
        region = owner.embedded_data
        for record in self.archive_checksums:
            if record.archive_index == EMBEDDED_ARCHIVE_INDEX:
                if record.start_offset + record.count > len(region):
                    errors.append(f"archive MD5 record at 0x{record.start_offset:X} runs past the data section")
                    continue
                chunk = region[record.start_offset:record.start_offset + record.count]
            elif owner.part_reader is not None:
                try:
                    chunk = owner.part_reader(record.archive_index, record.start_offset, record.count)
                except OSError as exc:
                    errors.append(f"archive part {record.archive_index:03d}: {exc}")
                    continue
            else:
                continue
            if md5(chunk) != record.checksum:
                errors.append(
                    f"archive part {record.archive_index:03d} MD5 mismatch "
                    f"at 0x{record.start_offset:X} (+{record.count})"
                )

        if self.tree_checksum is None:
            return errors
        header = owner._slice((0, owner.header.size))
        tree = owner._slice(owner._tree_span)
        archive_md5 = owner._slice(owner._archive_md5_span)
        if md5(tree) != self.tree_checksum:
            errors.append("tree MD5 mismatch")
        if md5(archive_md5) != self.archive_checksums_checksum:
            errors.append("archive MD5 section MD5 mismatch")
        expected = md5(header, tree, region, archive_md5, self.tree_checksum, self.archive_checksums_checksum)
        if expected != self.file_checksum:
            errors.append("whole file MD5 mismatch")
        return errors

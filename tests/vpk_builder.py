"""Build small VPK directory files byte by byte for the tests."""

from __future__ import annotations

import hashlib
import struct
import zlib

EMBEDDED = 0x7FFF


def _split(path):
    directory, _, filename = path.rpartition("/")
    name, dot, ext = filename.rpartition(".")
    if not dot or not ext:
        name, ext = filename, ""
    return ext or " ", directory or " ", name


def build_vpk(files, version=2, preload=None, parts=None, chunk_md5=False, signature=b""):
    """Return ``(dir_bytes, part_files)``.

    ``files`` maps logical paths to content, in tree order.  ``preload`` maps a
    path to the number of leading bytes kept in the tree.  ``parts`` maps a
    path to the numbered archive holding the rest; ``part_files`` maps each
    archive index to that part's bytes.
    """

    preload = preload or {}
    parts = parts or {}

    tree_order = {}
    for path in files:
        ext, directory, name = _split(path)
        tree_order.setdefault(ext, {}).setdefault(directory, []).append((name, path))

    tree = bytearray()
    region = bytearray()
    part_files = {}
    for ext, directories in tree_order.items():
        tree += ext.encode() + b"\0"
        for directory, names in directories.items():
            tree += directory.encode() + b"\0"
            for name, path in names:
                content = files[path]
                head = content[:preload.get(path, 0)]
                rest = content[len(head):]
                index = parts.get(path, EMBEDDED)
                if index == EMBEDDED:
                    offset = len(region)
                    region += rest
                else:
                    part = part_files.setdefault(index, bytearray())
                    offset = len(part)
                    part += rest
                tree += name.encode() + b"\0"
                tree += struct.pack("<LHHLLH", zlib.crc32(content) & 0xFFFFFFFF, len(head),
                                    index, offset, len(rest), 0xFFFF)
                tree += head
            tree += b"\0"
        tree += b"\0"
    tree += b"\0"

    if version == 1:
        header = struct.pack("<3L", 0x55AA1234, 1, len(tree))
        return bytes(header + tree + region), {k: bytes(v) for k, v in part_files.items()}

    archive_md5 = b""
    if chunk_md5:
        archive_md5 = struct.pack("<3L16s", EMBEDDED, 0, len(region), hashlib.md5(region).digest())
    header = struct.pack("<7L", 0x55AA1234, 2, len(tree), len(region), len(archive_md5), 48, len(signature))
    tree_md5 = hashlib.md5(tree).digest()
    archive_md5_md5 = hashlib.md5(archive_md5).digest()
    whole = hashlib.md5(header + tree + region + archive_md5 + tree_md5 + archive_md5_md5).digest()
    data = header + tree + region + archive_md5 + tree_md5 + archive_md5_md5 + whole + signature
    return bytes(data), {k: bytes(v) for k, v in part_files.items()}

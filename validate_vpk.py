#!/usr/bin/env python3
"""Validate a VPK file and display detailed information."""

from __future__ import annotations

import argparse
import logging

import vpk

from pyvpk.fs.archive import open_archive
from pyvpk.fs.errors import VpkError


def _crosscheck(archive, path):
    """Compare every entry with what the ``vpk`` package reads from ``path``."""
    errors = []
    reference = vpk.open(str(path))
    for name in reference:
        entry = archive.find(name)
        if entry is None:
            errors.append(f"{name}: missing from directory tree")
            continue
        try:
            ours = entry.read()
        except VpkError as exc:
            errors.append(f"{name}: {exc}")
            continue
        if reference.get_file(name).read() != ours:
            errors.append(f"{name}: content differs from vpk reader")
    return errors


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Validate a VPK file")
    parser.add_argument("vpk", help="Path to the VPK directory file")
    parser.add_argument("--list", action="store_true", help="List every entry")
    parser.add_argument(
        "--crosscheck",
        action="store_true",
        help="Also read every entry with the vpk package and compare",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(level=args.log_level, format="%(levelname)s %(name)s: %(message)s")

    try:
        archive = open_archive(args.vpk)
    except (VpkError, OSError) as exc:
        print(f"Failed to parse {args.vpk}: {exc}")
        return 1

    h = archive.header
    print("Header")
    print(f"  version: {h.version}")
    print(f"  tree_length: {h.tree_length}")
    if h.version == 2:
        print(f"  file_data_length: {h.file_data_length}")
        print(f"  archive_md5_length: {h.archive_md5_length}")
        print(f"  other_md5_length: {h.other_md5_length}")
        print(f"  signature_length: {h.signature_length}")

    print("\nDirectory")
    print(f"  entries: {len(archive)}")
    if args.list:
        for entry in archive.entries():
            where = "dir" if entry.is_embedded else f"{entry.archive_index:03d}"
            print(f"    {entry.path}  {entry.total_length} bytes  crc 0x{entry.crc:08X}  [{where}]")

    errors = archive.validate()
    if args.crosscheck:
        errors.extend(_crosscheck(archive, args.vpk))

    if errors:
        print("  problems:")
        for p in errors:
            print(f"    - {p}")
        print("Validation failed")
        return 1

    print("  all checksums match")
    print("Validation succeeded")
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())

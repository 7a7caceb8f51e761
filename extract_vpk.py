#!/usr/bin/env python3
"""Extract the files stored in a VPK archive."""

from __future__ import annotations

import argparse
import logging
import os.path

from pyvpk.fs.archive import extract_archive
from pyvpk.fs.errors import FormatError, VpkError


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Extract files from a VPK archive")
    parser.add_argument("archive", help="Path to the VPK directory file")
    parser.add_argument(
        "-o",
        "--output",
        required=True,
        help="Output directory for extraction",
    )
    parser.add_argument(
        "-f",
        "--filter",
        help="Only extract entries whose path matches this pattern, e.g. 'maps/*.vmap'",
    )
    parser.add_argument(
        "--flat",
        action="store_true",
        help="Write every file straight into the output directory",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(level=args.log_level, format="%(levelname)s %(name)s: %(message)s")

    output_dir = os.path.realpath(args.output)
    try:
        written = extract_archive(
            args.archive,
            output_dir,
            keep_folder_structure=not args.flat,
            pattern=args.filter,
        )
    except FormatError as exc:
        print(f"Failed to parse {args.archive}: {exc}")
        return 1
    except (VpkError, OSError) as exc:
        print(f"Extraction failed: {exc}")
        return 1

    print(f"Extracted {len(written)} files to {output_dir}")
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())

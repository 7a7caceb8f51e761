#!/usr/bin/env python3
"""Replace one file inside a VPK archive."""

from __future__ import annotations

import argparse
import logging
import sys

from pyvpk.fs.archive import patch_file
from pyvpk.fs.errors import FormatError, NotFoundError, UnsupportedRegionError, VpkError
from pyvpk.fs.vpkfile import LAYOUTS


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Replace a file inside a VPK archive")
    parser.add_argument("archive", help="Path to the VPK directory file")
    parser.add_argument("path", help="Logical path of the entry to replace, e.g. maps/dota.vmap_c")
    parser.add_argument("replacement", help="File holding the new content")
    parser.add_argument(
        "-o",
        "--output",
        help="Where to write the patched archive (defaults to overwriting the input)",
    )
    parser.add_argument(
        "--layout",
        choices=LAYOUTS,
        default="preserve",
        help="Keep the existing data section in place or lay it out again",
    )
    parser.add_argument(
        "--backup",
        action="store_true",
        help="Copy the existing output file to <name>.bak before overwriting it",
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
        with open(args.replacement, "rb") as f:
            replacement = f.read()
        written = patch_file(
            args.archive,
            args.path,
            replacement,
            destination=args.output,
            layout=args.layout,
            backup=args.backup,
        )
    except (NotFoundError, UnsupportedRegionError) as exc:
        print(f"Cannot patch {args.path}: {exc}")
        return 2
    except FormatError as exc:
        print(f"Failed to parse {args.archive}: {exc}")
        return 1
    except (VpkError, OSError) as exc:
        print(f"Patching failed: {exc}")
        return 1

    print(f"Patched {args.path} into {written}")
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())

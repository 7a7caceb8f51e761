from .errors import (
    BadSignatureError,
    BadTerminatorError,
    DuplicateEntryError,
    FormatError,
    LengthMismatchError,
    NotFoundError,
    TruncatedDataError,
    TruncatedTreeError,
    UnsupportedRegionError,
    UnsupportedVersionError,
    VpkError,
)
from .vpkfile import EMBEDDED_ARCHIVE_INDEX, VPK_SIGNATURE, VpkEntry, VpkFile
from .patch import EntryHandle, patch, replace, resolve
from .archive import extract_archive, open_archive, patch_file, read_archive, write_archive

__all__ = [
    "BadSignatureError",
    "BadTerminatorError",
    "DuplicateEntryError",
    "EMBEDDED_ARCHIVE_INDEX",
    "EntryHandle",
    "FormatError",
    "LengthMismatchError",
    "NotFoundError",
    "TruncatedDataError",
    "TruncatedTreeError",
    "UnsupportedRegionError",
    "UnsupportedVersionError",
    "VPK_SIGNATURE",
    "VpkEntry",
    "VpkError",
    "VpkFile",
    "extract_archive",
    "open_archive",
    "patch",
    "patch_file",
    "read_archive",
    "replace",
    "resolve",
    "write_archive",
]

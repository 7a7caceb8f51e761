"""Exceptions raised while reading, patching and writing VPK archives."""

from __future__ import annotations


class VpkError(Exception):
    """Base class for every archive error.

    ``offset`` is the byte position in the archive the problem was found at,
    ``path`` the logical entry involved and ``phase`` the step of a patch
    operation that raised it (``"parse"``, ``"resolve"``, ...).
    """

    def __init__(self, message: str, offset: int | None = None, path: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.offset = offset
        self.path = path
        self.phase: str | None = None

    def __str__(self) -> str:
        details = []
        if self.phase:
            details.append(f"phase {self.phase}")
        if self.path:
            details.append(f"entry {self.path}")
        if self.offset is not None:
            details.append(f"offset 0x{self.offset:X}")
        if details:
            return f"{self.message} [{', '.join(details)}]"
        return self.message


class FormatError(VpkError, ValueError):
    """The archive is malformed or uses an unsupported layout."""


class BadSignatureError(FormatError):
    pass


class UnsupportedVersionError(FormatError):
    pass


class TruncatedTreeError(FormatError):
    pass


class LengthMismatchError(FormatError):
    pass


class BadTerminatorError(FormatError):
    pass


class DuplicateEntryError(FormatError):
    pass


class TruncatedDataError(FormatError):
    pass


class NotFoundError(VpkError, LookupError):
    """The requested logical path is not in the directory tree."""


class UnsupportedRegionError(VpkError):
    """The entry's data lives in a numbered archive part."""

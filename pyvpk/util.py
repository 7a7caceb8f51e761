import hashlib
import zlib


def crc32(data) -> int:
    return zlib.crc32(data) & 0xFFFFFFFF


def md5(*chunks) -> bytes:
    digest = hashlib.md5()
    for chunk in chunks:
        digest.update(chunk)
    return digest.digest()

# Logical paths are stored split in three:
# extension, directory and name.
# A single space stands in for an empty directory or extension.

def split_path(path: str):
    path = path.replace("\\", "/").lstrip("/")
    directory, _, filename = path.rpartition("/")
    name, dot, extension = filename.rpartition(".")
    if not dot or not extension:
        name, extension = filename, ""
    return (extension or " ", directory or " ", name)


def join_path(extension: str, directory: str, name: str) -> str:
    filename = name if extension == " " else f"{name}.{extension}"
    if directory == " ":
        return filename
    return f"{directory}/{filename}"


def read_c_string(blob: bytes, offset: int, end: int):
    """Return ``(text, next_offset)`` for the NUL-terminated string at ``offset``.

    ``text`` is ``None`` when no terminator is found before ``end``.
    """
    stop = blob.find(b"\0", offset, end)
    if stop == -1:
        return None, end
    raw = blob[offset:stop]
    return raw.decode("utf-8", errors="surrogateescape"), stop + 1


def pack_c_string(text: str) -> bytes:
    return text.encode("utf-8", errors="surrogateescape") + b"\0"

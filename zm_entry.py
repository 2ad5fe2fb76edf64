#!/usr/bin/env python3
"""Entry records and entry sources for zipmend.

An entry source pairs one ArchiveEntryRecord with a content accessor. Sources
wrap in-memory bytes, filesystem files, or entries of an existing archive.
Directory sources have no content: ``open()`` returns None.

The record never interprets ``extra`` or ``external_attr``; those belong to the
codec and to the permission strategy respectively.
"""

from __future__ import annotations

import io
import os
import time
import zipfile
import zlib
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Optional, Tuple

# =============================================================================
# Constants
# =============================================================================

# Earliest timestamp representable in a ZIP header
MIN_DATE_TIME: Tuple[int, int, int, int, int, int] = (1980, 1, 1, 0, 0, 0)

# Read buffer for every stream copy in the library
COPY_BUFFER_SIZE = 64 * 1024

DateTime = Tuple[int, int, int, int, int, int]


# =============================================================================
# Errors
# =============================================================================


class ArchiveError(Exception):
    """Raised when reading or writing an archive fails.

    Codec and filesystem errors are wrapped into this type (the original error
    is kept as ``__cause__``) so callers only need to handle one failure kind.
    """

    pass


# =============================================================================
# Records
# =============================================================================


class CompressionMethod(Enum):
    STORED = "stored"
    DEFLATED = "deflated"
    UNSPECIFIED = "unspecified"

    @classmethod
    def from_codec(cls, compress_type: int) -> "CompressionMethod":
        if compress_type == zipfile.ZIP_STORED:
            return cls.STORED
        if compress_type == zipfile.ZIP_DEFLATED:
            return cls.DEFLATED
        return cls.UNSPECIFIED

    def to_codec(self) -> int:
        if self is CompressionMethod.STORED:
            return zipfile.ZIP_STORED
        return zipfile.ZIP_DEFLATED


def now_date_time() -> DateTime:
    return clamp_date_time(time.localtime()[:6])


def clamp_date_time(value: Tuple[int, ...]) -> DateTime:
    """Clamp a ``date_time`` tuple into the range a ZIP header can hold."""
    stamp = tuple(int(v) for v in value[:6])
    if stamp < MIN_DATE_TIME:
        return MIN_DATE_TIME
    if stamp[0] > 2107:
        return (2107, 12, 31, 23, 59, 58)
    return stamp  # type: ignore[return-value]


def date_time_from_mtime(mtime: float) -> DateTime:
    return clamp_date_time(time.localtime(mtime)[:6])


@dataclass(frozen=True)
class ArchiveEntryRecord:
    """Metadata of one logical archive entry."""

    path: str  # Archive-relative, / separators, directories end with /
    is_directory: bool = False
    size: Optional[int] = None  # Uncompressed size, None if unknown
    crc32: Optional[int] = None
    compression: CompressionMethod = CompressionMethod.UNSPECIFIED
    timestamp: Optional[DateTime] = None
    extra: bytes = b""
    external_attr: int = 0
    comment: bytes = b""

    @classmethod
    def from_zipinfo(cls, info: zipfile.ZipInfo) -> "ArchiveEntryRecord":
        is_dir = info.is_dir()
        return cls(
            path=info.filename,
            is_directory=is_dir,
            size=None if is_dir else info.file_size,
            crc32=None if is_dir else info.CRC,
            compression=CompressionMethod.from_codec(info.compress_type),
            timestamp=clamp_date_time(info.date_time),
            extra=info.extra,
            external_attr=info.external_attr,
            comment=info.comment,
        )

    @classmethod
    def directory(cls, path: str, timestamp: Optional[DateTime] = None) -> "ArchiveEntryRecord":
        if not path.endswith("/"):
            path += "/"
        return cls(path=path, is_directory=True, timestamp=timestamp)

    def renamed(self, new_path: str) -> "ArchiveEntryRecord":
        """Return a copy under ``new_path`` with every other field preserved."""
        if self.is_directory and not new_path.endswith("/"):
            new_path += "/"
        return replace(self, path=new_path)

    def with_timestamp(self, timestamp: Optional[DateTime]) -> "ArchiveEntryRecord":
        return replace(self, timestamp=timestamp)

    def with_compression(self, compression: CompressionMethod) -> "ArchiveEntryRecord":
        return replace(self, compression=compression)


# =============================================================================
# Entry sources
# =============================================================================


class EntrySource:
    """One entry waiting to be written: a record plus lazily opened content."""

    path: str

    def record(self) -> ArchiveEntryRecord:
        raise NotImplementedError

    def open(self) -> Optional[BinaryIO]:
        """Open the content stream, or return None for a directory.

        The caller owns the returned stream and must close it.
        """
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}[{self.path}]"


class ByteSource(EntrySource):
    """Entry backed by an in-memory byte string."""

    def __init__(
        self,
        path: str,
        data: bytes,
        timestamp: Optional[DateTime] = None,
        compression: CompressionMethod = CompressionMethod.UNSPECIFIED,
    ) -> None:
        self.path = path
        self._data = bytes(data)
        self._timestamp = timestamp or now_date_time()
        self._compression = compression
        # CRC is only known up front when the method is fixed by the caller
        self._crc = (
            zlib.crc32(self._data) if compression is not CompressionMethod.UNSPECIFIED else None
        )

    def record(self) -> ArchiveEntryRecord:
        return ArchiveEntryRecord(
            path=self.path,
            is_directory=self.path.endswith("/"),
            size=len(self._data),
            crc32=self._crc,
            compression=self._compression,
            timestamp=self._timestamp,
        )

    def open(self) -> Optional[BinaryIO]:
        if self.path.endswith("/"):
            return None
        return io.BytesIO(self._data)


class FileSource(EntrySource):
    """Entry backed by a filesystem file or directory.

    Size and modification time are read from the file when the record is
    built. When a permission strategy is given, its encoding of the file mode
    is stored in the record's ``external_attr``.
    """

    def __init__(self, path: str, file: Path, permissions=None) -> None:
        self.file = Path(file)
        if self.file.is_dir() and not path.endswith("/"):
            path += "/"
        self.path = path
        self._permissions = permissions

    def record(self) -> ArchiveEntryRecord:
        try:
            st = self.file.stat()
        except OSError as exc:
            raise ArchiveError(f"Cannot read {self.file}: {exc}") from exc
        is_dir = self.file.is_dir()
        external_attr = 0
        if self._permissions is not None:
            external_attr = self._permissions.external_attr_for(self.file, is_dir)
        return ArchiveEntryRecord(
            path=self.path,
            is_directory=is_dir,
            size=None if is_dir else st.st_size,
            timestamp=date_time_from_mtime(st.st_mtime),
            external_attr=external_attr,
        )

    def open(self) -> Optional[BinaryIO]:
        if self.file.is_dir():
            return None
        try:
            return open(self.file, "rb")
        except OSError as exc:
            raise ArchiveError(f"Cannot open {self.file}: {exc}") from exc


class ArchiveEntrySource(EntrySource):
    """Entry of an existing archive, opened only when its content is needed."""

    def __init__(self, archive: Path, name: str, path: Optional[str] = None) -> None:
        self.archive = Path(archive)
        self.name = name
        self.path = path or name

    def _info(self, zf: zipfile.ZipFile) -> zipfile.ZipInfo:
        try:
            return zf.getinfo(self.name)
        except KeyError as exc:
            raise ArchiveError(f"Entry {self.name!r} not found in {self.archive}") from exc

    def record(self) -> ArchiveEntryRecord:
        try:
            with zipfile.ZipFile(self.archive) as zf:
                record = ArchiveEntryRecord.from_zipinfo(self._info(zf))
        except (OSError, zipfile.BadZipFile) as exc:
            raise ArchiveError(f"Cannot read {self.archive}: {exc}") from exc
        return record.renamed(self.path) if self.path != self.name else record

    def open(self) -> Optional[BinaryIO]:
        try:
            zf = zipfile.ZipFile(self.archive)
        except (OSError, zipfile.BadZipFile) as exc:
            raise ArchiveError(f"Cannot read {self.archive}: {exc}") from exc
        try:
            info = self._info(zf)
            if info.is_dir():
                return None
            # Content is buffered; the archive handle closes below.
            with zf.open(info) as stream:
                return io.BytesIO(stream.read())
        except (OSError, zipfile.BadZipFile) as exc:
            raise ArchiveError(f"Cannot read {self.name!r} from {self.archive}: {exc}") from exc
        finally:
            zf.close()


def source_for(path: str, content) -> EntrySource:
    """Build an entry source from bytes, text, or a filesystem path."""
    if isinstance(content, EntrySource):
        return content
    if isinstance(content, str):
        return ByteSource(path, content.encode("utf-8"))
    if isinstance(content, (bytes, bytearray, memoryview)):
        return ByteSource(path, bytes(content))
    if isinstance(content, (os.PathLike,)):
        return FileSource(path, Path(content))
    raise TypeError(f"Unsupported entry content for {path!r}: {type(content).__name__}")

#!/usr/bin/env python3
"""Entry-level reading and writing on top of ``zipfile``.

This module is the only place that talks to the ZIP codec. Everything else in
zipmend works with ArchiveEntryRecord and binary streams.

Reading is exposed as lazy generators: ``iter_entries`` yields each entry with
an open content stream, ``iter_records`` yields metadata only. A consumer stops
early with a plain ``break``; the generator closes whatever it had open.

Writing goes through ArchiveSink, which is also the output handed to content
transformers.
"""

from __future__ import annotations

import contextlib
import io
import shutil
import struct
import zipfile
from pathlib import Path
from typing import BinaryIO, Iterable, Iterator, Optional, Tuple, Union

from zm_entry import (
    COPY_BUFFER_SIZE,
    ArchiveEntryRecord,
    ArchiveError,
    CompressionMethod,
    EntrySource,
    clamp_date_time,
    now_date_time,
)

# Extra field owned by the codec itself; it is regenerated on write
ZIP64_EXTRA_ID = 0x0001

# MS-DOS directory attribute
DOS_DIRECTORY_FLAG = 0x10

Content = Union[bytes, BinaryIO, None]


# =============================================================================
# Reading
# =============================================================================


@contextlib.contextmanager
def open_archive(path: Path, charset: Optional[str] = None) -> Iterator[zipfile.ZipFile]:
    """Open an archive for reading, wrapping codec errors into ArchiveError."""
    try:
        if charset:
            zf = zipfile.ZipFile(path, "r", metadata_encoding=charset)
        else:
            zf = zipfile.ZipFile(path, "r")
    except (OSError, zipfile.BadZipFile) as exc:
        raise ArchiveError(f"Cannot open archive {path}: {exc}") from exc
    with zf:
        yield zf


def is_archive(path: Path) -> bool:
    path = Path(path)
    return path.is_file() and zipfile.is_zipfile(path)


def iter_entries(
    path: Path,
    charset: Optional[str] = None,
    names: Optional[Iterable[str]] = None,
) -> Iterator[Tuple[ArchiveEntryRecord, Optional[BinaryIO]]]:
    """
    Yield every entry of an archive together with its open content stream.

    Entries come in central-directory order, duplicates included. The stream
    is None for directories and is closed as soon as the consumer advances or
    stops iterating.

    Args:
        path: Archive to read
        charset: Entry-name encoding passed through to the codec
        names: If given, only entries with these names are produced

    Yields:
        Tuples of (record, stream)
    """
    wanted = set(names) if names is not None else None
    with open_archive(path, charset) as zf:
        for info in zf.infolist():
            if wanted is not None and info.filename not in wanted:
                continue
            record = ArchiveEntryRecord.from_zipinfo(info)
            if record.is_directory:
                yield record, None
                continue
            try:
                stream = zf.open(info)
            except (OSError, zipfile.BadZipFile, NotImplementedError) as exc:
                raise ArchiveError(f"Cannot read {info.filename!r} from {path}: {exc}") from exc
            with stream:
                yield record, stream


def iter_records(path: Path, charset: Optional[str] = None) -> Iterator[ArchiveEntryRecord]:
    """Yield the metadata of every entry without opening any content."""
    with open_archive(path, charset) as zf:
        for info in zf.infolist():
            yield ArchiveEntryRecord.from_zipinfo(info)


def read_entry(path: Path, name: str, charset: Optional[str] = None) -> Optional[bytes]:
    """Return the content of one entry, or None if the archive lacks it."""
    with open_archive(path, charset) as zf:
        try:
            info = zf.getinfo(name)
        except KeyError:
            return None
        if info.is_dir():
            return b""
        try:
            return zf.read(info)
        except (OSError, zipfile.BadZipFile) as exc:
            raise ArchiveError(f"Cannot read {name!r} from {path}: {exc}") from exc


# =============================================================================
# Writing
# =============================================================================


def _strip_extra_field(extra: bytes, header_id: int) -> bytes:
    """Drop every field with ``header_id`` from an extra-field blob."""
    kept = []
    offset = 0
    while offset + 4 <= len(extra):
        field_id, length = struct.unpack("<HH", extra[offset : offset + 4])
        end = offset + 4 + length
        if field_id != header_id:
            kept.append(extra[offset:end])
        offset = end
    # Trailing bytes too short for a header are kept verbatim
    kept.append(extra[offset:])
    return b"".join(kept)


def to_zipinfo(record: ArchiveEntryRecord, compression_level: Optional[int] = None) -> zipfile.ZipInfo:
    stamp = clamp_date_time(record.timestamp) if record.timestamp else now_date_time()
    info = zipfile.ZipInfo(record.path, date_time=stamp)
    if record.is_directory:
        info.compress_type = zipfile.ZIP_STORED
    else:
        info.compress_type = record.compression.to_codec()
        if info.compress_type == zipfile.ZIP_DEFLATED and compression_level is not None:
            info._compresslevel = compression_level
        if record.size is not None:
            info.file_size = record.size
    info.extra = _strip_extra_field(record.extra, ZIP64_EXTRA_ID)
    info.external_attr = record.external_attr
    if record.is_directory:
        info.external_attr |= DOS_DIRECTORY_FLAG
    info.comment = record.comment
    return info


class ArchiveSink:
    """Write side of an archive, one entry at a time.

    Also the output handed to content transformers: a transformer writes its
    replacement entry (or entries) here with ``write``, ``add`` or
    ``open_entry``.
    """

    def __init__(self, zf: zipfile.ZipFile, compression_level: Optional[int] = None) -> None:
        self._zf = zf
        self.compression_level = compression_level
        self.names: list[str] = []

    @classmethod
    @contextlib.contextmanager
    def create(
        cls, target: Union[Path, BinaryIO], compression_level: Optional[int] = None
    ) -> Iterator["ArchiveSink"]:
        """Open a new archive at ``target`` (a path or a writable binary stream)."""
        try:
            zf = zipfile.ZipFile(target, "w", compression=zipfile.ZIP_DEFLATED)
        except OSError as exc:
            raise ArchiveError(f"Cannot create archive {target}: {exc}") from exc
        try:
            yield cls(zf, compression_level)
        except BaseException:
            with contextlib.suppress(OSError):
                zf.close()
            raise
        try:
            zf.close()
        except OSError as exc:
            raise ArchiveError(f"Cannot finish archive {target}: {exc}") from exc

    @contextlib.contextmanager
    def open_entry(self, record: ArchiveEntryRecord) -> Iterator[BinaryIO]:
        """Start a file entry and return a writable stream for its content."""
        if record.is_directory:
            raise ValueError(f"Directory entry {record.path!r} has no content")
        info = to_zipinfo(with_method(record, self.compression_level), self.compression_level)
        try:
            with self._zf.open(info, "w") as out:
                yield out
        except (OSError, zipfile.BadZipFile) as exc:
            raise ArchiveError(f"Cannot write entry {record.path!r}: {exc}") from exc
        self.names.append(record.path)

    def _write_empty(self, record: ArchiveEntryRecord) -> None:
        info = to_zipinfo(with_method(record, self.compression_level), self.compression_level)
        try:
            self._zf.writestr(info, b"")
        except OSError as exc:
            raise ArchiveError(f"Cannot write entry {record.path!r}: {exc}") from exc

    def write(self, record: ArchiveEntryRecord, content: Content = None) -> None:
        """Write one entry from bytes, a readable stream, or nothing."""
        if record.is_directory or content is None:
            self._write_empty(record)
            self.names.append(record.path)
            return
        if isinstance(content, (bytes, bytearray, memoryview)):
            content = io.BytesIO(bytes(content))
        with self.open_entry(record) as out:
            try:
                shutil.copyfileobj(content, out, COPY_BUFFER_SIZE)
            except (OSError, zipfile.BadZipFile) as exc:
                raise ArchiveError(f"Cannot copy content of {record.path!r}: {exc}") from exc

    def add(self, source: EntrySource, record: Optional[ArchiveEntryRecord] = None) -> None:
        """Write an entry source, optionally under a different record."""
        record = record or source.record()
        stream = source.open()
        if stream is None:
            self.write(record, None)
            return
        with stream:
            self.write(record, stream)


def with_method(record: ArchiveEntryRecord, level: Optional[int]) -> ArchiveEntryRecord:
    """Record re-targeted at deflate, or stored when the level is 0."""
    if record.is_directory or level is None:
        return record
    method = CompressionMethod.STORED if level == 0 else CompressionMethod.DEFLATED
    return record.with_compression(method)

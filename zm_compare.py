#!/usr/bin/env python3
"""Semantic comparison of ZIP archives.

Two archives are equivalent when they hold the same entries with the same
content, regardless of entry order, compression method or level, and
timestamps.

Algorithm Summary:
1. If the two files are byte-for-byte identical, they are equal.
2. Open both; a different number of entries means not equal.
3. For every entry of the first archive, the second must have an entry of the
   same name with the same directory flag. Directories need nothing more.
   Files must agree on size and CRC where both are known, then on content.
"""

from __future__ import annotations

import logging
import time
import zipfile
from pathlib import Path
from typing import BinaryIO, Optional

from zm_codec import open_archive
from zm_entry import COPY_BUFFER_SIZE, ArchiveEntryRecord, ArchiveError

logger = logging.getLogger(__name__)


# =============================================================================
# Stream helpers
# =============================================================================


def streams_equal(a: BinaryIO, b: BinaryIO, chunk_size: int = COPY_BUFFER_SIZE) -> bool:
    """Compare two readable streams chunk by chunk.

    Both streams must return full chunks until end of data, as buffered files
    and archive entry streams do.
    """
    while True:
        chunk_a = a.read(chunk_size)
        chunk_b = b.read(chunk_size)
        if chunk_a != chunk_b:
            return False
        if not chunk_a:
            return True


def files_equal(a: Path, b: Path) -> bool:
    """Byte-for-byte comparison of two files."""
    a, b = Path(a), Path(b)
    if a.stat().st_size != b.stat().st_size:
        return False
    with open(a, "rb") as fa, open(b, "rb") as fb:
        return streams_equal(fa, fb)


# =============================================================================
# Archive comparison
# =============================================================================


def _metadata_equal(path: str, e1: ArchiveEntryRecord, e2: Optional[ArchiveEntryRecord]) -> bool:
    if e2 is None:
        logger.debug("Entry '%s' removed.", path)
        return False

    if e1.is_directory:
        if e2.is_directory:
            return True
        logger.debug("Entry '%s' not a directory any more.", path)
        return False
    if e2.is_directory:
        logger.debug("Entry '%s' now a directory.", path)
        return False

    if e1.size is not None and e2.size is not None and e1.size != e2.size:
        logger.debug("Entry '%s' size changed (%d vs %d).", path, e1.size, e2.size)
        return False

    if e1.crc32 is not None and e2.crc32 is not None and e1.crc32 != e2.crc32:
        logger.debug("Entry '%s' CRC changed (%08x vs %08x).", path, e1.crc32, e2.crc32)
        return False

    if e1.timestamp != e2.timestamp:
        logger.debug("Entry '%s' time changed (%s vs %s); ignored.", path, e1.timestamp, e2.timestamp)

    return True


def _archive_equals_internal(f1: Path, f2: Path) -> bool:
    with open_archive(f1) as zf1, open_archive(f2) as zf2:
        infos1 = zf1.infolist()
        infos2 = zf2.infolist()
        if len(infos1) != len(infos2):
            logger.debug("Number of entries changed (%d vs %d).", len(infos1), len(infos2))
            return False
        if {i.filename for i in infos1} != {i.filename for i in infos2}:
            logger.debug("Entry names differ.")
            return False

        for info1 in infos1:
            path = info1.filename
            try:
                info2 = zf2.getinfo(path)
            except KeyError:
                info2 = None
            e1 = ArchiveEntryRecord.from_zipinfo(info1)
            e2 = ArchiveEntryRecord.from_zipinfo(info2) if info2 is not None else None
            if not _metadata_equal(path, e1, e2):
                return False
            if e1.is_directory:
                continue
            with zf1.open(info1) as is1, zf2.open(info2) as is2:
                if not streams_equal(is1, is2):
                    logger.debug("Entry '%s' content changed.", path)
                    return False

    logger.debug("Archives are the same.")
    return True


def archive_equals(f1: Path, f2: Path) -> bool:
    """
    Decide whether two archives contain the same entries with the same content.

    Args:
        f1: First archive
        f2: Second archive

    Returns:
        True if the archives are equivalent. Archives that cannot be read are
        reported as not equal.
    """
    try:
        if files_equal(f1, f2):
            return True

        logger.debug("Comparing archives '%s' and '%s'...", f1, f2)
        start = time.monotonic()
        result = _archive_equals_internal(Path(f1), Path(f2))
        logger.debug("Archives compared in %.3f s.", time.monotonic() - start)
        return result
    except (OSError, ArchiveError, zipfile.BadZipFile) as exc:
        logger.debug("Could not compare '%s' and '%s': %s", f1, f2, exc)
        return False


def entry_equals(f1: Path, f2: Path, path: str, other_path: Optional[str] = None) -> bool:
    """
    Compare the content of one entry across two archives.

    Args:
        f1: First archive
        f2: Second archive
        path: Entry name in the first archive
        other_path: Entry name in the second archive (defaults to ``path``)

    Returns:
        True if both entries are missing or both hold the same bytes

    Raises:
        ArchiveError: If either archive cannot be read
    """
    other_path = other_path or path
    try:
        with open_archive(f1) as zf1, open_archive(f2) as zf2:
            try:
                info1: Optional[zipfile.ZipInfo] = zf1.getinfo(path)
            except KeyError:
                info1 = None
            try:
                info2: Optional[zipfile.ZipInfo] = zf2.getinfo(other_path)
            except KeyError:
                info2 = None

            if info1 is None and info2 is None:
                return True
            if info1 is None or info2 is None:
                return False
            if info1.is_dir() or info2.is_dir():
                return info1.is_dir() and info2.is_dir()
            with zf1.open(info1) as is1, zf2.open(info2) as is2:
                return streams_equal(is1, is2)
    except (OSError, zipfile.BadZipFile) as exc:
        raise ArchiveError(f"Cannot compare '{path}' in {f1} and {f2}: {exc}") from exc

#!/usr/bin/env python3
"""One-shot archive operations.

Each function here is a thin composition over ``zm_rewrite.ArchiveRewrite``
(or ``zm_codec`` for read-only queries), so every write goes through the same
merge pipeline and atomic commit.

Functions that take an optional ``dest`` rewrite the archive in place when it
is omitted.

Usage:
    pack(Path("site"), Path("site.zip"))
    unpack(Path("site.zip"), Path("out"))
    replace_entry(Path("site.zip"), "index.html", b"<html></html>")
    archive_equals(Path("a.zip"), Path("b.zip"))
"""

from __future__ import annotations

import contextlib
import shutil
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, Iterator, Optional, Tuple

from zm_codec import iter_entries as _iter_entries
from zm_codec import iter_records as _iter_records
from zm_codec import open_archive, read_entry
from zm_commit import CommitPlan, TargetShape, working_target
from zm_compare import archive_equals, entry_equals  # noqa: F401  (re-exported)
from zm_entry import (
    COPY_BUFFER_SIZE,
    ArchiveEntryRecord,
    ArchiveError,
    CompressionMethod,
    EntrySource,
    FileSource,
    source_for,
)
from zm_paths import NameMapper, PathFilter, chain_mappers, strip_root_mapper
from zm_permissions import default_permissions
from zm_rewrite import ArchiveRewrite, RewriteResult, run_pipeline
from zm_transform import Transformer

# =============================================================================
# Queries
# =============================================================================


def iter_entries(
    zip_path: Path, names: Optional[Iterable[str]] = None, charset: Optional[str] = None
) -> Iterator[Tuple[ArchiveEntryRecord, Optional[BinaryIO]]]:
    """Iterate entries with their content streams; stop early with ``break``."""
    return _iter_entries(Path(zip_path), charset, names)


def iter_records(zip_path: Path, charset: Optional[str] = None) -> Iterator[ArchiveEntryRecord]:
    """Iterate entry metadata without opening any content."""
    return _iter_records(Path(zip_path), charset)


def contains_entry(zip_path: Path, name: str) -> bool:
    with open_archive(Path(zip_path)) as zf:
        return name in zf.NameToInfo


def contains_any_entry(zip_path: Path, names: Iterable[str]) -> bool:
    with open_archive(Path(zip_path)) as zf:
        return any(name in zf.NameToInfo for name in names)


def get_compression_method(zip_path: Path, name: str) -> Optional[CompressionMethod]:
    """Compression method of an entry, or None if the archive lacks it."""
    with open_archive(Path(zip_path)) as zf:
        info = zf.NameToInfo.get(name)
        if info is None:
            return None
        return CompressionMethod.from_codec(info.compress_type)


def unpack_entry(zip_path: Path, name: str, charset: Optional[str] = None) -> Optional[bytes]:
    """Content of one entry, or None if the archive lacks it."""
    return read_entry(Path(zip_path), name, charset)


def unpack_entry_to(zip_path: Path, name: str, file: Path) -> bool:
    """
    Extract one entry into ``file``.

    Returns:
        True if the entry was found and written
    """
    file = Path(file)
    with contextlib.closing(_iter_entries(Path(zip_path), names=[name])) as entries:
        for _record, stream in entries:
            try:
                file.parent.mkdir(parents=True, exist_ok=True)
                with open(file, "wb") as out:
                    if stream is not None:
                        shutil.copyfileobj(stream, out, COPY_BUFFER_SIZE)
            except OSError as exc:
                raise ArchiveError(f"Cannot extract {name!r} to {file}: {exc}") from exc
            return True
    return False


# =============================================================================
# Unpacking
# =============================================================================


def unpack(
    zip_path: Path,
    output_dir: Path,
    mapper: Optional[NameMapper] = None,
    charset: Optional[str] = None,
    backslash_names: bool = False,
) -> RewriteResult:
    """
    Extract every entry under ``output_dir``.

    Raises:
        MaliciousEntryError: If an entry would land outside ``output_dir``
    """
    return (
        ArchiveRewrite.process(Path(zip_path))
        .destination(Path(output_dir))
        .unpack()
        .name_mapper(mapper)
        .charset(charset)
        .backslash_names(backslash_names)
        .execute()
    )


def unwrap(zip_path: Path, output_dir: Path, mapper: Optional[NameMapper] = None) -> RewriteResult:
    """Extract an archive whose entries share one root directory, dropping that root."""
    strip = strip_root_mapper()
    return unpack(zip_path, output_dir, chain_mappers(strip, mapper) if mapper else strip)


def explode(zip_path: Path) -> RewriteResult:
    """Replace an archive by a directory of the same name holding its entries."""
    return ArchiveRewrite.process(Path(zip_path)).unpack().execute()


# =============================================================================
# Packing
# =============================================================================


def _require_dir(path: Path) -> Path:
    path = Path(path)
    if not path.exists():
        raise ArchiveError(f"Given file '{path}' doesn't exist!")
    return path


def pack(
    source_dir: Path,
    zip_path: Path,
    compression_level: Optional[int] = None,
    preserve_root: bool = False,
    mapper: Optional[NameMapper] = None,
    path_filter: Optional[PathFilter] = None,
) -> RewriteResult:
    """
    Pack a directory tree into a new archive.

    Args:
        source_dir: Directory to pack
        zip_path: Archive to create
        compression_level: 0 stores entries, 1-9 deflates at that level
        preserve_root: Put everything under the directory's own name
        mapper: Optional name mapper applied to every entry
        path_filter: Optional predicate selecting files and directories
    """
    return (
        ArchiveRewrite.create()
        .add_file(_require_dir(source_dir), preserve_root=preserve_root, path_filter=path_filter)
        .destination(Path(zip_path))
        .compression_level(compression_level)
        .name_mapper(mapper)
        .execute()
    )


def pack_stream(
    source_dir: Path,
    out: BinaryIO,
    compression_level: Optional[int] = None,
    mapper: Optional[NameMapper] = None,
) -> int:
    """Pack a directory tree into a writable binary stream; returns the entry count."""
    rewrite = (
        ArchiveRewrite.create()
        .add_file(_require_dir(source_dir))
        .compression_level(compression_level)
        .name_mapper(mapper)
    )
    count, _ = run_pipeline(None, rewrite.mutations(), rewrite.options(), out, TargetShape.FILE)
    return count


def pack_entries(
    files: Iterable[Path],
    zip_path: Path,
    mapper: Optional[NameMapper] = None,
    compression_level: Optional[int] = None,
) -> RewriteResult:
    """Pack individual files, each under its own file name, into a new archive."""
    strategy = default_permissions()
    sources = [FileSource(Path(f).name, Path(f), strategy) for f in files]
    return pack_sources(sources, zip_path, compression_level, mapper)


def pack_entry(file: Path, zip_path: Path, name: Optional[str] = None) -> RewriteResult:
    file = Path(file)
    return pack_sources([FileSource(name or file.name, file, default_permissions())], zip_path)


def pack_sources(
    sources: Iterable[EntrySource],
    zip_path: Path,
    compression_level: Optional[int] = None,
    mapper: Optional[NameMapper] = None,
) -> RewriteResult:
    return (
        ArchiveRewrite.create()
        .add_entries(sources)
        .destination(Path(zip_path))
        .compression_level(compression_level)
        .name_mapper(mapper)
        .execute()
    )


def unexplode(directory: Path, compression_level: Optional[int] = None) -> RewriteResult:
    """Replace a directory by an archive of the same name holding its tree."""
    directory = _require_dir(directory)
    if not directory.is_dir():
        raise ArchiveError(f"Not a directory: {directory}")
    rewrite = (
        ArchiveRewrite.create().add_file(directory).compression_level(compression_level)
    )
    plan = CommitPlan(source=directory, destination=None, unpack=False)
    with working_target(plan) as target:
        count, _ = run_pipeline(None, rewrite.mutations(), rewrite.options(), target, plan.shape)
    return RewriteResult(directory, TargetShape.FILE, count, ())


def repack(
    src: Path, dest: Optional[Path] = None, compression_level: int = 9
) -> RewriteResult:
    """Recompress every entry at ``compression_level``, keeping timestamps."""
    return (
        ArchiveRewrite.process(Path(src))
        .destination(dest)
        .compression_level(compression_level)
        .preserve_timestamps()
        .execute()
    )


# =============================================================================
# Patching
# =============================================================================


def add_entry(zip_path: Path, path: str, content, dest: Optional[Path] = None) -> RewriteResult:
    """Add one entry from bytes, text, a file path or an EntrySource."""
    return add_entries(zip_path, [source_for(path, content)], dest)


def add_entries(
    zip_path: Path, sources: Iterable[EntrySource], dest: Optional[Path] = None
) -> RewriteResult:
    """
    Add new entries to an archive.

    Raises:
        ArchiveError: If the archive already has an entry with one of the paths
    """
    sources = list(sources)
    with open_archive(Path(zip_path)) as zf:
        existing = [s.path for s in sources if s.path in zf.NameToInfo]
    if existing:
        raise ArchiveError(f"Duplicate entry: {', '.join(existing)}")
    return ArchiveRewrite.process(Path(zip_path)).add_entries(sources).destination(dest).execute()


def remove_entry(zip_path: Path, path: str, dest: Optional[Path] = None) -> RewriteResult:
    return remove_entries(zip_path, [path], dest)


def remove_entries(
    zip_path: Path, paths: Iterable[str], dest: Optional[Path] = None
) -> RewriteResult:
    """Remove entries; removing a directory removes everything under it."""
    return ArchiveRewrite.process(Path(zip_path)).remove_entries(paths).destination(dest).execute()


def replace_entry(zip_path: Path, path: str, content, dest: Optional[Path] = None) -> bool:
    """Replace the content of an existing entry; returns whether it existed."""
    return replace_entries(zip_path, [source_for(path, content)], dest)


def replace_entries(
    zip_path: Path, sources: Iterable[EntrySource], dest: Optional[Path] = None
) -> bool:
    """
    Replace existing entries; sources for paths the archive lacks are ignored.

    Returns:
        True if at least one entry was replaced
    """
    with open_archive(Path(zip_path)) as zf:
        matching = [s for s in sources if s.path in zf.NameToInfo]
    if not matching and dest is None:
        return False
    ArchiveRewrite.process(Path(zip_path)).add_entries(matching).destination(dest).execute()
    return bool(matching)


def add_or_replace_entries(
    zip_path: Path, sources: Iterable[EntrySource], dest: Optional[Path] = None
) -> RewriteResult:
    return ArchiveRewrite.process(Path(zip_path)).add_entries(sources).destination(dest).execute()


def transform_entry(
    zip_path: Path, path: str, transformer: Transformer, dest: Optional[Path] = None
) -> bool:
    return transform_entries(zip_path, {path: transformer}, dest)


def transform_entries(
    zip_path: Path, transformers: Dict[str, Transformer], dest: Optional[Path] = None
) -> bool:
    """
    Rewrite entries through transformers.

    Returns:
        True if at least one transformer matched an entry
    """
    rewrite = ArchiveRewrite.process(Path(zip_path)).destination(dest)
    for path, transformer in transformers.items():
        rewrite.add_transformer(path, transformer)
    return rewrite.transform()


__all__ = [
    "add_entries",
    "add_entry",
    "add_or_replace_entries",
    "archive_equals",
    "contains_any_entry",
    "contains_entry",
    "entry_equals",
    "explode",
    "get_compression_method",
    "iter_entries",
    "iter_records",
    "pack",
    "pack_entries",
    "pack_entry",
    "pack_sources",
    "pack_stream",
    "remove_entries",
    "remove_entry",
    "repack",
    "replace_entries",
    "replace_entry",
    "transform_entries",
    "transform_entry",
    "unexplode",
    "unpack",
    "unpack_entry",
    "unpack_entry_to",
    "unwrap",
]

#!/usr/bin/env python3
"""Archive rewrite pipeline.

An ArchiveRewrite collects mutations (added or changed entries, removed
paths, per-path content transformers) and applies them to a source archive in
a single streaming pass:

1. Changed/added entries are emitted first, in the order they were added.
   Their (mapped) names are remembered.
2. The source archive is streamed entry by entry. Entries whose name was
   already emitted are skipped (first writer wins), removed entries and
   everything under a removed directory are skipped, the name mapper may drop
   or rename an entry, and a registered transformer replaces the verbatim
   copy of its entry.
3. Transformers that never matched a source entry are not invoked.

The merged entries are written either into a packed archive or onto the
filesystem (unpacked), and the result is committed atomically by
``zm_commit``.

Example:
    ArchiveRewrite.process(Path("app.zip")) \\
        .add_entry(ByteSource("config.ini", b"[main]\\n")) \\
        .remove_entry("docs/") \\
        .execute()
"""

from __future__ import annotations

import contextlib
import io
import logging
import os
import shutil
import time
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, Iterator, List, NamedTuple, Optional, Set, Tuple

from zm_codec import ArchiveSink, iter_records, read_entry
from zm_codec import iter_entries as iter_archive_entries
from zm_commit import CommitPlan, TargetShape, working_target
from zm_entry import (
    COPY_BUFFER_SIZE,
    ArchiveEntryRecord,
    ArchiveError,
    EntrySource,
    FileSource,
    now_date_time,
)
from zm_paths import (
    NameMapper,
    PathFilter,
    entry_name_for,
    iter_tree,
    normalize_entry_name,
    resolve_destination,
)
from zm_permissions import default_permissions
from zm_transform import Transformer, transform_into_file

logger = logging.getLogger(__name__)


# =============================================================================
# Data types
# =============================================================================


@dataclass(frozen=True)
class RewriteOptions:
    """Settings of one rewrite run."""

    preserve_timestamps: bool = False
    compression_level: Optional[int] = None  # None keeps each entry's method
    charset: Optional[str] = None  # Entry-name encoding of the source
    name_mapper: Optional[NameMapper] = None
    permissions: object = field(default_factory=default_permissions)
    scratch_dir: Optional[Path] = None
    backslash_names: bool = False  # Treat \ in names as a separator when unpacking


@dataclass
class MutationSet:
    """Pending changes, consumed read-only by one pipeline run."""

    changed: List[EntrySource] = field(default_factory=list)
    removed: Set[str] = field(default_factory=set)
    transformers: Dict[str, Transformer] = field(default_factory=dict)


class PendingEntry(NamedTuple):
    """One entry the pipeline has decided to write."""

    record: ArchiveEntryRecord  # As it will be written (after name mapping)
    original: ArchiveEntryRecord  # As found in its source
    stream: Optional[BinaryIO]  # None for directories
    transformer: Optional[Transformer]
    from_source: bool  # True for entries of the source archive


class RewriteResult(NamedTuple):
    """Outcome of a rewrite."""

    destination: Path
    shape: TargetShape
    entry_count: int
    transformed: Tuple[str, ...]  # Original paths whose transformer ran


# =============================================================================
# Merge
# =============================================================================


def removed_prefixes(
    source: Optional[Path], removed: Iterable[str], charset: Optional[str] = None
) -> Set[str]:
    """
    Directory prefixes implied by removed paths.

    A removed path that names a directory of the source (``dir`` or ``dir/``)
    removes every entry under it. A removed path ending in / counts as a
    directory when the source has entries beneath it.
    """
    removed = set(removed)
    if source is None or not removed:
        return set()
    records = list(iter_records(source, charset))
    dirs = {r.path for r in records if r.is_directory}
    prefixes: Set[str] = set()
    for path in removed:
        if path in dirs and path.endswith("/"):
            prefixes.add(path)
        elif path + "/" in dirs:
            prefixes.add(path + "/")
        elif path.endswith("/") and any(r.path.startswith(path) for r in records):
            prefixes.add(path)
    return prefixes


def _map_name(mapper: Optional[NameMapper], name: str) -> Optional[str]:
    if mapper is None:
        return name
    return mapper(name)


def merged_entries(
    source: Optional[Path],
    mutations: MutationSet,
    options: RewriteOptions,
) -> Iterator[PendingEntry]:
    """
    Produce the ordered entries of the rewritten archive.

    Content streams are open only while their entry is current; they are
    closed when the consumer advances or stops.

    Args:
        source: Archive to rewrite, or None to build from the changes alone
        mutations: Pending changes
        options: Rewrite settings (name mapper, charset)

    Yields:
        PendingEntry for every entry to write, in output order
    """
    seen: Set[str] = set()
    mapper = options.name_mapper

    for entry_source in mutations.changed:
        record = entry_source.record()
        name = _map_name(mapper, record.path)
        if name is None:
            logger.debug("Entry '%s' dropped by name mapper", record.path)
            continue
        if name != record.path:
            record = record.renamed(name)
        if record.path in seen:
            logger.debug("Duplicate added entry '%s' ignored", record.path)
            continue
        seen.add(record.path)
        stream = entry_source.open()
        if stream is None:
            yield PendingEntry(record, record, None, None, False)
            continue
        with stream:
            yield PendingEntry(record, record, stream, None, False)

    if source is None:
        return

    pending = dict(mutations.transformers)
    prefixes = removed_prefixes(source, mutations.removed, options.charset)

    with contextlib.closing(iter_archive_entries(source, options.charset)) as source_entries:
        for original, stream in source_entries:
            name = original.path
            if name in seen:
                logger.debug("Duplicate entry '%s' skipped", name)
                continue
            if name in mutations.removed or any(name.startswith(p) for p in prefixes):
                logger.debug("Entry '%s' removed", name)
                continue
            mapped = _map_name(mapper, name)
            if mapped is None:
                logger.debug("Entry '%s' dropped by name mapper", name)
                continue
            record = original if mapped == name else original.renamed(mapped)
            if record.path in seen:
                logger.debug("Duplicate entry '%s' skipped", record.path)
                continue
            seen.add(name)
            seen.add(record.path)
            yield PendingEntry(record, original, stream, pending.pop(name, None), True)

    if pending:
        logger.debug("Transformers without a matching entry: %s", ", ".join(sorted(pending)))


# =============================================================================
# Writers
# =============================================================================


def _output_record(entry: PendingEntry, options: RewriteOptions) -> ArchiveEntryRecord:
    record = entry.record
    if entry.from_source and not options.preserve_timestamps:
        record = record.with_timestamp(now_date_time())
    return record


def write_packed(
    entries: Iterable[PendingEntry], target, options: RewriteOptions
) -> Tuple[int, List[str]]:
    """Write merged entries into a new archive at ``target`` (path or stream)."""
    count = 0
    transformed: List[str] = []
    with ArchiveSink.create(target, options.compression_level) as sink:
        for entry in entries:
            if entry.transformer is not None:
                entry.transformer(entry.stream or io.BytesIO(b""), entry.record, sink)
                transformed.append(entry.original.path)
            else:
                sink.write(_output_record(entry, options), entry.stream)
            count += 1
    return count, transformed


def _set_mtime(target: Path, record: ArchiveEntryRecord) -> None:
    if record.timestamp is None:
        return
    stamp = time.mktime(record.timestamp + (0, 0, -1))
    os.utime(target, (stamp, stamp))


def write_unpacked(
    entries: Iterable[PendingEntry], root: Path, options: RewriteOptions
) -> Tuple[int, List[str]]:
    """Materialize merged entries under ``root``, checking every destination."""
    count = 0
    transformed: List[str] = []
    for entry in entries:
        name = entry.record.path
        if options.backslash_names:
            name = normalize_entry_name(name)
        target = resolve_destination(root, name)

        if entry.record.is_directory:
            target.mkdir(parents=True, exist_ok=True)
            if entry.transformer is not None:
                logger.debug("Transformer for directory '%s' not applied when unpacking", name)
        else:
            target.parent.mkdir(parents=True, exist_ok=True)
            if target.exists():
                logger.debug("Overwriting file '%s'", name)
            if entry.transformer is not None:
                transform_into_file(
                    entry.transformer, entry.stream or io.BytesIO(b""), entry.record, target
                )
                transformed.append(entry.original.path)
            else:
                with open(target, "wb") as out:
                    if entry.stream is not None:
                        shutil.copyfileobj(entry.stream, out, COPY_BUFFER_SIZE)
            options.permissions.apply(target, entry.record.external_attr)
            if options.preserve_timestamps:
                _set_mtime(target, entry.record)
        count += 1
    return count, transformed


def run_pipeline(
    source: Optional[Path],
    mutations: MutationSet,
    options: RewriteOptions,
    target: Path,
    shape: TargetShape,
) -> Tuple[int, List[str]]:
    """Merge and write; codec and filesystem failures surface as ArchiveError."""
    entries = merged_entries(source, mutations, options)
    try:
        if shape is TargetShape.DIRECTORY:
            return write_unpacked(entries, target, options)
        return write_packed(entries, target, options)
    except (OSError, zipfile.BadZipFile, zipfile.LargeZipFile) as exc:
        raise ArchiveError(f"Rewrite of {source or target} failed: {exc}") from exc
    finally:
        entries.close()


# =============================================================================
# Fluent builder
# =============================================================================


class ArchiveRewrite:
    """Fluent builder for a single-pass archive rewrite.

    Without a destination the source is rewritten in place. With ``unpack()``
    (or a destination that is an existing directory) the result is an
    exploded directory instead of an archive. Adding an entry takes
    precedence over removing the same path.
    """

    def __init__(self, src: Optional[Path] = None) -> None:
        self.src = Path(src) if src is not None else None
        self._dest: Optional[Path] = None
        self._unpack = False
        self._mutations = MutationSet()
        self._preserve_timestamps = False
        self._charset: Optional[str] = None
        self._name_mapper: Optional[NameMapper] = None
        self._compression_level: Optional[int] = None
        self._scratch_dir: Optional[Path] = None
        self._permissions = default_permissions()
        self._backslash_names = False

    @classmethod
    def process(cls, src: Path) -> "ArchiveRewrite":
        """Rewrite an existing archive."""
        return cls(src)

    @classmethod
    def create(cls) -> "ArchiveRewrite":
        """Build a new archive from added entries only."""
        return cls(None)

    # -- mutations -------------------------------------------------------------

    def add_entry(self, entry: EntrySource) -> "ArchiveRewrite":
        self._mutations.changed.append(entry)
        return self

    def add_entries(self, entries: Iterable[EntrySource]) -> "ArchiveRewrite":
        self._mutations.changed.extend(entries)
        return self

    def add_file(
        self,
        path: Path,
        preserve_root: bool = False,
        path_filter: Optional[PathFilter] = None,
    ) -> "ArchiveRewrite":
        """
        Add a file, or a directory tree including its directory entries.

        Args:
            path: File or directory to add
            preserve_root: Keep the directory's own name as the top-level entry;
                otherwise its children are added directly under the root
            path_filter: Optional predicate selecting files and directories
        """
        path = Path(path)
        if not path.is_dir():
            self._mutations.changed.append(FileSource(path.name, path, self._permissions))
            return self
        root = path.parent if preserve_root else path
        if preserve_root:
            self._mutations.changed.append(
                FileSource(entry_name_for(root, path), path, self._permissions)
            )
        for item in iter_tree(path, path_filter):
            self._mutations.changed.append(
                FileSource(entry_name_for(root, item), item, self._permissions)
            )
        return self

    def remove_entry(self, path: str) -> "ArchiveRewrite":
        self._mutations.removed.add(path)
        return self

    def remove_entries(self, paths: Iterable[str]) -> "ArchiveRewrite":
        self._mutations.removed.update(paths)
        return self

    def add_transformer(self, path: str, transformer: Transformer) -> "ArchiveRewrite":
        """Register a content transformer for an existing entry."""
        self._mutations.transformers[path] = transformer
        return self

    # -- settings --------------------------------------------------------------

    def destination(self, dest: Optional[Path]) -> "ArchiveRewrite":
        self._dest = Path(dest) if dest is not None else None
        return self

    def unpack(self) -> "ArchiveRewrite":
        self._unpack = True
        return self

    def preserve_timestamps(self, preserve: bool = True) -> "ArchiveRewrite":
        self._preserve_timestamps = preserve
        return self

    def charset(self, charset: Optional[str]) -> "ArchiveRewrite":
        self._charset = charset
        return self

    def name_mapper(self, mapper: Optional[NameMapper]) -> "ArchiveRewrite":
        self._name_mapper = mapper
        return self

    def compression_level(self, level: Optional[int]) -> "ArchiveRewrite":
        if level is not None and not 0 <= level <= 9:
            raise ValueError(f"Compression level must be between 0 and 9: {level}")
        self._compression_level = level
        return self

    def scratch_dir(self, path: Optional[Path]) -> "ArchiveRewrite":
        self._scratch_dir = Path(path) if path is not None else None
        return self

    def permissions(self, strategy) -> "ArchiveRewrite":
        self._permissions = strategy
        return self

    def backslash_names(self, enabled: bool = True) -> "ArchiveRewrite":
        self._backslash_names = enabled
        return self

    def options(self) -> RewriteOptions:
        return RewriteOptions(
            preserve_timestamps=self._preserve_timestamps,
            compression_level=self._compression_level,
            charset=self._charset,
            name_mapper=self._name_mapper,
            permissions=self._permissions,
            scratch_dir=self._scratch_dir,
            backslash_names=self._backslash_names,
        )

    def mutations(self) -> MutationSet:
        return self._mutations

    # -- execution -------------------------------------------------------------

    def _plan(self) -> CommitPlan:
        return CommitPlan(
            source=self.src,
            destination=self._dest,
            unpack=self._unpack,
            scratch_dir=self._scratch_dir,
        )

    def _run(self, mutations: MutationSet) -> RewriteResult:
        plan = self._plan()
        if self.src is not None and not self.src.is_file():
            raise ArchiveError(f"Source archive not found: {self.src}")
        options = self.options()
        shape = plan.shape
        with working_target(plan) as target:
            count, transformed = run_pipeline(self.src, mutations, options, target, shape)
        final = self.src if plan.in_place else target
        return RewriteResult(
            destination=Path(final),  # type: ignore[arg-type]
            shape=shape,
            entry_count=count,
            transformed=tuple(transformed),
        )

    def execute(self) -> RewriteResult:
        """
        Apply every pending mutation and commit the result.

        Returns:
            RewriteResult describing what was written

        Raises:
            ValueError: If neither source nor destination is set
            MaliciousEntryError: If an unpacked entry would escape the output root
            ArchiveError: On any read or write failure
        """
        return self._run(self._mutations)

    def transform(self) -> bool:
        """
        Apply only the registered transformers and commit the result.

        Returns:
            True if at least one transformer matched an entry
        """
        if self.src is None:
            raise ValueError("Source cannot be null for transformation")
        only_transformers = MutationSet(transformers=dict(self._mutations.transformers))
        return bool(self._run(only_transformers).transformed)

    # -- read-only views -------------------------------------------------------

    def iter_entries(self) -> Iterator[Tuple[ArchiveEntryRecord, Optional[BinaryIO]]]:
        """Iterate the merged view (changes first, then the source) without writing.

        Transformers are not applied. Stop early with ``break``.
        """
        entries = merged_entries(self.src, self._mutations, self.options())
        try:
            for entry in entries:
                yield entry.record, entry.stream
        finally:
            entries.close()

    def iter_records(self) -> Iterator[ArchiveEntryRecord]:
        for record, _stream in self.iter_entries():
            yield record

    def get_entry(self, name: str) -> Optional[bytes]:
        if self.src is None:
            raise ValueError("Source is not given")
        return read_entry(self.src, name, self._charset)

    def contains_entry(self, name: str) -> bool:
        if self.src is None:
            raise ValueError("Source is not given")
        return any(r.path == name for r in iter_records(self.src, self._charset))

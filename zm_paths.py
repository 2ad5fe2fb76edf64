#!/usr/bin/env python3
"""Entry names, destination safety and name mappers.

Archive entry names are forward-slash separated and relative. Whenever an
entry is about to be materialized on the filesystem, its destination is
resolved with ``resolve_destination`` which rejects names that would land
outside the output root ("zip-slip"): ``..`` segments, absolute paths and
drive-qualified names.

Name mappers are plain callables ``name -> Optional[name]``; returning None
drops the entry.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional

from zm_entry import ArchiveError

NameMapper = Callable[[str], Optional[str]]
PathFilter = Callable[[Path], bool]

PATH_SEPARATOR = "/"


# =============================================================================
# Path Safety Guard
# =============================================================================


class MaliciousEntryError(ArchiveError):
    """Raised when an entry would be written outside the output root."""

    def __init__(self, name: str, root: Path) -> None:
        self.name = name
        self.root = Path(root)
        super().__init__(
            f"Entry {name!r} is trying to leave the target output directory {self.root}"
        )


def resolve_destination(root: Path, name: str) -> Path:
    """
    Resolve an entry name against an output root.

    Args:
        root: Output directory
        name: Archive entry name

    Returns:
        The resolved destination path, guaranteed to be inside ``root``

    Raises:
        MaliciousEntryError: If the name is absolute or escapes ``root``
    """
    root = Path(root).resolve()
    if not name or "\x00" in name:
        raise MaliciousEntryError(name, root)
    relative = Path(name)
    if relative.is_absolute() or relative.drive or name.startswith(PATH_SEPARATOR):
        raise MaliciousEntryError(name, root)
    target = (root / relative).resolve()
    if target != root and not target.is_relative_to(root):
        raise MaliciousEntryError(name, root)
    return target


# =============================================================================
# Name normalization
# =============================================================================


def normalize_entry_name(name: str) -> str:
    """
    Normalize an entry name to canonical form.

    - Converts backslashes to forward slashes
    - Strips leading ./

    Args:
        name: Raw entry name

    Returns:
        Normalized entry name
    """
    normalized = name.replace("\\", PATH_SEPARATOR)
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def entry_name_for(root: Path, path: Path) -> str:
    """Archive name of ``path`` relative to ``root``; directories end with /."""
    try:
        relative = Path(path).relative_to(root)
    except ValueError as exc:
        raise ValueError(f"File {path} is not a child of {root}") from exc
    name = relative.as_posix()
    if name == ".":
        name = ""
    if Path(path).is_dir() and name:
        name += PATH_SEPARATOR
    return name


def root_name(name: str) -> str:
    """Return the first component of an entry name (including the trailing /)."""
    stripped = name.lstrip(PATH_SEPARATOR)
    idx = stripped.find(PATH_SEPARATOR)
    if idx < 0:
        raise ArchiveError(f"Entry {stripped} from the root of the zip is not supported")
    return stripped[: idx + 1]


# =============================================================================
# Filesystem enumeration
# =============================================================================


def iter_tree(root: Path, path_filter: Optional[PathFilter] = None) -> Iterator[Path]:
    """
    Enumerate directories and regular files beneath ``root``.

    Entries are produced in a stable order (sorted per directory) so packing
    the same tree twice adds entries in the same order. Each directory is
    yielded before its children. Symlinks are skipped.

    Args:
        root: Directory to walk
        path_filter: Optional predicate; rejected directories are not descended

    Yields:
        Absolute paths of directories and files
    """
    root = Path(root)
    for dirpath, dirnames, filenames in os.walk(root):
        current = Path(dirpath)
        kept = []
        for d in sorted(dirnames):
            candidate = current / d
            if candidate.is_symlink():
                continue
            if path_filter is not None and not path_filter(candidate):
                continue
            kept.append(d)
            yield candidate
        dirnames[:] = kept

        for filename in sorted(filenames):
            candidate = current / filename
            if not candidate.is_file() or candidate.is_symlink():
                continue
            if path_filter is not None and not path_filter(candidate):
                continue
            yield candidate


# =============================================================================
# Name mappers
# =============================================================================


def identity_mapper(name: str) -> Optional[str]:
    return name


def prefix_mapper(prefix: str) -> NameMapper:
    """Place every entry under ``prefix``."""
    if prefix and not prefix.endswith(PATH_SEPARATOR):
        prefix += PATH_SEPARATOR

    def _map(name: str) -> Optional[str]:
        return prefix + name

    return _map


def strip_prefix_mapper(prefix: str) -> NameMapper:
    """Keep only entries under ``prefix`` and remove it from their names."""

    def _map(name: str) -> Optional[str]:
        if not name.startswith(prefix):
            return None
        stripped = name[len(prefix) :]
        return stripped or None

    return _map


def strip_root_mapper() -> NameMapper:
    """
    Remove the single top-level directory from every name.

    Raises ArchiveError for entries at the archive root or when entries live
    under more than one top-level directory. The root directory entry itself
    is dropped.
    """
    seen_root: list[str] = []

    def _map(name: str) -> Optional[str]:
        root = root_name(name)
        if not seen_root:
            seen_root.append(root)
        elif seen_root[0] != root:
            raise ArchiveError(
                f"Unwrapping with multiple roots is not supported, roots: {seen_root[0]}, {root}"
            )
        stripped = name.lstrip(PATH_SEPARATOR)[len(root) :]
        return stripped or None

    return _map


def allow_list_mapper(names: Iterable[str]) -> NameMapper:
    """Keep only the listed entry names."""
    allowed = set(names)

    def _map(name: str) -> Optional[str]:
        return name if name in allowed else None

    return _map


def chain_mappers(*mappers: NameMapper) -> NameMapper:
    """Apply mappers left to right; the first None result drops the entry."""

    def _map(name: str) -> Optional[str]:
        current: Optional[str] = name
        for mapper in mappers:
            if current is None:
                return None
            current = mapper(current)
        return current

    return _map

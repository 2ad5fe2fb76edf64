#!/usr/bin/env python3
"""Atomic commit of rewrite results.

A rewrite produces either a packed archive or an exploded directory, and it
either creates a distinct destination or replaces its source in place.

In-place rewrites write everything into a temporary file or directory first.
The source is touched only at the very end, when it is deleted and the
finished temporary target is moved onto its path. The temporary target is
removed on every exit path, so a failed run leaves the source as it was and
leaves nothing behind.
"""

from __future__ import annotations

import contextlib
import errno
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional

from zm_entry import ArchiveError

logger = logging.getLogger(__name__)

TEMP_PREFIX = "zips"
TEMP_SUFFIX = ".zip"


class TargetShape(Enum):
    FILE = "file"
    DIRECTORY = "directory"


@dataclass(frozen=True)
class CommitPlan:
    """Where a rewrite reads from, where it ends up, and in which shape."""

    source: Optional[Path]
    destination: Optional[Path]
    unpack: bool = False
    scratch_dir: Optional[Path] = None

    def __post_init__(self) -> None:
        if self.source is None and self.destination is None:
            raise ValueError("Source and destination shouldn't be null together")

    @property
    def in_place(self) -> bool:
        if self.destination is None:
            return True
        if self.source is None:
            return False
        return _same_path(self.source, self.destination)

    @property
    def shape(self) -> TargetShape:
        if self.unpack:
            return TargetShape.DIRECTORY
        if self.destination is not None and not self.in_place and self.destination.is_dir():
            return TargetShape.DIRECTORY
        return TargetShape.FILE

    def scratch_location(self) -> Path:
        if self.scratch_dir is not None:
            return Path(self.scratch_dir)
        if self.source is None:
            raise ValueError("A scratch directory is required when there is no source")
        return Path(self.source).resolve().parent


def _same_path(a: Path, b: Path) -> bool:
    return Path(a).resolve() == Path(b).resolve()


def remove_path(path: Path) -> None:
    """Delete a file or a directory tree; missing paths are ignored."""
    path = Path(path)
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()


def _allocate_temp(plan: CommitPlan) -> Path:
    scratch = plan.scratch_location()
    scratch.mkdir(parents=True, exist_ok=True)
    if plan.shape is TargetShape.DIRECTORY:
        return Path(tempfile.mkdtemp(prefix=TEMP_PREFIX, dir=scratch))
    fd, name = tempfile.mkstemp(prefix=TEMP_PREFIX, suffix=TEMP_SUFFIX, dir=scratch)
    os.close(fd)
    return Path(name)


def _prepare_destination(plan: CommitPlan) -> Path:
    dest = Path(plan.destination)  # type: ignore[arg-type]
    if plan.shape is TargetShape.DIRECTORY:
        if dest.exists() and not dest.is_dir():
            # An unpacked result replaces whatever file is in its way
            dest.unlink()
        dest.mkdir(parents=True, exist_ok=True)
        return dest
    dest.parent.mkdir(parents=True, exist_ok=True)
    return dest


def _swap_into_place(working: Path, source: Path) -> None:
    if working.is_file() and source.is_file():
        try:
            os.replace(working, source)
            return
        except OSError as exc:
            if exc.errno != errno.EXDEV:
                raise
        logger.debug("%s is on another filesystem; copying onto %s", working, source)
    remove_path(source)
    shutil.move(str(working), str(source))


@contextlib.contextmanager
def working_target(plan: CommitPlan) -> Iterator[Path]:
    """
    Provide the path a rewrite should write into, then commit it.

    For an explicit destination the working target is the destination itself.
    For an in-place rewrite it is a fresh temporary file or directory that is
    swapped onto the source once the body completes without error.

    Yields:
        Path of the working target (file or directory, per ``plan.shape``)

    Raises:
        ArchiveError: If the target cannot be prepared or committed
    """
    temp: Optional[Path] = None
    try:
        if plan.in_place:
            temp = _allocate_temp(plan)
            working = temp
        else:
            working = _prepare_destination(plan)
    except OSError as exc:
        raise ArchiveError(f"Cannot prepare rewrite target: {exc}") from exc

    try:
        yield working
        if plan.in_place:
            source = Path(plan.source)  # type: ignore[arg-type]
            logger.debug("Moving %s onto %s", working, source)
            try:
                _swap_into_place(working, source)
            except OSError as exc:
                raise ArchiveError(f"Cannot replace {plan.source}: {exc}") from exc
    except BaseException:
        if not plan.in_place and plan.shape is TargetShape.FILE:
            with contextlib.suppress(OSError):
                remove_path(working)
        raise
    finally:
        if temp is not None:
            with contextlib.suppress(OSError):
                remove_path(temp)

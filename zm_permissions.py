#!/usr/bin/env python3
"""File permission handling for packed and unpacked entries.

Permissions travel in the high 16 bits of a ZIP entry's ``external_attr``
(the Unix ``st_mode``), the same encoding ``zipfile`` and Info-ZIP use.

Exactly one strategy is selected per process by ``default_permissions()``
from a static check of the host platform. The chosen value is passed
explicitly (see ``zm_rewrite.RewriteOptions``), never looked up per call.
"""

from __future__ import annotations

import functools
import os
import stat
from pathlib import Path
from typing import Optional

# Permission bits carried through archives: rwx for user/group/other
MODE_MASK = 0o777


def mode_from_external_attr(external_attr: int) -> Optional[int]:
    """Return the permission bits stored in ``external_attr``, or None."""
    mode = (external_attr >> 16) & 0xFFFF
    if not mode:
        return None
    return mode & MODE_MASK


def is_symlink_attr(external_attr: int) -> bool:
    return stat.S_ISLNK((external_attr >> 16) & 0xFFFF)


class PosixPermissions:
    """Reads and applies POSIX mode bits."""

    name = "posix"

    def external_attr_for(self, file: Path, is_directory: bool) -> int:
        mode = os.stat(file).st_mode & MODE_MASK
        kind = stat.S_IFDIR if is_directory else stat.S_IFREG
        attr = ((kind | mode) & 0xFFFF) << 16
        if is_directory:
            attr |= 0x10  # MS-DOS directory flag
        return attr

    def apply(self, file: Path, external_attr: int) -> None:
        # Link entries are unpacked as plain files; their 0o777 is not a file mode
        mode = mode_from_external_attr(external_attr)
        if mode is None or is_symlink_attr(external_attr):
            return
        os.chmod(file, mode)


class NoPermissions:
    """Used where the filesystem has no POSIX mode bits."""

    name = "none"

    def external_attr_for(self, file: Path, is_directory: bool) -> int:
        return 0x10 if is_directory else 0

    def apply(self, file: Path, external_attr: int) -> None:
        return


@functools.lru_cache(maxsize=None)
def default_permissions():
    """Permission strategy for this host, computed once."""
    if os.name == "posix":
        return PosixPermissions()
    return NoPermissions()

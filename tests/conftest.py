from __future__ import annotations

import warnings
import zipfile
from pathlib import Path
from typing import Callable, Iterable, Optional, Tuple, Union

import pytest

# Fixed header time used by every fixture archive (even seconds: DOS precision)
FIXTURE_DATE_TIME = (2020, 1, 2, 3, 4, 6)

EntrySpec = Tuple[str, Optional[Union[bytes, str]]]


def write_zip(
    path: Path,
    entries: Iterable[EntrySpec],
    compression: int = zipfile.ZIP_DEFLATED,
) -> Path:
    """Write an archive from (name, content) pairs; None content means a directory.

    Duplicate names are written as given.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", UserWarning)
        with zipfile.ZipFile(path, "w", compression=compression) as zf:
            for name, content in entries:
                info = zipfile.ZipInfo(name, date_time=FIXTURE_DATE_TIME)
                info.compress_type = compression
                if content is None:
                    info.compress_type = zipfile.ZIP_STORED
                    info.external_attr = 0x10
                    zf.writestr(info, b"")
                else:
                    zf.writestr(info, content)
    return path


@pytest.fixture
def make_zip(tmp_path: Path) -> Callable[..., Path]:
    def _make(name: str, entries: Iterable[EntrySpec], **kwargs) -> Path:
        return write_zip(tmp_path / name, entries, **kwargs)

    return _make


@pytest.fixture
def sample_zip(tmp_path: Path) -> Path:
    """Small archive with nested directories and a sibling sharing a name prefix."""
    return write_zip(
        tmp_path / "work" / "sample.zip",
        [
            ("README.txt", b"hello"),
            ("dir/", None),
            ("dir/a.txt", b"alpha"),
            ("dir/sub/", None),
            ("dir/sub/b.txt", b"beta"),
            ("dirty.txt", b"dirty"),
        ],
    )


@pytest.fixture
def sample_tree(tmp_path: Path) -> Path:
    root = tmp_path / "tree"
    (root / "sub").mkdir(parents=True)
    (root / "empty").mkdir()
    (root / "a.txt").write_bytes(b"alpha")
    (root / "sub" / "b.txt").write_bytes(b"beta" * 1000)
    return root


def read_contents(path: Path) -> dict:
    """Map every entry name of an archive to its bytes (b"" for directories)."""
    with zipfile.ZipFile(path) as zf:
        return {info.filename: zf.read(info) for info in zf.infolist()}

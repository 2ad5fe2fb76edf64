from __future__ import annotations

import filecmp
import io
import os
import zipfile
from pathlib import Path

import pytest

import zm_entry
import zm_paths
import zm_transform
import zm_util
from conftest import read_contents
from zm_entry import ByteSource


class _Upper(zm_transform.BytesTransformer):
    def transform_bytes(self, record, data: bytes) -> bytes:
        return data.upper()


def _tree_listing(root: Path) -> list:
    return sorted(p.relative_to(root).as_posix() for p in root.rglob("*"))


def _assert_same_tree(left: Path, right: Path) -> None:
    assert _tree_listing(left) == _tree_listing(right)
    for rel in _tree_listing(left):
        if (left / rel).is_file():
            assert filecmp.cmp(left / rel, right / rel, shallow=False), rel


# =============================================================================
# Queries
# =============================================================================


def test_contains_entry(sample_zip: Path) -> None:
    assert zm_util.contains_entry(sample_zip, "dir/a.txt")
    assert not zm_util.contains_entry(sample_zip, "dir/zzz.txt")
    assert zm_util.contains_any_entry(sample_zip, ["nope", "dirty.txt"])
    assert not zm_util.contains_any_entry(sample_zip, ["nope", "nada"])


def test_get_compression_method(make_zip) -> None:
    archive = make_zip("stored.zip", [("s.txt", b"s")], compression=zipfile.ZIP_STORED)
    assert zm_util.get_compression_method(archive, "s.txt") is zm_entry.CompressionMethod.STORED
    assert zm_util.get_compression_method(archive, "missing") is None


def test_unpack_entry(sample_zip: Path, tmp_path: Path) -> None:
    assert zm_util.unpack_entry(sample_zip, "dir/sub/b.txt") == b"beta"
    assert zm_util.unpack_entry(sample_zip, "missing") is None

    target = tmp_path / "extracted" / "b.txt"
    assert zm_util.unpack_entry_to(sample_zip, "dir/sub/b.txt", target)
    assert target.read_bytes() == b"beta"
    assert not zm_util.unpack_entry_to(sample_zip, "missing", tmp_path / "never.txt")
    assert not (tmp_path / "never.txt").exists()


def test_iter_helpers(sample_zip: Path) -> None:
    names = [record.path for record in zm_util.iter_records(sample_zip)]
    assert names[0] == "README.txt"
    contents = {
        record.path: stream.read()
        for record, stream in zm_util.iter_entries(sample_zip, names=["dirty.txt"])
    }
    assert contents == {"dirty.txt": b"dirty"}


# =============================================================================
# Pack / unpack
# =============================================================================


def test_pack_unpack_round_trip(sample_tree: Path, tmp_path: Path) -> None:
    archive = tmp_path / "tree.zip"
    result = zm_util.pack(sample_tree, archive)
    assert result.destination == archive
    assert sorted(read_contents(archive)) == ["a.txt", "empty/", "sub/", "sub/b.txt"]

    out = tmp_path / "out"
    zm_util.unpack(archive, out)
    _assert_same_tree(sample_tree, out)


def test_pack_preserve_root(sample_tree: Path, tmp_path: Path) -> None:
    archive = tmp_path / "tree.zip"
    zm_util.pack(sample_tree, archive, preserve_root=True)
    names = sorted(read_contents(archive))
    assert names == ["tree/", "tree/a.txt", "tree/empty/", "tree/sub/", "tree/sub/b.txt"]


def test_pack_with_filter_and_mapper(sample_tree: Path, tmp_path: Path) -> None:
    archive = tmp_path / "tree.zip"
    zm_util.pack(
        sample_tree,
        archive,
        mapper=zm_paths.prefix_mapper("pkg"),
        path_filter=lambda p: p.name != "sub",
    )
    assert sorted(read_contents(archive)) == ["pkg/a.txt", "pkg/empty/"]


def test_pack_missing_directory(tmp_path: Path) -> None:
    with pytest.raises(zm_entry.ArchiveError, match="doesn't exist"):
        zm_util.pack(tmp_path / "missing", tmp_path / "out.zip")


@pytest.mark.parametrize("level", [0, 9])
def test_repack_keeps_equivalence(sample_tree: Path, tmp_path: Path, level: int) -> None:
    archive = tmp_path / "tree.zip"
    zm_util.pack(sample_tree, archive)
    repacked = tmp_path / f"repacked{level}.zip"
    zm_util.repack(archive, repacked, compression_level=level)
    assert zm_util.archive_equals(archive, repacked)
    expected = zipfile.ZIP_STORED if level == 0 else zipfile.ZIP_DEFLATED
    with zipfile.ZipFile(repacked) as zf:
        assert zf.getinfo("sub/b.txt").compress_type == expected
    with zipfile.ZipFile(archive) as src, zipfile.ZipFile(repacked) as dst:
        assert src.getinfo("a.txt").date_time == dst.getinfo("a.txt").date_time


def test_pack_stream(sample_tree: Path) -> None:
    buffer = io.BytesIO()
    count = zm_util.pack_stream(sample_tree, buffer)
    assert count == 4
    buffer.seek(0)
    with zipfile.ZipFile(buffer) as zf:
        assert zf.read("sub/b.txt") == b"beta" * 1000


def test_pack_entries(sample_tree: Path, tmp_path: Path) -> None:
    archive = tmp_path / "files.zip"
    zm_util.pack_entries([sample_tree / "a.txt", sample_tree / "sub" / "b.txt"], archive)
    assert sorted(read_contents(archive)) == ["a.txt", "b.txt"]

    single = tmp_path / "single.zip"
    zm_util.pack_entry(sample_tree / "a.txt", single, name="docs/readme.txt")
    assert read_contents(single) == {"docs/readme.txt": b"alpha"}


def test_pack_sources(tmp_path: Path) -> None:
    archive = tmp_path / "sources.zip"
    zm_util.pack_sources([ByteSource("x.txt", b"x"), ByteSource("y/", b"")], archive, 0)
    with zipfile.ZipFile(archive) as zf:
        assert zf.getinfo("x.txt").compress_type == zipfile.ZIP_STORED
        assert zf.getinfo("y/").is_dir()


def test_unpack_rejects_traversal(make_zip, tmp_path: Path) -> None:
    archive = make_zip("evil.zip", [("../../evil.txt", b"nope")])
    out = tmp_path / "a" / "b"
    with pytest.raises(zm_paths.MaliciousEntryError):
        zm_util.unpack(archive, out)
    assert not (tmp_path / "evil.txt").exists()


def test_unwrap_drops_single_root(make_zip, tmp_path: Path) -> None:
    archive = make_zip(
        "wrapped.zip",
        [("root/", None), ("root/a.txt", b"a"), ("root/sub/", None), ("root/sub/b.txt", b"b")],
    )
    out = tmp_path / "out"
    zm_util.unwrap(archive, out)
    assert _tree_listing(out) == ["a.txt", "sub", "sub/b.txt"]


def test_unwrap_rejects_multiple_roots(make_zip, tmp_path: Path) -> None:
    archive = make_zip("two.zip", [("one/a.txt", b"a"), ("two/b.txt", b"b")])
    with pytest.raises(zm_entry.ArchiveError, match="multiple roots"):
        zm_util.unwrap(archive, tmp_path / "out")


def test_explode_and_unexplode(sample_zip: Path) -> None:
    original = read_contents(sample_zip)

    zm_util.explode(sample_zip)
    assert sample_zip.is_dir()
    assert (sample_zip / "dir" / "a.txt").read_bytes() == b"alpha"
    assert os.listdir(sample_zip.parent) == ["sample.zip"]

    zm_util.unexplode(sample_zip)
    assert sample_zip.is_file()
    assert read_contents(sample_zip) == original
    assert os.listdir(sample_zip.parent) == ["sample.zip"]


def test_unexplode_requires_directory(sample_zip: Path) -> None:
    with pytest.raises(zm_entry.ArchiveError, match="Not a directory"):
        zm_util.unexplode(sample_zip)


# =============================================================================
# Patching
# =============================================================================


def test_add_entry(sample_zip: Path, tmp_path: Path) -> None:
    extra = tmp_path / "extra.bin"
    extra.write_bytes(b"\x01\x02")
    zm_util.add_entry(sample_zip, "new.txt", "text")
    zm_util.add_entries(sample_zip, [zm_entry.FileSource("bin/extra.bin", extra)])
    contents = read_contents(sample_zip)
    assert contents["new.txt"] == b"text"
    assert contents["bin/extra.bin"] == b"\x01\x02"


def test_add_entry_rejects_existing_path(sample_zip: Path) -> None:
    before = sample_zip.read_bytes()
    with pytest.raises(zm_entry.ArchiveError, match="Duplicate entry: README.txt"):
        zm_util.add_entry(sample_zip, "README.txt", b"again")
    assert sample_zip.read_bytes() == before


def test_remove_entries(sample_zip: Path, tmp_path: Path) -> None:
    dest = tmp_path / "trimmed.zip"
    zm_util.remove_entry(sample_zip, "dir/sub", dest)
    assert sorted(read_contents(dest)) == ["README.txt", "dir/", "dir/a.txt", "dirty.txt"]
    zm_util.remove_entries(sample_zip, ["README.txt", "dirty.txt"])
    assert "README.txt" not in read_contents(sample_zip)


def test_replace_entry(sample_zip: Path) -> None:
    assert zm_util.replace_entry(sample_zip, "dir/a.txt", b"replaced")
    assert read_contents(sample_zip)["dir/a.txt"] == b"replaced"


def test_replace_missing_entry_is_a_no_op(sample_zip: Path) -> None:
    before = sample_zip.read_bytes()
    assert not zm_util.replace_entry(sample_zip, "nope.txt", b"x")
    assert sample_zip.read_bytes() == before


def test_replace_entries_skips_unknown_paths(sample_zip: Path) -> None:
    replaced = zm_util.replace_entries(
        sample_zip, [ByteSource("README.txt", b"new"), ByteSource("unknown.txt", b"u")]
    )
    assert replaced
    contents = read_contents(sample_zip)
    assert contents["README.txt"] == b"new"
    assert "unknown.txt" not in contents


def test_add_or_replace_entries(sample_zip: Path) -> None:
    zm_util.add_or_replace_entries(
        sample_zip, [ByteSource("README.txt", b"new"), ByteSource("added.txt", b"a")]
    )
    contents = read_contents(sample_zip)
    assert contents["README.txt"] == b"new"
    assert contents["added.txt"] == b"a"


def test_transform_entry(sample_zip: Path) -> None:
    assert zm_util.transform_entry(sample_zip, "dirty.txt", _Upper())
    assert read_contents(sample_zip)["dirty.txt"] == b"DIRTY"
    assert not zm_util.transform_entries(sample_zip, {"nope.txt": _Upper()})


def test_transform_entries_to_destination(sample_zip: Path, tmp_path: Path) -> None:
    dest = tmp_path / "out.zip"
    matched = zm_util.transform_entries(
        sample_zip, {"README.txt": _Upper(), "dir/a.txt": _Upper()}, dest
    )
    assert matched
    contents = read_contents(dest)
    assert (contents["README.txt"], contents["dir/a.txt"]) == (b"HELLO", b"ALPHA")
    assert read_contents(sample_zip)["README.txt"] == b"hello"

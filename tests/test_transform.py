from __future__ import annotations

import io
import threading
from pathlib import Path

import pytest

import zm_entry
import zm_transform
from conftest import FIXTURE_DATE_TIME

RECORD = zm_entry.ArchiveEntryRecord("doc.txt", timestamp=FIXTURE_DATE_TIME)


class _Upper(zm_transform.BytesTransformer):
    def transform_bytes(self, record, data: bytes) -> bytes:
        return data.upper()


class _Chunky(zm_transform.StreamTransformer):
    """Writes many small chunks so the channel fills up."""

    def transform_stream(self, record, src, dst) -> None:
        while True:
            chunk = src.read(512)
            if not chunk:
                return
            dst.write(chunk)


def _no_leftover_workers() -> bool:
    return not any(t.name.startswith("zm-transform:") for t in threading.enumerate())


def test_replacement_record_timestamps() -> None:
    kept = zm_transform.replacement_record(RECORD, preserve_timestamps=True)
    assert kept.timestamp == FIXTURE_DATE_TIME
    assert kept.size is None and kept.crc32 is None
    fresh = zm_transform.replacement_record(RECORD)
    assert fresh.timestamp != FIXTURE_DATE_TIME


def test_transform_into_file_writes_transformed_content(tmp_path: Path) -> None:
    target = tmp_path / "out.txt"
    zm_transform.transform_into_file(_Upper(), io.BytesIO(b"shout"), RECORD, target)
    assert target.read_bytes() == b"SHOUT"
    assert _no_leftover_workers()


def test_transform_into_file_streams_more_than_channel_depth(tmp_path: Path) -> None:
    payload = bytes(range(256)) * 400
    target = tmp_path / "big.bin"
    zm_transform.transform_into_file(_Chunky(), io.BytesIO(payload), RECORD, target)
    assert target.read_bytes() == payload


def test_transform_into_file_reraises_worker_error(tmp_path: Path) -> None:
    def failing(stream, record, sink) -> None:
        with sink.open_entry(record) as out:
            out.write(b"partial")
        raise RuntimeError("transformer exploded")

    target = tmp_path / "out.txt"
    with pytest.raises(RuntimeError, match="transformer exploded"):
        zm_transform.transform_into_file(failing, io.BytesIO(b""), RECORD, target)
    assert not target.exists()
    assert _no_leftover_workers()


def test_transform_into_file_error_before_any_output(tmp_path: Path) -> None:
    def failing(stream, record, sink) -> None:
        raise RuntimeError("bad input")

    target = tmp_path / "out.txt"
    with pytest.raises(RuntimeError, match="bad input"):
        zm_transform.transform_into_file(failing, io.BytesIO(b""), RECORD, target)
    assert not target.exists()
    assert _no_leftover_workers()


def test_channel_abandon_wakes_blocked_writer() -> None:
    channel = zm_transform._Channel(depth=1)
    channel.put(b"first")
    errors = []

    def _write() -> None:
        try:
            channel.put(b"second")
            channel.put(b"third")
        except zm_entry.ArchiveError as exc:
            errors.append(exc)

    writer = threading.Thread(target=_write)
    writer.start()
    channel.abandon()
    writer.join(timeout=5)
    assert not writer.is_alive()
    assert len(errors) == 1
    channel.close()


def test_channel_close_ends_stream() -> None:
    channel = zm_transform._Channel()
    channel.put(b"chunk")
    channel.close()
    assert channel.get() == b"chunk"
    assert channel.get() is zm_transform._END


def test_transform_into_file_reader_failure_unblocks_worker(tmp_path: Path) -> None:
    target = tmp_path / "missing-dir" / "out.bin"
    with pytest.raises(zm_entry.ArchiveError, match="Cannot write transformed entry"):
        zm_transform.transform_into_file(
            _Chunky(), io.BytesIO(b"x" * 100_000), RECORD, target
        )
    assert _no_leftover_workers()


def test_transform_into_file_keeps_first_entry_only(tmp_path: Path) -> None:
    def two_entries(stream, record, sink) -> None:
        sink.write(record, b"first")
        sink.write(zm_entry.ArchiveEntryRecord("other.txt"), b"second")

    target = tmp_path / "out.txt"
    zm_transform.transform_into_file(two_entries, io.BytesIO(b""), RECORD, target)
    assert target.read_bytes() == b"first"


def test_transform_into_file_without_output_creates_empty_file(tmp_path: Path) -> None:
    target = tmp_path / "out.txt"
    zm_transform.transform_into_file(lambda s, r, k: None, io.BytesIO(b"data"), RECORD, target)
    assert target.read_bytes() == b""


def test_text_transformer_encoding(tmp_path: Path) -> None:
    class _Swap(zm_transform.TextTransformer):
        def transform_text(self, record, text: str) -> str:
            return text.replace("ä", "ae")

    target = tmp_path / "out.txt"
    transformer = _Swap(encoding="latin-1")
    zm_transform.transform_into_file(
        transformer, io.BytesIO("bär".encode("latin-1")), RECORD, target
    )
    assert target.read_bytes() == b"baer"


def test_file_transformer(tmp_path: Path) -> None:
    class _Reverse(zm_transform.FileTransformer):
        def transform_file(self, record, in_path: Path, out_path: Path) -> None:
            out_path.write_bytes(in_path.read_bytes()[::-1])

    target = tmp_path / "out.txt"
    zm_transform.transform_into_file(_Reverse(), io.BytesIO(b"abc"), RECORD, target)
    assert target.read_bytes() == b"cba"


def test_replacing_transformer(tmp_path: Path) -> None:
    transformer = zm_transform.ReplacingTransformer(zm_entry.ByteSource("doc.txt", b"new"))
    target = tmp_path / "out.txt"
    zm_transform.transform_into_file(transformer, io.BytesIO(b"old"), RECORD, target)
    assert target.read_bytes() == b"new"

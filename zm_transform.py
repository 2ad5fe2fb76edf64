#!/usr/bin/env python3
"""Content transformers and the transform execution bridge.

A transformer is any callable ``transformer(stream, record, sink)``. It reads
the original entry content from ``stream`` and writes its replacement entry to
``sink`` (an ``zm_codec.ArchiveSink``). The classes below cover the common
shapes: whole-stream, bytes, text, file-based, and plain replacement.

When a rewrite unpacks to a directory, there is no archive to write into.
``transform_into_file`` then runs the transformer on one worker thread against
a ChannelSink and copies the first entry it writes into the target file.
"""

from __future__ import annotations

import contextlib
import logging
import queue
import shutil
import tempfile
import threading
from pathlib import Path
from typing import BinaryIO, Callable, Iterator, List, Optional

from zm_codec import ArchiveSink
from zm_entry import (
    COPY_BUFFER_SIZE,
    ArchiveEntryRecord,
    ArchiveError,
    EntrySource,
    now_date_time,
)

logger = logging.getLogger(__name__)

Transformer = Callable[[BinaryIO, ArchiveEntryRecord, ArchiveSink], None]

# Maximum number of chunks buffered between the worker and the reader
CHANNEL_DEPTH = 16


# =============================================================================
# Transformer base classes
# =============================================================================


def replacement_record(
    record: ArchiveEntryRecord, preserve_timestamps: bool = False
) -> ArchiveEntryRecord:
    """Record for rewritten content: same name, method and attributes, new data."""
    return ArchiveEntryRecord(
        path=record.path,
        compression=record.compression,
        timestamp=record.timestamp if preserve_timestamps else now_date_time(),
        external_attr=record.external_attr,
    )


class StreamTransformer:
    """Transforms an entry by streaming its content into the new entry."""

    preserve_timestamps = False

    def __call__(self, stream: BinaryIO, record: ArchiveEntryRecord, sink: ArchiveSink) -> None:
        with sink.open_entry(replacement_record(record, self.preserve_timestamps)) as out:
            self.transform_stream(record, stream, out)

    def transform_stream(self, record: ArchiveEntryRecord, src: BinaryIO, dst: BinaryIO) -> None:
        raise NotImplementedError


class BytesTransformer:
    """Transforms an entry held fully in memory."""

    def __init__(self, preserve_timestamps: bool = False) -> None:
        self.preserve_timestamps = preserve_timestamps

    def __call__(self, stream: BinaryIO, record: ArchiveEntryRecord, sink: ArchiveSink) -> None:
        data = self.transform_bytes(record, stream.read())
        sink.write(replacement_record(record, self.preserve_timestamps), data)

    def transform_bytes(self, record: ArchiveEntryRecord, data: bytes) -> bytes:
        raise NotImplementedError


class TextTransformer(BytesTransformer):
    """Transforms an entry as decoded text."""

    def __init__(self, encoding: str = "utf-8", preserve_timestamps: bool = False) -> None:
        super().__init__(preserve_timestamps)
        self.encoding = encoding

    def transform_bytes(self, record: ArchiveEntryRecord, data: bytes) -> bytes:
        text = self.transform_text(record, data.decode(self.encoding))
        return text.encode(self.encoding)

    def transform_text(self, record: ArchiveEntryRecord, text: str) -> str:
        raise NotImplementedError


class FileTransformer:
    """Transforms an entry through temporary files.

    The entry content is copied to a scratch file, ``transform_file`` writes
    the result to a second file, and that file becomes the new entry.
    """

    preserve_timestamps = False

    def __call__(self, stream: BinaryIO, record: ArchiveEntryRecord, sink: ArchiveSink) -> None:
        with tempfile.TemporaryDirectory(prefix="zm-transform-") as scratch:
            in_path = Path(scratch) / "in"
            out_path = Path(scratch) / "out"
            with open(in_path, "wb") as dst:
                shutil.copyfileobj(stream, dst, COPY_BUFFER_SIZE)
            self.transform_file(record, in_path, out_path)
            with open(out_path, "rb") as result:
                sink.write(replacement_record(record, self.preserve_timestamps), result)

    def transform_file(self, record: ArchiveEntryRecord, in_path: Path, out_path: Path) -> None:
        raise NotImplementedError


class ReplacingTransformer:
    """Ignores the original content and writes a given entry source instead."""

    def __init__(self, source: EntrySource) -> None:
        self.source = source

    def __call__(self, stream: BinaryIO, record: ArchiveEntryRecord, sink: ArchiveSink) -> None:
        sink.add(self.source)


# =============================================================================
# Transform execution bridge
# =============================================================================


class _EndOfStream:
    pass


_END = _EndOfStream()


class _Channel:
    """Bounded queue between the transformer thread and the reading thread.

    The worker always finishes with ``close`` so the reader can block on
    ``get`` without watching the thread. ``abandon`` empties the queue so a
    worker blocked in ``put`` wakes up and fails on its next write.
    """

    def __init__(self, depth: int = CHANNEL_DEPTH) -> None:
        self._queue: queue.Queue = queue.Queue(maxsize=depth)
        self._abandoned = threading.Event()

    def put(self, item: object) -> None:
        if self._abandoned.is_set():
            raise ArchiveError("Transform output is no longer being read")
        self._queue.put(item)

    def get(self) -> object:
        return self._queue.get()

    def close(self) -> None:
        if not self._abandoned.is_set():
            self._queue.put(_END)

    def abandon(self) -> None:
        self._abandoned.set()
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return


class _ChannelWriter:
    def __init__(self, channel: _Channel) -> None:
        self._channel = channel

    def write(self, data) -> int:
        chunk = bytes(data)
        if chunk:
            self._channel.put(chunk)
        return len(chunk)

    def flush(self) -> None:
        return


class ChannelSink(ArchiveSink):
    """Archive sink whose entries are pushed through a channel instead of a file.

    Each entry is announced by its record, followed by its content chunks.
    """

    def __init__(self, channel: _Channel) -> None:
        super().__init__(zf=None)
        self._channel = channel

    @contextlib.contextmanager
    def open_entry(self, record: ArchiveEntryRecord) -> Iterator[BinaryIO]:
        if record.is_directory:
            raise ValueError(f"Directory entry {record.path!r} has no content")
        self._channel.put(record)
        yield _ChannelWriter(self._channel)  # type: ignore[misc]
        self.names.append(record.path)

    def _write_empty(self, record: ArchiveEntryRecord) -> None:
        self._channel.put(record)


def transform_into_file(
    transformer: Transformer,
    stream: BinaryIO,
    record: ArchiveEntryRecord,
    target: Path,
) -> None:
    """
    Run a transformer and write the entry it produces into a plain file.

    The transformer runs on a dedicated thread and pushes its output through a
    bounded channel; this thread copies the first entry's bytes to ``target``
    and discards any further entries. The worker is joined before returning
    and an exception raised inside it is re-raised here.

    Args:
        transformer: Transformer registered for the entry
        stream: Original entry content
        record: Original entry record
        target: File to create

    Raises:
        ArchiveError: If writing ``target`` fails
        Exception: Whatever the transformer raised
    """
    channel = _Channel()
    sink = ChannelSink(channel)
    failures: List[BaseException] = []

    def _work() -> None:
        try:
            transformer(stream, record, sink)
        except BaseException as exc:
            failures.append(exc)
        finally:
            channel.close()

    worker = threading.Thread(target=_work, name=f"zm-transform:{record.path}", daemon=True)
    worker.start()
    try:
        _drain_first_entry(channel, record, target)
    except BaseException:
        channel.abandon()
        worker.join()
        with contextlib.suppress(FileNotFoundError):
            target.unlink()
        raise
    worker.join()
    if failures:
        with contextlib.suppress(FileNotFoundError):
            target.unlink()
        raise failures[0]


def _drain_first_entry(
    channel: _Channel, record: ArchiveEntryRecord, target: Path
) -> None:
    entries_seen = 0
    try:
        with open(target, "wb") as out:
            while True:
                item = channel.get()
                if item is _END:
                    break
                if isinstance(item, ArchiveEntryRecord):
                    entries_seen += 1
                    if entries_seen > 1:
                        logger.debug(
                            "Transformer for '%s' wrote extra entry '%s'; ignored",
                            record.path,
                            item.path,
                        )
                    continue
                if entries_seen == 1:
                    out.write(item)  # type: ignore[arg-type]
    except OSError as exc:
        raise ArchiveError(f"Cannot write transformed entry to {target}: {exc}") from exc
    if entries_seen == 0:
        logger.debug("Transformer for '%s' wrote no entry; created empty file", record.path)

"""Stdout/stderr demultiplexing for the Engine API attach/exec stream.

When a workload runs without a TTY, the Docker Engine interleaves stdout and
stderr on one connection as a sequence of frames:

    .. code-block:: text

        ┌────────┬──────────┬──────────────────────┬─────────────────┐
        │ byte 0 │ bytes1-3 │ bytes 4-7            │ payload         │
        │ stream │ reserved │ big-endian uint32 N  │ N bytes         │
        └────────┴──────────┴──────────────────────┴─────────────────┘
        stream: 0 stdin (dropped), 1 stdout, 2 stderr, other (dropped)

Chunks arrive split at arbitrary byte offsets, so ``StreamDemultiplexer``
buffers across ``feed`` calls and only emits whole frames. A frame cut off
by the end of the stream is discarded when the stream is closed.

Examples:
    >>> data = encode_frame(STDOUT, b"hi\\n") + encode_frame(STDERR, b"oops")
    >>> demux(data)
    (b'hi\\n', b'oops')
"""

from __future__ import annotations

import struct
from collections.abc import Iterable
from dataclasses import dataclass

from berth.core.logging import get_logger

logger = get_logger(__name__)

STDIN = 0
STDOUT = 1
STDERR = 2

HEADER_SIZE = 8
_HEADER = struct.Struct(">BxxxI")


@dataclass(frozen=True)
class DemuxResult:
    """Accumulated output of a finished stream."""

    stdout: bytes
    stderr: bytes
    discarded: int = 0
    """Bytes of a trailing partial frame that were dropped."""


class StreamDemultiplexer:
    """Incremental frame parser.

    Usage::

        demuxer = StreamDemultiplexer()
        for chunk in response.iter_raw():
            demuxer.feed(chunk)
        result = demuxer.close()
    """

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._stdout = bytearray()
        self._stderr = bytearray()
        self._closed = False

    @property
    def stdout(self) -> bytes:
        return bytes(self._stdout)

    @property
    def stderr(self) -> bytes:
        return bytes(self._stderr)

    def feed(self, chunk: bytes) -> None:
        """Consume one chunk, appending every complete frame it finishes."""
        if not chunk:
            return
        if self._closed:
            raise RuntimeError("feed() after close()")
        self._buffer.extend(chunk)
        self._drain()

    def _drain(self) -> None:
        offset = 0
        buffered = len(self._buffer)
        while buffered - offset >= HEADER_SIZE:
            stream, length = _HEADER.unpack_from(self._buffer, offset)
            end = offset + HEADER_SIZE + length
            if end > buffered:
                break
            payload = self._buffer[offset + HEADER_SIZE:end]
            if stream == STDOUT:
                self._stdout.extend(payload)
            elif stream == STDERR:
                self._stderr.extend(payload)
            offset = end
        if offset:
            del self._buffer[:offset]

    def close(self) -> DemuxResult:
        """Finish the stream. A trailing partial frame is dropped, not raised."""
        self._closed = True
        discarded = len(self._buffer)
        if discarded:
            logger.debug("demux.partial_frame_dropped", bytes=discarded)
            self._buffer.clear()
        return DemuxResult(stdout=self.stdout, stderr=self.stderr, discarded=discarded)


def demux(data: bytes | Iterable[bytes]) -> tuple[bytes, bytes]:
    """One-shot helper: demultiplex a whole buffer or an iterable of chunks."""
    demuxer = StreamDemultiplexer()
    if isinstance(data, (bytes, bytearray, memoryview)):
        demuxer.feed(bytes(data))
    else:
        for chunk in data:
            demuxer.feed(chunk)
    result = demuxer.close()
    return result.stdout, result.stderr


def encode_frame(stream: int, payload: bytes) -> bytes:
    """Build a single frame."""
    return _HEADER.pack(stream, len(payload)) + payload


def mux(stdout: bytes = b"", stderr: bytes = b"", *, max_frame: int = 16384) -> bytes:
    """Frame stdout then stderr, splitting payloads larger than ``max_frame``."""
    if max_frame <= 0:
        raise ValueError("max_frame must be positive")
    out = bytearray()
    for stream, payload in ((STDOUT, stdout), (STDERR, stderr)):
        for start in range(0, len(payload), max_frame):
            out.extend(encode_frame(stream, payload[start:start + max_frame]))
    return bytes(out)


__all__ = [
    "STDIN",
    "STDOUT",
    "STDERR",
    "HEADER_SIZE",
    "DemuxResult",
    "StreamDemultiplexer",
    "demux",
    "encode_frame",
    "mux",
]

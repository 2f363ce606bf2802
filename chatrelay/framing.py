"""
Line framer: newline-delimited JSON from arbitrary byte chunks.

Ollama streams one JSON object per line, but TCP reads split those lines
anywhere, including inside a multi-byte UTF-8 character. The framer keeps
the unterminated tail of the previous chunk and only decodes complete lines,
so the records it yields do not depend on where the chunk boundaries fell.

A line that does not parse as a JSON object is logged and dropped. One bad
frame from upstream should cost that frame, not the whole stream.
"""

from __future__ import annotations

import json
import logging
from typing import AsyncIterable, AsyncIterator, Iterable, Iterator

logger = logging.getLogger(__name__)


def _decode_line(line: bytes) -> dict | None:
    """Parse one candidate line. Returns None for blank or malformed lines."""
    if not line.strip():
        return None
    try:
        data = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning("Skipping malformed upstream line (%s): %r", e, line[:200])
        return None
    if not isinstance(data, dict):
        logger.warning("Skipping non-object upstream line: %r", line[:200])
        return None
    return data


class LineFramer:
    """
    Incremental splitter. Feed it chunks, collect decoded records.

        framer = LineFramer()
        for chunk in chunks:
            records.extend(framer.feed(chunk))
        records.extend(framer.flush())
    """

    def __init__(self):
        self._buffer = b""
        self._finished = False

    @property
    def pending(self) -> bytes:
        """Bytes received after the last newline."""
        return self._buffer

    def feed(self, chunk: bytes) -> list[dict]:
        """Append a chunk and return every record completed by it."""
        if self._finished:
            raise RuntimeError("LineFramer.feed() called after flush()")
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        if not chunk:
            return []

        self._buffer += chunk
        *lines, self._buffer = self._buffer.split(b"\n")

        records = []
        for line in lines:
            data = _decode_line(line)
            if data is not None:
                records.append(data)
        return records

    def flush(self) -> list[dict]:
        """
        Signal end of stream. The residual buffer gets one parse attempt;
        upstream may have died mid-frame, so failure is not an error.
        """
        self._finished = True
        tail, self._buffer = self._buffer, b""
        data = _decode_line(tail)
        return [data] if data is not None else []


def iter_json_lines(chunks: Iterable[bytes]) -> Iterator[dict]:
    """Synchronous framing over an iterable of byte chunks."""
    framer = LineFramer()
    for chunk in chunks:
        yield from framer.feed(chunk)
    yield from framer.flush()


async def aiter_json_lines(chunks: AsyncIterable[bytes]) -> AsyncIterator[dict]:
    """
    Frame an async byte stream (e.g. httpx Response.aiter_bytes()).
    Suspends on each upstream read, yields one record at a time.
    """
    framer = LineFramer()
    async for chunk in chunks:
        for record in framer.feed(chunk):
            yield record
    for record in framer.flush():
        yield record

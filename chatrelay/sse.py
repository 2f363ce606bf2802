"""
SSE transport: Server-Sent Events framing for one long-lived response.

Outbound frames, one per relay event:

    data: {"content": "Hel", "done": false}

    data: {"done": true, "message_id": "...", "tokens_used": 2}

    data: {"error": "Upstream timed out after 120s"}

The terminal frame is the JSON `{"done": true}` record. Older clients expect
the literal `data: [DONE]` sentinel instead; `terminal_frame="legacy"`
switches to that spelling. Either way exactly one terminal (or error) frame
is written and nothing may follow it.

parse_frame() is the consumer side and accepts every spelling that has
been on the wire, including the `{"token": ...}` content frames of the
first edge-function client.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator

from fastapi.responses import StreamingResponse

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
TERMINAL_STYLES = ("json", "legacy")


class TransportClosed(RuntimeError):
    """A frame was written after the terminal or error frame."""


def format_frame(payload: dict | str) -> str:
    """Serialize one event as `data: <payload>\\n\\n`."""
    data = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
    return f"data: {data}\n\n"


def sse_headers(allowed_origin: str = "*") -> dict:
    """Headers that must go out before the first frame."""
    return {
        "Content-Type": "text/event-stream",
        "Cache-Control": "no-cache",
        "Connection": "keep-alive",
        "X-Accel-Buffering": "no",
        "Access-Control-Allow-Origin": allowed_origin or "*",
    }


class SSEStream:
    """
    Frame builder for one relay session.
    Each method returns the text to write; after done() or error() the
    stream is closed and any further call raises TransportClosed.
    """

    def __init__(self, terminal_frame: str = "json"):
        if terminal_frame not in TERMINAL_STYLES:
            raise ValueError(f"terminal_frame must be one of {TERMINAL_STYLES}, got {terminal_frame!r}")
        self.terminal_frame = terminal_frame
        self.frames_sent = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _emit(self, payload: dict | str) -> str:
        if self._closed:
            raise TransportClosed("SSE stream already terminated")
        self.frames_sent += 1
        return format_frame(payload)

    def content(self, delta: str) -> str:
        return self._emit({"content": delta, "done": False})

    def done(self, message_id: str | None, tokens_used: int) -> str:
        if self.terminal_frame == "legacy":
            frame = self._emit(DONE_SENTINEL)
        else:
            frame = self._emit({"done": True, "message_id": message_id, "tokens_used": tokens_used})
        self._closed = True
        return frame

    def error(self, description: str) -> str:
        frame = self._emit({"error": description})
        self._closed = True
        return frame


def event_stream_response(frames: AsyncIterator[str], allowed_origin: str = "*") -> StreamingResponse:
    """Wrap a frame generator in a streaming text/event-stream response."""
    return StreamingResponse(
        frames,
        media_type="text/event-stream",
        headers=sse_headers(allowed_origin),
    )


# ---------------------------------------------------------------------------
# Consumer side
# ---------------------------------------------------------------------------

@dataclass
class SSEEvent:
    """One parsed frame: kind is "content", "done" or "error"."""
    kind: str
    content: str = ""
    data: dict = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.kind in ("done", "error")


def parse_frame(line: str) -> SSEEvent | None:
    """
    Parse one `data:` line. Returns None for blank lines, comments,
    non-data fields and undecodable payloads.
    """
    line = line.strip()
    if not line.startswith("data:"):
        return None
    payload = line[5:].strip()
    if not payload:
        return None
    if payload == DONE_SENTINEL:
        return SSEEvent(kind="done")
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug("Ignoring undecodable SSE payload: %r", payload[:200])
        return None
    if not isinstance(data, dict):
        return None
    if data.get("error"):
        return SSEEvent(kind="error", content=str(data["error"]), data=data)
    if data.get("done") is True:
        return SSEEvent(kind="done", data=data)
    text = data.get("content")
    if text is None:
        text = data.get("token", "")
    return SSEEvent(kind="content", content=text or "", data=data)

"""
Data models for generation and relay state.
These define the shape of data flowing between the inference client and
the relay engine. Stored entities live in chatrelay.storage.models.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

# Decoding parameters accepted from model configuration, mapped onto the
# names Ollama expects under "options".
OPTION_ALIASES = {
    "temperature": "temperature",
    "top_p": "top_p",
    "top_k": "top_k",
    "max_tokens": "num_predict",
    "num_predict": "num_predict",
}


def build_options(parameters: Mapping[str, Any] | None) -> dict:
    """Translate stored model parameters into Ollama generate options."""
    options: dict[str, Any] = {}
    for key, value in (parameters or {}).items():
        if value is None:
            continue
        options[OPTION_ALIASES.get(key, key)] = value
    return options


@dataclass(frozen=True)
class GenerationRequest:
    """A single upstream generate call. Immutable once issued."""
    model: str
    prompt: str
    stream: bool = True
    options: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        # Freeze the options mapping too
        object.__setattr__(self, "options", MappingProxyType(dict(self.options)))

    def to_payload(self, stream: bool | None = None) -> dict:
        """Body for POST /api/generate."""
        return {
            "model": self.model,
            "prompt": self.prompt,
            "stream": self.stream if stream is None else stream,
            "options": dict(self.options),
        }


@dataclass
class GenerationRecord:
    """One decoded line of an upstream streaming response."""
    content_delta: str = ""
    is_final: bool = False
    eval_count: int | None = None
    raw: dict = field(default_factory=dict)

    @classmethod
    def from_line(cls, data: dict) -> "GenerationRecord":
        eval_count = data.get("eval_count")
        return cls(
            content_delta=data.get("response") or "",
            is_final=bool(data.get("done", False)),
            eval_count=eval_count if isinstance(eval_count, int) else None,
            raw=data,
        )


@dataclass
class GenerationResult:
    """Response of a unary (non-streaming) generate call."""
    content: str = ""
    eval_count: int | None = None
    raw: dict = field(default_factory=dict)

    @classmethod
    def from_response(cls, data: dict) -> "GenerationResult":
        eval_count = data.get("eval_count")
        return cls(
            content=data.get("response") or "",
            eval_count=eval_count if isinstance(eval_count, int) else None,
            raw=data,
        )


class SessionState(str, Enum):
    OPEN = "open"
    FINALIZING = "finalizing"
    CLOSED = "closed"
    FAILED = "failed"


class InvalidTransition(RuntimeError):
    """Raised when a RelaySession is moved out of a terminal state."""


@dataclass
class RelaySession:
    """
    State of one client-facing streaming request.
    Created when a request is accepted, owned by exactly one relay
    invocation, discarded when the transport closes.
    """
    conversation_id: str
    model_id: str
    endpoint_url: str
    user_id: str = ""
    endpoint_id: str | None = None
    start_time: float = field(default_factory=time.monotonic)
    accumulated_text: str = ""
    delta_count: int = 0
    state: SessionState = SessionState.OPEN
    error: str = ""

    def add_delta(self, delta: str):
        """Append one non-empty content delta in arrival order."""
        if self.state is not SessionState.OPEN:
            raise InvalidTransition(f"cannot accept content in state {self.state.value}")
        if not delta:
            return
        self.accumulated_text += delta
        self.delta_count += 1

    def set_content(self, text: str):
        """The whole answer of a unary call. It adds no deltas to the token fallback."""
        if self.state is not SessionState.OPEN:
            raise InvalidTransition(f"cannot accept content in state {self.state.value}")
        self.accumulated_text = text or ""

    def token_count(self, eval_count: int | None) -> int:
        """Upstream eval_count when reported, else the number of deltas seen."""
        return eval_count if eval_count is not None else self.delta_count

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.start_time) * 1000)

    def begin_finalizing(self):
        if self.state is not SessionState.OPEN:
            raise InvalidTransition(f"cannot finalize from {self.state.value}")
        self.state = SessionState.FINALIZING

    def close(self):
        if self.state is not SessionState.FINALIZING:
            raise InvalidTransition(f"cannot close from {self.state.value}")
        self.state = SessionState.CLOSED

    def fail(self, reason: str):
        if self.state in (SessionState.CLOSED, SessionState.FAILED):
            raise InvalidTransition(f"cannot fail from {self.state.value}")
        self.state = SessionState.FAILED
        self.error = reason

"""
Base backend abstraction.
The relay engine talks to inference servers only through this interface,
so tests (and any future provider) can stand in for Ollama.
"""

from __future__ import annotations

import abc
import logging
from typing import AsyncIterator, Protocol

from chatrelay.models import GenerationRecord, GenerationRequest, GenerationResult

logger = logging.getLogger(__name__)


class RecordStream(Protocol):
    """An opened upstream stream: async-iterable records, closeable."""

    def __aiter__(self) -> AsyncIterator[GenerationRecord]: ...

    async def aclose(self) -> None: ...

    async def __aenter__(self) -> "RecordStream": ...

    async def __aexit__(self, *exc) -> None: ...


class BaseBackend(abc.ABC):
    """
    Abstract base for inference backends.
    Each call names the endpoint it targets; `default_url` is used when the
    caller passes None.
    """

    def __init__(self, default_url: str, timeout: float = 120):
        self.default_url = default_url.rstrip("/")
        self.timeout = timeout

    def _url(self, endpoint_url: str | None) -> str:
        return (endpoint_url or self.default_url).rstrip("/")

    @abc.abstractmethod
    async def generate(self, request: GenerationRequest, endpoint_url: str | None = None) -> GenerationResult:
        """Unary generation. Raises UpstreamError on any upstream failure."""
        ...

    @abc.abstractmethod
    async def open_stream(self, request: GenerationRequest, endpoint_url: str | None = None) -> RecordStream:
        """
        Start a streaming generation and check the upstream status.
        Returns before any record is read; raises UpstreamError if the
        upstream could not be reached or answered non-2xx.
        """
        ...

    async def generate_stream(
        self, request: GenerationRequest, endpoint_url: str | None = None
    ) -> AsyncIterator[GenerationRecord]:
        """Stream records until (and including) the final one."""
        stream = await self.open_stream(request, endpoint_url)
        async with stream:
            async for record in stream:
                yield record

    @abc.abstractmethod
    async def list_models(self, endpoint_url: str | None = None) -> list[dict]:
        """Models the endpoint serves. May be served from cache."""
        ...

    @abc.abstractmethod
    async def health_check(self, endpoint_url: str | None = None) -> bool:
        """True if the endpoint is reachable and answers 2xx. Never raises."""
        ...

    def clear_cache(self, endpoint_url: str | None = None):
        """Invalidate cached model listings (one endpoint or all)."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} default_url={self.default_url!r}>"

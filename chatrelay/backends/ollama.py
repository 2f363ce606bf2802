"""
Ollama backend: generation against Ollama's native API.

  POST /api/generate   unary or newline-delimited JSON stream
  GET  /api/tags       model listing (cached per endpoint)
  GET  /api/version    health

No retries: a failed upstream call surfaces as UpstreamError and the caller
decides what to do with it.
"""

from __future__ import annotations

import logging
import time

import httpx

from chatrelay.backends.base import BaseBackend
from chatrelay.backends.cache import ModelListCache
from chatrelay.errors import UpstreamError
from chatrelay.framing import aiter_json_lines
from chatrelay.models import GenerationRecord, GenerationRequest, GenerationResult

logger = logging.getLogger(__name__)


def _status_error(resp: httpx.Response, what: str) -> UpstreamError:
    reason = resp.reason_phrase or "error"
    return UpstreamError(
        f"{what} failed: HTTP {resp.status_code} {reason}",
        upstream_status=resp.status_code,
    )


class OllamaStream:
    """
    An open streaming response from /api/generate.
    Iterate once for GenerationRecords; iteration ends right after the
    record with done=true, without waiting for the socket to close.
    Closing releases the upstream connection.
    """

    def __init__(self, client: httpx.AsyncClient, response: httpx.Response, url: str, timeout: float):
        self.client = client
        self.response = response
        self.url = url
        self.timeout = timeout
        self._iterator = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    def __aiter__(self):
        if self._iterator is not None:
            raise RuntimeError("OllamaStream can only be iterated once")
        self._iterator = self._records()
        return self._iterator

    async def _records(self):
        try:
            async for data in aiter_json_lines(self.response.aiter_bytes()):
                if "error" in data and not data.get("response"):
                    raise UpstreamError(f"Ollama error: {data['error']}")
                record = GenerationRecord.from_line(data)
                yield record
                if record.is_final:
                    return
        except httpx.TimeoutException:
            logger.warning("Ollama stream from %s stalled for %ss", self.url, self.timeout)
            raise UpstreamError(f"Upstream timed out after {self.timeout}s without data")
        except httpx.HTTPError as e:
            logger.warning("Ollama stream from %s failed: %s", self.url, e)
            raise UpstreamError(f"Upstream stream failed: {e}")

    async def aclose(self):
        if self._closed:
            return
        self._closed = True
        if self._iterator is not None:
            await self._iterator.aclose()
        await self.response.aclose()
        await self.client.aclose()
        logger.debug("Upstream stream to %s released", self.url)


class OllamaBackend(BaseBackend):
    """Backend for Ollama instances, local or remote."""

    def __init__(
        self,
        default_url: str = "http://localhost:11434",
        timeout: float = 120,
        list_timeout: float = 10,
        health_timeout: float = 5,
        cache: ModelListCache | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(default_url=default_url, timeout=timeout)
        self.list_timeout = list_timeout
        self.health_timeout = health_timeout
        self.cache = cache if cache is not None else ModelListCache()
        self._transport = transport

    @classmethod
    def from_config(cls, cfg: dict, transport: httpx.AsyncBaseTransport | None = None) -> "OllamaBackend":
        o_cfg = cfg.get("ollama", {})
        return cls(
            default_url=o_cfg.get("default_url", "http://localhost:11434"),
            timeout=o_cfg.get("timeout", 120),
            list_timeout=o_cfg.get("list_timeout", 10),
            health_timeout=o_cfg.get("health_timeout", 5),
            cache=ModelListCache(ttl=o_cfg.get("models_cache_ttl", 300)),
            transport=transport,
        )

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def generate(self, request: GenerationRequest, endpoint_url: str | None = None) -> GenerationResult:
        """Non-streaming generate call."""
        url = self._url(endpoint_url)
        t0 = time.monotonic()
        logger.info("Generating from %s/api/generate with model %s", url, request.model)
        try:
            async with self._client(self.timeout) as client:
                resp = await client.post(f"{url}/api/generate", json=request.to_payload(stream=False))
                if resp.is_error:
                    raise _status_error(resp, "Generation")
                data = resp.json()
        except httpx.TimeoutException:
            logger.warning("Ollama at %s timed out after %.0fms", url, (time.monotonic() - t0) * 1000)
            raise UpstreamError(f"Upstream timed out after {self.timeout}s")
        except httpx.HTTPError as e:
            logger.warning("Ollama at %s failed: %s", url, e)
            raise UpstreamError(f"Generation failed: {e}")
        except ValueError as e:
            raise UpstreamError(f"Generation returned invalid JSON: {e}")

        if "error" in data and not data.get("response"):
            raise UpstreamError(f"Ollama error: {data['error']}")
        return GenerationResult.from_response(data)

    async def open_stream(self, request: GenerationRequest, endpoint_url: str | None = None) -> OllamaStream:
        """Send the streaming generate request and hand back the open response."""
        url = self._url(endpoint_url)
        logger.info("Starting stream from %s/api/generate with model %s", url, request.model)
        client = self._client(self.timeout)
        try:
            req = client.build_request("POST", f"{url}/api/generate", json=request.to_payload(stream=True))
            resp = await client.send(req, stream=True)
        except httpx.TimeoutException:
            await client.aclose()
            logger.warning("Ollama at %s timed out opening stream", url)
            raise UpstreamError(f"Upstream timed out after {self.timeout}s")
        except httpx.HTTPError as e:
            await client.aclose()
            logger.warning("Ollama at %s unreachable: %s", url, e)
            raise UpstreamError(f"Stream generation failed: {e}")

        if resp.is_error:
            error = _status_error(resp, "Stream generation")
            await resp.aclose()
            await client.aclose()
            logger.warning("Ollama at %s rejected stream: %s", url, error)
            raise error

        return OllamaStream(client, resp, url, self.timeout)

    async def list_models(self, endpoint_url: str | None = None) -> list[dict]:
        """Fetch /api/tags, memoized per endpoint URL for the cache TTL."""
        url = self._url(endpoint_url)
        cached = self.cache.get(url)
        if cached is not None:
            logger.info("Using cached models for %s", url)
            return cached

        logger.info("Fetching models from %s/api/tags", url)
        try:
            async with self._client(self.list_timeout) as client:
                resp = await client.get(f"{url}/api/tags")
                if resp.is_error:
                    raise _status_error(resp, "Model listing")
                models = resp.json().get("models") or []
        except httpx.HTTPError as e:
            logger.error("Error fetching models from %s: %s", url, e)
            raise UpstreamError(f"Failed to fetch models: {e}")
        except ValueError as e:
            raise UpstreamError(f"Model listing returned invalid JSON: {e}")

        self.cache.put(url, models)
        logger.info("Fetched %d models from %s", len(models), url)
        return models

    async def health_check(self, endpoint_url: str | None = None) -> bool:
        """Check Ollama answers /api/version."""
        url = self._url(endpoint_url)
        try:
            async with self._client(self.health_timeout) as client:
                resp = await client.get(f"{url}/api/version")
                return resp.is_success
        except httpx.HTTPError as e:
            logger.warning("Health check failed for %s: %s", url, e)
            return False

    def clear_cache(self, endpoint_url: str | None = None):
        self.cache.invalidate(endpoint_url.rstrip("/") if endpoint_url else None)

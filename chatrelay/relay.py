"""
Relay engine: the core of chatrelay.
Takes one chat request from validation through to the last SSE frame:

  1. validate conversation_id / model_id / message
  2. check the conversation belongs to the caller
  3. resolve model config and upstream endpoint
  4. persist the user message (before generation, so it is never lost)
  5. open the upstream stream
  6. forward every content delta as an SSE frame, accumulating the text
  7. on the final record persist the assistant message + usage log,
     then send the terminal frame

Steps 1-5 raise (the API layer turns that into a plain JSON error, no
transport yet). Once frames are flowing, failures become an error frame
and the stream ends; a session never goes quiet without a terminal or
error frame.

Records are handled one at a time, in arrival order. If the client goes
away the loop stops and the upstream connection is released on the way out.
"""

from __future__ import annotations

import logging
from typing import AsyncIterator, Awaitable, Callable

from chatrelay.backends.base import BaseBackend, RecordStream
from chatrelay.errors import ClientInputError, NotFoundError, PersistenceError, UpstreamError
from chatrelay.models import (
    GenerationRequest,
    RelaySession,
    SessionState,
    build_options,
)
from chatrelay.sse import SSEStream
from chatrelay.storage.base import ChatStore
from chatrelay.storage.models import Message

logger = logging.getLogger(__name__)

DisconnectProbe = Callable[[], Awaitable[bool]]


def _fail(session: RelaySession, reason: str):
    if session.state in (SessionState.OPEN, SessionState.FINALIZING):
        session.fail(reason)


class RelayEngine:
    """Streams one generation per call; holds no per-request state itself."""

    def __init__(self, store: ChatStore, backend: BaseBackend, terminal_frame: str = "json"):
        self.store = store
        self.backend = backend
        self.terminal_frame = terminal_frame

    async def prepare(
        self,
        user_id: str,
        conversation_id: str | None,
        model_id: str | None,
        message: str | None,
        stream: bool = True,
    ) -> tuple[RelaySession, GenerationRequest, Message]:
        """
        Validate, resolve and persist the user's message.
        Raises ClientInputError / NotFoundError / PersistenceError; nothing
        has been sent to the client yet when any of them fires.
        """
        missing = [
            name for name, value in (
                ("conversation_id", conversation_id),
                ("model_id", model_id),
                ("message", message),
            )
            if not value
        ]
        if missing:
            raise ClientInputError(f"Missing required parameters: {', '.join(missing)}")

        conversation = await self.store.get_conversation(conversation_id, user_id)
        if conversation is None:
            raise NotFoundError("Conversation not found")

        model = await self.store.get_model_with_endpoint(model_id)
        if model is None or not model.endpoint_url:
            raise NotFoundError("Model not found")

        user_message = await self.store.insert_message(conversation_id, "user", message)

        session = RelaySession(
            conversation_id=conversation_id,
            model_id=model_id,
            endpoint_url=model.endpoint_url,
            user_id=user_id,
            endpoint_id=model.endpoint_id or None,
        )
        request = GenerationRequest(
            model=model.model_id,
            prompt=message,
            stream=stream,
            options=build_options(model.parameters),
        )
        logger.info(
            "Relay accepted: conv=%s model=%s (%s) endpoint=%s",
            conversation_id, model_id, model.model_id, model.endpoint_url,
        )
        return session, request, user_message

    async def open(self, session: RelaySession, request: GenerationRequest) -> RecordStream:
        """Open the upstream stream. UpstreamError here means no transport was opened."""
        try:
            return await self.backend.open_stream(request, session.endpoint_url)
        except UpstreamError as e:
            _fail(session, e.message)
            raise

    async def relay(
        self,
        session: RelaySession,
        upstream: RecordStream,
        is_disconnected: DisconnectProbe | None = None,
    ) -> AsyncIterator[str]:
        """
        Drive an opened upstream stream, yielding SSE frames.
        The upstream is always closed when this generator finishes, is
        closed early, or is cancelled.
        """
        sse = SSEStream(self.terminal_frame)
        try:
            async with upstream:
                async for record in upstream:
                    if is_disconnected is not None and await is_disconnected():
                        logger.info(
                            "Client went away mid-stream (conv=%s, %d deltas); dropping upstream",
                            session.conversation_id, session.delta_count,
                        )
                        _fail(session, "client disconnected")
                        return

                    if record.content_delta:
                        session.add_delta(record.content_delta)
                        yield sse.content(record.content_delta)

                    if record.is_final:
                        message, tokens = await self._finalize(session, record.eval_count)
                        frame = sse.done(message.id if message else None, tokens)
                        session.close()
                        logger.info(
                            "Relay complete: conv=%s tokens=%d in %dms",
                            session.conversation_id, tokens, session.elapsed_ms,
                        )
                        yield frame
                        return

            raise UpstreamError("Upstream stream ended before completion")

        except UpstreamError as e:
            logger.warning("Relay failed for conv=%s: %s", session.conversation_id, e.message)
            _fail(session, e.message)
            if not sse.closed:
                yield sse.error(e.message)
        except Exception as e:
            logger.exception("Unexpected relay error for conv=%s", session.conversation_id)
            _fail(session, str(e))
            if not sse.closed:
                yield sse.error("Internal server error")

    async def complete(self, session: RelaySession, request: GenerationRequest) -> tuple[Message | None, str, int]:
        """
        Unary generation. Returns (assistant message or None, text, tokens).
        tokens is 0 when Ollama reports no eval_count.
        UpstreamError propagates: nothing is persisted for a failed call.
        """
        try:
            result = await self.backend.generate(request, session.endpoint_url)
        except UpstreamError as e:
            _fail(session, e.message)
            raise
        session.set_content(result.content)
        message, tokens = await self._finalize(session, result.eval_count)
        session.close()
        return message, result.content, tokens

    async def _finalize(self, session: RelaySession, eval_count: int | None) -> tuple[Message | None, int]:
        """
        Persist the assistant answer and the usage entry, once.
        Each write is best-effort: the client already has the text, so a
        store failure is logged and the stream still completes.
        """
        session.begin_finalizing()
        tokens = session.token_count(eval_count)

        message = None
        try:
            message = await self.store.insert_message(
                session.conversation_id, "assistant", session.accumulated_text, tokens,
            )
        except PersistenceError as e:
            logger.error("Failed to persist assistant message for conv=%s: %s", session.conversation_id, e)

        try:
            await self.store.insert_usage_log(
                session.user_id, session.model_id, session.endpoint_id, tokens, session.elapsed_ms,
            )
        except PersistenceError as e:
            logger.error("Failed to write usage log for conv=%s: %s", session.conversation_id, e)

        try:
            await self.store.touch_conversation(session.conversation_id)
        except PersistenceError as e:
            logger.warning("Failed to bump updated_at for conv=%s: %s", session.conversation_id, e)

        return message, tokens

"""
FastAPI application, the chatrelay entry point.

  /api/chat            streaming (SSE) and unary chat against Ollama
  /api/conversations   per-user conversation CRUD + message history
  /api/models          configured models; admins create, edit and delete
  /api/endpoints       Ollama endpoints, health, live model listing; admin CRUD
  /api/admin           model sync, model-list cache invalidation
  /api/metrics         usage logs
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from chatrelay import __version__
from chatrelay.auth import Authenticator, extract_bearer, make_authenticator
from chatrelay.backends.ollama import OllamaBackend
from chatrelay.config import get_config
from chatrelay.errors import AuthError, ClientInputError, NotFoundError, PersistenceError, RelayError
from chatrelay.relay import RelayEngine
from chatrelay.sse import event_stream_response
from chatrelay.storage import ChatStore, make_store
from chatrelay.storage.models import Profile

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Globals, initialized at startup
# ---------------------------------------------------------------------------
store: ChatStore | None = None
backend: OllamaBackend | None = None
engine: RelayEngine | None = None
authenticator: Authenticator | None = None
allowed_origin: str = "*"


def _setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, (log_cfg.get("level") or "INFO").upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def _allowed_origin() -> str:
    try:
        return get_config().get("cors", {}).get("allowed_origin") or "*"
    except FileNotFoundError:
        return "*"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    global store, backend, engine, authenticator, allowed_origin

    cfg = get_config()
    _setup_logging(cfg)
    allowed_origin = _allowed_origin()

    store = make_store(cfg)
    backend = OllamaBackend.from_config(cfg)
    engine = RelayEngine(
        store=store,
        backend=backend,
        terminal_frame=cfg.get("sse", {}).get("terminal_frame", "json"),
    )
    authenticator = make_authenticator(cfg, store)

    logger.info(
        "chatrelay %s started, listening on %s:%s",
        __version__,
        cfg.get("server", {}).get("host", "0.0.0.0"),
        cfg.get("server", {}).get("port", 3001),
    )
    logger.info("Storage: %s", cfg.get("storage", {}).get("backend", "sqlite"))
    logger.info("Auth: %s", cfg.get("auth", {}).get("provider", "static"))
    logger.info("Default Ollama: %s (timeout %ss)", backend.default_url, backend.timeout)
    logger.info("SSE terminal frame: %s", engine.terminal_frame)
    logger.info("CORS origin: %s", allowed_origin)

    yield

    await store.close()
    logger.info("chatrelay shutting down")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title="chatrelay",
    description="Multi-user chat relay in front of Ollama.",
    version=__version__,
    lifespan=lifespan,
)

class ConfiguredCORSMiddleware(CORSMiddleware):
    """CORSMiddleware whose origin comes from config.yaml when the app starts serving."""

    def __init__(self, app, **kwargs):
        super().__init__(app, allow_origins=[_allowed_origin()], **kwargs)


app.add_middleware(
    ConfiguredCORSMiddleware,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Client-Info", "Apikey"],
)


@app.exception_handler(RelayError)
async def relay_error_handler(request: Request, exc: RelayError):
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse({"error": "Internal server error"}, status_code=500)


# ---------------------------------------------------------------------------
# Auth dependencies
# ---------------------------------------------------------------------------

async def current_user(authorization: str | None = Header(default=None)) -> Profile:
    """Bearer token from the Authorization header."""
    return await authenticator.authenticate(extract_bearer(authorization))


async def stream_user(
    token: str | None = None,
    authorization: str | None = Header(default=None),
) -> Profile:
    """
    Header first, then the `token` query parameter: the browser
    EventSource API cannot attach custom headers.
    """
    return await authenticator.authenticate(extract_bearer(authorization) or token or "")


async def admin_user(user: Profile = Depends(current_user)) -> Profile:
    if not user.is_admin:
        raise AuthError("Admin access required", status_code=403)
    return user


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise ClientInputError("Request body must be JSON")
    if not isinstance(body, dict):
        raise ClientInputError("Request body must be a JSON object")
    return body


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------

async def _open_chat_stream(
    request: Request, user: Profile, conversation_id, model_id, message
) -> Response:
    session, gen_request, _ = await engine.prepare(user.id, conversation_id, model_id, message)
    upstream = await engine.open(session, gen_request)
    return event_stream_response(
        engine.relay(session, upstream, is_disconnected=request.is_disconnected),
        allowed_origin=allowed_origin,
    )


@app.get("/api/chat")
async def chat_stream(
    request: Request,
    conversation_id: str = "",
    model_id: str = "",
    message: str = "",
    user: Profile = Depends(stream_user),
):
    """EventSource entry point: everything in the query string."""
    return await _open_chat_stream(request, user, conversation_id, model_id, message)


@app.post("/api/chat")
async def chat(request: Request, user: Profile = Depends(current_user)):
    """
    JSON body {conversation_id, model_id, message, stream}.
    Streams SSE unless stream is false, then answers with one JSON object.
    """
    body = await _json_body(request)
    conversation_id = body.get("conversation_id")
    model_id = body.get("model_id")
    message = body.get("message")

    if body.get("stream") is not False:
        return await _open_chat_stream(request, user, conversation_id, model_id, message)

    session, gen_request, user_message = await engine.prepare(
        user.id, conversation_id, model_id, message, stream=False,
    )
    assistant_message, text, tokens = await engine.complete(session, gen_request)
    return JSONResponse({
        "user_message": user_message.to_dict(),
        "assistant_message": assistant_message.to_dict() if assistant_message else None,
        "response": text,
        "tokens_used": tokens,
    })


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

@app.post("/api/conversations", status_code=201)
async def create_conversation(request: Request, user: Profile = Depends(current_user)):
    body = await _json_body(request)
    conv = await store.create_conversation(user.id, body.get("title"), body.get("model_id"))
    return JSONResponse(conv.to_dict(), status_code=201)


@app.get("/api/conversations")
async def list_conversations(user: Profile = Depends(current_user)):
    convs = await store.list_conversations(user.id)
    return JSONResponse([c.to_dict() for c in convs])


@app.get("/api/conversations/{conversation_id}")
async def get_conversation(conversation_id: str, user: Profile = Depends(current_user)):
    conv = await store.get_conversation(conversation_id, user.id)
    if conv is None:
        raise NotFoundError("Conversation not found")
    return JSONResponse(conv.to_dict())


@app.patch("/api/conversations/{conversation_id}")
async def update_conversation(conversation_id: str, request: Request, user: Profile = Depends(current_user)):
    body = await _json_body(request)
    conv = await store.update_conversation(conversation_id, user.id, body)
    if conv is None:
        raise NotFoundError("Conversation not found")
    return JSONResponse(conv.to_dict())


@app.delete("/api/conversations/{conversation_id}", status_code=204)
async def delete_conversation(conversation_id: str, user: Profile = Depends(current_user)):
    if not await store.delete_conversation(conversation_id, user.id):
        raise NotFoundError("Conversation not found")
    return Response(status_code=204)


@app.get("/api/conversations/{conversation_id}/messages")
async def list_messages(conversation_id: str, user: Profile = Depends(current_user)):
    if await store.get_conversation(conversation_id, user.id) is None:
        raise NotFoundError("Conversation not found")
    messages = await store.list_messages(conversation_id)
    return JSONResponse([m.to_dict() for m in messages])


# ---------------------------------------------------------------------------
# Models & endpoints
# ---------------------------------------------------------------------------

async def _audit(user: Profile, action: str, resource_type: str, resource_id: str, details: dict | None = None):
    """Record an admin change. A failed audit write does not fail the request."""
    try:
        await store.insert_audit_log(user.id, action, resource_type, resource_id, details)
    except PersistenceError as e:
        logger.warning("Audit %s on %s %s not recorded: %s", action, resource_type, resource_id, e.message)


def _require(body: dict, *names: str):
    missing = [n for n in names if not body.get(n)]
    if missing:
        raise ClientInputError(f"Missing required parameters: {', '.join(missing)}")


@app.get("/api/models")
async def list_models(user: Profile = Depends(current_user)):
    models = await store.list_models(enabled_only=True)
    return JSONResponse([m.to_dict() for m in models])


@app.get("/api/models/{model_id}")
async def get_model(model_id: str, user: Profile = Depends(current_user)):
    model = await store.get_model(model_id)
    if model is None:
        raise NotFoundError("Model not found")
    return JSONResponse(model.to_dict())


@app.post("/api/models", status_code=201)
async def create_model(request: Request, user: Profile = Depends(admin_user)):
    """Admin: register a model by hand, enabled, on an existing endpoint."""
    body = await _json_body(request)
    _require(body, "endpoint_id", "name", "model_id")
    parameters = body.get("parameters") or {}
    if not isinstance(parameters, dict):
        raise ClientInputError("parameters must be a JSON object")
    await _endpoint_or_404(body["endpoint_id"])

    model = await store.create_model(body["endpoint_id"], body["name"], body["model_id"], parameters)
    await _audit(user, "model_created", "model", model.id, {"name": model.name, "model_id": model.model_id})
    logger.info("Model %s (%s) created by %s", model.name, model.model_id, user.id)
    return JSONResponse(model.to_dict(), status_code=201)


@app.patch("/api/models/{model_id}")
async def update_model(model_id: str, request: Request, user: Profile = Depends(admin_user)):
    """Admin: rename, enable/disable, or set decoding parameters."""
    body = await _json_body(request)
    model = await store.update_model(model_id, body)
    if model is None:
        raise NotFoundError("Model not found")
    changes = {k: body[k] for k in ("name", "parameters", "is_enabled") if k in body}
    await _audit(user, "model_updated", "model", model_id, changes)
    return JSONResponse(model.to_dict())


@app.delete("/api/models/{model_id}", status_code=204)
async def delete_model(model_id: str, user: Profile = Depends(admin_user)):
    if not await store.delete_model(model_id):
        raise NotFoundError("Model not found")
    await _audit(user, "model_deleted", "model", model_id)
    return Response(status_code=204)


@app.get("/api/endpoints")
async def list_endpoints(user: Profile = Depends(current_user)):
    endpoints = await store.list_endpoints(enabled_only=True)
    return JSONResponse([e.to_dict() for e in endpoints])


@app.post("/api/endpoints", status_code=201)
async def create_endpoint(request: Request, user: Profile = Depends(admin_user)):
    body = await _json_body(request)
    _require(body, "name", "base_url")
    ep = await store.create_endpoint(body["name"], body["base_url"], bool(body.get("is_local", False)))
    await _audit(user, "endpoint_created", "endpoint", ep.id, {"name": ep.name, "base_url": ep.base_url})
    logger.info("Endpoint %s (%s) created by %s", ep.name, ep.base_url, user.id)
    return JSONResponse(ep.to_dict(), status_code=201)


async def _endpoint_or_404(endpoint_id: str):
    ep = await store.get_endpoint(endpoint_id)
    if ep is None:
        raise NotFoundError("Endpoint not found")
    return ep


@app.get("/api/endpoints/{endpoint_id}")
async def get_endpoint(endpoint_id: str, user: Profile = Depends(current_user)):
    ep = await _endpoint_or_404(endpoint_id)
    return JSONResponse(ep.to_dict())


@app.patch("/api/endpoints/{endpoint_id}")
async def update_endpoint(endpoint_id: str, request: Request, user: Profile = Depends(admin_user)):
    """Admin: rename, move, or enable/disable an endpoint."""
    body = await _json_body(request)
    before = await _endpoint_or_404(endpoint_id)
    ep = await store.update_endpoint(endpoint_id, body)
    if ep is None:
        raise NotFoundError("Endpoint not found")
    if ep.base_url != before.base_url:
        backend.clear_cache(before.base_url)
    changes = {k: body[k] for k in ("name", "base_url", "is_local", "is_enabled") if k in body}
    await _audit(user, "endpoint_updated", "endpoint", endpoint_id, changes)
    return JSONResponse(ep.to_dict())


@app.delete("/api/endpoints/{endpoint_id}", status_code=204)
async def delete_endpoint(endpoint_id: str, user: Profile = Depends(admin_user)):
    ep = await _endpoint_or_404(endpoint_id)
    await store.delete_endpoint(endpoint_id)
    backend.clear_cache(ep.base_url)
    await _audit(user, "endpoint_deleted", "endpoint", endpoint_id)
    logger.info("Endpoint %s (%s) deleted by %s", ep.name, ep.base_url, user.id)
    return Response(status_code=204)


@app.get("/api/endpoints/{endpoint_id}/health")
async def endpoint_health(endpoint_id: str, user: Profile = Depends(current_user)):
    """Probe /api/version and record the result."""
    ep = await _endpoint_or_404(endpoint_id)
    healthy = await backend.health_check(ep.base_url)
    await store.update_endpoint_health(ep.id, healthy)
    return JSONResponse({"id": ep.id, "healthy": healthy, "checked_at": datetime.now(timezone.utc).isoformat()})


@app.get("/api/endpoints/{endpoint_id}/tags")
async def endpoint_tags(endpoint_id: str, user: Profile = Depends(current_user)):
    """Live model listing from the endpoint (served from the TTL cache)."""
    ep = await _endpoint_or_404(endpoint_id)
    models = await backend.list_models(ep.base_url)
    return JSONResponse({"models": models})


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

@app.post("/api/admin/sync-models/{endpoint_id}")
async def sync_models(endpoint_id: str, user: Profile = Depends(admin_user)):
    """Pull /api/tags from the endpoint and upsert every model it reports."""
    ep = await _endpoint_or_404(endpoint_id)
    logger.info("Syncing models from %s", ep.base_url)
    tags = await backend.list_models(ep.base_url)
    synced = await store.upsert_models(ep.id, tags)
    logger.info("Synced %d models from %s", len(synced), ep.base_url)
    return JSONResponse({
        "message": "Models synced successfully",
        "count": len(synced),
        "models": [m.to_dict() for m in synced],
    })


@app.post("/api/admin/cache/clear")
async def clear_model_cache(endpoint_url: str | None = None, user: Profile = Depends(admin_user)):
    """Invalidate the model-list cache for one endpoint URL, or all of them."""
    backend.clear_cache(endpoint_url)
    return JSONResponse({"cleared": endpoint_url or "all"})


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

@app.get("/api/metrics/usage/user")
async def usage_for_user(user: Profile = Depends(current_user)):
    logs = await store.list_usage(user_id=user.id, limit=100)
    return JSONResponse([u.to_dict() for u in logs])


@app.get("/api/metrics/usage/all")
async def usage_for_all(user: Profile = Depends(admin_user)):
    logs = await store.list_usage(user_id=None, limit=1000)
    return JSONResponse([u.to_dict() for u in logs])


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.get("/health")
async def health():
    return JSONResponse({
        "status": "ok",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })

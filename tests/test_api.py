"""
Tests for the HTTP API (FastAPI app in chatrelay.main).
Ollama is faked with httpx.MockTransport; storage is a temp SQLite file;
auth uses static tokens.
Run with: pytest tests/test_api.py
"""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import patch

import httpx
import pytest

from chatrelay.backends.ollama import OllamaBackend
from chatrelay.sse import parse_frame
from chatrelay.storage import SQLiteStore
from chatrelay.storage.models import Profile

TOKENS = {"tok-alice": "alice", "tok-bob": "bob", "tok-root": "root", "tok-gone": "gone"}

TAGS = {"models": [
    {"name": "llama3:8b", "model": "llama3:8b", "size": 4_700_000_000, "digest": "abc"},
    {"name": "qwen2:7b", "model": "qwen2:7b", "size": 4_400_000_000, "digest": "def"},
]}


def _ndjson(*records) -> bytes:
    return b"".join(json.dumps(r).encode() + b"\n" for r in records)


def default_ollama(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/api/generate":
        body = json.loads(request.content)
        if not body["stream"]:
            return httpx.Response(200, json={"response": "Hello", "done": True, "eval_count": 2})
        return httpx.Response(200, content=_ndjson(
            {"response": "Hel", "done": False},
            {"response": "lo", "done": False},
            {"response": "", "done": True, "eval_count": 2},
        ))
    if request.url.path == "/api/tags":
        return httpx.Response(200, json=TAGS)
    if request.url.path == "/api/version":
        return httpx.Response(200, json={"version": "0.3.0"})
    return httpx.Response(404)


async def _seed(db_path: str):
    store = SQLiteStore(db_path)
    for profile in (
        Profile(id="alice", email="alice@example.com"),
        Profile(id="bob"),
        Profile(id="root", role="admin"),
        Profile(id="gone", is_active=False),
    ):
        await store.create_profile(profile)
    ep = await store.create_endpoint("gpu", "http://gpu:11434", is_local=True)
    [model] = await store.upsert_models(ep.id, [{"name": "llama3:8b"}])
    conv = await store.create_conversation("alice", title="First")
    return SimpleNamespace(endpoint=ep, model=model, conv=conv, db_path=db_path)


def auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def api(tmp_path, request):
    """
    Test client over a seeded store and a fake Ollama.
    Parametrize indirectly with a dict to override config sections.
    """
    from fastapi.testclient import TestClient
    from chatrelay import config as cfg_mod

    db_path = str(tmp_path / "api.db")
    cfg_data = {
        "server": {"host": "127.0.0.1", "port": 3001},
        "cors": {"allowed_origin": "http://localhost:5173"},
        "ollama": {"default_url": "http://ollama:11434", "timeout": 5, "models_cache_ttl": 300},
        "storage": {"backend": "sqlite", "sqlite_path": db_path},
        "auth": {"provider": "static", "tokens": TOKENS},
        "sse": {"terminal_frame": "json"},
        "logging": {"level": "WARNING"},
    }
    for section, values in getattr(request, "param", {}).items():
        cfg_data[section] = {**cfg_data.get(section, {}), **values}
    seed = asyncio.run(_seed(db_path))

    upstream = SimpleNamespace(handler=default_ollama, requests=[])

    def route(req):
        upstream.requests.append(req)
        return upstream.handler(req)

    transport = httpx.MockTransport(route)

    orig_config = cfg_mod._config
    cfg_mod._config = cfg_data

    import chatrelay.main  # ensure module is imported before patching

    with patch("chatrelay.main.OllamaBackend") as MockOB:
        MockOB.from_config.side_effect = lambda cfg: OllamaBackend.from_config(cfg, transport=transport)

        from chatrelay.main import app
        app.middleware_stack = None  # rebuild middleware from this config
        with TestClient(app, raise_server_exceptions=False) as c:
            yield SimpleNamespace(client=c, seed=seed, upstream=upstream)

    cfg_mod._config = orig_config


def _events(resp) -> list:
    return [e for e in (parse_frame(line) for line in resp.text.splitlines()) if e is not None]


# ---------------------------------------------------------------------------
# Health & auth
# ---------------------------------------------------------------------------

def test_health_needs_no_auth(api):
    r = api.client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


@pytest.mark.parametrize("headers,status", [
    ({}, 401),
    ({"Authorization": "Bearer nope"}, 401),
    ({"Authorization": "Bearer tok-gone"}, 403),
])
def test_auth_failures(api, headers, status):
    r = api.client.get("/api/conversations", headers=headers)
    assert r.status_code == status
    assert "error" in r.json()


def test_admin_routes_need_admin(api):
    r = api.client.post("/api/admin/cache/clear", headers=auth("tok-alice"))
    assert r.status_code == 403
    assert r.json() == {"error": "Admin access required"}


# ---------------------------------------------------------------------------
# Chat, streaming
# ---------------------------------------------------------------------------

def test_chat_stream_get_with_query_token(api):
    """EventSource style: everything in the query string, token included."""
    s = api.seed
    r = api.client.get("/api/chat", params={
        "conversation_id": s.conv.id, "model_id": s.model.id, "message": "Hi", "token": "tok-alice",
    })
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")
    assert r.headers["cache-control"] == "no-cache"

    events = _events(r)
    assert [e.kind for e in events] == ["content", "content", "done"]
    assert "".join(e.content for e in events) == "Hello"
    assert events[-1].data["tokens_used"] == 2

    history = api.client.get(f"/api/conversations/{s.conv.id}/messages", headers=auth("tok-alice")).json()
    assert [(m["role"], m["content"]) for m in history] == [("user", "Hi"), ("assistant", "Hello")]
    assert history[1]["id"] == events[-1].data["message_id"]


def test_chat_stream_post(api):
    s = api.seed
    r = api.client.post("/api/chat", headers=auth("tok-alice"), json={
        "conversation_id": s.conv.id, "model_id": s.model.id, "message": "Hi",
    })
    assert r.status_code == 200
    assert _events(r)[-1].kind == "done"

    sent = json.loads(api.upstream.requests[-1].content)
    assert str(api.upstream.requests[-1].url) == "http://gpu:11434/api/generate"
    assert sent["model"] == "llama3:8b"
    assert sent["prompt"] == "Hi"
    assert sent["stream"] is True


def test_chat_unary_post(api):
    s = api.seed
    r = api.client.post("/api/chat", headers=auth("tok-alice"), json={
        "conversation_id": s.conv.id, "model_id": s.model.id, "message": "Hi", "stream": False,
    })
    assert r.status_code == 200
    data = r.json()
    assert data["response"] == "Hello"
    assert data["tokens_used"] == 2
    assert data["user_message"]["content"] == "Hi"
    assert data["assistant_message"]["content"] == "Hello"


def test_chat_missing_parameters(api):
    r = api.client.post("/api/chat", headers=auth("tok-alice"), json={"conversation_id": api.seed.conv.id})
    assert r.status_code == 400
    assert "model_id" in r.json()["error"]
    assert api.upstream.requests == []


def test_chat_invalid_body(api):
    r = api.client.post(
        "/api/chat", headers={**auth("tok-alice"), "Content-Type": "application/json"}, content=b"{oops",
    )
    assert r.status_code == 400


def test_chat_someone_elses_conversation(api):
    s = api.seed
    r = api.client.post("/api/chat", headers=auth("tok-bob"), json={
        "conversation_id": s.conv.id, "model_id": s.model.id, "message": "Hi",
    })
    assert r.status_code == 404
    assert r.json() == {"error": "Conversation not found"}


def test_chat_unknown_model(api):
    r = api.client.post("/api/chat", headers=auth("tok-alice"), json={
        "conversation_id": api.seed.conv.id, "model_id": "nope", "message": "Hi",
    })
    assert r.status_code == 404
    assert r.json() == {"error": "Model not found"}


def test_chat_upstream_rejects(api):
    """Ollama answering 503 is a plain 502 JSON error, no stream; the user message is kept."""
    api.upstream.handler = lambda request: httpx.Response(503, text="overloaded")
    s = api.seed
    r = api.client.post("/api/chat", headers=auth("tok-alice"), json={
        "conversation_id": s.conv.id, "model_id": s.model.id, "message": "Hi",
    })
    assert r.status_code == 502
    assert "503" in r.json()["error"]

    history = api.client.get(f"/api/conversations/{s.conv.id}/messages", headers=auth("tok-alice")).json()
    assert [m["role"] for m in history] == ["user"]


def test_chat_upstream_error_mid_stream(api):
    """Failure after the stream opened arrives as an in-band error frame."""
    api.upstream.handler = lambda request: httpx.Response(200, content=_ndjson(
        {"response": "Hel", "done": False},
        {"error": "model runner crashed"},
    ))
    s = api.seed
    r = api.client.post("/api/chat", headers=auth("tok-alice"), json={
        "conversation_id": s.conv.id, "model_id": s.model.id, "message": "Hi",
    })
    assert r.status_code == 200
    events = _events(r)
    assert [e.kind for e in events] == ["content", "error"]
    assert "model runner crashed" in events[-1].content

    usage = api.client.get("/api/metrics/usage/user", headers=auth("tok-alice")).json()
    assert usage == []


def test_usage_recorded_after_chat(api):
    s = api.seed
    api.client.post("/api/chat", headers=auth("tok-alice"), json={
        "conversation_id": s.conv.id, "model_id": s.model.id, "message": "Hi",
    })
    mine = api.client.get("/api/metrics/usage/user", headers=auth("tok-alice")).json()
    assert len(mine) == 1
    assert mine[0]["tokens_used"] == 2
    assert mine[0]["model_id"] == s.model.id

    assert api.client.get("/api/metrics/usage/user", headers=auth("tok-bob")).json() == []
    assert api.client.get("/api/metrics/usage/all", headers=auth("tok-bob")).status_code == 403
    assert len(api.client.get("/api/metrics/usage/all", headers=auth("tok-root")).json()) == 1


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

def test_conversation_crud(api):
    c = api.client
    r = c.post("/api/conversations", headers=auth("tok-bob"), json={"title": "Bob's"})
    assert r.status_code == 201
    conv_id = r.json()["id"]

    assert [x["id"] for x in c.get("/api/conversations", headers=auth("tok-bob")).json()] == [conv_id]
    assert c.get(f"/api/conversations/{conv_id}", headers=auth("tok-alice")).status_code == 404

    r = c.patch(f"/api/conversations/{conv_id}", headers=auth("tok-bob"), json={"title": "Renamed"})
    assert r.json()["title"] == "Renamed"

    assert c.delete(f"/api/conversations/{conv_id}", headers=auth("tok-alice")).status_code == 404
    assert c.delete(f"/api/conversations/{conv_id}", headers=auth("tok-bob")).status_code == 204
    assert c.get(f"/api/conversations/{conv_id}", headers=auth("tok-bob")).status_code == 404


def test_messages_of_foreign_conversation_hidden(api):
    r = api.client.get(f"/api/conversations/{api.seed.conv.id}/messages", headers=auth("tok-bob"))
    assert r.status_code == 404


# ---------------------------------------------------------------------------
# Models & endpoints
# ---------------------------------------------------------------------------

def test_list_and_get_models(api):
    models = api.client.get("/api/models", headers=auth("tok-alice")).json()
    assert [m["model_id"] for m in models] == ["llama3:8b"]
    assert models[0]["ollama_endpoints"]["base_url"] == "http://gpu:11434"

    r = api.client.get(f"/api/models/{api.seed.model.id}", headers=auth("tok-alice"))
    assert r.json()["id"] == api.seed.model.id
    assert api.client.get("/api/models/nope", headers=auth("tok-alice")).status_code == 404


def test_update_model_admin_only(api):
    url = f"/api/models/{api.seed.model.id}"
    body = {"parameters": {"temperature": 0.2, "max_tokens": 32}}
    assert api.client.patch(url, headers=auth("tok-alice"), json=body).status_code == 403

    r = api.client.patch(url, headers=auth("tok-root"), json=body)
    assert r.status_code == 200
    assert r.json()["parameters"] == {"temperature": 0.2, "max_tokens": 32}

    s = api.seed
    api.client.post("/api/chat", headers=auth("tok-alice"), json={
        "conversation_id": s.conv.id, "model_id": s.model.id, "message": "Hi",
    })
    sent = json.loads(api.upstream.requests[-1].content)
    assert sent["options"] == {"temperature": 0.2, "num_predict": 32}


def test_create_endpoint(api):
    body = {"name": "remote", "base_url": "http://remote:11434/"}
    assert api.client.post("/api/endpoints", headers=auth("tok-alice"), json=body).status_code == 403

    r = api.client.post("/api/endpoints", headers=auth("tok-root"), json=body)
    assert r.status_code == 201
    assert r.json()["base_url"] == "http://remote:11434"

    names = [e["name"] for e in api.client.get("/api/endpoints", headers=auth("tok-alice")).json()]
    assert sorted(names) == ["gpu", "remote"]

    r = api.client.post("/api/endpoints", headers=auth("tok-root"), json={"name": "x"})
    assert r.status_code == 400


def test_endpoint_health_recorded(api):
    ep_id = api.seed.endpoint.id
    r = api.client.get(f"/api/endpoints/{ep_id}/health", headers=auth("tok-alice"))
    assert r.status_code == 200
    assert r.json()["healthy"] is True

    [ep] = api.client.get("/api/endpoints", headers=auth("tok-alice")).json()
    assert ep["health_status"] == "healthy"
    assert api.client.get("/api/endpoints/nope/health", headers=auth("tok-alice")).status_code == 404


def test_endpoint_tags_cached_until_cleared(api):
    ep_id = api.seed.endpoint.id
    url = f"/api/endpoints/{ep_id}/tags"

    first = api.client.get(url, headers=auth("tok-alice")).json()
    api.client.get(url, headers=auth("tok-alice"))
    assert [m["name"] for m in first["models"]] == ["llama3:8b", "qwen2:7b"]
    assert sum(1 for r in api.upstream.requests if r.url.path == "/api/tags") == 1

    r = api.client.post("/api/admin/cache/clear", headers=auth("tok-root"))
    assert r.json() == {"cleared": "all"}
    api.client.get(url, headers=auth("tok-alice"))
    assert sum(1 for r in api.upstream.requests if r.url.path == "/api/tags") == 2


def test_endpoint_tags_upstream_down(api):
    api.upstream.handler = lambda request: httpx.Response(500)
    r = api.client.get(f"/api/endpoints/{api.seed.endpoint.id}/tags", headers=auth("tok-alice"))
    assert r.status_code == 502


def test_sync_models(api):
    r = api.client.post(f"/api/admin/sync-models/{api.seed.endpoint.id}", headers=auth("tok-root"))
    assert r.status_code == 200
    data = r.json()
    assert data["count"] == 2
    ids = {m["model_id"]: m["id"] for m in data["models"]}
    assert ids["llama3:8b"] == api.seed.model.id

    models = api.client.get("/api/models", headers=auth("tok-alice")).json()
    assert len(models) == 2


class StalledBody(httpx.AsyncByteStream):
    """Sends one NDJSON line, then the read times out."""

    async def __aiter__(self):
        yield _ndjson({"response": "Hel", "done": False})
        raise httpx.ReadTimeout("timed out")


def test_chat_upstream_stall_ends_in_timeout_frame(api):
    api.upstream.handler = lambda request: httpx.Response(200, stream=StalledBody())
    s = api.seed
    r = api.client.post("/api/chat", headers=auth("tok-alice"), json={
        "conversation_id": s.conv.id, "model_id": s.model.id, "message": "Hi",
    })
    assert r.status_code == 200
    events = _events(r)
    assert [e.kind for e in events] == ["content", "error"]
    assert events[0].content == "Hel"
    assert events[1].content == "Upstream timed out after 5s without data"

    history = api.client.get(f"/api/conversations/{s.conv.id}/messages", headers=auth("tok-alice")).json()
    assert [m["role"] for m in history] == ["user"]


# ---------------------------------------------------------------------------
# CORS
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("api", [{"cors": {"allowed_origin": "https://chat.example"}}], indirect=True)
def test_cors_origin_follows_config(api):
    """Preflight and the SSE response agree on the configured origin."""
    pre = api.client.options("/api/chat", headers={
        "Origin": "https://chat.example",
        "Access-Control-Request-Method": "POST",
    })
    assert pre.status_code == 200
    assert pre.headers["access-control-allow-origin"] == "https://chat.example"

    s = api.seed
    r = api.client.post("/api/chat", headers=auth("tok-alice"), json={
        "conversation_id": s.conv.id, "model_id": s.model.id, "message": "Hi",
    })
    assert r.headers["access-control-allow-origin"] == "https://chat.example"


# ---------------------------------------------------------------------------
# Admin model & endpoint management
# ---------------------------------------------------------------------------

def _audit_actions(api) -> list:
    store = SQLiteStore(str(api.seed.db_path))
    return [(a.action, a.resource_id) for a in asyncio.run(store.list_audit_logs())]


def test_disabled_model_still_visible_by_id(api):
    url = f"/api/models/{api.seed.model.id}"
    api.client.patch(url, headers=auth("tok-root"), json={"is_enabled": False})

    r = api.client.get(url, headers=auth("tok-root"))
    assert r.status_code == 200
    assert r.json()["is_enabled"] is False
    assert api.client.get("/api/models", headers=auth("tok-alice")).json() == []

    s = api.seed
    r = api.client.post("/api/chat", headers=auth("tok-alice"), json={
        "conversation_id": s.conv.id, "model_id": s.model.id, "message": "Hi",
    })
    assert r.status_code == 404


def test_create_and_delete_model(api):
    body = {"endpoint_id": api.seed.endpoint.id, "name": "Qwen", "model_id": "qwen2:7b",
            "parameters": {"temperature": 0.3}}
    assert api.client.post("/api/models", headers=auth("tok-alice"), json=body).status_code == 403

    r = api.client.post("/api/models", headers=auth("tok-root"), json=body)
    assert r.status_code == 201
    created = r.json()
    assert created["is_enabled"] is True
    assert created["parameters"] == {"temperature": 0.3}
    assert created["ollama_endpoints"]["base_url"] == "http://gpu:11434"

    assert api.client.delete(f"/api/models/{created['id']}", headers=auth("tok-alice")).status_code == 403
    assert api.client.delete(f"/api/models/{created['id']}", headers=auth("tok-root")).status_code == 204
    assert api.client.get(f"/api/models/{created['id']}", headers=auth("tok-root")).status_code == 404
    assert api.client.delete(f"/api/models/{created['id']}", headers=auth("tok-root")).status_code == 404

    assert _audit_actions(api) == [("model_deleted", created["id"]), ("model_created", created["id"])]


@pytest.mark.parametrize("body,status", [
    ({"name": "x", "model_id": "x"}, 400),
    ({"endpoint_id": "nope", "name": "x", "model_id": "x"}, 404),
    ({"endpoint_id": "nope", "name": "x", "model_id": "x", "parameters": [1]}, 400),
])
def test_create_model_rejects(api, body, status):
    r = api.client.post("/api/models", headers=auth("tok-root"), json=body)
    assert r.status_code == status
    assert _audit_actions(api) == []


def test_model_update_is_audited(api):
    api.client.patch(f"/api/models/{api.seed.model.id}", headers=auth("tok-root"), json={"name": "Llama"})
    store = SQLiteStore(str(api.seed.db_path))
    [entry] = asyncio.run(store.list_audit_logs())
    assert entry.action == "model_updated"
    assert entry.user_id == "root"
    assert entry.details == {"name": "Llama"}


def test_get_update_delete_endpoint(api):
    ep_id = api.seed.endpoint.id
    r = api.client.get(f"/api/endpoints/{ep_id}", headers=auth("tok-alice"))
    assert r.json()["name"] == "gpu"
    assert api.client.get("/api/endpoints/nope", headers=auth("tok-alice")).status_code == 404

    body = {"base_url": "http://gpu2:11434/", "name": "gpu2"}
    assert api.client.patch(f"/api/endpoints/{ep_id}", headers=auth("tok-alice"), json=body).status_code == 403
    r = api.client.patch(f"/api/endpoints/{ep_id}", headers=auth("tok-root"), json=body)
    assert r.status_code == 200
    assert r.json()["base_url"] == "http://gpu2:11434"

    s = api.seed
    api.client.post("/api/chat", headers=auth("tok-alice"), json={
        "conversation_id": s.conv.id, "model_id": s.model.id, "message": "Hi",
    })
    assert str(api.upstream.requests[-1].url) == "http://gpu2:11434/api/generate"

    assert api.client.delete(f"/api/endpoints/{ep_id}", headers=auth("tok-root")).status_code == 204
    assert api.client.get(f"/api/endpoints/{ep_id}", headers=auth("tok-alice")).status_code == 404
    assert api.client.get(f"/api/models/{s.model.id}", headers=auth("tok-root")).status_code == 404
    assert api.client.patch(f"/api/endpoints/{ep_id}", headers=auth("tok-root"), json=body).status_code == 404

    assert _audit_actions(api) == [("endpoint_deleted", ep_id), ("endpoint_updated", ep_id)]


def test_moving_endpoint_drops_cached_tags(api):
    ep_id = api.seed.endpoint.id
    tags_url = f"/api/endpoints/{ep_id}/tags"
    api.client.get(tags_url, headers=auth("tok-alice"))
    api.client.patch(f"/api/endpoints/{ep_id}", headers=auth("tok-root"), json={"base_url": "http://gpu2:11434"})
    api.client.patch(f"/api/endpoints/{ep_id}", headers=auth("tok-root"), json={"base_url": "http://gpu:11434"})
    api.client.get(tags_url, headers=auth("tok-alice"))

    tag_hosts = [r.url.host for r in api.upstream.requests if r.url.path == "/api/tags"]
    assert tag_hosts == ["gpu", "gpu"]


def test_create_endpoint_is_audited(api):
    r = api.client.post("/api/endpoints", headers=auth("tok-root"), json={"name": "remote", "base_url": "http://r:11434"})
    assert _audit_actions(api) == [("endpoint_created", r.json()["id"])]

"""
Supabase storage: the hosted Postgres, reached through the supabase client.

Uses the service-role key, so row-level security is bypassed and ownership
checks (user_id filters) are done here, the same way the edge function did.
One async client is created on first use and shared by every call, and by
SupabaseAuth when auth runs against the same project.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

import httpx
from supabase import AsyncClient, AsyncClientOptions, PostgrestAPIError, acreate_client

from chatrelay.errors import PersistenceError
from chatrelay.storage.base import ChatStore, tags_to_rows
from chatrelay.storage.models import (
    AuditLog,
    Conversation,
    Endpoint,
    Message,
    ModelRecord,
    Profile,
    UsageLog,
    from_row,
)

logger = logging.getLogger(__name__)

_MODEL_SELECT = "*, ollama_endpoints(*)"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SupabaseConnection:
    """A Supabase project URL + key, and the async client built from them."""

    def __init__(self, url: str, key: str, timeout: float = 10, client: AsyncClient | None = None):
        if not url or not key:
            missing = [n for n, v in (("supabase.url", url), ("supabase.service_key", key)) if not v]
            raise ValueError(f"Missing Supabase settings: {', '.join(missing)}")
        self.url = url.rstrip("/")
        self.key = key
        self.timeout = timeout
        self._client = client
        self._lock = asyncio.Lock()

    async def client(self) -> AsyncClient:
        if self._client is None:
            async with self._lock:
                if self._client is None:
                    self._client = await acreate_client(
                        self.url,
                        self.key,
                        options=AsyncClientOptions(postgrest_client_timeout=self.timeout),
                    )
                    logger.info("Supabase client ready for %s", self.url)
        return self._client


class SupabaseStore(ChatStore):
    """ChatStore over Supabase tables."""

    def __init__(
        self,
        url: str,
        service_key: str,
        timeout: float = 10,
        client: AsyncClient | None = None,
    ):
        self.connection = SupabaseConnection(url, service_key, timeout, client=client)

    @property
    def url(self) -> str:
        return self.connection.url

    async def _table(self, name: str):
        return (await self.connection.client()).table(name)

    async def _run(self, query, what: str) -> list[dict]:
        """Execute a built query. Always returns a list of rows (possibly empty)."""
        try:
            resp = await query.execute()
        except PostgrestAPIError as e:
            logger.error("Supabase %s failed: %s", what, e.message)
            raise PersistenceError(f"Supabase {what} failed: {e.message}") from e
        except httpx.HTTPError as e:
            logger.error("Supabase %s unreachable: %s", what, e)
            raise PersistenceError(f"Supabase {what} failed: {e}") from e

        data = resp.data
        if not data:
            return []
        return data if isinstance(data, list) else [data]

    async def _insert(self, table: str, row: dict) -> dict:
        t = await self._table(table)
        rows = await self._run(t.insert(row), f"insert into {table}")
        if not rows:
            raise PersistenceError(f"Supabase insert into {table} returned no row")
        return rows[0]

    # -- relay operations ----------------------------------------------------

    async def insert_message(self, conversation_id, role, content, tokens=None) -> Message:
        row = await self._insert("messages", {
            "conversation_id": conversation_id,
            "role": role,
            "content": content,
            "tokens": tokens,
        })
        return from_row(Message, row)

    async def get_model_with_endpoint(self, model_id: str) -> ModelRecord | None:
        t = await self._table("models")
        rows = await self._run(
            t.select(_MODEL_SELECT).eq("id", model_id).eq("is_enabled", True),
            "select models",
        )
        if not rows or not rows[0].get("ollama_endpoints"):
            return None
        return ModelRecord.from_row(rows[0])

    async def insert_usage_log(self, user_id, model_id, endpoint_id, tokens_used, response_time_ms) -> UsageLog:
        row = await self._insert("usage_logs", {
            "user_id": user_id,
            "model_id": model_id,
            "endpoint_id": endpoint_id,
            "tokens_used": tokens_used,
            "response_time_ms": response_time_ms,
        })
        return from_row(UsageLog, row)

    async def touch_conversation(self, conversation_id: str) -> None:
        t = await self._table("conversations")
        await self._run(t.update({"updated_at": _now()}).eq("id", conversation_id), "touch conversations")

    # -- profiles ------------------------------------------------------------

    async def get_profile(self, user_id: str) -> Profile | None:
        t = await self._table("profiles")
        rows = await self._run(t.select("id, email, role, is_active").eq("id", user_id), "select profiles")
        return from_row(Profile, rows[0]) if rows else None

    async def create_profile(self, profile: Profile) -> Profile:
        t = await self._table("profiles")
        rows = await self._run(t.upsert(profile.to_dict(), on_conflict="id"), "upsert profiles")
        return from_row(Profile, rows[0]) if rows else profile

    # -- conversations -------------------------------------------------------

    async def create_conversation(self, user_id, title=None, model_id=None) -> Conversation:
        row = await self._insert("conversations", {
            "user_id": user_id,
            "title": title or "New Conversation",
            "model_id": model_id,
        })
        return from_row(Conversation, row)

    async def list_conversations(self, user_id: str) -> list[Conversation]:
        t = await self._table("conversations")
        rows = await self._run(
            t.select("*").eq("user_id", user_id).order("updated_at", desc=True),
            "select conversations",
        )
        return [from_row(Conversation, r) for r in rows]

    async def get_conversation(self, conversation_id: str, user_id: str) -> Conversation | None:
        t = await self._table("conversations")
        rows = await self._run(
            t.select("*").eq("id", conversation_id).eq("user_id", user_id),
            "select conversations",
        )
        return from_row(Conversation, rows[0]) if rows else None

    async def update_conversation(self, conversation_id, user_id, updates) -> Conversation | None:
        changes = {k: updates[k] for k in ("title", "model_id") if k in updates}
        if not changes:
            return await self.get_conversation(conversation_id, user_id)
        changes["updated_at"] = _now()
        t = await self._table("conversations")
        rows = await self._run(
            t.update(changes).eq("id", conversation_id).eq("user_id", user_id),
            "update conversations",
        )
        return from_row(Conversation, rows[0]) if rows else None

    async def delete_conversation(self, conversation_id: str, user_id: str) -> bool:
        t = await self._table("conversations")
        rows = await self._run(
            t.delete().eq("id", conversation_id).eq("user_id", user_id),
            "delete conversations",
        )
        return bool(rows)

    async def list_messages(self, conversation_id: str) -> list[Message]:
        t = await self._table("messages")
        rows = await self._run(
            t.select("*").eq("conversation_id", conversation_id).order("created_at"),
            "select messages",
        )
        return [from_row(Message, r) for r in rows]

    # -- models & endpoints --------------------------------------------------

    async def get_model(self, model_id: str) -> ModelRecord | None:
        t = await self._table("models")
        rows = await self._run(t.select(_MODEL_SELECT).eq("id", model_id), "select models")
        return ModelRecord.from_row(rows[0]) if rows else None

    async def list_models(self, enabled_only: bool = True) -> list[ModelRecord]:
        t = await self._table("models")
        query = t.select(_MODEL_SELECT)
        if enabled_only:
            query = query.eq("is_enabled", True)
        rows = await self._run(query.order("name"), "select models")
        return [ModelRecord.from_row(r) for r in rows]

    async def list_endpoints(self, enabled_only: bool = True) -> list[Endpoint]:
        t = await self._table("ollama_endpoints")
        query = t.select("*")
        if enabled_only:
            query = query.eq("is_enabled", True)
        rows = await self._run(query.order("name"), "select ollama_endpoints")
        return [from_row(Endpoint, r) for r in rows]

    async def get_endpoint(self, endpoint_id: str) -> Endpoint | None:
        t = await self._table("ollama_endpoints")
        rows = await self._run(t.select("*").eq("id", endpoint_id), "select ollama_endpoints")
        return from_row(Endpoint, rows[0]) if rows else None

    async def create_endpoint(self, name: str, base_url: str, is_local: bool = False) -> Endpoint:
        row = await self._insert("ollama_endpoints", {
            "name": name,
            "base_url": base_url.rstrip("/"),
            "is_local": is_local,
            "is_enabled": True,
            "health_status": "unknown",
        })
        return from_row(Endpoint, row)

    async def update_endpoint_health(self, endpoint_id: str, healthy: bool) -> None:
        t = await self._table("ollama_endpoints")
        await self._run(
            t.update({
                "health_status": "healthy" if healthy else "unhealthy",
                "last_health_check": _now(),
            }).eq("id", endpoint_id),
            "update ollama_endpoints",
        )

    async def update_endpoint(self, endpoint_id: str, updates: dict) -> Endpoint | None:
        changes = {k: updates[k] for k in ("name", "base_url", "is_local", "is_enabled") if k in updates}
        if "base_url" in changes:
            changes["base_url"] = (changes["base_url"] or "").rstrip("/")
        if not changes:
            return await self.get_endpoint(endpoint_id)
        t = await self._table("ollama_endpoints")
        rows = await self._run(t.update(changes).eq("id", endpoint_id), "update ollama_endpoints")
        return from_row(Endpoint, rows[0]) if rows else None

    async def delete_endpoint(self, endpoint_id: str) -> bool:
        # models go with it through the endpoint_id foreign key cascade
        t = await self._table("ollama_endpoints")
        rows = await self._run(t.delete().eq("id", endpoint_id), "delete ollama_endpoints")
        return bool(rows)

    async def upsert_models(self, endpoint_id: str, models: list[dict]) -> list[ModelRecord]:
        rows = tags_to_rows(endpoint_id, models)
        if not rows:
            return []
        t = await self._table("models")
        synced = await self._run(t.upsert(rows, on_conflict="endpoint_id,model_id"), "upsert models")
        return [ModelRecord.from_row(r) for r in synced]

    async def update_model(self, model_id: str, updates: dict) -> ModelRecord | None:
        changes = {k: updates[k] for k in ("name", "parameters", "is_enabled") if k in updates}
        if changes:
            t = await self._table("models")
            await self._run(t.update(changes).eq("id", model_id), "update models")
        return await self.get_model(model_id)

    async def create_model(self, endpoint_id, name, model_id, parameters=None) -> ModelRecord:
        row = await self._insert("models", {
            "endpoint_id": endpoint_id,
            "name": name,
            "model_id": model_id,
            "parameters": parameters or {},
            "is_enabled": True,
        })
        return await self.get_model(row["id"]) or ModelRecord.from_row(row)

    async def delete_model(self, model_id: str) -> bool:
        t = await self._table("models")
        rows = await self._run(t.delete().eq("id", model_id), "delete models")
        return bool(rows)

    # -- audit ---------------------------------------------------------------

    async def insert_audit_log(self, user_id, action, resource_type, resource_id, details=None) -> AuditLog:
        row = await self._insert("audit_logs", {
            "user_id": user_id,
            "action": action,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "details": details or {},
        })
        return from_row(AuditLog, row)

    async def list_audit_logs(self, limit: int = 100) -> list[AuditLog]:
        t = await self._table("audit_logs")
        rows = await self._run(t.select("*").order("created_at", desc=True).limit(limit), "select audit_logs")
        return [from_row(AuditLog, r) for r in rows]

    # -- usage ---------------------------------------------------------------

    async def list_usage(self, user_id: str | None = None, limit: int = 100) -> list[UsageLog]:
        t = await self._table("usage_logs")
        query = t.select("*")
        if user_id is not None:
            query = query.eq("user_id", user_id)
        rows = await self._run(query.order("created_at", desc=True).limit(limit), "select usage_logs")
        return [from_row(UsageLog, r) for r in rows]

"""
SQLite storage: the local stand-in for the hosted database.
Same tables as the hosted schema: profiles, ollama_endpoints, models,
conversations, messages, usage_logs, audit_logs. Single portable file.

Every query opens its own connection and runs in a worker thread, so the
event loop never blocks on disk and no connection is shared across requests.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

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

CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS profiles (
    id TEXT PRIMARY KEY,
    email TEXT DEFAULT '',
    role TEXT NOT NULL DEFAULT 'user',
    is_active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS ollama_endpoints (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    base_url TEXT NOT NULL,
    is_local INTEGER NOT NULL DEFAULT 0,
    is_enabled INTEGER NOT NULL DEFAULT 1,
    health_status TEXT NOT NULL DEFAULT 'unknown',
    last_health_check TEXT DEFAULT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS models (
    id TEXT PRIMARY KEY,
    endpoint_id TEXT NOT NULL,
    name TEXT NOT NULL,
    model_id TEXT NOT NULL,
    parameters TEXT NOT NULL DEFAULT '{}',
    size INTEGER DEFAULT NULL,
    digest TEXT DEFAULT NULL,
    modified_at TEXT DEFAULT NULL,
    is_enabled INTEGER NOT NULL DEFAULT 1,
    UNIQUE (endpoint_id, model_id),
    FOREIGN KEY (endpoint_id) REFERENCES ollama_endpoints(id)
);

CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT 'New Conversation',
    model_id TEXT DEFAULT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    tokens INTEGER DEFAULT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY (conversation_id) REFERENCES conversations(id)
);

CREATE TABLE IF NOT EXISTS usage_logs (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    model_id TEXT NOT NULL,
    endpoint_id TEXT DEFAULT NULL,
    tokens_used INTEGER NOT NULL DEFAULT 0,
    response_time_ms INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS audit_logs (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    action TEXT NOT NULL,
    resource_type TEXT NOT NULL,
    resource_id TEXT NOT NULL,
    details TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation
    ON messages(conversation_id);
CREATE INDEX IF NOT EXISTS idx_conversations_user
    ON conversations(user_id, updated_at);
CREATE INDEX IF NOT EXISTS idx_usage_user
    ON usage_logs(user_id, created_at);
"""

_MODEL_JOIN = """
SELECT m.*,
       e.id AS e_id, e.name AS e_name, e.base_url AS e_base_url,
       e.is_local AS e_is_local, e.is_enabled AS e_is_enabled,
       e.health_status AS e_health_status,
       e.last_health_check AS e_last_health_check,
       e.created_at AS e_created_at
FROM models m
JOIN ollama_endpoints e ON e.id = m.endpoint_id
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _model_from_joined(row: dict) -> ModelRecord:
    """Fold the e_* columns of _MODEL_JOIN into a nested endpoint."""
    nested = {k[2:]: row.pop(k) for k in list(row) if k.startswith("e_")}
    row["ollama_endpoints"] = nested
    return ModelRecord.from_row(row)


class SQLiteStore(ChatStore):
    """SQLite-backed ChatStore."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(CREATE_TABLES)
        logger.info("SQLite store initialized at %s", self.db_path)

    @contextmanager
    def _connect(self):
        try:
            conn = sqlite3.connect(str(self.db_path))
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Database error: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # -- sync primitives, run off the event loop ------------------------------

    def _fetchall_sync(self, sql: str, params: tuple = ()) -> list[dict]:
        with self._connect() as conn:
            return [dict(r) for r in conn.execute(sql, params).fetchall()]

    def _execute_sync(self, sql: str, params: tuple = ()) -> int:
        with self._connect() as conn:
            return conn.execute(sql, params).rowcount

    async def _fetchall(self, sql: str, params: tuple = ()) -> list[dict]:
        return await asyncio.to_thread(self._fetchall_sync, sql, params)

    async def _fetchone(self, sql: str, params: tuple = ()) -> dict | None:
        rows = await self._fetchall(sql, params)
        return rows[0] if rows else None

    async def _execute(self, sql: str, params: tuple = ()) -> int:
        return await asyncio.to_thread(self._execute_sync, sql, params)

    # -- relay operations ----------------------------------------------------

    async def insert_message(self, conversation_id, role, content, tokens=None) -> Message:
        msg = Message(conversation_id=conversation_id, role=role, content=content, tokens=tokens)
        await self._execute(
            """INSERT INTO messages (id, conversation_id, role, content, tokens, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (msg.id, msg.conversation_id, msg.role, msg.content, msg.tokens, msg.created_at),
        )
        logger.debug("Stored message %s (role=%s, conv=%s)", msg.id, role, conversation_id)
        return msg

    async def get_model_with_endpoint(self, model_id: str) -> ModelRecord | None:
        row = await self._fetchone(
            _MODEL_JOIN + " WHERE m.id = ? AND m.is_enabled = 1",
            (model_id,),
        )
        return _model_from_joined(row) if row else None

    async def insert_usage_log(self, user_id, model_id, endpoint_id, tokens_used, response_time_ms) -> UsageLog:
        entry = UsageLog(
            user_id=user_id,
            model_id=model_id,
            endpoint_id=endpoint_id,
            tokens_used=tokens_used,
            response_time_ms=response_time_ms,
        )
        await self._execute(
            """INSERT INTO usage_logs
               (id, user_id, model_id, endpoint_id, tokens_used, response_time_ms, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (entry.id, entry.user_id, entry.model_id, entry.endpoint_id,
             entry.tokens_used, entry.response_time_ms, entry.created_at),
        )
        return entry

    async def touch_conversation(self, conversation_id: str) -> None:
        await self._execute(
            "UPDATE conversations SET updated_at = ? WHERE id = ?",
            (_now(), conversation_id),
        )

    # -- profiles ------------------------------------------------------------

    async def get_profile(self, user_id: str) -> Profile | None:
        row = await self._fetchone("SELECT * FROM profiles WHERE id = ?", (user_id,))
        return from_row(Profile, row) if row else None

    async def create_profile(self, profile: Profile) -> Profile:
        await self._execute(
            "INSERT OR REPLACE INTO profiles (id, email, role, is_active) VALUES (?, ?, ?, ?)",
            (profile.id, profile.email, profile.role, int(profile.is_active)),
        )
        return profile

    # -- conversations -------------------------------------------------------

    async def create_conversation(self, user_id, title=None, model_id=None) -> Conversation:
        conv = Conversation(user_id=user_id, title=title or "New Conversation", model_id=model_id)
        await self._execute(
            """INSERT INTO conversations (id, user_id, title, model_id, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (conv.id, conv.user_id, conv.title, conv.model_id, conv.created_at, conv.updated_at),
        )
        return conv

    async def list_conversations(self, user_id: str) -> list[Conversation]:
        rows = await self._fetchall(
            "SELECT * FROM conversations WHERE user_id = ? ORDER BY updated_at DESC",
            (user_id,),
        )
        return [from_row(Conversation, r) for r in rows]

    async def get_conversation(self, conversation_id: str, user_id: str) -> Conversation | None:
        row = await self._fetchone(
            "SELECT * FROM conversations WHERE id = ? AND user_id = ?",
            (conversation_id, user_id),
        )
        return from_row(Conversation, row) if row else None

    async def update_conversation(self, conversation_id, user_id, updates) -> Conversation | None:
        changes = {k: updates[k] for k in ("title", "model_id") if k in updates}
        if changes:
            assignments = ", ".join(f"{k} = ?" for k in changes)
            await self._execute(
                f"UPDATE conversations SET {assignments}, updated_at = ? WHERE id = ? AND user_id = ?",
                (*changes.values(), _now(), conversation_id, user_id),
            )
        return await self.get_conversation(conversation_id, user_id)

    async def delete_conversation(self, conversation_id: str, user_id: str) -> bool:
        def _delete() -> bool:
            with self._connect() as conn:
                owned = conn.execute(
                    "SELECT 1 FROM conversations WHERE id = ? AND user_id = ?",
                    (conversation_id, user_id),
                ).fetchone()
                if not owned:
                    return False
                conn.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,))
                conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
                return True

        return await asyncio.to_thread(_delete)

    async def list_messages(self, conversation_id: str) -> list[Message]:
        rows = await self._fetchall(
            "SELECT * FROM messages WHERE conversation_id = ? ORDER BY created_at, rowid",
            (conversation_id,),
        )
        return [from_row(Message, r) for r in rows]

    # -- models & endpoints --------------------------------------------------

    async def list_models(self, enabled_only: bool = True) -> list[ModelRecord]:
        where = " WHERE m.is_enabled = 1" if enabled_only else ""
        rows = await self._fetchall(_MODEL_JOIN + where + " ORDER BY m.name")
        return [_model_from_joined(r) for r in rows]

    async def list_endpoints(self, enabled_only: bool = True) -> list[Endpoint]:
        where = " WHERE is_enabled = 1" if enabled_only else ""
        rows = await self._fetchall("SELECT * FROM ollama_endpoints" + where + " ORDER BY name")
        return [from_row(Endpoint, r) for r in rows]

    async def get_endpoint(self, endpoint_id: str) -> Endpoint | None:
        row = await self._fetchone("SELECT * FROM ollama_endpoints WHERE id = ?", (endpoint_id,))
        return from_row(Endpoint, row) if row else None

    async def create_endpoint(self, name: str, base_url: str, is_local: bool = False) -> Endpoint:
        ep = Endpoint(name=name, base_url=base_url.rstrip("/"), is_local=is_local)
        await self._execute(
            """INSERT INTO ollama_endpoints
               (id, name, base_url, is_local, is_enabled, health_status, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (ep.id, ep.name, ep.base_url, int(ep.is_local), int(ep.is_enabled),
             ep.health_status, ep.created_at),
        )
        return ep

    async def update_endpoint_health(self, endpoint_id: str, healthy: bool) -> None:
        await self._execute(
            "UPDATE ollama_endpoints SET health_status = ?, last_health_check = ? WHERE id = ?",
            ("healthy" if healthy else "unhealthy", _now(), endpoint_id),
        )

    async def upsert_models(self, endpoint_id: str, models: list[dict]) -> list[ModelRecord]:
        rows = tags_to_rows(endpoint_id, models)

        def _upsert():
            with self._connect() as conn:
                for r in rows:
                    conn.execute(
                        """INSERT INTO models
                           (id, endpoint_id, name, model_id, parameters, size, digest, modified_at, is_enabled)
                           VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1)
                           ON CONFLICT(endpoint_id, model_id) DO UPDATE SET
                               name = excluded.name,
                               size = excluded.size,
                               digest = excluded.digest,
                               modified_at = excluded.modified_at,
                               is_enabled = 1""",
                        (ModelRecord().id, endpoint_id, r["name"], r["model_id"], json.dumps({}),
                         r["size"], r["digest"], r["modified_at"]),
                    )

        await asyncio.to_thread(_upsert)
        synced = {r["model_id"] for r in rows}
        joined = await self._fetchall(_MODEL_JOIN + " WHERE m.endpoint_id = ? ORDER BY m.name", (endpoint_id,))
        return [m for m in (_model_from_joined(r) for r in joined) if m.model_id in synced]

    async def update_model(self, model_id: str, updates: dict) -> ModelRecord | None:
        changes = {k: updates[k] for k in ("name", "parameters", "is_enabled") if k in updates}
        if "parameters" in changes:
            changes["parameters"] = json.dumps(changes["parameters"] or {})
        if "is_enabled" in changes:
            changes["is_enabled"] = int(bool(changes["is_enabled"]))
        if changes:
            assignments = ", ".join(f"{k} = ?" for k in changes)
            await self._execute(
                f"UPDATE models SET {assignments} WHERE id = ?",
                (*changes.values(), model_id),
            )
        return await self.get_model(model_id)

    async def get_model(self, model_id: str) -> ModelRecord | None:
        row = await self._fetchone(_MODEL_JOIN + " WHERE m.id = ?", (model_id,))
        return _model_from_joined(row) if row else None

    async def create_model(self, endpoint_id, name, model_id, parameters=None) -> ModelRecord:
        record = ModelRecord(endpoint_id=endpoint_id, name=name, model_id=model_id, parameters=parameters or {})
        await self._execute(
            """INSERT INTO models (id, endpoint_id, name, model_id, parameters, is_enabled)
               VALUES (?, ?, ?, ?, ?, 1)""",
            (record.id, endpoint_id, name, model_id, json.dumps(record.parameters)),
        )
        return await self.get_model(record.id) or record

    async def delete_model(self, model_id: str) -> bool:
        return await self._execute("DELETE FROM models WHERE id = ?", (model_id,)) > 0

    async def update_endpoint(self, endpoint_id: str, updates: dict) -> Endpoint | None:
        changes = {k: updates[k] for k in ("name", "base_url", "is_local", "is_enabled") if k in updates}
        if "base_url" in changes:
            changes["base_url"] = (changes["base_url"] or "").rstrip("/")
        for flag in ("is_local", "is_enabled"):
            if flag in changes:
                changes[flag] = int(bool(changes[flag]))
        if changes:
            assignments = ", ".join(f"{k} = ?" for k in changes)
            await self._execute(
                f"UPDATE ollama_endpoints SET {assignments} WHERE id = ?",
                (*changes.values(), endpoint_id),
            )
        return await self.get_endpoint(endpoint_id)

    async def delete_endpoint(self, endpoint_id: str) -> bool:
        def _delete() -> bool:
            with self._connect() as conn:
                conn.execute("DELETE FROM models WHERE endpoint_id = ?", (endpoint_id,))
                return conn.execute("DELETE FROM ollama_endpoints WHERE id = ?", (endpoint_id,)).rowcount > 0

        return await asyncio.to_thread(_delete)

    # -- audit ---------------------------------------------------------------

    async def insert_audit_log(self, user_id, action, resource_type, resource_id, details=None) -> AuditLog:
        entry = AuditLog(
            user_id=user_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            details=details or {},
        )
        await self._execute(
            """INSERT INTO audit_logs
               (id, user_id, action, resource_type, resource_id, details, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (entry.id, entry.user_id, entry.action, entry.resource_type, entry.resource_id,
             json.dumps(entry.details), entry.created_at),
        )
        return entry

    async def list_audit_logs(self, limit: int = 100) -> list[AuditLog]:
        rows = await self._fetchall(
            "SELECT * FROM audit_logs ORDER BY created_at DESC, rowid DESC LIMIT ?", (limit,)
        )
        return [from_row(AuditLog, r) for r in rows]

    # -- usage ---------------------------------------------------------------

    async def list_usage(self, user_id: str | None = None, limit: int = 100) -> list[UsageLog]:
        if user_id is None:
            rows = await self._fetchall(
                "SELECT * FROM usage_logs ORDER BY created_at DESC LIMIT ?", (limit,)
            )
        else:
            rows = await self._fetchall(
                "SELECT * FROM usage_logs WHERE user_id = ? ORDER BY created_at DESC LIMIT ?",
                (user_id, limit),
            )
        return [from_row(UsageLog, r) for r in rows]

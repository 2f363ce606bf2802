"""
ChatStore: abstract base for conversation storage.

The relay engine only needs four operations from a store:

  insert_message           user input and the final assistant answer
  get_model_with_endpoint  resolve model config + upstream URL
  insert_usage_log         one entry per finished generation
  touch_conversation       bump updated_at

The rest back the REST routes and the CLI. Implementations raise
PersistenceError when the underlying database call fails; a missing row is
not an error, it comes back as None (or an empty list).
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from chatrelay.storage.models import (
    AuditLog,
    Conversation,
    Endpoint,
    Message,
    ModelRecord,
    Profile,
    UsageLog,
)


class ChatStore(ABC):
    """Abstract conversation store."""

    # -- relay operations ----------------------------------------------------

    @abstractmethod
    async def insert_message(
        self, conversation_id: str, role: str, content: str, tokens: int | None = None
    ) -> Message:
        ...

    @abstractmethod
    async def get_model_with_endpoint(self, model_id: str) -> ModelRecord | None:
        """Model row joined with its endpoint; None if either is missing or disabled."""
        ...

    @abstractmethod
    async def insert_usage_log(
        self,
        user_id: str,
        model_id: str,
        endpoint_id: str | None,
        tokens_used: int,
        response_time_ms: int,
    ) -> UsageLog:
        ...

    @abstractmethod
    async def touch_conversation(self, conversation_id: str) -> None:
        ...

    # -- profiles ------------------------------------------------------------

    @abstractmethod
    async def get_profile(self, user_id: str) -> Profile | None:
        ...

    @abstractmethod
    async def create_profile(self, profile: Profile) -> Profile:
        ...

    # -- conversations -------------------------------------------------------

    @abstractmethod
    async def create_conversation(
        self, user_id: str, title: str | None = None, model_id: str | None = None
    ) -> Conversation:
        ...

    @abstractmethod
    async def list_conversations(self, user_id: str) -> list[Conversation]:
        """Most recently updated first."""
        ...

    @abstractmethod
    async def get_conversation(self, conversation_id: str, user_id: str) -> Conversation | None:
        """Only returns the conversation if `user_id` owns it."""
        ...

    @abstractmethod
    async def update_conversation(
        self, conversation_id: str, user_id: str, updates: dict
    ) -> Conversation | None:
        """Apply `title` / `model_id` from updates; other keys are ignored."""
        ...

    @abstractmethod
    async def delete_conversation(self, conversation_id: str, user_id: str) -> bool:
        ...

    @abstractmethod
    async def list_messages(self, conversation_id: str) -> list[Message]:
        """Oldest first."""
        ...

    # -- models & endpoints --------------------------------------------------

    @abstractmethod
    async def get_model(self, model_id: str) -> ModelRecord | None:
        """Model row with its endpoint, enabled or not."""
        ...

    @abstractmethod
    async def list_models(self, enabled_only: bool = True) -> list[ModelRecord]:
        ...

    @abstractmethod
    async def list_endpoints(self, enabled_only: bool = True) -> list[Endpoint]:
        ...

    @abstractmethod
    async def get_endpoint(self, endpoint_id: str) -> Endpoint | None:
        ...

    @abstractmethod
    async def create_endpoint(self, name: str, base_url: str, is_local: bool = False) -> Endpoint:
        ...

    @abstractmethod
    async def update_endpoint_health(self, endpoint_id: str, healthy: bool) -> None:
        ...

    @abstractmethod
    async def upsert_models(self, endpoint_id: str, models: list[dict]) -> list[ModelRecord]:
        """
        Insert or refresh models from an /api/tags listing, keyed by
        (endpoint_id, model_id). Returns the synced rows.
        """
        ...

    @abstractmethod
    async def update_model(self, model_id: str, updates: dict) -> ModelRecord | None:
        """Apply `name` / `parameters` / `is_enabled`; other keys are ignored."""
        ...

    @abstractmethod
    async def create_model(
        self, endpoint_id: str, name: str, model_id: str, parameters: dict | None = None
    ) -> ModelRecord:
        ...

    @abstractmethod
    async def delete_model(self, model_id: str) -> bool:
        ...

    @abstractmethod
    async def update_endpoint(self, endpoint_id: str, updates: dict) -> Endpoint | None:
        """Apply `name` / `base_url` / `is_local` / `is_enabled`; other keys are ignored."""
        ...

    @abstractmethod
    async def delete_endpoint(self, endpoint_id: str) -> bool:
        """Removes the endpoint and the models it serves."""
        ...

    # -- audit ---------------------------------------------------------------

    @abstractmethod
    async def insert_audit_log(
        self,
        user_id: str,
        action: str,
        resource_type: str,
        resource_id: str,
        details: dict | None = None,
    ) -> AuditLog:
        ...

    @abstractmethod
    async def list_audit_logs(self, limit: int = 100) -> list[AuditLog]:
        """Newest first."""
        ...

    # -- usage ---------------------------------------------------------------

    @abstractmethod
    async def list_usage(self, user_id: str | None = None, limit: int = 100) -> list[UsageLog]:
        """Newest first; all users when user_id is None."""
        ...

    async def close(self) -> None:
        """Release resources. Default: nothing to do."""


def tags_to_rows(endpoint_id: str, models: list[dict]) -> list[dict]:
    """Map /api/tags entries onto model rows."""
    rows = []
    for m in models:
        name = m.get("name") or m.get("model") or ""
        if not name:
            continue
        rows.append({
            "endpoint_id": endpoint_id,
            "name": name,
            "model_id": m.get("model") or name,
            "size": m.get("size"),
            "digest": m.get("digest"),
            "modified_at": m.get("modified_at"),
            "is_enabled": True,
        })
    return rows

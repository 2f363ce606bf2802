"""
Data models for conversation storage.
These define the shape of rows flowing between the stores and the API.
Field names follow the database columns so rows map over directly.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from uuid import uuid4


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return uuid4().hex


def from_row(cls, row: dict):
    """Build a dataclass from a row, ignoring columns it doesn't know."""
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in row.items() if k in known})


@dataclass
class Profile:
    """A user account as the auth layer sees it."""
    id: str
    email: str = ""
    role: str = "user"       # "user" | "admin"
    is_active: bool = True

    def __post_init__(self):
        self.is_active = bool(self.is_active)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Endpoint:
    """One Ollama server the relay can route to."""
    id: str = field(default_factory=_new_id)
    name: str = ""
    base_url: str = ""
    is_local: bool = False
    is_enabled: bool = True
    health_status: str = "unknown"   # "healthy" | "unhealthy" | "unknown"
    last_health_check: str | None = None
    created_at: str = field(default_factory=_now)

    def __post_init__(self):
        self.is_local = bool(self.is_local)
        self.is_enabled = bool(self.is_enabled)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ModelRecord:
    """A model served by an endpoint, with its decoding parameters."""
    id: str = field(default_factory=_new_id)
    endpoint_id: str = ""
    name: str = ""
    model_id: str = ""        # name Ollama knows it by
    parameters: dict = field(default_factory=dict)
    size: int | None = None
    digest: str | None = None
    modified_at: str | None = None
    is_enabled: bool = True
    endpoint: Endpoint | None = None

    def __post_init__(self):
        if isinstance(self.parameters, str):
            self.parameters = json.loads(self.parameters or "{}")
        self.parameters = self.parameters or {}
        self.is_enabled = bool(self.is_enabled)

    @classmethod
    def from_row(cls, row: dict) -> "ModelRecord":
        """Accepts the nested `ollama_endpoints` object of a joined select."""
        record = from_row(cls, row)
        nested = row.get("ollama_endpoints")
        if isinstance(nested, dict):
            record.endpoint = from_row(Endpoint, nested)
        return record

    @property
    def endpoint_url(self) -> str:
        return self.endpoint.base_url.rstrip("/") if self.endpoint else ""

    def to_dict(self) -> dict:
        data = asdict(self)
        data.pop("endpoint")
        data["ollama_endpoints"] = self.endpoint.to_dict() if self.endpoint else None
        return data


@dataclass
class Conversation:
    """A conversation owned by one user."""
    id: str = field(default_factory=_new_id)
    user_id: str = ""
    title: str = "New Conversation"
    model_id: str | None = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Message:
    """A single message in a conversation."""
    id: str = field(default_factory=_new_id)
    conversation_id: str = ""
    role: str = ""           # "user", "assistant", "system"
    content: str = ""
    tokens: int | None = None
    created_at: str = field(default_factory=_now)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class UsageLog:
    """One finished generation: who, which model, how much, how long."""
    id: str = field(default_factory=_new_id)
    user_id: str = ""
    model_id: str = ""
    endpoint_id: str | None = None
    tokens_used: int = 0
    response_time_ms: int = 0
    created_at: str = field(default_factory=_now)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class AuditLog:
    """An admin change to models or endpoints."""
    id: str = field(default_factory=_new_id)
    user_id: str = ""
    action: str = ""          # e.g. "model_created", "endpoint_deleted"
    resource_type: str = ""   # "model" | "endpoint"
    resource_id: str = ""
    details: dict = field(default_factory=dict)
    created_at: str = field(default_factory=_now)

    def __post_init__(self):
        if isinstance(self.details, str):
            self.details = json.loads(self.details or "{}")
        self.details = self.details or {}

    def to_dict(self) -> dict:
        return asdict(self)

"""
Conversation store factory.

Usage:
    from chatrelay.storage import make_store
    store = make_store(cfg)

storage.backend in config.yaml picks the implementation:
    sqlite    local file at storage.sqlite_path (default)
    supabase  hosted Postgres via supabase.url + supabase.service_key
"""

from chatrelay.storage.base import ChatStore
from chatrelay.storage.sqlite_store import SQLiteStore
from chatrelay.storage.supabase_store import SupabaseStore


def make_store(cfg: dict) -> ChatStore:
    """
    Instantiate the configured store.

    Raises:
        ValueError: If the backend name is unknown or its settings are missing.
    """
    storage_cfg = cfg.get("storage", {})
    backend = storage_cfg.get("backend", "sqlite")

    if backend == "sqlite":
        return SQLiteStore(storage_cfg.get("sqlite_path", "./data/chatrelay.db"))
    if backend == "supabase":
        sb_cfg = cfg.get("supabase", {})
        return SupabaseStore(
            url=sb_cfg.get("url", ""),
            service_key=sb_cfg.get("service_key", ""),
            timeout=sb_cfg.get("timeout", 10),
        )
    raise ValueError(f"Unknown storage backend: '{backend}'. Available: sqlite, supabase")


__all__ = ["ChatStore", "SQLiteStore", "SupabaseStore", "make_store"]

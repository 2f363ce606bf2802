"""
Bearer-token authentication.

Token verification is delegated: either to Supabase Auth
(client.auth.get_user) or, for local setups, to a static
token → user id map from config.yaml. Either way the user must then have an
active row in `profiles`, which also supplies the role.
"""

from __future__ import annotations

import hmac
import logging
from abc import ABC, abstractmethod

import httpx
from supabase import AuthError as SupabaseAuthError, AuthRetryableError

from chatrelay.errors import AuthError
from chatrelay.storage.base import ChatStore
from chatrelay.storage.models import Profile
from chatrelay.storage.supabase_store import SupabaseConnection, SupabaseStore

logger = logging.getLogger(__name__)


def extract_bearer(authorization: str | None) -> str:
    """Token from an `Authorization: Bearer <token>` header, or ''."""
    if not authorization or not authorization.startswith("Bearer "):
        return ""
    return authorization[7:].strip()


class Authenticator(ABC):
    """Resolves a bearer token to an active profile, or raises AuthError."""

    def __init__(self, store: ChatStore):
        self.store = store

    @abstractmethod
    async def verify_token(self, token: str) -> tuple[str, str]:
        """Return (user_id, email) for a valid token."""
        ...

    async def authenticate(self, token: str) -> Profile:
        if not token:
            raise AuthError("Missing authorization token")
        user_id, email = await self.verify_token(token)

        profile = await self.store.get_profile(user_id)
        if profile is None or not profile.is_active:
            logger.warning("Rejected token for inactive or unknown profile %s", user_id)
            raise AuthError("Account inactive or not found", status_code=403)
        if email and not profile.email:
            profile.email = email
        return profile


class SupabaseAuth(Authenticator):
    """Ask Supabase Auth who the token belongs to."""

    def __init__(self, store: ChatStore, connection: SupabaseConnection):
        super().__init__(store)
        self.connection = connection

    @property
    def url(self) -> str:
        return self.connection.url

    async def verify_token(self, token: str) -> tuple[str, str]:
        client = await self.connection.client()
        try:
            resp = await client.auth.get_user(token)
        except (AuthRetryableError, httpx.HTTPError) as e:
            logger.error("Supabase auth unreachable: %s", e)
            raise AuthError("Authentication service unavailable", status_code=503) from e
        except SupabaseAuthError as e:
            logger.warning("Authentication failed: %s", e)
            raise AuthError("Invalid or expired token") from e

        user = getattr(resp, "user", None)
        if user is None or not user.id:
            raise AuthError("Invalid or expired token")
        return str(user.id), user.email or ""


class StaticTokenAuth(Authenticator):
    """Fixed token → user id map, for local single-box setups."""

    def __init__(self, store: ChatStore, tokens: dict[str, str]):
        super().__init__(store)
        self.tokens = dict(tokens or {})

    async def verify_token(self, token: str) -> tuple[str, str]:
        for known, user_id in self.tokens.items():
            if hmac.compare_digest(known.encode(), token.encode()):
                return str(user_id), ""
        raise AuthError("Invalid or expired token")


def make_authenticator(cfg: dict, store: ChatStore) -> Authenticator:
    """Build the authenticator named by auth.provider."""
    auth_cfg = cfg.get("auth", {})
    provider = auth_cfg.get("provider", "static")

    if provider == "supabase":
        if isinstance(store, SupabaseStore):
            return SupabaseAuth(store, store.connection)
        sb_cfg = cfg.get("supabase", {})
        connection = SupabaseConnection(
            sb_cfg.get("url", ""),
            sb_cfg.get("service_key", ""),
            timeout=sb_cfg.get("timeout", 10),
        )
        return SupabaseAuth(store, connection)
    if provider == "static":
        return StaticTokenAuth(store, auth_cfg.get("tokens") or {})
    raise ValueError(f"Unknown auth provider: '{provider}'. Available: supabase, static")

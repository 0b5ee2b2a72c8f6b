"""
Thin binding to the hosted identity provider.

The provider is treated as an oracle: given a bearer token it either names a
user or it does not. Plan tier comes from the local `users` profile row, which
is created the first time a user is seen.
"""

from __future__ import annotations

from typing import Optional

import httpx
from sqlalchemy.exc import IntegrityError

from core.config import Settings, logger
from core.context import Identity
from core.errors import IdentityProviderError
from core.models import User

PLAN_TYPES = {"registered", "premium"}


def ensure_user(db, user_id: str, email: Optional[str] = None, plan_type: Optional[str] = None) -> User:
    user = db.get(User, user_id)
    if user is not None:
        return user
    user = User(
        id=user_id,
        email=email,
        plan_type=plan_type if plan_type in PLAN_TYPES else "registered",
        generations_used_today=0,
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        # a concurrent first request inserted the row first
        db.rollback()
        existing = db.get(User, user_id)
        if existing is None:
            raise
        return existing
    db.refresh(user)
    return user


class IdentityResolver:
    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._client = client
        self._owns_client = client is None

    async def fetch_user(self, token: str) -> Optional[dict]:
        if not self.settings.auth_provider_url:
            return None
        if self._client is None:
            self._client = httpx.AsyncClient()
        headers = {"Authorization": f"Bearer {token}"}
        if self.settings.auth_provider_api_key:
            headers["apikey"] = self.settings.auth_provider_api_key
        try:
            response = await self._client.get(
                f"{self.settings.auth_provider_url.rstrip('/')}/auth/v1/user",
                headers=headers,
                timeout=httpx.Timeout(self.settings.auth_timeout_seconds),
            )
        except httpx.RequestError as exc:
            raise IdentityProviderError(str(exc)) from exc
        if response.status_code in {401, 403}:
            return None
        if response.status_code >= 400:
            raise IdentityProviderError(f"status {response.status_code}")
        try:
            return response.json()
        except ValueError as exc:
            raise IdentityProviderError("non-JSON user payload") from exc

    async def resolve(self, token: Optional[str], db) -> Optional[Identity]:
        """Return the caller's identity, or None for anonymous callers."""
        if not token:
            return None
        try:
            payload = await self.fetch_user(token)
        except IdentityProviderError as exc:
            logger.warning(f"Identity provider unavailable, treating caller as anonymous: {exc}")
            return None
        if not payload or not payload.get("id"):
            return None

        metadata = payload.get("user_metadata") or {}
        user = ensure_user(
            db,
            str(payload["id"]),
            email=payload.get("email"),
            plan_type=metadata.get("plan_type"),
        )
        return Identity(user_id=user.id, tier=user.plan_type, email=user.email)

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

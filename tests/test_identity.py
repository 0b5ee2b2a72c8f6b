import asyncio

import httpx

from core.config import Settings
from core.models import User
from core.services.identity import IdentityResolver, ensure_user


def _settings() -> Settings:
    return Settings(
        db_backend="sqlite",
        sqlite_path=":memory:",
        auth_provider_url="https://auth.example.com/",
        auth_provider_api_key="anon-key",
    )


def _resolver(handler) -> IdentityResolver:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return IdentityResolver(_settings(), client=client)


def test_resolve_creates_profile_row(db_session):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["apikey"] = request.headers.get("apikey")
        return httpx.Response(
            200,
            json={"id": "abc-123", "email": "ada@example.com", "user_metadata": {"plan_type": "premium"}},
        )

    identity = asyncio.run(_resolver(handler).resolve("token", db_session))

    assert identity.user_id == "abc-123"
    assert identity.is_premium
    assert seen["url"] == "https://auth.example.com/auth/v1/user"
    assert seen["apikey"] == "anon-key"
    assert db_session.get(User, "abc-123").email == "ada@example.com"


def test_unknown_plan_type_defaults_to_registered(db_session):
    def handler(request):
        return httpx.Response(200, json={"id": "u-2", "user_metadata": {"plan_type": "admin"}})

    identity = asyncio.run(_resolver(handler).resolve("token", db_session))
    assert identity.tier == "registered"


def test_rejected_token_is_anonymous(db_session):
    def handler(request):
        return httpx.Response(401, json={"msg": "bad token"})

    assert asyncio.run(_resolver(handler).resolve("token", db_session)) is None


def test_provider_outage_is_anonymous(db_session):
    def handler(request):
        raise httpx.ConnectError("unreachable", request=request)

    assert asyncio.run(_resolver(handler).resolve("token", db_session)) is None


def test_missing_token_skips_provider(db_session):
    def handler(request):
        raise AssertionError("provider should not be called")

    assert asyncio.run(_resolver(handler).resolve(None, db_session)) is None


class _RacedSession:
    """Session whose first lookup misses a row another request already inserted."""

    def __init__(self, session):
        self._session = session
        self._lookups = 0

    def get(self, *args, **kwargs):
        self._lookups += 1
        if self._lookups == 1:
            return None
        return self._session.get(*args, **kwargs)

    def __getattr__(self, name):
        return getattr(self._session, name)


def test_ensure_user_survives_concurrent_first_insert(db_session):
    ensure_user(db_session, "racer", email="first@example.com")
    db_session.expunge_all()

    user = ensure_user(_RacedSession(db_session), "racer", email="second@example.com")

    assert user.id == "racer"
    assert user.email == "first@example.com"

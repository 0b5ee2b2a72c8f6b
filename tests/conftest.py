import base64
import io
import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("SKIP_RATE_LIMITS", "true")

import pytest
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from starlette.testclient import TestClient

from core.config import Settings
from core.context import Identity
from core.db import DB
from core.models import Base
from core.services.generation import CharacterResult
from core.services.identity import ensure_user
from rate_limiter import InMemoryRateLimiter, RateLimitConfig, RateLimitRule


def make_png_data_uri(size=(64, 48), color=(200, 40, 120), mode="RGB") -> str:
    image = Image.new(mode, size, color)
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


class FakeCharacterGenerator:
    def __init__(self, result=None, error=None):
        self.result = result or CharacterResult(
            character_name="Napoleon Bonafide",
            character_description="A short emperor with tall ambitions.",
            prediction="Your future holds many well-organized picnics.",
        )
        self.error = error
        self.calls = 0

    async def generate(self, name, birth_month, birth_year, question):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result

    async def aclose(self):
        return None


class FakeImageGenerator:
    def __init__(self, image=None, error=None):
        self.image = make_png_data_uri() if image is None else image
        self.error = error
        self.calls = 0

    async def generate(self, prompt):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.image

    async def aclose(self):
        return None


class FakeIdentityResolver:
    """Maps bearer tokens to identities and mirrors them into the users table."""

    def __init__(self, identities=None):
        self.identities = identities or {}

    async def resolve(self, token, db):
        identity = self.identities.get(token)
        if identity is None:
            return None
        ensure_user(db, identity.user_id, email=identity.email, plan_type=identity.tier)
        return identity

    async def aclose(self):
        return None


@pytest.fixture
def settings():
    return Settings(db_backend="sqlite", sqlite_path=":memory:", maintenance_interval_seconds=0)


@pytest.fixture
def server_db(tmp_path):
    db_path = tmp_path / "cosmicquirks.sqlite"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)
    previous_engine = DB.engine
    previous_session = DB.SessionLocal
    DB.engine = engine
    DB.SessionLocal = SessionLocal
    try:
        yield engine
    finally:
        DB.engine = previous_engine
        DB.SessionLocal = previous_session
        engine.dispose()


@pytest.fixture
def db_session(server_db):
    session = DB.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def identities():
    return {
        "token-registered": Identity(user_id="user-registered", tier="registered", email="r@example.com"),
        "token-premium": Identity(user_id="user-premium", tier="premium", email="p@example.com"),
    }


def disabled_rate_limits() -> RateLimitConfig:
    return RateLimitConfig(
        enabled=False,
        prediction=RateLimitRule(limit=3, window_seconds=60),
        api=RateLimitRule(limit=30, window_seconds=60),
        auth=RateLimitRule(limit=10, window_seconds=900),
        trusted_proxy_count=1,
    )


@pytest.fixture
def build_client(server_db, settings, identities):
    """Factory for a TestClient around an app wired with fakes (lifespan not run)."""
    from app.main import create_app

    def _build(
        character_generator=None,
        image_generator=None,
        rate_limit_config=None,
        app_settings=None,
        rng=None,
    ):
        app = create_app(
            settings=app_settings or settings,
            rate_limit_config=rate_limit_config or disabled_rate_limits(),
            limiter=InMemoryRateLimiter(max_entries=100),
            character_generator=character_generator or FakeCharacterGenerator(),
            image_generator=image_generator or FakeImageGenerator(),
            identity_resolver=FakeIdentityResolver(identities),
            rng=rng,
        )
        return TestClient(app, raise_server_exceptions=False)

    return _build



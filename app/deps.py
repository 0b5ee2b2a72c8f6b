"""
Dependency helpers for the standalone FastAPI app.
"""

from __future__ import annotations

from typing import Generator, Optional

from fastapi import Request

from core.config import Settings
from core.context import RequestContext
from core.db import DB
from rate_limiter import get_client_ip


def get_db_session() -> Generator:
    if DB.SessionLocal is None:
        raise RuntimeError("Database not initialized - SessionLocal is None")
    db = DB.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def resolve_request_context(request: Request, db) -> RequestContext:
    """Client address plus identity; call from the route body so malformed requests never reach the provider."""
    client_ip = get_client_ip(request, request.app.state.rate_limit_config.trusted_proxy_count)
    resolver = request.app.state.identity_resolver
    identity = await resolver.resolve(_bearer_token(request), db)
    return RequestContext(client_ip=client_ip, identity=identity)

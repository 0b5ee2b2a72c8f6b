"""
Health and dependency endpoints.
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request
from sqlalchemy import text

from core.config import logger
from core.db import DB, _get_schema_revisions
from core.services.asset_pool import get_asset_pool_stats


router = APIRouter()


def _check_db_health(database_url: str) -> dict:
    if DB.engine is None:
        return {"ok": False, "error": "db_not_initialized"}

    try:
        with DB.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as exc:
        return {"ok": False, "error": str(exc)}

    current_rev, head_rev = _get_schema_revisions(DB.engine, database_url)
    schema_ok = head_rev is None or current_rev == head_rev
    return {
        "ok": schema_ok,
        "schema_revision": current_rev,
        "schema_expected": head_rev,
        "schema_up_to_date": schema_ok,
    }


def _check_asset_pool(settings) -> dict:
    db = DB.SessionLocal()
    try:
        return get_asset_pool_stats(db, settings)
    except Exception as exc:
        logger.warning(f"Asset pool stats unavailable: {exc}")
        return {"error": str(exc)}
    finally:
        db.close()


@router.get("/health")
async def health(request: Request):
    """Health check endpoint."""
    settings = request.app.state.settings
    db_health = _check_db_health(settings.resolved_database_url())
    if not db_health.get("ok"):
        raise HTTPException(status_code=503, detail={"database": db_health})

    return {
        "status": "healthy",
        "service": "CosmicQuirks",
        "version": "0.1.0",
        "database": db_health,
        "asset_pool": _check_asset_pool(settings),
        "rate_limiting": request.app.state.rate_limit_config.enabled,
    }

"""
Periodic bookkeeping for usage counters and the asset pool.
"""

from __future__ import annotations

from datetime import timedelta

from core.config import Settings, logger
from core.db import DB
from core.services.asset_pool import cleanup_asset_pool, get_asset_pool_stats
from core.services.usage_tracking import reconcile_usage, reset_daily_usage, utc_today


def run_maintenance_tick(settings: Settings) -> dict:
    if DB.SessionLocal is None:
        return {"status": "skipped", "reason": "db_not_initialized"}
    db = DB.SessionLocal()
    try:
        today = utc_today()
        # reconcile before the reset zeroes yesterday's counters
        mismatches = reconcile_usage(db, today - timedelta(days=1))
        usage_stats = reset_daily_usage(db, today=today, retention_days=settings.usage_retention_days)
        pool_stats = cleanup_asset_pool(
            db,
            remove_unused_after_days=settings.asset_remove_unused_after_days,
            max_pool_size=settings.asset_max_pool_size,
        )
        health = get_asset_pool_stats(db, settings)
        if health["needsMoreAssets"]:
            logger.info(
                "Asset pool below minimum size",
                extra={"active": health["activeAssets"], "minimum": settings.min_asset_pool_size},
            )
        logger.info(
            "Maintenance tick complete",
            extra={**usage_stats, **pool_stats, "usage_mismatches": len(mismatches)},
        )
        return {
            "status": "ok",
            **usage_stats,
            **pool_stats,
            "usage_mismatches": len(mismatches),
        }
    finally:
        db.close()

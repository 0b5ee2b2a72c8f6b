"""
Daily generation quotas and usage counters.

Registered callers are counted on their `users` row; anonymous callers get one
`usage_tracking` row per client address per day. Rollover is lazy: a counter
whose date is not today reads as zero, so no reset job is needed for
correctness.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from core.config import Settings, logger
from core.models import PredictionResult, UsageTracking, User

REGISTERED_LIMIT_MESSAGE = "Your cosmic energy is recharging... Try again tomorrow when the stars align!"
UNREGISTERED_LIMIT_MESSAGE = (
    "The mystical forces are overwhelming! Sign up to unlock more cosmic wisdom, or return tomorrow."
)


@dataclass(frozen=True)
class UsageCheck:
    can_generate: bool
    used: int
    limit: int
    message: Optional[str] = None

    @property
    def remaining(self) -> int:
        return max(self.limit - self.used, 0)


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def get_limits(settings: Settings) -> dict:
    return {tier: settings.limit_for_tier(tier) for tier in ("unregistered", "registered", "premium")}


def check_usage_limit(
    db,
    identity: str,
    is_registered: bool,
    settings: Settings,
    today: Optional[date] = None,
) -> UsageCheck:
    """
    Report whether the identity may generate again today.

    A store failure fails open: generation is allowed and `used` reads 0. This
    keeps the service available when the database is down at the cost of not
    enforcing quotas during the outage.
    """
    today = today or utc_today()
    limits = get_limits(settings)
    try:
        if is_registered:
            row = db.execute(
                select(User.generations_used_today, User.last_generation_date, User.plan_type)
                .where(User.id == identity)
            ).first()
            if row is None:
                used, plan_type = 0, "registered"
            else:
                plan_type = row.plan_type or "registered"
                used = (row.generations_used_today or 0) if row.last_generation_date == today else 0
            limit = limits.get(plan_type, limits["registered"])
            can_generate = used < limit
            return UsageCheck(
                can_generate=can_generate,
                used=used,
                limit=limit,
                message=None if can_generate else REGISTERED_LIMIT_MESSAGE,
            )

        used = db.execute(
            select(UsageTracking.generations_used)
            .where(UsageTracking.ip_address == identity)
            .where(UsageTracking.date == today)
        ).scalar()
        used = used or 0
        limit = limits["unregistered"]
        can_generate = used < limit
        return UsageCheck(
            can_generate=can_generate,
            used=used,
            limit=limit,
            message=None if can_generate else UNREGISTERED_LIMIT_MESSAGE,
        )
    except Exception as exc:
        logger.error(
            "Usage limit check failed, allowing generation",
            extra={"is_registered": is_registered, "error": str(exc)},
        )
        _rollback_quietly(db)
        return UsageCheck(
            can_generate=True,
            used=0,
            limit=limits["registered"] if is_registered else limits["unregistered"],
        )


def increment_user_usage(db, user_id: str, current_date: date) -> int:
    """Atomically bump a registered user's counter, restarting it on a new day."""
    result = db.execute(
        update(User)
        .where(User.id == user_id)
        .values(
            generations_used_today=case(
                (User.last_generation_date == current_date, User.generations_used_today + 1),
                else_=1,
            ),
            last_generation_date=current_date,
            updated_at=datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


def increment_ip_usage(db, client_ip: str, current_date: date) -> int:
    """Atomically bump (or create) the anonymous counter for an address and day."""
    dialect = db.get_bind().dialect.name
    insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
    now = datetime.utcnow()
    stmt = insert_fn(UsageTracking).values(
        ip_address=client_ip,
        date=current_date,
        generations_used=1,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[UsageTracking.ip_address, UsageTracking.date],
        set_={
            "generations_used": UsageTracking.generations_used + 1,
            "updated_at": now,
        },
    )
    result = db.execute(stmt)
    return result.rowcount or 0


def increment_usage(
    db,
    identity: str,
    is_registered: bool,
    today: Optional[date] = None,
) -> bool:
    """Charge one generation. Call only after a generation has succeeded."""
    today = today or utc_today()
    try:
        if is_registered:
            affected = increment_user_usage(db, identity, today)
            if affected == 0:
                raise LookupError(f"no users row for {identity}")
        else:
            increment_ip_usage(db, identity, today)
        db.commit()
        return True
    except Exception as exc:
        logger.error(
            "Error incrementing usage",
            extra={"is_registered": is_registered, "error": str(exc)},
        )
        _rollback_quietly(db)
        return False


def reset_daily_usage(db, today: Optional[date] = None, retention_days: int = 30) -> dict:
    """Bookkeeping reset: zero stale user counters and prune old anonymous rows."""
    today = today or utc_today()
    users_reset = db.execute(
        update(User)
        .where(User.last_generation_date < today)
        .where(User.generations_used_today > 0)
        .values(generations_used_today=0)
        .execution_options(synchronize_session=False)
    ).rowcount or 0
    cutoff = today - timedelta(days=max(retention_days, 0))
    rows_pruned = db.execute(
        delete(UsageTracking)
        .where(UsageTracking.date < cutoff)
        .execution_options(synchronize_session=False)
    ).rowcount or 0
    db.commit()
    logger.info(
        "Daily usage counters reset",
        extra={"users_reset": users_reset, "usage_rows_pruned": rows_pruned},
    )
    return {"users_reset": users_reset, "usage_rows_pruned": rows_pruned}


def next_reset_time(now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    tomorrow = now.date() + timedelta(days=1)
    return datetime.combine(tomorrow, time.min, tzinfo=timezone.utc)


def get_user_usage_stats(db, user_id: str, settings: Settings, today: Optional[date] = None) -> Optional[dict]:
    today = today or utc_today()
    try:
        user = db.get(User, user_id)
        if user is None:
            return None
        used = user.generations_used_today if user.last_generation_date == today else 0
        return {
            "used": used or 0,
            "limit": settings.limit_for_tier(user.plan_type),
            "resetTime": next_reset_time().isoformat(),
            "planType": user.plan_type,
        }
    except Exception as exc:
        logger.error("Error getting user usage stats", extra={"error": str(exc)})
        _rollback_quietly(db)
        return None


def reconcile_usage(db, day: date) -> list[dict]:
    """
    Compare registered counters with persisted results for one day.

    Usage increments and result inserts are independent writes, so either can
    land without the other. Discrepancies are reported and logged, never
    corrected here. Users whose counter for `day` was already zeroed by
    `reset_daily_usage` are skipped: an increment always leaves the counter at
    1 or more, so a zero dated `day` only means the tally is gone.
    """
    start = datetime.combine(day, time.min)
    end = start + timedelta(days=1)
    persisted = dict(
        db.execute(
            select(PredictionResult.user_id, func.count(PredictionResult.id))
            .where(PredictionResult.user_id.is_not(None))
            .where(PredictionResult.generation_source != "guest_saved")
            .where(PredictionResult.created_at >= start)
            .where(PredictionResult.created_at < end)
            .group_by(PredictionResult.user_id)
        ).all()
    )
    counted = dict(
        db.execute(
            select(User.id, User.generations_used_today)
            .where(User.last_generation_date == day)
        ).all()
    )

    reset_already = {user_id for user_id, counter in counted.items() if not counter}

    report = []
    for user_id in sorted((set(persisted) | set(counted)) - reset_already):
        counter = counted.get(user_id, 0) or 0
        results = persisted.get(user_id, 0)
        if counter != results:
            report.append({"user_id": user_id, "counter": counter, "persisted": results})
    if report:
        logger.warning(
            "Usage reconciliation found mismatches",
            extra={"day": day.isoformat(), "mismatches": len(report)},
        )
    return report


def _rollback_quietly(db) -> None:
    try:
        db.rollback()
    except Exception as exc:
        logger.debug(f"Rollback after usage error failed: {exc}")

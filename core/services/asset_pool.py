"""
Reusable pool of generated character images for anonymous visitors.
"""

from __future__ import annotations

import base64
import html
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, func, or_, select, update

from core.config import Settings, logger
from core.models import ImageAsset
from core.services.image_optimization import is_valid_image_data_uri

GENERAL_THEME = "general"

THEME_KEYWORDS = (
    ("love", ("love", "relationship", "romance")),
    ("career", ("career", "job", "work")),
    ("health", ("health", "wellness")),
    ("finance", ("money", "finance", "wealth")),
    ("travel", ("travel", "journey")),
    ("family", ("family", "children")),
)

THEME_COLORS = {
    "love": ("#E91E63", "#FCE4EC"),
    "career": ("#2196F3", "#E3F2FD"),
    "health": ("#4CAF50", "#E8F5E9"),
    "finance": ("#FF9800", "#FFF3E0"),
    "travel": ("#9C27B0", "#F3E5F5"),
    "family": ("#795548", "#EFEBE9"),
    "general": ("#9F50C9", "#F3E5F5"),
}


@dataclass(frozen=True)
class AssetMatchCriteria:
    question_theme: str
    form_type: str
    exclude_recently_used: bool = False
    client_identifier: Optional[str] = None


def extract_question_theme(question: str) -> str:
    lowered = (question or "").lower()
    for theme, keywords in THEME_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return theme
    return GENERAL_THEME


def _candidate_query(criteria: AssetMatchCriteria, settings: Settings, now: datetime):
    query = (
        select(ImageAsset)
        .where(ImageAsset.is_active.is_(True))
        .where(ImageAsset.form_type == criteria.form_type)
    )
    if criteria.question_theme and criteria.question_theme != GENERAL_THEME:
        query = query.where(ImageAsset.question_theme == criteria.question_theme)

    # Cooldown is tracked on the asset, not per client.
    if criteria.exclude_recently_used and criteria.client_identifier:
        cooldown_start = now - timedelta(days=settings.asset_reuse_cooldown_days)
        query = query.where(
            or_(ImageAsset.last_used_at.is_(None), ImageAsset.last_used_at < cooldown_start)
        )

    return (
        query.order_by(ImageAsset.usage_count.asc(), ImageAsset.created_at.asc())
        .limit(settings.asset_candidate_limit)
    )


def get_asset_from_pool(
    db,
    criteria: AssetMatchCriteria,
    settings: Settings,
    rng: Optional[random.Random] = None,
    now: Optional[datetime] = None,
) -> Optional[ImageAsset]:
    """Pick one of the least-used matching assets and mark it used."""
    rng = rng or random
    now = now or datetime.utcnow()
    try:
        assets = db.execute(_candidate_query(criteria, settings, now)).scalars().all()
        if not assets:
            if criteria.question_theme != GENERAL_THEME:
                return get_asset_from_pool(
                    db,
                    AssetMatchCriteria(
                        question_theme=GENERAL_THEME,
                        form_type=criteria.form_type,
                        exclude_recently_used=criteria.exclude_recently_used,
                        client_identifier=criteria.client_identifier,
                    ),
                    settings,
                    rng=rng,
                    now=now,
                )
            return None

        selected = rng.choice(assets)
        mark_asset_as_used(db, selected.id, now=now)
        db.refresh(selected)
        return selected
    except Exception as exc:
        logger.error("Error fetching asset from pool", extra={"error": str(exc)})
        db.rollback()
        return None


def mark_asset_as_used(db, asset_id: str, now: Optional[datetime] = None) -> None:
    db.execute(
        update(ImageAsset)
        .where(ImageAsset.id == asset_id)
        .values(usage_count=ImageAsset.usage_count + 1, last_used_at=now or datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()


def add_asset_to_pool(
    db,
    *,
    image_url: str,
    character_name: str,
    character_description: str,
    question_theme: str,
    form_type: str,
    metadata: Optional[dict] = None,
) -> bool:
    """Contribute a freshly generated raster image. Placeholders are refused."""
    if not is_valid_image_data_uri(image_url):
        logger.info("Skipping asset pool contribution for non-raster image")
        return False
    try:
        db.add(
            ImageAsset(
                image_url=image_url,
                character_name=character_name,
                character_description=character_description,
                question_theme=question_theme or GENERAL_THEME,
                form_type=form_type,
                metadata_=metadata or {},
                usage_count=0,
                is_active=True,
            )
        )
        db.commit()
        return True
    except Exception as exc:
        logger.error("Error adding asset to pool", extra={"error": str(exc)})
        db.rollback()
        return False


def get_asset_pool_stats(db, settings: Settings) -> dict:
    try:
        total = db.execute(select(func.count(ImageAsset.id))).scalar() or 0
        rows = db.execute(
            select(ImageAsset.question_theme, ImageAsset.form_type)
            .where(ImageAsset.is_active.is_(True))
        ).all()
    except Exception as exc:
        logger.error("Error getting asset pool stats", extra={"error": str(exc)})
        db.rollback()
        return {
            "total": 0,
            "byTheme": {},
            "byFormType": {},
            "activeAssets": 0,
            "needsMoreAssets": True,
        }

    by_theme: dict[str, int] = {}
    by_form_type: dict[str, int] = {}
    for theme, form_type in rows:
        theme = theme or GENERAL_THEME
        form_type = form_type or "fortune"
        by_theme[theme] = by_theme.get(theme, 0) + 1
        by_form_type[form_type] = by_form_type.get(form_type, 0) + 1

    active = len(rows)
    return {
        "total": total,
        "byTheme": by_theme,
        "byFormType": by_form_type,
        "activeAssets": active,
        "needsMoreAssets": active < settings.min_asset_pool_size,
    }


def cleanup_asset_pool(
    db,
    remove_unused_after_days: int = 90,
    max_pool_size: int = 1000,
    now: Optional[datetime] = None,
) -> dict:
    """Hard-delete never-used stale assets, then soft-deactivate any excess."""
    now = now or datetime.utcnow()
    removed = 0
    deactivated = 0
    try:
        cutoff = now - timedelta(days=remove_unused_after_days)
        removed = db.execute(
            delete(ImageAsset)
            .where(ImageAsset.created_at < cutoff)
            .where(ImageAsset.usage_count == 0)
            .execution_options(synchronize_session=False)
        ).rowcount or 0
        db.commit()

        active = db.execute(
            select(func.count(ImageAsset.id)).where(ImageAsset.is_active.is_(True))
        ).scalar() or 0
        if active > max_pool_size:
            excess = active - max_pool_size
            ids = db.execute(
                select(ImageAsset.id)
                .where(ImageAsset.is_active.is_(True))
                .order_by(
                    ImageAsset.usage_count.asc(),
                    ImageAsset.last_used_at.asc().nulls_first(),
                )
                .limit(excess)
            ).scalars().all()
            if ids:
                db.execute(
                    update(ImageAsset)
                    .where(ImageAsset.id.in_(ids))
                    .values(is_active=False)
                    .execution_options(synchronize_session=False)
                )
                db.commit()
                deactivated = len(ids)
    except Exception as exc:
        logger.error("Error cleaning up asset pool", extra={"error": str(exc)})
        db.rollback()

    return {"removed": removed, "deactivated": deactivated}


def generate_cosmic_placeholder(character_name: str, theme: str) -> str:
    """Deterministic SVG stand-in used when no raster image is available."""
    primary, secondary = THEME_COLORS.get(theme, THEME_COLORS[GENERAL_THEME])
    safe_name = html.escape(character_name or "Cosmic Soul", quote=False)
    svg = f"""<?xml version="1.0" encoding="UTF-8"?>
<svg xmlns="http://www.w3.org/2000/svg" width="512" height="512">
  <defs>
    <linearGradient id="cosmicGrad" x1="0" x2="1" y1="0" y2="1">
      <stop offset="0%" stop-color="{primary}"/>
      <stop offset="100%" stop-color="{primary}CC"/>
    </linearGradient>
    <radialGradient id="aura" cx="50%" cy="50%" r="50%">
      <stop offset="0%" stop-color="{secondary}"/>
      <stop offset="100%" stop-color="{primary}22"/>
    </radialGradient>
  </defs>
  <rect width="100%" height="100%" fill="url(#aura)"/>
  <circle cx="256" cy="256" r="200" fill="none" stroke="{primary}33" stroke-width="2"/>
  <circle cx="256" cy="256" r="150" fill="none" stroke="{primary}55" stroke-width="1"/>
  <circle cx="256" cy="256" r="100" fill="none" stroke="{primary}77" stroke-width="1"/>
  <circle cx="256" cy="256" r="80" fill="url(#cosmicGrad)" opacity="0.8"/>
  <text x="50%" y="48%" text-anchor="middle" font-family="'Space Grotesk',sans-serif"
        font-size="24" font-weight="600" fill="white">{safe_name}</text>
  <text x="50%" y="58%" text-anchor="middle" font-family="'Space Grotesk',sans-serif"
        font-size="14" fill="white" opacity="0.9">Cosmic Entanglement</text>
  <circle cx="180" cy="180" r="3" fill="white" opacity="0.7"/>
  <circle cx="340" cy="200" r="2" fill="white" opacity="0.5"/>
  <circle cx="160" cy="320" r="2" fill="white" opacity="0.6"/>
  <circle cx="350" cy="350" r="3" fill="white" opacity="0.8"/>
</svg>"""
    encoded = base64.b64encode(svg.encode("utf-8")).decode("ascii")
    return f"data:image/svg+xml;base64,{encoded}"
